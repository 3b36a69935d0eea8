from fastapi import APIRouter, BackgroundTasks, Depends

from database import get_store
from models.payment import CheckoutOrderPayload, VerifyPaymentPayload
from utils.payment_service import create_gateway_order, verify_and_capture
from utils.razorpay import get_gateway
from utils.security import ROLE_CUSTOMER, require_role
from workers.commission_accrual_worker import drain_order_accrual

router = APIRouter(prefix="/payments", tags=["Payments"])


# =====================================================
# CHECKOUT
# =====================================================

@router.post("/checkout")
async def checkout(
    payload: CheckoutOrderPayload,
    customer=Depends(require_role(ROLE_CUSTOMER)),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    result = await create_gateway_order(
        store,
        gateway,
        order_id=payload.order_id,
        customer_id=customer["_id"],
    )
    return {"success": True, **result}


# =====================================================
# CLIENT VERIFY (after gateway checkout)
# =====================================================

@router.post("/verify")
async def verify_payment(
    payload: VerifyPaymentPayload,
    background_tasks: BackgroundTasks,
    customer=Depends(require_role(ROLE_CUSTOMER)),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    result = await verify_and_capture(
        store,
        gateway,
        order_id=payload.order_id,
        customer_id=customer["_id"],
        gateway_order_id=payload.gateway_order_id,
        gateway_payment_id=payload.gateway_payment_id,
        signature=payload.signature,
    )

    if not result["already_captured"]:
        background_tasks.add_task(drain_order_accrual, store, result["order_id"])

    return {
        "success": True,
        "payment_id": str(result["payment_id"]),
        "order_id": str(result["order_id"]),
        "already_captured": result["already_captured"],
    }
