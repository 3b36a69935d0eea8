from fastapi import APIRouter, BackgroundTasks, Depends, Request

from database import get_store
from utils.razorpay import get_gateway
from utils.webhook_service import handle_gateway_webhook, should_drain_accrual
from workers.commission_accrual_worker import drain_order_accrual

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# =========================================================
# RAZORPAY WEBHOOK (SIGNED, IDEMPOTENT)
# =========================================================

@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    """
    Razorpay payment webhook.

    Guarantees:
    - Signature verified over the raw body
    - Fully idempotent (dedupe key + conditional transitions)
    - Unknown events acknowledged, never retried
    """
    raw_body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature")

    response = await handle_gateway_webhook(
        store,
        gateway,
        raw_body=raw_body,
        signature=signature,
    )

    if should_drain_accrual(response):
        background_tasks.add_task(drain_order_accrual, store, response["order_id"])

    return response
