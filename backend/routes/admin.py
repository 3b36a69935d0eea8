from fastapi import APIRouter, Depends
from typing import Optional

from database import get_store
from models.commission import BeneficiaryType
from models.payment import RefundPayload
from models.wallet import WithdrawalDecision
from utils.audit import AUDIT_COMMISSIONS_SETTLED, log_audit
from utils.commission_service import accrue_for_order, settle_order_commissions
from utils.razorpay import get_gateway
from utils.reconciliation import list_reconciliation_flags
from utils.refund_service import refund_payment
from utils.security import ROLE_ADMIN, require_role
from utils.serializers import serialize_doc, serialize_docs, serialize_value, serialize_withdrawal
from utils.wallet_service import (
    approve_withdrawal,
    audit_wallet,
    list_withdrawals,
    reject_withdrawal,
)


router = APIRouter(prefix="/admin", tags=["Admin"])


# =====================================================
# WITHDRAWALS
# =====================================================

@router.get("/withdrawals")
async def all_withdrawals(
    status: Optional[str] = None,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    requests = await list_withdrawals(store, status=status)
    return {"success": True, "withdrawals": [serialize_withdrawal(r) for r in requests]}


@router.post("/withdrawals/{request_id}/approve")
async def approve_withdrawal_request(
    request_id: str,
    payload: Optional[WithdrawalDecision] = None,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    request = await approve_withdrawal(
        store,
        request_id=request_id,
        admin_id=admin["_id"],
        transaction_reference=payload.transaction_reference if payload else None,
    )
    return {"success": True, "withdrawal": serialize_withdrawal(request)}


@router.post("/withdrawals/{request_id}/reject")
async def reject_withdrawal_request(
    request_id: str,
    payload: WithdrawalDecision,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    request = await reject_withdrawal(
        store,
        request_id=request_id,
        admin_id=admin["_id"],
        remarks=payload.remarks,
    )
    return {"success": True, "withdrawal": serialize_withdrawal(request)}


# =====================================================
# REFUNDS
# =====================================================

@router.post("/payments/{payment_id}/refund")
async def refund(
    payment_id: str,
    payload: RefundPayload,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
    gateway=Depends(get_gateway),
):
    result = await refund_payment(
        store,
        gateway,
        payment_id,
        amount=payload.amount,
        reason=payload.reason,
        actor_id=admin["_id"],
    )
    return {"success": True, **serialize_value(result)}


# =====================================================
# COMMISSIONS (manual triggers)
# =====================================================

@router.post("/orders/{order_id}/commissions/accrue")
async def accrue_commissions(
    order_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    result = await accrue_for_order(store, order_id)
    return {
        "success": True,
        "order_id": str(result["order_id"]),
        "created": result["created"],
        "commissions": serialize_docs(result["commissions"]),
    }


@router.post("/orders/{order_id}/commissions/settle")
async def settle_commissions(
    order_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    result = await settle_order_commissions(store, order_id)

    await log_audit(
        store.db,
        actor_id=admin["_id"],
        action=AUDIT_COMMISSIONS_SETTLED,
        metadata={"order_id": str(result["order_id"]), "settled": result["settled"]},
    )
    return {"success": True, **serialize_value(result)}


# =====================================================
# WALLET AUDIT / RECONCILIATION
# =====================================================

@router.get("/wallets/{beneficiary_type}/{beneficiary_id}/audit")
async def wallet_audit(
    beneficiary_type: BeneficiaryType,
    beneficiary_id: str,
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    result = await audit_wallet(store, beneficiary_id, beneficiary_type)
    return {"success": True, **result}


@router.get("/reconciliation")
async def reconciliation_flags(
    status: Optional[str] = "open",
    admin=Depends(require_role(ROLE_ADMIN)),
    store=Depends(get_store),
):
    flags = await list_reconciliation_flags(store.db, status=status)
    return {"success": True, "flags": [serialize_doc(f) for f in flags]}
