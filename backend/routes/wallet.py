from typing import Optional

from fastapi import APIRouter, Depends, Query

from database import get_store
from models.wallet import WithdrawalCreate
from utils.commission_service import get_commission_summary
from utils.security import get_beneficiary
from utils.serializers import serialize_docs, serialize_withdrawal
from utils.wallet_service import (
    get_balance,
    get_transactions,
    list_withdrawals,
    request_withdrawal,
)

router = APIRouter(prefix="/wallet", tags=["Wallet"])


# ======================================================
# BALANCE / LEDGER
# ======================================================

@router.get("/balance")
async def wallet_balance(
    beneficiary=Depends(get_beneficiary),
    store=Depends(get_store),
):
    balance = await get_balance(store, beneficiary["beneficiary_id"], beneficiary["beneficiary_type"])
    return {
        "success": True,
        "balance": balance["available"],
        "pending": balance["pending"],
    }


@router.get("/transactions")
async def wallet_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    beneficiary=Depends(get_beneficiary),
    store=Depends(get_store),
):
    result = await get_transactions(
        store,
        beneficiary["beneficiary_id"],
        beneficiary["beneficiary_type"],
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "transactions": serialize_docs(result["transactions"]),
        "pagination": result["pagination"],
    }


@router.get("/commissions")
async def wallet_commissions(
    beneficiary=Depends(get_beneficiary),
    store=Depends(get_store),
):
    summary = await get_commission_summary(
        store, beneficiary["beneficiary_id"], beneficiary["beneficiary_type"]
    )
    return {
        "success": True,
        **summary,
        "commissions": serialize_docs(summary["commissions"]),
    }


# ======================================================
# WITHDRAWALS
# ======================================================

@router.post("/withdrawals")
async def create_withdrawal(
    payload: WithdrawalCreate,
    beneficiary=Depends(get_beneficiary),
    store=Depends(get_store),
):
    request = await request_withdrawal(
        store,
        beneficiary_id=beneficiary["beneficiary_id"],
        beneficiary_type=beneficiary["beneficiary_type"],
        amount=payload.amount,
        payment_method=payload.payment_method,
        account_details=payload.account_details,
    )
    return {
        "success": True,
        "message": "Withdrawal request submitted",
        "withdrawal": serialize_withdrawal(request),
    }


@router.get("/withdrawals")
async def my_withdrawals(
    status: Optional[str] = None,
    beneficiary=Depends(get_beneficiary),
    store=Depends(get_store),
):
    requests = await list_withdrawals(
        store,
        beneficiary_id=beneficiary["beneficiary_id"],
        beneficiary_type=beneficiary["beneficiary_type"],
        status=status,
    )
    return {"success": True, "withdrawals": [serialize_withdrawal(r) for r in requests]}
