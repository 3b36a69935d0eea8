import logging
import math
from datetime import datetime

from bson import ObjectId

from config.constants import TRANSACTIONS_PAGE_LIMIT_MAX, WITHDRAWAL_METHODS
from config.env import MIN_WITHDRAWAL_AMOUNT
from models.commission import BeneficiaryType, CommissionStatus
from models.order import OrderPaymentStatus
from models.wallet import (
    ENTRY_WITHDRAWAL_DEBIT,
    TransactionStatus,
    TransactionType,
    WithdrawalStatus,
)
from utils.audit import AUDIT_WITHDRAWAL_COMPLETED, AUDIT_WITHDRAWAL_REJECTED, log_audit
from utils.crypto import encrypt_account_details, mask_account_details
from utils.errors import (
    InsufficientBalance,
    InvalidAmount,
    InvalidState,
    NotFound,
    ValidationError,
)
from utils.guards import parse_object_id
from utils.money import amount_to_minor_units, minor_units_to_amount, round_money
from utils.reconciliation import FLAG_WALLET_DRIFT, flag_for_reconciliation

logger = logging.getLogger(__name__)

REMARK_INSUFFICIENT_AT_APPROVAL = "Insufficient balance at approval"


def wallet_owner(beneficiary_id, beneficiary_type) -> dict:
    return {
        "beneficiary_id": parse_object_id(beneficiary_id, "beneficiary_id"),
        "beneficiary_type": BeneficiaryType(beneficiary_type).value,
    }


# ==============================
# Core: Append-only ledger write
# ==============================

async def append_wallet_transaction(
    db,
    *,
    beneficiary_id,
    beneficiary_type,
    amount: float,
    txn_type: TransactionType,
    entry_type: str,
    description: str,
    reference: str,
    related_order_id: ObjectId | None = None,
    related_commission_id: ObjectId | None = None,
    related_withdrawal_id: ObjectId | None = None,
    apply_to_wallet: bool = True,
    session=None,
) -> dict:
    """
    Insert one ledger entry and move the running wallet balance with it.
    The running balance is kept in integer minor units (balance_minor).
    Callers that already moved the balance (guarded debits) pass apply_to_wallet=False.
    """
    amount = round_money(amount)
    if amount <= 0:
        raise ValueError("Wallet transaction amount must be positive")

    owner = wallet_owner(beneficiary_id, beneficiary_type)
    now = datetime.utcnow()

    entry = {
        "_id": ObjectId(),
        **owner,
        "amount": amount,
        "type": TransactionType(txn_type).value,
        "entry_type": entry_type,
        "description": description,
        "reference": reference,
        "related_order_id": related_order_id,
        "related_commission_id": related_commission_id,
        "related_withdrawal_id": related_withdrawal_id,
        "status": TransactionStatus.COMPLETED.value,
        "created_at": now,
    }
    await db.wallet_transactions.insert_one(entry, session=session)

    if apply_to_wallet:
        delta = amount_to_minor_units(amount)
        if entry["type"] == TransactionType.DEBIT.value:
            delta = -delta
        await db.wallets.update_one(
            owner,
            {
                "$inc": {"balance_minor": delta},
                "$set": {"updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            session=session,
        )

    return entry


# ==============================
# Balances (ledger is the source of truth)
# ==============================

async def get_available_balance(db, beneficiary_id, beneficiary_type, *, session=None) -> float:
    pipeline = [
        {"$match": {**wallet_owner(beneficiary_id, beneficiary_type), "status": TransactionStatus.COMPLETED.value}},
        {"$group": {"_id": "$type", "amount": {"$sum": "$amount"}}},
    ]

    rows = await db.wallet_transactions.aggregate(pipeline, session=session).to_list(None)
    summary = {r["_id"]: r["amount"] for r in rows}

    return round_money(
        summary.get(TransactionType.CREDIT.value, 0) - summary.get(TransactionType.DEBIT.value, 0)
    )


async def get_pending_balance(db, beneficiary_id, beneficiary_type, *, session=None) -> float:
    """
    Accrued but unsettled earnings. Orders refunded before settlement never pay out.
    """
    rows = await db.commissions.find(
        {**wallet_owner(beneficiary_id, beneficiary_type), "status": CommissionStatus.PENDING.value},
        session=session,
    ).to_list(None)
    if not rows:
        return 0.0

    order_ids = list({r["order_id"] for r in rows})
    refunded = await db.orders.find(
        {"_id": {"$in": order_ids}, "payment_status": OrderPaymentStatus.REFUNDED.value},
        {"_id": 1},
        session=session,
    ).to_list(None)
    refunded_ids = {o["_id"] for o in refunded}

    return round_money(sum(r["net_amount"] for r in rows if r["order_id"] not in refunded_ids))


async def get_balance(store, beneficiary_id, beneficiary_type) -> dict:
    return {
        "available": await get_available_balance(store.db, beneficiary_id, beneficiary_type),
        "pending": await get_pending_balance(store.db, beneficiary_id, beneficiary_type),
    }


async def get_transactions(store, beneficiary_id, beneficiary_type, *, page: int = 1, limit: int = 20) -> dict:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), TRANSACTIONS_PAGE_LIMIT_MAX)
    query = wallet_owner(beneficiary_id, beneficiary_type)

    rows = (
        await store.db.wallet_transactions
        .find(query)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    total = await store.db.wallet_transactions.count_documents(query)

    return {
        "transactions": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


# ==============================
# Withdrawals
# ==============================

async def request_withdrawal(
    store,
    *,
    beneficiary_id,
    beneficiary_type,
    amount: float,
    payment_method: str,
    account_details: str | None = None,
) -> dict:
    """
    Record a withdrawal intent. Nothing is reserved; approval re-checks the balance.
    Rejected requests are not persisted.
    """
    db = store.db
    owner = wallet_owner(beneficiary_id, beneficiary_type)

    if amount is None or amount <= 0:
        raise InvalidAmount()
    amount = round_money(amount)

    if payment_method not in WITHDRAWAL_METHODS:
        raise ValidationError(f"Invalid payment method. Allowed: {', '.join(sorted(WITHDRAWAL_METHODS))}")

    if amount < MIN_WITHDRAWAL_AMOUNT:
        raise ValidationError(f"Minimum withdrawal amount is {MIN_WITHDRAWAL_AMOUNT:g}")

    open_request = await db.withdrawal_requests.find_one(
        {**owner, "status": {"$in": [WithdrawalStatus.PENDING.value, WithdrawalStatus.APPROVED.value]}}
    )
    if open_request:
        raise ValidationError("A withdrawal request is already pending")

    available = await get_available_balance(db, beneficiary_id, beneficiary_type)
    if amount > available:
        raise InsufficientBalance()

    now = datetime.utcnow()
    doc = {
        "_id": ObjectId(),
        **owner,
        "amount": amount,
        "payment_method": payment_method,
        "account_details_encrypted": encrypt_account_details(account_details) if account_details else None,
        "account_details_masked": mask_account_details(account_details) if account_details else None,
        "status": WithdrawalStatus.PENDING.value,
        "remarks": None,
        "transaction_reference": None,
        "processed_by": None,
        "processed_at": None,
        "created_at": now,
        "updated_at": now,
    }
    await db.withdrawal_requests.insert_one(doc)

    logger.info(
        "WITHDRAWAL_REQUESTED request=%s beneficiary=%s amount=%s",
        doc["_id"], owner["beneficiary_id"], amount,
    )
    return doc


async def approve_withdrawal(
    store,
    *,
    request_id,
    admin_id,
    transaction_reference: str | None = None,
) -> dict:
    """
    Settle a pending withdrawal against the balance as it is *now*.

    Claim (Pending -> Approved), recompute the ledger balance, then a guarded
    decrement on the wallet document serializes racing approvals for the same
    beneficiary. Insufficient funds end as Rejected, not as an error.
    """
    db = store.db
    request_oid = parse_object_id(request_id, "request_id")

    async def _approve(session):
        now = datetime.utcnow()
        claimed = await db.withdrawal_requests.find_one_and_update(
            {"_id": request_oid, "status": WithdrawalStatus.PENDING.value},
            {"$set": {"status": WithdrawalStatus.APPROVED.value, "updated_at": now}},
            session=session,
        )
        if not claimed:
            existing = await db.withdrawal_requests.find_one({"_id": request_oid}, session=session)
            if not existing:
                raise NotFound("Withdrawal request not found")
            raise InvalidState("Withdrawal request already processed")

        owner = wallet_owner(claimed["beneficiary_id"], claimed["beneficiary_type"])
        amount = claimed["amount"]

        available = await get_available_balance(
            db, owner["beneficiary_id"], owner["beneficiary_type"], session=session
        )
        debited = False
        if available >= amount:
            amount_minor = amount_to_minor_units(amount)
            guarded = await db.wallets.update_one(
                {**owner, "balance_minor": {"$gte": amount_minor}},
                {"$inc": {"balance_minor": -amount_minor}, "$set": {"updated_at": now}},
                session=session,
            )
            debited = guarded.modified_count == 1

        if not debited:
            await db.withdrawal_requests.update_one(
                {"_id": request_oid},
                {
                    "$set": {
                        "status": WithdrawalStatus.REJECTED.value,
                        "remarks": REMARK_INSUFFICIENT_AT_APPROVAL,
                        "processed_by": str(admin_id),
                        "processed_at": now,
                        "updated_at": now,
                    }
                },
                session=session,
            )
            await log_audit(
                db,
                actor_id=admin_id,
                action=AUDIT_WITHDRAWAL_REJECTED,
                metadata={"request_id": str(request_oid), "amount": amount, "available": available},
                session=session,
            )
            logger.info("WITHDRAWAL_REJECTED_AT_APPROVAL request=%s amount=%s available=%s", request_oid, amount, available)
            return WithdrawalStatus.REJECTED.value

        await append_wallet_transaction(
            db,
            beneficiary_id=owner["beneficiary_id"],
            beneficiary_type=owner["beneficiary_type"],
            amount=amount,
            txn_type=TransactionType.DEBIT,
            entry_type=ENTRY_WITHDRAWAL_DEBIT,
            description=f"Withdrawal via {claimed['payment_method']}",
            reference=f"WD-{request_oid}",
            related_withdrawal_id=request_oid,
            apply_to_wallet=False,
            session=session,
        )
        await db.withdrawal_requests.update_one(
            {"_id": request_oid},
            {
                "$set": {
                    "status": WithdrawalStatus.COMPLETED.value,
                    "transaction_reference": transaction_reference,
                    "processed_by": str(admin_id),
                    "processed_at": now,
                    "updated_at": now,
                }
            },
            session=session,
        )
        await log_audit(
            db,
            actor_id=admin_id,
            action=AUDIT_WITHDRAWAL_COMPLETED,
            metadata={"request_id": str(request_oid), "amount": amount},
            session=session,
        )
        logger.info("WITHDRAWAL_COMPLETED request=%s amount=%s", request_oid, amount)
        return WithdrawalStatus.COMPLETED.value

    await store.run_transaction(_approve)
    return await db.withdrawal_requests.find_one({"_id": request_oid})


async def reject_withdrawal(store, *, request_id, admin_id, remarks: str | None = None) -> dict:
    db = store.db
    request_oid = parse_object_id(request_id, "request_id")
    now = datetime.utcnow()

    updated = await db.withdrawal_requests.find_one_and_update(
        {"_id": request_oid, "status": WithdrawalStatus.PENDING.value},
        {
            "$set": {
                "status": WithdrawalStatus.REJECTED.value,
                "remarks": remarks,
                "processed_by": str(admin_id),
                "processed_at": now,
                "updated_at": now,
            }
        },
    )
    if not updated:
        if not await db.withdrawal_requests.find_one({"_id": request_oid}):
            raise NotFound("Withdrawal request not found")
        raise InvalidState("Withdrawal request already processed")

    await log_audit(
        db,
        actor_id=admin_id,
        action=AUDIT_WITHDRAWAL_REJECTED,
        metadata={"request_id": str(request_oid), "remarks": remarks},
    )
    return await db.withdrawal_requests.find_one({"_id": request_oid})


async def list_withdrawals(
    store,
    *,
    beneficiary_id=None,
    beneficiary_type=None,
    status: str | None = None,
    limit: int = 100,
) -> list:
    query = {}
    if beneficiary_id is not None:
        query.update(wallet_owner(beneficiary_id, beneficiary_type))
    if status:
        try:
            query["status"] = WithdrawalStatus(status).value
        except ValueError:
            raise ValidationError("Invalid withdrawal status")

    return await store.db.withdrawal_requests.find(query).sort("created_at", -1).to_list(limit)


# ==============================
# Audit: running balance vs ledger scan
# ==============================

async def audit_wallet(store, beneficiary_id, beneficiary_type) -> dict:
    db = store.db
    owner = wallet_owner(beneficiary_id, beneficiary_type)

    ledger_balance = await get_available_balance(db, beneficiary_id, beneficiary_type)
    wallet = await db.wallets.find_one(owner)
    materialized = minor_units_to_amount(wallet.get("balance_minor", 0)) if wallet else 0.0
    drift = round_money(materialized - ledger_balance)

    if drift != 0:
        await flag_for_reconciliation(
            db,
            kind=FLAG_WALLET_DRIFT,
            reference=f"{owner['beneficiary_type']}:{owner['beneficiary_id']}",
            details={"ledger_balance": ledger_balance, "materialized_balance": materialized},
        )

    return {
        "ledger_balance": ledger_balance,
        "materialized_balance": materialized,
        "drift": drift,
        "consistent": drift == 0,
    }
