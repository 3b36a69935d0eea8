import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import REFUND_LOCK_STALE_SECONDS
from models.order import OrderPaymentStatus
from models.payment import PaymentStatus
from utils.audit import AUDIT_PAYMENT_REFUNDED, log_audit
from utils.commission_service import reverse_commissions
from utils.errors import GatewayError, InvalidState, NotFound, ValidationError
from utils.guards import parse_object_id
from utils.money import amount_to_minor_units, round_money
from utils.order_timeline import EVENT_PAYMENT_REFUNDED, record_order_event

logger = logging.getLogger(__name__)


async def apply_refund(
    db,
    session,
    *,
    payment: dict,
    amount: float,
    reason: str | None,
    gateway_refund_id: str | None,
    actor_role: str = "admin",
    actor_id=None,
) -> bool:
    """
    Completed -> Refunded, order Paid -> Refunded, proportional commission reversal.
    False when someone else already applied this refund.
    """
    now = datetime.utcnow()
    claimed = await db.payments.update_one(
        {"_id": payment["_id"], "status": PaymentStatus.COMPLETED.value},
        {
            "$set": {
                "status": PaymentStatus.REFUNDED.value,
                "refund_amount": amount,
                "refund_reason": reason,
                "refunded_at": now,
                "gateway_refund_id": gateway_refund_id,
                "refund_locked_at": None,
                "updated_at": now,
            }
        },
        session=session,
    )
    if claimed.modified_count != 1:
        return False

    order = await db.orders.find_one({"_id": payment["order_id"]}, session=session)
    await db.orders.update_one(
        {"_id": payment["order_id"], "payment_status": OrderPaymentStatus.PAID.value},
        {"$set": {"payment_status": OrderPaymentStatus.REFUNDED.value, "updated_at": now}},
        session=session,
    )

    reversals = []
    if order and payment.get("amount"):
        ratio = min(amount / payment["amount"], 1)
        reversals = await reverse_commissions(db, session, order, ratio, reason)

    await record_order_event(
        db,
        order_id=payment["order_id"],
        event=EVENT_PAYMENT_REFUNDED,
        actor_role=actor_role,
        actor_id=actor_id,
        metadata={
            "amount": amount,
            "gateway_refund_id": gateway_refund_id,
            "reversals": len(reversals),
        },
        session=session,
    )
    return True


async def _release_refund_lock(db, payment_id):
    await db.payments.update_one(
        {"_id": payment_id, "status": PaymentStatus.COMPLETED.value},
        {"$set": {"refund_locked_at": None}},
    )


async def refund_payment(
    store,
    gateway,
    payment_id,
    amount: float | None = None,
    reason: str | None = None,
    actor_id=None,
) -> dict:
    """
    Admin refund. The gateway call happens before any ledger write;
    a refund lock on the payment keeps a second admin click out.
    """
    db = store.db
    payment_oid = parse_object_id(payment_id, "payment_id")

    payment = await db.payments.find_one({"_id": payment_oid})
    if not payment:
        raise NotFound("Payment not found")
    if payment["status"] == PaymentStatus.REFUNDED.value:
        raise InvalidState("Payment already refunded")
    if payment["status"] != PaymentStatus.COMPLETED.value:
        raise InvalidState("Only completed payments can be refunded")
    if not payment.get("gateway_payment_id"):
        raise InvalidState("Payment has no gateway payment id")

    refund_amount = payment["amount"] if amount is None else round_money(amount)
    if refund_amount <= 0:
        raise ValidationError("Refund amount must be greater than zero")
    if refund_amount > payment["amount"]:
        raise ValidationError("Refund amount exceeds captured amount")

    now = datetime.utcnow()
    stale_before = now - timedelta(seconds=REFUND_LOCK_STALE_SECONDS)
    locked = await db.payments.find_one_and_update(
        {
            "_id": payment_oid,
            "status": PaymentStatus.COMPLETED.value,
            "$or": [
                {"refund_locked_at": None},
                {"refund_locked_at": {"$lte": stale_before}},
            ],
        },
        {"$set": {"refund_locked_at": now}},
    )
    if not locked:
        raise InvalidState("A refund for this payment is already in progress")

    try:
        refund = await asyncio.to_thread(
            gateway.refund_payment,
            gateway_payment_id=payment["gateway_payment_id"],
            amount_minor=amount_to_minor_units(refund_amount),
            notes={"order_id": str(payment["order_id"]), "reason": reason or ""},
        )
    except GatewayError:
        logger.exception("REFUND_GATEWAY_FAILED payment=%s", payment_oid)
        await _release_refund_lock(db, payment_oid)
        raise

    async def _apply(session):
        return await apply_refund(
            db,
            session,
            payment=payment,
            amount=refund_amount,
            reason=reason,
            gateway_refund_id=refund["id"],
            actor_id=actor_id,
        )

    applied = await store.run_transaction(_apply)
    if not applied:
        logger.info("REFUND_ALREADY_APPLIED payment=%s gateway_refund=%s", payment_oid, refund["id"])
        await _release_refund_lock(db, payment_oid)

    await log_audit(
        db,
        actor_id=actor_id,
        action=AUDIT_PAYMENT_REFUNDED,
        metadata={
            "payment_id": str(payment_oid),
            "order_id": str(payment["order_id"]),
            "amount": refund_amount,
            "gateway_refund_id": refund["id"],
        },
    )
    logger.info("PAYMENT_REFUNDED payment=%s amount=%s", payment_oid, refund_amount)

    return {
        "payment_id": payment_oid,
        "order_id": payment["order_id"],
        "refund_amount": refund_amount,
        "gateway_refund_id": refund["id"],
        "status": PaymentStatus.REFUNDED.value,
        "already_applied": not applied,
    }
