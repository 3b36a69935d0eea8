import asyncio
import logging
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.constants import GATEWAY_NAME, RECEIPT_MAX_LENGTH, TASK_COMMISSION_ACCRUAL
from config.env import PAYMENT_CURRENCY
from models.order import OrderPaymentStatus, OrderStatus
from models.payment import CAPTURABLE_STATUSES, PaymentStatus
from utils.errors import InvalidAmount, InvalidSignature, InvalidState, NotFound, ValidationError
from utils.guards import assert_order_owner, parse_object_id
from utils.money import amount_to_minor_units, minor_units_to_amount
from utils.order_timeline import (
    EVENT_GATEWAY_ORDER_CREATED,
    EVENT_PAYMENT_CAPTURED,
    EVENT_PAYMENT_CAPTURED_WEBHOOK,
    EVENT_PAYMENT_FAILED,
    record_order_event,
)
from utils.outbox import enqueue_task
from utils.reconciliation import (
    FLAG_AMOUNT_MISMATCH,
    FLAG_CAPTURE_AFTER_FAILURE,
    FLAG_DUPLICATE_PAYMENT,
    flag_for_reconciliation,
)

logger = logging.getLogger(__name__)

SOURCE_CLIENT = "client"
SOURCE_WEBHOOK = "webhook"

OUTCOME_CAPTURED = "captured"
OUTCOME_ALREADY_CAPTURED = "already_captured"
OUTCOME_REJECTED = "rejected"

# Terminal payment states a late capture must never overwrite
_NON_CAPTURABLE = [
    PaymentStatus.FAILED.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.CANCELLED.value,
]


async def load_order(db, order_id, session=None) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")}, session=session)
    if not order:
        raise NotFound("Order not found")
    return order


# =========================================================
# CHECKOUT: gateway order
# =========================================================

async def create_gateway_order(store, gateway, *, order_id, customer_id) -> dict:
    db = store.db
    order = await load_order(db, order_id)
    assert_order_owner(order, customer_id)

    if order.get("payment_status") != OrderPaymentStatus.PENDING.value:
        raise InvalidState("Order is not awaiting payment")

    amount_minor = amount_to_minor_units(order.get("total", 0))
    if amount_minor <= 0:
        raise InvalidAmount("Order total must be greater than zero")

    # blocking HTTP, bounded by the gateway timeout
    gateway_order = await asyncio.to_thread(
        gateway.create_order,
        amount_minor=amount_minor,
        receipt=str(order["_id"])[:RECEIPT_MAX_LENGTH],
        notes={
            "order_id": str(order["_id"]),
            "order_number": order.get("order_number"),
        },
    )

    now = datetime.utcnow()
    await db.payments.insert_one({
        "_id": ObjectId(),
        "order_id": order["_id"],
        "customer_id": order.get("customer_id"),
        "payment_method": order.get("payment_method") or GATEWAY_NAME,
        "gateway": GATEWAY_NAME,
        "gateway_order_id": gateway_order["id"],
        "gateway_payment_id": None,
        "gateway_signature": None,
        "amount": minor_units_to_amount(amount_minor),
        "currency": gateway_order.get("currency") or gateway.currency,
        "status": PaymentStatus.PENDING.value,
        "created_at": now,
        "updated_at": now,
    })

    await record_order_event(
        db,
        order_id=order["_id"],
        event=EVENT_GATEWAY_ORDER_CREATED,
        actor_role="customer",
        actor_id=customer_id,
        metadata={"gateway_order_id": gateway_order["id"], "amount_minor": amount_minor},
    )

    logger.info("GATEWAY_ORDER_CREATED order=%s gateway_order=%s", order["_id"], gateway_order["id"])

    return {
        "gateway_order_id": gateway_order["id"],
        "publishable_key": gateway.publishable_key,
        "amount_minor_units": amount_minor,
        "currency": gateway_order.get("currency") or gateway.currency,
    }


# =========================================================
# CAPTURE TRANSITION (client verify + payment.captured)
# =========================================================

def _rejected(flag: str, message: str, details: dict) -> dict:
    return {"outcome": OUTCOME_REJECTED, "flag": flag, "message": message, "details": details}


async def _capture_in_session(
    db,
    session,
    *,
    order_id: ObjectId,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str | None,
    amount_minor: int | None,
    source: str,
    actor_id=None,
) -> dict:
    """
    Pending/Processing -> Completed and order Pending -> Paid, all or nothing.
    Returns an outcome dict; reconciliation flags are written by the caller
    so an aborted transaction cannot take them with it.
    """
    order = await load_order(db, order_id, session=session)
    payment = await db.payments.find_one({"gateway_order_id": gateway_order_id}, session=session)

    if payment and payment["order_id"] != order["_id"]:
        raise ValidationError("Gateway order does not belong to this order")

    if payment and payment["status"] == PaymentStatus.COMPLETED.value:
        return {"outcome": OUTCOME_ALREADY_CAPTURED, "payment_id": payment["_id"], "order_id": order["_id"]}

    # a declined attempt followed by a successful retry on the same gateway order
    retry_after_failure = bool(
        payment
        and payment["status"] == PaymentStatus.FAILED.value
        and payment.get("gateway_payment_id")
        and payment["gateway_payment_id"] != gateway_payment_id
    )

    if payment and payment["status"] in _NON_CAPTURABLE and not retry_after_failure:
        return _rejected(
            FLAG_CAPTURE_AFTER_FAILURE,
            f"Payment is {payment['status']} and cannot be captured",
            {"order_id": str(order["_id"]), "gateway_payment_id": gateway_payment_id, "status": payment["status"]},
        )

    expected_amount = payment["amount"] if payment else order.get("total", 0)
    if amount_minor is not None and amount_minor != amount_to_minor_units(expected_amount):
        return _rejected(
            FLAG_AMOUNT_MISMATCH,
            "Captured amount does not match the order amount",
            {
                "order_id": str(order["_id"]),
                "expected_minor": amount_to_minor_units(expected_amount),
                "captured_minor": amount_minor,
            },
        )

    payable = [OrderPaymentStatus.PENDING.value]
    if retry_after_failure:
        payable.append(OrderPaymentStatus.FAILED.value)

    if order.get("payment_status") not in payable:
        return _rejected(
            FLAG_DUPLICATE_PAYMENT,
            "Order is already paid or closed",
            {
                "order_id": str(order["_id"]),
                "order_payment_status": order.get("payment_status"),
                "gateway_payment_id": gateway_payment_id,
            },
        )

    now = datetime.utcnow()
    captured_fields = {
        "status": PaymentStatus.COMPLETED.value,
        "gateway_payment_id": gateway_payment_id,
        "gateway_signature": signature,
        "paid_at": now,
        "updated_at": now,
    }

    if payment:
        claim_filter = {"_id": payment["_id"], "status": {"$in": CAPTURABLE_STATUSES}}
        if retry_after_failure:
            claim_filter = {
                "_id": payment["_id"],
                "status": PaymentStatus.FAILED.value,
                "gateway_payment_id": payment["gateway_payment_id"],
            }
        claimed = await db.payments.update_one(
            claim_filter,
            {"$set": captured_fields},
            session=session,
        )
        if claimed.modified_count != 1:
            current = await db.payments.find_one({"_id": payment["_id"]}, session=session)
            if current and current["status"] == PaymentStatus.COMPLETED.value:
                return {"outcome": OUTCOME_ALREADY_CAPTURED, "payment_id": payment["_id"], "order_id": order["_id"]}
            raise InvalidState("Payment state changed during capture")
        payment_id = payment["_id"]
    else:
        # unique gateway_order_id: a concurrent insert loses with DuplicateKeyError
        payment_id = ObjectId()
        await db.payments.insert_one(
            {
                "_id": payment_id,
                "order_id": order["_id"],
                "customer_id": order.get("customer_id"),
                "payment_method": order.get("payment_method") or GATEWAY_NAME,
                "gateway": GATEWAY_NAME,
                "gateway_order_id": gateway_order_id,
                "amount": minor_units_to_amount(amount_minor) if amount_minor is not None else expected_amount,
                "currency": PAYMENT_CURRENCY,
                "created_at": now,
                **captured_fields,
            },
            session=session,
        )

    if retry_after_failure:
        logger.info(
            "CAPTURE_AFTER_DECLINED_ATTEMPT gateway_order=%s declined=%s captured=%s",
            gateway_order_id, payment["gateway_payment_id"], gateway_payment_id,
        )

    paid = await db.orders.update_one(
        {"_id": order["_id"], "payment_status": {"$in": payable}},
        {
            "$set": {
                "payment_status": OrderPaymentStatus.PAID.value,
                "gateway_payment_id": gateway_payment_id,
                "updated_at": now,
            }
        },
        session=session,
    )
    if paid.modified_count != 1:
        raise InvalidState("Order payment state changed during capture")

    await db.orders.update_one(
        {"_id": order["_id"], "status": OrderStatus.PENDING.value},
        {"$set": {"status": OrderStatus.RECEIVED.value}},
        session=session,
    )

    await enqueue_task(
        db,
        kind=TASK_COMMISSION_ACCRUAL,
        key=str(order["_id"]),
        payload={"order_id": str(order["_id"])},
        session=session,
    )

    await record_order_event(
        db,
        order_id=order["_id"],
        event=EVENT_PAYMENT_CAPTURED if source == SOURCE_CLIENT else EVENT_PAYMENT_CAPTURED_WEBHOOK,
        actor_role="customer" if source == SOURCE_CLIENT else "system",
        actor_id=actor_id,
        metadata={"gateway_order_id": gateway_order_id, "gateway_payment_id": gateway_payment_id},
        session=session,
    )

    return {"outcome": OUTCOME_CAPTURED, "payment_id": payment_id, "order_id": order["_id"]}


async def capture_payment(
    store,
    *,
    order_id,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str | None = None,
    amount_minor: int | None = None,
    source: str = SOURCE_CLIENT,
    actor_id=None,
) -> dict:
    db = store.db
    order_oid = parse_object_id(order_id, "order_id")

    async def _capture(session):
        return await _capture_in_session(
            db,
            session,
            order_id=order_oid,
            gateway_order_id=gateway_order_id,
            gateway_payment_id=gateway_payment_id,
            signature=signature,
            amount_minor=amount_minor,
            source=source,
            actor_id=actor_id,
        )

    try:
        result = await store.run_transaction(_capture)
    except DuplicateKeyError:
        # lost the insert race; the rerun sees the winner's Completed row
        logger.info("CAPTURE_RACE_LOST gateway_order=%s", gateway_order_id)
        result = await store.run_transaction(_capture)

    if result["outcome"] == OUTCOME_REJECTED:
        await flag_for_reconciliation(
            db,
            kind=result["flag"],
            reference=gateway_order_id,
            details=result["details"],
        )
    elif result["outcome"] == OUTCOME_ALREADY_CAPTURED:
        logger.info("CAPTURE_IDEMPOTENT gateway_order=%s source=%s", gateway_order_id, source)
    elif result["outcome"] == OUTCOME_CAPTURED:
        logger.info(
            "PAYMENT_CAPTURED order=%s gateway_order=%s source=%s",
            result["order_id"], gateway_order_id, source,
        )

    return result


async def verify_and_capture(
    store,
    gateway,
    *,
    order_id,
    customer_id,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str,
) -> dict:
    """
    Client-side confirmation after checkout.
    Nothing is written unless the checkout signature verifies.
    """
    order = await load_order(store.db, order_id)
    assert_order_owner(order, customer_id)

    if not gateway.verify_checkout_signature(
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        signature=signature,
    ):
        logger.warning("CHECKOUT_SIGNATURE_INVALID order=%s gateway_order=%s", order["_id"], gateway_order_id)
        raise InvalidSignature()

    result = await capture_payment(
        store,
        order_id=order["_id"],
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        signature=signature,
        source=SOURCE_CLIENT,
        actor_id=customer_id,
    )

    if result["outcome"] == OUTCOME_REJECTED:
        raise InvalidState(result["message"])

    return {
        "payment_id": result["payment_id"],
        "order_id": result["order_id"],
        "already_captured": result["outcome"] == OUTCOME_ALREADY_CAPTURED,
    }


# =========================================================
# FAILURE (payment.failed)
# =========================================================

async def mark_payment_failed(
    store,
    *,
    gateway_order_id: str,
    gateway_payment_id: str,
    reason: str | None = None,
) -> str:
    """
    Returns "failed", "unknown", or "ignored" (already captured or closed).
    """
    db = store.db

    async def _fail(session):
        payment = await db.payments.find_one({"gateway_order_id": gateway_order_id}, session=session)
        if not payment:
            return "unknown"
        if payment["status"] not in CAPTURABLE_STATUSES:
            return "ignored"

        now = datetime.utcnow()
        updated = await db.payments.update_one(
            {"_id": payment["_id"], "status": {"$in": CAPTURABLE_STATUSES}},
            {
                "$set": {
                    "status": PaymentStatus.FAILED.value,
                    "gateway_payment_id": gateway_payment_id,
                    "failure_reason": reason,
                    "failed_at": now,
                    "updated_at": now,
                }
            },
            session=session,
        )
        if updated.modified_count != 1:
            return "ignored"

        await db.orders.update_one(
            {"_id": payment["order_id"], "payment_status": OrderPaymentStatus.PENDING.value},
            {"$set": {"payment_status": OrderPaymentStatus.FAILED.value, "updated_at": now}},
            session=session,
        )
        await record_order_event(
            db,
            order_id=payment["order_id"],
            event=EVENT_PAYMENT_FAILED,
            actor_role="system",
            metadata={"gateway_payment_id": gateway_payment_id, "reason": reason},
            session=session,
        )
        return "failed"

    result = await store.run_transaction(_fail)
    logger.info("PAYMENT_FAILED_EVENT gateway_order=%s result=%s", gateway_order_id, result)
    return result
