import json
import logging

from bson import ObjectId

from models.payment import PaymentStatus
from models.webhook import (
    PaymentCapturedEvent,
    PaymentFailedEvent,
    RefundCreatedEvent,
    parse_gateway_event,
)
from utils.errors import InvalidSignature, ValidationError
from utils.idempotency import (
    complete_idempotency_key,
    release_idempotency_key,
    reserve_idempotency_key,
)
from utils.money import minor_units_to_amount
from utils.payment_service import (
    OUTCOME_CAPTURED,
    OUTCOME_REJECTED,
    SOURCE_WEBHOOK,
    capture_payment,
    mark_payment_failed,
)
from utils.refund_service import apply_refund

logger = logging.getLogger(__name__)

WEBHOOK_SCOPE = "razorpay_webhook"


async def _on_payment_captured(store, event: PaymentCapturedEvent) -> dict:
    entity = event.payment
    db = store.db

    payment = await db.payments.find_one({"gateway_order_id": entity.order_id})
    order_id = payment["order_id"] if payment else entity.notes.get("order_id")
    if not order_id or not ObjectId.is_valid(str(order_id)):
        logger.warning("WEBHOOK_CAPTURE_UNKNOWN_ORDER gateway_order=%s order=%s", entity.order_id, order_id)
        return {"success": True, "ignored": True, "reason": "unknown order"}

    result = await capture_payment(
        store,
        order_id=order_id,
        gateway_order_id=entity.order_id,
        gateway_payment_id=entity.id,
        amount_minor=entity.amount,
        source=SOURCE_WEBHOOK,
    )

    response = {"success": True, "event": event.event, "result": result["outcome"]}
    if result["outcome"] == OUTCOME_REJECTED:
        response["flagged"] = result["flag"]
    else:
        response["order_id"] = str(result["order_id"])
    return response


async def _on_payment_failed(store, event: PaymentFailedEvent) -> dict:
    entity = event.payment
    result = await mark_payment_failed(
        store,
        gateway_order_id=entity.order_id,
        gateway_payment_id=entity.id,
        reason=entity.error_description or entity.error_code,
    )
    return {"success": True, "event": event.event, "result": result}


async def _on_refund_created(store, event: RefundCreatedEvent) -> dict:
    entity = event.refund
    db = store.db

    payment = await db.payments.find_one({"gateway_payment_id": entity.payment_id})
    if not payment:
        logger.warning("WEBHOOK_REFUND_UNKNOWN_PAYMENT gateway_payment=%s", entity.payment_id)
        return {"success": True, "event": event.event, "result": "unknown"}

    if payment["status"] != PaymentStatus.COMPLETED.value:
        return {"success": True, "event": event.event, "result": "ignored"}

    async def _apply(session):
        return await apply_refund(
            db,
            session,
            payment=payment,
            amount=minor_units_to_amount(entity.amount),
            reason=entity.notes.get("reason") or "Refund created at gateway",
            gateway_refund_id=entity.id,
            actor_role="system",
        )

    applied = await store.run_transaction(_apply)
    return {"success": True, "event": event.event, "result": "refunded" if applied else "ignored"}


_HANDLERS = {
    PaymentCapturedEvent: _on_payment_captured,
    PaymentFailedEvent: _on_payment_failed,
    RefundCreatedEvent: _on_refund_created,
}


async def handle_gateway_webhook(store, gateway, *, raw_body: bytes, signature: str | None) -> dict:
    """
    Razorpay webhook entry point.

    Guarantees:
    - Signature verified over the raw body before anything is parsed
    - Unknown events acknowledged and ignored
    - Replays answered from the idempotency store
    """
    if not gateway.verify_webhook_signature(raw_body=raw_body, signature=signature):
        logger.warning("WEBHOOK_SIGNATURE_INVALID")
        raise InvalidSignature("Invalid webhook signature")

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationError("Invalid webhook payload")

    event = parse_gateway_event(body)
    if event is None:
        logger.info("WEBHOOK_IGNORED event=%s", body.get("event") if isinstance(body, dict) else None)
        return {"success": True, "ignored": True}

    db = store.db
    existing = await reserve_idempotency_key(db=db, key=event.dedupe_key, scope=WEBHOOK_SCOPE)
    if existing is not None:
        return existing

    try:
        response = await _HANDLERS[type(event)](store, event)
    except Exception:
        logger.exception("WEBHOOK_HANDLER_FAILED key=%s", event.dedupe_key)
        await release_idempotency_key(db=db, key=event.dedupe_key, scope=WEBHOOK_SCOPE)
        raise

    await complete_idempotency_key(db=db, key=event.dedupe_key, scope=WEBHOOK_SCOPE, response=response)
    return response


def should_drain_accrual(response: dict) -> bool:
    return response.get("result") == OUTCOME_CAPTURED and bool(response.get("order_id"))
