from datetime import datetime
from bson import ObjectId

EVENT_GATEWAY_ORDER_CREATED = "GATEWAY_ORDER_CREATED"
EVENT_PAYMENT_CAPTURED = "PAYMENT_CAPTURED"
EVENT_PAYMENT_CAPTURED_WEBHOOK = "PAYMENT_CAPTURED_WEBHOOK"
EVENT_PAYMENT_FAILED = "PAYMENT_FAILED"
EVENT_PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
EVENT_COMMISSIONS_SETTLED = "COMMISSIONS_SETTLED"


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    metadata: dict | None = None,
    session=None,
):
    """
    Append one payment lifecycle event to the order timeline.
    Written with the caller's session so it commits with the transition it describes.
    """
    await db.order_timeline.insert_one(
        {
            "order_id": ObjectId(order_id),
            "event": event,
            "actor_role": actor_role,
            "actor_id": str(actor_id) if actor_id else None,
            "metadata": metadata or {},
            "created_at": datetime.utcnow(),
        },
        session=session,
    )
