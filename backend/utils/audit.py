from datetime import datetime

# Admin actions on money
AUDIT_WITHDRAWAL_COMPLETED = "WITHDRAWAL_COMPLETED"
AUDIT_WITHDRAWAL_REJECTED = "WITHDRAWAL_REJECTED"
AUDIT_PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
AUDIT_COMMISSIONS_SETTLED = "COMMISSIONS_SETTLED"


async def log_audit(
    db,
    *,
    actor_id,
    action: str,
    actor_role: str = "admin",
    metadata: dict | None = None,
    session=None,
):
    await db.audit_logs.insert_one(
        {
            "actor_id": str(actor_id) if actor_id else None,
            "actor_role": actor_role,
            "action": action,
            "metadata": metadata or {},
            "created_at": datetime.utcnow(),
        },
        session=session,
    )
