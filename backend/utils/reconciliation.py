import logging
from datetime import datetime

logger = logging.getLogger(__name__)

FLAG_AMOUNT_MISMATCH = "amount_mismatch"
FLAG_CAPTURE_AFTER_FAILURE = "capture_after_failure"
FLAG_DUPLICATE_PAYMENT = "duplicate_payment"
FLAG_WALLET_DRIFT = "wallet_drift"


async def flag_for_reconciliation(
    db,
    *,
    kind: str,
    reference: str,
    details: dict | None = None,
    session=None,
):
    """
    Open (or refresh) a manual reconciliation item.
    One open flag per (kind, reference); replays only bump the counter.
    """
    now = datetime.utcnow()
    logger.warning("RECONCILIATION_FLAG kind=%s reference=%s details=%s", kind, reference, details)

    await db.reconciliation_flags.update_one(
        {"kind": kind, "reference": reference},
        {
            "$set": {"details": details or {}, "last_seen_at": now},
            "$setOnInsert": {"status": "open", "created_at": now},
            "$inc": {"occurrences": 1},
        },
        upsert=True,
        session=session,
    )


async def list_reconciliation_flags(db, *, status: str | None = "open", limit: int = 100):
    query = {}
    if status:
        query["status"] = status
    return await db.reconciliation_flags.find(query).sort("created_at", -1).to_list(limit)
