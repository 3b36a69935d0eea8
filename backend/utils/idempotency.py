from datetime import datetime

from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24 * 7   # gateways retry for days
IN_PROGRESS_STALE_SECONDS = 60 * 5

IN_PROGRESS_RESPONSE = {"success": True, "status": "processing"}


async def reserve_idempotency_key(*, db, key: str, scope: str):
    """
    Reserve a delivery key before handling an event.

    Returns the stored response when the key already completed,
    a "processing" marker while another delivery holds it,
    or None when the caller now owns the key.
    """
    existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = existing.get("created_at")
        age_seconds = (datetime.utcnow() - created_at).total_seconds() if created_at else 0
        if age_seconds <= IN_PROGRESS_STALE_SECONDS:
            return IN_PROGRESS_RESPONSE

        # stale reservation from a crashed handler
        await db.idempotency_keys.delete_one({"_id": existing["_id"], "status": "reserved"})

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": datetime.utcnow(),
        })
    except DuplicateKeyError:
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return IN_PROGRESS_RESPONSE
    return None


async def complete_idempotency_key(*, db, key: str, scope: str, response: dict):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
    )


async def release_idempotency_key(*, db, key: str, scope: str):
    """
    Drop a reservation after a failed attempt so the sender's retry is processed.
    """
    await db.idempotency_keys.delete_one({"key": key, "scope": scope, "status": "reserved"})
