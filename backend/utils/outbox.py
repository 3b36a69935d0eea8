from datetime import datetime, timedelta

from pymongo import ReturnDocument

from config.constants import (
    OUTBOX_BACKOFF_BASE_SECONDS,
    OUTBOX_BACKOFF_MAX_SECONDS,
    OUTBOX_STALE_SECONDS,
)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_DEAD = "dead"


async def enqueue_task(db, *, kind: str, key: str, payload: dict | None = None, session=None):
    """
    Durable unit of follow-up work, written inside the producing transaction.
    Upsert keeps it single per (kind, key) without aborting the transaction.
    """
    now = datetime.utcnow()
    await db.outbox_tasks.update_one(
        {"kind": kind, "key": key},
        {
            "$setOnInsert": {
                "payload": payload or {},
                "status": STATUS_PENDING,
                "attempts": 0,
                "last_error": None,
                "next_attempt_at": now,
                "created_at": now,
            }
        },
        upsert=True,
        session=session,
    )


async def claim_task(db, *, kind: str, key: str):
    """
    Claim one specific task right away (post-commit fast path).
    """
    now = datetime.utcnow()
    return await db.outbox_tasks.find_one_and_update(
        {"kind": kind, "key": key, "status": {"$in": [STATUS_PENDING, STATUS_FAILED]}},
        {"$set": {"status": STATUS_PROCESSING, "claimed_at": now}, "$inc": {"attempts": 1}},
        return_document=ReturnDocument.AFTER,
    )


async def claim_due_task(db, *, kind: str, now: datetime | None = None):
    now = now or datetime.utcnow()
    stale_before = now - timedelta(seconds=OUTBOX_STALE_SECONDS)

    return await db.outbox_tasks.find_one_and_update(
        {
            "kind": kind,
            "$or": [
                {"status": {"$in": [STATUS_PENDING, STATUS_FAILED]}, "next_attempt_at": {"$lte": now}},
                {"status": STATUS_PROCESSING, "claimed_at": {"$lte": stale_before}},
            ],
        },
        {"$set": {"status": STATUS_PROCESSING, "claimed_at": now}, "$inc": {"attempts": 1}},
        sort=[("next_attempt_at", 1)],
        return_document=ReturnDocument.AFTER,
    )


async def mark_task_done(db, task: dict):
    await db.outbox_tasks.update_one(
        {"_id": task["_id"]},
        {"$set": {"status": STATUS_DONE, "completed_at": datetime.utcnow(), "last_error": None}},
    )


async def mark_task_failed(db, task: dict, *, error: str, max_attempts: int):
    attempts = task.get("attempts", 1)
    now = datetime.utcnow()
    delay = min(OUTBOX_BACKOFF_BASE_SECONDS * (2 ** max(attempts - 1, 0)), OUTBOX_BACKOFF_MAX_SECONDS)

    await db.outbox_tasks.update_one(
        {"_id": task["_id"]},
        {
            "$set": {
                "status": STATUS_DEAD if attempts >= max_attempts else STATUS_FAILED,
                "last_error": error,
                "failed_at": now,
                "next_attempt_at": now + timedelta(seconds=delay),
            }
        },
    )
