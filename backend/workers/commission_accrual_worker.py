import asyncio
import logging

from config.constants import TASK_COMMISSION_ACCRUAL
from config.env import ACCRUAL_WORKER_INTERVAL_SECONDS, OUTBOX_MAX_ATTEMPTS
from utils.commission_service import accrue_for_order
from utils.errors import InvalidState
from utils.outbox import claim_due_task, claim_task, mark_task_done, mark_task_failed

logger = logging.getLogger(__name__)

BATCH_SIZE = 100


async def _run_accrual_task(store, task: dict) -> None:
    order_id = task.get("payload", {}).get("order_id") or task["key"]
    db = store.db

    try:
        await accrue_for_order(store, order_id)
    except InvalidState:
        # refunded (or otherwise unpaid) before accrual ran: nothing to accrue
        logger.info("COMMISSION_ACCRUAL_SKIPPED order=%s", order_id)
        await mark_task_done(db, task)
    except Exception as e:
        logger.exception("COMMISSION_ACCRUAL_ERROR order=%s attempt=%s", order_id, task.get("attempts"))
        await mark_task_failed(db, task, error=str(e), max_attempts=OUTBOX_MAX_ATTEMPTS)
    else:
        await mark_task_done(db, task)


async def drain_order_accrual(store, order_id) -> None:
    """
    Post-commit fast path for one order. Best effort: anything left behind
    is picked up by the worker loop.
    """
    try:
        task = await claim_task(store.db, kind=TASK_COMMISSION_ACCRUAL, key=str(order_id))
        if task:
            await _run_accrual_task(store, task)
    except Exception:
        logger.exception("COMMISSION_ACCRUAL_DRAIN_ERROR order=%s", order_id)


async def process_due_accrual_tasks(store, *, limit: int = BATCH_SIZE) -> int:
    processed = 0
    while processed < limit:
        task = await claim_due_task(store.db, kind=TASK_COMMISSION_ACCRUAL)
        if not task:
            break
        await _run_accrual_task(store, task)
        processed += 1
    return processed


async def commission_accrual_worker(store):
    while True:
        try:
            processed = await process_due_accrual_tasks(store)
            if processed:
                logger.info("COMMISSION_ACCRUAL_BATCH processed=%s", processed)
        except Exception:
            # Never crash worker on a storage hiccup
            logger.exception("COMMISSION_ACCRUAL_WORKER_ERROR")

        await asyncio.sleep(ACCRUAL_WORKER_INTERVAL_SECONDS)
