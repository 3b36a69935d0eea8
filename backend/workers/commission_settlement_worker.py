import asyncio
import logging

from config.env import SETTLEMENT_WORKER_INTERVAL_SECONDS
from models.order import OrderPaymentStatus, OrderStatus
from utils.commission_service import settle_order_commissions

logger = logging.getLogger(__name__)


async def settle_delivered_orders(store) -> int:
    """
    Credit wallets for delivered, paid orders not yet settled.
    Settlement stamps commissions_settled_at, so each order is swept once.
    """
    db = store.db

    cursor = db.orders.find({
        "status": OrderStatus.DELIVERED.value,
        "payment_status": OrderPaymentStatus.PAID.value,
        "commissions_settled_at": None,
    })

    settled = 0
    async for order in cursor:
        try:
            result = await settle_order_commissions(store, order["_id"])
            settled += result["settled"]
        except Exception:
            # Never crash worker for one bad order
            logger.exception("COMMISSION_SETTLEMENT_ERROR order=%s", order.get("_id"))

    return settled


async def commission_settlement_worker(store):
    while True:
        try:
            settled = await settle_delivered_orders(store)
            if settled:
                logger.info("COMMISSION_SETTLEMENT_BATCH settled=%s", settled)
        except Exception:
            logger.exception("COMMISSION_SETTLEMENT_WORKER_ERROR")

        await asyncio.sleep(SETTLEMENT_WORKER_INTERVAL_SECONDS)
