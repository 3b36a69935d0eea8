import logging
from collections import defaultdict
from datetime import datetime

from models.commission import BeneficiaryType, CommissionStatus
from models.order import OrderPaymentStatus, OrderStatus
from models.wallet import ENTRY_COMMISSION_CREDIT, ENTRY_COMMISSION_REVERSAL, TransactionType
from utils.commission_rates import get_delivery_commission_rate, get_seller_commission_rate
from utils.errors import InvalidState, NotFound
from utils.guards import parse_object_id
from utils.money import percent_of, round_money
from utils.order_timeline import EVENT_COMMISSIONS_SETTLED, record_order_event
from utils.wallet_service import append_wallet_transaction, wallet_owner

logger = logging.getLogger(__name__)


def _line_total(item: dict) -> float:
    if item.get("total") is not None:
        return item["total"]
    return item.get("price", 0) * item.get("quantity", 1)


def _seller_amounts(order: dict) -> dict:
    amounts = defaultdict(float)
    for item in order.get("items", []):
        seller_id = item.get("seller_id")
        if not seller_id:
            continue
        amounts[parse_object_id(seller_id, "seller_id")] += _line_total(item)
    return amounts


def _commission_row(order, beneficiary_id, beneficiary_type, order_amount, rate, rate_source):
    order_amount = round_money(order_amount)
    commission_amount = percent_of(order_amount, rate)

    if beneficiary_type == BeneficiaryType.SELLER:
        net_amount = round_money(order_amount - commission_amount)
    else:
        net_amount = commission_amount

    return {
        "order_id": order["_id"],
        "beneficiary_id": beneficiary_id,
        "beneficiary_type": beneficiary_type.value,
        "order_amount": order_amount,
        "rate": rate,
        "rate_source": rate_source,
        "commission_amount": commission_amount,
        "net_amount": net_amount,
        "status": CommissionStatus.PENDING.value,
        "paid_at": None,
    }


async def _accrue_rows(db, order: dict, session=None) -> list:
    """
    Upsert one commission per (order, beneficiary).
    Existing rows are left as they are, so replays never double count.
    """
    rows = []
    for seller_id, amount in _seller_amounts(order).items():
        rate, source = await get_seller_commission_rate(db, seller_id, session=session)
        rows.append(_commission_row(order, seller_id, BeneficiaryType.SELLER, amount, rate, source))

    if order.get("delivery_partner_id"):
        partner_id = parse_object_id(order["delivery_partner_id"], "delivery_partner_id")
        rate, source = await get_delivery_commission_rate(db, partner_id, session=session)
        rows.append(
            _commission_row(
                order, partner_id, BeneficiaryType.DELIVERY_PARTNER,
                order.get("subtotal", 0), rate, source,
            )
        )

    created = []
    now = datetime.utcnow()
    for row in rows:
        key = {
            "order_id": row["order_id"],
            "beneficiary_id": row["beneficiary_id"],
            "beneficiary_type": row["beneficiary_type"],
        }
        fields = {k: v for k, v in row.items() if k not in key}
        result = await db.commissions.update_one(
            key,
            {"$setOnInsert": {**fields, "created_at": now}},
            upsert=True,
            session=session,
        )
        if result.upserted_id is not None:
            created.append(result.upserted_id)

    return created


async def _load_order(db, order_id) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order:
        raise NotFound("Order not found")
    return order


# ==============================
# Accrual (after capture)
# ==============================

async def accrue_for_order(store, order_id) -> dict:
    db = store.db
    order = await _load_order(db, order_id)

    if order.get("payment_status") != OrderPaymentStatus.PAID.value:
        raise InvalidState("Commissions accrue only for paid orders")

    async def _accrue(session):
        return await _accrue_rows(db, order, session=session)

    created = await store.run_transaction(_accrue)
    if created:
        logger.info("COMMISSIONS_ACCRUED order=%s rows=%s", order["_id"], len(created))

    commissions = await db.commissions.find({"order_id": order["_id"]}).to_list(None)
    return {"order_id": order["_id"], "created": len(created), "commissions": commissions}


# ==============================
# Settlement (after delivery)
# ==============================

async def settle_order_commissions(store, order_id) -> dict:
    """
    Pay out every Pending commission of a delivered, paid order:
    Pending -> Paid plus exactly one wallet credit per row.
    """
    db = store.db
    order = await _load_order(db, order_id)

    if order.get("payment_status") != OrderPaymentStatus.PAID.value:
        raise InvalidState("Only paid orders can be settled")
    if order.get("status") != OrderStatus.DELIVERED.value:
        raise InvalidState("Only delivered orders can be settled")

    async def _settle(session):
        now = datetime.utcnow()
        # re-check under the transaction; a refund committed since the read above wins
        marked = await db.orders.update_one(
            {
                "_id": order["_id"],
                "payment_status": OrderPaymentStatus.PAID.value,
                "status": OrderStatus.DELIVERED.value,
            },
            {"$set": {"commissions_settled_at": now}},
            session=session,
        )
        if marked.matched_count != 1:
            raise InvalidState("Order changed before settlement")

        await _accrue_rows(db, order, session=session)

        pending = await db.commissions.find(
            {"order_id": order["_id"], "status": CommissionStatus.PENDING.value},
            session=session,
        ).to_list(None)

        settled = []
        for commission in pending:
            flipped = await db.commissions.update_one(
                {"_id": commission["_id"], "status": CommissionStatus.PENDING.value},
                {"$set": {"status": CommissionStatus.PAID.value, "paid_at": now}},
                session=session,
            )
            if flipped.modified_count != 1:
                continue

            if commission["net_amount"] > 0:
                await append_wallet_transaction(
                    db,
                    beneficiary_id=commission["beneficiary_id"],
                    beneficiary_type=commission["beneficiary_type"],
                    amount=commission["net_amount"],
                    txn_type=TransactionType.CREDIT,
                    entry_type=ENTRY_COMMISSION_CREDIT,
                    description=f"Earnings for order {order.get('order_number') or order['_id']}",
                    reference=f"CR-{commission['_id']}",
                    related_order_id=order["_id"],
                    related_commission_id=commission["_id"],
                    session=session,
                )
            settled.append(commission["_id"])

        if settled:
            await record_order_event(
                db,
                order_id=order["_id"],
                event=EVENT_COMMISSIONS_SETTLED,
                actor_role="system",
                metadata={"commissions": [str(c) for c in settled]},
                session=session,
            )
        return settled

    settled = await store.run_transaction(_settle)
    if settled:
        logger.info("COMMISSIONS_SETTLED order=%s rows=%s", order["_id"], len(settled))

    return {"order_id": order["_id"], "settled": len(settled), "commission_ids": settled}


# ==============================
# Reversal (refunds)
# ==============================

async def reverse_commissions(db, session, order: dict, ratio: float, reason: str | None = None) -> list:
    """
    Compensating debits for already paid commissions.
    Commission rows stay untouched; the ledger carries the correction.
    """
    paid = await db.commissions.find(
        {"order_id": order["_id"], "status": CommissionStatus.PAID.value},
        session=session,
    ).to_list(None)

    reversals = []
    for commission in paid:
        amount = round_money(commission["net_amount"] * ratio)
        if amount <= 0:
            continue

        reference = f"RV-{commission['_id']}"
        if await db.wallet_transactions.find_one({"reference": reference}, session=session):
            continue

        entry = await append_wallet_transaction(
            db,
            beneficiary_id=commission["beneficiary_id"],
            beneficiary_type=commission["beneficiary_type"],
            amount=amount,
            txn_type=TransactionType.DEBIT,
            entry_type=ENTRY_COMMISSION_REVERSAL,
            description=f"Refund reversal: {reason or 'order refunded'}",
            reference=reference,
            related_order_id=order["_id"],
            related_commission_id=commission["_id"],
            session=session,
        )
        reversals.append(entry)

    return reversals


# ==============================
# Beneficiary summary
# ==============================

async def get_commission_summary(store, beneficiary_id, beneficiary_type) -> dict:
    rows = (
        await store.db.commissions
        .find(wallet_owner(beneficiary_id, beneficiary_type))
        .sort("created_at", -1)
        .to_list(None)
    )

    paid = round_money(sum(r["net_amount"] for r in rows if r["status"] == CommissionStatus.PAID.value))
    pending = round_money(sum(r["net_amount"] for r in rows if r["status"] == CommissionStatus.PENDING.value))

    return {
        "commissions": rows,
        "total": round_money(paid + pending),
        "paid": paid,
        "pending": pending,
        "count": len(rows),
    }
