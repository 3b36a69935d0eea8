import asyncio
from datetime import datetime

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.constants import TASK_COMMISSION_ACCRUAL
from utils.errors import (
    Forbidden,
    GatewayError,
    InvalidSignature,
    InvalidState,
    NotFound,
    ValidationError,
)
from utils.payment_service import capture_payment, create_gateway_order, verify_and_capture
from workers.commission_accrual_worker import drain_order_accrual


async def _checkout(store, gateway, order):
    return await create_gateway_order(
        store, gateway, order_id=order["_id"], customer_id=order["customer_id"]
    )


async def _verify(store, gateway, signer, order, gateway_order_id, payment_id="pay_1", signature=None):
    return await verify_and_capture(
        store,
        gateway,
        order_id=order["_id"],
        customer_id=order["customer_id"],
        gateway_order_id=gateway_order_id,
        gateway_payment_id=payment_id,
        signature=signature or signer.checkout(gateway_order_id, payment_id),
    )


# ==============================
# Checkout
# ==============================

async def test_checkout_creates_pending_payment(store, gateway, order_factory):
    order = await order_factory(total=500.0)

    result = await _checkout(store, gateway, order)

    assert result == {
        "gateway_order_id": "order_test_1",
        "publishable_key": "rzp_test_key",
        "amount_minor_units": 50000,
        "currency": "INR",
    }
    method, path, payload = gateway.calls[0]
    assert (method, path) == ("POST", "/orders")
    assert payload["amount"] == 50000
    assert payload["receipt"] == str(order["_id"])[:40]
    assert payload["notes"]["order_id"] == str(order["_id"])

    payment = await store.db.payments.find_one({"gateway_order_id": "order_test_1"})
    assert payment["status"] == "Pending"
    assert payment["amount"] == 500.0
    assert payment["order_id"] == order["_id"]


async def test_checkout_rejects_foreign_and_closed_orders(store, gateway, users, order_factory):
    order = await order_factory()
    paid = await order_factory(payment_status="Paid")

    with pytest.raises(Forbidden):
        await create_gateway_order(store, gateway, order_id=order["_id"], customer_id=users["other_customer"])

    with pytest.raises(InvalidState):
        await _checkout(store, gateway, paid)

    with pytest.raises(NotFound):
        await create_gateway_order(
            store, gateway, order_id="64b7f0c2a1b2c3d4e5f60789", customer_id=users["customer"]
        )

    assert gateway.calls == []


async def test_checkout_gateway_failure_leaves_no_payment(store, gateway, order_factory):
    order = await order_factory()
    gateway.fail_with = GatewayError("Razorpay request failed")

    with pytest.raises(GatewayError):
        await _checkout(store, gateway, order)

    assert await store.db.payments.count_documents({}) == 0


# ==============================
# Verify + capture
# ==============================

async def test_verify_captures_payment_and_marks_order_paid(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)

    result = await _verify(store, gateway, signer, order, checkout["gateway_order_id"])

    assert result["already_captured"] is False
    assert result["order_id"] == order["_id"]

    payment = await store.db.payments.find_one({"_id": result["payment_id"]})
    assert payment["status"] == "Completed"
    assert payment["gateway_payment_id"] == "pay_1"
    assert payment["paid_at"] is not None

    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Paid"
    assert saved["status"] == "Received"

    task = await store.db.outbox_tasks.find_one({"kind": TASK_COMMISSION_ACCRUAL, "key": str(order["_id"])})
    assert task["status"] == "pending"

    events = await store.db.order_timeline.find({"order_id": order["_id"]}).to_list(None)
    assert {e["event"] for e in events} == {"GATEWAY_ORDER_CREATED", "PAYMENT_CAPTURED"}


async def test_tampered_signature_changes_nothing(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)

    with pytest.raises(InvalidSignature):
        await _verify(
            store, gateway, signer, order, checkout["gateway_order_id"],
            signature=signer.checkout(checkout["gateway_order_id"], "pay_other"),
        )

    assert await store.db.payments.count_documents({"status": "Completed"}) == 0
    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Pending"
    assert saved["status"] == "Pending"


async def test_second_verify_is_idempotent(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)

    first = await _verify(store, gateway, signer, order, checkout["gateway_order_id"])
    second = await _verify(store, gateway, signer, order, checkout["gateway_order_id"])

    assert second["already_captured"] is True
    assert second["payment_id"] == first["payment_id"]
    assert await store.db.payments.count_documents({"order_id": order["_id"], "status": "Completed"}) == 1


async def test_concurrent_captures_yield_one_completed_row(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)

    results = await asyncio.gather(
        _verify(store, gateway, signer, order, checkout["gateway_order_id"]),
        _verify(store, gateway, signer, order, checkout["gateway_order_id"]),
    )

    assert sorted(r["already_captured"] for r in results) == [False, True]
    assert await store.db.payments.count_documents({"order_id": order["_id"], "status": "Completed"}) == 1


async def test_capture_without_checkout_row_inserts_completed_payment(store, gateway, signer, order_factory):
    order = await order_factory()

    result = await _verify(store, gateway, signer, order, "order_external_1")

    payment = await store.db.payments.find_one({"gateway_order_id": "order_external_1"})
    assert payment["_id"] == result["payment_id"]
    assert payment["status"] == "Completed"
    assert payment["amount"] == 500.0


async def test_gateway_order_of_another_order_is_rejected(store, gateway, signer, order_factory):
    first = await order_factory()
    second = await order_factory()
    checkout = await _checkout(store, gateway, first)

    with pytest.raises(ValidationError):
        await _verify(store, gateway, signer, second, checkout["gateway_order_id"])

    saved = await store.db.orders.find_one({"_id": second["_id"]})
    assert saved["payment_status"] == "Pending"


async def test_capture_after_failure_is_flagged(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    await store.db.payments.update_one(
        {"gateway_order_id": checkout["gateway_order_id"]}, {"$set": {"status": "Failed", "gateway_payment_id": "pay_1"}}
    )

    with pytest.raises(InvalidState):
        await _verify(store, gateway, signer, order, checkout["gateway_order_id"])

    flag = await store.db.reconciliation_flags.find_one({"kind": "capture_after_failure"})
    assert flag["reference"] == checkout["gateway_order_id"]
    assert flag["status"] == "open"


async def test_second_gateway_order_for_paid_order_is_flagged(store, gateway, signer, order_factory):
    order = await order_factory()
    first = await _checkout(store, gateway, order)
    second = await _checkout(store, gateway, order)

    await _verify(store, gateway, signer, order, first["gateway_order_id"], payment_id="pay_1")

    with pytest.raises(InvalidState):
        await _verify(store, gateway, signer, order, second["gateway_order_id"], payment_id="pay_2")

    assert await store.db.payments.count_documents({"order_id": order["_id"], "status": "Completed"}) == 1
    assert await store.db.reconciliation_flags.find_one({"kind": "duplicate_payment"}) is not None


# ==============================
# Post-commit accrual
# ==============================

async def test_drain_accrues_commissions_after_capture(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    await _verify(store, gateway, signer, order, checkout["gateway_order_id"])

    await drain_order_accrual(store, order["_id"])

    commissions = await store.db.commissions.find({"order_id": order["_id"]}).to_list(None)
    assert len(commissions) == 1
    assert commissions[0]["commission_amount"] == 50.0
    assert commissions[0]["net_amount"] == 450.0

    task = await store.db.outbox_tasks.find_one({"key": str(order["_id"])})
    assert task["status"] == "done"
    assert task["attempts"] == 1


async def test_tampered_signature_without_checkout_creates_no_row(store, gateway, signer, order_factory):
    order = await order_factory()

    with pytest.raises(InvalidSignature):
        await _verify(store, gateway, signer, order, "order_external_2", signature="f" * 64)

    assert await store.db.payments.count_documents({"order_id": order["_id"]}) == 0
    assert await store.db.outbox_tasks.count_documents({}) == 0


async def test_capture_reruns_after_losing_the_insert_race(store, order_factory, monkeypatch):
    order = await order_factory()
    run_transaction = store.run_transaction
    attempts = []

    async def lose_first_attempt(callback):
        attempts.append(callback)
        if len(attempts) == 1:
            # another capture of the same gateway order commits first
            await store.db.payments.insert_one({
                "_id": ObjectId(),
                "order_id": order["_id"],
                "gateway_order_id": "order_race_1",
                "gateway_payment_id": "pay_winner",
                "amount": 500.0,
                "status": "Completed",
                "paid_at": datetime.utcnow(),
            })
            await store.db.orders.update_one({"_id": order["_id"]}, {"$set": {"payment_status": "Paid"}})
            raise DuplicateKeyError("E11000 duplicate key error payments_gateway_order_unique")
        return await run_transaction(callback)

    monkeypatch.setattr(store, "run_transaction", lose_first_attempt)

    result = await capture_payment(
        store, order_id=order["_id"], gateway_order_id="order_race_1", gateway_payment_id="pay_loser"
    )

    assert len(attempts) == 2
    assert result["outcome"] == "already_captured"
    assert await store.db.payments.count_documents({"order_id": order["_id"]}) == 1
    assert await store.db.reconciliation_flags.count_documents({}) == 0
