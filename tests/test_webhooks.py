import json

import pytest

from utils.errors import InvalidSignature, ValidationError
from utils.payment_service import create_gateway_order
from utils.webhook_service import handle_gateway_webhook


def _captured_body(signer, *, gateway_order_id, payment_id="pay_wh_1", amount=50000, notes=None):
    return signer.body(
        "payment.captured",
        "payment",
        {
            "id": payment_id,
            "entity": "payment",
            "order_id": gateway_order_id,
            "amount": amount,
            "currency": "INR",
            "status": "captured",
            "notes": notes if notes is not None else [],
        },
    )


async def _deliver(store, gateway, signer, raw_body):
    return await handle_gateway_webhook(
        store, gateway, raw_body=raw_body, signature=signer.webhook(raw_body)
    )


async def _checkout(store, gateway, order):
    return await create_gateway_order(
        store, gateway, order_id=order["_id"], customer_id=order["customer_id"]
    )


async def test_bad_signature_is_rejected_without_side_effects(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    body = _captured_body(signer, gateway_order_id=checkout["gateway_order_id"])

    with pytest.raises(InvalidSignature):
        await handle_gateway_webhook(store, gateway, raw_body=body, signature="deadbeef")

    with pytest.raises(InvalidSignature):
        await handle_gateway_webhook(store, gateway, raw_body=body, signature=None)

    assert await store.db.idempotency_keys.count_documents({}) == 0
    payment = await store.db.payments.find_one({"gateway_order_id": checkout["gateway_order_id"]})
    assert payment["status"] == "Pending"


async def test_unknown_event_is_ignored(store, gateway, signer):
    body = json.dumps({"event": "order.paid", "payload": {}}).encode("utf-8")

    response = await _deliver(store, gateway, signer, body)

    assert response == {"success": True, "ignored": True}


async def test_malformed_known_event_is_a_validation_error(store, gateway, signer):
    body = json.dumps({"event": "payment.captured", "payload": {"payment": {}}}).encode("utf-8")

    with pytest.raises(ValidationError):
        await _deliver(store, gateway, signer, body)


async def test_payment_captured_marks_order_paid(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)

    response = await _deliver(
        store, gateway, signer, _captured_body(signer, gateway_order_id=checkout["gateway_order_id"])
    )

    assert response["result"] == "captured"
    assert response["order_id"] == str(order["_id"])

    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Paid"
    assert saved["status"] == "Received"


async def test_replaying_webhook_equals_single_delivery(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    body = _captured_body(signer, gateway_order_id=checkout["gateway_order_id"])

    responses = [await _deliver(store, gateway, signer, body) for _ in range(3)]

    assert responses[1] == responses[0]
    assert responses[2] == responses[0]
    assert await store.db.payments.count_documents({"order_id": order["_id"]}) == 1
    assert await store.db.payments.count_documents({"status": "Completed"}) == 1
    assert await store.db.outbox_tasks.count_documents({"key": str(order["_id"])}) == 1
    assert await store.db.order_timeline.count_documents({"event": "PAYMENT_CAPTURED_WEBHOOK"}) == 1


async def test_late_webhook_after_client_capture_is_noop(store, gateway, signer, paid_order):
    order, gateway_order_id = await paid_order()

    response = await _deliver(
        store, gateway, signer,
        _captured_body(signer, gateway_order_id=gateway_order_id, payment_id=order["gateway_payment_id"]),
    )

    assert response["result"] == "already_captured"
    assert await store.db.payments.count_documents({"order_id": order["_id"]}) == 1
    assert await store.db.outbox_tasks.count_documents({"key": str(order["_id"])}) == 1
    assert await store.db.order_timeline.count_documents({"event": "PAYMENT_CAPTURED_WEBHOOK"}) == 0


async def test_captured_without_payment_row_uses_notes(store, gateway, signer, order_factory):
    order = await order_factory()

    response = await _deliver(
        store, gateway, signer,
        _captured_body(signer, gateway_order_id="order_gw_99", notes={"order_id": str(order["_id"])}),
    )

    assert response["result"] == "captured"
    payment = await store.db.payments.find_one({"gateway_order_id": "order_gw_99"})
    assert payment["status"] == "Completed"
    assert payment["order_id"] == order["_id"]


async def test_amount_mismatch_is_flagged_not_applied(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)

    response = await _deliver(
        store, gateway, signer,
        _captured_body(signer, gateway_order_id=checkout["gateway_order_id"], amount=100),
    )

    assert response["result"] == "rejected"
    assert response["flagged"] == "amount_mismatch"
    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Pending"
    assert await store.db.reconciliation_flags.count_documents({"kind": "amount_mismatch"}) == 1


async def test_payment_failed_marks_payment_and_order(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    body = signer.body(
        "payment.failed",
        "payment",
        {
            "id": "pay_fail_1",
            "order_id": checkout["gateway_order_id"],
            "amount": 50000,
            "status": "failed",
            "error_code": "BAD_REQUEST_ERROR",
            "error_description": "Card declined",
        },
    )

    response = await _deliver(store, gateway, signer, body)

    assert response["result"] == "failed"
    payment = await store.db.payments.find_one({"gateway_order_id": checkout["gateway_order_id"]})
    assert payment["status"] == "Failed"
    assert payment["failure_reason"] == "Card declined"
    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Failed"


async def test_payment_failed_after_capture_is_ignored(store, gateway, signer, paid_order):
    order, gateway_order_id = await paid_order()
    body = signer.body(
        "payment.failed",
        "payment",
        {"id": "pay_fail_2", "order_id": gateway_order_id, "status": "failed"},
    )

    response = await _deliver(store, gateway, signer, body)

    assert response["result"] == "ignored"
    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Paid"


async def test_refund_created_refunds_payment_once(store, gateway, signer, paid_order):
    order, _ = await paid_order()
    body = signer.body(
        "refund.created",
        "refund",
        {"id": "rfnd_wh_1", "payment_id": order["gateway_payment_id"], "amount": 50000},
    )

    first = await _deliver(store, gateway, signer, body)
    replay = await _deliver(store, gateway, signer, body)

    assert first["result"] == "refunded"
    assert replay == first

    payment = await store.db.payments.find_one({"order_id": order["_id"]})
    assert payment["status"] == "Refunded"
    assert payment["refund_amount"] == 500.0
    assert payment["gateway_refund_id"] == "rfnd_wh_1"
    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Refunded"


async def test_failed_handler_releases_dedupe_key(store, gateway, signer):
    body = _captured_body(signer, gateway_order_id="order_gw_x", notes={"order_id": "64b7f0c2a1b2c3d4e5f60789"})

    with pytest.raises(Exception):
        await _deliver(store, gateway, signer, body)

    assert await store.db.idempotency_keys.count_documents({}) == 0


async def test_capture_of_retry_wins_over_earlier_declined_attempt(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    declined = signer.body(
        "payment.failed",
        "payment",
        {"id": "pay_A", "order_id": checkout["gateway_order_id"], "status": "failed", "error_description": "Card declined"},
    )

    assert (await _deliver(store, gateway, signer, declined))["result"] == "failed"
    assert (await store.db.orders.find_one({"_id": order["_id"]}))["payment_status"] == "Failed"

    response = await _deliver(
        store, gateway, signer,
        _captured_body(signer, gateway_order_id=checkout["gateway_order_id"], payment_id="pay_B"),
    )

    assert response["result"] == "captured"
    payment = await store.db.payments.find_one({"gateway_order_id": checkout["gateway_order_id"]})
    assert payment["status"] == "Completed"
    assert payment["gateway_payment_id"] == "pay_B"
    saved = await store.db.orders.find_one({"_id": order["_id"]})
    assert saved["payment_status"] == "Paid"
    assert saved["status"] == "Received"
    assert await store.db.outbox_tasks.count_documents({"key": str(order["_id"])}) == 1
    assert await store.db.reconciliation_flags.count_documents({}) == 0


async def test_capture_of_the_declined_attempt_itself_is_flagged(store, gateway, signer, order_factory):
    order = await order_factory()
    checkout = await _checkout(store, gateway, order)
    declined = signer.body(
        "payment.failed",
        "payment",
        {"id": "pay_A", "order_id": checkout["gateway_order_id"], "status": "failed"},
    )
    await _deliver(store, gateway, signer, declined)

    response = await _deliver(
        store, gateway, signer,
        _captured_body(signer, gateway_order_id=checkout["gateway_order_id"], payment_id="pay_A"),
    )

    assert response["result"] == "rejected"
    assert response["flagged"] == "capture_after_failure"
    assert (await store.db.orders.find_one({"_id": order["_id"]}))["payment_status"] == "Failed"


async def test_captured_with_unparseable_order_note_is_acknowledged(store, gateway, signer):
    body = _captured_body(signer, gateway_order_id="order_gw_bad", notes={"order_id": "not-an-object-id"})

    response = await _deliver(store, gateway, signer, body)

    assert response == {"success": True, "ignored": True, "reason": "unknown order"}
    assert await store.db.payments.count_documents({}) == 0
    assert await store.db.idempotency_keys.count_documents({"status": "completed"}) == 1
