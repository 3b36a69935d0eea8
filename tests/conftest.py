import json

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from jose import jwt
from mongomock_motor import AsyncMongoMockClient

from database import LedgerStore, get_db, get_store
from models.commission import BeneficiaryType
from utils.indexes import ensure_indexes
from utils.razorpay import RazorpayGateway, get_gateway
from utils.signatures import checkout_payload, compute_signature

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
JWT_TEST_SECRET = "test-jwt-secret"


class StubGateway(RazorpayGateway):
    """Razorpay adapter with the HTTP hop replaced by canned responses."""

    def __init__(self):
        super().__init__(key_id=KEY_ID, key_secret=KEY_SECRET, webhook_secret=WEBHOOK_SECRET)
        self.calls = []
        self.fail_with = None
        self._orders = 0

    def _request(self, method, path, payload=None):
        self.calls.append((method, path, payload))
        if self.fail_with is not None:
            raise self.fail_with

        if path == "/orders":
            self._orders += 1
            return {
                "id": f"order_test_{self._orders}",
                "amount": payload["amount"],
                "currency": payload["currency"],
                "receipt": payload["receipt"],
            }
        if path.endswith("/refund"):
            return {"id": "rfnd_test_1", "amount": payload["amount"]}

        raise AssertionError(f"unexpected gateway call {method} {path}")


@pytest.fixture(autouse=True)
def secrets(monkeypatch):
    monkeypatch.setattr("utils.jwt.JWT_SECRET", JWT_TEST_SECRET)
    monkeypatch.setattr("utils.crypto.BANK_DATA_ENCRYPTION_KEY", "test-bank-key")


@pytest.fixture
async def store():
    client = AsyncMongoMockClient()
    ledger = LedgerStore(client, "ledger_test", transactions=False)
    await ensure_indexes(ledger.db)
    return ledger


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
async def users(store):
    ids = {
        "customer": ObjectId(),
        "other_customer": ObjectId(),
        "seller": ObjectId(),
        "delivery": ObjectId(),
        "admin": ObjectId(),
    }
    roles = {
        "customer": "customer",
        "other_customer": "customer",
        "seller": "seller",
        "delivery": "delivery",
        "admin": "admin",
    }
    for name, user_id in ids.items():
        await store.db.users.insert_one({"_id": user_id, "role": roles[name], "name": name})

    await store.db.sellers.insert_one({"_id": ids["seller"], "commission_rate": None})
    await store.db.delivery_partners.insert_one({"_id": ids["delivery"], "commission_rate": None})
    return ids


@pytest.fixture
def order_factory(store, users):
    async def create(
        *,
        total=500.0,
        subtotal=None,
        items=None,
        status="Pending",
        payment_status="Pending",
        delivery_partner_id=None,
        customer_id=None,
    ):
        order_id = ObjectId()
        if items is None:
            items = [{
                "product_id": ObjectId(),
                "seller_id": users["seller"],
                "name": "Test item",
                "price": total,
                "quantity": 1,
                "total": total,
            }]
        order = {
            "_id": order_id,
            "order_number": f"ORD-{str(order_id)[-6:]}",
            "customer_id": customer_id or users["customer"],
            "items": items,
            "subtotal": subtotal if subtotal is not None else total,
            "total": total,
            "status": status,
            "payment_status": payment_status,
            "payment_method": "razorpay",
            "gateway_payment_id": None,
            "delivery_partner_id": delivery_partner_id,
        }
        await store.db.orders.insert_one(order)
        return order

    return create


@pytest.fixture
def paid_order(store, gateway, users, order_factory):
    """Order taken through checkout + client verify."""
    from utils.payment_service import create_gateway_order, verify_and_capture

    async def create(**kwargs):
        order = await order_factory(**kwargs)
        checkout = await create_gateway_order(
            store, gateway, order_id=order["_id"], customer_id=order["customer_id"]
        )
        payment_id = f"pay_{str(order['_id'])[-8:]}"
        await verify_and_capture(
            store,
            gateway,
            order_id=order["_id"],
            customer_id=order["customer_id"],
            gateway_order_id=checkout["gateway_order_id"],
            gateway_payment_id=payment_id,
            signature=checkout_signature(checkout["gateway_order_id"], payment_id),
        )
        return await store.db.orders.find_one({"_id": order["_id"]}), checkout["gateway_order_id"]

    return create


@pytest.fixture
def credit_wallet(store):
    """Seed available balance through the ledger write path."""
    from models.wallet import ENTRY_COMMISSION_CREDIT, TransactionType
    from utils.wallet_service import append_wallet_transaction

    async def credit(beneficiary_id, amount, beneficiary_type=BeneficiaryType.SELLER):
        return await append_wallet_transaction(
            store.db,
            beneficiary_id=beneficiary_id,
            beneficiary_type=beneficiary_type,
            amount=amount,
            txn_type=TransactionType.CREDIT,
            entry_type=ENTRY_COMMISSION_CREDIT,
            description="seed",
            reference=f"CR-seed-{ObjectId()}",
        )

    return credit


def checkout_signature(gateway_order_id, gateway_payment_id, secret=KEY_SECRET):
    return compute_signature(checkout_payload(gateway_order_id, gateway_payment_id), secret)


def webhook_body(event: str, entity_name: str, entity: dict) -> bytes:
    return json.dumps({
        "entity": "event",
        "event": event,
        "payload": {entity_name: {"entity": entity}},
    }).encode("utf-8")


def webhook_signature(raw_body: bytes, secret=WEBHOOK_SECRET):
    return compute_signature(raw_body, secret)


@pytest.fixture
def signer():
    class Signer:
        checkout = staticmethod(checkout_signature)
        webhook = staticmethod(webhook_signature)
        body = staticmethod(webhook_body)

    return Signer


@pytest.fixture
def auth_headers(users):
    def headers(name: str) -> dict:
        token = jwt.encode({"sub": str(users[name])}, JWT_TEST_SECRET, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return headers


@pytest.fixture
async def client(store, gateway):
    from main import app

    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_db] = lambda: store.db
    app.dependency_overrides[get_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
