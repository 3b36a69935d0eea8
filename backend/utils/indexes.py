from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("customer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_customer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("payment_status", ASCENDING)],
        name="orders_status_payment_status_idx",
    )
    await _create_index_safe(
        db.orders,
        [("status", ASCENDING), ("payment_status", ASCENDING), ("commissions_settled_at", ASCENDING)],
        name="orders_settlement_sweep_idx",
    )

    # Payments: gateway order id decides every capture race
    await _create_index_safe(
        db.payments,
        [("gateway_order_id", ASCENDING)],
        name="payments_gateway_order_unique",
        unique=True,
    )
    await _create_index_safe(
        db.payments,
        [("gateway_payment_id", ASCENDING)],
        name="payments_gateway_payment_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.payments,
        [("order_id", ASCENDING), ("status", ASCENDING)],
        name="payments_order_status_idx",
    )

    # Commissions
    await _create_index_safe(
        db.commissions,
        [("order_id", ASCENDING), ("beneficiary_id", ASCENDING), ("beneficiary_type", ASCENDING)],
        name="commissions_order_beneficiary_unique",
        unique=True,
    )
    await _create_index_safe(
        db.commissions,
        [("beneficiary_id", ASCENDING), ("beneficiary_type", ASCENDING), ("created_at", DESCENDING)],
        name="commissions_beneficiary_created_at_idx",
    )

    # Wallet ledger
    await _create_index_safe(
        db.wallet_transactions,
        [("reference", ASCENDING)],
        name="wallet_transactions_reference_unique",
        unique=True,
    )
    await _create_index_safe(
        db.wallet_transactions,
        [("beneficiary_id", ASCENDING), ("beneficiary_type", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_transactions_beneficiary_created_at_idx",
    )
    await _create_index_safe(
        db.wallets,
        [("beneficiary_id", ASCENDING), ("beneficiary_type", ASCENDING)],
        name="wallets_beneficiary_unique",
        unique=True,
    )

    # Withdrawal requests
    await _create_index_safe(
        db.withdrawal_requests,
        [("beneficiary_id", ASCENDING), ("beneficiary_type", ASCENDING), ("created_at", DESCENDING)],
        name="withdrawal_requests_beneficiary_created_at_idx",
    )
    await _create_index_safe(
        db.withdrawal_requests,
        [("status", ASCENDING), ("created_at", DESCENDING)],
        name="withdrawal_requests_status_created_at_idx",
    )

    # Outbox
    await _create_index_safe(
        db.outbox_tasks,
        [("kind", ASCENDING), ("key", ASCENDING)],
        name="outbox_kind_key_unique",
        unique=True,
    )
    await _create_index_safe(
        db.outbox_tasks,
        [("status", ASCENDING), ("next_attempt_at", ASCENDING)],
        name="outbox_status_next_attempt_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Reconciliation
    await _create_index_safe(
        db.reconciliation_flags,
        [("kind", ASCENDING), ("reference", ASCENDING)],
        name="reconciliation_kind_reference_unique",
        unique=True,
    )
