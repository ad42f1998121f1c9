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
    # Users
    await _create_index_safe(
        db.users,
        [("phone", ASCENDING)],
        name="users_phone_unique_idx",
        unique=True,
        sparse=True,
    )
    await _create_index_safe(
        db.users,
        [("role", ASCENDING)],
        name="users_role_idx",
    )

    # Orders: remittance lookback scans this agent's deferred COD orders
    await _create_index_safe(
        db.orders,
        [("delivery_boy_id", ASCENDING), ("payment_method", ASCENDING), ("settlement.status", ASCENDING)],
        name="orders_agent_cod_settlement_idx",
    )
    await _create_index_safe(
        db.orders,
        [("settlement.status", ASCENDING)],
        name="orders_settlement_status_idx",
    )
    await _create_index_safe(
        db.order_items,
        [("order_id", ASCENDING)],
        name="order_items_order_idx",
    )

    # Commissions
    await _create_index_safe(
        db.commissions,
        [("order_id", ASCENDING), ("type", ASCENDING)],
        name="commissions_order_type_idx",
    )
    await _create_index_safe(
        db.commissions,
        [("order_item_id", ASCENDING)],
        name="commissions_order_item_unique",
        unique=True,
        partialFilterExpression={"type": "SELLER"},
    )
    await _create_index_safe(
        db.commissions,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="commissions_seller_created_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.commissions,
        [("delivery_boy_id", ASCENDING), ("created_at", DESCENDING)],
        name="commissions_agent_created_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.commissions,
        [("type", ASCENDING), ("status", ASCENDING), ("created_at", ASCENDING)],
        name="commissions_type_status_created_idx",
    )

    # Wallet transactions
    await _create_index_safe(
        db.wallet_transactions,
        [("party_id", ASCENDING), ("created_at", DESCENDING)],
        name="wallet_transactions_party_created_idx",
    )
    await _create_index_safe(
        db.wallet_transactions,
        [("related_order_id", ASCENDING), ("party_id", ASCENDING), ("entry_type", ASCENDING)],
        name="wallet_transactions_order_party_entry_idx",
        sparse=True,
    )

    # Remittances
    await _create_index_safe(
        db.cod_remittances,
        [("payment_reference", ASCENDING)],
        name="cod_remittances_reference_unique",
        unique=True,
    )
    await _create_index_safe(
        db.cod_remittances,
        [("delivery_boy_id", ASCENDING), ("created_at", DESCENDING)],
        name="cod_remittances_agent_created_idx",
    )
    await _create_index_safe(
        db.cod_remittance_checkouts,
        [("razorpay_order_id", ASCENDING)],
        name="cod_remittance_checkouts_order_unique",
        unique=True,
    )

    # Withdrawals
    await _create_index_safe(
        db.withdraw_requests,
        [("status", ASCENDING), ("requested_at", DESCENDING)],
        name="withdraw_requests_status_requested_at_idx",
    )
    await _create_index_safe(
        db.withdraw_requests,
        [("party_id", ASCENDING), ("requested_at", DESCENDING)],
        name="withdraw_requests_party_requested_at_idx",
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
