import logging
from datetime import datetime

from config.constants import PARTY_ROLES, WALLET_TRANSACTION_PAGE_LIMIT
from models.wallet import ReconciliationReport, TransactionType, WalletEntryType
from utils.errors import InvalidAmount, PartyNotFound
from utils.money import round_money
from utils.mongo import to_object_id

logger = logging.getLogger(__name__)


# ==============================
# Core: append-only wallet write
# ==============================

async def _write_wallet_entry(
    uow,
    *,
    party_id,
    party_type: str,
    amount: float,
    txn_type: TransactionType,
    entry_type: WalletEntryType,
    description: str,
    related_order_id=None,
    related_commission_id=None,
    reference: str | None = None,
) -> dict:
    amount = round_money(amount)
    if amount < 0:
        raise InvalidAmount(f"Wallet amount cannot be negative: {amount}")

    party_oid = to_object_id(party_id)
    role = PARTY_ROLES[party_type]
    signed = amount if txn_type == TransactionType.CREDIT else -amount

    party = await uow.db.users.find_one(
        {"_id": party_oid, "role": role},
        {"_id": 1},
        session=uow.session,
    )
    if not party:
        raise PartyNotFound(party_id, party_type)

    # Ledger entry is written before the balance moves
    entry = {
        "party_id": party_oid,
        "party_type": party_type,
        "amount": amount,
        "type": txn_type.value,
        "entry_type": entry_type.value,
        "description": description,
        "status": "Completed",
        "related_order_id": to_object_id(related_order_id),
        "related_commission_id": to_object_id(related_commission_id),
        "reference": reference,
        "created_at": datetime.utcnow(),
    }
    insert = await uow.db.wallet_transactions.insert_one(entry, session=uow.session)
    entry["_id"] = insert.inserted_id

    await uow.db.users.update_one(
        {"_id": party_oid, "role": role},
        {"$inc": {"balance": signed}},
        session=uow.session,
    )

    logger.info(
        "WALLET_%s party=%s type=%s amount=%s entry=%s order=%s",
        txn_type.value.upper(), party_oid, party_type, amount, entry_type.value, related_order_id,
    )
    return entry


async def credit_wallet(
    uow,
    party_id,
    party_type: str,
    amount: float,
    description: str,
    related_order_id=None,
    related_commission_id=None,
    *,
    entry_type: WalletEntryType = WalletEntryType.SALE_PROCEEDS,
    reference: str | None = None,
) -> dict:
    return await _write_wallet_entry(
        uow,
        party_id=party_id,
        party_type=party_type,
        amount=amount,
        txn_type=TransactionType.CREDIT,
        entry_type=entry_type,
        description=description,
        related_order_id=related_order_id,
        related_commission_id=related_commission_id,
        reference=reference,
    )


async def debit_wallet(
    uow,
    party_id,
    party_type: str,
    amount: float,
    description: str,
    related_order_id=None,
    related_commission_id=None,
    *,
    entry_type: WalletEntryType = WalletEntryType.COMMISSION_REVERSAL,
    reference: str | None = None,
) -> dict:
    return await _write_wallet_entry(
        uow,
        party_id=party_id,
        party_type=party_type,
        amount=amount,
        txn_type=TransactionType.DEBIT,
        entry_type=entry_type,
        description=description,
        related_order_id=related_order_id,
        related_commission_id=related_commission_id,
        reference=reference,
    )


# ==============================
# Ledger balance (derived only)
# ==============================

async def get_ledger_balance(db, party_id) -> float:
    pipeline = [
        {"$match": {"party_id": to_object_id(party_id)}},
        {"$group": {
            "_id": "$type",
            "amount": {"$sum": "$amount"},
        }},
    ]

    rows = await db.wallet_transactions.aggregate(pipeline).to_list(None)
    summary = {r["_id"]: r["amount"] for r in rows}

    return round_money(
        summary.get(TransactionType.CREDIT.value, 0) - summary.get(TransactionType.DEBIT.value, 0)
    )


async def reconcile_party_balance(db, party_id) -> ReconciliationReport:
    party = await db.users.find_one({"_id": to_object_id(party_id)})
    if not party or party.get("role") not in PARTY_ROLES.values():
        raise PartyNotFound(party_id, "party")

    party_type = next(t for t, role in PARTY_ROLES.items() if role == party["role"])
    stored = round_money(party.get("balance") or 0)
    derived = await get_ledger_balance(db, party["_id"])

    if stored != derived:
        logger.warning("WALLET_OUT_OF_SYNC party=%s stored=%s ledger=%s", party["_id"], stored, derived)

    return ReconciliationReport(
        party_id=str(party["_id"]),
        party_type=party_type,
        stored_balance=stored,
        ledger_balance=derived,
        in_sync=stored == derived,
    )


# ==============================
# Reads
# ==============================

async def get_wallet_transactions(
    db,
    *,
    party_id=None,
    party_type: str | None = None,
    txn_type: str | None = None,
    related_order_id=None,
    page: int = 1,
    limit: int = WALLET_TRANSACTION_PAGE_LIMIT,
) -> dict:
    query = {}
    if party_id is not None:
        query["party_id"] = to_object_id(party_id)
    if party_type:
        query["party_type"] = party_type
    if txn_type:
        query["type"] = txn_type
    if related_order_id is not None:
        query["related_order_id"] = to_object_id(related_order_id)

    page = max(1, page)
    limit = max(1, min(limit, WALLET_TRANSACTION_PAGE_LIMIT))

    rows = (
        await db.wallet_transactions
        .find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    total = await db.wallet_transactions.count_documents(query)

    return {
        "transactions": rows,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
