import logging
from datetime import datetime

from pymongo import ReturnDocument

from config.constants import PLATFORM_WALLET_ID
from models.order import SettlementStatus, is_cod
from models.wallet import FinancialDashboard, PlatformWallet, WithdrawStatus
from utils.breakdown import compute_breakdown
from utils.commission_settings import load_commission_settings
from utils.money import round_money

logger = logging.getLogger(__name__)

# Liability counters never go below zero
CLAMPED_FIELDS = {
    "pending_from_delivery_boy",
    "seller_pending_payouts",
    "delivery_boy_pending_payouts",
}


async def get_or_create_platform_wallet(uow) -> dict:
    zeros = PlatformWallet().model_dump()
    return await uow.db.platform_wallet.find_one_and_update(
        {"_id": PLATFORM_WALLET_ID},
        {"$setOnInsert": {**zeros, "created_at": datetime.utcnow()}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        session=uow.session,
    )


async def apply_platform_wallet_changes(uow, **deltas: float) -> dict:
    """
    Apply signed deltas to the aggregate inside the caller's unit of work.
    Returns the wallet document as written.
    """
    wallet = await get_or_create_platform_wallet(uow)

    updates = {}
    for field, delta in deltas.items():
        if field not in PlatformWallet.model_fields:
            raise KeyError(f"Unknown platform wallet field: {field}")
        value = round_money((wallet.get(field) or 0) + (delta or 0))
        if field in CLAMPED_FIELDS:
            value = max(0.0, value)
        updates[field] = value

    if not updates:
        return wallet

    updates["updated_at"] = datetime.utcnow()
    await uow.db.platform_wallet.update_one(
        {"_id": PLATFORM_WALLET_ID},
        {"$set": updates},
        session=uow.session,
    )
    wallet.update(updates)
    return wallet


# =========================================================
# DASHBOARD
# =========================================================

async def _sum(collection, match: dict, field: str) -> float:
    rows = await collection.aggregate([
        {"$match": match},
        {"$group": {"_id": None, "amount": {"$sum": f"${field}"}}},
    ]).to_list(1)
    return round_money(rows[0]["amount"]) if rows else 0.0


async def _recompute_earnings(db) -> dict:
    """
    Rebuild the aggregate's earning figures from orders, remittances and
    withdrawals using the same formulas the ledger applies incrementally.
    """
    settings = await load_commission_settings(db)

    admin_earning = 0.0
    inflow = 0.0

    cursor = db.orders.find({
        "settlement.status": {"$in": [SettlementStatus.SETTLED.value, SettlementStatus.REVERSED.value]},
    })
    async for order in cursor:
        breakdown = await compute_breakdown(db, order["_id"], settings=settings)
        status = (order.get("settlement") or {}).get("status")

        if status == SettlementStatus.SETTLED.value:
            admin_earning += breakdown.total_admin_earning

        if not is_cod(order):
            inflow += breakdown.total_order_amount - breakdown.delivery_boy_commission

    inflow += await _sum(db.cod_remittances, {}, "amount")

    return {
        "total_admin_earning": round_money(admin_earning),
        "total_platform_earning": round_money(inflow),
    }


async def get_financial_dashboard(db) -> FinancialDashboard:
    wallet = await db.platform_wallet.find_one({"_id": PLATFORM_WALLET_ID})

    # Real-time liabilities from party balances
    seller_pending = await _sum(db.users, {"role": "seller"}, "balance")
    agent_pending = await _sum(db.users, {"role": "delivery"}, "balance")
    owed_by_agents = await _sum(db.users, {"role": "delivery"}, "pending_admin_payout")

    total_withdrawals = await _sum(
        db.withdraw_requests, {"status": WithdrawStatus.COMPLETED.value}, "amount"
    )
    pending_withdrawals = await db.withdraw_requests.count_documents(
        {"status": WithdrawStatus.PENDING.value}
    )

    if wallet:
        source = "aggregate"
        earnings = {
            "total_admin_earning": round_money(wallet.get("total_admin_earning")),
            "total_platform_earning": round_money(wallet.get("total_platform_earning")),
        }
        balance = round_money(wallet.get("current_platform_balance"))
    else:
        source = "recomputed"
        logger.info("DASHBOARD_FALLBACK platform wallet not created yet")
        earnings = await _recompute_earnings(db)
        balance = round_money(earnings["total_platform_earning"] - total_withdrawals)

    return FinancialDashboard(
        source=source,
        total_platform_earning=earnings["total_platform_earning"],
        current_platform_balance=balance,
        total_admin_earning=earnings["total_admin_earning"],
        total_withdrawals=total_withdrawals,
        pending_from_delivery_boy=owed_by_agents,
        seller_pending_payouts=seller_pending,
        delivery_boy_pending_payouts=agent_pending,
        pending_withdrawals_count=pending_withdrawals,
    )
