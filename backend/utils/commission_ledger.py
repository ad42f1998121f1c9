import logging
from collections import defaultdict
from datetime import datetime

from config.constants import PARTY_DELIVERY_BOY, PARTY_SELLER
from models.commission import (
    ALLOWED_TRANSITIONS,
    Breakdown,
    BreakdownLine,
    CommissionStatus,
    CommissionSummary,
    CommissionType,
    CommissionView,
    LedgerResult,
)
from models.order import OrderStatus, SettlementStatus, is_cod
from models.wallet import WalletEntryType
from utils.breakdown import compute_breakdown
from utils.errors import (
    CommissionNotFound,
    InvalidCommissionTransition,
    OrderNotDelivered,
    OrderNotFound,
    PartyNotFound,
)
from utils.money import round_money
from utils.mongo import to_object_id
from utils.platform_wallet import apply_platform_wallet_changes
from utils.transactions import join_or_begin
from utils.wallet_service import credit_wallet, debit_wallet

logger = logging.getLogger(__name__)


# ==============================
# Helpers (run inside a unit of work)
# ==============================

async def load_order(uow, order_id) -> dict:
    order = await uow.db.orders.find_one({"_id": to_object_id(order_id)}, session=uow.session)
    if not order:
        raise OrderNotFound(order_id)
    return order


def order_label(order: dict) -> str:
    return order.get("order_number") or str(order["_id"])


def settlement_status(order: dict) -> str | None:
    return (order.get("settlement") or {}).get("status")


async def set_settlement_status(uow, order: dict, status: SettlementStatus) -> None:
    now = datetime.utcnow()
    await uow.db.orders.update_one(
        {"_id": order["_id"]},
        {"$set": {
            "settlement.status": status.value,
            "settlement.updated_at": now,
            **({"settlement.settled_at": now} if status == SettlementStatus.SETTLED else {}),
        }},
        session=uow.session,
    )
    order.setdefault("settlement", {})["status"] = status.value


async def insert_seller_commission(
    uow,
    order: dict,
    line: BreakdownLine,
    status: CommissionStatus,
) -> dict:
    now = datetime.utcnow()
    doc = {
        "order_id": order["_id"],
        "order_item_id": to_object_id(line.order_item_id),
        "seller_id": to_object_id(line.seller_id),
        "delivery_boy_id": None,
        "type": CommissionType.SELLER.value,
        "order_amount": line.line_total,
        "commission_rate": line.commission_rate,
        "commission_amount": line.commission_amount,
        "party_earning": line.seller_earning,
        "status": status.value,
        "paid_at": now if status == CommissionStatus.PAID else None,
        "cancelled_at": None,
        "created_at": now,
    }
    result = await uow.db.commissions.insert_one(doc, session=uow.session)
    doc["_id"] = result.inserted_id

    # Pin the resolved rate on the line so later breakdowns do not drift
    await uow.db.order_items.update_one(
        {"_id": doc["order_item_id"]},
        {"$set": {"commission_rate": line.commission_rate, "commission_amount": line.commission_amount}},
        session=uow.session,
    )
    return doc


async def insert_delivery_commission(
    uow,
    order: dict,
    breakdown: Breakdown,
    status: CommissionStatus,
) -> dict:
    now = datetime.utcnow()
    doc = {
        "order_id": order["_id"],
        "order_item_id": None,
        "seller_id": None,
        "delivery_boy_id": order["delivery_boy_id"],
        "type": CommissionType.DELIVERY_BOY.value,
        "delivery_basis": breakdown.delivery_basis.value,
        "order_amount": breakdown.delivery_commission_base,
        "commission_rate": breakdown.delivery_commission_rate,
        "commission_amount": breakdown.delivery_boy_commission,
        "party_earning": breakdown.delivery_boy_commission,
        "status": status.value,
        "paid_at": now if status == CommissionStatus.PAID else None,
        "cancelled_at": None,
        "created_at": now,
    }
    result = await uow.db.commissions.insert_one(doc, session=uow.session)
    doc["_id"] = result.inserted_id
    return doc


def party_earning(commission: dict) -> float:
    if commission.get("party_earning") is not None:
        return round_money(commission["party_earning"])
    if commission["type"] == CommissionType.SELLER.value:
        return round_money(commission["order_amount"] - commission["commission_amount"])
    return round_money(commission["commission_amount"])


async def transition_commission(uow, commission: dict, target: CommissionStatus) -> dict:
    """
    Move one commission along Pending -> Paid -> Cancelled.
    The status filter on the write turns a concurrent transition into an error.
    """
    current = CommissionStatus(commission["status"])
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidCommissionTransition(commission["_id"], current.value, target.value)

    now = datetime.utcnow()
    changes = {"status": target.value, "updated_at": now}
    if target == CommissionStatus.PAID:
        changes["paid_at"] = now
    elif target == CommissionStatus.CANCELLED:
        changes["cancelled_at"] = now

    result = await uow.db.commissions.update_one(
        {"_id": commission["_id"], "status": current.value},
        {"$set": changes},
        session=uow.session,
    )
    if result.matched_count == 0:
        raise InvalidCommissionTransition(commission["_id"], current.value, target.value)

    commission.update(changes)
    return commission


async def get_commission(db, commission_id) -> dict:
    commission = await db.commissions.find_one({"_id": to_object_id(commission_id)})
    if not commission:
        raise CommissionNotFound(commission_id)
    return commission


# ======================================================
# CREATE (order paid)
# ======================================================

async def create_pending_commissions(db, order_id, *, uow=None) -> LedgerResult:
    """
    One SELLER commission per order item; no-op if the order already has any.
    Prepaid money has cleared, so those are born Paid and credited at once.
    COD sellers wait for the agent's remittance and are born Pending.
    """
    async with join_or_begin(db, uow) as uow:
        order = await load_order(uow, order_id)

        existing = await uow.db.commissions.find_one({"order_id": order["_id"]}, session=uow.session)
        if existing:
            logger.info("COMMISSIONS_EXIST order=%s", order_label(order))
            return LedgerResult(message="Commissions already exist", order_id=str(order["_id"]))

        breakdown = await compute_breakdown(uow.db, order["_id"], uow=uow)
        prepaid = not is_cod(order)
        status = CommissionStatus.PAID if prepaid else CommissionStatus.PENDING

        created = []
        credited = 0.0
        for line in breakdown.lines:
            commission = await insert_seller_commission(uow, order, line, status)
            created.append(str(commission["_id"]))

            if prepaid:
                await credit_wallet(
                    uow,
                    line.seller_id,
                    PARTY_SELLER,
                    line.seller_earning,
                    f"Sale proceeds from Order #{order_label(order)}",
                    order["_id"],
                    commission["_id"],
                    entry_type=WalletEntryType.SALE_PROCEEDS,
                )
                credited += line.seller_earning

        if credited:
            await apply_platform_wallet_changes(uow, seller_pending_payouts=credited)

    logger.info(
        "COMMISSIONS_CREATED order=%s count=%s status=%s",
        order_label(order), len(created), status.value,
    )
    return LedgerResult(
        message="Commissions created",
        order_id=str(order["_id"]),
        commission_ids=created,
    )


# ======================================================
# DISTRIBUTE (order delivered)
# ======================================================

async def _distribute_prepaid(uow, order: dict) -> list[str]:
    breakdown = await compute_breakdown(uow.db, order["_id"], uow=uow)
    processed = []

    seller_commissions = await uow.db.commissions.find(
        {"order_id": order["_id"], "type": CommissionType.SELLER.value},
        session=uow.session,
    ).sort("_id", 1).to_list(None)

    # seller_id -> (net earning, commission ids)
    earnings = defaultdict(lambda: [0.0, []])

    if not seller_commissions:
        logger.warning("COMMISSIONS_LAZY_CREATE order=%s", order_label(order))
        for line in breakdown.lines:
            commission = await insert_seller_commission(uow, order, line, CommissionStatus.PAID)
            earnings[line.seller_id][0] += line.seller_earning
            earnings[line.seller_id][1].append(commission["_id"])
            processed.append(str(commission["_id"]))
    else:
        for commission in seller_commissions:
            if commission["status"] != CommissionStatus.PENDING.value:
                continue
            await transition_commission(uow, commission, CommissionStatus.PAID)
            seller_id = str(commission["seller_id"])
            earnings[seller_id][0] += party_earning(commission)
            earnings[seller_id][1].append(commission["_id"])
            processed.append(str(commission["_id"]))

    seller_credit = 0.0
    for seller_id, (net, commission_ids) in earnings.items():
        await credit_wallet(
            uow,
            seller_id,
            PARTY_SELLER,
            net,
            f"Sale proceeds for order {order_label(order)}",
            order["_id"],
            commission_ids[0],
            entry_type=WalletEntryType.SALE_PROCEEDS,
        )
        seller_credit += net

    agent_credit = 0.0
    if order.get("delivery_boy_id"):
        delivery = await uow.db.commissions.find_one(
            {"order_id": order["_id"], "type": CommissionType.DELIVERY_BOY.value},
            session=uow.session,
        )
        if delivery is None:
            delivery = await insert_delivery_commission(uow, order, breakdown, CommissionStatus.PAID)
        elif delivery["status"] == CommissionStatus.PENDING.value:
            await transition_commission(uow, delivery, CommissionStatus.PAID)
        else:
            delivery = None

        if delivery is not None:
            agent_credit = party_earning(delivery)
            await credit_wallet(
                uow,
                order["delivery_boy_id"],
                PARTY_DELIVERY_BOY,
                agent_credit,
                f"Delivery earning for order {order_label(order)}",
                order["_id"],
                delivery["_id"],
                entry_type=WalletEntryType.DELIVERY_EARNING,
            )
            processed.append(str(delivery["_id"]))

    deltas = {
        "seller_pending_payouts": seller_credit,
        "delivery_boy_pending_payouts": agent_credit,
    }
    if settlement_status(order) not in {SettlementStatus.SETTLED.value, SettlementStatus.REVERSED.value}:
        inflow = round_money(breakdown.total_order_amount - breakdown.delivery_boy_commission)
        deltas.update({
            "total_admin_earning": breakdown.total_admin_earning,
            "total_platform_earning": inflow,
            "current_platform_balance": inflow,
        })
        await set_settlement_status(uow, order, SettlementStatus.SETTLED)

    if any(deltas.values()):
        await apply_platform_wallet_changes(uow, **deltas)

    return processed


async def distribute_commissions(db, order_id, *, uow=None) -> LedgerResult:
    """
    Pending -> Paid for a delivered order, crediting every party.
    COD orders are handed to the COD settlement coordinator: sellers stay
    deferred until the agent remits the cash.
    """
    from utils.cod_settlement import process_cod_order_delivery

    async with join_or_begin(db, uow) as uow:
        order = await load_order(uow, order_id)

        if order.get("status") != OrderStatus.DELIVERED.value:
            raise OrderNotDelivered(order_id, order.get("status"))

        if is_cod(order):
            logger.info("COMMISSIONS_DELEGATE_COD order=%s", order_label(order))
            return await process_cod_order_delivery(db, order["_id"], uow=uow)

        processed = await _distribute_prepaid(uow, order)

    logger.info("COMMISSIONS_DISTRIBUTED order=%s count=%s", order_label(order), len(processed))
    return LedgerResult(
        message="Commissions distributed successfully" if processed else "No pending commissions to distribute",
        order_id=str(order["_id"]),
        commission_ids=processed,
    )


# ======================================================
# REVERSE (order cancelled / returned)
# ======================================================

async def reverse_commissions(db, order_id, *, uow=None) -> LedgerResult:
    """
    Paid -> Cancelled with a compensating debit of what the party was
    credited. Pending commissions are cancelled without money movement.
    Nothing to reverse is a success, not an error.
    """
    async with join_or_begin(db, uow) as uow:
        order_oid = to_object_id(order_id)
        commissions = await uow.db.commissions.find(
            {"order_id": order_oid},
            session=uow.session,
        ).sort("_id", 1).to_list(None)

        if not commissions:
            return LedgerResult(message="No commissions to reverse", order_id=str(order_id))

        order = await load_order(uow, order_oid)

        reversed_ids = []
        debits = {PARTY_SELLER: 0.0, PARTY_DELIVERY_BOY: 0.0}

        for commission in commissions:
            status = commission["status"]
            if status == CommissionStatus.CANCELLED.value:
                continue

            await transition_commission(uow, commission, CommissionStatus.CANCELLED)
            reversed_ids.append(str(commission["_id"]))

            if status != CommissionStatus.PAID.value:
                continue

            if commission["type"] == CommissionType.SELLER.value:
                party_type, party_id = PARTY_SELLER, commission.get("seller_id")
            else:
                party_type, party_id = PARTY_DELIVERY_BOY, commission.get("delivery_boy_id")
            if not party_id:
                continue

            amount = party_earning(commission)
            await debit_wallet(
                uow,
                party_id,
                party_type,
                amount,
                f"Commission reversal for cancelled order {order_label(order)}",
                order["_id"],
                commission["_id"],
                entry_type=WalletEntryType.COMMISSION_REVERSAL,
            )
            debits[party_type] += amount

        deltas = {
            "seller_pending_payouts": -debits[PARTY_SELLER],
            "delivery_boy_pending_payouts": -debits[PARTY_DELIVERY_BOY],
        }

        current = settlement_status(order)
        if current == SettlementStatus.SETTLED.value:
            breakdown = await compute_breakdown(uow.db, order["_id"], uow=uow)
            deltas["total_admin_earning"] = -breakdown.total_admin_earning

        elif current == SettlementStatus.AWAITING_REMITTANCE.value:
            # The agent no longer owes cash for an order that was undone
            breakdown = await compute_breakdown(uow.db, order["_id"], uow=uow)
            owed = breakdown.amount_agent_owes_admin or 0.0
            await _release_agent_cash(uow, order, owed, breakdown.total_order_amount)
            deltas["pending_from_delivery_boy"] = -owed

        if current is not None and current != SettlementStatus.REVERSED.value:
            await set_settlement_status(uow, order, SettlementStatus.REVERSED)

        if any(deltas.values()):
            await apply_platform_wallet_changes(uow, **deltas)

    logger.info("COMMISSIONS_REVERSED order=%s count=%s", order_label(order), len(reversed_ids))
    return LedgerResult(
        message="Commissions reversed successfully" if reversed_ids else "No commissions to reverse",
        order_id=str(order["_id"]),
        commission_ids=reversed_ids,
    )


async def _release_agent_cash(uow, order: dict, owed: float, total: float) -> None:
    agent = await uow.db.users.find_one(
        {"_id": order["delivery_boy_id"], "role": "delivery"},
        session=uow.session,
    )
    if not agent:
        raise PartyNotFound(order["delivery_boy_id"], PARTY_DELIVERY_BOY)

    await uow.db.users.update_one(
        {"_id": agent["_id"]},
        {"$set": {
            "pending_admin_payout": max(0.0, round_money((agent.get("pending_admin_payout") or 0) - owed)),
            "cash_collected": max(0.0, round_money((agent.get("cash_collected") or 0) - total)),
        }},
        session=uow.session,
    )


# ======================================================
# READS
# ======================================================

async def get_commission_summary(db, user_id, user_type: str) -> CommissionSummary:
    field = "seller_id" if user_type == PARTY_SELLER else "delivery_boy_id"
    commissions = await db.commissions.find(
        {field: to_object_id(user_id)}
    ).sort([("created_at", -1), ("_id", -1)]).to_list(None)

    summary = CommissionSummary(count=len(commissions))
    for c in commissions:
        # Sellers earn the line minus commission; agents earn the commission itself
        earning = party_earning(c)
        summary.total += earning
        if c["status"] == CommissionStatus.PAID.value:
            summary.paid += earning
        elif c["status"] == CommissionStatus.PENDING.value:
            summary.pending += earning

        summary.commissions.append(CommissionView(
            id=str(c["_id"]),
            order_id=str(c["order_id"]),
            type=c["type"],
            amount=c["commission_amount"],
            rate=c["commission_rate"],
            order_amount=c["order_amount"],
            earning=earning,
            status=c["status"],
            paid_at=c.get("paid_at"),
            created_at=c.get("created_at"),
        ))

    summary.total = round_money(summary.total)
    summary.paid = round_money(summary.paid)
    summary.pending = round_money(summary.pending)
    return summary


async def list_admin_earnings(
    db,
    *,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict:
    query = {}
    if status:
        query["status"] = status
    if date_from or date_to:
        query["created_at"] = {}
        if date_from:
            query["created_at"]["$gte"] = date_from
        if date_to:
            query["created_at"]["$lte"] = date_to

    page = max(1, page)
    limit = max(1, min(limit, 100))

    rows = (
        await db.commissions.find(query)
        .sort([("created_at", -1), ("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(limit)
    )
    total = await db.commissions.count_documents(query)

    earnings = []
    for c in rows:
        party_id = c.get("seller_id") if c["type"] == CommissionType.SELLER.value else c.get("delivery_boy_id")
        party = await db.users.find_one({"_id": party_id}) if party_id else None
        order = await db.orders.find_one({"_id": c["order_id"]}, {"order_number": 1})

        source = "Unknown"
        if party:
            source = (
                (party.get("seller_profile") or {}).get("brand_name")
                or party.get("name")
                or party.get("phone")
                or source
            )

        earnings.append({
            "id": str(c["_id"]),
            "source": source,
            "source_type": c["type"],
            "amount": c["commission_amount"],
            "date": c.get("created_at"),
            "status": c["status"],
            "description": f"Order #{(order or {}).get('order_number') or 'Unknown'}",
            "order_id": str(c["order_id"]),
        })

    return {
        "earnings": earnings,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
