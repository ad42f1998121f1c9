import logging
from datetime import datetime

from config.constants import MONEY_EPSILON, PARTY_DELIVERY_BOY, PARTY_SELLER
from models.commission import CommissionStatus, CommissionType, LedgerResult
from models.order import OrderStatus, PaymentMethod, SettlementStatus
from models.wallet import RemittanceReceipt, RemittanceResult, WalletEntryType
from utils.breakdown import calculate_cod_order_breakdown, compute_breakdown
from utils.commission_ledger import (
    insert_delivery_commission,
    insert_seller_commission,
    load_order,
    order_label,
    party_earning,
    set_settlement_status,
    transition_commission,
)
from utils.errors import (
    AgentNotAssigned,
    InvalidStateError,
    OrderNotDelivered,
    PartyNotFound,
    RemittanceCheckoutMismatch,
    RemittanceCheckoutNotFound,
    RemittanceExceedsPending,
)
from utils.money import round_money
from utils.mongo import to_object_id
from utils.platform_wallet import apply_platform_wallet_changes
from utils.transactions import join_or_begin
from utils.wallet_service import credit_wallet

logger = logging.getLogger(__name__)


async def _load_agent(uow, agent_id) -> dict:
    agent = await uow.db.users.find_one(
        {"_id": to_object_id(agent_id), "role": "delivery"},
        session=uow.session,
    )
    if not agent:
        raise PartyNotFound(agent_id, PARTY_DELIVERY_BOY)
    return agent


# ======================================================
# PHASE A: COD order delivered
# ======================================================

async def process_cod_order_delivery(db, order_id, *, uow=None) -> LedgerResult:
    """
    Agent is paid their cut at once; sellers wait for the cash.
    The agent now holds the order total and owes the platform everything
    except their own commission.
    """
    async with join_or_begin(db, uow) as uow:
        order = await load_order(uow, order_id)
        breakdown = await calculate_cod_order_breakdown(uow.db, order["_id"], uow=uow)

        agent_id = order.get("delivery_boy_id")
        if not agent_id:
            raise AgentNotAssigned(order_id)
        if order.get("status") != OrderStatus.DELIVERED.value:
            raise OrderNotDelivered(order_id, order.get("status"))

        # ---- Idempotency: one agent earning per order/agent pair
        already_credited = await uow.db.wallet_transactions.find_one(
            {
                "party_id": agent_id,
                "related_order_id": order["_id"],
                "entry_type": WalletEntryType.COD_DELIVERY_EARNING.value,
            },
            session=uow.session,
        )
        already_committed = await uow.db.commissions.find_one(
            {"order_id": order["_id"], "type": CommissionType.DELIVERY_BOY.value},
            session=uow.session,
        )
        if already_credited or already_committed:
            logger.info("COD_DELIVERY_ALREADY_PROCESSED order=%s", order_label(order))
            return LedgerResult(message="COD delivery already processed", order_id=str(order["_id"]))

        created = []

        delivery = await insert_delivery_commission(uow, order, breakdown, CommissionStatus.PAID)
        created.append(str(delivery["_id"]))
        await credit_wallet(
            uow,
            agent_id,
            PARTY_DELIVERY_BOY,
            breakdown.delivery_boy_commission,
            f"Delivery earning for COD order {order_label(order)}",
            order["_id"],
            delivery["_id"],
            entry_type=WalletEntryType.COD_DELIVERY_EARNING,
        )

        owed = breakdown.amount_agent_owes_admin or 0.0
        agent = await _load_agent(uow, agent_id)
        await uow.db.users.update_one(
            {"_id": agent["_id"]},
            {"$set": {
                "pending_admin_payout": round_money((agent.get("pending_admin_payout") or 0) + owed),
                "cash_collected": round_money((agent.get("cash_collected") or 0) + breakdown.total_order_amount),
            }},
            session=uow.session,
        )

        await apply_platform_wallet_changes(
            uow,
            pending_from_delivery_boy=owed,
            delivery_boy_pending_payouts=breakdown.delivery_boy_commission,
        )

        # Sellers deferred until remittance; skip lines created at payment time
        existing = await uow.db.commissions.find(
            {"order_id": order["_id"], "type": CommissionType.SELLER.value},
            {"order_item_id": 1},
            session=uow.session,
        ).to_list(None)
        covered = {str(c.get("order_item_id")) for c in existing}

        for line in breakdown.lines:
            if line.order_item_id in covered:
                continue
            commission = await insert_seller_commission(uow, order, line, CommissionStatus.PENDING)
            created.append(str(commission["_id"]))

        await set_settlement_status(uow, order, SettlementStatus.AWAITING_REMITTANCE)

    logger.info(
        "COD_DELIVERY_PROCESSED order=%s agent=%s agent_commission=%s owed=%s",
        order_label(order), agent_id, breakdown.delivery_boy_commission, owed,
    )
    return LedgerResult(
        message="COD delivery processed",
        order_id=str(order["_id"]),
        commission_ids=created,
    )


# ======================================================
# PHASE B: agent remittance, FIFO over pending orders
# ======================================================

async def process_pending_cod_payouts(uow, agent_id, amount_paid: float) -> RemittanceResult:
    """
    Match a remitted amount against the agent's deferred orders, oldest
    first. An order is cleared only when the pool covers all of it; the
    first order that cannot be covered stops matching and the remainder
    goes back to the caller.
    """
    agent_oid = to_object_id(agent_id)
    pool = round_money(amount_paid)
    result = RemittanceResult(remaining_amount=pool)

    orders = await uow.db.orders.find(
        {
            "delivery_boy_id": agent_oid,
            "payment_method": PaymentMethod.COD.value,
            "settlement.status": SettlementStatus.AWAITING_REMITTANCE.value,
        },
        session=uow.session,
    ).to_list(None)
    if not orders:
        return result
    by_id = {o["_id"]: o for o in orders}

    pending = await uow.db.commissions.find(
        {
            "order_id": {"$in": list(by_id)},
            "type": CommissionType.SELLER.value,
            "status": CommissionStatus.PENDING.value,
        },
        session=uow.session,
    ).sort([("created_at", 1), ("_id", 1)]).to_list(None)

    # order_id -> its pending seller commissions, in FIFO order of first commission
    queue: dict = {}
    for commission in pending:
        queue.setdefault(commission["order_id"], []).append(commission)

    for order_oid, commissions in queue.items():
        if pool <= MONEY_EPSILON:
            break

        order = by_id[order_oid]
        delivery = await uow.db.commissions.find_one(
            {"order_id": order_oid, "type": CommissionType.DELIVERY_BOY.value},
            session=uow.session,
        )
        if not delivery:
            logger.warning("COD_REMITTANCE_SKIP order=%s no delivery commission", order_label(order))
            continue

        breakdown = await compute_breakdown(uow.db, order_oid, uow=uow)
        part = round_money(breakdown.total_order_amount - breakdown.delivery_boy_commission)

        if pool < part - MONEY_EPSILON:
            logger.info(
                "COD_REMITTANCE_PARTIAL order=%s needs=%s pool=%s",
                order_label(order), part, pool,
            )
            break

        # seller_id -> (net earning, first commission id)
        earnings: dict = {}
        for commission in commissions:
            await transition_commission(uow, commission, CommissionStatus.PAID)
            net = party_earning(commission)
            seller_id = commission["seller_id"]
            total, first_id = earnings.get(seller_id, (0.0, commission["_id"]))
            earnings[seller_id] = (round_money(total + net), first_id)

        credited = 0.0
        for seller_id, (net, commission_id) in earnings.items():
            await credit_wallet(
                uow,
                seller_id,
                PARTY_SELLER,
                net,
                f"Sale proceeds for COD order {order_label(order)} (remitted)",
                order_oid,
                commission_id,
                entry_type=WalletEntryType.SALE_PROCEEDS,
            )
            credited += net

        await apply_platform_wallet_changes(
            uow,
            total_admin_earning=breakdown.total_admin_earning,
            seller_pending_payouts=credited,
        )
        await set_settlement_status(uow, order, SettlementStatus.SETTLED)

        pool = round_money(pool - part)
        result.processed_count += 1
        result.processed_orders.append(str(order_oid))

    result.remaining_amount = max(0.0, pool)
    logger.info(
        "COD_REMITTANCE_MATCHED agent=%s paid=%s processed=%s remaining=%s",
        agent_oid, amount_paid, result.processed_count, result.remaining_amount,
    )
    return result


# ======================================================
# REMITTANCE VERIFICATION
# ======================================================

def _receipt(row: dict) -> RemittanceReceipt:
    return RemittanceReceipt(
        amount_paid=row["amount"],
        pending_admin_payout=row["pending_after"],
        unallocated_remittance=row["unallocated_after"],
        processed_count=row["processed_count"],
        platform_balance=row["platform_balance_after"],
        payment_reference=row["payment_reference"],
        created_at=row.get("created_at"),
    )


async def verify_cod_remittance(db, agent_id, amount: float, payment_reference: str, *, uow=None) -> RemittanceReceipt:
    amount = round_money(amount)
    if amount <= 0:
        raise InvalidStateError("Payment amount must be greater than zero")
    if not payment_reference:
        raise InvalidStateError("Payment reference is required")

    async with join_or_begin(db, uow) as uow:
        existing = await uow.db.cod_remittances.find_one(
            {"payment_reference": payment_reference},
            session=uow.session,
        )
        if existing:
            logger.info("COD_REMITTANCE_REPLAY reference=%s", payment_reference)
            return _receipt(existing)

        agent = await _load_agent(uow, agent_id)
        pending = round_money(agent.get("pending_admin_payout") or 0)
        if amount > pending + MONEY_EPSILON:
            raise RemittanceExceedsPending(amount, pending)

        carried = round_money(agent.get("unallocated_remittance") or 0)
        matched = await process_pending_cod_payouts(uow, agent["_id"], amount + carried)

        pending_after = max(0.0, round_money(pending - amount))
        await uow.db.users.update_one(
            {"_id": agent["_id"]},
            {"$set": {
                "pending_admin_payout": pending_after,
                "unallocated_remittance": matched.remaining_amount,
                "last_remittance_at": datetime.utcnow(),
            }},
            session=uow.session,
        )

        wallet = await apply_platform_wallet_changes(
            uow,
            total_platform_earning=amount,
            current_platform_balance=amount,
            pending_from_delivery_boy=-amount,
        )

        row = {
            "delivery_boy_id": agent["_id"],
            "amount": amount,
            "payment_reference": payment_reference,
            "processed_count": matched.processed_count,
            "processed_orders": matched.processed_orders,
            "unallocated_after": matched.remaining_amount,
            "pending_after": pending_after,
            "platform_balance_after": wallet["current_platform_balance"],
            "created_at": datetime.utcnow(),
        }
        await uow.db.cod_remittances.insert_one(row, session=uow.session)

    logger.info(
        "COD_REMITTANCE_VERIFIED agent=%s amount=%s reference=%s pending_after=%s carried=%s",
        agent["_id"], amount, payment_reference, pending_after, matched.remaining_amount,
    )
    return _receipt(row)


# ======================================================
# REMITTANCE CHECKOUTS (gateway order -> agent, amount)
# ======================================================

async def record_remittance_checkout(db, agent_id, razorpay_order_id: str, amount: float) -> dict:
    row = {
        "razorpay_order_id": razorpay_order_id,
        "delivery_boy_id": to_object_id(agent_id),
        "amount": round_money(amount),
        "status": "created",
        "created_at": datetime.utcnow(),
    }
    await db.cod_remittance_checkouts.insert_one(row)
    logger.info(
        "COD_REMITTANCE_CHECKOUT agent=%s gateway_order=%s amount=%s",
        row["delivery_boy_id"], razorpay_order_id, row["amount"],
    )
    return row


async def settle_remittance_checkout(
    db,
    agent_id,
    razorpay_order_id: str,
    razorpay_payment_id: str,
    *,
    uow=None,
) -> RemittanceReceipt:
    """
    Settle a captured checkout. The amount always comes from the stored
    checkout row, never from the caller.
    """
    agent_oid = to_object_id(agent_id)

    async with join_or_begin(db, uow) as uow:
        checkout = await uow.db.cod_remittance_checkouts.find_one(
            {"razorpay_order_id": razorpay_order_id},
            session=uow.session,
        )
        if not checkout:
            raise RemittanceCheckoutNotFound(razorpay_order_id)

        if checkout["delivery_boy_id"] != agent_oid:
            logger.warning(
                "COD_REMITTANCE_CHECKOUT_MISMATCH agent=%s gateway_order=%s owner=%s",
                agent_oid, razorpay_order_id, checkout["delivery_boy_id"],
            )
            raise RemittanceCheckoutMismatch("Razorpay order id mismatch")

        paid_with = checkout.get("razorpay_payment_id")
        if paid_with and paid_with != razorpay_payment_id:
            raise InvalidStateError("Remittance checkout already paid")

        receipt = await verify_cod_remittance(
            db,
            agent_oid,
            checkout["amount"],
            f"PAYOUT-{razorpay_payment_id}",
            uow=uow,
        )

        await uow.db.cod_remittance_checkouts.update_one(
            {"_id": checkout["_id"]},
            {"$set": {
                "status": "paid",
                "razorpay_payment_id": razorpay_payment_id,
                "paid_at": datetime.utcnow(),
            }},
            session=uow.session,
        )

    return receipt
