import logging

from models.commission import (
    Breakdown,
    BreakdownLine,
    CommissionSettings,
    CommissionType,
    DeliveryBasis,
)
from models.order import is_cod
from utils.commission_rates import (
    resolve_delivery_rate,
    resolve_product_commission_rate,
)
from utils.commission_settings import load_commission_settings
from utils.errors import InvalidPaymentMethod, OrderNotFound
from utils.money import percent_of, round_money
from utils.mongo import to_object_id

logger = logging.getLogger(__name__)


# ==============================
# Delivery split
# ==============================

async def compute_delivery_split(db, order: dict, settings: CommissionSettings, session=None) -> dict:
    """
    Splits the delivery charge between the agent and the platform.

    Distance based when the platform pays agents per km and the order carries
    a distance; otherwise the agent earns a percentage of the product subtotal
    (so a free-shipping order still pays the agent) and the platform keeps the
    whole delivery charge. An agent commission already on the ledger is reused
    so the split stays stable after settlement.
    """
    shipping = round_money(order.get("shipping") or 0)
    subtotal = round_money(order.get("subtotal") or 0)
    agent_id = order.get("delivery_boy_id")

    split = {
        "delivery_basis": DeliveryBasis.NONE,
        "delivery_commission_rate": 0.0,
        "delivery_commission_base": 0.0,
        "delivery_boy_commission": 0.0,
        "admin_delivery_share": shipping,
    }
    if not agent_id:
        return split

    pinned = await db.commissions.find_one(
        {"order_id": order["_id"], "type": CommissionType.DELIVERY_BOY.value},
        session=session,
    )
    if pinned:
        basis = DeliveryBasis(pinned.get("delivery_basis") or DeliveryBasis.PERCENTAGE.value)
        agent_cut = round_money(pinned["commission_amount"])
        split.update({
            "delivery_basis": basis,
            "delivery_commission_rate": float(pinned.get("commission_rate") or 0),
            "delivery_commission_base": float(pinned.get("order_amount") or 0),
            "delivery_boy_commission": agent_cut,
            "admin_delivery_share": round_money(shipping - agent_cut) if basis == DeliveryBasis.DISTANCE else shipping,
        })
        return split

    config = settings.delivery_config
    distance = float(order.get("delivery_distance_km") or 0)

    if config.is_distance_based and config.delivery_boy_km_rate > 0 and distance > 0:
        agent_cut = round_money(distance * config.delivery_boy_km_rate)
        admin_share = round_money(shipping - agent_cut)
        if admin_share < 0:
            # Per-km rate exceeds what the customer paid for delivery
            logger.warning(
                "DELIVERY_SHARE_NEGATIVE order=%s distance=%s km_rate=%s shipping=%s",
                order["_id"], distance, config.delivery_boy_km_rate, shipping,
            )
        split.update({
            "delivery_basis": DeliveryBasis.DISTANCE,
            "delivery_commission_rate": float(config.delivery_boy_km_rate),
            "delivery_commission_base": distance,
            "delivery_boy_commission": agent_cut,
            "admin_delivery_share": admin_share,
        })
        return split

    rate = await resolve_delivery_rate(db, agent_id, settings)
    split.update({
        "delivery_basis": DeliveryBasis.PERCENTAGE,
        "delivery_commission_rate": rate,
        "delivery_commission_base": subtotal,
        "delivery_boy_commission": percent_of(subtotal, rate),
        "admin_delivery_share": shipping,
    })
    return split


# ==============================
# Order breakdown (pure, no writes)
# ==============================

async def compute_breakdown(
    db,
    order_id,
    *,
    settings: CommissionSettings | None = None,
    uow=None,
) -> Breakdown:
    session = uow.session if uow else None

    order = await db.orders.find_one({"_id": to_object_id(order_id)}, session=session)
    if not order:
        raise OrderNotFound(order_id)

    settings = settings or await load_commission_settings(db)

    lines = []
    seller_earnings: dict[str, float] = {}
    admin_product_commission = 0.0

    items = await db.order_items.find(
        {"order_id": order["_id"]},
        session=session,
    ).sort("_id", 1).to_list(None)

    for item in items:
        rate = item.get("commission_rate")
        if rate is None:
            rate = await resolve_product_commission_rate(
                db, item.get("product_id"), item.get("seller_id"), settings
            )

        line_total = round_money(item.get("total") or 0)
        commission = percent_of(line_total, rate)
        earning = round_money(line_total - commission)

        seller_id = str(item["seller_id"])
        seller_earnings[seller_id] = round_money(seller_earnings.get(seller_id, 0) + earning)
        admin_product_commission = round_money(admin_product_commission + commission)

        lines.append(BreakdownLine(
            order_item_id=str(item["_id"]),
            product_id=str(item.get("product_id")),
            seller_id=seller_id,
            line_total=line_total,
            commission_rate=float(rate),
            commission_amount=commission,
            seller_earning=earning,
        ))

    subtotal = order.get("subtotal")
    product_cost = round_money(subtotal if subtotal is not None else sum(l.line_total for l in lines))
    platform_fee = round_money(order.get("platform_fee") or 0)
    total = round_money(order.get("total") or 0)

    split = await compute_delivery_split(db, order, settings, session=session)

    total_admin_earning = round_money(
        admin_product_commission + platform_fee + split["admin_delivery_share"]
    )

    amount_owed = None
    if is_cod(order):
        # Agent collected the full total and keeps only their own cut
        amount_owed = round_money(total - split["delivery_boy_commission"])

    agent_id = order.get("delivery_boy_id")
    return Breakdown(
        order_id=str(order["_id"]),
        order_number=order.get("order_number"),
        payment_method=order.get("payment_method") or "",
        product_cost=product_cost,
        admin_product_commission=admin_product_commission,
        seller_earnings=seller_earnings,
        lines=lines,
        platform_fee=platform_fee,
        total_delivery_charge=round_money(order.get("shipping") or 0),
        delivery_boy_id=str(agent_id) if agent_id else None,
        delivery_distance_km=order.get("delivery_distance_km"),
        total_admin_earning=total_admin_earning,
        total_order_amount=total,
        amount_agent_owes_admin=amount_owed,
        **split,
    )


async def calculate_cod_order_breakdown(db, order_id, *, uow=None) -> Breakdown:
    session = uow.session if uow else None
    order = await db.orders.find_one({"_id": to_object_id(order_id)}, session=session)
    if not order:
        raise OrderNotFound(order_id)
    if not is_cod(order):
        raise InvalidPaymentMethod(f"Order {order_id} is not a COD order")

    breakdown = await compute_breakdown(db, order_id, uow=uow)

    logger.info(
        "COD_BREAKDOWN order=%s product_commission=%s platform_fee=%s agent=%s admin_delivery=%s admin_total=%s owed=%s",
        breakdown.order_number or breakdown.order_id,
        breakdown.admin_product_commission,
        breakdown.platform_fee,
        breakdown.delivery_boy_commission,
        breakdown.admin_delivery_share,
        breakdown.total_admin_earning,
        breakdown.amount_agent_owes_admin,
    )
    return breakdown
