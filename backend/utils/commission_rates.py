import logging

from pymongo import ReturnDocument

from config.constants import (
    DEFAULT_DELIVERY_COMMISSION_RATE,
    DEFAULT_SELLER_COMMISSION_RATE,
    PARTY_ROLES,
)
from models.commission import CommissionSettings
from utils.commission_settings import load_commission_settings
from utils.errors import PartyNotFound
from utils.mongo import to_object_id

logger = logging.getLogger(__name__)

# ============================================================
# RATE RESOLVER
# ============================================================
# Pure reads. A commission calculation must never abort an order
# transition, so every lookup failure degrades to a default and logs.
# ============================================================


def _positive(value) -> float | None:
    try:
        rate = float(value)
    except (TypeError, ValueError):
        return None
    return rate if rate > 0 else None


def global_seller_rate(settings: CommissionSettings) -> float:
    if settings.global_commission_rate is not None:
        return float(settings.global_commission_rate)
    return DEFAULT_SELLER_COMMISSION_RATE


def global_delivery_rate(settings: CommissionSettings) -> float:
    if settings.global_delivery_commission_rate is not None:
        return float(settings.global_delivery_commission_rate)
    return DEFAULT_DELIVERY_COMMISSION_RATE


async def resolve_seller_commission_rate(
    db,
    seller_id,
    settings: CommissionSettings | None = None,
) -> float:
    """Seller's individual rate, else the global default, else 10%."""
    try:
        settings = settings or await load_commission_settings(db)
        seller = await db.users.find_one({"_id": to_object_id(seller_id), "role": "seller"})
        if not seller:
            logger.warning("RATE_DEFAULT seller_missing seller=%s", seller_id)
            return DEFAULT_SELLER_COMMISSION_RATE

        if seller.get("commission_rate") is not None:
            return float(seller["commission_rate"])

        return global_seller_rate(settings)
    except Exception:
        logger.exception("RATE_DEFAULT seller_lookup_failed seller=%s", seller_id)
        return DEFAULT_SELLER_COMMISSION_RATE


async def resolve_delivery_rate(
    db,
    agent_id,
    settings: CommissionSettings | None = None,
) -> float:
    """Agent's individual rate, else the global delivery default, else 5%."""
    try:
        settings = settings or await load_commission_settings(db)
        agent = await db.users.find_one({"_id": to_object_id(agent_id), "role": "delivery"})
        if not agent:
            logger.warning("RATE_DEFAULT agent_missing agent=%s", agent_id)
            return DEFAULT_DELIVERY_COMMISSION_RATE

        if agent.get("commission_rate") is not None:
            return float(agent["commission_rate"])

        return global_delivery_rate(settings)
    except Exception:
        logger.exception("RATE_DEFAULT agent_lookup_failed agent=%s", agent_id)
        return DEFAULT_DELIVERY_COMMISSION_RATE


async def resolve_product_commission_rate(
    db,
    product_id,
    seller_id=None,
    settings: CommissionSettings | None = None,
) -> float:
    """
    Most specific positive override wins:
    sub-sub-category -> sub-category -> category -> seller -> global -> 10%.
    """
    try:
        settings = settings or await load_commission_settings(db)

        product = await db.products.find_one({"_id": to_object_id(product_id)})
        if not product:
            logger.warning("RATE_DEFAULT product_missing product=%s", product_id)
            return DEFAULT_SELLER_COMMISSION_RATE

        cascade = (
            (db.categories, product.get("sub_subcategory_id")),
            (db.sub_categories, product.get("subcategory_id")),
            (db.categories, product.get("category_id")),
        )
        for collection, ref in cascade:
            if not ref:
                continue
            node = await collection.find_one({"_id": to_object_id(ref)})
            rate = _positive((node or {}).get("commission_rate"))
            if rate is not None:
                return rate

        seller_oid = to_object_id(seller_id or product.get("seller_id"))
        if seller_oid:
            seller = await db.users.find_one({"_id": seller_oid})
            rate = _positive((seller or {}).get("commission_rate"))
            if rate is not None:
                return rate

        return global_seller_rate(settings)
    except Exception:
        logger.exception("RATE_DEFAULT product_lookup_failed product=%s", product_id)
        return DEFAULT_SELLER_COMMISSION_RATE


# ============================================================
# RATE ADMINISTRATION
# ============================================================

async def set_party_commission_rate(db, party_id, party_type: str, rate: float | None) -> dict:
    """Admin override for one seller or agent; None clears it back to the global rate."""
    role = PARTY_ROLES[party_type]
    result = await db.users.find_one_and_update(
        {"_id": to_object_id(party_id), "role": role},
        {"$set": {"commission_rate": rate}},
        return_document=ReturnDocument.AFTER,
    )
    if not result:
        raise PartyNotFound(party_id, party_type)

    logger.info("RATE_OVERRIDE party=%s type=%s rate=%s", party_id, party_type, rate)
    return result
