import logging
from datetime import datetime

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from config.constants import PLATFORM_SETTINGS_ID
from models.commission import CommissionSettings

logger = logging.getLogger(__name__)


async def load_commission_settings(db) -> CommissionSettings:
    """
    Read the platform settings singleton.
    Never raises: a missing or unreadable document falls back to defaults.
    """
    try:
        doc = await db.settings.find_one({"_id": PLATFORM_SETTINGS_ID})
    except PyMongoError:
        logger.exception("SETTINGS_READ_FAILED using defaults")
        return CommissionSettings()

    if not doc:
        logger.warning("SETTINGS_MISSING using defaults")
        return CommissionSettings()

    try:
        return CommissionSettings.model_validate(doc)
    except ValidationError:
        logger.exception("SETTINGS_INVALID using defaults")
        return CommissionSettings()


async def update_commission_settings(
    db,
    *,
    global_commission_rate: float | None = None,
    global_delivery_commission_rate: float | None = None,
    is_distance_based: bool | None = None,
    delivery_boy_km_rate: float | None = None,
) -> CommissionSettings:
    changes = {}
    if global_commission_rate is not None:
        changes["global_commission_rate"] = global_commission_rate
    if global_delivery_commission_rate is not None:
        changes["global_delivery_commission_rate"] = global_delivery_commission_rate
    if is_distance_based is not None:
        changes["delivery_config.is_distance_based"] = is_distance_based
    if delivery_boy_km_rate is not None:
        changes["delivery_config.delivery_boy_km_rate"] = delivery_boy_km_rate

    if changes:
        changes["updated_at"] = datetime.utcnow()
        await db.settings.update_one(
            {"_id": PLATFORM_SETTINGS_ID},
            {"$set": changes},
            upsert=True,
        )

    return await load_commission_settings(db)
