import logging
from datetime import datetime

logger = logging.getLogger(__name__)


async def record_admin_action(db, admin: dict, action: str, *, target_id=None, **details):
    """One audit row per admin mutation of money or rates."""
    entry = {
        "actor_id": str(admin["_id"]),
        "actor_role": admin.get("role"),
        "action": action,
        "target_id": str(target_id) if target_id is not None else None,
        "details": details,
        "created_at": datetime.utcnow(),
    }
    await db.audit_logs.insert_one(entry)
    logger.info("AUDIT action=%s actor=%s target=%s", action, entry["actor_id"], entry["target_id"])
