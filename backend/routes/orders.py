from fastapi import APIRouter, Depends

from database import get_db
from utils.breakdown import compute_breakdown
from utils.cod_settlement import process_cod_order_delivery
from utils.commission_ledger import (
    create_pending_commissions,
    distribute_commissions,
    reverse_commissions,
)
from utils.mongo import parse_object_id
from utils.security import require_role


router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)

# Order lifecycle hooks are called by the order service (system token) or an admin
lifecycle_caller = require_role("admin", "system")


# ======================================================
# LIFECYCLE HOOKS
# ======================================================

@router.post("/system/{order_id}/commissions")
async def order_paid(
    order_id: str,
    caller=Depends(lifecycle_caller),
    db=Depends(get_db),
):
    result = await create_pending_commissions(db, parse_object_id(order_id, "order_id"))
    return {"success": True, "message": result.message, "data": result}


@router.post("/system/{order_id}/distribute")
async def order_delivered(
    order_id: str,
    caller=Depends(lifecycle_caller),
    db=Depends(get_db),
):
    result = await distribute_commissions(db, parse_object_id(order_id, "order_id"))
    return {"success": True, "message": result.message, "data": result}


@router.post("/system/{order_id}/reverse")
async def order_cancelled(
    order_id: str,
    caller=Depends(lifecycle_caller),
    db=Depends(get_db),
):
    result = await reverse_commissions(db, parse_object_id(order_id, "order_id"))
    return {"success": True, "message": result.message, "data": result}


@router.post("/system/{order_id}/cod-delivered")
async def cod_order_delivered(
    order_id: str,
    caller=Depends(lifecycle_caller),
    db=Depends(get_db),
):
    result = await process_cod_order_delivery(db, parse_object_id(order_id, "order_id"))
    return {"success": True, "message": result.message, "data": result}


# ======================================================
# BREAKDOWN
# ======================================================

@router.get("/{order_id}/breakdown")
async def order_breakdown(
    order_id: str,
    caller=Depends(lifecycle_caller),
    db=Depends(get_db),
):
    breakdown = await compute_breakdown(db, parse_object_id(order_id, "order_id"))
    return {"success": True, "data": breakdown}
