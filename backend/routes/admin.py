from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from database import get_db
from utils.audit import record_admin_action
from utils.commission_ledger import get_commission, list_admin_earnings
from utils.commission_rates import set_party_commission_rate
from utils.commission_settings import load_commission_settings, update_commission_settings
from utils.mongo import parse_object_id, serialize_doc, serialize_docs
from utils.platform_wallet import get_financial_dashboard
from utils.security import require_role
from utils.wallet_service import get_wallet_transactions, reconcile_party_balance
from utils.withdrawals import (
    approve_withdrawal,
    complete_withdrawal,
    get_withdrawal_requests,
    reject_withdrawal,
)


router = APIRouter(prefix="/admin", tags=["Admin"])


# =====================================================
# SCHEMAS
# =====================================================

class WithdrawDecision(BaseModel):
    action: Literal["approve", "reject", "complete"]
    transaction_reference: Optional[str] = None
    remarks: Optional[str] = None


class PartyCommission(BaseModel):
    party_id: str
    party_type: Literal["SELLER", "DELIVERY_BOY"]
    # None clears the override
    commission_rate: Optional[float] = Field(None, ge=0, le=100)


class CommissionSettingsUpdate(BaseModel):
    global_commission_rate: Optional[float] = Field(None, ge=0, le=100)
    global_delivery_commission_rate: Optional[float] = Field(None, ge=0, le=100)
    is_distance_based: Optional[bool] = None
    delivery_boy_km_rate: Optional[float] = Field(None, ge=0)


# =====================================================
# FINANCE
# =====================================================

@router.get("/finance/dashboard")
async def finance_dashboard(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return {"success": True, "data": await get_financial_dashboard(db)}


@router.get("/earnings")
async def admin_earnings(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await list_admin_earnings(
        db,
        page=page,
        limit=limit,
        status=status,
        date_from=date_from,
        date_to=date_to,
    )
    return {"success": True, "data": result["earnings"], "pagination": result["pagination"]}


@router.get("/commissions/{commission_id}")
async def commission_detail(
    commission_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    commission = await get_commission(db, parse_object_id(commission_id, "commission_id"))
    return {"success": True, "data": serialize_doc(commission)}


@router.get("/wallet-transactions")
async def admin_wallet_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    type: Optional[Literal["Credit", "Debit"]] = None,
    party_type: Optional[Literal["SELLER", "DELIVERY_BOY"]] = None,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await get_wallet_transactions(
        db,
        party_type=party_type,
        txn_type=type,
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "data": serialize_docs(result["transactions"]),
        "pagination": result["pagination"],
    }


@router.get("/parties/{party_id}/reconcile")
async def reconcile_party(
    party_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    report = await reconcile_party_balance(db, parse_object_id(party_id, "party_id"))
    return {"success": True, "data": report}


# =====================================================
# WITHDRAWALS
# =====================================================

@router.get("/withdrawals")
async def list_withdrawals(
    status: Optional[str] = None,
    party_type: Optional[Literal["SELLER", "DELIVERY_BOY"]] = None,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    rows = await get_withdrawal_requests(db, party_type=party_type, status=status)
    return {"success": True, "count": len(rows), "data": serialize_docs(rows)}


@router.post("/withdrawals/{request_id}/decision")
async def withdrawal_decision(
    request_id: str,
    data: WithdrawDecision,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    request_oid = parse_object_id(request_id, "request_id")
    admin_id = str(admin["_id"])

    if data.action == "approve":
        request = await approve_withdrawal(db, request_oid, admin_id=admin_id, remarks=data.remarks)
    elif data.action == "reject":
        request = await reject_withdrawal(db, request_oid, admin_id=admin_id, remarks=data.remarks)
    else:
        if not data.transaction_reference:
            raise HTTPException(400, "transaction_reference is required to complete a withdrawal")
        request = await complete_withdrawal(
            db,
            request_oid,
            data.transaction_reference,
            admin_id=admin_id,
            remarks=data.remarks,
        )

    await record_admin_action(
        db,
        admin,
        f"WITHDRAWAL_{data.action.upper()}",
        target_id=request_oid,
        party_id=str(request["party_id"]),
        amount=request["amount"],
        transaction_reference=data.transaction_reference,
    )

    return {
        "success": True,
        "message": "Withdraw request updated",
        "data": serialize_doc(request),
    }


# =====================================================
# COMMISSION RATES
# =====================================================

@router.post("/set-commission")
async def set_commission(
    data: PartyCommission,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    party_oid = parse_object_id(data.party_id, "party_id")
    await set_party_commission_rate(db, party_oid, data.party_type, data.commission_rate)

    await record_admin_action(
        db,
        admin,
        "COMMISSION_RATE_SET",
        target_id=party_oid,
        party_type=data.party_type,
        commission_rate=data.commission_rate,
    )
    return {
        "success": True,
        "message": "Commission rate updated",
        "data": {
            "party_id": data.party_id,
            "party_type": data.party_type,
            "commission_rate": data.commission_rate,
        },
    }


@router.get("/commission-settings")
async def get_commission_settings(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return {"success": True, "data": await load_commission_settings(db)}


@router.put("/commission-settings")
async def put_commission_settings(
    data: CommissionSettingsUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    changes = data.model_dump(exclude_none=True)
    settings = await update_commission_settings(db, **changes)

    await record_admin_action(db, admin, "COMMISSION_SETTINGS_UPDATED", **changes)
    return {"success": True, "message": "Commission settings updated", "data": settings}
