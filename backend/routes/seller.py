from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from config.constants import PARTY_SELLER
from database import get_db
from utils.commission_ledger import get_commission_summary
from utils.errors import LedgerError
from utils.idempotency import (
    SCOPE_WITHDRAW,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
)
from utils.money import round_money
from utils.mongo import serialize_doc, serialize_docs
from utils.security import require_role
from utils.wallet_service import get_wallet_transactions
from utils.withdrawals import create_withdrawal_request, get_withdrawal_requests

router = APIRouter(
    prefix="/seller",
    tags=["Seller"]
)


# ======================================================
# SCHEMAS
# ======================================================

class SellerWithdrawPayload(BaseModel):
    amount: float = Field(..., gt=0)
    payment_method: Literal["Bank Transfer", "UPI"]
    account_details: Optional[dict] = None


# ======================================================
# WALLET
# ======================================================

@router.get("/wallet")
async def seller_wallet(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    history = await get_wallet_transactions(db, party_id=seller["_id"], page=page, limit=limit)
    return {
        "success": True,
        "data": {
            "balance": round_money(seller.get("balance")),
            "transactions": serialize_docs(history["transactions"]),
        },
        "pagination": history["pagination"],
    }


@router.get("/commissions")
async def seller_commissions(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    summary = await get_commission_summary(db, seller["_id"], PARTY_SELLER)
    return {"success": True, "data": summary}


# ======================================================
# WITHDRAWALS
# ======================================================

@router.get("/withdrawals")
async def seller_withdrawals(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    rows = await get_withdrawal_requests(db, party_id=seller["_id"], party_type=PARTY_SELLER)
    return {"success": True, "data": serialize_docs(rows)}


@router.post("/withdraw", status_code=201)
async def seller_withdraw(
    data: SellerWithdrawPayload,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    scope = f"{SCOPE_WITHDRAW}:{seller['_id']}"
    if idempotency_key:
        cached = await reserve_idempotency_key(db=db, key=idempotency_key, scope=scope)
        if cached:
            return cached

    try:
        request = await create_withdrawal_request(
            db,
            seller["_id"],
            PARTY_SELLER,
            data.amount,
            data.payment_method,
            data.account_details,
        )
    except LedgerError as e:
        if idempotency_key:
            await fail_idempotency_key(db=db, key=idempotency_key, scope=scope, error=e.message)
        raise

    response = {
        "success": True,
        "message": "Withdrawal request submitted",
        "data": serialize_doc(request),
    }
    if idempotency_key:
        await complete_idempotency_key(db=db, key=idempotency_key, scope=scope, response=response)
    return response
