import asyncio
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field

from config.constants import PARTY_DELIVERY_BOY
from database import get_db
from utils.cod_settlement import record_remittance_checkout, settle_remittance_checkout
from utils.commission_ledger import get_commission_summary
from utils.errors import InvalidPaymentSignature, LedgerError, RemittanceExceedsPending
from utils.idempotency import (
    SCOPE_REMITTANCE,
    SCOPE_WITHDRAW,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
)
from utils.money import round_money
from utils.mongo import serialize_doc, serialize_docs
from utils.razorpay import is_genuine_remittance, open_remittance_checkout
from utils.security import require_role
from utils.wallet_service import get_wallet_transactions
from utils.withdrawals import create_withdrawal_request, get_withdrawal_requests

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/delivery/wallet",
    tags=["Delivery Wallet"]
)


# ======================================================
# SCHEMAS
# ======================================================

class WithdrawPayload(BaseModel):
    amount: float = Field(..., gt=0)
    payment_method: Literal["Bank Transfer", "UPI"]
    account_details: Optional[dict] = None


class RemittanceOrderPayload(BaseModel):
    amount: float = Field(..., gt=0)


class RemittanceVerifyPayload(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


# ======================================================
# BALANCE / HISTORY
# ======================================================

@router.get("/balance")
async def wallet_balance(agent=Depends(require_role("delivery"))):
    return {
        "success": True,
        "data": {
            "balance": round_money(agent.get("balance")),
            "pending_admin_payout": round_money(agent.get("pending_admin_payout")),
            "cash_collected": round_money(agent.get("cash_collected")),
            "unallocated_remittance": round_money(agent.get("unallocated_remittance")),
        },
    }


@router.get("/transactions")
async def wallet_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    agent=Depends(require_role("delivery")),
    db=Depends(get_db),
):
    result = await get_wallet_transactions(db, party_id=agent["_id"], page=page, limit=limit)
    return {
        "success": True,
        "data": serialize_docs(result["transactions"]),
        "pagination": result["pagination"],
    }


@router.get("/commissions")
async def wallet_commissions(
    agent=Depends(require_role("delivery")),
    db=Depends(get_db),
):
    summary = await get_commission_summary(db, agent["_id"], PARTY_DELIVERY_BOY)
    return {"success": True, "data": summary}


# ======================================================
# WITHDRAWALS
# ======================================================

@router.get("/withdrawals")
async def wallet_withdrawals(
    agent=Depends(require_role("delivery")),
    db=Depends(get_db),
):
    rows = await get_withdrawal_requests(db, party_id=agent["_id"], party_type=PARTY_DELIVERY_BOY)
    return {"success": True, "data": serialize_docs(rows)}


@router.post("/withdraw", status_code=201)
async def request_withdrawal(
    data: WithdrawPayload,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    agent=Depends(require_role("delivery")),
    db=Depends(get_db),
):
    scope = f"{SCOPE_WITHDRAW}:{agent['_id']}"
    if idempotency_key:
        cached = await reserve_idempotency_key(db=db, key=idempotency_key, scope=scope)
        if cached:
            return cached

    try:
        request = await create_withdrawal_request(
            db,
            agent["_id"],
            PARTY_DELIVERY_BOY,
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


# ======================================================
# COD REMITTANCE (agent pays collected cash to the platform)
# ======================================================

@router.post("/admin-payout/create")
async def create_remittance(
    data: RemittanceOrderPayload,
    agent=Depends(require_role("delivery")),
    db=Depends(get_db),
):
    amount = round_money(data.amount)
    pending = round_money(agent.get("pending_admin_payout"))
    if amount > pending:
        raise RemittanceExceedsPending(amount, pending)

    checkout = await asyncio.to_thread(open_remittance_checkout, agent["_id"], amount)
    await record_remittance_checkout(db, agent["_id"], checkout["razorpay_order_id"], checkout["amount"])
    return {"success": True, "data": checkout}


@router.post("/admin-payout/verify")
async def verify_remittance(
    data: RemittanceVerifyPayload,
    agent=Depends(require_role("delivery")),
    db=Depends(get_db),
):
    if not is_genuine_remittance(data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature):
        logger.warning("REMITTANCE_BAD_SIGNATURE agent=%s order=%s", agent["_id"], data.razorpay_order_id)
        raise InvalidPaymentSignature()

    key = data.razorpay_payment_id
    cached = await reserve_idempotency_key(db=db, key=key, scope=SCOPE_REMITTANCE)
    if cached:
        return cached

    try:
        receipt = await settle_remittance_checkout(
            db,
            agent["_id"],
            data.razorpay_order_id,
            data.razorpay_payment_id,
        )
    except LedgerError as e:
        await fail_idempotency_key(db=db, key=key, scope=SCOPE_REMITTANCE, error=e.message)
        raise

    response = {
        "success": True,
        "message": "Payout successful",
        "data": receipt.model_dump(mode="json"),
    }
    await complete_idempotency_key(db=db, key=key, scope=SCOPE_REMITTANCE, response=response)
    return response
