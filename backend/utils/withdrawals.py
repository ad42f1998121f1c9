import logging
from datetime import datetime

from config.constants import (
    MIN_WITHDRAWAL,
    PARTY_DELIVERY_BOY,
    PARTY_ROLES,
    PARTY_SELLER,
    WITHDRAWAL_PAYMENT_METHODS,
)
from models.wallet import WalletEntryType, WithdrawStatus
from utils.errors import (
    InsufficientBalance,
    InvalidStateError,
    PartyNotFound,
    WithdrawRequestNotFound,
)
from utils.money import round_money
from utils.mongo import to_object_id
from utils.platform_wallet import apply_platform_wallet_changes
from utils.transactions import join_or_begin
from utils.wallet_service import credit_wallet, debit_wallet

logger = logging.getLogger(__name__)

# party type -> platform wallet liability counter
PENDING_PAYOUT_FIELD = {
    PARTY_SELLER: "seller_pending_payouts",
    PARTY_DELIVERY_BOY: "delivery_boy_pending_payouts",
}

# request status -> statuses it may move to
DECISIONS = {
    WithdrawStatus.PENDING: {WithdrawStatus.APPROVED, WithdrawStatus.REJECTED, WithdrawStatus.COMPLETED},
    WithdrawStatus.APPROVED: {WithdrawStatus.REJECTED, WithdrawStatus.COMPLETED},
    WithdrawStatus.REJECTED: set(),
    WithdrawStatus.COMPLETED: set(),
}


# =====================================================
# REQUEST (party side)
# =====================================================

async def create_withdrawal_request(
    db,
    party_id,
    party_type: str,
    amount: float,
    payment_method: str,
    payment_details: dict | None = None,
    *,
    uow=None,
) -> dict:
    """
    The requested amount leaves the party's balance immediately (hold)
    and comes back only if the request is rejected.
    """
    amount = round_money(amount)
    if payment_method not in WITHDRAWAL_PAYMENT_METHODS:
        raise InvalidStateError(f"Unsupported payment method: {payment_method}")
    if amount < MIN_WITHDRAWAL:
        raise InvalidStateError(f"Minimum withdrawal amount is {MIN_WITHDRAWAL}")

    async with join_or_begin(db, uow) as uow:
        party = await uow.db.users.find_one(
            {"_id": to_object_id(party_id), "role": PARTY_ROLES[party_type]},
            session=uow.session,
        )
        if not party:
            raise PartyNotFound(party_id, party_type)

        available = round_money(party.get("balance") or 0)
        if amount > available:
            raise InsufficientBalance(amount, available)

        now = datetime.utcnow()
        request = {
            "party_id": party["_id"],
            "party_type": party_type,
            "amount": amount,
            "payment_method": payment_method,
            "payment_details": payment_details or {},
            "status": WithdrawStatus.PENDING.value,
            "transaction_reference": None,
            "remarks": None,
            "requested_at": now,
            "processed_at": None,
        }
        result = await uow.db.withdraw_requests.insert_one(request, session=uow.session)
        request["_id"] = result.inserted_id

        await debit_wallet(
            uow,
            party["_id"],
            party_type,
            amount,
            f"Withdrawal request ({payment_method})",
            reference=str(request["_id"]),
            entry_type=WalletEntryType.WITHDRAWAL_HOLD,
        )

    logger.info("WITHDRAWAL_REQUESTED party=%s type=%s amount=%s", party["_id"], party_type, amount)
    return request


# =====================================================
# DECISION (admin side)
# =====================================================

async def _load_request(uow, request_id) -> dict:
    request = await uow.db.withdraw_requests.find_one(
        {"_id": to_object_id(request_id)},
        session=uow.session,
    )
    if not request:
        raise WithdrawRequestNotFound(request_id)
    return request


async def _move(uow, request: dict, target: WithdrawStatus, changes: dict) -> dict:
    current = WithdrawStatus(request["status"])
    if target not in DECISIONS[current]:
        raise InvalidStateError(f"Withdraw request already {current.value.lower()}")

    changes = {"status": target.value, **changes}
    result = await uow.db.withdraw_requests.update_one(
        {"_id": request["_id"], "status": current.value},
        {"$set": changes},
        session=uow.session,
    )
    if result.matched_count == 0:
        raise InvalidStateError("Withdraw request was processed concurrently")
    request.update(changes)
    return request


async def approve_withdrawal(db, request_id, *, admin_id=None, remarks=None, uow=None) -> dict:
    async with join_or_begin(db, uow) as uow:
        request = await _load_request(uow, request_id)
        await _move(uow, request, WithdrawStatus.APPROVED, {
            "remarks": remarks,
            "reviewed_by": admin_id,
            "reviewed_at": datetime.utcnow(),
        })
    return request


async def reject_withdrawal(db, request_id, *, admin_id=None, remarks=None, uow=None) -> dict:
    async with join_or_begin(db, uow) as uow:
        request = await _load_request(uow, request_id)
        await _move(uow, request, WithdrawStatus.REJECTED, {
            "remarks": remarks,
            "reviewed_by": admin_id,
            "processed_at": datetime.utcnow(),
        })

        # Release the hold
        await credit_wallet(
            uow,
            request["party_id"],
            request["party_type"],
            request["amount"],
            "Withdrawal rejected, amount returned",
            reference=str(request["_id"]),
            entry_type=WalletEntryType.WITHDRAWAL_RELEASE,
        )

    logger.info("WITHDRAWAL_REJECTED request=%s amount=%s", request["_id"], request["amount"])
    return request


async def complete_withdrawal(
    db,
    request_id,
    transaction_reference: str,
    *,
    admin_id=None,
    remarks=None,
    uow=None,
) -> dict:
    """Money has left the platform: the only outflow from the platform balance."""
    if not transaction_reference:
        raise InvalidStateError("Transaction reference is required to complete a withdrawal")

    async with join_or_begin(db, uow) as uow:
        request = await _load_request(uow, request_id)
        await _move(uow, request, WithdrawStatus.COMPLETED, {
            "transaction_reference": transaction_reference,
            "remarks": remarks,
            "reviewed_by": admin_id,
            "processed_at": datetime.utcnow(),
        })

        amount = request["amount"]
        await apply_platform_wallet_changes(uow, **{
            "current_platform_balance": -amount,
            PENDING_PAYOUT_FIELD[request["party_type"]]: -amount,
        })

    logger.info(
        "WITHDRAWAL_COMPLETED request=%s amount=%s reference=%s",
        request["_id"], amount, transaction_reference,
    )
    return request


# =====================================================
# READS
# =====================================================

async def get_withdrawal_requests(
    db,
    *,
    party_id=None,
    party_type: str | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[dict]:
    query = {}
    if party_id is not None:
        query["party_id"] = to_object_id(party_id)
    if party_type:
        query["party_type"] = party_type
    if status:
        query["status"] = status

    return (
        await db.withdraw_requests.find(query)
        .sort([("requested_at", -1), ("_id", -1)])
        .limit(limit)
        .to_list(limit)
    )
