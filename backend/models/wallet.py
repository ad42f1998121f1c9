from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TransactionType(str, Enum):
    CREDIT = "Credit"
    DEBIT = "Debit"


class WalletEntryType(str, Enum):
    SALE_PROCEEDS = "SALE_PROCEEDS"
    DELIVERY_EARNING = "DELIVERY_EARNING"
    COD_DELIVERY_EARNING = "COD_DELIVERY_EARNING"
    COMMISSION_REVERSAL = "COMMISSION_REVERSAL"
    WITHDRAWAL_HOLD = "WITHDRAWAL_HOLD"
    WITHDRAWAL_RELEASE = "WITHDRAWAL_RELEASE"


class WithdrawStatus(str, Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    COMPLETED = "Completed"


class PlatformWallet(BaseModel):
    total_platform_earning: float = 0.0
    current_platform_balance: float = 0.0
    total_admin_earning: float = 0.0
    pending_from_delivery_boy: float = 0.0
    seller_pending_payouts: float = 0.0
    delivery_boy_pending_payouts: float = 0.0


class FinancialDashboard(BaseModel):
    source: str  # "aggregate" | "recomputed"
    total_platform_earning: float
    current_platform_balance: float
    total_admin_earning: float
    total_withdrawals: float
    pending_from_delivery_boy: float
    seller_pending_payouts: float
    delivery_boy_pending_payouts: float
    pending_withdrawals_count: int


class RemittanceResult(BaseModel):
    processed_count: int = 0
    remaining_amount: float = 0.0
    processed_orders: list[str] = Field(default_factory=list)


class RemittanceReceipt(BaseModel):
    amount_paid: float
    pending_admin_payout: float
    unallocated_remittance: float
    processed_count: int
    platform_balance: float
    payment_reference: str
    created_at: Optional[datetime] = None


class ReconciliationReport(BaseModel):
    party_id: str
    party_type: str
    stored_balance: float
    ledger_balance: float
    in_sync: bool
