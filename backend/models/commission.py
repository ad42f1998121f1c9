from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CommissionType(str, Enum):
    SELLER = "SELLER"
    DELIVERY_BOY = "DELIVERY_BOY"


class CommissionStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    CANCELLED = "Cancelled"


# Nothing re-enters Pending; Cancelled is terminal
ALLOWED_TRANSITIONS = {
    CommissionStatus.PENDING: {CommissionStatus.PAID, CommissionStatus.CANCELLED},
    CommissionStatus.PAID: {CommissionStatus.CANCELLED},
    CommissionStatus.CANCELLED: set(),
}


class DeliveryBasis(str, Enum):
    DISTANCE = "distance"
    PERCENTAGE = "percentage"
    NONE = "none"


class DeliveryConfig(BaseModel):
    is_distance_based: bool = False
    delivery_boy_km_rate: float = 0.0


class CommissionSettings(BaseModel):
    global_commission_rate: Optional[float] = None
    global_delivery_commission_rate: Optional[float] = None
    delivery_config: DeliveryConfig = Field(default_factory=DeliveryConfig)


class BreakdownLine(BaseModel):
    order_item_id: str
    product_id: str
    seller_id: str
    line_total: float
    commission_rate: float
    commission_amount: float
    seller_earning: float


class Breakdown(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    payment_method: str

    # products
    product_cost: float
    admin_product_commission: float
    seller_earnings: dict[str, float]
    lines: list[BreakdownLine]

    # fees
    platform_fee: float

    # delivery
    total_delivery_charge: float
    delivery_basis: DeliveryBasis
    delivery_boy_id: Optional[str] = None
    delivery_distance_km: Optional[float] = None
    delivery_commission_rate: float = 0.0
    delivery_commission_base: float = 0.0
    delivery_boy_commission: float = 0.0
    admin_delivery_share: float = 0.0

    # totals
    total_admin_earning: float
    total_order_amount: float
    # COD only: cash the agent holds on the platform's behalf
    amount_agent_owes_admin: Optional[float] = None


class CommissionView(BaseModel):
    id: str
    order_id: str
    type: CommissionType
    amount: float
    rate: float
    order_amount: float
    earning: float
    status: CommissionStatus
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CommissionSummary(BaseModel):
    total: float = 0.0
    paid: float = 0.0
    pending: float = 0.0
    count: int = 0
    commissions: list[CommissionView] = Field(default_factory=list)


class LedgerResult(BaseModel):
    success: bool = True
    message: str
    order_id: str
    commission_ids: list[str] = Field(default_factory=list)
