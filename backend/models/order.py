from enum import Enum


class PaymentMethod(str, Enum):
    PREPAID = "Prepaid"
    COD = "COD"


class OrderStatus(str, Enum):
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class SettlementStatus(str, Enum):
    # Platform has realised its earning for the order
    SETTLED = "settled"
    # COD delivered, agent still holds the cash
    AWAITING_REMITTANCE = "awaiting_remittance"
    REVERSED = "reversed"


def is_cod(order: dict) -> bool:
    return (order.get("payment_method") or "").upper() == PaymentMethod.COD.value
