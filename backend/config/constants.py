# backend/config/constants.py

from config.env import MIN_WITHDRAWAL_AMOUNT

# -----------------------------
# COMMISSION DEFAULTS
# -----------------------------

DEFAULT_SELLER_COMMISSION_RATE = 10.0    # % of line total
DEFAULT_DELIVERY_COMMISSION_RATE = 5.0   # % of order subtotal

# -----------------------------
# MONEY
# -----------------------------

MONEY_EPSILON = 0.01                     # rounding tolerance when matching cash

# -----------------------------
# PARTIES
# -----------------------------

PARTY_SELLER = "SELLER"
PARTY_DELIVERY_BOY = "DELIVERY_BOY"

# party type -> users.role
PARTY_ROLES = {
    PARTY_SELLER: "seller",
    PARTY_DELIVERY_BOY: "delivery",
}

# -----------------------------
# WALLET / WITHDRAWALS
# -----------------------------

WALLET_TRANSACTION_PAGE_LIMIT = 50
WITHDRAWAL_PAYMENT_METHODS = {"Bank Transfer", "UPI"}
MIN_WITHDRAWAL = MIN_WITHDRAWAL_AMOUNT

# -----------------------------
# SINGLETON DOCUMENT IDS
# -----------------------------

PLATFORM_SETTINGS_ID = "platform"
PLATFORM_WALLET_ID = "platform"
