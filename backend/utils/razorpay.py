import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import Decimal
from urllib import error, request

from config.env import RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
from utils.errors import PaymentGatewayError
from utils.money import round_money

logger = logging.getLogger(__name__)

RAZORPAY_API_BASE = "https://api.razorpay.com/v1"
RAZORPAY_CURRENCY = "INR"


def _credentials() -> tuple[str, str]:
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise PaymentGatewayError("Remittance gateway is not configured")
    return RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET


def _post(path: str, payload: dict) -> dict:
    key_id, key_secret = _credentials()
    token = base64.b64encode(f"{key_id}:{key_secret}".encode("utf-8")).decode("utf-8")

    req = request.Request(
        url=f"{RAZORPAY_API_BASE}{path}",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        },
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=15) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        logger.error("REMITTANCE_GATEWAY_REJECTED path=%s status=%s", path, e.code)
        raise PaymentGatewayError(f"Remittance checkout failed: {details}") from e
    except (error.URLError, TimeoutError, ValueError) as e:
        logger.error("REMITTANCE_GATEWAY_UNREACHABLE path=%s error=%s", path, e)
        raise PaymentGatewayError("Remittance checkout failed") from e


def open_remittance_checkout(agent_id, amount: float) -> dict:
    """
    Blocking call: opens the checkout order a delivery agent pays to hand
    collected COD cash over to the platform. Run it off the event loop.
    """
    amount = round_money(amount)
    order = _post("/orders", {
        "amount": int(Decimal(str(amount)) * 100),
        "currency": RAZORPAY_CURRENCY,
        "receipt": f"PAYOUT-ADMIN-{int(datetime.utcnow().timestamp())}",
        "notes": {"delivery_boy_id": str(agent_id), "purpose": "cod_remittance"},
    })

    logger.info("REMITTANCE_CHECKOUT_OPENED agent=%s amount=%s order=%s", agent_id, amount, order.get("id"))
    return {
        "razorpay_order_id": order.get("id"),
        "amount": amount,
        "currency": order.get("currency", RAZORPAY_CURRENCY),
        "key_id": RAZORPAY_KEY_ID,
    }


def is_genuine_remittance(razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str) -> bool:
    """Checkout signature: HMAC-SHA256 of "order_id|payment_id" under the key secret."""
    _, key_secret = _credentials()
    message = f"{razorpay_order_id}|{razorpay_payment_id}".encode("utf-8")
    expected = hmac.new(key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, razorpay_signature or "")
