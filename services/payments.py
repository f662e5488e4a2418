"""
Razorpay integration.

Wraps the SDK calls the checkout flow needs with retry/backoff, per-call
timeouts and user-facing error messages, and keeps an in-process map of
payment verification attempts.
"""

import asyncio
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, TypeVar

import razorpay
import requests
import structlog
from razorpay.errors import SignatureVerificationError

from settings import get_settings

logger = structlog.get_logger()

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 1.0
MAX_DELAY = 10.0
BACKOFF_MULTIPLIER = 2

# seconds
ORDER_CREATION_TIMEOUT = 30
PAYMENT_VERIFICATION_TIMEOUT = 45
PAYMENT_FETCH_TIMEOUT = 15

SUPPORTED_CURRENCIES = ("INR", "USD", "EUR")
NON_RETRYABLE_MARKERS = ("Authentication failed", "Invalid key", "Bad request")

TRACKING_MAX_AGE = timedelta(hours=1)
CLEANUP_INTERVAL_SECONDS = 30 * 60


class PaymentError(Exception):
    """A payment provider failure, carrying a message safe to show the user."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


_client: Optional[razorpay.Client] = None


def get_client() -> razorpay.Client:
    global _client
    if _client is None:
        settings = get_settings()
        if not settings.razorpay_key_id or not settings.razorpay_key_secret:
            logger.warning("Razorpay credentials missing, payment features disabled")
            raise PaymentError("Payment service is not configured. Please contact support.", status_code=503)
        _client = razorpay.Client(auth=(settings.razorpay_key_id.strip(), settings.razorpay_key_secret.strip()))
    return _client


def reset_client() -> None:
    global _client
    _client = None


def backoff_delay(attempt: int) -> float:
    return min(BASE_DELAY * BACKOFF_MULTIPLIER ** attempt, MAX_DELAY)


def retry_with_backoff(operation: Callable[[], T], operation_name: str, max_retries: int = MAX_RETRIES) -> T:
    """Run ``operation``, retrying up to ``max_retries`` times with exponential backoff."""
    last_error: Optional[Exception] = None
    for attempt in range(max_retries + 1):
        try:
            return operation()
        except Exception as exc:
            last_error = exc
            logger.warning("Payment provider call failed", operation=operation_name, attempt=attempt + 1, error=str(exc))
            if any(marker in str(exc) for marker in NON_RETRYABLE_MARKERS):
                raise
            if attempt < max_retries:
                delay = backoff_delay(attempt)
                logger.info("Retrying payment provider call", operation=operation_name, delay_seconds=delay)
                time.sleep(delay)
    raise last_error


# ---------------
# Payment status tracking
# ---------------

class PaymentTracker:
    def __init__(self, max_age: timedelta = TRACKING_MAX_AGE):
        self.max_age = max_age
        self._entries: Dict[str, dict] = {}

    @staticmethod
    def key(order_id: str, payment_id: str) -> str:
        return f"{order_id}_{payment_id}"

    def start(self, order_id: str, payment_id: str, plan_id: Optional[str] = None) -> dict:
        key = self.key(order_id, payment_id)
        if key not in self._entries:
            self._entries[key] = {
                "status": "processing",
                "attempts": 0,
                "last_attempt": datetime.now(timezone.utc),
                "order_id": order_id,
                "plan_id": plan_id,
            }
        entry = self._entries[key]
        entry["attempts"] += 1
        entry["last_attempt"] = datetime.now(timezone.utc)
        return entry

    def get(self, order_id: str, payment_id: str) -> Optional[dict]:
        return self._entries.get(self.key(order_id, payment_id))

    def clear(self, order_id: str, payment_id: str) -> None:
        self._entries.pop(self.key(order_id, payment_id), None)

    def all(self) -> List[dict]:
        return [{"key": key, **entry} for key, entry in self._entries.items()]

    def cleanup(self) -> int:
        cutoff = datetime.now(timezone.utc) - self.max_age
        stale = [key for key, entry in self._entries.items() if entry["last_attempt"] < cutoff]
        for key in stale:
            del self._entries[key]
        logger.info("Cleaned up old payment statuses", removed=len(stale), remaining=len(self._entries))
        return len(stale)


payment_tracker = PaymentTracker()


async def run_tracking_cleanup(interval: float = CLEANUP_INTERVAL_SECONDS) -> None:
    while True:
        await asyncio.sleep(interval)
        payment_tracker.cleanup()


# ---------------
# Provider calls
# ---------------

def create_order(amount: float, currency: str = "INR", receipt: Optional[str] = None) -> dict:
    if amount <= 0:
        raise PaymentError("Invalid payment amount. Please try again.", status_code=400)
    currency = currency.upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise PaymentError("Invalid currency: must be INR, USD, or EUR", status_code=400)

    client = get_client()
    options = {
        "amount": int(round(amount * 100)),  # paise
        "currency": currency,
        "receipt": receipt or f"order_{int(time.time() * 1000)}_{secrets.token_hex(4)}",
        "payment_capture": 1,
    }
    logger.info("Creating Razorpay order", amount=options["amount"], currency=currency, receipt=options["receipt"])

    try:
        order = retry_with_backoff(
            lambda: client.order.create(data=options, timeout=ORDER_CREATION_TIMEOUT),
            "Order creation",
        )
    except requests.exceptions.Timeout:
        raise PaymentError("Payment service is currently slow. Please try again in a few moments.")
    except Exception as exc:
        logger.error("Razorpay order creation failed", error=str(exc), amount=amount, currency=currency)
        if "Authentication failed" in str(exc):
            raise PaymentError("Payment service configuration error. Please contact support.")
        raise PaymentError("Unable to create payment order. Please try again or contact support if the problem persists.")

    logger.info("Razorpay order created", razorpay_order_id=order.get("id"))
    return order


def verify_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """HMAC-SHA256 of ``order_id|payment_id`` under the key secret, compared in constant time."""
    if not order_id or not payment_id or not signature:
        return False
    client = get_client()
    try:
        client.utility.verify_payment_signature({
            "razorpay_order_id": order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature,
        })
    except SignatureVerificationError:
        logger.warning("Payment signature mismatch", order_id=order_id, payment_id=payment_id)
        return False
    return True


def fetch_payment(payment_id: str) -> dict:
    if not payment_id:
        raise PaymentError("Payment ID is required", status_code=400)
    client = get_client()
    try:
        payment = retry_with_backoff(
            lambda: client.payment.fetch(payment_id, timeout=PAYMENT_FETCH_TIMEOUT),
            "Payment fetch",
        )
    except requests.exceptions.Timeout:
        raise PaymentError("Payment service is currently slow. Please try again in a few moments.")
    except Exception as exc:
        logger.error("Razorpay payment fetch failed", payment_id=payment_id, error=str(exc))
        if "not found" in str(exc).lower():
            raise PaymentError("Payment not found. Please contact support if you were charged.", status_code=404)
        raise PaymentError("Unable to fetch payment details. Please try again or contact support.")
    return payment


def verify_payment_with_tracking(order_id: str, payment_id: str, signature: str, plan_id: Optional[str] = None) -> dict:
    tracking = payment_tracker.start(order_id, payment_id, plan_id)
    logger.info("Verifying payment", order_id=order_id, attempt=tracking["attempts"])

    if not verify_signature(order_id, payment_id, signature):
        tracking["status"] = "failed"
        raise PaymentError("Invalid payment signature", status_code=400)

    try:
        details = fetch_payment(payment_id)
    except PaymentError:
        tracking["status"] = "failed"
        raise

    status = details.get("status")
    if status in ("captured", "authorized"):
        tracking["status"] = "completed"
        return {"success": True, "payment_details": details, "tracking": tracking}
    if status == "failed":
        tracking["status"] = "failed"
        reason = details.get("error_description") or "Unknown error"
        raise PaymentError(f"Payment failed: {reason}", status_code=400)

    tracking["status"] = "processing"
    return {
        "success": False,
        "payment_details": details,
        "tracking": tracking,
        "message": "Payment is still being processed. Please wait...",
    }


def refund_payment(payment_id: str, amount: Optional[float] = None) -> dict:
    client = get_client()
    data = {}
    if amount:
        data["amount"] = int(round(amount * 100))
    try:
        return retry_with_backoff(
            lambda: client.payment.refund(payment_id, data, timeout=PAYMENT_VERIFICATION_TIMEOUT),
            "Refund",
        )
    except Exception as exc:
        logger.error("Razorpay refund failed", payment_id=payment_id, error=str(exc))
        raise PaymentError("Unable to process refund. Please try again or contact support.")


def create_customer(name: str, email: str, contact: Optional[str] = None) -> dict:
    client = get_client()
    data = {"name": name, "email": email}
    if contact:
        data["contact"] = contact
    try:
        return client.customer.create(data=data, timeout=ORDER_CREATION_TIMEOUT)
    except Exception as exc:
        logger.error("Razorpay customer creation failed", email=email, error=str(exc))
        raise PaymentError("Unable to create payment customer. Please try again.")


def create_subscription(plan_id: str, customer_id: Optional[str] = None, total_count: int = 12) -> dict:
    client = get_client()
    data = {"plan_id": plan_id, "total_count": total_count, "notify": 1}
    if customer_id:
        data["customer_id"] = customer_id
    try:
        return client.subscription.create(data=data, timeout=ORDER_CREATION_TIMEOUT)
    except Exception as exc:
        logger.error("Razorpay subscription creation failed", plan_id=plan_id, error=str(exc))
        raise PaymentError("Unable to create subscription. Please try again.")
