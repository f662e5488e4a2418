"""
Cart totals, promo-code validation and refund arithmetic.

Everything here is pure: callers load the promo or order document and pass it
in, and persist whatever comes back.
"""

from datetime import datetime
from typing import Iterable, List, Optional

TAX_RATE = 0.18

DISCOUNT_TYPES = ("PERCENTAGE", "FIXED", "FREE_SHIPPING")


class PromoCodeError(Exception):
    """Raised when a promo code cannot be applied; the message is user-facing."""


def _money(value: float) -> float:
    return round(value, 2)


def cart_subtotal(items: Iterable[dict]) -> float:
    return _money(sum(item["price"] * item["quantity"] for item in items))


def summarize(items: Iterable[dict], discount: float = 0, tax_rate: float = TAX_RATE) -> dict:
    """Build the ``{subtotal, discount, tax, total}`` summary for a cart."""
    subtotal = cart_subtotal(items)
    discount = min(discount, subtotal)
    taxable = subtotal - discount
    tax = _money(taxable * tax_rate)
    return {
        "subtotal": subtotal,
        "discount": _money(discount),
        "tax": tax,
        "total": _money(taxable + tax),
    }


def calculate_discount(promo: dict, amount: float) -> float:
    discount_type = promo.get("discount_type")
    value = promo.get("discount_value", 0)
    if discount_type == "PERCENTAGE":
        discount = amount * value / 100
        cap = promo.get("maximum_discount")
        if cap is not None:
            discount = min(discount, cap)
        return _money(discount)
    if discount_type == "FIXED":
        return _money(value)
    # FREE_SHIPPING carries no monetary discount on the order itself
    return 0.0


def validate_promo(promo: Optional[dict], order_amount: float, now: datetime) -> float:
    """Check ``promo`` against ``order_amount`` and return the discount it grants."""
    if not promo:
        raise PromoCodeError("Invalid promo code")
    if not promo.get("is_active", False):
        raise PromoCodeError("Promo code is not active")

    valid_from = promo.get("valid_from")
    valid_until = promo.get("valid_until")
    if (valid_from and now < valid_from) or (valid_until and now > valid_until):
        raise PromoCodeError("Promo code has expired")

    usage_limit = promo.get("usage_limit")
    if usage_limit is not None and promo.get("usage_count", 0) >= usage_limit:
        raise PromoCodeError("Promo code usage limit exceeded")

    minimum = promo.get("minimum_order_amount") or 0
    if order_amount < minimum:
        raise PromoCodeError(f"Minimum order amount is ₹{minimum:g}")

    return calculate_discount(promo, order_amount)


def order_type(items: Iterable[dict]) -> str:
    kinds = {item["type"] for item in items}
    if kinds == {"event"}:
        return "TICKET"
    if kinds == {"merch"}:
        return "MERCH"
    return "MIXED"


def refund_amount(order_items: List[dict], return_items: List[dict]) -> float:
    """Sum unit price times returned quantity over the order lines being returned."""
    prices = {}
    for line in order_items:
        item_id = line.get("merch_id") or line.get("event_id")
        if item_id:
            prices[item_id] = line.get("unit_price", 0)
    total = 0.0
    for returned in return_items:
        if returned["item_id"] in prices:
            total += prices[returned["item_id"]] * returned["quantity"]
    return _money(total)
