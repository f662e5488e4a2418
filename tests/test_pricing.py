from datetime import datetime, timedelta

import pytest

from services.pricing import (
    PromoCodeError,
    calculate_discount,
    order_type,
    refund_amount,
    summarize,
    validate_promo,
)

pytestmark = pytest.mark.unit

NOW = datetime(2026, 10, 1, 12, 0, 0)


def promo(**overrides):
    base = {
        "code": "SAVE10",
        "discount_type": "PERCENTAGE",
        "discount_value": 10,
        "minimum_order_amount": 0,
        "maximum_discount": None,
        "usage_limit": None,
        "usage_count": 0,
        "valid_from": NOW - timedelta(days=1),
        "valid_until": NOW + timedelta(days=1),
        "is_active": True,
    }
    base.update(overrides)
    return base


class TestSummarize:
    def test_without_discount(self):
        items = [{"price": 500, "quantity": 2}, {"price": 250, "quantity": 1}]
        assert summarize(items) == {"subtotal": 1250, "discount": 0, "tax": 225.0, "total": 1475.0}

    def test_tax_applies_after_discount(self):
        summary = summarize([{"price": 1000, "quantity": 1}], discount=100)
        assert summary["tax"] == 162.0
        assert summary["total"] == 1062.0

    def test_discount_never_exceeds_subtotal(self):
        summary = summarize([{"price": 50, "quantity": 1}], discount=80)
        assert summary["discount"] == 50
        assert summary["total"] == 0

    def test_custom_tax_rate(self):
        assert summarize([{"price": 100, "quantity": 1}], tax_rate=0)["total"] == 100

    def test_empty_cart(self):
        assert summarize([]) == {"subtotal": 0, "discount": 0, "tax": 0, "total": 0}


class TestCalculateDiscount:
    def test_percentage(self):
        assert calculate_discount(promo(), 1000) == 100

    def test_percentage_is_capped(self):
        assert calculate_discount(promo(discount_value=50, maximum_discount=200), 1000) == 200

    def test_fixed(self):
        assert calculate_discount(promo(discount_type="FIXED", discount_value=150), 1000) == 150

    def test_free_shipping_has_no_order_discount(self):
        assert calculate_discount(promo(discount_type="FREE_SHIPPING"), 1000) == 0


class TestValidatePromo:
    def test_valid_promo_returns_discount(self):
        assert validate_promo(promo(), 500, NOW) == 50

    @pytest.mark.parametrize(
        "doc, message",
        [
            (None, "Invalid promo code"),
            (promo(is_active=False), "Promo code is not active"),
            (promo(valid_until=NOW - timedelta(hours=1)), "Promo code has expired"),
            (promo(valid_from=NOW + timedelta(hours=1)), "Promo code has expired"),
            (promo(usage_limit=5, usage_count=5), "Promo code usage limit exceeded"),
            (promo(minimum_order_amount=1000), "Minimum order amount is ₹1000"),
        ],
    )
    def test_rejections(self, doc, message):
        with pytest.raises(PromoCodeError) as exc:
            validate_promo(doc, 500, NOW)
        assert str(exc.value) == message

    def test_inactive_is_checked_before_expiry(self):
        doc = promo(is_active=False, valid_until=NOW - timedelta(days=3))
        with pytest.raises(PromoCodeError, match="not active"):
            validate_promo(doc, 500, NOW)


class TestOrderHelpers:
    def test_order_type(self):
        assert order_type([{"type": "event"}]) == "TICKET"
        assert order_type([{"type": "merch"}, {"type": "merch"}]) == "MERCH"
        assert order_type([{"type": "merch"}, {"type": "event"}]) == "MIXED"

    def test_refund_amount_sums_matched_lines(self):
        order_items = [
            {"merch_id": "m1", "qty": 3, "unit_price": 200},
            {"event_id": "e1", "qty": 1, "unit_price": 999},
        ]
        returned = [{"item_id": "m1", "quantity": 2}, {"item_id": "unknown", "quantity": 1}]
        assert refund_amount(order_items, returned) == 400
