from datetime import timedelta
from unittest.mock import patch

import pytest

from database import create_document, db, find_by_id, utcnow
from services import payments
from services.payments import PaymentError

pytestmark = pytest.mark.api


@pytest.fixture
def hoodie(client, artist):
    _, headers = artist
    res = client.post("/api/merch", json={"name": "Hoodie", "price": 500, "stock": 10}, headers=headers)
    return res.json()


@pytest.fixture
def gig(client, artist):
    _, headers = artist
    body = {"title": "Live in Pune", "date": (utcnow() + timedelta(days=7)).isoformat(),
            "location": "Pune", "ticket_price": 1000}
    return client.post("/api/events", json=body, headers=headers).json()


@pytest.fixture
def save10(client, admin):
    _, headers = admin
    body = {
        "code": "save10",
        "discount_type": "PERCENTAGE",
        "discount_value": 10,
        "valid_from": (utcnow() - timedelta(days=1)).isoformat(),
        "valid_until": (utcnow() + timedelta(days=1)).isoformat(),
    }
    res = client.post("/api/admin/promo-codes", json=body, headers=headers)
    assert res.status_code == 200, res.text
    return res.json()


@pytest.fixture
def rzp_order():
    with patch.object(payments, "create_order", return_value={"id": "order_rzp_1", "amount": 118000}) as create:
        yield create


def checkout(client, headers, item, item_type="merch", quantity=2):
    client.post("/api/cart/add", json={"type": item_type, "id": item["id"], "quantity": quantity})
    res = client.post("/api/orders/checkout", headers=headers)
    assert res.status_code == 200, res.text
    return res.json()["order"]


def verify(client, headers, order, payment_id="pay_1"):
    body = {
        "order_id": order["id"],
        "razorpay_order_id": order["razorpay_order_id"],
        "razorpay_payment_id": payment_id,
        "razorpay_signature": "sig",
    }
    with patch.object(payments, "verify_payment_with_tracking",
                      return_value={"success": True, "message": "Payment verified successfully"}):
        return client.post("/api/payments/verify", json=body, headers=headers)


class TestCart:
    def test_add_merges_quantities_and_prices(self, client, hoodie):
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"], "quantity": 2})
        cart = client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]}).json()
        assert len(cart["items"]) == 1
        assert cart["items"][0]["quantity"] == 3
        assert cart["summary"] == {"subtotal": 1500, "discount": 0, "tax": 270.0, "total": 1770.0}

    def test_unknown_item(self, client):
        res = client.post("/api/cart/add", json={"type": "merch", "id": "64b7f0000000000000000000"})
        assert res.status_code == 404
        assert res.json()["message"] == "Item not found"

    def test_invalid_type(self, client, hoodie):
        assert client.post("/api/cart/add", json={"type": "song", "id": hoodie["id"]}).status_code == 400

    def test_update_and_remove(self, client, hoodie):
        item = client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]}).json()["items"][0]
        cart = client.patch(f"/api/cart/items/{item['id']}", json={"quantity": 4}).json()
        assert cart["summary"]["subtotal"] == 2000
        cart = client.patch(f"/api/cart/items/{item['id']}", json={"quantity": 0}).json()
        assert cart["items"] == []

    def test_clear(self, client, hoodie):
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]})
        assert client.delete("/api/cart").json()["items"] == []
        assert client.get("/api/cart").json()["items"] == []

    def test_inactive_tax_setting_removes_tax(self, client, hoodie):
        create_document("systemsetting", {"type": "tax", "gst_rate": 18, "is_active": False})
        cart = client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]}).json()
        assert cart["summary"]["total"] == 500


class TestPromo:
    def test_apply_to_cart(self, client, hoodie, save10):
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"], "quantity": 2})
        cart = client.post("/api/cart/promo", json={"code": "save10"}).json()
        assert cart["applied_promo_code"] == "SAVE10"
        assert cart["summary"] == {"subtotal": 1000, "discount": 100, "tax": 162.0, "total": 1062.0}
        cart = client.delete("/api/cart/promo").json()
        assert cart["summary"]["discount"] == 0

    def test_empty_cart(self, client, save10):
        res = client.post("/api/cart/promo", json={"code": "SAVE10"})
        assert res.status_code == 400
        assert res.json()["message"] == "Cart is empty"

    def test_unknown_code(self, client, hoodie):
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]})
        res = client.post("/api/cart/promo", json={"code": "NOPE"})
        assert res.json()["message"] == "Invalid promo code"

    def test_expired_promo_is_dropped_from_cart(self, client, hoodie, save10):
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]})
        client.post("/api/cart/promo", json={"code": "SAVE10"})
        db["promocode"].update_one({"code": "SAVE10"}, {"$set": {"is_active": False}})
        cart = client.get("/api/cart").json()
        assert cart["applied_promo_code"] is None
        assert cart["summary"]["discount"] == 0

        db["promocode"].update_one({"code": "SAVE10"}, {"$set": {"is_active": True}})
        assert client.get("/api/cart").json()["applied_promo_code"] is None

    def test_validate_endpoint(self, client, save10):
        res = client.post("/api/promo/validate", json={"code": "save10", "order_amount": 500})
        assert res.json()["discount"] == 50

    def test_admin_rules(self, client, admin, save10):
        _, headers = admin
        body = {**{k: save10[k] for k in ("discount_type", "discount_value")}, "code": "SAVE10",
                "valid_from": utcnow().isoformat(), "valid_until": utcnow().isoformat()}
        assert client.post("/api/admin/promo-codes", json=body, headers=headers).status_code == 400
        body.update(code="OTHER", discount_type="BOGO")
        res = client.post("/api/admin/promo-codes", json=body, headers=headers)
        assert res.json()["message"] == "Invalid discount type"
        assert len(client.get("/api/admin/promo-codes", headers=headers).json()["promo_codes"]) == 1

    def test_admin_only(self, client, fan):
        _, headers = fan
        assert client.get("/api/admin/promo-codes", headers=headers).status_code == 403


class TestCheckout:
    def test_creates_pending_order(self, client, fan, hoodie, save10, rzp_order):
        _, headers = fan
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"], "quantity": 2})
        client.post("/api/cart/promo", json={"code": "SAVE10"})
        res = client.post("/api/orders/checkout", headers=headers).json()

        order = res["order"]
        assert order["status"] == "PENDING"
        assert order["type"] == "MERCH"
        assert order["total_amount"] == 1062.0
        assert order["promo_code"] == "SAVE10"
        assert order["razorpay_order_id"] == "order_rzp_1"
        assert res["key_id"] == "rzp_test_key"
        rzp_order.assert_called_once_with(1062.0, "INR", receipt=order["id"])
        assert db["promocode"].find_one({"code": "SAVE10"})["usage_count"] == 1
        assert db["ordertracking"].find_one({"order_id": order["id"]})["status"] == "ORDER_PLACED"

    def test_requires_login_and_items(self, client, fan):
        _, headers = fan
        assert client.post("/api/orders/checkout").status_code == 401
        assert client.post("/api/orders/checkout", headers=headers).json()["message"] == "Cart is empty"

    def test_gateway_failure_cancels_order(self, client, fan, hoodie):
        _, headers = fan
        client.post("/api/cart/add", json={"type": "merch", "id": hoodie["id"]})
        with patch.object(payments, "create_order", side_effect=PaymentError("Unable to create payment order")):
            res = client.post("/api/orders/checkout", headers=headers)
        assert res.status_code == 502
        assert db["order"].find_one()["status"] == "CANCELLED"


class TestVerify:
    def test_paid_merch_order_is_fulfilled(self, client, fan, artist, hoodie, rzp_order):
        _, headers = fan
        order = checkout(client, headers, hoodie)
        res = verify(client, headers, order)
        assert res.json()["success"] is True
        assert res.json()["order"]["status"] == "PAID"

        merch = find_by_id("merch", hoodie["id"])
        assert merch["stock"] == 8
        assert merch["orders"] == [order["id"]]
        assert find_by_id("user", artist[0]["_id"])["artist"]["revenue"]["merch"] == 1000
        assert client.get("/api/cart").json()["items"] == []

        statuses = {t["status"] for t in client.get(f"/api/orders/{order['id']}/tracking", headers=headers).json()["tracking"]}
        assert statuses == {"ORDER_PLACED", "CONFIRMED"}

    def test_verify_twice_is_idempotent(self, client, fan, hoodie, rzp_order):
        _, headers = fan
        order = checkout(client, headers, hoodie)
        verify(client, headers, order)
        verify(client, headers, order)
        assert find_by_id("merch", hoodie["id"])["stock"] == 8

    def test_ticket_order_gets_qr_and_attendee(self, client, fan, gig, rzp_order):
        user, headers = fan
        order = checkout(client, headers, gig, item_type="event", quantity=1)
        assert order["type"] == "TICKET"
        paid = verify(client, headers, order).json()["order"]
        assert paid["qr_ticket_url"].startswith(f"/tickets/{order['id']}?code=")
        assert find_by_id("event", gig["id"])["attendees"] == [str(user["_id"])]

    def test_order_mismatch(self, client, fan, hoodie, rzp_order):
        _, headers = fan
        order = checkout(client, headers, hoodie)
        res = verify(client, headers, {**order, "razorpay_order_id": "order_other"})
        assert res.status_code == 400

    def test_other_users_order(self, client, fan, make_user, hoodie, rzp_order):
        _, headers = fan
        order = checkout(client, headers, hoodie)
        _, stranger = make_user()
        assert verify(client, stranger, order).status_code == 403
        assert client.get(f"/api/orders/{order['id']}", headers=stranger).status_code == 403

    def test_payment_status_from_tracker(self, client, fan):
        _, headers = fan
        payments.payment_tracker.start("order_rzp_9", "pay_9")
        res = client.get("/api/payments/status/order_rzp_9/pay_9", headers=headers)
        assert res.json()["status"] == "processing"
        assert client.get("/api/payments/status/x/y", headers=headers).status_code == 404


class TestTrackingAndReturns:
    @pytest.fixture
    def paid_order(self, client, fan, hoodie, rzp_order):
        _, headers = fan
        order = checkout(client, headers, hoodie)
        return verify(client, headers, order).json()["order"]

    def test_admin_tracking_update(self, client, admin, paid_order):
        _, headers = admin
        body = {"status": "SHIPPED", "carrier": "BlueDart", "tracking_number": "BD123"}
        entry = client.post(f"/api/orders/{paid_order['id']}/tracking", json=body, headers=headers).json()
        assert entry["carrier"] == "BlueDart"
        assert find_by_id("order", paid_order["id"])["status"] == "SHIPPED"
        bad = client.post(f"/api/orders/{paid_order['id']}/tracking", json={"status": "LOST"}, headers=headers)
        assert bad.status_code == 400

    def test_return_request(self, client, fan, hoodie, paid_order):
        _, headers = fan
        body = {"order_id": paid_order["id"], "items": [{"item_id": hoodie["id"], "quantity": 1}], "reason": "Too small"}
        created = client.post("/api/returns", json=body, headers=headers).json()
        assert created["status"] == "PENDING"
        assert created["refund_amount"] == 500
        assert len(client.get("/api/returns/me", headers=headers).json()["returns"]) == 1

    def test_pending_order_cannot_be_returned(self, client, fan, hoodie, rzp_order):
        _, headers = fan
        order = checkout(client, headers, hoodie)
        body = {"order_id": order["id"], "items": [{"item_id": hoodie["id"], "quantity": 1}], "reason": "x"}
        assert client.post("/api/returns", json=body, headers=headers).status_code == 400

    def test_admin_approve_and_refund(self, client, fan, admin, hoodie, paid_order):
        _, headers = fan
        body = {"order_id": paid_order["id"], "items": [{"item_id": hoodie["id"], "quantity": 2}], "reason": "Damaged"}
        return_id = client.post("/api/returns", json=body, headers=headers).json()["id"]
        _, admin_headers = admin

        res = client.post(f"/api/admin/returns/{return_id}/process", json={"action": "approve"}, headers=admin_headers)
        assert res.json()["message"] == "Return approved successfully"
        assert find_by_id("order", paid_order["id"])["status"] == "RETURN_INITIATED"

        with patch.object(payments, "refund_payment", return_value={"id": "rfnd_1"}) as refund:
            res = client.post(f"/api/admin/returns/{return_id}/process", json={"action": "refund"},
                              headers=admin_headers)
        refund.assert_called_once_with("pay_1", 1000)
        assert res.json()["refund"] == {"id": "rfnd_1"}
        order = find_by_id("order", paid_order["id"])
        assert order["status"] == "REFUNDED"
        assert order["razorpay_refund_id"] == "rfnd_1"
        assert find_by_id("returnrequest", return_id)["status"] == "REFUNDED"

        listing = client.get("/api/admin/returns", params={"status": "REFUNDED"}, headers=admin_headers).json()
        assert listing["total"] == 1


class TestSubscriptions:
    def test_subscribe_credits_artist(self, client, fan, artist):
        artist_user, _ = artist
        _, headers = fan
        sub = client.post("/api/subscriptions", json={"artist_id": str(artist_user["_id"]), "amount": 199,
                                                      "tier": "gold"}, headers=headers).json()
        assert sub["tier"] == "GOLD"
        assert sub["status"] == "ACTIVE"
        assert find_by_id("user", artist_user["_id"])["artist"]["revenue"]["subscriptions"] == 199
        assert len(client.get("/api/subscriptions/me", headers=headers).json()["subscriptions"]) == 1

    def test_unknown_artist(self, client, fan):
        _, headers = fan
        res = client.post("/api/subscriptions", json={"artist_id": "64b7f0000000000000000000"}, headers=headers)
        assert res.status_code == 404

    def test_recurring_plan_creates_razorpay_subscription(self, client, fan, artist):
        artist_user, _ = artist
        _, headers = fan
        with patch.object(payments, "create_customer", return_value={"id": "cust_1"}), \
                patch.object(payments, "create_subscription", return_value={"id": "sub_1"}) as create_sub:
            sub = client.post("/api/subscriptions", json={"artist_id": str(artist_user["_id"]),
                                                          "razorpay_plan_id": "plan_1"}, headers=headers).json()
        create_sub.assert_called_once_with("plan_1", "cust_1")
        assert sub["razorpay_subscription_id"] == "sub_1"
