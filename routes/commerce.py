"""
Cart, promo codes, checkout, payments, subscriptions, tracking and returns.

The cart lives in the signed session cookie (``request.session["cart"]``);
everything else is persisted.
"""

import secrets
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from auth import get_user_from_token, is_admin
from database import (
    create_document,
    db,
    find_by_id,
    get_documents,
    naive_utc,
    serialize,
    to_object_id,
    update_by_id,
    utcnow,
)
from routes.deps import changes, get_or_404, log_admin_action, require_admin
from schemas import Order, OrderItem, OrderTracking, PromoCode, ReturnRequest, Subscription
from services import payments
from services.payments import PaymentError
from services.pricing import (
    DISCOUNT_TYPES,
    TAX_RATE,
    PromoCodeError,
    cart_subtotal,
    order_type,
    refund_amount,
    summarize,
    validate_promo,
)
from settings import get_settings

logger = structlog.get_logger()

router = APIRouter(prefix="/api", tags=["commerce"])

TRACKING_STATUSES = (
    "ORDER_PLACED", "CONFIRMED", "PROCESSING", "SHIPPED",
    "OUT_FOR_DELIVERY", "DELIVERED", "RETURNED", "CANCELLED",
)
SUBSCRIPTION_DAYS = 30


# -----------------
# Request bodies
# -----------------

class CartAddBody(BaseModel):
    type: str = Field(..., pattern="^(merch|event)$")
    id: str
    quantity: int = Field(1, ge=1)


class CartQuantityBody(BaseModel):
    quantity: int


class PromoApplyBody(BaseModel):
    code: str


class PromoValidateBody(BaseModel):
    code: str
    order_amount: float


class PromoCodeBody(BaseModel):
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: float = Field(..., ge=0)
    minimum_order_amount: float = 0
    maximum_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True


class PromoCodeUpdateBody(BaseModel):
    description: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    minimum_order_amount: Optional[float] = None
    maximum_discount: Optional[float] = None
    usage_limit: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None


class VerifyPaymentBody(BaseModel):
    order_id: str
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class SubscriptionBody(BaseModel):
    artist_id: str
    tier: str = "BRONZE"
    amount: float = 0
    razorpay_plan_id: Optional[str] = None


class TrackingBody(BaseModel):
    status: str
    location: Optional[str] = None
    description: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class ReturnItemBody(BaseModel):
    item_id: str
    quantity: int = Field(..., ge=1)


class ReturnBody(BaseModel):
    order_id: str
    items: List[ReturnItemBody]
    reason: str
    refund_method: str = "ORIGINAL_PAYMENT"


class ProcessReturnBody(BaseModel):
    action: str = Field(..., pattern="^(approve|reject|refund)$")
    refund_amount: Optional[float] = None
    refund_method: Optional[str] = None
    reason: Optional[str] = None


# -----------------
# Helpers
# -----------------

def current_tax_rate() -> float:
    settings = db["systemsetting"].find_one({"type": "tax"})
    if not settings:
        return TAX_RATE
    if not settings.get("is_active", True):
        return 0.0
    return settings.get("gst_rate", TAX_RATE * 100) / 100


def find_promo(code: str) -> Optional[dict]:
    return db["promocode"].find_one({"code": code.strip().upper()})


def _get_cart(request: Request) -> dict:
    return request.session.get("cart") or {"items": [], "applied_promo_code": None}


def _save_cart(request: Request, cart: dict) -> dict:
    request.session["cart"] = cart
    return cart_response(cart)


def cart_response(cart: dict) -> dict:
    """Re-price the cart, dropping a promo that no longer applies."""
    items = cart["items"]
    discount = 0.0
    code = cart.get("applied_promo_code")
    if code:
        try:
            discount = validate_promo(find_promo(code), cart_subtotal(items), utcnow())
        except PromoCodeError:
            cart["applied_promo_code"] = None
    return {
        "items": items,
        "applied_promo_code": cart.get("applied_promo_code"),
        "summary": summarize(items, discount, current_tax_rate()),
    }


def _order_for(order_id: str, user: dict) -> dict:
    order = get_or_404("order", order_id, "Order")
    if order["user_id"] != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Access denied")
    return order


def _payment_http_error(exc: PaymentError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _fulfil(order: dict) -> None:
    """Apply a paid order to stock, attendee lists and artist revenue."""
    order_id = str(order["_id"])
    for line in order["items"]:
        total = line["unit_price"] * line["qty"]
        if line.get("merch_id"):
            item = find_by_id("merch", line["merch_id"])
            if item:
                db["merch"].update_one(
                    {"_id": item["_id"]},
                    {"$inc": {"stock": -line["qty"]}, "$addToSet": {"orders": order_id}},
                )
                _credit_artist(item.get("artist_id"), "merch", total)
        elif line.get("event_id"):
            event = find_by_id("event", line["event_id"])
            if event:
                db["event"].update_one({"_id": event["_id"]}, {"$addToSet": {"attendees": order["user_id"]}})
                _credit_artist(event.get("artist_id"), "events", total)


def _credit_artist(artist_id: Optional[str], stream: str, amount: float) -> None:
    oid = to_object_id(artist_id)
    if oid:
        db["user"].update_one({"_id": oid, "role": "artist"}, {"$inc": {f"artist.revenue.{stream}": amount}})


# -----------------
# Cart
# -----------------

@router.get("/cart")
def get_cart(request: Request):
    return _save_cart(request, _get_cart(request))


@router.post("/cart/add")
def add_to_cart(body: CartAddBody, request: Request):
    collection = "merch" if body.type == "merch" else "event"
    doc = find_by_id(collection, body.id)
    if not doc:
        raise HTTPException(status_code=404, detail="Item not found")

    cart = _get_cart(request)
    existing = next((i for i in cart["items"] if i["type"] == body.type and i["item_id"] == body.id), None)
    if existing:
        existing["quantity"] += body.quantity
    elif body.type == "merch":
        cart["items"].append({
            "id": uuid.uuid4().hex,
            "type": "merch",
            "item_id": body.id,
            "name": doc["name"],
            "price": doc["price"],
            "quantity": body.quantity,
            "image": (doc.get("images") or [None])[0],
        })
    else:
        cart["items"].append({
            "id": uuid.uuid4().hex,
            "type": "event",
            "item_id": body.id,
            "name": doc["title"],
            "price": doc.get("ticket_price", 0),
            "quantity": body.quantity,
            "image": doc.get("image_url"),
        })
    return _save_cart(request, cart)


@router.patch("/cart/items/{item_id}")
def update_cart_item(item_id: str, body: CartQuantityBody, request: Request):
    cart = _get_cart(request)
    item = next((i for i in cart["items"] if i["id"] == item_id), None)
    if item is None:
        raise HTTPException(status_code=404, detail="Cart item not found")
    if body.quantity <= 0:
        cart["items"].remove(item)
    else:
        item["quantity"] = body.quantity
    return _save_cart(request, cart)


@router.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: str, request: Request):
    cart = _get_cart(request)
    cart["items"] = [i for i in cart["items"] if i["id"] != item_id]
    return _save_cart(request, cart)


@router.delete("/cart")
def clear_cart(request: Request):
    request.session.pop("cart", None)
    return cart_response(_get_cart(request))


@router.post("/cart/promo")
def apply_promo(body: PromoApplyBody, request: Request):
    cart = _get_cart(request)
    if not cart["items"]:
        raise HTTPException(status_code=400, detail="Cart is empty")
    try:
        validate_promo(find_promo(body.code), cart_subtotal(cart["items"]), utcnow())
    except PromoCodeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    cart["applied_promo_code"] = body.code.strip().upper()
    return {**_save_cart(request, cart), "message": "Promo code applied successfully"}


@router.delete("/cart/promo")
def remove_promo(request: Request):
    cart = _get_cart(request)
    cart["applied_promo_code"] = None
    return _save_cart(request, cart)


# -----------------
# Promo codes
# -----------------

@router.post("/promo/validate")
def validate_promo_code(body: PromoValidateBody):
    promo = find_promo(body.code)
    try:
        discount = validate_promo(promo, body.order_amount, utcnow())
    except PromoCodeError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "valid": True,
        "discount": discount,
        "message": "Promo code applied successfully",
        "promo": serialize(promo),
    }


@router.get("/admin/promo-codes")
def list_promo_codes(admin=Depends(require_admin)):
    return {"promo_codes": serialize(get_documents("promocode", sort=[("created_at", -1)]))}


@router.post("/admin/promo-codes")
def create_promo_code(body: PromoCodeBody, admin=Depends(require_admin)):
    code = body.code.strip().upper()
    if body.discount_type not in DISCOUNT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid discount type")
    if find_promo(code):
        raise HTTPException(status_code=400, detail="Promo code already exists")
    data = body.model_dump()
    data.update(code=code, valid_from=naive_utc(body.valid_from), valid_until=naive_utc(body.valid_until))
    promo_id = create_document("promocode", PromoCode(**data))
    log_admin_action(admin, "create_promo_code", code=code)
    return serialize(find_by_id("promocode", promo_id))


@router.patch("/admin/promo-codes/{promo_id}")
def update_promo_code(promo_id: str, body: PromoCodeUpdateBody, admin=Depends(require_admin)):
    get_or_404("promocode", promo_id, "Promo code")
    fields = changes(body)
    if "discount_type" in fields and fields["discount_type"] not in DISCOUNT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid discount type")
    for key in ("valid_from", "valid_until"):
        if key in fields:
            fields[key] = naive_utc(fields[key])
    promo = update_by_id("promocode", promo_id, fields)
    log_admin_action(admin, "update_promo_code", promo_id=promo_id)
    return serialize(promo)


@router.delete("/admin/promo-codes/{promo_id}")
def delete_promo_code(promo_id: str, admin=Depends(require_admin)):
    promo = get_or_404("promocode", promo_id, "Promo code")
    db["promocode"].delete_one({"_id": promo["_id"]})
    log_admin_action(admin, "delete_promo_code", code=promo["code"])
    return {"message": "Promo code deleted"}


# -----------------
# Orders & payments
# -----------------

@router.post("/orders/checkout")
def checkout(request: Request, user=Depends(get_user_from_token)):
    cart = _get_cart(request)
    if not cart["items"]:
        raise HTTPException(status_code=400, detail="Cart is empty")
    priced = cart_response(cart)
    summary = priced["summary"]

    items = []
    for i in cart["items"]:
        key = "merch_id" if i["type"] == "merch" else "event_id"
        items.append(OrderItem(**{key: i["item_id"], "qty": i["quantity"], "unit_price": i["price"]}))

    order = Order(
        user_id=str(user["_id"]),
        type=order_type(cart["items"]),
        items=items,
        total_amount=summary["total"],
        promo_code=priced["applied_promo_code"],
    )
    order_id = create_document("order", order)
    create_document("ordertracking", OrderTracking(order_id=order_id, status="ORDER_PLACED"))

    try:
        rp_order = payments.create_order(summary["total"], "INR", receipt=order_id)
    except PaymentError as exc:
        update_by_id("order", order_id, {"status": "CANCELLED"})
        raise _payment_http_error(exc)

    update_by_id("order", order_id, {"razorpay_order_id": rp_order["id"]})
    if priced["applied_promo_code"]:
        db["promocode"].update_one({"code": priced["applied_promo_code"]}, {"$inc": {"usage_count": 1}})
    logger.info("Checkout started", order_id=order_id, total=summary["total"], razorpay_order_id=rp_order["id"])
    return {
        "order": serialize(find_by_id("order", order_id)),
        "razorpay_order": rp_order,
        "key_id": get_settings().razorpay_key_id,
    }


@router.post("/payments/verify")
def verify_payment(body: VerifyPaymentBody, request: Request, user=Depends(get_user_from_token)):
    order = _order_for(body.order_id, user)
    if order.get("razorpay_order_id") != body.razorpay_order_id:
        raise HTTPException(status_code=400, detail="Order mismatch")
    if order.get("status") == "PAID":
        return {"success": True, "order": serialize(order)}

    try:
        result = payments.verify_payment_with_tracking(
            body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature
        )
    except PaymentError as exc:
        raise _payment_http_error(exc)

    if not result["success"]:
        return {"success": False, "message": result["message"], "order": serialize(order)}

    fields = {"status": "PAID", "razorpay_payment_id": body.razorpay_payment_id}
    if order["type"] == "TICKET":
        fields["qr_ticket_url"] = f"/tickets/{order['_id']}?code={secrets.token_urlsafe(8)}"
    order = update_by_id("order", order["_id"], fields)
    create_document("ordertracking", OrderTracking(order_id=str(order["_id"]), status="CONFIRMED"))
    _fulfil(order)
    request.session.pop("cart", None)
    logger.info("Payment verified", order_id=str(order["_id"]), payment_id=body.razorpay_payment_id)
    return {"success": True, "order": serialize(order)}


@router.get("/payments/status/{order_id}/{payment_id}")
def payment_status(order_id: str, payment_id: str, user=Depends(get_user_from_token)):
    tracking = payments.payment_tracker.get(order_id, payment_id)
    if tracking is None:
        raise HTTPException(status_code=404, detail="Payment status not found")
    return tracking


@router.get("/orders")
def my_orders(user=Depends(get_user_from_token)):
    orders = get_documents("order", {"user_id": str(user["_id"])}, sort=[("created_at", -1)])
    return {"orders": serialize(orders)}


@router.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_user_from_token)):
    return serialize(_order_for(order_id, user))


# -----------------
# Subscriptions
# -----------------

@router.post("/subscriptions")
def subscribe(body: SubscriptionBody, user=Depends(get_user_from_token)):
    artist = find_by_id("user", body.artist_id, role="artist")
    if not artist:
        raise HTTPException(status_code=404, detail="Artist not found")
    now = utcnow()
    subscription = Subscription(
        fan_id=str(user["_id"]),
        artist_id=body.artist_id,
        tier=(body.tier or "BRONZE").upper(),
        amount=body.amount,
        start_date=now,
        end_date=now + timedelta(days=SUBSCRIPTION_DAYS),
    ).model_dump()

    if body.razorpay_plan_id:
        try:
            customer = payments.create_customer(user["name"], user["email"])
            rp_sub = payments.create_subscription(body.razorpay_plan_id, customer["id"])
        except PaymentError as exc:
            raise _payment_http_error(exc)
        subscription["razorpay_subscription_id"] = rp_sub["id"]

    sub_id = create_document("subscription", subscription)
    if body.amount:
        _credit_artist(body.artist_id, "subscriptions", body.amount)
    return serialize(find_by_id("subscription", sub_id))


@router.get("/subscriptions/me")
def my_subscriptions(user=Depends(get_user_from_token)):
    subs = get_documents("subscription", {"fan_id": str(user["_id"])}, sort=[("created_at", -1)])
    return {"subscriptions": serialize(subs)}


# -----------------
# Tracking & returns
# -----------------

@router.get("/orders/{order_id}/tracking")
def order_tracking(order_id: str, user=Depends(get_user_from_token)):
    _order_for(order_id, user)
    entries = get_documents("ordertracking", {"order_id": order_id}, sort=[("created_at", 1)])
    return {"tracking": serialize(entries)}


@router.post("/orders/{order_id}/tracking")
def add_tracking(order_id: str, body: TrackingBody, admin=Depends(require_admin)):
    get_or_404("order", order_id, "Order")
    if body.status not in TRACKING_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid tracking status")
    entry_id = create_document("ordertracking", {
        **OrderTracking(order_id=order_id, status=body.status, location=body.location,
                        description=body.description, updated_by=str(admin["_id"])).model_dump(),
        "tracking_number": body.tracking_number,
        "carrier": body.carrier,
        "estimated_delivery": naive_utc(body.estimated_delivery),
    })
    if body.status in ("SHIPPED", "DELIVERED"):
        update_by_id("order", order_id, {"status": body.status})
    log_admin_action(admin, "add_order_tracking", order_id=order_id, status=body.status)
    return serialize(find_by_id("ordertracking", entry_id))


@router.post("/returns")
def request_return(body: ReturnBody, user=Depends(get_user_from_token)):
    order = get_or_404("order", body.order_id, "Order")
    if order["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Access denied")
    if order.get("status") not in ("PAID", "SHIPPED", "DELIVERED"):
        raise HTTPException(status_code=400, detail="Order is not eligible for return")

    items = [i.model_dump() for i in body.items]
    request_doc = ReturnRequest(
        order_id=body.order_id,
        user_id=str(user["_id"]),
        items=items,
        reason=body.reason,
        refund_amount=refund_amount(order["items"], items),
        refund_method=body.refund_method or "ORIGINAL_PAYMENT",
    )
    return_id = create_document("returnrequest", request_doc)
    return serialize(find_by_id("returnrequest", return_id))


@router.get("/returns/me")
def my_returns(user=Depends(get_user_from_token)):
    returns = get_documents("returnrequest", {"user_id": str(user["_id"])}, sort=[("created_at", -1)])
    return {"returns": serialize(returns)}


@router.get("/admin/returns")
def list_returns(status: Optional[str] = None, limit: int = 50, offset: int = 0, admin=Depends(require_admin)):
    query = {"status": status} if status and status != "all" else {}
    returns = get_documents("returnrequest", query, limit=limit, skip=offset, sort=[("created_at", -1)])
    return {
        "return_requests": serialize(returns),
        "total": db["returnrequest"].count_documents(query),
        "limit": limit,
        "offset": offset,
    }


@router.post("/admin/returns/{return_id}/process")
def process_return(return_id: str, body: ProcessReturnBody, admin=Depends(require_admin)):
    return_request = get_or_404("returnrequest", return_id, "Return request")
    order = find_by_id("order", return_request["order_id"])
    if not order:
        raise HTTPException(status_code=404, detail="Associated order not found")
    amount = body.refund_amount or return_request.get("refund_amount")
    method = body.refund_method or return_request.get("refund_method")

    if body.action == "approve":
        update_by_id("returnrequest", return_id, {
            "status": "APPROVED",
            "admin_notes": body.reason or "Return approved",
            "refund_amount": amount,
            "refund_method": method,
        })
        update_by_id("order", order["_id"], {"status": "RETURN_INITIATED"})
    elif body.action == "reject":
        update_by_id("returnrequest", return_id, {
            "status": "REJECTED",
            "admin_notes": body.reason or "Return rejected",
        })
    else:
        if not order.get("razorpay_payment_id"):
            raise HTTPException(status_code=400, detail="No payment ID found for this order")
        try:
            refund = payments.refund_payment(order["razorpay_payment_id"], amount)
        except PaymentError as exc:
            raise _payment_http_error(exc)
        update_by_id("returnrequest", return_id, {
            "status": "REFUNDED",
            "admin_notes": f"Refund processed: ₹{amount:g}. {body.reason or ''}".strip(),
            "refund_amount": amount,
            "refund_method": method,
        })
        update_by_id("order", order["_id"], {
            "status": "REFUNDED",
            "refunded_at": utcnow(),
            "refunded_by": str(admin["_id"]),
            "refund_amount": amount,
            "razorpay_refund_id": refund.get("id"),
        })
        log_admin_action(admin, "process_return_refund", return_id=return_id, amount=amount, refund_id=refund.get("id"))
        return {"message": "Refund processed successfully", "refund": refund, "return_request_id": return_id}

    log_admin_action(admin, f"return_{body.action}", return_id=return_id)
    return {"message": f"Return {body.action}d successfully"}
