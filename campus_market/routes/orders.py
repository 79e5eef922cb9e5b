# routes/orders.py
from flask import Blueprint, g

from campus_market.auth import require_auth
from campus_market.errors import ValidationError
from campus_market.models import Order
from campus_market.services import order_service
from campus_market.utils.parsing import iso, json_object, require_int
from campus_market.utils.responses import ok

bp_orders = Blueprint("orders", __name__, url_prefix="/api/orders")


def _item_summary(order: Order):
    it = order.item
    if it is None:
        return None
    return {
        "id": it.id,
        "name": it.name,
        "price": it.price,
        "category": it.category.value if it.category else None,
        "status": it.status.value if it.status else None,
    }


def order_json(o: Order, otp: str = None, detail: bool = False):
    """Serialize an order. ``otp`` is the one-time plaintext, passed only right after it was issued.

    With ``detail``, ``otpTimeRemaining`` is whole seconds until the OTP expires.
    """
    data = {
        "id": o.id,
        "transactionId": o.transaction_id,
        "item": _item_summary(o),
        "buyer": o.buyer_id,
        "seller": o.seller_id,
        "quantity": o.quantity,
        "totalAmount": o.total_amount,
        "status": o.status.value,
        "otpExpiresAt": iso(o.otp_expires_at),
        "cancelReason": o.cancel_reason,
        "createdAt": iso(o.created_at),
        "updatedAt": iso(o.updated_at),
        "deliveredAt": iso(o.delivered_at),
        "cancelledAt": iso(o.cancelled_at),
    }
    if otp is not None:
        data["otp"] = otp
    if detail:
        data["otpAttemptsRemaining"] = o.otp_attempts
        data["otpTimeRemaining"] = o.otp_time_remaining()
        data["timeline"] = [
            {
                "id": e.id,
                "eventType": e.event_type,
                "actor": e.actor_id,
                "description": e.description,
                "createdAt": iso(e.created_at),
            }
            for e in o.events
        ]
    return data


# ---------- Create ----------
@bp_orders.post("")
@require_auth
def create_order():
    data = json_object()
    if data.get("itemId") in (None, ""):
        raise ValidationError("itemId is required")
    item_id = require_int(data["itemId"], "itemId")

    result = order_service.place_order(item_id, g.user_id, data.get("quantity", 1))
    if result.created:
        message = "Order created successfully. Share the OTP with the seller to complete the delivery."
    else:
        message = "You already have a pending order for this item. A new OTP was issued."
    return ok({"order": order_json(result.order, otp=result.otp)}, 201 if result.created else 200, message)


# ---------- Listings ----------
@bp_orders.get("/buyer")
@bp_orders.get("/my-orders")
@require_auth
def my_orders():
    orders = order_service.buyer_orders(g.user_id)
    return ok({"orders": [order_json(o) for o in orders]})


@bp_orders.get("/seller")
@require_auth
def seller_orders():
    orders = order_service.seller_orders(g.user_id)
    return ok({"orders": [order_json(o) for o in orders]})


@bp_orders.get("/to-deliver")
@require_auth
def to_deliver():
    orders, stats = order_service.orders_to_deliver(g.user_id)
    return ok({"orders": [order_json(o) for o in orders], "stats": stats})


@bp_orders.get("/<int:order_id>")
@require_auth
def get_order(order_id: int):
    o = order_service.get_order_for(order_id, g.user_id)
    return ok({"order": order_json(o, detail=True)})


# ---------- OTP hand-off ----------
@bp_orders.post("/<int:order_id>/verify-otp")
@require_auth
def verify_otp(order_id: int):
    data = json_object()
    order_service.verify_otp(order_id, data.get("otp"), g.user_id)
    return ok(message="Delivery completed successfully")


@bp_orders.post("/<int:order_id>/regenerate-otp")
@require_auth
def regenerate_otp(order_id: int):
    o, otp = order_service.regenerate_otp(order_id, g.user_id)
    return ok({"otp": otp, "expiresAt": iso(o.otp_expires_at)}, message="New OTP generated successfully")


# ---------- Cancel ----------
@bp_orders.post("/<int:order_id>/cancel")
@require_auth
def cancel_order(order_id: int):
    order_service.cancel_order(order_id, g.user_id)
    return ok(message="Order cancelled successfully")
