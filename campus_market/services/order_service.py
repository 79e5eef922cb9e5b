"""Order lifecycle: place, verify hand-off OTP, regenerate OTP, cancel.

Each public operation is one database transaction. The order row and the item
row change together: a commit carries both, any failure rolls both back.
Contended fields (item status, OTP attempts, OTP hash, order status) are only
written through conditional updates keyed on the values read earlier in the
same operation.
"""
from typing import List, NamedTuple, Optional, Tuple

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from campus_market.db import db
from campus_market.errors import (
    Conflict,
    Forbidden,
    NotFound,
    OtpRejected,
    RetryableError,
    ValidationError,
)
from campus_market.models import CartEntry, Item, ItemStatus, Order, OrderEvent, OrderStatus
from campus_market.services import availability, otp_service
from campus_market.services.availability import conditional_update
from campus_market.utils.identifiers import new_transaction_id, utcnow
from campus_market.utils.parsing import require_int

# rounds of re-read + retry when a conditional update loses a race
MAX_CAS_ROUNDS = 3
PLACE_ATTEMPTS = 2


class PlacedOrder(NamedTuple):
    order: Order
    otp: str
    created: bool


def _log_event(order_id: int, event_type: str, actor_id: Optional[int] = None, description: str = None):
    db.session.add(OrderEvent(
        order_id=order_id,
        event_type=event_type,
        actor_id=actor_id,
        description=description,
    ))


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found")
    return order


def get_order_for(order_id: int, actor_id: int) -> Order:
    order = get_order(order_id)
    if actor_id not in (order.buyer_id, order.seller_id):
        raise Forbidden("Not authorized to view this order")
    return order


def _ensure_pending(order: Order):
    if order.status != OrderStatus.pending:
        raise Conflict(f"Order is already {order.status.value}", code="not_pending")


# ---------- OTP record swap ----------
def _swap_otp(order: Order) -> Optional[str]:
    """Replace the order's OTP record if nobody changed it since we read it."""
    issued = otp_service.issue_otp()
    stmt = (
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == OrderStatus.pending,
            Order.otp_hash == order.otp_hash,
        )
        .values(**issued.as_columns())
    )
    if not conditional_update(stmt):
        return None
    return issued.plaintext


# ---------- Create ----------
def place_order(item_id: int, buyer_id: int, quantity=1) -> PlacedOrder:
    """Reserve the item and open a pending order for it.

    The item must be ``available``, or already ``reserved`` by this buyer. In
    the latter case the buyer's existing pending order is handed back with a
    fresh OTP instead of opening a second one.
    """
    quantity = require_int(1 if quantity is None else quantity, "Quantity", minv=1)

    for attempt in range(1, PLACE_ATTEMPTS + 1):
        try:
            return _place_order_once(item_id, buyer_id, quantity)
        except IntegrityError:
            db.session.rollback()
            current_app.logger.warning(
                "Order insert for item %s hit a uniqueness violation (attempt %s/%s)",
                item_id, attempt, PLACE_ATTEMPTS,
            )
        except Exception:
            db.session.rollback()
            raise
    raise RetryableError("Could not place the order right now, please retry")


def _place_order_once(item_id: int, buyer_id: int, quantity: int) -> PlacedOrder:
    now = utcnow()
    item = db.session.get(Item, item_id)
    if item is None:
        raise NotFound("Item not found")
    if item.seller_id == buyer_id:
        raise Conflict("You cannot buy your own item", code="self_purchase")

    if item.status == ItemStatus.reserved and item.reserved_by == buyer_id:
        existing = Order.query.filter_by(
            item_id=item.id, buyer_id=buyer_id, status=OrderStatus.pending
        ).first()
        if existing is not None:
            otp = _swap_otp(existing)
            if otp is None:
                raise Conflict("Order changed while placing it, please retry")
            _log_event(existing.id, "otp_regenerated", buyer_id, "Buyer placed the same order again")
            db.session.commit()
            current_app.logger.info("Order %s re-entered by buyer %s", existing.id, buyer_id)
            return PlacedOrder(existing, otp, False)
        claimed = availability.reclaim_reservation(item.id, buyer_id, item.reserved_at, now)
    else:
        claimed = availability.reserve_item(item.id, buyer_id, now)

    if not claimed:
        raise Conflict("Item not available", code="item_unavailable")

    issued = otp_service.issue_otp(now)
    order = Order(
        transaction_id=new_transaction_id(),
        item_id=item.id,
        buyer_id=buyer_id,
        seller_id=item.seller_id,
        quantity=quantity,
        total_amount=item.price * quantity,
        status=OrderStatus.pending,
        created_at=now,
        **issued.as_columns(),
    )
    db.session.add(order)
    db.session.flush()

    _log_event(order.id, "created", buyer_id, f"Order {order.transaction_id} placed")
    CartEntry.query.filter_by(user_id=buyer_id, item_id=item.id).delete(synchronize_session=False)
    db.session.commit()

    current_app.logger.info(
        "Order %s (%s) placed: item=%s buyer=%s seller=%s",
        order.id, order.transaction_id, order.item_id, buyer_id, order.seller_id,
    )
    return PlacedOrder(order, issued.plaintext, True)


# ---------- Regenerate ----------
def regenerate_otp(order_id: int, actor_id: int) -> Tuple[Order, str]:
    try:
        for _ in range(MAX_CAS_ROUNDS):
            order = get_order(order_id)
            if order.buyer_id != actor_id:
                raise Forbidden("Only the buyer can regenerate the OTP")
            _ensure_pending(order)

            otp = _swap_otp(order)
            if otp is not None:
                _log_event(order.id, "otp_regenerated", actor_id, "New OTP issued")
                db.session.commit()
                current_app.logger.info("OTP regenerated for order %s", order.id)
                return order, otp
            db.session.rollback()
    except Exception:
        db.session.rollback()
        raise
    raise RetryableError("Order is busy, please retry")


# ---------- Verify ----------
def verify_otp(order_id: int, candidate, actor_id: int) -> Order:
    """Seller submits the code the buyer told them; success completes the sale."""
    if not otp_service.is_valid_otp_format(candidate):
        raise ValidationError("OTP must be a 6-digit number", code="invalid_format")

    try:
        for _ in range(MAX_CAS_ROUNDS):
            order = get_order(order_id)
            if order.seller_id != actor_id:
                raise Forbidden("Only the seller can verify OTP")
            _ensure_pending(order)

            now = utcnow()
            if now > order.otp_expires_at:
                raise OtpRejected("OTP has expired", code="expired")
            if order.otp_attempts <= 0:
                raise OtpRejected("Maximum OTP attempts exceeded", code="attempts_exhausted", attempts_remaining=0)

            seen_attempts, seen_hash = order.otp_attempts, order.otp_hash
            if otp_service.check_otp(seen_hash, candidate):
                if _complete_delivery(order, seen_attempts, seen_hash, actor_id, now):
                    db.session.commit()
                    current_app.logger.info("Order %s delivered, item %s sold", order.id, order.item_id)
                    return order
            else:
                remaining = seen_attempts - 1
                if _consume_attempt(order.id, seen_attempts, seen_hash, remaining):
                    _log_event(order.id, "otp_failed", actor_id, f"Wrong OTP, {remaining} attempt(s) left")
                    db.session.commit()
                    current_app.logger.warning("Wrong OTP for order %s, %s attempt(s) left", order.id, remaining)
                    if remaining > 0:
                        raise OtpRejected(
                            f"Invalid OTP. {remaining} attempts remaining",
                            code="invalid_otp",
                            attempts_remaining=remaining,
                        )
                    raise OtpRejected("Maximum OTP attempts exceeded", code="attempts_exhausted", attempts_remaining=0)

            # lost a race against another verifier or a regeneration
            db.session.rollback()
            current_app.logger.warning("Order %s changed during OTP verification, re-reading", order_id)
    except Exception:
        db.session.rollback()
        raise
    raise RetryableError("Order is busy, please retry")


def _consume_attempt(order_id: int, seen_attempts: int, seen_hash: str, remaining: int) -> bool:
    stmt = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == OrderStatus.pending,
            Order.otp_attempts == seen_attempts,
            Order.otp_hash == seen_hash,
        )
        .values(otp_attempts=remaining)
    )
    return conditional_update(stmt)


def _complete_delivery(order: Order, seen_attempts: int, seen_hash: str, actor_id: int, now) -> bool:
    stmt = (
        update(Order)
        .where(
            Order.id == order.id,
            Order.status == OrderStatus.pending,
            Order.otp_attempts == seen_attempts,
            Order.otp_hash == seen_hash,
        )
        .values(status=OrderStatus.delivered, delivered_at=now)
    )
    if not conditional_update(stmt):
        return False

    if not availability.mark_item_sold(order.item_id):
        raise Conflict("Item is already sold", code="item_sold")

    for other_id in availability.cancel_other_pending(order.item_id, order.id, now, "sold_to_another_buyer"):
        _log_event(other_id, "auto_cancelled", None, "Item was sold to another buyer")
        current_app.logger.info("Order %s auto-cancelled, item %s sold via order %s", other_id, order.item_id, order.id)

    _log_event(order.id, "delivered", actor_id, "Seller confirmed hand-off with OTP")
    return True


# ---------- Cancel ----------
def cancel_order(order_id: int, actor_id: int) -> Order:
    try:
        order = get_order(order_id)
        if actor_id not in (order.buyer_id, order.seller_id):
            raise Forbidden("Not authorized to cancel this order")
        _ensure_pending(order)

        now = utcnow()
        reason = "buyer" if actor_id == order.buyer_id else "seller"
        stmt = (
            update(Order)
            .where(Order.id == order.id, Order.status == OrderStatus.pending)
            .values(status=OrderStatus.cancelled, cancelled_at=now, cancel_reason=reason)
        )
        if not conditional_update(stmt):
            db.session.rollback()
            _ensure_pending(get_order(order_id))
            raise Conflict("Order could not be cancelled, please retry")

        if not availability.release_item(order.item_id, order.buyer_id):
            current_app.logger.warning(
                "Order %s cancelled but item %s was not reserved by its buyer", order.id, order.item_id
            )
        _log_event(order.id, "cancelled", actor_id, f"Cancelled by {reason}")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info("Order %s cancelled by %s", order.id, reason)
    return order


# ---------- History ----------
def buyer_orders(user_id: int) -> List[Order]:
    return Order.query.filter(Order.buyer_id == user_id).order_by(Order.created_at.desc(), Order.id.desc()).all()


def seller_orders(user_id: int) -> List[Order]:
    return Order.query.filter(Order.seller_id == user_id).order_by(Order.created_at.desc(), Order.id.desc()).all()


def orders_to_deliver(user_id: int) -> Tuple[List[Order], dict]:
    orders = (
        Order.query.filter(
            Order.seller_id == user_id,
            Order.status.in_([OrderStatus.pending, OrderStatus.delivered]),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )
    delivered = [o for o in orders if o.status == OrderStatus.delivered]
    stats = {
        "pending": len(orders) - len(delivered),
        "delivered": len(delivered),
        "totalEarnings": sum(o.total_amount for o in delivered),
    }
    return orders, stats
