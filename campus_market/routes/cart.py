# routes/cart.py
from flask import Blueprint, current_app, g
from sqlalchemy.exc import SQLAlchemyError

from campus_market.auth import require_auth
from campus_market.db import db
from campus_market.errors import Conflict, MarketError, NotFound, ValidationError
from campus_market.models import CartEntry, Item, ItemStatus
from campus_market.routes.items import item_json
from campus_market.routes.orders import order_json
from campus_market.services import order_service
from campus_market.utils.parsing import json_object, require_int
from campus_market.utils.responses import commit_or_rollback, ok

bp_cart = Blueprint("cart", __name__, url_prefix="/api/cart")


def _visible_entries(user_id: int):
    """Cart entries whose item can still change hands. Sold items are hidden, not removed."""
    return (
        CartEntry.query.join(Item, CartEntry.item_id == Item.id)
        .filter(CartEntry.user_id == user_id, Item.status != ItemStatus.sold)
        .order_by(CartEntry.created_at.desc(), CartEntry.id.desc())
        .all()
    )


@bp_cart.get("")
@require_auth
def get_cart():
    entries = _visible_entries(g.user_id)
    return ok({"items": [item_json(e.item) for e in entries]})


@bp_cart.post("")
@require_auth
def add_to_cart():
    data = json_object()
    if data.get("itemId") in (None, ""):
        raise ValidationError("No itemId provided")
    item_id = require_int(data.get("itemId"), "itemId")

    it = db.session.get(Item, item_id)
    if it is None:
        raise NotFound("Item not found")
    if it.status == ItemStatus.sold:
        raise Conflict("Item is already sold")
    if it.seller_id == g.user_id:
        raise Conflict("Cannot add your own item to cart")
    if CartEntry.query.filter_by(user_id=g.user_id, item_id=item_id).first():
        raise Conflict("Item already in cart")

    db.session.add(CartEntry(user_id=g.user_id, item_id=item_id))
    commit_or_rollback()
    return ok(message="Item added to cart")


@bp_cart.delete("/<int:item_id>")
@require_auth
def remove_from_cart(item_id: int):
    CartEntry.query.filter_by(user_id=g.user_id, item_id=item_id).delete(synchronize_session=False)
    commit_or_rollback()
    return ok(message="Item removed from cart")


@bp_cart.delete("")
@require_auth
def clear_cart():
    CartEntry.query.filter_by(user_id=g.user_id).delete(synchronize_session=False)
    commit_or_rollback()
    return ok(message="Cart cleared")


@bp_cart.post("/checkout")
@require_auth
def checkout():
    """Turn every cart item into its own order.

    Orders are placed one by one; a failure on one item does not undo the
    others.
    """
    item_ids = [e.item_id for e in _visible_entries(g.user_id)]
    placed, failed = [], []
    for item_id in item_ids:
        try:
            result = order_service.place_order(item_id, g.user_id)
        except MarketError as e:
            failed.append({"itemId": item_id, "message": e.message})
            continue
        except SQLAlchemyError:
            # place_order already rolled back; earlier orders stay committed
            current_app.logger.exception("Checkout could not place an order for item %s", item_id)
            failed.append({"itemId": item_id, "message": "Temporary database problem, please retry"})
            continue
        placed.append(order_json(result.order, otp=result.otp))

    current_app.logger.info(
        "Checkout for user %s: %s placed, %s failed", g.user_id, len(placed), len(failed)
    )
    code = 201 if placed else 200
    return ok({"orders": placed, "failed": failed}, code)
