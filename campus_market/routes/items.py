# routes/items.py
from flask import Blueprint, current_app, g, request
from sqlalchemy import or_

from campus_market.auth import require_auth
from campus_market.db import db
from campus_market.errors import Conflict, Forbidden, NotFound, ValidationError
from campus_market.models import CartEntry, Item, ItemCategory, ItemStatus, Order
from campus_market.utils.parsing import iso, json_object, parse_csv, parse_int, require_price
from campus_market.utils.responses import commit_or_rollback, ok

bp_items = Blueprint("items", __name__, url_prefix="/api/items")

CATEGORIES = {c.value for c in ItemCategory}


def item_json(it: Item):
    return {
        "id": it.id,
        "name": it.name,
        "description": it.description,
        "price": it.price,
        "category": it.category.value if it.category else None,
        "seller": it.seller_id,
        "status": it.status.value if it.status else None,
        "createdAt": iso(it.created_at),
        "updatedAt": iso(it.updated_at),
    }


def _get_item(item_id: int) -> Item:
    it = db.session.get(Item, item_id)
    if it is None:
        raise NotFound("Item not found")
    return it


def _get_owned_item(item_id: int, action: str) -> Item:
    it = _get_item(item_id)
    if it.seller_id != g.user_id:
        raise Forbidden(f"Not authorized to {action} this item")
    return it


def _clean_text(data: dict, field: str, label: str) -> str:
    value = (data.get(field) or "")
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    return value.strip()


def _clean_category(value) -> ItemCategory:
    value = (value or "").strip().lower() if isinstance(value, str) else ""
    if value not in CATEGORIES:
        raise ValidationError("Category must be one of: " + ", ".join(sorted(CATEGORIES)))
    return ItemCategory(value)


@bp_items.get("")
def list_items():
    """Browse listings that can still be bought.

    Query: ``search`` (name/description, case-insensitive), ``categories``
    (comma separated), ``page``, ``per_page``.
    """
    q = Item.query.filter(Item.status == ItemStatus.available)

    kw = (request.args.get("search") or "").strip()
    if kw:
        like = f"%{kw}%"
        q = q.filter(or_(Item.name.ilike(like), Item.description.ilike(like)))

    wanted = [c for c in parse_csv(request.args.get("categories")) if c in CATEGORIES]
    if wanted:
        q = q.filter(Item.category.in_([ItemCategory(c) for c in wanted]))

    page = parse_int(request.args.get("page"), 1, 1)
    per_page = parse_int(request.args.get("per_page"), 20, 1, 100)
    page_obj = q.order_by(Item.created_at.desc(), Item.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )
    return ok({
        "items": [item_json(it) for it in page_obj.items],
        "pagination": {
            "page": page_obj.page,
            "per_page": page_obj.per_page,
            "total": page_obj.total,
            "pages": page_obj.pages,
        },
    })


@bp_items.get("/my-listings")
@require_auth
def my_listings():
    items = (
        Item.query.filter(Item.seller_id == g.user_id)
        .order_by(Item.created_at.desc(), Item.id.desc())
        .all()
    )
    return ok({"items": [item_json(it) for it in items]})


@bp_items.get("/<int:item_id>")
def get_item(item_id: int):
    return ok({"item": item_json(_get_item(item_id))})


@bp_items.post("")
@require_auth
def create_item():
    data = json_object()
    it = Item(
        name=_clean_text(data, "name", "Item name"),
        description=_clean_text(data, "description", "Item description"),
        price=require_price(data.get("price")),
        category=_clean_category(data.get("category")),
        seller_id=g.user_id,
        status=ItemStatus.available,
    )
    db.session.add(it)
    commit_or_rollback()
    current_app.logger.info("Item %s listed by seller %s", it.id, g.user_id)
    return ok({"item": item_json(it)}, 201)


@bp_items.patch("/<int:item_id>")
@require_auth
def update_item(item_id: int):
    """Seller edits. Status and reservation fields belong to the order engine."""
    it = _get_owned_item(item_id, "update")
    data = json_object()

    if "name" in data:
        it.name = _clean_text(data, "name", "Item name")
    if "description" in data:
        it.description = _clean_text(data, "description", "Item description")
    if "price" in data:
        it.price = require_price(data["price"])
    if "category" in data:
        it.category = _clean_category(data["category"])

    commit_or_rollback()
    return ok({"item": item_json(it)})


@bp_items.delete("/<int:item_id>")
@require_auth
def delete_item(item_id: int):
    it = _get_owned_item(item_id, "delete")

    # orders are kept as history, so an item with any order stays
    if it.status != ItemStatus.available or Order.query.filter_by(item_id=it.id).first() is not None:
        raise Conflict("Item has orders and cannot be deleted")

    CartEntry.query.filter_by(item_id=it.id).delete(synchronize_session=False)
    db.session.delete(it)
    commit_or_rollback()
    current_app.logger.info("Item %s deleted by seller %s", item_id, g.user_id)
    return ok(message="Item deleted successfully")
