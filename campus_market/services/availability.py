"""Item availability coordination.

Every status change on an item is a single conditional UPDATE whose WHERE
clause carries the state the caller expects; ``rowcount`` tells whether the
caller won. None of these helpers commit: the order operation that calls them
owns the transaction, so the item side and the order side land together or
not at all.

Legal (item, orders) states:
    available  -> no pending order
    reserved   -> exactly one pending order, placed by ``reserved_by``
    sold       -> one delivered order
"""
import threading
import time
from datetime import datetime, timedelta
from typing import List, Optional

from flask import current_app
from sqlalchemy import or_, select, update

from campus_market.db import db
from campus_market.models import Item, ItemStatus, Order, OrderStatus
from campus_market.utils.identifiers import utcnow


def conditional_update(stmt) -> bool:
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount > 0


def reserve_item(item_id: int, buyer_id: int, now: datetime) -> bool:
    """available -> reserved. False if someone else got there first."""
    stmt = (
        update(Item)
        .where(Item.id == item_id, Item.status == ItemStatus.available)
        .values(status=ItemStatus.reserved, reserved_by=buyer_id, reserved_at=now)
    )
    return conditional_update(stmt)


def reclaim_reservation(item_id: int, buyer_id: int, seen_reserved_at: Optional[datetime], now: datetime) -> bool:
    """Re-take a reservation this buyer holds without a live order.

    Keyed on the ``reserved_at`` the caller read, so two concurrent reclaims
    cannot both succeed.
    """
    if seen_reserved_at is None:
        same_stamp = Item.reserved_at.is_(None)
    else:
        same_stamp = Item.reserved_at == seen_reserved_at
    stmt = (
        update(Item)
        .where(
            Item.id == item_id,
            Item.status == ItemStatus.reserved,
            Item.reserved_by == buyer_id,
            same_stamp,
        )
        .values(reserved_at=now)
    )
    return conditional_update(stmt)


def release_item(item_id: int, buyer_id: int) -> bool:
    """reserved (by buyer) -> available. Sold items are never touched."""
    stmt = (
        update(Item)
        .where(
            Item.id == item_id,
            Item.status == ItemStatus.reserved,
            Item.reserved_by == buyer_id,
        )
        .values(status=ItemStatus.available, reserved_by=None, reserved_at=None)
    )
    return conditional_update(stmt)


def mark_item_sold(item_id: int) -> bool:
    stmt = (
        update(Item)
        .where(Item.id == item_id, Item.status != ItemStatus.sold)
        .values(status=ItemStatus.sold, reserved_by=None, reserved_at=None)
    )
    return conditional_update(stmt)


def cancel_other_pending(item_id: int, keep_order_id: int, now: datetime, reason: str) -> List[int]:
    """Force every other pending order on the item to cancelled.

    Returns the ids that were cancelled.
    """
    ids = db.session.scalars(
        select(Order.id).where(
            Order.item_id == item_id,
            Order.status == OrderStatus.pending,
            Order.id != keep_order_id,
        )
    ).all()
    if not ids:
        return []
    db.session.execute(
        update(Order)
        .where(Order.id.in_(ids), Order.status == OrderStatus.pending)
        .values(status=OrderStatus.cancelled, cancelled_at=now, cancel_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return list(ids)


def sweep_stale_reservations(max_age: Optional[timedelta] = None, now: Optional[datetime] = None) -> int:
    """Give back items stuck in ``reserved`` with no pending order behind them.

    Only reservations older than ``max_age`` are considered, and an item with a
    live pending order is never touched, so running this repeatedly is safe.
    """
    if max_age is None:
        max_age = timedelta(minutes=current_app.config.get("RESERVATION_TIMEOUT_MINUTES", 1440))
    now = now or utcnow()
    cutoff = now - max_age

    live_items = select(Order.item_id).where(Order.status == OrderStatus.pending)
    stmt = (
        update(Item)
        .where(
            Item.status == ItemStatus.reserved,
            or_(Item.reserved_at.is_(None), Item.reserved_at < cutoff),
            Item.id.not_in(live_items),
        )
        .values(status=ItemStatus.available, reserved_by=None, reserved_at=None)
        .execution_options(synchronize_session=False)
    )
    try:
        reclaimed = db.session.execute(stmt).rowcount
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if reclaimed:
        current_app.logger.warning("Reservation sweep reclaimed %s orphaned item(s)", reclaimed)
    else:
        current_app.logger.info("Reservation sweep: nothing to reclaim")
    return reclaimed


def start_sweeper(app) -> Optional[threading.Thread]:
    interval = app.config.get("RESERVATION_SWEEP_INTERVAL_SECONDS", 0)
    if not interval or interval <= 0:
        return None

    def _loop():
        while True:
            time.sleep(interval)
            with app.app_context():
                try:
                    sweep_stale_reservations()
                except Exception:
                    app.logger.exception("Reservation sweep failed")
                finally:
                    db.session.remove()

    t = threading.Thread(target=_loop, name="reservation-sweeper", daemon=True)
    t.start()
    app.logger.info("Reservation sweeper started (every %ss)", interval)
    return t
