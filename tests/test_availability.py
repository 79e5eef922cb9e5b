import random
from collections import defaultdict
from datetime import timedelta

from conftest import BUYER, OTHER_BUYER, SELLER, STRANGER

from campus_market.db import db
from campus_market.errors import MarketError
from campus_market.models import Item, ItemStatus, Order, OrderStatus
from campus_market.services import availability, order_service
from campus_market.utils.identifiers import utcnow


def _reserve_orphan(item_id, buyer_id, reserved_at):
    it = db.session.get(Item, item_id)
    it.status = ItemStatus.reserved
    it.reserved_by = buyer_id
    it.reserved_at = reserved_at
    db.session.commit()


def test_reserve_wins_once_from_stale_view(make_item):
    item_id = make_item()
    now = utcnow()
    # both callers read "available" before either writes
    assert availability.reserve_item(item_id, BUYER, now) is True
    assert availability.reserve_item(item_id, OTHER_BUYER, now) is False
    db.session.commit()

    it = db.session.get(Item, item_id)
    assert it.reserved_by == BUYER


def test_release_only_by_holder(make_item):
    item_id = make_item()
    availability.reserve_item(item_id, BUYER, utcnow())
    assert availability.release_item(item_id, OTHER_BUYER) is False
    assert availability.release_item(item_id, BUYER) is True
    db.session.commit()
    assert db.session.get(Item, item_id).status == ItemStatus.available


def test_mark_sold_is_one_way(make_item):
    item_id = make_item()
    assert availability.mark_item_sold(item_id) is True
    assert availability.mark_item_sold(item_id) is False
    assert availability.reserve_item(item_id, BUYER, utcnow()) is False


def test_sweep_reclaims_only_stale_orphans(place, make_item):
    live = make_item(name="live")
    stale_orphan = make_item(name="stale")
    fresh_orphan = make_item(name="fresh")
    null_stamp = make_item(name="null")

    place(live)
    old = utcnow() - timedelta(days=3)
    _reserve_orphan(stale_orphan, BUYER, old)
    _reserve_orphan(fresh_orphan, BUYER, utcnow())
    _reserve_orphan(null_stamp, BUYER, None)

    # age the live reservation too, it still has a pending order
    it = db.session.get(Item, live)
    it.reserved_at = old
    db.session.commit()

    assert availability.sweep_stale_reservations(timedelta(hours=1)) == 2
    assert db.session.get(Item, live).status == ItemStatus.reserved
    assert db.session.get(Item, stale_orphan).status == ItemStatus.available
    assert db.session.get(Item, fresh_orphan).status == ItemStatus.reserved
    assert db.session.get(Item, null_stamp).status == ItemStatus.available

    # idempotent
    assert availability.sweep_stale_reservations(timedelta(hours=1)) == 0


def test_sweep_cli(app, make_item):
    item_id = make_item()
    _reserve_orphan(item_id, BUYER, utcnow() - timedelta(days=2))

    result = app.test_cli_runner().invoke(args=["sweep-reservations"])
    assert result.exit_code == 0
    assert "Reclaimed 1 item(s)" in result.output
    assert db.session.get(Item, item_id).status == ItemStatus.available


def test_sweeper_thread_disabled_by_default(app):
    assert availability.start_sweeper(app) is None


def _assert_consistent():
    pending = defaultdict(list)
    delivered = defaultdict(list)
    for o in Order.query.all():
        if o.status == OrderStatus.pending:
            pending[o.item_id].append(o)
        elif o.status == OrderStatus.delivered:
            delivered[o.item_id].append(o)

    for it in Item.query.all():
        if it.status == ItemStatus.available:
            assert not pending[it.id]
            assert not delivered[it.id]
        elif it.status == ItemStatus.reserved:
            assert len(pending[it.id]) == 1
            assert pending[it.id][0].buyer_id == it.reserved_by
            assert not delivered[it.id]
        else:
            assert len(delivered[it.id]) == 1
            assert not pending[it.id]


def test_random_interleavings_keep_item_and_orders_consistent(make_item):
    rng = random.Random(20240501)
    items = [make_item(name=f"item {n}", price=10 * (n + 1)) for n in range(4)]
    buyers = [BUYER, OTHER_BUYER, STRANGER]
    codes = {}

    for _ in range(300):
        op = rng.choice(["place", "place", "verify", "verify_wrong", "cancel", "regenerate"])
        try:
            if op == "place":
                placed = order_service.place_order(rng.choice(items), rng.choice(buyers))
                codes[placed.order.id] = placed.otp
            elif codes:
                order_id = rng.choice(sorted(codes))
                order = db.session.get(Order, order_id)
                if op == "verify":
                    order_service.verify_otp(order_id, codes[order_id], SELLER)
                elif op == "verify_wrong":
                    order_service.verify_otp(order_id, "000000", SELLER)
                elif op == "cancel":
                    order_service.cancel_order(order_id, rng.choice([order.buyer_id, SELLER]))
                else:
                    _, codes[order_id] = order_service.regenerate_otp(order_id, order.buyer_id)
        except MarketError:
            pass
        _assert_consistent()

    assert Order.query.count() > 0
