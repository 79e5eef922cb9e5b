from datetime import timedelta

import pytest
from conftest import BUYER, OTHER_BUYER, SELLER, STRANGER

from campus_market.db import db
from campus_market.models import Item, ItemStatus, Order, OrderEvent, OrderStatus
from campus_market.services import otp_service
from campus_market.utils.identifiers import utcnow

WRONG = "000000"  # generated codes start at 100000


@pytest.fixture
def pending(place, make_item):
    item_id = make_item(price=500)
    _, order = place(item_id)
    return item_id, order


def test_correct_otp_completes_delivery_once(pending, verify):
    item_id, order = pending

    resp = verify(order["id"], order["otp"])
    assert resp.status_code == 200
    assert resp.get_json()["message"] == "Delivery completed successfully"

    o = db.session.get(Order, order["id"])
    assert o.status == OrderStatus.delivered
    assert o.delivered_at is not None
    it = db.session.get(Item, item_id)
    assert it.status == ItemStatus.sold
    assert it.reserved_by is None

    again = verify(order["id"], order["otp"])
    assert again.status_code == 400
    assert again.get_json()["message"] == "Order is already delivered"


def test_three_wrong_codes_exhaust_attempts(pending, verify):
    item_id, order = pending

    first = verify(order["id"], WRONG).get_json()
    assert first["message"] == "Invalid OTP. 2 attempts remaining"
    assert first["attemptsRemaining"] == 2

    second = verify(order["id"], WRONG).get_json()
    assert second["attemptsRemaining"] == 1

    third = verify(order["id"], WRONG)
    assert third.status_code == 400
    assert third.get_json()["message"] == "Maximum OTP attempts exceeded"

    fourth = verify(order["id"], order["otp"])
    assert fourth.status_code == 400
    assert fourth.get_json()["code"] == "attempts_exhausted"

    assert db.session.get(Order, order["id"]).status == OrderStatus.pending
    assert db.session.get(Item, item_id).status == ItemStatus.reserved


def test_failed_attempts_are_on_the_timeline(client, auth, pending, verify):
    _, order = pending
    verify(order["id"], WRONG)

    detail = client.get(f"/api/orders/{order['id']}", headers=auth(SELLER)).get_json()["data"]["order"]
    assert detail["otpAttemptsRemaining"] == 2
    assert [e["eventType"] for e in detail["timeline"]] == ["created", "otp_failed"]


def test_expired_otp_rejected_even_if_correct(pending, verify):
    _, order = pending
    o = db.session.get(Order, order["id"])
    o.otp_expires_at = utcnow() - timedelta(minutes=1)
    db.session.commit()

    resp = verify(order["id"], order["otp"])
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "OTP has expired"
    assert db.session.get(Order, order["id"]).otp_attempts == 3


@pytest.mark.parametrize("actor", [BUYER, STRANGER])
def test_only_seller_can_verify(pending, verify, actor):
    _, order = pending
    resp = verify(order["id"], order["otp"], actor_id=actor)
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "Only the seller can verify OTP"


@pytest.mark.parametrize("bad", ["12345", "abcdef", 123456, None, "1234567"])
def test_malformed_otp_does_not_consume_attempts(pending, verify, bad):
    _, order = pending
    resp = verify(order["id"], bad)
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "invalid_format"
    assert db.session.get(Order, order["id"]).otp_attempts == 3


def test_verify_unknown_order(verify):
    assert verify(9999, "123456").status_code == 404


def test_regenerate_invalidates_old_code(monkeypatch, client, auth, place, make_item, verify):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(otp_service, "generate_otp", lambda: next(codes))
    item_id = make_item()
    _, order = place(item_id)
    assert order["otp"] == "111111"

    resp = client.post(f"/api/orders/{order['id']}/regenerate-otp", headers=auth(BUYER))
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["otp"] == "222222"
    assert data["expiresAt"]

    old = verify(order["id"], "111111")
    assert old.status_code == 400
    assert old.get_json()["code"] == "invalid_otp"
    assert verify(order["id"], "222222").status_code == 200


def test_regenerate_resets_attempts(client, auth, pending, verify):
    _, order = pending
    verify(order["id"], WRONG)
    verify(order["id"], WRONG)
    verify(order["id"], WRONG)

    resp = client.post(f"/api/orders/{order['id']}/regenerate-otp", headers=auth(BUYER))
    assert resp.status_code == 200
    assert db.session.get(Order, order["id"]).otp_attempts == 3
    assert verify(order["id"], resp.get_json()["data"]["otp"]).status_code == 200


def test_regenerate_is_buyer_only_and_pending_only(client, auth, pending, verify):
    _, order = pending
    resp = client.post(f"/api/orders/{order['id']}/regenerate-otp", headers=auth(SELLER))
    assert resp.status_code == 403

    verify(order["id"], order["otp"])
    resp = client.post(f"/api/orders/{order['id']}/regenerate-otp", headers=auth(BUYER))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "not_pending"


def test_delivery_cancels_other_pending_orders_on_item(pending, verify):
    item_id, order = pending
    # a second pending order left over on the same item
    stale = Order(
        transaction_id="00000000DEADBEEF",
        item_id=item_id,
        buyer_id=OTHER_BUYER,
        seller_id=SELLER,
        quantity=1,
        total_amount=500,
        status=OrderStatus.pending,
        **otp_service.issue_otp().as_columns(),
    )
    db.session.add(stale)
    db.session.commit()
    stale_id = stale.id

    assert verify(order["id"], order["otp"]).status_code == 200

    o2 = db.session.get(Order, stale_id)
    assert o2.status == OrderStatus.cancelled
    assert o2.cancel_reason == "sold_to_another_buyer"
    assert o2.cancelled_at is not None
    events = OrderEvent.query.filter_by(order_id=stale_id).all()
    assert [e.event_type for e in events] == ["auto_cancelled"]
