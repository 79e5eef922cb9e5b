import jwt
import pytest

from campus_market.app import create_app
from campus_market.config import Config
from campus_market.db import db
from campus_market.models import Item, ItemCategory, ItemStatus

SECRET = "test-secret-key-for-campus-market-000"

SELLER = 1
BUYER = 2
OTHER_BUYER = 3
STRANGER = 4


class MarketTestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    JWT_SECRET = SECRET
    OTP_HASH_METHOD = "pbkdf2:sha256:1000"
    RESERVATION_SWEEP_INTERVAL_SECONDS = 0
    LOG_LEVEL = "WARNING"


@pytest.fixture
def app():
    app = create_app(MarketTestConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def client(app):
    return app.test_client()


def token_for(user_id: int) -> str:
    return jwt.encode({"id": user_id}, SECRET, algorithm="HS256")


@pytest.fixture
def auth():
    def _headers(user_id: int) -> dict:
        return {"Authorization": f"Bearer {token_for(user_id)}"}
    return _headers


@pytest.fixture
def make_item(app):
    def _make(seller_id=SELLER, price=500.0, name="Desk lamp", category=ItemCategory.electronics,
              status=ItemStatus.available, description="Barely used"):
        it = Item(
            name=name,
            description=description,
            price=price,
            category=category,
            seller_id=seller_id,
            status=status,
        )
        db.session.add(it)
        db.session.commit()
        return it.id
    return _make


@pytest.fixture
def place(client, auth):
    """POST /api/orders and return (response, order payload)."""
    def _place(item_id, buyer_id=BUYER, **extra):
        resp = client.post("/api/orders", json={"itemId": item_id, **extra}, headers=auth(buyer_id))
        body = resp.get_json()
        return resp, (body.get("data") or {}).get("order")
    return _place


@pytest.fixture
def verify(client, auth):
    def _verify(order_id, otp, actor_id=SELLER):
        return client.post(f"/api/orders/{order_id}/verify-otp", json={"otp": otp}, headers=auth(actor_id))
    return _verify
