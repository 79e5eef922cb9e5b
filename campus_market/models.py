from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import CheckConstraint, Enum, Index

from campus_market.db import db
from campus_market.utils.identifiers import utcnow


class ItemCategory(PyEnum):
    clothing = "clothing"
    grocery = "grocery"
    electronics = "electronics"
    books = "books"
    furniture = "furniture"
    other = "other"


class ItemStatus(PyEnum):
    available = "available"
    reserved = "reserved"
    sold = "sold"


class OrderStatus(PyEnum):
    pending = "pending"
    delivered = "delivered"
    cancelled = "cancelled"


class Item(db.Model):
    __tablename__ = "items"

    id          = db.Column(db.Integer, primary_key=True)
    name        = db.Column(db.String(180), nullable=False, index=True)
    description = db.Column(db.Text, nullable=False)
    price       = db.Column(db.Float, nullable=False, default=0)
    category    = db.Column(Enum(ItemCategory, name="item_category"), nullable=False, default=ItemCategory.other)
    seller_id   = db.Column(db.Integer, nullable=False, index=True)

    # written only by the order engine
    status      = db.Column(Enum(ItemStatus, name="item_status"), nullable=False,
                            default=ItemStatus.available, index=True)
    reserved_by = db.Column(db.Integer)
    reserved_at = db.Column(db.DateTime)

    created_at  = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    updated_at  = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_item_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Item id={self.id} status={self.status.value if self.status else None}>"


class CartEntry(db.Model):
    __tablename__ = "cart_entries"

    id         = db.Column(db.Integer, primary_key=True)
    user_id    = db.Column(db.Integer, nullable=False, index=True)
    item_id    = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    item = db.relationship("Item")

    __table_args__ = (
        db.UniqueConstraint("user_id", "item_id", name="uq_cart_user_item"),
    )


class Order(db.Model):
    __tablename__ = "orders"

    id             = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(16), unique=True, nullable=False, index=True)

    item_id        = db.Column(db.Integer, db.ForeignKey("items.id"), nullable=False, index=True)
    buyer_id       = db.Column(db.Integer, nullable=False)
    seller_id      = db.Column(db.Integer, nullable=False)

    quantity       = db.Column(db.Integer, nullable=False, default=1)
    total_amount   = db.Column(db.Float, nullable=False)
    status         = db.Column(Enum(OrderStatus, name="order_status"), nullable=False,
                               default=OrderStatus.pending)

    # OTP record, replaced as a whole on regeneration. Plaintext is never stored.
    otp_hash       = db.Column(db.String(255), nullable=False)
    otp_expires_at = db.Column(db.DateTime, nullable=False)
    otp_attempts   = db.Column(db.Integer, nullable=False)

    cancel_reason  = db.Column(db.String(40))
    created_at     = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at     = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    delivered_at   = db.Column(db.DateTime)
    cancelled_at   = db.Column(db.DateTime)

    item = db.relationship("Item")
    events = db.relationship(
        "OrderEvent",
        back_populates="order",
        lazy=True,
        order_by="OrderEvent.id",
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_quantity_positive"),
        CheckConstraint("total_amount >= 0", name="ck_order_total_non_negative"),
        Index("ix_order_buyer_created", "buyer_id", "created_at"),
        Index("ix_order_seller_created", "seller_id", "created_at"),
        Index("ix_order_item_status", "item_id", "status"),
    )

    def otp_time_remaining(self, now: datetime = None) -> int:
        """Seconds until the current OTP expires, never negative."""
        if not self.otp_expires_at:
            return 0
        now = now or utcnow()
        return max(0, int((self.otp_expires_at - now).total_seconds()))

    def __repr__(self) -> str:
        return f"<Order id={self.id} tx={self.transaction_id} status={self.status.value if self.status else None}>"


class OrderEvent(db.Model):
    """Timeline of an order. Append-only."""
    __tablename__ = "order_events"

    id          = db.Column(db.Integer, primary_key=True)
    order_id    = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    event_type  = db.Column(db.String(50), nullable=False)
    # created, otp_regenerated, otp_failed, delivered, cancelled, auto_cancelled

    actor_id    = db.Column(db.Integer)  # None means the system did it
    description = db.Column(db.Text)
    created_at  = db.Column(db.DateTime, default=utcnow, nullable=False)

    order = db.relationship("Order", back_populates="events")


class Review(db.Model):
    __tablename__ = "reviews"

    id          = db.Column(db.Integer, primary_key=True)
    reviewer_id = db.Column(db.Integer, nullable=False, index=True)
    seller_id   = db.Column(db.Integer, nullable=False, index=True)
    rating      = db.Column(db.Integer, nullable=False)
    comment     = db.Column(db.Text)
    created_at  = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at  = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("reviewer_id", "seller_id", name="uq_review_reviewer_seller"),
        CheckConstraint("rating BETWEEN 1 AND 5", name="ck_review_rating_range"),
    )

    def __repr__(self) -> str:
        return f"<Review id={self.id} seller_id={self.seller_id} rating={self.rating}>"
