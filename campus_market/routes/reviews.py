# routes/reviews.py
from typing import Optional

from flask import Blueprint, current_app, g

from campus_market.auth import require_auth
from campus_market.db import db
from campus_market.errors import Conflict, Forbidden, NotFound, ValidationError
from campus_market.models import Order, OrderStatus, Review
from campus_market.utils.parsing import iso, json_object, require_int
from campus_market.utils.responses import commit_or_rollback, ok

bp_reviews = Blueprint("reviews", __name__, url_prefix="/api/reviews")


def review_json(r: Review):
    return {
        "id": r.id,
        "reviewer": r.reviewer_id,
        "seller": r.seller_id,
        "rating": r.rating,
        "comment": r.comment,
        "createdAt": iso(r.created_at),
        "updatedAt": iso(r.updated_at),
    }


def _rating(value) -> int:
    rating = require_int(value, "Rating")
    if not (1 <= rating <= 5):
        raise ValidationError("Rating must be between 1 and 5")
    return rating


def _comment(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Comment must be text")
    return value.strip() or None


def _has_bought_from(buyer_id: int, seller_id: int) -> bool:
    return Order.query.filter_by(
        buyer_id=buyer_id, seller_id=seller_id, status=OrderStatus.delivered
    ).first() is not None


def _get_own_review(review_id: int) -> Review:
    r = db.session.get(Review, review_id)
    if r is None:
        raise NotFound("Review not found")
    if r.reviewer_id != g.user_id:
        raise Forbidden("Not authorized to modify this review")
    return r


@bp_reviews.get("/seller/<int:seller_id>")
def seller_reviews(seller_id: int):
    reviews = (
        Review.query.filter(Review.seller_id == seller_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
        .all()
    )
    avg = None
    if reviews:
        avg = round(sum(r.rating for r in reviews) / len(reviews), 2)
    return ok({
        "reviews": [review_json(r) for r in reviews],
        "averageRating": avg,
        "count": len(reviews),
    })


@bp_reviews.post("")
@require_auth
def create_review():
    """Review a seller. Only buyers with a delivered order from that seller may."""
    data = json_object()
    if data.get("sellerId") in (None, ""):
        raise ValidationError("sellerId is required")
    seller_id = require_int(data["sellerId"], "sellerId")
    rating = _rating(data.get("rating"))
    comment = _comment(data.get("comment"))

    if seller_id == g.user_id:
        raise Conflict("You cannot review yourself")
    if not _has_bought_from(g.user_id, seller_id):
        raise Forbidden("You can only review sellers you have bought from")
    if Review.query.filter_by(reviewer_id=g.user_id, seller_id=seller_id).first():
        raise Conflict("You have already reviewed this seller")

    review = Review(reviewer_id=g.user_id, seller_id=seller_id, rating=rating, comment=comment)
    db.session.add(review)
    commit_or_rollback()
    current_app.logger.info("Review %s posted for seller %s", review.id, seller_id)
    return ok({"review": review_json(review)}, 201)


@bp_reviews.patch("/<int:review_id>")
@require_auth
def update_review(review_id: int):
    r = _get_own_review(review_id)
    data = json_object()
    if "rating" in data:
        r.rating = _rating(data["rating"])
    if "comment" in data:
        r.comment = _comment(data["comment"])
    commit_or_rollback()
    return ok({"review": review_json(r)})


@bp_reviews.delete("/<int:review_id>")
@require_auth
def delete_review(review_id: int):
    r = _get_own_review(review_id)
    db.session.delete(r)
    commit_or_rollback()
    return ok(message="Review deleted")
