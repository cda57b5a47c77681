from flask import Blueprint, request, jsonify, g

from marketplace.reviews import submit_review as add_review
from models.provider import Provider
from models.review import Review
from utils.auth_context import login_required
from utils.parsing import as_id

review_bp = Blueprint("reviews", __name__, url_prefix="/reviews")


@review_bp.post("")
@login_required
def submit_review():
    data = request.get_json(silent=True) or {}
    review = add_review(
        user_id=g.user.id,
        provider_id=as_id(data.get("provider_id"), "provider_id"),
        booking_id=as_id(data.get("booking_id"), "booking_id"),
        rating=data.get("rating"),
        comment=data.get("comment"),
    )
    return jsonify(review.to_dict()), 201


@review_bp.get("/provider/<int:provider_id>")
def provider_reviews(provider_id: int):
    provider = Provider.query.get(provider_id)
    if not provider:
        return jsonify(error="Provider not found"), 404

    rows = (
        Review.query
        .filter_by(provider_id=provider_id)
        .order_by(Review.created_at.desc(), Review.id.desc())
        .all()
    )
    return jsonify(
        provider_id=provider.id,
        rating=provider.rating,
        reviews=[r.to_dict() for r in rows],
    ), 200
