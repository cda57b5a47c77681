from flask import current_app
from sqlalchemy.exc import IntegrityError

from marketplace.errors import DuplicateReview, InvalidBooking, NotFound, ValidationError
from models import db
from models.booking import Booking, COMPLETED
from models.provider import Provider
from models.review import Review
from utils.audit import log_event


def _parse_rating(value) -> int:
    rating = None
    if isinstance(value, str) and value.strip().isdigit():
        rating = int(value.strip())
    elif isinstance(value, float) and value.is_integer():
        rating = int(value)
    elif isinstance(value, int) and not isinstance(value, bool):
        rating = value

    if rating is None or rating < 1 or rating > 5:
        raise ValidationError("rating must be an integer from 1 to 5")
    return rating


def provider_rating(provider_id: int) -> float:
    """Arithmetic mean of every review for the provider, 0 when there are none."""
    ratings = [r.rating for r in Review.query.filter_by(provider_id=provider_id).all()]
    if not ratings:
        return 0.0
    return sum(ratings) / len(ratings)


def submit_review(user_id: int, provider_id: int, booking_id: int, rating, comment=None) -> Review:
    rating = _parse_rating(rating)
    comment = comment.strip() if isinstance(comment, str) and comment.strip() else None

    provider = Provider.query.get(provider_id)
    if not provider:
        raise NotFound("Provider not found")

    booking = Booking.query.get(booking_id)
    if (
        not booking
        or booking.user_id != user_id
        or booking.provider_id != provider.id
        or booking.payment_status != COMPLETED
    ):
        raise InvalidBooking()

    if Review.query.filter_by(booking_id=booking.id).first():
        raise DuplicateReview()

    review = Review(
        user_id=user_id,
        provider_id=provider.id,
        booking_id=booking.id,
        rating=rating,
        comment=comment,
    )
    db.session.add(review)
    try:
        db.session.flush()
    except IntegrityError:
        # uq_review_booking_once: a concurrent submission won
        db.session.rollback()
        raise DuplicateReview()

    provider.rating = provider_rating(provider.id)
    db.session.commit()

    log_event("REVIEW_CREATE", user_id=user_id, entity="review", entity_id=review.id,
              metadata={"provider_id": provider.id, "booking_id": booking.id, "rating": rating})
    current_app.logger.info("Review submitted for provider %s, booking %s", provider.id, booking.id)
    return review
