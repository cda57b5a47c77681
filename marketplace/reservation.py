"""
Slot reservation protocol.

A booking only *checks* the slot when it is created; the slot is consumed
(removed from both the Service and the Provider availability lists) when the
payment is confirmed. Both removals happen in one database transaction with
the rows locked, and each is a compare-and-remove: if either list no longer
offers the slot the booking fails instead of double-booking the provider.
"""
from datetime import datetime, timedelta

from flask import current_app

from marketplace.availability import aggregate, is_open, remove
from marketplace.errors import (
    AlreadyCompleted,
    InvalidBooking,
    NotFound,
    SlotUnavailable,
    ValidationError,
)
from marketplace.payments import expire_checkout
from models import db
from models.booking import Booking, PENDING, COMPLETED, FAILED
from models.payment import Payment
from models.provider import Provider
from models.service import Service
from models.user import User
from utils.audit import log_event
from utils.notifications import notify_booking_confirmed


def _active_hold(provider_id: int, date: str, slot: str, user_id: int, now: datetime):
    hold_minutes = int(current_app.config.get("SLOT_HOLD_MINUTES", 15) or 0)
    if hold_minutes <= 0:
        return None
    since = now - timedelta(minutes=hold_minutes)
    return (
        Booking.query
        .filter(
            Booking.provider_id == provider_id,
            Booking.date == date,
            Booking.slot == slot,
            Booking.payment_status == PENDING,
            Booking.created_at >= since,
            Booking.user_id != user_id,
        )
        .first()
    )


def create_booking(user_id: int, provider_id: int, service_id: int, date: str, slot: str) -> Booking:
    date = (date or "").strip() if isinstance(date, str) else ""
    slot = (slot or "").strip() if isinstance(slot, str) else ""
    if not date or not slot:
        raise ValidationError("date and slot are required")

    service = Service.query.get(service_id)
    if not service:
        raise NotFound("Service not found")

    provider = Provider.query.get(provider_id)
    if not provider:
        raise NotFound("Provider not found")

    if service.provider_id != provider.id:
        raise NotFound("Service not found for this provider")

    if not is_open(service.availability, date, slot):
        raise SlotUnavailable("Slot not available in service")
    if not is_open(provider.availability, date, slot):
        raise SlotUnavailable("Slot not available in provider")

    now = datetime.utcnow()
    hold = _active_hold(provider.id, date, slot, user_id, now)
    if hold:
        log_event("BOOKING_FAIL_SLOT_HELD", user_id=user_id, entity="booking", entity_id=hold.id,
                  metadata={"date": date, "slot": slot})
        raise SlotUnavailable("Slot is being booked by someone else. Try again later.")

    booking = Booking(
        user_id=user_id,
        provider_id=provider.id,
        service_id=service.id,
        service_name=service.name,
        service_price=service.price,
        service_duration=service.duration,
        date=date,
        slot=slot,
        payment_status=PENDING,
        created_at=now,
    )
    db.session.add(booking)
    db.session.commit()

    log_event("BOOKING_CREATE", user_id=user_id, entity="booking", entity_id=booking.id,
              metadata={"service_id": service.id, "date": date, "slot": slot})
    current_app.logger.info("Booking %s created with status: pending", booking.id)
    return booking


def _set_payments(booking: Booking, status: str, now: datetime):
    for payment in Payment.query.filter_by(booking_id=booking.id, status="INIT").all():
        payment.status = status
        if status == "PAID":
            payment.paid_at = now


def _mark_failed(booking: Booking, now: datetime):
    booking.payment_status = FAILED
    booking.failed_at = now
    _set_payments(booking, "FAILED", now)


def _record_capture(booking: Booking, session_id, payment_intent, now: datetime):
    """Mark the Payment row of a Checkout Session Stripe reports as paid."""
    if not session_id:
        return None
    payment = Payment.query.filter_by(booking_id=booking.id, stripe_session_id=session_id).first()
    if payment is None:
        return None
    payment.status = "PAID"
    payment.paid_at = payment.paid_at or now
    if payment_intent:
        payment.stripe_payment_intent = payment_intent
    return payment


def _payment_after_fail(booking: Booking, session_id, payment_intent, now: datetime):
    if session_id:
        known = Payment.query.filter_by(booking_id=booking.id, stripe_session_id=session_id).first()
        if known is not None and known.status == "PAID":
            return  # redelivered event, refund already flagged
    _record_capture(booking, session_id, payment_intent, now)
    db.session.commit()

    log_event("PAYMENT_AFTER_FAIL", user_id=booking.user_id, entity="booking", entity_id=booking.id,
              metadata={"stripe_session_id": session_id, "payment_intent": payment_intent,
                        "amount": booking.service_price, "refund_required": True})
    current_app.logger.warning(
        "Booking %s was paid after it failed; refund required (%s)", booking.id, payment_intent
    )


def confirm_payment(booking_id: int, verified: bool, session_id: str = None, payment_intent: str = None) -> Booking:
    """
    Drive a pending booking to its final state once the payment gateway
    has answered. Runs at most once per booking: a completed booking raises
    AlreadyCompleted and nothing is removed or sent again.

    `session_id` / `payment_intent` identify the captured Stripe payment. A
    capture that reaches an already failed booking is recorded for refund.
    """
    booking = Booking.query.filter_by(id=booking_id).with_for_update().first()
    if not booking:
        raise NotFound("Booking not found")
    if booking.payment_status == COMPLETED:
        raise AlreadyCompleted()

    now = datetime.utcnow()

    if booking.payment_status == FAILED:
        if verified:
            _payment_after_fail(booking, session_id, payment_intent, now)
        raise InvalidBooking("Booking already failed")

    if not verified:
        _mark_failed(booking, now)
        db.session.commit()
        log_event("PAYMENT_FAILED", user_id=booking.user_id, entity="booking", entity_id=booking.id)
        return booking

    provider = Provider.query.filter_by(id=booking.provider_id).with_for_update().first()
    if not provider:
        raise NotFound("Provider not found")
    # may be gone if the provider deleted it after the booking was made
    service = Service.query.filter_by(id=booking.service_id).with_for_update().first()

    service_entries, service_removed = (None, True)
    if service is not None:
        service_entries, service_removed = remove(service.availability, booking.date, booking.slot)
    provider_entries, provider_removed = remove(provider.availability, booking.date, booking.slot)

    if not (service_removed and provider_removed):
        _mark_failed(booking, now)
        _record_capture(booking, session_id, payment_intent, now)
        db.session.commit()
        log_event("BOOKING_SLOT_CONFLICT", user_id=booking.user_id, entity="booking", entity_id=booking.id,
                  metadata={"date": booking.date, "slot": booking.slot,
                            "service_had_slot": service_removed, "provider_had_slot": provider_removed,
                            "payment_intent": payment_intent})
        current_app.logger.warning(
            "Booking %s paid but slot %s on %s is no longer open", booking.id, booking.slot, booking.date
        )
        raise SlotUnavailable("Slot was taken before payment completed")

    if service is not None:
        service.availability = service_entries
    provider.availability = provider_entries

    booking.payment_status = COMPLETED
    booking.completed_at = now
    _record_capture(booking, session_id, payment_intent, now)
    _set_payments(booking, "PAID", now)
    db.session.commit()

    log_event("PAYMENT_VERIFIED", user_id=booking.user_id, entity="booking", entity_id=booking.id,
              metadata={"date": booking.date, "slot": booking.slot})
    current_app.logger.info(
        "Booking %s confirmed, slot %s removed from availability", booking.id, booking.slot
    )

    notify_booking_confirmed(booking, User.query.get(booking.user_id), provider.user)
    return booking


def consumed_slots(provider_id: int):
    rows = (
        db.session.query(Booking.date, Booking.slot)
        .filter(Booking.provider_id == provider_id, Booking.payment_status == COMPLETED)
        .all()
    )
    return [(row[0], row[1]) for row in rows]


def rebuild_provider_availability(provider: Provider):
    """
    Recompute provider.availability from scratch: the union of all of its
    services' lists, minus slots already sold through a completed booking.
    """
    services = Service.query.filter_by(provider_id=provider.id).order_by(Service.id.asc()).all()
    merged = aggregate(s.availability for s in services)
    for day, slot in consumed_slots(provider.id):
        merged, _ = remove(merged, day, slot)
    provider.availability = merged
    return merged


def expire_stale_bookings(now: datetime = None) -> int:
    """
    Fail pending bookings older than PENDING_BOOKING_TTL_MINUTES and expire
    their open Stripe Checkout Sessions so they can no longer be paid.
    """
    ttl = int(current_app.config.get("PENDING_BOOKING_TTL_MINUTES", 60) or 0)
    if ttl <= 0:
        return 0

    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=ttl)
    stale = (
        Booking.query
        .filter(Booking.payment_status == PENDING, Booking.created_at < cutoff)
        .all()
    )
    open_sessions = []
    for booking in stale:
        open_sessions.extend(
            p.stripe_session_id
            for p in Payment.query.filter_by(booking_id=booking.id, status="INIT").all()
            if p.stripe_session_id
        )
        _mark_failed(booking, now)
    db.session.commit()

    for session_id in open_sessions:
        expire_checkout(session_id)

    if stale:
        log_event("BOOKING_EXPIRE", metadata={"count": len(stale), "booking_ids": [b.id for b in stale],
                                              "stripe_sessions": open_sessions})
        current_app.logger.info("Expired %d stale pending bookings", len(stale))
    return len(stale)
