from datetime import datetime, timedelta

import pytest
import stripe

from marketplace.errors import (
    AlreadyCompleted,
    InvalidBooking,
    NotFound,
    SlotUnavailable,
    ValidationError,
)
from marketplace.reservation import (
    confirm_payment,
    create_booking,
    expire_stale_bookings,
    rebuild_provider_availability,
)
from models import db
from models.audit_log import AuditLog
from models.booking import Booking
from models.payment import Payment
from models.provider import Provider
from models.service import Service

DAY = "2024-06-01"


@pytest.fixture
def haircut(make_provider, make_service):
    provider = make_provider("Ravi")
    service = make_service(provider, "Haircut", [{"date": DAY, "slots": ["10am", "11am"]}])
    return provider, service


def _refresh(provider, service):
    return db.session.get(Provider, provider.id), db.session.get(Service, service.id)


def test_haircut_scenario(haircut, make_user, sent_emails):
    provider, service = haircut
    customer = make_user("Asha")

    assert provider.availability == [{"date": DAY, "slots": ["10am", "11am"]}]

    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    assert booking.payment_status == "pending"
    assert booking.service_name == "Haircut"
    assert booking.service_price == 500

    confirmed = confirm_payment(booking.id, verified=True)
    assert confirmed.payment_status == "completed"
    assert confirmed.completed_at is not None

    provider, service = _refresh(provider, service)
    assert service.availability == [{"date": DAY, "slots": ["11am"]}]
    assert provider.availability == [{"date": DAY, "slots": ["11am"]}]

    assert [m["subject"] for m in sent_emails] == ["Booking Confirmation", "New Confirmed Booking"]


def test_pending_booking_does_not_consume_slot(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")

    create_booking(customer.id, provider.id, service.id, DAY, "10am")

    provider, service = _refresh(provider, service)
    assert service.availability == [{"date": DAY, "slots": ["10am", "11am"]}]
    assert provider.availability == [{"date": DAY, "slots": ["10am", "11am"]}]


def test_booking_snapshot_survives_service_edit(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")

    service.name = "Premium Haircut"
    service.price = 900
    db.session.commit()

    booking = db.session.get(Booking, booking.id)
    assert booking.service_name == "Haircut"
    assert booking.service_price == 500


def test_create_booking_not_found(haircut, make_user, make_provider):
    provider, service = haircut
    customer = make_user("Asha")
    other = make_provider("Meena")

    with pytest.raises(NotFound):
        create_booking(customer.id, provider.id, 9999, DAY, "10am")
    with pytest.raises(NotFound):
        create_booking(customer.id, 9999, service.id, DAY, "10am")
    with pytest.raises(NotFound):
        create_booking(customer.id, other.id, service.id, DAY, "10am")


def test_create_booking_requires_date_and_slot(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")
    with pytest.raises(ValidationError):
        create_booking(customer.id, provider.id, service.id, "", "10am")
    with pytest.raises(ValidationError):
        create_booking(customer.id, provider.id, service.id, DAY, None)


def test_slot_must_be_open_in_service_and_provider(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")

    with pytest.raises(SlotUnavailable):
        create_booking(customer.id, provider.id, service.id, DAY, "3pm")

    # provider aggregate lost the slot (e.g. sold through another service)
    provider.availability = [{"date": DAY, "slots": ["11am"]}]
    db.session.commit()
    with pytest.raises(SlotUnavailable):
        create_booking(customer.id, provider.id, service.id, DAY, "10am")


def test_pending_booking_holds_slot_for_other_users(haircut, make_user):
    provider, service = haircut
    asha = make_user("Asha")
    bala = make_user("Bala")

    create_booking(asha.id, provider.id, service.id, DAY, "10am")

    with pytest.raises(SlotUnavailable):
        create_booking(bala.id, provider.id, service.id, DAY, "10am")
    # same user may retry, other slots stay bookable
    create_booking(asha.id, provider.id, service.id, DAY, "10am")
    create_booking(bala.id, provider.id, service.id, DAY, "11am")

    assert AuditLog.query.filter_by(action="BOOKING_FAIL_SLOT_HELD").count() == 1


def test_hold_expires(haircut, make_user):
    provider, service = haircut
    asha = make_user("Asha")
    bala = make_user("Bala")

    held = create_booking(asha.id, provider.id, service.id, DAY, "10am")
    held.created_at = datetime.utcnow() - timedelta(minutes=16)
    db.session.commit()

    booking = create_booking(bala.id, provider.id, service.id, DAY, "10am")
    assert booking.payment_status == "pending"


def test_hold_disabled_restores_check_only(ctx, haircut, make_user):
    ctx.config["SLOT_HOLD_MINUTES"] = 0
    provider, service = haircut
    asha = make_user("Asha")
    bala = make_user("Bala")

    create_booking(asha.id, provider.id, service.id, DAY, "10am")
    booking = create_booking(bala.id, provider.id, service.id, DAY, "10am")
    assert booking.payment_status == "pending"


def test_confirm_twice_is_rejected_without_side_effects(haircut, make_user, sent_emails):
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")

    confirm_payment(booking.id, verified=True)
    assert len(sent_emails) == 2

    with pytest.raises(AlreadyCompleted):
        confirm_payment(booking.id, verified=True)

    provider, service = _refresh(provider, service)
    assert service.availability == [{"date": DAY, "slots": ["11am"]}]
    assert provider.availability == [{"date": DAY, "slots": ["11am"]}]
    assert len(sent_emails) == 2
    assert AuditLog.query.filter_by(action="PAYMENT_VERIFIED").count() == 1


def test_unverified_payment_fails_booking_and_keeps_slot(haircut, make_user, sent_emails):
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")

    failed = confirm_payment(booking.id, verified=False)
    assert failed.payment_status == "failed"
    assert failed.failed_at is not None

    provider, service = _refresh(provider, service)
    assert service.availability == [{"date": DAY, "slots": ["10am", "11am"]}]
    assert provider.availability == [{"date": DAY, "slots": ["10am", "11am"]}]
    assert sent_emails == []

    # failed is terminal
    with pytest.raises(InvalidBooking):
        confirm_payment(booking.id, verified=True)


def test_confirm_unknown_booking(ctx):
    with pytest.raises(NotFound):
        confirm_payment(12345, verified=True)


def test_second_payment_for_same_slot_fails(ctx, haircut, make_user, sent_emails):
    ctx.config["SLOT_HOLD_MINUTES"] = 0
    provider, service = haircut
    asha = make_user("Asha")
    bala = make_user("Bala")

    first = create_booking(asha.id, provider.id, service.id, DAY, "10am")
    second = create_booking(bala.id, provider.id, service.id, DAY, "10am")
    db.session.add(Payment(booking_id=second.id, amount=500, currency="INR", status="INIT"))
    db.session.commit()

    confirm_payment(first.id, verified=True)
    with pytest.raises(SlotUnavailable):
        confirm_payment(second.id, verified=True)

    second = db.session.get(Booking, second.id)
    assert second.payment_status == "failed"
    assert Payment.query.filter_by(booking_id=second.id).one().status == "FAILED"
    provider, service = _refresh(provider, service)
    assert provider.availability == [{"date": DAY, "slots": ["11am"]}]
    assert AuditLog.query.filter_by(action="BOOKING_SLOT_CONFLICT").count() == 1


def test_confirm_marks_init_payment_paid(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    db.session.add(Payment(booking_id=booking.id, amount=500, currency="INR", status="INIT"))
    db.session.commit()

    confirm_payment(booking.id, verified=True)

    payment = Payment.query.filter_by(booking_id=booking.id).one()
    assert payment.status == "PAID"
    assert payment.paid_at is not None


def test_confirm_after_service_deleted_consumes_provider_slot(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")

    db.session.delete(service)
    db.session.commit()

    confirm_payment(booking.id, verified=True)
    provider = db.session.get(Provider, provider.id)
    assert provider.availability == [{"date": DAY, "slots": ["11am"]}]


def test_slot_sold_through_one_service_blocks_the_other(make_provider, make_service, make_user):
    provider = make_provider("Ravi")
    haircut = make_service(provider, "Haircut", [{"date": DAY, "slots": ["10am"]}])
    shave = make_service(provider, "Shave", [{"date": DAY, "slots": ["10am", "11am"]}])
    customer = make_user("Asha")

    booking = create_booking(customer.id, provider.id, haircut.id, DAY, "10am")
    confirm_payment(booking.id, verified=True)

    with pytest.raises(SlotUnavailable):
        create_booking(customer.id, provider.id, shave.id, DAY, "10am")


def test_rebuild_keeps_sold_slots_out(make_provider, make_service, make_user):
    provider = make_provider("Ravi")
    haircut = make_service(provider, "Haircut", [{"date": DAY, "slots": ["10am"]}])
    shave = make_service(provider, "Shave", [{"date": DAY, "slots": ["10am", "11am"]}])
    customer = make_user("Asha")

    booking = create_booking(customer.id, provider.id, haircut.id, DAY, "10am")
    confirm_payment(booking.id, verified=True)

    provider = db.session.get(Provider, provider.id)
    assert rebuild_provider_availability(provider) == [{"date": DAY, "slots": ["11am"]}]

    db.session.delete(db.session.get(Service, shave.id))
    db.session.flush()
    assert rebuild_provider_availability(provider) == []


def test_rebuild_unions_services(make_provider, make_service):
    provider = make_provider("Ravi")
    make_service(provider, "Haircut", [{"date": DAY, "slots": ["10am", "11am"]}])
    make_service(provider, "Shave", [
        {"date": DAY, "slots": ["11am", "12pm"]},
        {"date": "2024-06-02", "slots": ["9am"]},
    ])

    provider = db.session.get(Provider, provider.id)
    assert provider.availability == [
        {"date": DAY, "slots": ["10am", "11am", "12pm"]},
        {"date": "2024-06-02", "slots": ["9am"]},
    ]


def test_expire_stale_bookings(haircut, make_user):
    provider, service = haircut
    customer = make_user("Asha")
    stale = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    fresh = create_booking(customer.id, provider.id, service.id, DAY, "11am")
    stale.created_at = datetime.utcnow() - timedelta(hours=2)
    db.session.add(Payment(booking_id=stale.id, amount=500, currency="INR", status="INIT"))
    db.session.commit()

    assert expire_stale_bookings() == 1

    assert db.session.get(Booking, stale.id).payment_status == "failed"
    assert db.session.get(Booking, fresh.id).payment_status == "pending"
    assert Payment.query.filter_by(booking_id=stale.id).one().status == "FAILED"
    assert expire_stale_bookings() == 0


def test_expire_disabled(ctx, haircut, make_user):
    ctx.config["PENDING_BOOKING_TTL_MINUTES"] = 0
    provider, service = haircut
    customer = make_user("Asha")
    stale = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    stale.created_at = datetime.utcnow() - timedelta(days=3)
    db.session.commit()

    assert expire_stale_bookings() == 0
    assert db.session.get(Booking, stale.id).payment_status == "pending"


def _smtp_raises(to_email, subject, body):
    raise ConnectionRefusedError("smtp down")


def _smtp_refuses(to_email, subject, body):
    return False, "smtp down"


@pytest.mark.parametrize("send_email", [_smtp_raises, _smtp_refuses])
def test_confirmation_survives_email_failure(haircut, make_user, monkeypatch, send_email):
    monkeypatch.setattr("utils.notifications.send_email", send_email)
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")

    confirmed = confirm_payment(booking.id, verified=True)

    assert confirmed.payment_status == "completed"
    assert db.session.get(Booking, booking.id).payment_status == "completed"
    provider, service = _refresh(provider, service)
    assert service.availability == [{"date": DAY, "slots": ["11am"]}]
    assert provider.availability == [{"date": DAY, "slots": ["11am"]}]
    assert AuditLog.query.filter_by(action="PAYMENT_VERIFIED").count() == 1


def test_payment_captured_after_failure_is_flagged_for_refund(haircut, make_user, sent_emails):
    provider, service = haircut
    customer = make_user("Asha")
    booking = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    db.session.add(Payment(booking_id=booking.id, amount=500, currency="INR", status="INIT",
                           stripe_session_id="cs_late"))
    db.session.commit()

    confirm_payment(booking.id, verified=False)
    assert Payment.query.filter_by(booking_id=booking.id).one().status == "FAILED"

    # Stripe delivers the capture twice
    for _ in range(2):
        with pytest.raises(InvalidBooking):
            confirm_payment(booking.id, verified=True, session_id="cs_late", payment_intent="pi_late")

    payment = Payment.query.filter_by(booking_id=booking.id).one()
    assert payment.status == "PAID"
    assert payment.stripe_payment_intent == "pi_late"
    assert payment.paid_at is not None
    assert db.session.get(Booking, booking.id).payment_status == "failed"
    assert AuditLog.query.filter_by(action="PAYMENT_AFTER_FAIL").count() == 1

    provider, service = _refresh(provider, service)
    assert provider.availability == [{"date": DAY, "slots": ["10am", "11am"]}]
    assert sent_emails == []


def test_expire_stale_bookings_closes_checkout_sessions(haircut, make_user, monkeypatch):
    closed = []
    monkeypatch.setattr(stripe.checkout.Session, "expire", lambda session_id: closed.append(session_id))
    provider, service = haircut
    customer = make_user("Asha")
    stale = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    stale.created_at = datetime.utcnow() - timedelta(hours=2)
    db.session.add_all([
        Payment(booking_id=stale.id, amount=500, currency="INR", status="INIT", stripe_session_id="cs_open"),
        Payment(booking_id=stale.id, amount=500, currency="INR", status="INIT"),
    ])
    db.session.commit()

    assert expire_stale_bookings() == 1
    assert closed == ["cs_open"]


def test_expire_stale_bookings_tolerates_stripe_errors(haircut, make_user, monkeypatch):
    def already_complete(session_id):
        raise stripe.InvalidRequestError("Only open sessions can be expired", None)

    monkeypatch.setattr(stripe.checkout.Session, "expire", already_complete)
    provider, service = haircut
    customer = make_user("Asha")
    stale = create_booking(customer.id, provider.id, service.id, DAY, "10am")
    stale.created_at = datetime.utcnow() - timedelta(hours=2)
    db.session.add(Payment(booking_id=stale.id, amount=500, currency="INR", status="INIT",
                           stripe_session_id="cs_paid"))
    db.session.commit()

    assert expire_stale_bookings() == 1
    assert db.session.get(Booking, stale.id).payment_status == "failed"
