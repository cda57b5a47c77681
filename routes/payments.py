from flask import Blueprint, request, jsonify, g, current_app

from marketplace.errors import InvalidSignature, NotFound
from marketplace.payments import create_checkout, retrieve_checkout, session_booking_id
from marketplace.reservation import confirm_payment
from models import db
from models.booking import Booking, PENDING
from models.payment import Payment
from utils.audit import log_event
from utils.auth_context import login_required
from utils.parsing import as_id

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _my_booking(booking_id: int) -> Booking:
    booking = Booking.query.get(booking_id)
    if not booking or booking.user_id != g.user.id:
        raise NotFound("Booking not found")
    return booking


@payments_bp.post("/create-order")
@login_required
def create_order():
    data = request.get_json(silent=True) or {}
    booking = _my_booking(as_id(data.get("booking_id"), "booking_id"))
    if booking.payment_status != PENDING:
        return jsonify(error=f"Booking is {booking.payment_status}"), 409

    payment = Payment(
        booking_id=booking.id,
        provider="STRIPE",
        amount=int(booking.service_price),
        currency=current_app.config.get("PAYMENT_CURRENCY", "inr").upper(),
        status="INIT",
    )
    db.session.add(payment)
    # committed only once Stripe returns a session
    db.session.flush()

    session = create_checkout(booking, payment)
    payment.stripe_session_id = session["id"]
    db.session.commit()

    log_event("PAYMENT_SESSION_CREATED", user_id=g.user.id, entity="payment", entity_id=payment.id,
              metadata={"stripe_session_id": session["id"], "booking_id": booking.id})
    return jsonify(
        order_id=session["id"],
        checkout_url=session["url"],
        amount=payment.amount,
        currency=payment.currency,
    ), 200


@payments_bp.post("/verify")
@login_required
def verify_payment():
    data = request.get_json(silent=True) or {}
    booking = _my_booking(as_id(data.get("booking_id"), "booking_id"))
    order_id = (data.get("order_id") or "").strip()
    if not order_id:
        return jsonify(error="order_id required"), 400

    payment = Payment.query.filter_by(stripe_session_id=order_id, booking_id=booking.id).first()
    if not payment:
        log_event("PAYMENT_VERIFY_MISMATCH", user_id=g.user.id, entity="booking", entity_id=booking.id,
                  metadata={"order_id": order_id})
        raise InvalidSignature("Payment does not match booking")

    session = retrieve_checkout(order_id)
    if session.get("id") != order_id or session_booking_id(session) != booking.id:
        log_event("PAYMENT_VERIFY_MISMATCH", user_id=g.user.id, entity="booking", entity_id=booking.id,
                  metadata={"order_id": order_id})
        raise InvalidSignature("Payment does not match booking")

    if session.get("payment_status") == "paid":
        booking = confirm_payment(booking.id, verified=True, session_id=order_id,
                                  payment_intent=session.get("payment_intent"))
        return jsonify(message="Payment verified and booking confirmed", booking=booking.to_dict()), 200

    if session.get("status") == "expired":
        booking = confirm_payment(booking.id, verified=False)
        return jsonify(error="Payment session expired", booking=booking.to_dict()), 402

    # still open / unpaid: booking stays pending
    raise InvalidSignature("Payment not completed")
