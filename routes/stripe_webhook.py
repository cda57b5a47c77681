from flask import Blueprint, request, jsonify, current_app

from marketplace.errors import AlreadyCompleted, InvalidBooking, NotFound, SlotUnavailable
from marketplace.payments import parse_webhook, session_booking_id
from marketplace.reservation import confirm_payment
from models.payment import Payment
from utils.audit import log_event

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    event = parse_webhook(request.data, request.headers.get("Stripe-Signature"))

    event_type = event["type"]
    if event_type not in ("checkout.session.completed", "checkout.session.expired"):
        return jsonify(received=True), 200

    session = event["data"]["object"]
    session_id = session.get("id")
    booking_id = session_booking_id(session)

    payment = Payment.query.filter_by(stripe_session_id=session_id).first() if session_id else None
    if payment and booking_id is None:
        booking_id = payment.booking_id
    if booking_id is None or (payment and payment.booking_id != booking_id):
        log_event("PAYMENT_WEBHOOK_UNMATCHED", metadata={"stripe_session_id": session_id, "type": event_type})
        return jsonify(received=True), 200

    verified = event_type == "checkout.session.completed" and session.get("payment_status") == "paid"
    if event_type == "checkout.session.completed" and not verified:
        # async payment methods: wait for the follow-up event
        return jsonify(received=True), 200

    try:
        confirm_payment(booking_id, verified=verified, session_id=session_id,
                        payment_intent=session.get("payment_intent"))
    except (AlreadyCompleted, InvalidBooking):
        # redelivery for a final booking; a capture after failure is audited as PAYMENT_AFTER_FAIL
        current_app.logger.info("Webhook %s for final booking %s ignored", event_type, booking_id)
    except SlotUnavailable:
        # already audited as BOOKING_SLOT_CONFLICT
        current_app.logger.warning("Booking %s paid after its slot was taken; refund required", booking_id)
    except NotFound:
        log_event("PAYMENT_WEBHOOK_UNMATCHED", entity="booking", entity_id=booking_id,
                  metadata={"stripe_session_id": session_id, "type": event_type})

    return jsonify(received=True), 200
