"""
Stripe Checkout as the payment gateway. A Checkout Session plays the role of
the "order"; its id is stored on the Payment row and echoed back by the client
(verify) or by Stripe (webhook).
"""
import time
from urllib.parse import urlencode, urlparse, parse_qsl, urlunparse

import stripe
from flask import current_app

from marketplace.errors import InvalidSignature, MarketplaceError

# Stripe only accepts expires_at between 30 minutes and 24 hours ahead
MIN_SESSION_MINUTES = 30
MAX_SESSION_MINUTES = 24 * 60


class PaymentGatewayError(MarketplaceError):
    status_code = 500
    code = "payment_gateway"
    default_message = "Payment gateway not configured"


def _append_query(url: str, params: dict) -> str:
    if not url:
        return url
    parts = urlparse(url)
    query = dict(parse_qsl(parts.query))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunparse(parts._replace(query=urlencode(query)))


def _configure():
    stripe.api_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not stripe.api_key:
        raise PaymentGatewayError("Stripe secret key missing (STRIPE_SECRET_KEY)")


def session_lifetime_minutes() -> int:
    minutes = max(
        int(current_app.config.get("CHECKOUT_SESSION_MINUTES", MIN_SESSION_MINUTES) or 0),
        int(current_app.config.get("SLOT_HOLD_MINUTES", 0) or 0),
        MIN_SESSION_MINUTES,
    )
    return min(minutes, MAX_SESSION_MINUTES)


def create_checkout(booking, payment):
    _configure()
    success_url = current_app.config.get("STRIPE_SUCCESS_URL")
    cancel_url = current_app.config.get("STRIPE_CANCEL_URL")
    if not success_url or not cancel_url:
        raise PaymentGatewayError("Stripe success/cancel URLs not configured")

    refs = {"booking_id": str(booking.id), "payment_id": str(payment.id)}
    try:
        return stripe.checkout.Session.create(
            mode="payment",
            line_items=[{
                "price_data": {
                    "currency": payment.currency.lower(),
                    "product_data": {"name": f"{booking.service_name} ({booking.date} {booking.slot})"},
                    "unit_amount": int(payment.amount) * 100,  # smallest currency unit
                },
                "quantity": 1,
            }],
            success_url=_append_query(success_url, refs),
            cancel_url=_append_query(cancel_url, refs),
            client_reference_id=str(booking.id),
            metadata={**refs, "user_id": str(booking.user_id)},
            expires_at=int(time.time()) + session_lifetime_minutes() * 60,
        )
    except stripe.StripeError as exc:
        current_app.logger.error("Stripe checkout for booking %s failed: %s", booking.id, exc)
        raise PaymentGatewayError("Could not create checkout session")


def retrieve_checkout(session_id: str):
    _configure()
    return stripe.checkout.Session.retrieve(session_id)


def expire_checkout(session_id: str) -> bool:
    """Close an open Checkout Session so it can no longer be paid."""
    try:
        _configure()
        stripe.checkout.Session.expire(session_id)
    except (stripe.StripeError, PaymentGatewayError) as exc:
        # already complete or expired, or Stripe unreachable
        current_app.logger.warning("Could not expire checkout session %s: %s", session_id, exc)
        return False
    return True


def parse_webhook(payload: bytes, sig_header: str):
    """Verified Stripe event, or InvalidSignature."""
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not endpoint_secret:
        raise PaymentGatewayError("Webhook secret not configured")
    try:
        return stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        raise InvalidSignature("Invalid webhook signature")


def session_booking_id(session):
    meta = session.get("metadata") or {}
    value = meta.get("booking_id") or session.get("client_reference_id")
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
