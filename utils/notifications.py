from flask import current_app

from utils.emailer import send_email


def _notify(to_email: str, subject: str, body: str) -> bool:
    # Side effect only: a failed e-mail never undoes a booking or service change.
    try:
        sent, error = send_email(to_email, subject, body)
    except Exception:
        current_app.logger.exception("Email to %s failed (%s)", to_email, subject)
        return False
    if not sent:
        current_app.logger.warning("Email to %s not sent (%s): %s", to_email, subject, error)
    return sent


def notify_booking_confirmed(booking, user, provider_user) -> None:
    provider_name = booking.provider.name if booking.provider else "your provider"
    currency = current_app.config.get("PAYMENT_CURRENCY", "INR").upper()

    _notify(
        user.email if user else None,
        "Booking Confirmation",
        (
            f"Your booking for {booking.service_name} with {provider_name} is confirmed.\n"
            f"Date: {booking.date}\n"
            f"Slot: {booking.slot}\n"
            f"Amount paid: {currency} {booking.service_price}\n"
        ),
    )
    _notify(
        provider_user.email if provider_user else None,
        "New Confirmed Booking",
        (
            f"You have a new confirmed booking for {booking.service_name}"
            f" from {user.name if user else 'a customer'}.\n"
            f"Date: {booking.date}\n"
            f"Slot: {booking.slot}\n"
            f"Amount: {currency} {booking.service_price}\n"
        ),
    )


def _describe_availability(entries) -> str:
    return "; ".join(f"{e['date']}: {', '.join(e['slots'])}" for e in entries or [])


def notify_service_changed(user, service: dict, action: str) -> None:
    """`service` is a Service.to_dict() snapshot; action is one of: added, updated, deleted"""
    if action == "deleted":
        body = f"You have successfully deleted the service: {service['name']}\n"
    else:
        body = (
            f"You have successfully {action} the service: {service['name']}\n"
            f"Price: {service['price']}\n"
            f"Duration: {service['duration']}\n"
            f"Availability: {_describe_availability(service['availability'])}\n"
        )
    _notify(user.email if user else None, f"Service {action.capitalize()}", body)
