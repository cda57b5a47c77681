class MarketplaceError(Exception):
    """
    Base for every failure the booking core reports to callers.
    Rendered by the app as {"error": message, "code": code} with status_code.
    """
    status_code = 400
    code = "error"
    default_message = "Request failed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(MarketplaceError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class SlotUnavailable(MarketplaceError):
    status_code = 409
    code = "slot_unavailable"
    default_message = "Slot not available"


class InvalidSignature(MarketplaceError):
    status_code = 400
    code = "invalid_signature"
    default_message = "Invalid payment signature"


class InvalidBooking(MarketplaceError):
    status_code = 400
    code = "invalid_booking"
    default_message = "Invalid or incomplete booking"


class DuplicateReview(MarketplaceError):
    status_code = 409
    code = "duplicate_review"
    default_message = "Review already submitted for this booking"


class AlreadyCompleted(MarketplaceError):
    status_code = 409
    code = "already_completed"
    default_message = "Booking already confirmed"


class ValidationError(MarketplaceError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid input"


class Forbidden(MarketplaceError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"
