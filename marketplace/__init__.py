from .errors import (
    MarketplaceError,
    NotFound,
    SlotUnavailable,
    InvalidSignature,
    InvalidBooking,
    DuplicateReview,
    AlreadyCompleted,
    ValidationError,
    Forbidden,
)
