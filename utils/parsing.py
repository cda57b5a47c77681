from marketplace.errors import ValidationError


def as_id(value, field: str) -> int:
    """Coerce a JSON/query id to int, raising ValidationError for junk."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer id")
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} is required" if value in (None, "") else f"{field} must be an integer id")
    if parsed <= 0:
        raise ValidationError(f"{field} must be an integer id")
    return parsed
