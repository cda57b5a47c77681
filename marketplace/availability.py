"""
Availability store helpers.

An availability list is what Service.availability and Provider.availability
hold: an ordered list of {"date": "YYYY-MM-DD", "slots": [slot, ...]} entries.
Within one list a date appears once, slots within an entry are unique, and an
entry never has an empty slot list.

All helpers return new lists instead of mutating their input, so assigning the
result back to a JSON column is always picked up by SQLAlchemy.
"""
from datetime import date as _date
from typing import Iterable, List, Tuple

from marketplace.errors import ValidationError


def _copy(entries) -> List[dict]:
    return [{"date": e["date"], "slots": list(e["slots"])} for e in (entries or [])]


def is_open(entries, date: str, slot: str) -> bool:
    for entry in entries or []:
        if entry.get("date") == date:
            return slot in (entry.get("slots") or [])
    return False


def merge(entries, date: str, slots: Iterable[str]) -> List[dict]:
    """
    Union `slots` into the entry for `date`, appending a new entry when the
    date is not present yet. Slot order is first-seen order.
    """
    out = _copy(entries)
    for entry in out:
        if entry["date"] == date:
            for s in slots:
                if s not in entry["slots"]:
                    entry["slots"].append(s)
            return out

    fresh = []
    for s in slots:
        if s not in fresh:
            fresh.append(s)
    if fresh:
        out.append({"date": date, "slots": fresh})
    return out


def remove(entries, date: str, slot: str) -> Tuple[List[dict], bool]:
    """
    Compare-and-remove: returns (new_entries, removed). `removed` is False when
    the slot was not open, in which case the list comes back unchanged.
    """
    out = _copy(entries)
    for i, entry in enumerate(out):
        if entry["date"] != date:
            continue
        if slot not in entry["slots"]:
            return out, False
        entry["slots"].remove(slot)
        if not entry["slots"]:
            del out[i]
        return out, True
    return out, False


def aggregate(entry_lists) -> List[dict]:
    """Per-date union of several availability lists, in iteration order."""
    out: List[dict] = []
    for entries in entry_lists:
        for entry in entries or []:
            out = merge(out, entry["date"], entry["slots"])
    return out


def _valid_date(value) -> bool:
    try:
        _date.fromisoformat(value)
    except (TypeError, ValueError):
        return False
    return len(value) == 10


def normalize(raw) -> List[dict]:
    """
    Validate availability sent by a provider and fold it into a well-formed
    list (duplicate dates merged, duplicate slots dropped).
    """
    if not isinstance(raw, list) or len(raw) == 0:
        raise ValidationError("At least one availability entry is required")

    out: List[dict] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError("Each availability must have a date and at least one slot")
        day = item.get("date")
        slots = item.get("slots")
        if not isinstance(day, str) or not day.strip():
            raise ValidationError("Each availability must have a date and at least one slot")
        if not isinstance(slots, list) or len(slots) == 0:
            raise ValidationError("Each availability must have a date and at least one slot")

        day = day.strip()
        if not _valid_date(day):
            raise ValidationError(f"Invalid date {day!r}. Use YYYY-MM-DD")

        cleaned = []
        for s in slots:
            if not isinstance(s, str) or not s.strip():
                raise ValidationError("Slots must be non-empty strings")
            cleaned.append(s.strip())

        out = merge(out, day, cleaned)
    return out
