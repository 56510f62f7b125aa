"""Shared validation functions for all entry points.

Pure functions -- no FastAPI or Click dependencies.
"""

from __future__ import annotations

import unicodedata
from datetime import date, datetime
from typing import Any

from trellis.errors import ValidationError

_MAX_ACTOR_LENGTH = 128


def sanitize_actor(value: Any) -> tuple[str, str | None]:
    """Validate and clean an actor name.

    Returns (cleaned_actor, None) on success or ("", error_message) on failure.
    Strips whitespace, then checks: non-empty, max length, no control/format chars.
    """
    if not isinstance(value, str):
        return ("", "actor must be a string")
    # Check for control/format chars before stripping -- reject "\nbad" rather
    # than silently absorbing the newline via strip().
    for ch in value:
        cat = unicodedata.category(ch)
        if cat.startswith("C"):  # Cc (control) and Cf (format)
            return ("", f"actor must not contain control characters (found U+{ord(ch):04X})")
    cleaned = value.strip()
    if not cleaned:
        return ("", "actor must not be empty")
    if len(cleaned) > _MAX_ACTOR_LENGTH:
        return ("", f"actor must be at most {_MAX_ACTOR_LENGTH} characters")
    return (cleaned, None)


def require_actor(value: Any) -> str:
    """Raising variant of ``sanitize_actor`` used inside the engine."""
    cleaned, err = sanitize_actor(value)
    if err:
        raise ValidationError(err)
    return cleaned


def require_text(value: Any, name: str) -> str:
    """Return *value* stripped; reject non-strings and blank strings."""
    if not isinstance(value, str) or not value.strip():
        msg = f"{name} is required and must be a non-empty string"
        raise ValidationError(msg)
    return value.strip()


def parse_day(value: date | str, name: str = "date") -> date:
    """Accept a ``date`` (or ``datetime``) or a ``YYYY-MM-DD`` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            pass
    msg = f"{name} must be a date or a YYYY-MM-DD string, got {value!r}"
    raise ValidationError(msg)


def validate_due_date(value: Any) -> str | None:
    """Normalise a due date to an ISO ``YYYY-MM-DD`` string (or ``None``)."""
    if value is None or value == "":
        return None
    return parse_day(value, "due_date").isoformat()


def validate_position(value: Any) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"position must be a number, got {value!r}"
        raise ValidationError(msg)
    if isinstance(value, float) and value != value:  # NaN
        msg = "position must not be NaN"
        raise ValidationError(msg)
    return value
