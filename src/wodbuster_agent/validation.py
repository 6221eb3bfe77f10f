"""Input validation for credentials and class booking requests."""

from __future__ import annotations

import re

from .date_window import DAY_TOKENS
from .errors import ValidationError

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
HOUR_PATTERN = re.compile(r"^([01][0-9]|2[0-3]):[0-5][0-9]$")
MIN_PASSWORD_LENGTH = 4
MAX_CLASS_TYPE_LENGTH = 50


def sanitize_input(value: str) -> str:
    """Trim surrounding whitespace and drop NUL bytes."""
    return (value or "").strip().replace("\x00", "")


def _require(value: str, field: str) -> str:
    cleaned = sanitize_input(value)
    if not cleaned:
        raise ValidationError(f"{field} cannot be empty")
    return cleaned


def validate_email(email: str) -> str:
    cleaned = _require(email, "email")
    if not EMAIL_PATTERN.match(cleaned):
        raise ValidationError(f"invalid email format: {cleaned}")
    return cleaned


def validate_password(password: str) -> str:
    if not (password or "").strip():
        raise ValidationError("password cannot be empty")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters long")
    return password


def validate_day(day: str) -> str:
    """Accept English weekday names (any case) or the site's single-letter tokens."""
    cleaned = _require(day, "day")
    if cleaned.lower() in DAY_TOKENS:
        return cleaned.capitalize()
    if cleaned.upper() in DAY_TOKENS.values():
        return cleaned.upper()
    raise ValidationError(f"invalid day: {cleaned}")


def validate_hour(hour: str) -> str:
    """Require a zero-padded 24h ``HH:MM`` value."""
    cleaned = _require(hour, "hour")
    if not HOUR_PATTERN.match(cleaned):
        raise ValidationError(f"invalid hour (expected HH:MM): {cleaned}")
    return cleaned


def validate_class_type(class_type: str) -> str:
    cleaned = _require(class_type, "class type")
    if len(cleaned) > MAX_CLASS_TYPE_LENGTH:
        raise ValidationError("class type is too long")
    return cleaned
