"""Utilities for computing the weekly booking window and day tokens."""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Optional

# The booking calendar labels its day tabs with Spanish initials.
DAY_TOKENS = {
    "monday": "L",
    "tuesday": "M",
    "wednesday": "X",
    "thursday": "J",
    "friday": "V",
    "saturday": "S",
    "sunday": "D",
}

SATURDAY = 5
BOOKING_OPENS_AT = time(12, 0, tzinfo=timezone.utc)
# A run starting this long after an opening still targets that opening.
RUN_GRACE = timedelta(hours=1)


def utcnow() -> datetime:
    """Current aware datetime in UTC."""
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_booking_window(now: Optional[datetime] = None) -> datetime:
    """
    Return the next Saturday 12:00 UTC at or after ``now``.

    On a Saturday before noon the window is the same day; from noon onwards it
    rolls over to the following Saturday.
    """
    current = as_utc(now or utcnow())
    days_ahead = (SATURDAY - current.weekday()) % 7
    if days_ahead == 0 and current.hour >= BOOKING_OPENS_AT.hour:
        days_ahead = 7
    target_day = current.date() + timedelta(days=days_ahead)
    return datetime.combine(target_day, BOOKING_OPENS_AT)


def run_booking_window(now: Optional[datetime] = None) -> datetime:
    """Opening a booking run started at ``now`` aims for; late starts keep the opening they missed."""
    return next_booking_window(as_utc(now or utcnow()) - RUN_GRACE)


def day_token(day: str) -> str:
    """Translate an English weekday name (or an existing token) into the site's tab label."""
    cleaned = (day or "").strip()
    if cleaned.upper() in DAY_TOKENS.values():
        return cleaned.upper()
    try:
        return DAY_TOKENS[cleaned.lower()]
    except KeyError:
        raise ValueError(f"Unknown day '{day}'") from None
