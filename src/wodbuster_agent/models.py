"""Shared data models used across the booking agent."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .date_window import as_utc, utcnow


class BookingStatus(str, Enum):
    """Lifecycle of a persisted booking attempt."""

    PENDING = "pending"
    ACTIVE = "active"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in {BookingStatus.SUCCESS, BookingStatus.FAILED, BookingStatus.EXPIRED}


class SessionCookie(BaseModel):
    """Serialized authentication cookie that lets a user skip the login form."""

    name: str
    value: str
    domain: str = ""
    path: str = "/"
    expires: Optional[datetime] = None
    secure: bool = False
    http_only: bool = False

    @classmethod
    def from_playwright(cls, cookie: dict[str, Any]) -> "SessionCookie":
        """Build from the dicts returned by ``BrowserContext.cookies()``."""
        raw_expiry = cookie.get("expires")
        expires = None
        if raw_expiry is not None and float(raw_expiry) > 0:
            expires = datetime.fromtimestamp(float(raw_expiry), tz=timezone.utc)
        return cls(
            name=cookie["name"],
            value=cookie.get("value", ""),
            domain=cookie.get("domain", ""),
            path=cookie.get("path") or "/",
            expires=expires,
            secure=bool(cookie.get("secure", False)),
            http_only=bool(cookie.get("httpOnly", False)),
        )

    def to_playwright(self, fallback_url: str) -> dict[str, Any]:
        """Shape accepted by ``BrowserContext.add_cookies()``."""
        payload: dict[str, Any] = {
            "name": self.name,
            "value": self.value,
            "secure": self.secure,
            "httpOnly": self.http_only,
        }
        if self.domain:
            payload["domain"] = self.domain
            payload["path"] = self.path or "/"
        else:
            payload["url"] = fallback_url
        if self.expires is not None:
            payload["expires"] = as_utc(self.expires).timestamp()
        return payload


class ClassBookingSchedule(BaseModel):
    """A standing request to book one class every week."""

    id: str
    class_type: str
    day: str
    hour: str


class User(BaseModel):
    """End user whose bookings the agent performs."""

    user_id: int
    email: str
    password: str = Field(description="AES-GCM encrypted password.")
    is_authenticated: bool = False
    class_booking_schedules: List[ClassBookingSchedule] = Field(default_factory=list)
    session: Optional[SessionCookie] = None
    session_expires_at: Optional[datetime] = None
    session_valid: bool = False
    last_login_time: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_valid_session(self, now: Optional[datetime] = None) -> bool:
        """A stored session is usable only when flagged valid and not yet expired."""
        if not self.session_valid or self.session is None or self.session_expires_at is None:
            return False
        return as_utc(now or utcnow()) < as_utc(self.session_expires_at)

    def update_session(
        self,
        cookie: SessionCookie,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> None:
        current = now or utcnow()
        self.session = cookie
        self.session_expires_at = expires_at
        self.session_valid = True
        self.last_login_time = current
        self.updated_at = current

    def clear_session(self, now: Optional[datetime] = None) -> None:
        self.session = None
        self.session_valid = False
        self.updated_at = now or utcnow()


class BookingAttempt(BaseModel):
    """One scheduled reservation request. Holds no credentials."""

    id: str
    user_id: int
    day: str
    hour: str
    class_type: str
    status: BookingStatus = BookingStatus.PENDING
    attempt_time: datetime
    error_message: str = ""
    # Never incremented: no retry semantics exist yet.
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def window(self) -> "BookingWindow":
        return BookingWindow(
            day=self.day,
            hour=self.hour,
            class_type=self.class_type,
            opens_at=as_utc(self.attempt_time),
        )


@dataclass(frozen=True)
class BookingWindow:
    """The (day, hour, class type) being pursued and the instant booking opens."""

    day: str
    hour: str
    class_type: str
    opens_at: datetime

    def time_remaining(self, now: Optional[datetime] = None) -> timedelta:
        remaining = self.opens_at - as_utc(now or utcnow())
        return max(remaining, timedelta(0))

    def is_open(self, now: Optional[datetime] = None) -> bool:
        return as_utc(now or utcnow()) >= self.opens_at


@dataclass
class ActiveBookingContext:
    """In-memory record of one currently executing booking task."""

    user_id: int
    attempt_id: str
    window: BookingWindow
    cancel_handle: Optional[asyncio.Task] = None
    status: str = "active"

    def cancel(self) -> None:
        if self.cancel_handle is not None:
            self.cancel_handle.cancel()


@dataclass
class ClassSlot:
    """A class card parsed from the booking calendar."""

    day: str
    hour: str
    class_type: str
    available: bool
