"""Facade used by front ends to register users and schedule classes."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import structlog

from .config import Settings
from .crypto import decrypt_password, encrypt_password
from .date_window import next_booking_window, utcnow
from .errors import SessionError
from .models import ActiveBookingContext, BookingAttempt, BookingStatus, ClassBookingSchedule, User
from .scheduler import BookingScheduler
from .session_manager import ClientFactory
from .storage import Storage
from .validation import (
    validate_class_type,
    validate_day,
    validate_email,
    validate_hour,
    validate_password,
)

LOGGER = structlog.get_logger(__name__)


class BookingManager:
    """Everything a chat front end needs: login, scheduling, status and cancellation."""

    def __init__(
        self,
        storage: Storage,
        client_factory: ClientFactory,
        scheduler: BookingScheduler,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._client_factory = client_factory
        self._scheduler = scheduler
        self._settings = settings
        self._clock = clock

    @property
    def _key(self) -> str:
        return self._settings.encryption_key.get_secret_value()

    def start_scheduler(self) -> None:
        self._scheduler.start()

    def stop_scheduler(self) -> None:
        self._scheduler.stop()

    async def log_in_and_save(self, user_id: int, email: str, password: str) -> User:
        """Check the credentials against the site, then store the user with an encrypted password."""
        email = validate_email(email)
        password = validate_password(password)

        client = await self._client_factory()
        try:
            cookie = await client.log_in(email, password)
        finally:
            await client.close()

        now = self._clock()
        existing = await self._storage.get_user(user_id)
        user = User(
            user_id=user_id,
            email=email,
            password=encrypt_password(password, self._key),
            is_authenticated=True,
            class_booking_schedules=existing.class_booking_schedules if existing else [],
            created_at=existing.created_at if existing else now,
        )
        expires_at = cookie.expires or now + timedelta(hours=self._settings.session_ttl_hours)
        user.update_session(cookie, expires_at, now)
        await self._storage.save_user(user)
        LOGGER.info("manager.login.saved", user_id=user_id, email=email)
        return user

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self._storage.get_user(user_id)

    async def is_authenticated(self, user_id: int) -> bool:
        user = await self._storage.get_user(user_id)
        return bool(user and user.is_authenticated)

    async def get_decrypted_password(self, user_id: int) -> str:
        user = await self._storage.get_user(user_id)
        if user is None:
            raise SessionError(f"user {user_id} not found", stage="load_user")
        return decrypt_password(user.password, self._key)

    async def test_user_session(self, user_id: int) -> None:
        """Raise :class:`SessionError` unless the stored session is valid and unexpired."""
        user = await self._storage.get_user(user_id)
        if user is None:
            raise SessionError(f"user {user_id} not found", stage="load_user")
        if not user.has_valid_session(self._clock()):
            raise SessionError("user session is invalid or expired", stage="validate_session")

    async def schedule_class(self, user_id: int, day: str, hour: str, class_type: str) -> BookingAttempt:
        """
        Save a standing class request and queue a pending attempt for the next window.

        Input is validated before anything is written.
        """
        day = validate_day(day)
        hour = validate_hour(hour)
        class_type = validate_class_type(class_type)

        user = await self._storage.get_user(user_id)
        if user is None:
            raise SessionError(f"user {user_id} not found", stage="load_user")

        now = self._clock()
        stamp = int(now.timestamp())
        schedule = ClassBookingSchedule(
            id=f"{user_id}-{day}-{hour}-{class_type}",
            class_type=class_type,
            day=day,
            hour=hour,
        )
        await self._storage.save_class_booking_schedule(user_id, schedule)

        attempt = BookingAttempt(
            id=f"{user_id}-{day}-{hour}-{class_type}-{stamp}",
            user_id=user_id,
            day=day,
            hour=hour,
            class_type=class_type,
            status=BookingStatus.PENDING,
            attempt_time=next_booking_window(now),
            created_at=now,
            updated_at=now,
        )
        await self._storage.save_booking_attempt(attempt)
        LOGGER.info(
            "manager.class.scheduled",
            user_id=user_id,
            attempt_id=attempt.id,
            attempt_time=attempt.attempt_time.isoformat(),
        )
        return attempt

    def get_active_bookings(self) -> Dict[int, ActiveBookingContext]:
        return self._scheduler.get_active_bookings()

    def cancel_booking(self, user_id: int) -> bool:
        return self._scheduler.cancel_booking(user_id)

    def get_schedule_info(self) -> str:
        return self._scheduler.get_schedule_info()
