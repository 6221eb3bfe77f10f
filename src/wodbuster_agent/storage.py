"""Storage contract consumed by the core plus an in-memory implementation."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol

import structlog

from .date_window import utcnow
from .errors import StorageError
from .models import BookingAttempt, BookingStatus, ClassBookingSchedule, User

LOGGER = structlog.get_logger(__name__)


class Storage(Protocol):
    """Persistence operations the scheduler, session manager and manager rely on."""

    async def save_user(self, user: User) -> None: ...

    async def get_user(self, user_id: int) -> Optional[User]: ...

    async def save_class_booking_schedule(self, user_id: int, schedule: ClassBookingSchedule) -> None: ...

    async def get_class_booking_schedules(self, user_id: int) -> Optional[List[ClassBookingSchedule]]: ...

    async def save_booking_attempt(self, attempt: BookingAttempt) -> None: ...

    async def get_booking_attempt(self, attempt_id: str) -> Optional[BookingAttempt]: ...

    async def get_all_pending_bookings(self) -> List[BookingAttempt]: ...

    async def update_booking_status(
        self,
        attempt_id: str,
        status: BookingStatus,
        error_message: str = "",
    ) -> None: ...


class MemoryStorage:
    """Process-local storage. Returns copies so callers never share mutable state."""

    def __init__(self) -> None:
        self._users: Dict[int, User] = {}
        self._bookings: Dict[str, BookingAttempt] = {}
        self._lock = asyncio.Lock()

    async def save_user(self, user: User) -> None:
        async with self._lock:
            stored = user.model_copy(deep=True)
            stored.updated_at = utcnow()
            self._users[user.user_id] = stored

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def save_class_booking_schedule(self, user_id: int, schedule: ClassBookingSchedule) -> None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise StorageError(f"user {user_id} not found")
            for index, existing in enumerate(user.class_booking_schedules):
                if existing.id == schedule.id:
                    user.class_booking_schedules[index] = schedule.model_copy()
                    break
            else:
                user.class_booking_schedules.append(schedule.model_copy())
            user.updated_at = utcnow()

    async def get_class_booking_schedules(self, user_id: int) -> Optional[List[ClassBookingSchedule]]:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            return [schedule.model_copy() for schedule in user.class_booking_schedules]

    async def save_booking_attempt(self, attempt: BookingAttempt) -> None:
        async with self._lock:
            stored = attempt.model_copy(deep=True)
            stored.updated_at = utcnow()
            self._bookings[attempt.id] = stored

    async def get_booking_attempt(self, attempt_id: str) -> Optional[BookingAttempt]:
        async with self._lock:
            attempt = self._bookings.get(attempt_id)
            return attempt.model_copy(deep=True) if attempt else None

    async def get_all_pending_bookings(self) -> List[BookingAttempt]:
        async with self._lock:
            return [
                attempt.model_copy(deep=True)
                for attempt in self._bookings.values()
                if attempt.status == BookingStatus.PENDING
            ]

    async def update_booking_status(
        self,
        attempt_id: str,
        status: BookingStatus,
        error_message: str = "",
    ) -> None:
        async with self._lock:
            attempt = self._bookings.get(attempt_id)
            if attempt is None:
                raise StorageError(f"booking attempt {attempt_id} not found")
            attempt.status = BookingStatus(status)
            attempt.error_message = error_message
            attempt.updated_at = utcnow()
        LOGGER.debug("storage.booking.status", attempt_id=attempt_id, status=attempt.status.value)
