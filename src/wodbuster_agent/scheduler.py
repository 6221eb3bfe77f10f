"""Weekly trigger that books every pending class concurrently."""

from __future__ import annotations

import asyncio
import dataclasses
import threading
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Settings
from .date_window import run_booking_window, utcnow
from .errors import SchedulerError
from .models import ActiveBookingContext, BookingAttempt, BookingStatus, BookingWindow
from .session_manager import SessionManager
from .storage import Storage

LOGGER = structlog.get_logger(__name__)

JOB_ID = "weekly_booking_run"


class ActiveBookingRegistry:
    """Thread-safe map of user id to the booking currently running for that user."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[int, ActiveBookingContext] = {}

    def register(self, context: ActiveBookingContext) -> bool:
        """Add ``context``; refuses when the user already has an active booking."""
        with self._lock:
            if context.user_id in self._entries:
                return False
            self._entries[context.user_id] = context
            return True

    def remove(self, user_id: int, context: Optional[ActiveBookingContext] = None) -> bool:
        """Drop the user's entry, only if it is still ``context`` when one is given."""
        with self._lock:
            current = self._entries.get(user_id)
            if current is None or (context is not None and current is not context):
                return False
            del self._entries[user_id]
            return True

    def cancel(self, user_id: int) -> bool:
        with self._lock:
            context = self._entries.pop(user_id, None)
            if context is None:
                return False
            context.status = "cancelled"
            context.cancel()
            return True

    def cancel_all(self) -> int:
        with self._lock:
            contexts = list(self._entries.values())
            self._entries.clear()
        for context in contexts:
            context.status = "cancelled"
            context.cancel()
        return len(contexts)

    def snapshot(self) -> Dict[int, ActiveBookingContext]:
        with self._lock:
            return {user_id: dataclasses.replace(context) for user_id, context in self._entries.items()}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class BookingScheduler:
    """
    Fires once a week shortly before booking opens and books all pending attempts.

    Each attempt runs in its own task under a per-task timeout. The batch
    waits for its tasks with a softer deadline; tasks still running at that
    point are left to finish on their own. A user's attempts run one at a time.
    """

    def __init__(
        self,
        storage: Storage,
        session_manager: SessionManager,
        settings: Settings,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._storage = storage
        self._session_manager = session_manager
        self._settings = settings
        self._scheduler = scheduler or AsyncIOScheduler(timezone=settings.timezone)
        self._clock = clock
        self._sleep = sleep
        self._registry = ActiveBookingRegistry()
        self._user_locks: Dict[int, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def booking_timeout_seconds(self) -> float:
        return self._settings.booking_timeout_minutes * 60

    @property
    def batch_timeout_seconds(self) -> float:
        return self._settings.batch_timeout_minutes * 60

    def start(self) -> None:
        """Register the weekly trigger. Must be called from a running event loop."""
        if self._running:
            raise SchedulerError("booking scheduler is already running")

        trigger = CronTrigger(
            day_of_week=self._settings.trigger_day_of_week,
            hour=self._settings.trigger_hour,
            minute=self._settings.trigger_minute,
            timezone=self._settings.timezone,
        )
        self._scheduler.add_job(
            self.run_pending_bookings,
            trigger=trigger,
            id=JOB_ID,
            name="Weekly class booking run",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=60,
        )
        if not self._scheduler.running:
            self._scheduler.start()
        self._running = True
        LOGGER.info(
            "scheduler.started",
            day_of_week=self._settings.trigger_day_of_week,
            hour=self._settings.trigger_hour,
            minute=self._settings.trigger_minute,
            timezone=self._settings.timezone,
        )

    def stop(self) -> None:
        """Remove the trigger and cancel every booking in flight."""
        if not self._running:
            return

        if self._scheduler.get_job(JOB_ID):
            self._scheduler.remove_job(JOB_ID)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._running = False

        cancelled = self._registry.cancel_all()
        LOGGER.info("scheduler.stopped", cancelled=cancelled)

    def next_run_time(self) -> Optional[datetime]:
        if not self._running:
            return None
        job = self._scheduler.get_job(JOB_ID)
        if job is None:
            return None
        return getattr(job, "next_run_time", None)

    def get_schedule_info(self) -> str:
        if not self._running:
            return "Scheduler is not running"
        next_run = self.next_run_time()
        if next_run is None:
            return "No scheduled runs found"
        remaining = _format_duration(next_run - self._clock())
        return f"Next booking run: {next_run:%A, %B %d, %Y at %H:%M %Z} (in {remaining})"

    def get_active_bookings(self) -> Dict[int, ActiveBookingContext]:
        """Copy of the bookings in flight; later changes are not reflected."""
        return self._registry.snapshot()

    def cancel_booking(self, user_id: int) -> bool:
        """
        Cancel the user's booking in flight.

        Only the in-memory context is touched here; the cancelled task records
        the failed status itself on its way out.
        """
        cancelled = self._registry.cancel(user_id)
        if cancelled:
            LOGGER.info("scheduler.booking.cancelled", user_id=user_id)
        return cancelled

    def jitter_seconds(self, user_id: int) -> float:
        """Deterministic per-user start offset so requests do not land simultaneously."""
        delay_ms = self._settings.jitter_base_ms + user_id % self._settings.jitter_spread_ms
        return delay_ms / 1000

    async def run_pending_bookings(self) -> None:
        """Load every pending attempt and book them concurrently."""
        LOGGER.info("scheduler.run.start")
        try:
            attempts = await self._storage.get_all_pending_bookings()
        except Exception:  # noqa: BLE001
            LOGGER.exception("scheduler.run.load_failed")
            return

        if not attempts:
            LOGGER.info("scheduler.run.empty")
            return

        LOGGER.info("scheduler.run.dispatch", count=len(attempts))
        tasks = [self._spawn(attempt) for attempt in attempts]
        done, pending = await asyncio.wait(tasks, timeout=self.batch_timeout_seconds)
        if pending:
            LOGGER.warning(
                "scheduler.run.timeout",
                completed=len(done),
                still_running=len(pending),
            )
        else:
            LOGGER.info("scheduler.run.complete", count=len(done))

    async def join(self) -> None:
        """Wait for every booking task spawned so far, including ones the batch gave up waiting on."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, attempt: BookingAttempt) -> asyncio.Task:
        task = asyncio.create_task(self.process_user_booking(attempt), name=f"booking-{attempt.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    async def process_user_booking(self, attempt: BookingAttempt) -> None:
        """Book one attempt end to end and persist its terminal status."""
        delay = self.jitter_seconds(attempt.user_id)
        LOGGER.info(
            "scheduler.booking.jitter",
            user_id=attempt.user_id,
            attempt_id=attempt.id,
            delay_ms=int(delay * 1000),
            day=attempt.day,
            hour=attempt.hour,
            class_type=attempt.class_type,
        )
        await self._sleep(delay)

        async with self._user_lock(attempt.user_id):
            window = self._window_for(attempt)
            context = ActiveBookingContext(
                user_id=attempt.user_id,
                attempt_id=attempt.id,
                window=window,
                cancel_handle=asyncio.current_task(),
            )

            status, message = BookingStatus.FAILED, "booking interrupted"
            try:
                await self._set_status(attempt, BookingStatus.ACTIVE)
                if not self._registry.register(context):
                    raise SchedulerError("another booking is already active for this user")
                await asyncio.wait_for(
                    self._perform_booking(attempt.user_id, window),
                    timeout=self.booking_timeout_seconds,
                )
            except asyncio.CancelledError:
                message = "booking cancelled"
                LOGGER.warning("scheduler.booking.cancelled_in_flight", user_id=attempt.user_id, attempt_id=attempt.id)
                raise
            except asyncio.TimeoutError:
                message = f"booking timed out after {self.booking_timeout_seconds:.0f}s"
                LOGGER.error("scheduler.booking.timeout", user_id=attempt.user_id, attempt_id=attempt.id)
            except Exception as exc:  # noqa: BLE001
                message = str(exc)
                LOGGER.exception("scheduler.booking.failed", user_id=attempt.user_id, attempt_id=attempt.id)
            else:
                status, message = BookingStatus.SUCCESS, ""
                LOGGER.info("scheduler.booking.success", user_id=attempt.user_id, attempt_id=attempt.id)
            finally:
                self._registry.remove(attempt.user_id, context)
                await self._finish(attempt, status, message)

    def _window_for(self, attempt: BookingAttempt) -> BookingWindow:
        """The attempt's window, moved up to this run's opening when the stored one is already behind it."""
        window = attempt.window()
        opens_at = run_booking_window(self._clock())
        if window.opens_at >= opens_at:
            return window
        LOGGER.info(
            "scheduler.window.rescheduled",
            user_id=attempt.user_id,
            attempt_id=attempt.id,
            stored=window.opens_at.isoformat(),
            opens_at=opens_at.isoformat(),
        )
        return dataclasses.replace(window, opens_at=opens_at)

    async def _finish(self, attempt: BookingAttempt, status: BookingStatus, message: str) -> None:
        """Persist the terminal status and release the user's client, even if cancelled meanwhile."""
        finishing = asyncio.ensure_future(self._complete(attempt, status, message))
        try:
            await asyncio.shield(finishing)
        except asyncio.CancelledError:
            await finishing
            raise

    async def _complete(self, attempt: BookingAttempt, status: BookingStatus, message: str) -> None:
        await self._set_status(attempt, status, message)
        await self._session_manager.close_user_client(attempt.user_id)

    async def _perform_booking(self, user_id: int, window: BookingWindow) -> None:
        deadline = time.monotonic() + self.booking_timeout_seconds
        client = await self._session_manager.ensure_user_session_ready(user_id, deadline=deadline)
        await self._wait_for_window(user_id, window)
        await client.book_class(window.day, window.class_type, window.hour, deadline=deadline)

    async def _wait_for_window(self, user_id: int, window: BookingWindow) -> None:
        remaining = window.time_remaining(self._clock())
        if remaining <= timedelta(0):
            return
        LOGGER.info(
            "scheduler.window.waiting",
            user_id=user_id,
            opens_at=window.opens_at.isoformat(),
            wait_seconds=round(remaining.total_seconds(), 3),
        )
        await self._sleep(remaining.total_seconds())
        LOGGER.info("scheduler.window.open", user_id=user_id)

    async def _set_status(self, attempt: BookingAttempt, status: BookingStatus, message: str = "") -> None:
        try:
            await self._storage.update_booking_status(attempt.id, status, message)
        except Exception:  # noqa: BLE001
            LOGGER.exception(
                "scheduler.booking.status_update_failed",
                attempt_id=attempt.id,
                status=status.value,
            )


def _format_duration(delta: timedelta) -> str:
    minutes = max(int(delta.total_seconds() // 60), 0)
    days, minutes = divmod(minutes, 24 * 60)
    hours, minutes = divmod(minutes, 60)
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours or days:
        parts.append(f"{hours}h")
    parts.append(f"{minutes}m")
    return " ".join(parts)
