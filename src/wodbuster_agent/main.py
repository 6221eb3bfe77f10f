"""Entry point for the booking agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import suppress
from typing import Optional, Sequence, Tuple

import structlog

from .automation import BrowserHost
from .config import Settings
from .manager import BookingManager
from .scheduler import BookingScheduler
from .session_manager import SessionManager
from .storage import MemoryStorage


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog + stdlib logging."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


LOGGER = structlog.get_logger(__name__)


async def serve(
    settings: Settings,
    *,
    run_now: bool = False,
    requests: Sequence[Sequence[str]] = (),
    user_id: int = 1,
) -> None:
    """Start the weekly scheduler and block until SIGINT/SIGTERM (or one batch with ``run_now``)."""
    storage = MemoryStorage()

    async with BrowserHost(settings) as host:
        sessions = SessionManager(storage, host.new_client, settings)
        scheduler = BookingScheduler(storage, sessions, settings)
        manager = BookingManager(storage, host.new_client, scheduler, settings)

        if requests:
            await queue_test_account(manager, settings, user_id, requests)
        else:
            LOGGER.warning("agent.nothing_queued", hint="pass --class DAY HOUR CLASS_TYPE")

        if run_now:
            try:
                await scheduler.run_pending_bookings()
                await scheduler.join()
            finally:
                await sessions.close_all_clients()
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop_event.set)

        manager.start_scheduler()
        LOGGER.info("agent.running", schedule=manager.get_schedule_info())
        try:
            await stop_event.wait()
        finally:
            LOGGER.info("agent.shutdown")
            manager.stop_scheduler()
            await scheduler.join()
            await sessions.close_all_clients()


async def queue_test_account(
    manager: BookingManager,
    settings: Settings,
    user_id: int,
    requests: Sequence[Sequence[str]],
) -> None:
    """Register the test account and queue one pending attempt per ``(day, hour, class_type)``."""
    email, password = _test_credentials(settings)
    await manager.log_in_and_save(user_id, email, password)
    for day, hour, class_type in requests:
        attempt = await manager.schedule_class(user_id, day, hour, class_type)
        LOGGER.info("agent.queued", attempt_id=attempt.id, opens_at=attempt.attempt_time.isoformat())


async def list_classes(settings: Settings, day: Optional[str]) -> None:
    """Log in with the test account and print the class cards for ``day``."""
    email, password = _test_credentials(settings)
    async with BrowserHost(settings) as host:
        client = await host.new_client()
        try:
            await client.log_in(email, password)
            slots = await client.list_classes(day)
        finally:
            await client.close()

    for slot in slots:
        marker = "available" if slot.available else "full"
        print(f"{slot.day or '-'} {slot.hour} {slot.class_type} ({marker})")


async def book_once(settings: Settings, day: str, class_type: str, hour: str) -> None:
    """Log in with the test account and book one class right away."""
    email, password = _test_credentials(settings)
    async with BrowserHost(settings) as host:
        client = await host.new_client()
        try:
            await client.log_in(email, password)
            await client.book_class(day, class_type, hour)
        finally:
            await client.close()
    LOGGER.info("agent.booked", day=day, class_type=class_type, hour=hour)


def _test_credentials(settings: Settings) -> Tuple[str, str]:
    if not settings.test_email or not settings.test_password:
        raise SystemExit("TEST_EMAIL and TEST_PASSWORD must be set for one-off commands")
    return settings.test_email, settings.test_password.get_secret_value()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """CLI argument parsing."""
    parser = argparse.ArgumentParser(description="Book WODBuster classes when the weekly window opens.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("serve", "Run the weekly scheduler until interrupted."),
        ("run-now", "Process every pending booking immediately, once."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument(
            "--class",
            dest="classes",
            action="append",
            nargs=3,
            default=[],
            metavar=("DAY", "HOUR", "CLASS_TYPE"),
            help="Queue a class for the test account; repeatable. Bookings live in memory, "
            "so without this there is nothing to book.",
        )
        command.add_argument("--user-id", type=int, default=1, help="Id to register the test account under.")

    classes = subparsers.add_parser("classes", help="List classes using the test account.")
    classes.add_argument("--day", help="Weekday name or day token (L, M, X, J, V, S, D).")

    book = subparsers.add_parser("book", help="Book one class right now using the test account.")
    book.add_argument("--day", required=True)
    book.add_argument("--class-type", required=True)
    book.add_argument("--hour", required=True, help="HH:MM")

    return parser.parse_args(argv)


def cli(argv: Optional[list[str]] = None) -> None:
    """Console script entrypoint."""
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = Settings()
    except Exception as exc:  # pragma: no cover - startup validation
        LOGGER.exception("settings.error", error=str(exc))
        raise SystemExit(2) from exc

    if args.command in ("serve", "run-now"):
        coro = serve(
            settings,
            run_now=args.command == "run-now",
            requests=args.classes,
            user_id=args.user_id,
        )
    elif args.command == "classes":
        coro = list_classes(settings, args.day)
    else:
        coro = book_once(settings, args.day, args.class_type, args.hour)

    try:
        asyncio.run(coro)
    except Exception as exc:  # pragma: no cover - top level
        LOGGER.exception("agent.failed", error=str(exc))
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    cli()
