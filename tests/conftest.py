"""
Shared fixtures and fakes for the booking agent tests.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from wodbuster_agent.automation import LOGIN_SUBMIT_SELECTOR
from wodbuster_agent.config import Settings
from wodbuster_agent.crypto import encrypt_password
from wodbuster_agent.errors import SessionError
from wodbuster_agent.models import BookingAttempt, SessionCookie, User
from wodbuster_agent.storage import MemoryStorage

ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
BASE_URL = "https://firespain.wodbuster.com"


class FakeContext:
    """Stands in for a Playwright BrowserContext."""

    def __init__(self, cookies: Optional[List[Dict[str, Any]]] = None):
        self.cookie_jar: List[Dict[str, Any]] = list(cookies or [])
        self.added: List[Dict[str, Any]] = []
        self.add_error: Optional[Exception] = None
        self.cleared = 0
        self.closed = False

    async def cookies(self) -> List[Dict[str, Any]]:
        return list(self.cookie_jar)

    async def add_cookies(self, cookies: List[Dict[str, Any]]) -> None:
        if self.add_error is not None:
            raise self.add_error
        self.added.extend(cookies)
        self.cookie_jar.extend(cookies)

    async def clear_cookies(self) -> None:
        self.cleared += 1
        self.cookie_jar = []

    async def close(self) -> None:
        self.closed = True


class FakePage:
    """
    Stands in for a Playwright Page.

    ``missing`` selectors never become visible, ``sticky`` selectors never
    detach. Clicking the login submit button drops ``login_cookies`` into the
    context, mimicking the site setting its auth cookie.
    """

    def __init__(
        self,
        *,
        missing: Iterable[str] = (),
        sticky: Iterable[str] = (),
        login_cookies: Optional[List[Dict[str, Any]]] = None,
        html: str = "",
    ):
        self.missing = set(missing)
        self.sticky = set(sticky)
        self.login_cookies = login_cookies if login_cookies is not None else [auth_cookie_dict()]
        self.html = html
        self.context = FakeContext()
        self.calls: List[tuple] = []
        self.url = "about:blank"

    def calls_of(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]

    async def goto(self, url: str, **kwargs) -> None:
        self.calls.append(("goto", url))
        self.url = url

    async def wait_for_selector(self, selector: str, *, state: str = "visible", timeout: int = 0) -> None:
        self.calls.append(("wait", selector, state, timeout))
        if state == "visible" and selector in self.missing:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")
        if state == "detached" and selector in self.sticky:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector} to detach")

    async def click(self, selector: str, **kwargs) -> None:
        self.calls.append(("click", selector))
        if selector == LOGIN_SUBMIT_SELECTOR:
            self.context.cookie_jar.extend(self.login_cookies)

    async def fill(self, selector: str, value: str, **kwargs) -> None:
        self.calls.append(("fill", selector, value))

    async def evaluate(self, script: str) -> None:
        self.calls.append(("evaluate", script))

    async def wait_for_timeout(self, timeout: float) -> None:
        self.calls.append(("settle", timeout))

    async def content(self) -> str:
        return self.html


class FakeClient:
    """In-memory AutomationClient with call counters and injectable failures."""

    def __init__(
        self,
        *,
        login_error: Optional[Exception] = None,
        load_error: Optional[Exception] = None,
        book_error: Optional[Exception] = None,
        book_delay: float = 0,
        book_gate: Optional[asyncio.Event] = None,
        cookie: Optional[SessionCookie] = None,
    ):
        self.login_error = login_error
        self.load_error = load_error
        self.book_error = book_error
        self.book_delay = book_delay
        self.book_gate = book_gate
        self.cookie = cookie or SessionCookie(name=".WBAuth", value="fresh-token", domain=".wodbuster.com")
        self.login_calls: List[tuple] = []
        self.load_calls: List[list] = []
        self.book_calls: List[tuple] = []
        self.closed = 0
        self.cleared = 0
        self._cookies: List[SessionCookie] = []

    @property
    def session_cookies(self) -> List[SessionCookie]:
        return list(self._cookies)

    async def log_in(self, email: str, password: str, *, deadline: Optional[float] = None) -> SessionCookie:
        self.login_calls.append((email, password))
        if self.login_error:
            raise self.login_error
        self._cookies = [self.cookie]
        return self.cookie

    async def load_stored_session(self, cookies, *, deadline: Optional[float] = None) -> None:
        cookies = list(cookies)
        self.load_calls.append(cookies)
        if self.load_error:
            raise self.load_error
        self._cookies = cookies

    async def book_class(self, day: str, class_type: str, hour: str, *, deadline: Optional[float] = None) -> None:
        self.book_calls.append((day, class_type, hour))
        if self.book_gate is not None:
            await self.book_gate.wait()
        if self.book_delay:
            await asyncio.sleep(self.book_delay)
        if self.book_error:
            raise self.book_error

    async def clear_session(self) -> None:
        self.cleared += 1
        self._cookies = []

    async def close(self) -> None:
        self.closed += 1


class ClientFactory:
    """Async factory handing out one FakeClient per call, optionally preconfigured per call order."""

    def __init__(self, *clients: FakeClient):
        self._queue = list(clients)
        self.created: List[FakeClient] = []

    async def __call__(self) -> FakeClient:
        client = self._queue.pop(0) if self._queue else FakeClient()
        self.created.append(client)
        return client


def auth_cookie_dict(value: str = "auth-token", expires: float = -1) -> Dict[str, Any]:
    return {
        "name": ".WBAuth",
        "value": value,
        "domain": ".wodbuster.com",
        "path": "/",
        "expires": expires,
        "httpOnly": True,
        "secure": True,
        "sameSite": "Lax",
    }


def make_settings(**overrides) -> Settings:
    values = {
        "base_url": BASE_URL,
        "encryption_key": ENCRYPTION_KEY,
        "timeout_seconds": 1,
        "jitter_base_ms": 0,
        "jitter_spread_ms": 1,
        "settle_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


def make_user(
    user_id: int,
    *,
    password: str = "secret-pass",
    session_value: Optional[str] = None,
    session_valid: bool = True,
    expires_at: Optional[datetime] = None,
) -> User:
    user = User(
        user_id=user_id,
        email=f"user{user_id}@example.com",
        password=encrypt_password(password, ENCRYPTION_KEY),
        is_authenticated=True,
    )
    if session_value is not None:
        user.session = SessionCookie(name=".WBAuth", value=session_value, domain=".wodbuster.com")
        user.session_valid = session_valid
        user.session_expires_at = expires_at or datetime.now(tz=timezone.utc) + timedelta(hours=12)
    return user


def make_attempt(
    user_id: int,
    day: str,
    hour: str,
    class_type: str,
    *,
    attempt_time: Optional[datetime] = None,
    suffix: str = "1",
) -> BookingAttempt:
    return BookingAttempt(
        id=f"{user_id}-{day}-{hour}-{class_type}-{suffix}",
        user_id=user_id,
        day=day,
        hour=hour,
        class_type=class_type,
        attempt_time=attempt_time or datetime(2024, 5, 4, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def rejected_login() -> SessionError:
    return SessionError("credentials rejected", stage="submit_credentials")
