"""Playwright automation for the WODBuster booking site."""

from __future__ import annotations

import time
from contextlib import suppress
from enum import Enum
from typing import Iterable, List, Optional, Protocol

import structlog
from bs4 import BeautifulSoup
from playwright.async_api import Browser, Page, async_playwright
from playwright.async_api import Error as PlaywrightError

from .config import Settings
from .date_window import day_token
from .errors import AutomationError, SessionError, ValidationError
from .models import ClassSlot, SessionCookie
from .steps import Step, StepAction, StepRunner

LOGGER = structlog.get_logger(__name__)


LOGIN_EMAIL_SELECTOR = "#body_body_CtlLogin_IoEmail"
LOGIN_PASSWORD_SELECTOR = "#body_body_CtlLogin_IoPassword"
LOGIN_SUBMIT_SELECTOR = "#body_body_CtlLogin_CtlAceptar"
REMEMBER_PROMPT_SELECTOR = "#body_body_CtlUp"
REMEMBER_DEVICE_SCRIPT = "document.getElementById('body_body_CtlConfiar_CtlSeguro').click()"
CALENDAR_SELECTOR = "#calendar"
NEXT_WEEK_SELECTOR = "a.next.icon"
CONFIRM_DIALOG_HEADING = "Confirmación Requerida"
CONFIRM_BUTTON_SELECTOR = (
    "xpath=//div[h4[normalize-space(text())='Confirmación Requerida']]"
    "//button[contains(@class, 'button') and normalize-space(text())='Aceptar']"
)
SESSION_COOKIE_NAMES = (".WBAuth",)

STAGE_OPEN_LOGIN = "open_login"
STAGE_SUBMIT_CREDENTIALS = "submit_credentials"
STAGE_REMEMBER_DEVICE = "remember_device"
STAGE_EXTRACT_SESSION = "extract_session"
STAGE_VALIDATE_SESSION = "validate_session"
STAGE_ENSURE_AUTHENTICATED = "ensure_authenticated"
STAGE_OPEN_CALENDAR = "open_calendar"
STAGE_NEXT_WEEK = "next_week"
STAGE_SELECT_DAY = "select_day"
STAGE_RESERVE = "reserve_class"
STAGE_CONFIRM = "accept_confirmation"


class ClientState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    NAVIGATING_TO_BOOKING_PAGE = "navigating_to_booking_page"
    DAY_SELECTED = "day_selected"
    AWAITING_SLOT_OPEN = "awaiting_slot_open"
    BOOKING_SUBMITTED = "booking_submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class AutomationClient(Protocol):
    """What the session manager and scheduler need from a per-user browser client."""

    @property
    def session_cookies(self) -> List[SessionCookie]: ...

    async def log_in(self, email: str, password: str, *, deadline: Optional[float] = None) -> SessionCookie: ...

    async def load_stored_session(
        self, cookies: Iterable[SessionCookie], *, deadline: Optional[float] = None
    ) -> None: ...

    async def book_class(
        self, day: str, class_type: str, hour: str, *, deadline: Optional[float] = None
    ) -> None: ...

    async def clear_session(self) -> None: ...

    async def close(self) -> None: ...


def xpath_literal(value: str) -> str:
    """Quote ``value`` for use inside an XPath expression."""
    if "'" not in value:
        return f"'{value}'"
    if '"' not in value:
        return f'"{value}"'
    pieces = value.split("'")
    return "concat(" + ", \"'\", ".join(f"'{piece}'" for piece in pieces) + ")"


def day_tab_selector(token: str) -> str:
    return (
        "xpath=//a[contains(concat(' ', normalize-space(@class), ' '), ' dia ') or contains(@class, 'current')]"
        f"/span[normalize-space(text())={xpath_literal(token)}]/parent::a"
    )


def reserve_button_selector(class_type: str, hour: str) -> str:
    """Reserve button of the card whose title contains ``class_type`` and whose hour equals ``hour``."""
    return (
        "xpath=//div[contains(concat(' ', normalize-space(@class), ' '), ' clase ')]"
        "[.//h3[contains(@class, 'entrenamiento') "
        f"and contains(normalize-space(.), {xpath_literal(class_type)})]]"
        f"[.//div[contains(@class, 'hora') and normalize-space(.)={xpath_literal(hour)}]]"
        "//button[contains(@class, 'entrenar') and contains(., 'Reservar')]"
    )


def login_steps(settings: Settings, email: str, password: str) -> List[Step]:
    return [
        Step(
            stage=STAGE_OPEN_LOGIN,
            intent="login page with email and password fields",
            action=StepAction.GOTO,
            target=settings.login_url,
        ),
        Step(
            stage=STAGE_OPEN_LOGIN,
            intent="email field",
            action=StepAction.FILL,
            target=LOGIN_EMAIL_SELECTOR,
            value=email,
            wait_for=LOGIN_EMAIL_SELECTOR,
        ),
        Step(
            stage=STAGE_OPEN_LOGIN,
            intent="password field",
            action=StepAction.FILL,
            target=LOGIN_PASSWORD_SELECTOR,
            value=password,
            wait_for=LOGIN_PASSWORD_SELECTOR,
            settle_ms=2000,
        ),
        Step(
            stage=STAGE_SUBMIT_CREDENTIALS,
            intent="login submit button disappears once credentials are accepted",
            action=StepAction.CLICK,
            target=LOGIN_SUBMIT_SELECTOR,
            wait_gone=LOGIN_SUBMIT_SELECTOR,
        ),
    ]


def remember_device_steps() -> List[Step]:
    return [
        Step(
            stage=STAGE_REMEMBER_DEVICE,
            intent="remember this device prompt",
            action=StepAction.EVALUATE,
            target=REMEMBER_DEVICE_SCRIPT,
            wait_for=REMEMBER_PROMPT_SELECTOR,
            settle_ms=2000,
        ),
    ]


def session_check_steps(settings: Settings) -> List[Step]:
    return [
        Step(
            stage=STAGE_VALIDATE_SESSION,
            intent="booking calendar on a protected page",
            action=StepAction.GOTO,
            target=settings.schedule_url,
        ),
        Step(stage=STAGE_VALIDATE_SESSION, intent="booking calendar", wait_for=CALENDAR_SELECTOR),
    ]


def open_calendar_steps(settings: Settings, *, next_week: bool) -> List[Step]:
    steps = [
        Step(
            stage=STAGE_OPEN_CALENDAR,
            intent="booking calendar",
            action=StepAction.GOTO,
            target=settings.schedule_url,
        ),
        Step(stage=STAGE_OPEN_CALENDAR, intent="booking calendar", wait_for=CALENDAR_SELECTOR),
    ]
    if next_week:
        steps.append(
            Step(
                stage=STAGE_NEXT_WEEK,
                intent="next week arrow",
                action=StepAction.CLICK,
                target=NEXT_WEEK_SELECTOR,
                wait_for=NEXT_WEEK_SELECTOR,
                settle_ms=500,
            )
        )
    return steps


def select_day_steps(token: str) -> List[Step]:
    selector = day_tab_selector(token)
    return [
        Step(
            stage=STAGE_SELECT_DAY,
            intent=f"day tab '{token}'",
            action=StepAction.CLICK,
            target=selector,
            wait_for=selector,
            settle_ms=1000,
        ),
    ]


def reserve_steps(class_type: str, hour: str) -> List[Step]:
    selector = reserve_button_selector(class_type, hour)
    return [
        Step(
            stage=STAGE_RESERVE,
            intent=f"reserve button for {class_type} at {hour}",
            action=StepAction.CLICK,
            target=selector,
            wait_for=selector,
            settle_ms=100,
        ),
    ]


def confirm_steps(settle_ms: int) -> List[Step]:
    return [
        Step(
            stage=STAGE_CONFIRM,
            intent=f"'{CONFIRM_DIALOG_HEADING}' dialog accept button",
            action=StepAction.CLICK,
            target=CONFIRM_BUTTON_SELECTOR,
            wait_for=CONFIRM_BUTTON_SELECTOR,
            settle_ms=settle_ms,
        ),
    ]


def clean_class_type(value: str) -> str:
    """Drop surrounding whitespace and the trailing asterisk used for footnotes."""
    cleaned = " ".join((value or "").split())
    return cleaned.rstrip("*").strip()


def parse_class_cards(html: str, day: str = "") -> List[ClassSlot]:
    """Extract every class card from calendar markup."""
    soup = BeautifulSoup(html, "html.parser")
    slots: List[ClassSlot] = []
    for card in soup.select("div.clase"):
        title = card.select_one("h3.entrenamiento")
        hour = card.select_one("div.hora")
        if title is None or hour is None:
            continue
        available = any("Reservar" in button.get_text() for button in card.select("button.entrenar"))
        slots.append(
            ClassSlot(
                day=day,
                hour=hour.get_text(strip=True),
                class_type=clean_class_type(title.get_text()),
                available=available,
            )
        )
    return slots


class WodbusterClient:
    """One user's isolated browser page and the stage-ordered booking flow on top of it."""

    def __init__(
        self,
        settings: Settings,
        page: Page,
        *,
        clock=time.monotonic,
    ):
        self._settings = settings
        self._page = page
        self._runner = StepRunner(page, timeout_ms=settings.timeout_ms, clock=clock)
        self._cookies: List[SessionCookie] = []
        self._authenticated = False
        self.state = ClientState.UNAUTHENTICATED
        self.transitions: List[ClientState] = [ClientState.UNAUTHENTICATED]

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def session_cookies(self) -> List[SessionCookie]:
        return list(self._cookies)

    @property
    def main_session_cookie(self) -> Optional[SessionCookie]:
        for cookie in self._cookies:
            if cookie.name in SESSION_COOKIE_NAMES and cookie.value:
                return cookie
        return None

    async def log_in(self, email: str, password: str, *, deadline: Optional[float] = None) -> SessionCookie:
        """
        Authenticate and return the session cookie.

        When session cookies are already held, they are restored and checked
        first; the login form is only submitted when that fails, after the
        rejected cookies have been dropped.
        """
        if not email or not password:
            raise SessionError("email and password are required", stage=STAGE_OPEN_LOGIN)

        if self._cookies:
            try:
                await self.restore_session()
                await self._runner.run(session_check_steps(self._settings), deadline=deadline)
            except (AutomationError, SessionError) as exc:
                LOGGER.warning("automation.login.restore_failed", email=email, error=str(exc))
                await self.clear_session()
            else:
                cookie = self.main_session_cookie
                if cookie is not None:
                    self._mark_authenticated()
                    LOGGER.info("automation.login.restored", email=email)
                    return cookie

        self._transition(ClientState.AUTHENTICATING)
        self._authenticated = False
        LOGGER.info("automation.login.start", email=email, url=self._settings.login_url)
        try:
            await self._runner.run(login_steps(self._settings, email, password), deadline=deadline)
        except AutomationError as exc:
            self._transition(ClientState.UNAUTHENTICATED)
            reason = "credentials rejected" if exc.stage == STAGE_SUBMIT_CREDENTIALS else "login form not found"
            LOGGER.error("automation.login.failed", email=email, stage=exc.stage, reason=reason)
            raise SessionError(reason, stage=exc.stage) from exc

        with suppress(AutomationError):
            await self._runner.run(remember_device_steps(), deadline=deadline)

        await self.save_session()
        cookie = self.main_session_cookie
        if cookie is None:
            self._transition(ClientState.UNAUTHENTICATED)
            LOGGER.error("automation.login.no_session_cookie", email=email)
            raise SessionError("no session cookie found after login", stage=STAGE_EXTRACT_SESSION)

        self._mark_authenticated()
        LOGGER.info("automation.login.complete", email=email, redirected_to=self._page.url)
        return cookie

    async def load_stored_session(
        self, cookies: Iterable[SessionCookie], *, deadline: Optional[float] = None
    ) -> None:
        """Inject stored cookies and confirm the site still accepts them."""
        cookies = list(cookies)
        if not cookies:
            raise SessionError("no cookies provided", stage=STAGE_VALIDATE_SESSION)

        self._cookies = cookies
        await self.restore_session()
        try:
            await self._runner.run(session_check_steps(self._settings), deadline=deadline)
        except AutomationError as exc:
            self._authenticated = False
            self._transition(ClientState.UNAUTHENTICATED)
            raise SessionError("session validation failed", stage=STAGE_VALIDATE_SESSION) from exc

        self._mark_authenticated()
        LOGGER.info("automation.session.loaded")

    async def book_class(
        self, day: str, class_type: str, hour: str, *, deadline: Optional[float] = None
    ) -> None:
        """
        Reserve a class: calendar, next week, day tab, class card, confirmation.

        Either every stage completes or an :class:`AutomationError` names the
        stage that did not.
        """
        if not day or not class_type or not hour:
            raise ValidationError("day, class type and hour are required")
        try:
            token = day_token(day)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        if not self._authenticated:
            raise SessionError("client is not authenticated", stage=STAGE_ENSURE_AUTHENTICATED)

        LOGGER.info("automation.booking.start", day=day, class_type=class_type, hour=hour)
        settle_ms = int(self._settings.settle_seconds * 1000)
        try:
            self._transition(ClientState.NAVIGATING_TO_BOOKING_PAGE)
            await self._runner.run(open_calendar_steps(self._settings, next_week=True), deadline=deadline)
            await self._runner.run(select_day_steps(token), deadline=deadline)
            self._transition(ClientState.DAY_SELECTED)
            self._transition(ClientState.AWAITING_SLOT_OPEN)
            await self._runner.run(reserve_steps(class_type, hour), deadline=deadline)
            self._transition(ClientState.BOOKING_SUBMITTED)
            await self._runner.run(confirm_steps(settle_ms), deadline=deadline)
        except AutomationError as exc:
            self._transition(ClientState.FAILED)
            LOGGER.error(
                "automation.booking.failed",
                day=day,
                class_type=class_type,
                hour=hour,
                stage=exc.stage,
                intent=exc.intent,
            )
            raise

        self._transition(ClientState.CONFIRMED)
        LOGGER.info("automation.booking.confirmed", day=day, class_type=class_type, hour=hour)

    async def list_classes(self, day: Optional[str] = None, *, next_week: bool = False) -> List[ClassSlot]:
        """Open the calendar (optionally on one day) and parse the visible class cards."""
        if not self._authenticated:
            raise SessionError("client is not authenticated", stage=STAGE_ENSURE_AUTHENTICATED)

        steps = open_calendar_steps(self._settings, next_week=next_week)
        token = ""
        if day:
            try:
                token = day_token(day)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            steps.extend(select_day_steps(token))
        await self._runner.run(steps)

        slots = parse_class_cards(await self._page.content(), token)
        LOGGER.info("automation.classes.parsed", day=token, count=len(slots))
        return slots

    async def save_session(self) -> List[SessionCookie]:
        """Capture the browser context's cookies as the kept session."""
        raw = await self._page.context.cookies()
        self._cookies = [SessionCookie.from_playwright(item) for item in raw]
        return self.session_cookies

    async def restore_session(self) -> None:
        """Write the kept session cookies back into the browser context."""
        if not self._cookies:
            return
        try:
            await self._page.context.add_cookies(
                [cookie.to_playwright(self._settings.base_url) for cookie in self._cookies]
            )
        except PlaywrightError as exc:
            raise SessionError(f"failed to restore cookies: {exc}", stage=STAGE_VALIDATE_SESSION) from exc

    async def clear_session(self) -> None:
        """Forget the kept cookies and wipe them from the browser context."""
        self._cookies = []
        self._authenticated = False
        self._transition(ClientState.UNAUTHENTICATED)
        with suppress(PlaywrightError):
            await self._page.context.clear_cookies()

    async def close(self) -> None:
        await self._page.context.close()

    def _mark_authenticated(self) -> None:
        self._authenticated = True
        self._transition(ClientState.AUTHENTICATED)

    def _transition(self, state: ClientState) -> None:
        LOGGER.debug("automation.state", previous=self.state.value, current=state.value)
        self.state = state
        self.transitions.append(state)


class BrowserHost:
    """Owns the Playwright driver and one Chromium process; hands out isolated per-user clients."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._playwright = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "BrowserHost":
        LOGGER.info("browser.launch", headless=self._settings.headless)
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._settings.headless,
            args=[
                "--disable-dev-shm-usage",
                "--no-sandbox",
            ],
        )
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

    async def new_client(self) -> WodbusterClient:
        """Create a client with its own browser context, so cookies never leak across users."""
        if not self._browser:
            raise RuntimeError("Browser has not been launched")
        context = await self._browser.new_context()
        page = await context.new_page()
        return WodbusterClient(self._settings, page)
