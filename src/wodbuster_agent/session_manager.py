"""Per-user automation clients and the reuse-or-login decision."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional

import structlog

from .automation import AutomationClient
from .config import Settings
from .crypto import decrypt_password
from .date_window import as_utc, utcnow
from .errors import CryptoError, SessionError
from .models import SessionCookie, User
from .storage import Storage

LOGGER = structlog.get_logger(__name__)

ClientFactory = Callable[[], Awaitable[AutomationClient]]


class SessionManager:
    """
    Keeps one isolated automation client per user.

    Work for different users runs independently; work for the same user is
    serialized through a per-user lock so a client is never driven by two
    coroutines at once.
    """

    def __init__(
        self,
        storage: Storage,
        client_factory: ClientFactory,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._client_factory = client_factory
        self._settings = settings
        self._clock = clock
        self._clients: Dict[int, AutomationClient] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock_for(self, user_id: int) -> asyncio.Lock:
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def get_or_create_user_client(self, user_id: int) -> AutomationClient:
        async with self._lock_for(user_id):
            return await self._get_or_create(user_id)

    async def _get_or_create(self, user_id: int) -> AutomationClient:
        client = self._clients.get(user_id)
        if client is None:
            client = await self._client_factory()
            self._clients[user_id] = client
            LOGGER.info("session.client.created", user_id=user_id)
        return client

    async def ensure_user_session_ready(
        self, user_id: int, *, deadline: Optional[float] = None
    ) -> AutomationClient:
        """
        Return the user's client with a working session.

        A stored session that is valid and unexpired is loaded and checked; if
        that fails for any reason the rejected cookies are dropped and the
        manager falls back to a fresh login.
        Fresh login failures are raised to the caller.
        """
        async with self._lock_for(user_id):
            user = await self._storage.get_user(user_id)
            if user is None:
                raise SessionError(f"user {user_id} not found", stage="load_user")
            client = await self._get_or_create(user_id)

            if user.has_valid_session(self._clock()):
                LOGGER.info("session.reuse.start", user_id=user_id)
                try:
                    await client.load_stored_session([user.session], deadline=deadline)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning("session.reuse.failed", user_id=user_id, error=str(exc))
                    await client.clear_session()
                else:
                    LOGGER.info("session.reuse.ok", user_id=user_id)
                    return client

            await self._fresh_login(user, client, deadline)
            return client

    async def _fresh_login(self, user: User, client: AutomationClient, deadline: Optional[float]) -> None:
        try:
            password = decrypt_password(user.password, self._settings.encryption_key.get_secret_value())
        except CryptoError as exc:
            raise SessionError(
                f"failed to decrypt password for user {user.user_id}", stage="decrypt_password"
            ) from exc

        LOGGER.info("session.login.fresh", user_id=user.user_id, email=user.email)
        cookie = await client.log_in(user.email, password, deadline=deadline)
        await self._save_user_session(user, cookie)

    async def _save_user_session(self, user: User, cookie: SessionCookie) -> None:
        now = self._clock()
        expires_at = now + timedelta(hours=self._settings.session_ttl_hours)
        if cookie.expires is not None and as_utc(cookie.expires) > now:
            expires_at = as_utc(cookie.expires)

        latest = await self._storage.get_user(user.user_id) or user
        latest.update_session(cookie, expires_at, now)
        latest.is_authenticated = True
        await self._storage.save_user(latest)
        LOGGER.info("session.saved", user_id=user.user_id, expires_at=expires_at.isoformat())

    async def close_user_client(self, user_id: int) -> None:
        client = self._clients.pop(user_id, None)
        if client is None:
            return
        try:
            await client.close()
        except Exception:  # noqa: BLE001
            LOGGER.exception("session.client.close_failed", user_id=user_id)
        else:
            LOGGER.info("session.client.closed", user_id=user_id)

    async def close_all_clients(self) -> None:
        for user_id in list(self._clients):
            await self.close_user_client(user_id)

    def active_user_count(self) -> int:
        return len(self._clients)
