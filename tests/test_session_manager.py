import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from playwright.async_api import Error as PlaywrightError

from wodbuster_agent.automation import CALENDAR_SELECTOR, WodbusterClient
from wodbuster_agent.errors import SessionError
from wodbuster_agent.models import SessionCookie
from wodbuster_agent.session_manager import SessionManager

from .conftest import ClientFactory, FakeClient, FakePage, make_user

NOW = datetime(2024, 5, 4, 11, 55, tzinfo=timezone.utc)


def _manager(storage, settings, factory) -> SessionManager:
    return SessionManager(storage, factory, settings, clock=lambda: NOW)


class TestEnsureUserSessionReady:
    @pytest.mark.asyncio
    async def test_valid_stored_session_skips_login(self, storage, settings):
        await storage.save_user(make_user(100, session_value="stored", expires_at=NOW + timedelta(hours=3)))
        client = FakeClient()
        manager = _manager(storage, settings, ClientFactory(client))

        returned = await manager.ensure_user_session_ready(100)

        assert returned is client
        assert client.login_calls == []
        assert [c.value for c in client.load_calls[0]] == ["stored"]

    @pytest.mark.asyncio
    async def test_expired_session_logs_in_once_and_persists(self, storage, settings):
        await storage.save_user(make_user(100, session_value="old", expires_at=NOW - timedelta(minutes=1)))
        client = FakeClient()
        manager = _manager(storage, settings, ClientFactory(client))

        await manager.ensure_user_session_ready(100)

        assert client.load_calls == []
        assert client.login_calls == [("user100@example.com", "secret-pass")]
        user = await storage.get_user(100)
        assert user.session.value == "fresh-token"
        assert user.session_valid
        assert user.session_expires_at == NOW + timedelta(hours=settings.session_ttl_hours)
        assert user.last_login_time == NOW

    @pytest.mark.asyncio
    async def test_user_without_session_logs_in(self, storage, settings):
        await storage.save_user(make_user(100))
        client = FakeClient()
        manager = _manager(storage, settings, ClientFactory(client))

        await manager.ensure_user_session_ready(100)

        assert len(client.login_calls) == 1

    @pytest.mark.asyncio
    async def test_invalidated_session_logs_in(self, storage, settings):
        await storage.save_user(make_user(100, session_value="stored", session_valid=False))
        client = FakeClient()
        manager = _manager(storage, settings, ClientFactory(client))

        await manager.ensure_user_session_ready(100)

        assert client.load_calls == []
        assert len(client.login_calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_stored_session_falls_back_to_login(self, storage, settings):
        await storage.save_user(make_user(100, session_value="stored", expires_at=NOW + timedelta(hours=3)))
        client = FakeClient(load_error=SessionError("session validation failed", stage="validate_session"))
        manager = _manager(storage, settings, ClientFactory(client))

        await manager.ensure_user_session_ready(100)

        assert len(client.load_calls) == 1
        assert client.cleared == 1
        assert len(client.login_calls) == 1
        assert (await storage.get_user(100)).session.value == "fresh-token"

    @pytest.mark.asyncio
    async def test_cookie_expiry_wins_when_in_the_future(self, storage, settings):
        await storage.save_user(make_user(100))
        expires = NOW + timedelta(days=30)
        client = FakeClient(cookie=SessionCookie(name=".WBAuth", value="long", expires=expires))
        manager = _manager(storage, settings, ClientFactory(client))

        await manager.ensure_user_session_ready(100)

        assert (await storage.get_user(100)).session_expires_at == expires

    @pytest.mark.asyncio
    async def test_login_failure_propagates_without_writing(self, storage, settings, rejected_login):
        await storage.save_user(make_user(100))
        manager = _manager(storage, settings, ClientFactory(FakeClient(login_error=rejected_login)))

        with pytest.raises(SessionError) as excinfo:
            await manager.ensure_user_session_ready(100)

        assert excinfo.value.stage == "submit_credentials"
        assert (await storage.get_user(100)).session is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, storage, settings):
        manager = _manager(storage, settings, ClientFactory())
        with pytest.raises(SessionError, match="not found"):
            await manager.ensure_user_session_ready(404)

    @pytest.mark.asyncio
    async def test_undecryptable_password(self, storage, settings):
        user = make_user(100)
        user.password = "Zm9vYmFyYmF6cXV4Zm9vYmFyYmF6cXV4"
        await storage.save_user(user)
        client = FakeClient()
        manager = _manager(storage, settings, ClientFactory(client))

        with pytest.raises(SessionError) as excinfo:
            await manager.ensure_user_session_ready(100)

        assert excinfo.value.stage == "decrypt_password"
        assert client.login_calls == []


class TestClientLifecycle:
    @pytest.mark.asyncio
    async def test_one_client_per_user(self, storage, settings):
        factory = ClientFactory()
        manager = _manager(storage, settings, factory)

        first, again, other = await asyncio.gather(
            manager.get_or_create_user_client(100),
            manager.get_or_create_user_client(100),
            manager.get_or_create_user_client(101),
        )

        assert first is again
        assert first is not other
        assert len(factory.created) == 2
        assert manager.active_user_count() == 2

    @pytest.mark.asyncio
    async def test_close_user_client(self, storage, settings):
        factory = ClientFactory()
        manager = _manager(storage, settings, factory)
        client = await manager.get_or_create_user_client(100)

        await manager.close_user_client(100)
        await manager.close_user_client(100)

        assert client.closed == 1
        assert manager.active_user_count() == 0

    @pytest.mark.asyncio
    async def test_close_all_clients_survives_close_errors(self, storage, settings):
        broken = FakeClient()

        async def explode():
            raise RuntimeError("context already closed")

        broken.close = explode
        healthy = FakeClient()
        manager = _manager(storage, settings, ClientFactory(broken, healthy))
        await manager.get_or_create_user_client(100)
        await manager.get_or_create_user_client(101)

        await manager.close_all_clients()

        assert healthy.closed == 1
        assert manager.active_user_count() == 0


class TestFallbackWithBrowserClient:
    @pytest.mark.asyncio
    async def test_unrestorable_cookies_fall_back_to_fresh_login(self, storage, settings):
        await storage.save_user(make_user(100, session_value="stored", expires_at=NOW + timedelta(hours=3)))
        page = FakePage()
        page.context.add_error = PlaywrightError("Invalid cookie fields")

        async def factory():
            return WodbusterClient(settings, page)

        manager = _manager(storage, settings, factory)

        client = await manager.ensure_user_session_ready(100)

        assert client.is_authenticated
        assert len(page.calls_of("fill")) == 2
        assert page.context.cleared == 1
        assert (await storage.get_user(100)).session.value == "auth-token"

    @pytest.mark.asyncio
    async def test_rejected_session_is_checked_only_once(self, storage, settings):
        await storage.save_user(make_user(100, session_value="stale", expires_at=NOW + timedelta(hours=3)))
        page = FakePage(missing={CALENDAR_SELECTOR})

        async def factory():
            return WodbusterClient(settings, page)

        manager = _manager(storage, settings, factory)

        client = await manager.ensure_user_session_ready(100)

        calendar_waits = [call for call in page.calls_of("wait") if call[1] == CALENDAR_SELECTOR]
        assert len(calendar_waits) == 1
        assert client.is_authenticated
        assert (await storage.get_user(100)).session.value == "auth-token"
