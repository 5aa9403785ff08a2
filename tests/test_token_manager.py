"""
Tests for the ConnectionManager: OAuth completion, refresh-ahead,
listing and disconnect.
"""

import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from connectors.encryption import TokenVault
from connectors.schemas import ProviderCredentials, SourceContactData
from connectors.token_manager import ConnectionManager
from core.errors import CredentialDecryptionError, NotFoundError, ProviderAPIError, UnknownProviderError
from database import repository
from database.models import Connection, ConnectionStatus, SourceContact


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _set_expiry(session_factory, connection_id, expires_at):
    async with session_factory() as session:
        row = await repository.get_connection(session, connection_id)
        await repository.update_connection_tokens(
            session, connection_id, row.access_token_encrypted, row.refresh_token_encrypted, expires_at,
        )
        await session.commit()


class _SessionTracker:
    """Wraps a session factory and counts the sessions currently open."""

    def __init__(self, factory):
        self._factory = factory
        self.open = 0

    @contextlib.asynccontextmanager
    async def __call__(self):
        self.open += 1
        try:
            async with self._factory() as session:
                yield session
        finally:
            self.open -= 1


class TestCompleteOAuth:
    @pytest.mark.asyncio
    async def test_creates_active_connection_with_encrypted_tokens(self, services, user_id, session_factory):
        info = await services.connections.complete_oauth("fake", "abc", user_id)

        assert info.provider == "fake"
        assert info.status == ConnectionStatus.ACTIVE
        async with session_factory() as session:
            row = await repository.get_connection(session, info.connection_id)
        assert row.access_token_encrypted != "access-abc"
        assert services.vault.decrypt(row.access_token_encrypted) == "access-abc"
        assert services.vault.decrypt(row.refresh_token_encrypted) == "refresh-abc"

    @pytest.mark.asyncio
    async def test_reconnect_replaces_tokens_without_duplicate(self, services, user_id, session_factory):
        first = await services.connections.complete_oauth("fake", "one", user_id)
        await services.connections.deactivate(first.connection_id)
        second = await services.connections.complete_oauth("fake", "two", user_id)

        assert second.connection_id == first.connection_id
        assert second.status == ConnectionStatus.ACTIVE
        assert await _count(session_factory, Connection) == 1
        creds = await services.connections.load(second.connection_id)
        assert creds.access_token == "access-two"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, services, user_id):
        with pytest.raises(UnknownProviderError):
            await services.connections.complete_oauth("salesforce", "abc", user_id)

    @pytest.mark.asyncio
    async def test_auth_url_carries_state(self, services, user_id):
        url = services.connections.get_auth_url("fake", user_id)
        assert url.startswith("https://fake.example/authorize?state=")


class TestEnsureFreshToken:
    @pytest.mark.asyncio
    async def test_expiring_in_two_minutes_refreshes(self, services, user_id, session_factory, fake_provider):
        info = await services.connections.complete_oauth("fake", "abc", user_id)
        await _set_expiry(session_factory, info.connection_id, datetime.now(timezone.utc) + timedelta(minutes=2))

        creds = await services.connections.load(info.connection_id)
        fresh = await services.connections.ensure_fresh_token(creds)

        assert fake_provider.refresh_calls == 1
        assert fresh.access_token == "refreshed-1"
        # provider returned no refresh token, so the old one is kept
        assert fresh.refresh_token == "refresh-abc"
        assert fresh.token_expires_at > datetime.now(timezone.utc) + timedelta(minutes=50)

        stored = await services.connections.load(info.connection_id)
        assert stored.access_token == "refreshed-1"
        assert stored.refresh_token == "refresh-abc"

    @pytest.mark.asyncio
    async def test_expiring_in_one_hour_does_not_refresh(self, services, user_id, session_factory, fake_provider):
        info = await services.connections.complete_oauth("fake", "abc", user_id)
        await _set_expiry(session_factory, info.connection_id, datetime.now(timezone.utc) + timedelta(hours=1))

        creds = await services.connections.load(info.connection_id)
        same = await services.connections.ensure_fresh_token(creds)

        assert fake_provider.refresh_calls == 0
        assert same is creds

    @pytest.mark.asyncio
    async def test_missing_expiry_never_refreshes(self, services):
        creds = _snapshot(token_expires_at=None)
        assert not services.connections.needs_refresh(creds)

    @pytest.mark.asyncio
    async def test_already_expired_refreshes(self, services):
        creds = _snapshot(token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert services.connections.needs_refresh(creds)

    @pytest.mark.asyncio
    async def test_refresh_connection_skips_inactive(self, services, user_id, fake_provider):
        info = await services.connections.complete_oauth("fake", "abc", user_id)
        await services.connections.deactivate(info.connection_id)

        assert await services.connections.refresh_connection(info.connection_id) is None
        assert fake_provider.refresh_calls == 0


def _snapshot(**overrides):
    values = dict(
        connection_id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        provider="fake",
        access_token="at",
        refresh_token="rt",
        token_expires_at=None,
    )
    values.update(overrides)
    return ProviderCredentials(**values)


class TestListAndLoad:
    @pytest.mark.asyncio
    async def test_list_is_user_scoped_and_token_free(self, services, user_id, other_user_id):
        await services.connections.complete_oauth("fake", "a", user_id)
        await services.connections.complete_oauth("other", "b", user_id)
        await services.connections.complete_oauth("fake", "c", other_user_id)

        mine = await services.connections.list(user_id)

        assert sorted(c.provider for c in mine) == ["fake", "other"]
        for info in mine:
            dumped = info.model_dump()
            assert "access_token" not in dumped
            assert "refresh_token" not in dumped

    @pytest.mark.asyncio
    async def test_load_for_other_user_is_not_found(self, services, user_id, other_user_id):
        info = await services.connections.complete_oauth("fake", "a", user_id)
        with pytest.raises(NotFoundError):
            await services.connections.load_for_user(info.connection_id, other_user_id)

    @pytest.mark.asyncio
    async def test_wrong_key_fails_closed(self, services, user_id, session_factory, registry, settings):
        info = await services.connections.complete_oauth("fake", "a", user_id)
        other = ConnectionManager(registry, TokenVault(bytes(32)), session_factory, settings)
        with pytest.raises(CredentialDecryptionError):
            await other.load(info.connection_id)

    @pytest.mark.asyncio
    async def test_credentials_repr_hides_tokens(self, services, user_id):
        info = await services.connections.complete_oauth("fake", "secret-code", user_id)
        creds = await services.connections.load(info.connection_id)
        assert "secret-code" not in repr(creds)


class TestDisconnect:
    async def _connect_with_contact(self, services, user_id, session_factory):
        info = await services.connections.complete_oauth("fake", "abc", user_id)
        async with session_factory() as session:
            await repository.upsert_source_contact(
                session,
                info.connection_id,
                SourceContactData(provider_contact_id="c1", provider="fake", email="a@example.com"),
            )
            await session.commit()
        return info

    @pytest.mark.asyncio
    async def test_delete_cascades_source_rows(self, services, user_id, session_factory, fake_provider):
        info = await self._connect_with_contact(services, user_id, session_factory)

        await services.connections.disconnect(info.connection_id, user_id)

        assert fake_provider.revoke_calls == 1
        assert await _count(session_factory, Connection) == 0
        assert await _count(session_factory, SourceContact) == 0

    @pytest.mark.asyncio
    async def test_no_session_open_during_revoke(self, services, user_id, session_factory, fake_provider):
        info = await self._connect_with_contact(services, user_id, session_factory)
        tracker = _SessionTracker(session_factory)
        manager = ConnectionManager(services.registry, services.vault, tracker, services.settings)
        open_during_revoke = []

        async def revoke(credentials):
            open_during_revoke.append(tracker.open)

        fake_provider.revoke = revoke
        await manager.disconnect(info.connection_id, user_id)

        assert open_during_revoke == [0]
        assert await _count(session_factory, Connection) == 0

    @pytest.mark.asyncio
    async def test_revoke_failure_does_not_block(self, services, user_id, session_factory, fake_provider):
        info = await self._connect_with_contact(services, user_id, session_factory)
        fake_provider.revoke_error = ProviderAPIError("fake", "token revocation", 500, "down")

        await services.connections.disconnect(info.connection_id, user_id)

        assert await _count(session_factory, Connection) == 0

    @pytest.mark.asyncio
    async def test_soft_disconnect_keeps_data(self, services, user_id, session_factory):
        info = await self._connect_with_contact(services, user_id, session_factory)

        await services.connections.disconnect(info.connection_id, user_id, soft=True)

        async with session_factory() as session:
            row = await repository.get_connection(session, info.connection_id)
        assert row.status == ConnectionStatus.INACTIVE
        assert row.access_token_encrypted is None
        assert row.refresh_token_encrypted is None
        assert await _count(session_factory, SourceContact) == 1
        assert await services.connections.load(info.connection_id) is None

    @pytest.mark.asyncio
    async def test_other_users_connection_not_found(self, services, user_id, other_user_id, session_factory):
        info = await services.connections.complete_oauth("fake", "abc", user_id)
        with pytest.raises(NotFoundError):
            await services.connections.disconnect(info.connection_id, other_user_id)
        assert await _count(session_factory, Connection) == 1


class TestSweepQueries:
    @pytest.mark.asyncio
    async def test_expiring_and_active_ids(self, services, user_id, session_factory):
        soon = await services.connections.complete_oauth("fake", "a", user_id)
        later = await services.connections.complete_oauth("other", "b", user_id)
        now = datetime.now(timezone.utc)
        await _set_expiry(session_factory, soon.connection_id, now + timedelta(minutes=5))
        await _set_expiry(session_factory, later.connection_id, now + timedelta(hours=2))

        expiring = await services.connections.expiring_connection_ids(600)
        active = await services.connections.active_connection_ids()

        assert expiring == [soon.connection_id]
        assert set(active) == {soon.connection_id, later.connection_id}
