"""
Connection manager — OAuth callback, token refresh, listing and disconnect.

This is the single place that touches encrypted token columns.  Everything
else receives a decrypted ``ProviderCredentials`` snapshot and never writes
tokens back itself.

Refresh-ahead is check-then-act and not locked: two workers may both decide
to refresh the same connection.  The job queue's singleton key (the
connection id) keeps that from happening in practice; the connection row is
the single point where concurrent refreshes converge.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import Settings, config
from connectors.encryption import TokenVault
from connectors.registry import ProviderRegistry
from connectors.schemas import ConnectionInfo, OAuthTokens, ProviderCredentials, as_utc
from core.errors import NotFoundError
from database import repository
from database.models import Connection, ConnectionStatus

logger = logging.getLogger(__name__)


def _info(row: Connection) -> ConnectionInfo:
    return ConnectionInfo(
        connection_id=row.connection_id,
        provider=row.provider,
        status=row.status,
        token_expires_at=as_utc(row.token_expires_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class ConnectionManager:
    """Owns each user's per-provider credential record."""

    def __init__(
        self,
        registry: ProviderRegistry,
        vault: TokenVault,
        session_factory: async_sessionmaker,
        settings: Optional[Settings] = None,
    ) -> None:
        self._registry = registry
        self._vault = vault
        self._session_factory = session_factory
        settings = settings or config
        self.refresh_ahead = timedelta(seconds=settings.refresh_ahead_seconds)

    # ── OAuth ───────────────────────────────────────────────────────────

    def get_auth_url(self, provider_id: str, user_id: str | uuid.UUID) -> str:
        return self._registry.get(provider_id).get_auth_url(str(user_id))

    async def complete_oauth(
        self, provider_id: str, code: str, user_id: str | uuid.UUID
    ) -> ConnectionInfo:
        """
        Exchange ``code`` and store the tokens.

        A reconnect replaces tokens and expiry on the existing
        (user, provider) row instead of creating a second one.
        """
        provider = self._registry.get(provider_id)
        tokens = await provider.exchange_code(code)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)

        async with self._session_factory() as session:
            row = await repository.upsert_connection(
                session,
                user_id,
                provider_id,
                self._vault.encrypt(tokens.access_token),
                self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
                expires_at,
            )
            await session.commit()
            info = _info(row)

        logger.info("OAuth connected: user=%s provider=%s connection=%s", user_id, provider_id, info.connection_id)
        return info

    # ── Credentials ─────────────────────────────────────────────────────

    def _credentials(self, row: Connection) -> ProviderCredentials:
        """Decrypt a connection row.  Raises ``CredentialDecryptionError``."""
        return ProviderCredentials(
            connection_id=row.connection_id,
            user_id=row.user_id,
            provider=row.provider,
            access_token=self._vault.decrypt(row.access_token_encrypted) if row.access_token_encrypted else "",
            refresh_token=self._vault.decrypt(row.refresh_token_encrypted) if row.refresh_token_encrypted else None,
            token_expires_at=as_utc(row.token_expires_at),
        )

    async def load(self, connection_id: str | uuid.UUID) -> Optional[ProviderCredentials]:
        """Decrypted credentials for an *active* connection, or None."""
        async with self._session_factory() as session:
            row = await repository.get_connection(session, connection_id)
        if row is None or row.status != ConnectionStatus.ACTIVE:
            return None
        return self._credentials(row)

    async def load_for_user(
        self, connection_id: str | uuid.UUID, user_id: str | uuid.UUID
    ) -> ProviderCredentials:
        async with self._session_factory() as session:
            row = await repository.get_connection(session, connection_id, user_id)
        if row is None:
            raise NotFoundError("Connection not found")
        return self._credentials(row)

    # ── Refresh ─────────────────────────────────────────────────────────

    def needs_refresh(
        self, credentials: ProviderCredentials, now: Optional[datetime] = None
    ) -> bool:
        expires_at = as_utc(credentials.token_expires_at)
        if expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return expires_at <= now + self.refresh_ahead

    async def ensure_fresh_token(self, credentials: ProviderCredentials) -> ProviderCredentials:
        """Refresh if the token expires within the refresh-ahead window."""
        if not self.needs_refresh(credentials):
            return credentials
        logger.info(
            "Token for connection %s expires at %s, refreshing ahead",
            credentials.connection_id,
            credentials.token_expires_at,
        )
        return await self.refresh_credentials(credentials)

    async def refresh_credentials(self, credentials: ProviderCredentials) -> ProviderCredentials:
        provider = self._registry.get(credentials.provider)
        tokens = await provider.refresh(credentials)
        return await self._persist_refreshed(credentials, tokens)

    async def refresh_connection(self, connection_id: str | uuid.UUID) -> Optional[ProviderCredentials]:
        """Unconditional refresh of one active connection (refresh task entry point)."""
        credentials = await self.load(connection_id)
        if credentials is None:
            logger.info("Skipping refresh for connection %s: not found or inactive", connection_id)
            return None
        refreshed = await self.refresh_credentials(credentials)
        logger.info("Refreshed %s token for connection %s", credentials.provider, connection_id)
        return refreshed

    async def _persist_refreshed(
        self, current: ProviderCredentials, tokens: OAuthTokens
    ) -> ProviderCredentials:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=tokens.expires_in)
        # Some providers rotate refresh tokens, others keep the old one
        refresh_token = tokens.refresh_token or current.refresh_token

        async with self._session_factory() as session:
            await repository.update_connection_tokens(
                session,
                current.connection_id,
                self._vault.encrypt(tokens.access_token),
                self._vault.encrypt(refresh_token) if refresh_token else None,
                expires_at,
            )
            await session.commit()

        return current.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": refresh_token,
                "token_expires_at": expires_at,
            }
        )

    # ── Listing / disconnect ────────────────────────────────────────────

    async def list(self, user_id: str | uuid.UUID) -> List[ConnectionInfo]:
        """All connections for a user (no tokens exposed)."""
        async with self._session_factory() as session:
            rows = await repository.list_connections(session, user_id)
        return [_info(r) for r in rows]

    async def get(self, connection_id: str | uuid.UUID, user_id: str | uuid.UUID) -> ConnectionInfo:
        async with self._session_factory() as session:
            row = await repository.get_connection(session, connection_id, user_id)
        if row is None:
            raise NotFoundError("Connection not found")
        return _info(row)

    async def disconnect(
        self,
        connection_id: str | uuid.UUID,
        user_id: str | uuid.UUID,
        *,
        soft: bool = False,
    ) -> None:
        """
        Revoke (best effort) and remove a connection.

        ``soft=True`` keeps the row and its synced data but marks it
        inactive and drops the credentials; otherwise the row is deleted
        and its source contacts / interactions cascade with it.
        """
        async with self._session_factory() as session:
            row = await repository.get_connection(session, connection_id, user_id)
        if row is None:
            raise NotFoundError("Connection not found")

        # No transaction is held across the provider round trip
        await self._revoke_best_effort(row)

        async with self._session_factory() as session:
            if soft:
                await repository.deactivate_connection(session, row.connection_id)
            else:
                await repository.delete_connection(session, row.connection_id)
            await session.commit()

        logger.info(
            "Disconnected %s for user %s (%s)",
            row.provider,
            user_id,
            "deactivated" if soft else "deleted",
        )

    async def _revoke_best_effort(self, row: Connection) -> None:
        provider = self._registry.find(row.provider)
        if provider is None or not row.access_token_encrypted:
            return
        try:
            await provider.revoke(self._credentials(row))
        except Exception:
            logger.warning(
                "Token revocation failed for connection %s (%s); deleting anyway",
                row.connection_id,
                row.provider,
                exc_info=True,
            )

    async def deactivate(self, connection_id: str | uuid.UUID) -> None:
        async with self._session_factory() as session:
            await repository.deactivate_connection(session, connection_id)
            await session.commit()
        logger.warning("Connection %s deactivated", connection_id)

    # ── Sweep queries ───────────────────────────────────────────────────

    async def active_connection_ids(self) -> List[uuid.UUID]:
        async with self._session_factory() as session:
            return await repository.active_connection_ids(session)

    async def expiring_connection_ids(self, within_seconds: int) -> List[uuid.UUID]:
        cutoff = datetime.now(timezone.utc) + timedelta(seconds=within_seconds)
        async with self._session_factory() as session:
            return await repository.expiring_connection_ids(session, cutoff)
