"""
Sync orchestrator — pulls one connection's data and feeds the resolver.

Per connection run:

1. stream normalized contacts from the adapter
2. upsert each SourceContact and resolve it, in one transaction per contact
3. once every contact is in, stream and upsert interactions

A provider failure mid-stream propagates to the caller (the job runner);
rows written before the failure stay, and a retry overwrites them.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from connectors.registry import ProviderRegistry
from connectors.schemas import ProviderCredentials
from connectors.token_manager import ConnectionManager
from core.identity_resolver import IdentityResolver, Resolution, ResolutionOutcome
from database import repository

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    connection_id: uuid.UUID
    provider: str
    contacts: int = 0
    created: int = 0
    matched_by_identity: int = 0
    matched_by_email: int = 0
    stale_skipped: int = 0
    interactions: int = 0

    def record(self, resolution: Resolution) -> None:
        self.contacts += 1
        if resolution.outcome == ResolutionOutcome.CREATED:
            self.created += 1
        elif resolution.outcome == ResolutionOutcome.MATCHED_EMAIL:
            self.matched_by_email += 1
        else:
            self.matched_by_identity += 1
        if not resolution.applied:
            self.stale_skipped += 1

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["connection_id"] = str(self.connection_id)
        return data


class SyncOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        connections: ConnectionManager,
        session_factory: async_sessionmaker,
        resolver: Optional[IdentityResolver] = None,
    ) -> None:
        self._registry = registry
        self._connections = connections
        self._session_factory = session_factory
        self._resolver = resolver or IdentityResolver()

    async def run(self, connection_id: str | uuid.UUID) -> Optional[SyncStats]:
        """
        Task entry point: load, refresh ahead of expiry, sync.

        Returns None when the connection no longer exists or is inactive.
        """
        credentials = await self._connections.load(connection_id)
        if credentials is None:
            logger.info("Skipping sync for connection %s: not found or inactive", connection_id)
            return None
        credentials = await self._connections.ensure_fresh_token(credentials)
        return await self.sync_connection(credentials)

    async def sync_connection(self, credentials: ProviderCredentials) -> SyncStats:
        provider = self._registry.get(credentials.provider)
        stats = SyncStats(connection_id=credentials.connection_id, provider=provider.provider_name)
        t0 = time.perf_counter()

        # ── contacts ────────────────────────────────────────────────────
        async for raw in provider.fetch_contacts(credentials):
            contact = provider.normalize_contact(raw)
            async with self._session_factory() as session:
                await repository.upsert_source_contact(session, credentials.connection_id, contact)
                resolution = await self._resolver.resolve(session, credentials.user_id, contact)
                await session.commit()
            stats.record(resolution)

        # ── interactions ────────────────────────────────────────────────
        async for raw in provider.fetch_interactions(credentials):
            interaction = provider.normalize_interaction(raw)
            async with self._session_factory() as session:
                await repository.upsert_source_interaction(session, credentials.connection_id, interaction)
                await session.commit()
            stats.interactions += 1

        logger.info(
            "Synced %s connection %s in %.2fs: %d contacts (%d new, %d by id, %d by email, %d stale), %d interactions",
            stats.provider,
            stats.connection_id,
            time.perf_counter() - t0,
            stats.contacts,
            stats.created,
            stats.matched_by_identity,
            stats.matched_by_email,
            stats.stale_skipped,
            stats.interactions,
        )
        return stats
