"""
Process-wide service wiring.

Everything is constructed once in the entry point and handed down; nothing
here is a module-level singleton, so tests build their own ``Services``
against an in-memory database and fake providers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import Settings, config
from connectors.encryption import TokenVault
from connectors.registry import ProviderRegistry, build_registry
from connectors.token_manager import ConnectionManager
from core.identity_resolver import IdentityResolver
from core.orchestrator import SyncOrchestrator
from jobs.handlers import SyncJobs
from jobs.queue import JobQueue


@dataclass
class Services:
    settings: Settings
    session_factory: async_sessionmaker
    vault: TokenVault
    registry: ProviderRegistry
    connections: ConnectionManager
    resolver: IdentityResolver
    orchestrator: SyncOrchestrator
    queue: JobQueue
    jobs: SyncJobs


def build_services(
    session_factory: async_sessionmaker,
    queue: JobQueue,
    settings: Optional[Settings] = None,
    *,
    registry: Optional[ProviderRegistry] = None,
    vault: Optional[TokenVault] = None,
) -> Services:
    settings = settings or config
    vault = vault or TokenVault.from_hex(settings.token_encryption_key)
    registry = registry or build_registry(settings)
    connections = ConnectionManager(registry, vault, session_factory, settings)
    resolver = IdentityResolver()
    orchestrator = SyncOrchestrator(registry, connections, session_factory, resolver)
    jobs = SyncJobs(queue, connections, orchestrator, settings)
    return Services(
        settings=settings,
        session_factory=session_factory,
        vault=vault,
        registry=registry,
        connections=connections,
        resolver=resolver,
        orchestrator=orchestrator,
        queue=queue,
        jobs=jobs,
    )
