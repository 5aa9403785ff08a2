"""
Task handlers for connection sync and token refresh.

The two sweeps only read and enqueue; the real work happens in the
per-connection tasks, each enqueued with the connection id as its
singleton key.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from config.settings import Settings, config
from connectors.token_manager import ConnectionManager
from core.errors import CredentialDecryptionError
from core.orchestrator import SyncOrchestrator
from jobs.queue import JobQueue

logger = logging.getLogger(__name__)

TASK_CONNECTION_SYNC = "connection-sync"
TASK_TOKEN_REFRESH = "token-refresh"
TASK_TOKEN_REFRESH_SWEEP = "token-refresh-sweep"
TASK_SYNC_SCHEDULER = "connection-sync-scheduler"


class SyncJobs:
    def __init__(
        self,
        queue: JobQueue,
        connections: ConnectionManager,
        orchestrator: SyncOrchestrator,
        settings: Optional[Settings] = None,
    ) -> None:
        self._queue = queue
        self._connections = connections
        self._orchestrator = orchestrator
        self._settings = settings or config

    async def enqueue_sync(self, connection_id: str) -> Optional[str]:
        return await self._queue.enqueue(
            TASK_CONNECTION_SYNC,
            {"connection_id": str(connection_id)},
            singleton_key=str(connection_id),
        )

    # ── per-connection tasks ────────────────────────────────────────────

    async def connection_sync(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        connection_id = payload["connection_id"]
        try:
            stats = await self._orchestrator.run(connection_id)
        except CredentialDecryptionError:
            logger.error("Credentials for connection %s cannot be decrypted; deactivating", connection_id)
            await self._connections.deactivate(connection_id)
            raise
        return stats.as_dict() if stats else None

    async def token_refresh(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        connection_id = payload["connection_id"]
        try:
            refreshed = await self._connections.refresh_connection(connection_id)
        except CredentialDecryptionError:
            logger.error("Credentials for connection %s cannot be decrypted; deactivating", connection_id)
            await self._connections.deactivate(connection_id)
            raise
        return {"connection_id": connection_id, "refreshed": refreshed is not None}

    # ── sweeps ──────────────────────────────────────────────────────────

    async def token_refresh_sweep(self, payload: Dict[str, Any]) -> Dict[str, int]:
        """Enqueue a refresh for every active token expiring within the sweep window."""
        window = self._settings.refresh_sweep_window_seconds
        connection_ids = await self._connections.expiring_connection_ids(window)
        logger.info("Token refresh sweep: %d connection(s) expiring within %ds", len(connection_ids), window)

        enqueued = 0
        for connection_id in connection_ids:
            try:
                job_id = await self._queue.enqueue(
                    TASK_TOKEN_REFRESH,
                    {"connection_id": str(connection_id)},
                    singleton_key=str(connection_id),
                )
            except Exception:
                logger.exception("Token refresh sweep: could not enqueue connection %s", connection_id)
                continue
            if job_id is not None:
                enqueued += 1
        return {"expiring": len(connection_ids), "enqueued": enqueued}

    async def sync_scheduler(self, payload: Dict[str, Any]) -> Dict[str, int]:
        """Enqueue a sync for every active connection."""
        connection_ids = await self._connections.active_connection_ids()
        logger.info("Scheduler: enqueuing sync for %d active connection(s)", len(connection_ids))

        enqueued = 0
        for connection_id in connection_ids:
            if await self.enqueue_sync(str(connection_id)) is not None:
                enqueued += 1
        return {"active": len(connection_ids), "enqueued": enqueued}
