"""Queue declarations, handler wiring and periodic schedules."""

from __future__ import annotations

import logging
from typing import Optional

from config.settings import Settings, config
from jobs.handlers import (
    TASK_CONNECTION_SYNC,
    TASK_SYNC_SCHEDULER,
    TASK_TOKEN_REFRESH,
    TASK_TOKEN_REFRESH_SWEEP,
    SyncJobs,
)
from jobs.queue import JobQueue, TaskPolicy

logger = logging.getLogger(__name__)

SYNC_POLICY = TaskPolicy(retry_limit=3, retry_delay_seconds=30, retry_backoff=True, expire_seconds=30 * 60)
REFRESH_POLICY = TaskPolicy(retry_limit=2, retry_delay_seconds=60, retry_backoff=True, expire_seconds=5 * 60)
SWEEP_POLICY = TaskPolicy(retry_limit=1, expire_seconds=5 * 60)


async def register_jobs(
    queue: JobQueue,
    jobs: SyncJobs,
    settings: Optional[Settings] = None,
) -> None:
    settings = settings or config

    await queue.create_queue(TASK_CONNECTION_SYNC, SYNC_POLICY)
    await queue.create_queue(TASK_TOKEN_REFRESH, REFRESH_POLICY)
    await queue.create_queue(TASK_TOKEN_REFRESH_SWEEP, SWEEP_POLICY)
    await queue.create_queue(TASK_SYNC_SCHEDULER, SWEEP_POLICY)

    queue.on_task(TASK_CONNECTION_SYNC, jobs.connection_sync)
    queue.on_task(TASK_TOKEN_REFRESH, jobs.token_refresh)
    queue.on_task(TASK_TOKEN_REFRESH_SWEEP, jobs.token_refresh_sweep)
    queue.on_task(TASK_SYNC_SCHEDULER, jobs.sync_scheduler)

    queue.schedule(TASK_TOKEN_REFRESH_SWEEP, settings.refresh_sweep_interval_seconds)
    queue.schedule(TASK_SYNC_SCHEDULER, settings.sync_interval_seconds)

    logger.info("Job queues registered and schedules set")
