"""
Background job port.

The engine only needs four things from a job queue: declare a task type
with its retry / expiry policy, attach a handler, enqueue with an optional
singleton key, and run something on an interval.  ``JobQueue`` is that
contract; a durable at-least-once queue implements it in production.

``LocalJobQueue`` is the in-process implementation.  With
``background=True`` (the app) ``enqueue`` hands the job to its own task and
returns at once; retries and their backoff sleeps happen there, never in the
caller.  With the default ``background=False`` (tests) ``enqueue`` awaits
the handler inline so the business logic is observable without a worker.
Interval schedules run on APScheduler.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.errors import SyncEngineError

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]


@dataclass(frozen=True)
class TaskPolicy:
    retry_limit: int = 0
    retry_delay_seconds: float = 0.0
    retry_backoff: bool = False
    expire_seconds: Optional[float] = None

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.retry_backoff:
            return self.retry_delay_seconds * (2 ** (attempt - 1))
        return self.retry_delay_seconds


class JobStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class JobRecord:
    job_id: str
    task_type: str
    payload: Dict[str, Any]
    singleton_key: Optional[str] = None
    status: str = JobStatus.QUEUED
    attempts: int = 0
    result: Any = None
    error: Optional[str] = None


class JobQueue(Protocol):
    async def create_queue(self, task_type: str, policy: TaskPolicy) -> None:
        ...

    def on_task(self, task_type: str, handler: Handler) -> None:
        ...

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        singleton_key: Optional[str] = None,
    ) -> Optional[str]:
        """Return the job id, or None when a job with the same key is in flight."""
        ...

    def schedule(
        self, task_type: str, every_seconds: float, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        ...


@dataclass
class _Schedule:
    task_type: str
    every_seconds: float
    payload: Dict[str, Any] = field(default_factory=dict)


class LocalJobQueue:
    """
    In-process ``JobQueue``.

    Singleton keys are global across task types and held from enqueue until
    the job settles: while a job holding key ``k`` is queued, running or
    waiting for a retry, any other enqueue with ``k`` is skipped.  Handler
    failures are logged and recorded in ``history``; they are not raised
    back to the enqueuer, the same as with a real broker.
    """

    def __init__(
        self,
        *,
        retries: bool = False,
        background: bool = False,
        concurrency: int = 4,
    ) -> None:
        self.retries = retries
        self.background = background
        self.history: List[JobRecord] = []
        self._policies: Dict[str, TaskPolicy] = {}
        self._handlers: Dict[str, Handler] = {}
        self._schedules: List[_Schedule] = []
        self._held_keys: Set[str] = set()
        self._inflight: Set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(concurrency)
        self._scheduler = AsyncIOScheduler()

    # ── registration ────────────────────────────────────────────────────

    async def create_queue(self, task_type: str, policy: TaskPolicy) -> None:
        self._policies[task_type] = policy

    def on_task(self, task_type: str, handler: Handler) -> None:
        self._handlers[task_type] = handler

    def schedule(
        self, task_type: str, every_seconds: float, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        self._schedules.append(_Schedule(task_type, every_seconds, dict(payload or {})))

    # ── dispatch ────────────────────────────────────────────────────────

    async def enqueue(
        self,
        task_type: str,
        payload: Dict[str, Any],
        singleton_key: Optional[str] = None,
    ) -> Optional[str]:
        handler = self._handlers.get(task_type)
        if handler is None:
            raise ValueError(f"No handler registered for task type '{task_type}'")

        record = JobRecord(
            job_id=str(uuid.uuid4()),
            task_type=task_type,
            payload=dict(payload),
            singleton_key=singleton_key,
        )
        self.history.append(record)

        if singleton_key is not None:
            if singleton_key in self._held_keys:
                record.status = JobStatus.SKIPPED
                logger.info("Skipped %s: singleton key %s already in flight", task_type, singleton_key)
                return None
            self._held_keys.add(singleton_key)

        if self.background:
            task = asyncio.create_task(self._dispatch(record, handler))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        else:
            await self._dispatch(record, handler)
        return record.job_id

    async def _dispatch(self, record: JobRecord, handler: Handler) -> None:
        try:
            await self._execute(record, handler)
        finally:
            if record.singleton_key is not None:
                self._held_keys.discard(record.singleton_key)

    async def _execute(self, record: JobRecord, handler: Handler) -> None:
        policy = self._policies.get(record.task_type, TaskPolicy())
        max_attempts = 1 + (policy.retry_limit if self.retries else 0)
        # Inline jobs may enqueue (and so await) further inline jobs
        slot = self._slots if self.background else contextlib.nullcontext()

        while True:
            record.attempts += 1
            async with slot:
                record.status = JobStatus.RUNNING
                retryable = await self._attempt(record, handler, policy)
            if record.status == JobStatus.COMPLETED:
                return

            if not retryable or record.attempts >= max_attempts:
                record.status = JobStatus.FAILED
                logger.warning(
                    "Job %s (%s) failed after %d attempt(s)",
                    record.job_id,
                    record.task_type,
                    record.attempts,
                )
                return
            record.status = JobStatus.QUEUED
            await asyncio.sleep(policy.delay_for(record.attempts))

    async def _attempt(self, record: JobRecord, handler: Handler, policy: TaskPolicy) -> bool:
        """Run one attempt.  Returns whether a failure may be retried."""
        try:
            record.result = await asyncio.wait_for(
                handler(record.payload), timeout=policy.expire_seconds
            )
        except asyncio.TimeoutError:
            record.error = f"expired after {policy.expire_seconds}s"
            logger.error("Job %s (%s) %s", record.job_id, record.task_type, record.error)
            return True
        except Exception as exc:
            record.error = str(exc) or exc.__class__.__name__
            logger.error(
                "Job %s (%s) attempt %d failed: %s",
                record.job_id,
                record.task_type,
                record.attempts,
                record.error,
                exc_info=True,
            )
            return not isinstance(exc, SyncEngineError) or exc.retryable

        record.status = JobStatus.COMPLETED
        record.error = None
        return False

    async def drain(self) -> None:
        """Wait until every background job has settled."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ── schedules ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Register every interval schedule with APScheduler and start it."""
        for sched in self._schedules:
            self._scheduler.add_job(
                self.enqueue,
                trigger=IntervalTrigger(seconds=sched.every_seconds),
                args=[sched.task_type, sched.payload],
                kwargs={"singleton_key": sched.task_type},
                id=f"schedule:{sched.task_type}",
                name=f"Enqueue {sched.task_type}",
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
        if not self._scheduler.running:
            self._scheduler.start()
        logger.info("Local job queue started with %d schedule(s)", len(self._schedules))

    async def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        for task in list(self._inflight):
            task.cancel()
        await asyncio.gather(*list(self._inflight), return_exceptions=True)
        self._inflight.clear()
        logger.info("Local job queue stopped")

    def jobs(self, task_type: Optional[str] = None) -> List[JobRecord]:
        if task_type is None:
            return list(self.history)
        return [r for r in self.history if r.task_type == task_type]
