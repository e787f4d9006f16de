"""
Retry Queue
===========

Durable retry jobs for work that failed on a transient condition:
share distribution to an unreachable trustee and reveals that could
not yet gather a threshold of shares.

Jobs live in the KeyValueStore under ``retry:{job_id}`` and survive
restarts. Delays grow exponentially from the base delay; a job that
exhausts its attempts, or fails with a non-retryable error, is kept in
the ``failed`` state for operators.

Version: 0.1.0
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from shared.config import settings
from shared.errors import EscrowError
from shared.logging import get_logger
from shared.store import KeyValueStore

logger = get_logger(__name__)

JOB_PREFIX = "retry:"


class JobType(str, Enum):
    """Kinds of retryable work."""

    DISTRIBUTE_SHARE = "distribute_share"
    REVEAL = "reveal"


class JobState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryJob(BaseModel):
    """A persisted retry job."""

    id: str
    job_type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_attempts: int
    next_run_at: float
    last_error: str | None = None
    created_at: float
    updated_at: float


JobHandler = Callable[[RetryJob], Awaitable[Any]]


class RetryQueue:
    """
    Store-backed retry queue.

    Usage:
        queue = RetryQueue(store)
        queue.register(JobType.REVEAL, handle_reveal)
        await queue.enqueue(JobType.REVEAL, {"loan_id": 1, ...}, job_id="reveal:1:0xabc")
        await queue.process_due()
    """

    def __init__(
        self,
        store: KeyValueStore,
        base_delay: float | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.base_delay = base_delay if base_delay is not None else settings.reveal.retry_base_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.reveal.retry_max_attempts
        self._clock = clock
        self._handlers: dict[JobType, JobHandler] = {}
        self._lock = asyncio.Lock()

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        """Register the coroutine that runs jobs of ``job_type``."""
        self._handlers[job_type] = handler

    def backoff(self, attempts: int) -> float:
        """Delay before the next run after ``attempts`` failed runs."""
        return self.base_delay * (2 ** max(attempts - 1, 0))

    async def _save(self, job: RetryJob) -> None:
        job.updated_at = self._clock()
        await self._store.put(f"{JOB_PREFIX}{job.id}", job.model_dump(mode="json"))

    async def get(self, job_id: str) -> RetryJob | None:
        raw = await self._store.get(f"{JOB_PREFIX}{job_id}")
        return None if raw is None else RetryJob.model_validate(raw)

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        job_id: str | None = None,
        delay: float | None = None,
    ) -> RetryJob:
        """
        Schedule a job.

        A pending job with the same ``job_id`` is returned unchanged, so
        callers may enqueue the same work repeatedly. Completed or failed
        jobs with that id are replaced by a fresh one.

        Args:
            job_type: Handler to run
            payload: JSON-serialisable handler input
            job_id: Stable id for de-duplication (random when omitted)
            delay: Seconds before first run (defaults to the base delay)
        """
        now = self._clock()
        job = RetryJob(
            id=job_id or uuid.uuid4().hex,
            job_type=job_type,
            payload=payload,
            max_attempts=self.max_attempts,
            next_run_at=now + (self.base_delay if delay is None else delay),
            created_at=now,
            updated_at=now,
        )
        key = f"{JOB_PREFIX}{job.id}"
        if not await self._store.put_if_absent(key, job.model_dump(mode="json")):
            existing = await self.get(job.id)
            if existing is not None and existing.state == JobState.PENDING:
                return existing
            await self._store.put(key, job.model_dump(mode="json"))

        logger.info("retry_job_enqueued", job_id=job.id, job_type=job_type.value, run_in=job.next_run_at - now)
        return job

    async def jobs(self, state: JobState | None = None) -> list[RetryJob]:
        result = []
        async for _, raw in self._store.scan(JOB_PREFIX):
            job = RetryJob.model_validate(raw)
            if state is None or job.state == state:
                result.append(job)
        return result

    async def status(self) -> dict[str, int]:
        """Job counts by state."""
        counts = {s.value: 0 for s in JobState}
        for job in await self.jobs():
            counts[job.state.value] += 1
        return counts

    async def _run(self, job: RetryJob) -> None:
        handler = self._handlers.get(job.job_type)
        job.attempts += 1
        if handler is None:
            job.state = JobState.FAILED
            job.last_error = f"no handler for {job.job_type.value}"
            logger.error("retry_job_unhandled", job_id=job.id, job_type=job.job_type.value)
            await self._save(job)
            return

        try:
            await handler(job)
        except EscrowError as e:
            job.last_error = e.message
            retryable = e.retryable
        except Exception as e:
            job.last_error = str(e)
            retryable = True
            logger.error(
                "retry_job_crashed",
                job_id=job.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            job.state = JobState.COMPLETED
            job.last_error = None
            logger.info("retry_job_completed", job_id=job.id, attempts=job.attempts)
            await self._save(job)
            return

        if not retryable or job.attempts >= job.max_attempts:
            job.state = JobState.FAILED
            logger.error(
                "retry_job_failed",
                job_id=job.id,
                job_type=job.job_type.value,
                attempts=job.attempts,
                error=job.last_error,
            )
        else:
            job.next_run_at = self._clock() + self.backoff(job.attempts)
            logger.warning(
                "retry_job_rescheduled",
                job_id=job.id,
                attempts=job.attempts,
                next_run_at=job.next_run_at,
                error=job.last_error,
            )
        await self._save(job)

    async def process_due(self) -> int:
        """
        Run every pending job whose time has come.

        Returns:
            Number of jobs run
        """
        async with self._lock:
            now = self._clock()
            due = [
                job
                for job in await self.jobs(JobState.PENDING)
                if job.next_run_at <= now
            ]
            for job in sorted(due, key=lambda j: j.next_run_at):
                await self._run(job)
        return len(due)

    async def run(self, interval: float = 1.0) -> None:
        """Process due jobs forever."""
        logger.info("retry_queue_started", interval=interval)
        while True:
            try:
                await self.process_due()
            except Exception as e:
                logger.error("retry_queue_round_failed", error=str(e))
            await asyncio.sleep(interval)
