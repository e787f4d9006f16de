"""
Retry Queue Tests
=================

Scheduling, backoff and terminal states of store-backed retry jobs.
"""

import pytest

from shared.errors import StateConflict, TransientNetworkError
from shared.store import InMemoryStore

from services.escrow.retry import JobState, JobType, RetryJob, RetryQueue


@pytest.fixture
def queue(store: InMemoryStore, wall_clock) -> RetryQueue:
    return RetryQueue(store, base_delay=5.0, max_attempts=3, clock=wall_clock)


class TestScheduling:
    """Tests for enqueueing jobs."""

    @pytest.mark.asyncio
    async def test_job_waits_for_base_delay(self, queue: RetryQueue, wall_clock) -> None:
        """A new job runs only once the base delay has elapsed."""
        runs: list[str] = []

        async def handler(job: RetryJob) -> None:
            runs.append(job.id)

        queue.register(JobType.REVEAL, handler)
        await queue.enqueue(JobType.REVEAL, {"loan_id": 1}, job_id="reveal:1:0xa")

        assert await queue.process_due() == 0
        wall_clock.now = 5.0
        assert await queue.process_due() == 1
        assert runs == ["reveal:1:0xa"]

        job = await queue.get("reveal:1:0xa")
        assert job.state == JobState.COMPLETED
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_pending_job_is_deduplicated(self, queue: RetryQueue, wall_clock) -> None:
        """Enqueueing the same id while pending keeps the original job."""
        first = await queue.enqueue(JobType.REVEAL, {"loan_id": 1}, job_id="reveal:1:0xa")
        wall_clock.now = 3.0
        second = await queue.enqueue(JobType.REVEAL, {"loan_id": 2}, job_id="reveal:1:0xa")

        assert second.next_run_at == first.next_run_at
        assert second.payload == {"loan_id": 1}
        assert len(await queue.jobs()) == 1

    @pytest.mark.asyncio
    async def test_finished_job_can_be_requeued(self, queue: RetryQueue, wall_clock) -> None:
        """A completed job id is replaced by a fresh pending job."""

        async def handler(job: RetryJob) -> None:
            return None

        queue.register(JobType.REVEAL, handler)
        await queue.enqueue(JobType.REVEAL, {}, job_id="reveal:1:0xa", delay=0)
        await queue.process_due()

        job = await queue.enqueue(JobType.REVEAL, {}, job_id="reveal:1:0xa", delay=0)
        assert job.state == JobState.PENDING
        assert job.attempts == 0


class TestBackoff:
    """Tests for exponential backoff and failure states."""

    def test_backoff_doubles(self, queue: RetryQueue) -> None:
        """Delay is base * 2^(attempts-1)."""
        assert [queue.backoff(n) for n in (1, 2, 3, 4)] == [5.0, 10.0, 20.0, 40.0]

    @pytest.mark.asyncio
    async def test_transient_failure_is_rescheduled(self, queue: RetryQueue, wall_clock) -> None:
        """Retryable errors push next_run_at out exponentially."""

        async def handler(job: RetryJob) -> None:
            raise TransientNetworkError("trustee unreachable")

        queue.register(JobType.DISTRIBUTE_SHARE, handler)
        await queue.enqueue(JobType.DISTRIBUTE_SHARE, {}, job_id="d", delay=0)

        await queue.process_due()
        job = await queue.get("d")
        assert job.state == JobState.PENDING
        assert job.next_run_at == 5.0
        assert job.last_error == "trustee unreachable"

        wall_clock.now = 5.0
        await queue.process_due()
        job = await queue.get("d")
        assert job.attempts == 2
        assert job.next_run_at == 15.0

    @pytest.mark.asyncio
    async def test_job_fails_after_max_attempts(self, queue: RetryQueue, wall_clock) -> None:
        """A job that keeps failing ends in the failed state."""

        async def handler(job: RetryJob) -> None:
            raise TransientNetworkError("still down")

        queue.register(JobType.DISTRIBUTE_SHARE, handler)
        await queue.enqueue(JobType.DISTRIBUTE_SHARE, {}, job_id="d", delay=0)

        for _ in range(3):
            wall_clock.now += 100
            await queue.process_due()

        job = await queue.get("d")
        assert job.state == JobState.FAILED
        assert job.attempts == 3

        wall_clock.now += 100
        assert await queue.process_due() == 0

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, queue: RetryQueue) -> None:
        """Errors that are not retryable are not rescheduled."""

        async def handler(job: RetryJob) -> None:
            raise StateConflict("application repaid")

        queue.register(JobType.REVEAL, handler)
        await queue.enqueue(JobType.REVEAL, {}, job_id="r", delay=0)
        await queue.process_due()

        job = await queue.get("r")
        assert job.state == JobState.FAILED
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_retried(self, queue: RetryQueue) -> None:
        """Unknown exceptions are treated as transient."""

        async def handler(job: RetryJob) -> None:
            raise RuntimeError("boom")

        queue.register(JobType.REVEAL, handler)
        await queue.enqueue(JobType.REVEAL, {}, job_id="r", delay=0)
        await queue.process_due()

        job = await queue.get("r")
        assert job.state == JobState.PENDING
        assert job.last_error == "boom"

    @pytest.mark.asyncio
    async def test_missing_handler_fails_job(self, queue: RetryQueue) -> None:
        """A job type without a handler is failed, not retried."""
        await queue.enqueue(JobType.REVEAL, {}, job_id="r", delay=0)
        await queue.process_due()

        assert (await queue.get("r")).state == JobState.FAILED
        assert await queue.status() == {"pending": 0, "completed": 0, "failed": 1}
