"""
Event Watcher Tests
===================

Polling position, default sweeps and notice dispatch.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from shared.blockchain import ApplicationStatus, LedgerEventType, LoanState, MockLedgerClient
from shared.store import InMemoryStore

from services.escrow.retry import JobState, JobType, RetryQueue
from services.escrow.reveal import DefaultNotice, reveal_job_id
from services.escrow.watcher import EventWatcher
from tests.conftest import LENDER, FakeWallClock, ManualClock


async def approved_loan(ledger: MockLedgerClient, commitment: str = "0xact1", period: int = 600) -> int:
    loan = await ledger.create_offer(LENDER, 1000, 2, 500, period, 500)
    await ledger.register_proof(f"0xproof-{commitment}", commitment, 750)
    await ledger.apply_for_loan(loan.id, commitment, f"0xproof-{commitment}", 750)
    await ledger.approve_application(loan.id, commitment, caller=LENDER)
    return loan.id


@pytest.fixture
def notices() -> "asyncio.Queue[DefaultNotice]":
    return asyncio.Queue()


@pytest.fixture
def watcher(ledger: MockLedgerClient, store: InMemoryStore, notices) -> EventWatcher:
    return EventWatcher(ledger, store, notices, poll_interval=0.01, position_key="watcher:test")


class TestPosition:
    """Tests for the stored block position."""

    @pytest.mark.asyncio
    async def test_position_starts_at_zero(self, watcher: EventWatcher) -> None:
        """No stored position means every event is read."""
        assert await watcher.get_position() == 0

    @pytest.mark.asyncio
    async def test_round_advances_to_head(self, watcher: EventWatcher, ledger: MockLedgerClient) -> None:
        """A completed round stores the head block."""
        await approved_loan(ledger)

        dispatched = await watcher.poll_once()
        assert dispatched == 3
        assert await watcher.get_position() == await ledger.get_head()

        assert await watcher.poll_once() == 0

    @pytest.mark.asyncio
    async def test_failed_round_keeps_position(self, watcher: EventWatcher, ledger: MockLedgerClient) -> None:
        """An error mid-round leaves the position where it was."""
        await approved_loan(ledger)
        watcher.on(LedgerEventType.APPLICATION_SUBMITTED, AsyncMock(side_effect=RuntimeError("handler down")))

        with pytest.raises(RuntimeError):
            await watcher.poll_once()
        assert await watcher.get_position() == 0


class TestDefaults:
    """Tests for default detection and enforcement."""

    @pytest.mark.asyncio
    async def test_default_event_puts_notice_on_queue(
        self, watcher: EventWatcher, ledger: MockLedgerClient, clock: ManualClock, notices
    ) -> None:
        """A LoanDefaulted event becomes a DefaultNotice."""
        loan_id = await approved_loan(ledger)
        clock.advance(601)
        await ledger.check_and_trigger_default(loan_id, "0xact1")

        await watcher.poll_once()

        notice = notices.get_nowait()
        assert notice.loan_id == loan_id
        assert notice.activity_commitment == "0xact1"
        assert notices.empty()

    @pytest.mark.asyncio
    async def test_sweep_triggers_overdue_defaults(
        self, watcher: EventWatcher, ledger: MockLedgerClient, clock: ManualClock, notices
    ) -> None:
        """Approved applications past their deadline are defaulted by the sweep."""
        loan_id = await approved_loan(ledger)

        await watcher.poll_once()
        assert notices.empty()

        clock.advance(600)
        assert await watcher.sweep_overdue() == 0

        clock.advance(1)
        await watcher.poll_once()

        application = await ledger.get_application(loan_id, "0xact1")
        assert application.status == ApplicationStatus.DEFAULTED
        assert (await notices.get()).loan_id == loan_id

    @pytest.mark.asyncio
    async def test_sweep_can_be_disabled(
        self, ledger: MockLedgerClient, store: InMemoryStore, clock: ManualClock, notices
    ) -> None:
        """With enforcement off the watcher only observes."""
        watcher = EventWatcher(ledger, store, notices, position_key="watcher:test", enforce_defaults=False)
        loan_id = await approved_loan(ledger)
        clock.advance(10_000)

        await watcher.poll_once()

        assert (await ledger.get_application(loan_id, "0xact1")).status == ApplicationStatus.APPROVED
        assert notices.empty()

    @pytest.mark.asyncio
    async def test_repaid_application_is_not_swept(
        self, watcher: EventWatcher, ledger: MockLedgerClient, clock: ManualClock, notices
    ) -> None:
        """Repayment before the deadline keeps the application out of the sweep."""
        loan_id = await approved_loan(ledger)
        await ledger.repay(loan_id, "0xact1")
        clock.advance(10_000)

        assert await watcher.sweep_overdue() == 0
        await watcher.poll_once()
        assert notices.empty()


    @pytest.mark.asyncio
    async def test_sweep_reaches_later_slots_of_defaulted_loan(
        self, watcher: EventWatcher, ledger: MockLedgerClient, clock: ManualClock, notices
    ) -> None:
        """A second borrower on an already Defaulted loan is still swept when due."""
        loan = await ledger.create_offer(LENDER, 1000, 2, 500, 600, 500)
        for commitment in ("0xearly", "0xlate"):
            await ledger.register_proof(f"0xproof-{commitment}", commitment, 750)
            await ledger.apply_for_loan(loan.id, commitment, f"0xproof-{commitment}", 750)
        await ledger.approve_application(loan.id, "0xearly", caller=LENDER)
        clock.set(1100)
        await ledger.approve_application(loan.id, "0xlate", caller=LENDER)

        clock.set(1601)
        await watcher.poll_once()
        assert (await ledger.get_loan(loan.id)).state == LoanState.DEFAULTED
        assert (await ledger.get_application(loan.id, "0xlate")).status == ApplicationStatus.APPROVED

        clock.set(1800)
        await watcher.poll_once()

        late = await ledger.get_application(loan.id, "0xlate")
        assert late.status == ApplicationStatus.DEFAULTED
        assert late.defaulted_at == 1800
        detected = [notices.get_nowait().activity_commitment for _ in range(notices.qsize())]
        assert detected == ["0xearly", "0xlate"]


class TestDurableReveal:
    """Tests for reveal jobs written before the position advances."""

    @pytest.mark.asyncio
    async def test_default_writes_reveal_job(
        self, ledger: MockLedgerClient, store: InMemoryStore, clock: ManualClock, notices
    ) -> None:
        """A detected default leaves a due reveal job in the store."""
        retry_queue = RetryQueue(store, base_delay=5.0, clock=FakeWallClock(50.0))
        watcher = EventWatcher(ledger, store, notices, position_key="watcher:test", retry_queue=retry_queue)
        loan_id = await approved_loan(ledger)
        clock.advance(601)

        await watcher.poll_once()

        job = await retry_queue.get(reveal_job_id(loan_id, "0xact1"))
        assert job is not None
        assert job.job_type == JobType.REVEAL
        assert job.state == JobState.PENDING
        assert job.next_run_at == 50.0
        assert job.payload == {"loan_id": loan_id, "activity_commitment": "0xact1"}
        assert await watcher.get_position() == await ledger.get_head()

    @pytest.mark.asyncio
    async def test_failed_job_write_keeps_position(
        self, ledger: MockLedgerClient, store: InMemoryStore, clock: ManualClock, notices
    ) -> None:
        """If the reveal job cannot be written the round is replayed later."""
        retry_queue = RetryQueue(store)
        watcher = EventWatcher(ledger, store, notices, position_key="watcher:test", retry_queue=retry_queue)
        await approved_loan(ledger)
        clock.advance(601)

        with patch.object(retry_queue, "enqueue", AsyncMock(side_effect=RuntimeError("store down"))):
            with pytest.raises(RuntimeError):
                await watcher.poll_once()

        assert await watcher.get_position() == 0
        assert notices.empty()


class TestIdentityRevealed:
    """Tests for IdentityRevealed handling."""

    @pytest.mark.asyncio
    async def test_reveal_without_local_record_is_flagged(
        self, watcher: EventWatcher, ledger: MockLedgerClient, clock: ManualClock
    ) -> None:
        """A ledger reveal with no Reveal Record in this store logs a warning."""
        loan_id = await approved_loan(ledger)
        clock.advance(601)
        await ledger.check_and_trigger_default(loan_id, "0xact1")
        await ledger.record_reveal(loan_id, "0xact1", LENDER)

        with patch("services.escrow.watcher.logger") as logger:
            await watcher.poll_once()

        logger.info.assert_any_call(
            "identity_reveal_recorded",
            loan_id=loan_id,
            activity_commitment="0xact1",
            lender=LENDER,
            block=await ledger.get_head(),
        )
        logger.warning.assert_called_once_with(
            "identity_revealed_without_local_record",
            loan_id=loan_id,
            activity_commitment="0xact1",
        )

    @pytest.mark.asyncio
    async def test_reveal_with_local_record_is_quiet(
        self, watcher: EventWatcher, ledger: MockLedgerClient, store: InMemoryStore, clock: ManualClock
    ) -> None:
        """A ledger reveal matching a local Reveal Record raises no warning."""
        loan_id = await approved_loan(ledger)
        clock.advance(601)
        await ledger.check_and_trigger_default(loan_id, "0xact1")
        await store.put(f"reveal:{loan_id}:0xact1", {"revealed_to": LENDER})
        await ledger.record_reveal(loan_id, "0xact1", LENDER)

        with patch("services.escrow.watcher.logger") as logger:
            await watcher.poll_once()

        logger.warning.assert_not_called()


class TestRunLoop:
    """Tests for the background loop."""

    @pytest.mark.asyncio
    async def test_loop_survives_failed_round(self, watcher: EventWatcher, ledger: MockLedgerClient) -> None:
        """A failing round is logged and the next tick runs again."""
        await approved_loan(ledger)
        calls = 0
        real_poll = watcher.poll_once

        async def flaky_poll() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("ledger unavailable")
            return await real_poll()

        with patch.object(watcher, "poll_once", side_effect=flaky_poll):
            watcher.start()
            for _ in range(100):
                if await watcher.get_position() > 0:
                    break
                await asyncio.sleep(0.01)
            await watcher.stop()

        assert calls >= 2
        assert await watcher.get_position() == await ledger.get_head()
