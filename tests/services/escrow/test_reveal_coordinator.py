"""
Reveal Coordinator Tests
========================

Exactly-once identity reveal after a default.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, patch

import pytest

from shared.blockchain import LedgerEventType
from shared.errors import StateConflict, TransientNetworkError

from services.escrow.retry import JobState
from services.escrow.reveal import DefaultNotice, RevealStatus
from services.escrow.runtime import EscrowServices
from tests.conftest import (
    BORROWER_COMMITMENT,
    IDENTITY,
    LENDER,
    ManualClock,
    TrusteeNetwork,
    open_defaulted_escrow,
)


def notice(loan_id: int) -> DefaultNotice:
    return DefaultNotice(loan_id=loan_id, activity_commitment=BORROWER_COMMITMENT)


class TestReveal:
    """Tests for a successful reveal."""

    @pytest.mark.asyncio
    async def test_reveal_delivers_identity_to_lender(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """The lender of the defaulted loan receives the decrypted identity."""
        loan, applied = await open_defaulted_escrow(escrow, clock)
        assert applied.fully_distributed

        outcome = await escrow.coordinator.on_default(notice(loan.id))

        assert outcome.status == RevealStatus.REVEALED
        assert outcome.record.revealed_to == LENDER
        assert outcome.record.shares_used == sorted(outcome.record.shares_used)
        assert len(outcome.record.shares_used) == 2

        deliveries = escrow.coordinator.delivery.deliveries
        assert len(deliveries) == 1
        lender, record, identity = deliveries[0]
        assert lender == LENDER
        assert identity == IDENTITY
        assert record == outcome.record

    @pytest.mark.asyncio
    async def test_reveal_stops_at_threshold(
        self, escrow: EscrowServices, clock: ManualClock, trustee_network: TrusteeNetwork
    ) -> None:
        """Only as many trustees release as the threshold requires."""
        loan, _ = await open_defaulted_escrow(escrow, clock)

        await escrow.coordinator.on_default(notice(loan.id))

        released = 0
        for app in trustee_network.apps.values():
            statuses = await app.state.vault.statuses(loan.id)
            released += sum(1 for s in statuses if s.released)
        assert released <= 2

    @pytest.mark.asyncio
    async def test_reveal_before_default_is_refused(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """An approved application cannot be revealed."""
        loan, _ = await open_defaulted_escrow(escrow, clock, trigger_default=False)

        with pytest.raises(StateConflict):
            await escrow.coordinator.reveal(loan.id, BORROWER_COMMITMENT)

        assert escrow.coordinator.delivery.deliveries == []


class TestExactlyOnce:
    """Tests for repeated and concurrent reveals."""

    @pytest.mark.asyncio
    async def test_second_notice_is_a_no_op(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """A replayed notice returns the existing record without a second delivery."""
        loan, _ = await open_defaulted_escrow(escrow, clock)

        first = await escrow.coordinator.on_default(notice(loan.id))
        second = await escrow.coordinator.on_default(notice(loan.id))

        assert first.status == RevealStatus.REVEALED
        assert second.status == RevealStatus.ALREADY_REVEALED
        assert second.record == first.record
        assert len(escrow.coordinator.delivery.deliveries) == 1

    @pytest.mark.asyncio
    async def test_concurrent_notices_reveal_once(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """Two workers handling the same default produce one record and one delivery."""
        loan, _ = await open_defaulted_escrow(escrow, clock)

        outcomes = await asyncio.gather(
            escrow.coordinator.on_default(notice(loan.id)),
            escrow.coordinator.on_default(notice(loan.id)),
        )

        statuses = sorted(o.status.value for o in outcomes)
        assert statuses.count(RevealStatus.REVEALED.value) == 1
        assert len(escrow.coordinator.delivery.deliveries) == 1
        assert await escrow.coordinator.get_record(loan.id, BORROWER_COMMITMENT) is not None


class TestRetries:
    """Tests for reveals that cannot complete immediately."""

    @pytest.mark.asyncio
    async def test_insufficient_shares_schedules_retry(
        self,
        escrow: EscrowServices,
        clock: ManualClock,
        trustee_network: TrusteeNetwork,
        wall_clock,
    ) -> None:
        """Two trustees down leaves the reveal pending with a retry job."""
        loan, _ = await open_defaulted_escrow(escrow, clock)
        trustee_network.take_down("trustee_2", "trustee_3")

        outcome = await escrow.coordinator.on_default(notice(loan.id))

        assert outcome.status == RevealStatus.INSUFFICIENT_SHARES
        assert outcome.shares_held == 1
        assert outcome.threshold == 2
        job = await escrow.retry_queue.get(outcome.retry_job_id)
        assert job.state == JobState.PENDING
        assert escrow.coordinator.delivery.deliveries == []

        trustee_network.bring_up("trustee_2", "trustee_3")
        trustee_network.transport.calls.clear()
        wall_clock.now += 10
        await escrow.retry_queue.process_due()

        assert (await escrow.retry_queue.get(outcome.retry_job_id)).state == JobState.COMPLETED
        assert len(escrow.coordinator.delivery.deliveries) == 1
        # The share kept from the first attempt is not requested again.
        assert "trustee1" not in trustee_network.transport.calls_to("/request-share")

    @pytest.mark.asyncio
    async def test_in_flight_claim_blocks_second_worker(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """A live claim makes a second attempt report in-progress."""
        loan, _ = await open_defaulted_escrow(escrow, clock)
        await escrow.store.put_if_absent(f"reveal-claim:{loan.id}:{BORROWER_COMMITMENT}", {"reason": "test"})

        outcome = await escrow.coordinator.reveal(loan.id, BORROWER_COMMITMENT)

        assert outcome.status == RevealStatus.IN_PROGRESS
        assert escrow.coordinator.delivery.deliveries == []

    @pytest.mark.asyncio
    async def test_decryption_failure_halts_reveal(
        self, escrow: EscrowServices, clock: ManualClock, trustee_network: TrusteeNetwork
    ) -> None:
        """A tampered blob is recorded and never retried."""
        loan, applied = await open_defaulted_escrow(escrow, clock)
        blob_id = applied.application.identity_escrow.blob_id
        data = bytearray(base64.b64decode(await escrow.store.get(f"blob:{blob_id}")))
        data[-1] ^= 0x01
        await escrow.store.put(f"blob:{blob_id}", base64.b64encode(bytes(data)).decode("ascii"))

        outcome = await escrow.coordinator.on_default(notice(loan.id))

        assert outcome.status == RevealStatus.FAILED
        assert await escrow.coordinator.is_failed(loan.id, BORROWER_COMMITMENT)
        assert escrow.coordinator.delivery.deliveries == []

        trustee_network.transport.calls.clear()
        again = await escrow.coordinator.on_default(notice(loan.id))
        assert again.status == RevealStatus.FAILED
        assert trustee_network.transport.calls == []

    @pytest.mark.asyncio
    async def test_trustee_refuses_second_release(
        self, escrow: EscrowServices, clock: ManualClock, trustee_network: TrusteeNetwork
    ) -> None:
        """After the reveal each released trustee answers 409 to a new request."""
        loan, _ = await open_defaulted_escrow(escrow, clock)
        outcome = await escrow.coordinator.on_default(notice(loan.id))

        results = await escrow.trustees.collect(loan.id, BORROWER_COMMITMENT, threshold=3)

        released = {f"trustee_{i}" for i in outcome.record.shares_used}
        for result in results.results:
            if result.trustee_id in released:
                assert result.status == "already_released"

    @pytest.mark.asyncio
    async def test_queued_reveal_waits_for_claim_holder(
        self, escrow: EscrowServices, clock: ManualClock, wall_clock
    ) -> None:
        """A queued reveal that meets a live claim stays pending instead of completing."""
        loan, _ = await open_defaulted_escrow(escrow, clock)
        claim = f"reveal-claim:{loan.id}:{BORROWER_COMMITMENT}"
        await escrow.store.put_if_absent(claim, {"token": "other-worker", "reason": "test"})
        job_id = await escrow.coordinator.schedule_retry(loan.id, BORROWER_COMMITMENT)

        wall_clock.now += 10
        await escrow.retry_queue.process_due()

        job = await escrow.retry_queue.get(job_id)
        assert job.state == JobState.PENDING
        assert job.attempts == 1
        assert job.last_error == "another worker holds the reveal claim"

        await escrow.store.delete(claim)
        wall_clock.now += 100
        await escrow.retry_queue.process_due()

        assert (await escrow.retry_queue.get(job_id)).state == JobState.COMPLETED
        assert len(escrow.coordinator.delivery.deliveries) == 1

    @pytest.mark.asyncio
    async def test_queued_reveal_of_halted_escrow_fails(
        self, escrow: EscrowServices, clock: ManualClock, wall_clock
    ) -> None:
        """A queued reveal for an escrow halted by a decryption failure ends failed."""
        loan, applied = await open_defaulted_escrow(escrow, clock)
        blob_id = applied.application.identity_escrow.blob_id
        data = bytearray(base64.b64decode(await escrow.store.get(f"blob:{blob_id}")))
        data[-1] ^= 0x01
        await escrow.store.put(f"blob:{blob_id}", base64.b64encode(bytes(data)).decode("ascii"))
        assert (await escrow.coordinator.on_default(notice(loan.id))).status == RevealStatus.FAILED

        job_id = await escrow.coordinator.schedule_retry(loan.id, BORROWER_COMMITMENT)
        wall_clock.now += 10
        await escrow.retry_queue.process_due()

        job = await escrow.retry_queue.get(job_id)
        assert job.state == JobState.FAILED
        assert job.attempts == 1
        assert escrow.coordinator.delivery.deliveries == []


class TestClaim:
    """Tests for the in-flight reveal claim."""

    @pytest.mark.asyncio
    async def test_claim_released_after_reveal(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """A finished attempt removes its own claim."""
        loan, _ = await open_defaulted_escrow(escrow, clock)

        await escrow.coordinator.on_default(notice(loan.id))

        assert await escrow.store.get(f"reveal-claim:{loan.id}:{BORROWER_COMMITMENT}") is None

    @pytest.mark.asyncio
    async def test_claim_taken_over_mid_reveal_is_kept(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """An attempt whose claim expired and was retaken leaves the new claim alone."""
        loan, _ = await open_defaulted_escrow(escrow, clock)
        claim = f"reveal-claim:{loan.id}:{BORROWER_COMMITMENT}"
        successor = {"token": "successor", "reason": "loan_default"}
        collect = escrow.trustees.collect

        async def slow_collect(*args, **kwargs):
            # The first attempt's claim expires and another worker takes it.
            await escrow.store.put(claim, successor)
            return await collect(*args, **kwargs)

        with patch.object(escrow.trustees, "collect", side_effect=slow_collect):
            outcome = await escrow.coordinator.reveal(loan.id, BORROWER_COMMITMENT)

        assert outcome.status == RevealStatus.REVEALED
        assert await escrow.store.get(claim) == successor


class TestLedgerRecord:
    """Tests for recording the reveal on the ledger."""

    @pytest.mark.asyncio
    async def test_reveal_recorded_on_ledger_once(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """One IdentityRevealed event however many times the default is handled."""
        loan, _ = await open_defaulted_escrow(escrow, clock)

        await escrow.coordinator.on_default(notice(loan.id))
        await escrow.coordinator.on_default(notice(loan.id))

        application = await escrow.ledger.get_application(loan.id, BORROWER_COMMITMENT)
        assert application.revealed_at is not None
        events = await escrow.ledger.get_events(0, await escrow.ledger.get_head())
        reveals = [e for e in events if e.event_type == LedgerEventType.IDENTITY_REVEALED]
        assert len(reveals) == 1
        assert reveals[0].activity_commitment == BORROWER_COMMITMENT
        assert reveals[0].data["lender"] == LENDER

    @pytest.mark.asyncio
    async def test_missed_ledger_record_is_filled_in(self, escrow: EscrowServices, clock: ManualClock) -> None:
        """A reveal whose ledger call failed is recorded by the next attempt, without a second delivery."""
        loan, _ = await open_defaulted_escrow(escrow, clock)

        with patch.object(
            escrow.ledger, "record_reveal", AsyncMock(side_effect=TransientNetworkError("ledger unreachable"))
        ):
            with pytest.raises(TransientNetworkError):
                await escrow.coordinator.reveal(loan.id, BORROWER_COMMITMENT)

        assert len(escrow.coordinator.delivery.deliveries) == 1
        application = await escrow.ledger.get_application(loan.id, BORROWER_COMMITMENT)
        assert application.revealed_at is None

        again = await escrow.coordinator.reveal(loan.id, BORROWER_COMMITMENT)

        assert again.status == RevealStatus.ALREADY_REVEALED
        assert len(escrow.coordinator.delivery.deliveries) == 1
        application = await escrow.ledger.get_application(loan.id, BORROWER_COMMITMENT)
        assert application.revealed_at is not None
