"""
Reveal Coordinator
==================

Turns a verified default into a one-time identity disclosure to the
lender of the defaulted loan.

Flow for one (loan, activity commitment):

1. A Reveal Record already exists: log a double-reveal attempt and make
   sure the reveal is recorded on the ledger, nothing else.
2. Take a short-lived claim (insert-if-absent) so only one worker runs.
   The claim carries a per-attempt token and is released only by the
   attempt that holds it.
3. Ask trustees not yet heard from for their shares; persist every share
   received so a retry never asks the same trustee twice.
4. With a threshold of shares: reconstruct the key, decrypt the blob,
   insert the Reveal Record (insert-if-absent), deliver to the lender and
   record the reveal on the ledger (``IdentityRevealed``, once).

Insufficient shares leave the escrow retriable. A decryption failure is
recorded and halts the reveal for good.

Version: 0.1.0
"""

import asyncio
import base64
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from shared.blockchain.client import ApplicationStatus, LedgerClient
from shared.config import settings
from shared.errors import (
    ApplicationNotFound,
    DecryptionFailed,
    InsufficientShares,
    LoanNotFound,
    RevealInProgress,
    StateConflict,
    ValidationError,
)
from shared.logging import bind_context, clear_context, get_logger
from shared.store import KeyValueStore
from shared.trustees.client import TrusteeClient
from shared.vault.shamir import Share
from shared.vault.vault import SecretVault

from services.escrow.retry import JobType, RetryJob, RetryQueue

logger = get_logger(__name__)


def escrow_key(loan_id: int, activity_commitment: str) -> str:
    return f"{loan_id}:{activity_commitment}"


def reveal_job_id(loan_id: int, activity_commitment: str) -> str:
    return f"reveal:{escrow_key(loan_id, activity_commitment)}"


class DefaultNotice(BaseModel):
    """Message handed from the watcher to the coordinator."""

    loan_id: int
    activity_commitment: str
    block_number: int | None = None
    detected_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RevealRecord(BaseModel):
    """Proof that an escrow was revealed. Its presence blocks any further reveal."""

    loan_id: int
    activity_commitment: str
    revealed_to: str
    revealed_at: datetime
    shares_used: list[int]


class RevealStatus(str, Enum):
    REVEALED = "revealed"
    ALREADY_REVEALED = "already_revealed"
    IN_PROGRESS = "in_progress"
    INSUFFICIENT_SHARES = "insufficient_shares"
    FAILED = "failed"


class RevealOutcome(BaseModel):
    """Result of one reveal attempt."""

    loan_id: int
    activity_commitment: str
    status: RevealStatus
    record: RevealRecord | None = None
    shares_held: int = 0
    threshold: int | None = None
    retry_job_id: str | None = None


class IdentityDelivery(Protocol):
    """Sink that hands a revealed identity to the lender."""

    async def deliver(self, lender: str, record: RevealRecord, identity: bytes) -> None:
        ...


class InMemoryDelivery:
    """Collects deliveries in a list."""

    def __init__(self) -> None:
        self.deliveries: list[tuple[str, RevealRecord, bytes]] = []

    async def deliver(self, lender: str, record: RevealRecord, identity: bytes) -> None:
        self.deliveries.append((lender, record, identity))


class StoreDelivery:
    """Writes revealed identities to a per-lender outbox in the store."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def deliver(self, lender: str, record: RevealRecord, identity: bytes) -> None:
        await self._store.put(
            f"outbox:{lender}:{escrow_key(record.loan_id, record.activity_commitment)}",
            {
                "record": record.model_dump(mode="json"),
                "identity": base64.b64encode(identity).decode("ascii"),
            },
        )


class RevealCoordinator:
    """Orchestrates share collection, reconstruction and delivery."""

    def __init__(
        self,
        ledger: LedgerClient,
        trustees: TrusteeClient,
        vault: SecretVault,
        store: KeyValueStore,
        delivery: IdentityDelivery,
        retry_queue: RetryQueue | None = None,
        claim_ttl_seconds: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.trustees = trustees
        self.vault = vault
        self.store = store
        self.delivery = delivery
        self.retry_queue = retry_queue
        self.claim_ttl_seconds = claim_ttl_seconds or settings.reveal.claim_ttl_seconds

        if retry_queue is not None:
            retry_queue.register(JobType.REVEAL, self._retry_job)

    # =========================================================================
    # Store access
    # =========================================================================

    async def get_record(self, loan_id: int, activity_commitment: str) -> RevealRecord | None:
        raw = await self.store.get(f"reveal:{escrow_key(loan_id, activity_commitment)}")
        return None if raw is None else RevealRecord.model_validate(raw)

    async def is_failed(self, loan_id: int, activity_commitment: str) -> bool:
        return await self.store.get(f"reveal-failed:{escrow_key(loan_id, activity_commitment)}") is not None

    async def held_shares(self, loan_id: int, activity_commitment: str) -> dict[str, Share]:
        """Shares already collected, by trustee id."""
        held: dict[str, Share] = {}
        async for _, raw in self.store.scan(f"share:{escrow_key(loan_id, activity_commitment)}:"):
            held[raw["trustee_id"]] = Share.decode(raw["share"])
        return held

    async def _keep_share(self, loan_id: int, activity_commitment: str, trustee_id: str, share: Share) -> None:
        await self.store.put(
            f"share:{escrow_key(loan_id, activity_commitment)}:{share.index}",
            {"trustee_id": trustee_id, "share": share.encode()},
        )

    # =========================================================================
    # Reveal
    # =========================================================================

    async def reveal(
        self,
        loan_id: int,
        activity_commitment: str,
        reason: str = "loan_default",
    ) -> RevealOutcome:
        """
        Attempt the reveal once.

        Raises:
            InsufficientShares: threshold not reached; safe to retry
            DecryptionFailed: wrong key or tampered blob; never retried
            StateConflict: the application has not defaulted
        """
        key = escrow_key(loan_id, activity_commitment)
        outcome = RevealOutcome(loan_id=loan_id, activity_commitment=activity_commitment, status=RevealStatus.FAILED)

        existing = await self.get_record(loan_id, activity_commitment)
        if existing is not None:
            logger.warning("double_reveal_attempt", loan_id=loan_id, activity_commitment=activity_commitment)
            # Idempotent on the ledger; fills in a record lost after delivery.
            await self.ledger.record_reveal(loan_id, activity_commitment, existing.revealed_to)
            return outcome.model_copy(update={"status": RevealStatus.ALREADY_REVEALED, "record": existing})
        if await self.is_failed(loan_id, activity_commitment):
            logger.warning("reveal_halted", loan_id=loan_id, activity_commitment=activity_commitment)
            return outcome

        loan = await self.ledger.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"loan {loan_id} does not exist", loan_id=loan_id)
        application = await self.ledger.get_application(loan_id, activity_commitment)
        if application is None:
            raise ApplicationNotFound("no such application", loan_id=loan_id)
        if application.status != ApplicationStatus.DEFAULTED:
            raise StateConflict(
                "identity can only be revealed after a default",
                loan_id=loan_id,
                status=application.status.value,
            )
        escrow = application.identity_escrow
        if escrow is None:
            raise ValidationError("application has no escrowed identity", loan_id=loan_id)
        outcome.threshold = escrow.threshold

        claim = f"reveal-claim:{key}"
        claim_value = {"token": uuid.uuid4().hex, "reason": reason}
        if not await self.store.put_if_absent(claim, claim_value, ttl_seconds=self.claim_ttl_seconds):
            logger.info("reveal_in_progress", loan_id=loan_id, activity_commitment=activity_commitment)
            return outcome.model_copy(update={"status": RevealStatus.IN_PROGRESS})

        try:
            held = await self.held_shares(loan_id, activity_commitment)
            needed = escrow.threshold - len(held)
            if needed > 0:
                collected = await self.trustees.collect(
                    loan_id,
                    activity_commitment,
                    threshold=needed,
                    reason=reason,
                    exclude=set(held),
                )
                for result in collected.results:
                    if result.share is not None and result.trustee_id not in held:
                        await self._keep_share(loan_id, activity_commitment, result.trustee_id, result.share)
                        held[result.trustee_id] = result.share

            outcome.shares_held = len(held)
            if len(held) < escrow.threshold:
                raise InsufficientShares(
                    f"collected {len(held)} of {escrow.threshold} shares",
                    loan_id=loan_id,
                    activity_commitment=activity_commitment,
                    held=len(held),
                    threshold=escrow.threshold,
                )

            shares = list(held.values())
            try:
                identity = await self.vault.open_identity(escrow.blob_id, shares, escrow.threshold)
            except DecryptionFailed as e:
                await self.store.put(
                    f"reveal-failed:{key}",
                    {"error": e.message, "failed_at": datetime.now(UTC).isoformat()},
                )
                logger.error(
                    "reveal_decryption_failed",
                    loan_id=loan_id,
                    activity_commitment=activity_commitment,
                    blob_id=escrow.blob_id,
                )
                raise

            record = RevealRecord(
                loan_id=loan_id,
                activity_commitment=activity_commitment,
                revealed_to=loan.lender,
                revealed_at=datetime.now(UTC),
                shares_used=sorted(s.index for s in shares)[: escrow.threshold],
            )
            if not await self.store.put_if_absent(f"reveal:{key}", record.model_dump(mode="json")):
                logger.warning("double_reveal_attempt", loan_id=loan_id, activity_commitment=activity_commitment)
                return outcome.model_copy(
                    update={
                        "status": RevealStatus.ALREADY_REVEALED,
                        "record": await self.get_record(loan_id, activity_commitment),
                    }
                )

            await self.delivery.deliver(loan.lender, record, identity)
            await self.ledger.record_reveal(loan_id, activity_commitment, loan.lender)
            logger.info(
                "identity_revealed",
                loan_id=loan_id,
                activity_commitment=activity_commitment,
                revealed_to=loan.lender,
                shares_used=record.shares_used,
            )
            return outcome.model_copy(update={"status": RevealStatus.REVEALED, "record": record})
        finally:
            # The claim may have expired and passed to another worker.
            if not await self.store.delete_if_equals(claim, claim_value):
                logger.warning("reveal_claim_lost", loan_id=loan_id, activity_commitment=activity_commitment)

    async def schedule_retry(self, loan_id: int, activity_commitment: str) -> str | None:
        """Queue a reveal retry. Returns the job id, or None without a queue."""
        if self.retry_queue is None:
            return None
        job = await self.retry_queue.enqueue(
            JobType.REVEAL,
            {"loan_id": loan_id, "activity_commitment": activity_commitment},
            job_id=reveal_job_id(loan_id, activity_commitment),
        )
        return job.id

    async def on_default(self, notice: DefaultNotice) -> RevealOutcome:
        """
        Handle a default notice.

        Idempotent: safe under at-least-once delivery and concurrent calls.
        """
        bind_context(loan_id=notice.loan_id, activity_commitment=notice.activity_commitment)
        try:
            return await self.reveal(notice.loan_id, notice.activity_commitment)
        except InsufficientShares as e:
            job_id = await self.schedule_retry(notice.loan_id, notice.activity_commitment)
            logger.warning("reveal_deferred", held=e.details.get("held"), retry_job_id=job_id)
            return RevealOutcome(
                loan_id=notice.loan_id,
                activity_commitment=notice.activity_commitment,
                status=RevealStatus.INSUFFICIENT_SHARES,
                shares_held=e.details.get("held", 0),
                threshold=e.details.get("threshold"),
                retry_job_id=job_id,
            )
        except DecryptionFailed:
            return RevealOutcome(
                loan_id=notice.loan_id,
                activity_commitment=notice.activity_commitment,
                status=RevealStatus.FAILED,
            )
        finally:
            clear_context()

    async def _retry_job(self, job: RetryJob) -> None:
        """
        Run a queued reveal. Returns normally only once the escrow is revealed.

        Raises:
            RevealInProgress: another worker holds the claim; retried later
            DecryptionFailed: the reveal is halted; fails the job
        """
        loan_id = job.payload["loan_id"]
        activity_commitment = job.payload["activity_commitment"]
        outcome = await self.reveal(loan_id, activity_commitment)
        if outcome.status == RevealStatus.IN_PROGRESS:
            raise RevealInProgress(
                "another worker holds the reveal claim",
                loan_id=loan_id,
                activity_commitment=activity_commitment,
            )
        if outcome.status == RevealStatus.FAILED:
            raise DecryptionFailed(
                "reveal halted after a decryption failure",
                loan_id=loan_id,
                activity_commitment=activity_commitment,
            )

    async def run(self, queue: "asyncio.Queue[DefaultNotice]") -> None:
        """Consume default notices forever."""
        logger.info("reveal_consumer_started")
        while True:
            notice = await queue.get()
            try:
                await self.on_default(notice)
            except Exception as e:
                logger.error(
                    "reveal_notice_failed",
                    loan_id=notice.loan_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                queue.task_done()
