"""
Borrower Escrow
===============

Borrower-side workflow: escrow the identity, apply for the loan with a
reference to the ciphertext, then hand the key shares to the trustees.

Shares that cannot be delivered are queued for redelivery rather than
failing the application.

Version: 0.1.0
"""

from pydantic import BaseModel

from shared.blockchain.client import Application, LedgerClient
from shared.config import settings
from shared.errors import TransientNetworkError
from shared.logging import get_logger
from shared.trustees.client import ShareDeliveryResult, TrusteeClient
from shared.vault.shamir import Share
from shared.vault.vault import SecretVault, ShareAssignment

from services.escrow.retry import JobType, RetryJob, RetryQueue

logger = get_logger(__name__)


class EscrowedApplication(BaseModel):
    """Result of applying with an escrowed identity."""

    application: Application
    deliveries: list[ShareDeliveryResult]
    retry_job_ids: list[str] = []

    @property
    def fully_distributed(self) -> bool:
        return all(d.success for d in self.deliveries)


class BorrowerEscrow:
    """Escrow an identity and apply for a loan in one step."""

    def __init__(
        self,
        ledger: LedgerClient,
        vault: SecretVault,
        trustees: TrusteeClient,
        retry_queue: RetryQueue | None = None,
    ) -> None:
        self.ledger = ledger
        self.vault = vault
        self.trustees = trustees
        self.retry_queue = retry_queue

        if retry_queue is not None:
            retry_queue.register(JobType.DISTRIBUTE_SHARE, self._redeliver)

    async def apply_with_identity(
        self,
        loan_id: int,
        activity_commitment: str,
        proof_hash: str,
        claimed_score: int,
        identity_payload: bytes,
        threshold: int | None = None,
        total: int | None = None,
    ) -> EscrowedApplication:
        """
        Escrow ``identity_payload`` and submit the application.

        The application is submitted before any share leaves the process,
        so a rejected application never leaves shares with trustees.

        Raises:
            ProofInvalid, StateConflict, ValidationError: from the ledger
        """
        escrowed = await self.vault.escrow_identity(
            identity_payload,
            threshold or settings.trustee.threshold,
            total or settings.trustee.total,
        )
        application = await self.ledger.apply_for_loan(
            loan_id,
            activity_commitment,
            proof_hash,
            claimed_score,
            identity_escrow=escrowed.escrow,
        )

        deliveries = await self.trustees.distribute(loan_id, activity_commitment, escrowed.assignments)
        job_ids = []
        if self.retry_queue is not None:
            by_trustee = {a.trustee_id: a for a in escrowed.assignments}
            for delivery in deliveries:
                if delivery.success:
                    continue
                job = await self.retry_queue.enqueue(
                    JobType.DISTRIBUTE_SHARE,
                    {
                        "loan_id": loan_id,
                        "activity_commitment": activity_commitment,
                        "trustee_id": delivery.trustee_id,
                        "share": by_trustee[delivery.trustee_id].share.encode(),
                    },
                    job_id=f"distribute:{loan_id}:{activity_commitment}:{delivery.trustee_id}",
                )
                job_ids.append(job.id)

        return EscrowedApplication(application=application, deliveries=deliveries, retry_job_ids=job_ids)

    async def _redeliver(self, job: RetryJob) -> None:
        assignment = ShareAssignment(
            trustee_id=job.payload["trustee_id"],
            share=Share.decode(job.payload["share"]),
        )
        result = await self.trustees.send_share(
            job.payload["loan_id"],
            job.payload["activity_commitment"],
            assignment,
        )
        if not result.success:
            raise TransientNetworkError(
                result.error or "share redelivery failed",
                trustee_id=assignment.trustee_id,
            )
