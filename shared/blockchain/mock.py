"""
Mock Ledger Client
==================

In-process implementation of the escrow ledger for development and
testing. It behaves like the on-chain contract:

- one block per successful mutation, stamped with a monotonic block time
- every mutation re-checks its preconditions under a single lock and
  either commits all of its effects or none
- loans, applications and events are kept in their raw ledger encoding
  (uint256 as ``{low, high}`` limbs) and decoded only when read

Version: 0.1.0
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from shared.blockchain.client import (
    LOAN_STATE_ORDER,
    Application,
    ApplicationStatus,
    DefaultOutcome,
    IdentityEscrow,
    LedgerClient,
    LedgerEvent,
    LedgerEventType,
    Loan,
    LoanState,
    RevealReceipt,
)
from shared.blockchain.codec import encode_u256
from shared.config import BlockchainMode
from shared.errors import (
    AlreadyRepaid,
    ApplicationNotFound,
    DeadlineNotReached,
    DeadlinePassed,
    DuplicateApplication,
    InvariantViolation,
    LoanNotFound,
    NotAuthorized,
    ProofInvalid,
    SlotsExhausted,
    StateConflict,
    ValidationError,
)
from shared.logging import get_logger
from shared.zk.verifier import ProofVerifier, RegisteredProofVerifier

logger = get_logger(__name__)

MAX_INTEREST_BPS = 10_000

_LOAN_UINT_FIELDS = ("id", "amount_per_borrower", "interest_rate_bps", "min_required_score")
_APPLICATION_UINT_FIELDS = ("loan_id", "claimed_score")


def _encode_loan(loan: Loan) -> dict[str, Any]:
    raw = loan.model_dump(mode="json")
    for field_name in _LOAN_UINT_FIELDS:
        raw[field_name] = encode_u256(raw[field_name])
    return raw


def _encode_application(application: Application) -> dict[str, Any]:
    raw = application.model_dump(mode="json")
    for field_name in _APPLICATION_UINT_FIELDS:
        raw[field_name] = encode_u256(raw[field_name])
    # Unset timestamps are zero on chain.
    for field_name in ("approved_at", "repayment_deadline", "repaid_at", "defaulted_at", "revealed_at"):
        raw[field_name] = raw[field_name] or 0
    return raw


class MockLedgerClient(LedgerClient):
    """
    In-memory escrow ledger.

    Data is stored in memory and lost on restart.
    """

    def __init__(
        self,
        verifier: ProofVerifier | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """
        Initialize the ledger.

        Args:
            verifier: Proof oracle; defaults to a RegisteredProofVerifier
                fed by ``register_proof``
            clock: Source of wall time in whole seconds
        """
        self._verifier = verifier if verifier is not None else RegisteredProofVerifier()
        self._clock = clock or (lambda: int(time.time()))
        self._lock = asyncio.Lock()

        self._block_number = 0
        self._block_timestamp = 0
        self._next_loan_id = 1

        # Raw ledger storage
        self._loans: dict[int, dict[str, Any]] = {}
        self._applications: dict[tuple[int, str], dict[str, Any]] = {}
        self._events: list[dict[str, Any]] = []

        logger.debug("mock_ledger_initialized")

    @property
    def mode(self) -> BlockchainMode:
        return BlockchainMode.MOCK

    @property
    def verifier(self) -> ProofVerifier:
        return self._verifier

    async def health_check(self) -> dict[str, Any]:
        """Check mock ledger health."""
        return {
            "status": "healthy",
            "mode": self.mode.value,
            "block_number": self._block_number,
            "loans": len(self._loans),
            "applications": len(self._applications),
        }

    def _current_time(self) -> int:
        # Block time never goes backwards even if the wall clock does.
        return max(self._block_timestamp, self._clock())

    async def now(self) -> int:
        return self._current_time()

    # =========================================================================
    # Internal helpers (call with the lock held)
    # =========================================================================

    def _load_loan(self, loan_id: int) -> Loan:
        raw = self._loans.get(loan_id)
        if raw is None:
            raise LoanNotFound(f"loan {loan_id} does not exist", loan_id=loan_id)
        return Loan.model_validate(raw)

    def _load_application(self, loan_id: int, activity_commitment: str) -> Application:
        raw = self._applications.get((loan_id, activity_commitment))
        if raw is None:
            raise ApplicationNotFound(
                f"no application for loan {loan_id} with that commitment",
                loan_id=loan_id,
                activity_commitment=activity_commitment,
            )
        return Application.model_validate(raw)

    def _resolve_commitment(self, loan_id: int, activity_commitment: str | None) -> str:
        if activity_commitment:
            return activity_commitment
        funded = [
            key[1]
            for key, raw in self._applications.items()
            if key[0] == loan_id and raw["status"] != ApplicationStatus.PENDING.value
        ]
        if len(funded) != 1:
            raise ValidationError(
                "activity_commitment is required when a loan does not have exactly one funded borrower",
                loan_id=loan_id,
                funded=len(funded),
            )
        return funded[0]

    @staticmethod
    def _advance(loan: Loan, new_state: LoanState) -> LoanState:
        if loan.state == new_state:
            return new_state
        if LOAN_STATE_ORDER[new_state] <= LOAN_STATE_ORDER[loan.state]:
            raise InvariantViolation(
                "loan state may only move forward",
                loan_id=loan.id,
                current=loan.state.value,
                requested=new_state.value,
            )
        return new_state

    @staticmethod
    def _require_deadline(application: Application) -> int:
        if application.repayment_deadline is None:
            raise InvariantViolation(
                "approved application without a repayment deadline",
                loan_id=application.loan_id,
                activity_commitment=application.activity_commitment,
            )
        return application.repayment_deadline

    def _commit(
        self,
        timestamp: int,
        events: list[dict[str, Any]],
        loan: Loan | None = None,
        application: Application | None = None,
    ) -> list[LedgerEvent]:
        """Apply all effects of one mutation as a single block."""
        self._block_number += 1
        self._block_timestamp = timestamp

        if loan is not None:
            if loan.filled_slots > loan.total_slots:
                raise InvariantViolation("filled_slots exceeds total_slots", loan_id=loan.id)
            self._loans[loan.id] = _encode_loan(loan)
        if application is not None:
            key = (application.loan_id, application.activity_commitment)
            self._applications[key] = _encode_application(application)

        decoded = []
        for event in events:
            event["block_number"] = self._block_number
            event["timestamp"] = timestamp
            self._events.append(event)
            decoded.append(LedgerEvent.from_raw(event))
        return decoded

    @staticmethod
    def _event(
        name: LedgerEventType,
        loan_id: int,
        activity_commitment: str | None = None,
        **data: Any,
    ) -> dict[str, Any]:
        return {
            "name": name.value,
            "loan_id": encode_u256(loan_id),
            "activity_commitment": activity_commitment,
            "data": data,
        }

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_offer(
        self,
        lender: str,
        amount_per_borrower: int,
        total_slots: int,
        interest_rate_bps: int,
        repayment_period: int,
        min_required_score: int,
    ) -> Loan:
        """Post a new loan offer."""
        if not lender:
            raise ValidationError("lender is required")
        if amount_per_borrower <= 0:
            raise ValidationError("amount_per_borrower must be positive", amount=amount_per_borrower)
        if total_slots <= 0:
            raise ValidationError("total_slots must be positive", total_slots=total_slots)
        if not 0 <= interest_rate_bps <= MAX_INTEREST_BPS:
            raise ValidationError("interest rate must be between 0 and 100%", interest_rate_bps=interest_rate_bps)
        if repayment_period <= 0:
            raise ValidationError("repayment_period must be positive", repayment_period=repayment_period)
        if min_required_score < 0:
            raise ValidationError("min_required_score must be non-negative")

        async with self._lock:
            timestamp = self._current_time()
            loan = Loan(
                id=self._next_loan_id,
                lender=lender,
                amount_per_borrower=amount_per_borrower,
                total_slots=total_slots,
                interest_rate_bps=interest_rate_bps,
                repayment_period=repayment_period,
                min_required_score=min_required_score,
                created_at=timestamp,
            )
            self._next_loan_id += 1
            self._commit(
                timestamp,
                [
                    self._event(
                        LedgerEventType.LOAN_CREATED,
                        loan.id,
                        lender=lender,
                        amount_per_borrower=encode_u256(amount_per_borrower),
                        total_slots=total_slots,
                        interest_rate_bps=encode_u256(interest_rate_bps),
                        repayment_period=repayment_period,
                        min_required_score=encode_u256(min_required_score),
                    )
                ],
                loan=loan,
            )

        logger.info(
            "loan_offer_created",
            loan_id=loan.id,
            lender=lender,
            total_slots=total_slots,
            min_required_score=min_required_score,
        )
        return loan

    async def register_proof(
        self,
        proof_hash: str,
        activity_commitment: str,
        score: int,
    ) -> None:
        """Record a verified proof with the ledger's proof registry."""
        if not isinstance(self._verifier, RegisteredProofVerifier):
            raise ValidationError("configured verifier does not accept proof registration")
        async with self._lock:
            self._verifier.register(proof_hash, activity_commitment, score)

    async def apply_for_loan(
        self,
        loan_id: int,
        activity_commitment: str,
        proof_hash: str,
        claimed_score: int,
        identity_escrow: IdentityEscrow | None = None,
    ) -> Application:
        """Apply for a loan, gated on the proof verifier."""
        if not activity_commitment or not proof_hash:
            raise ValidationError("activity_commitment and proof_hash are required")
        if claimed_score < 0:
            raise ValidationError("claimed_score must be non-negative", claimed_score=claimed_score)

        async with self._lock:
            loan = self._load_loan(loan_id)
            if loan.state not in (LoanState.PENDING, LoanState.ACTIVE):
                raise StateConflict(
                    f"loan {loan_id} is {loan.state.value} and no longer accepts applications",
                    loan_id=loan_id,
                )
            if loan.slots_available <= 0:
                raise SlotsExhausted(f"loan {loan_id} has no free slots", loan_id=loan_id)
            if (loan_id, activity_commitment) in self._applications:
                raise DuplicateApplication(
                    "commitment already applied to this loan",
                    loan_id=loan_id,
                    activity_commitment=activity_commitment,
                )
            if claimed_score < loan.min_required_score:
                raise ProofInvalid(
                    "claimed score is below the loan minimum",
                    loan_id=loan_id,
                    min_required_score=loan.min_required_score,
                )
            if not self._verifier.verify(proof_hash, activity_commitment, loan.min_required_score):
                raise ProofInvalid("proof verifier rejected the application", loan_id=loan_id)

            timestamp = self._current_time()
            application = Application(
                loan_id=loan_id,
                activity_commitment=activity_commitment,
                proof_hash=proof_hash,
                claimed_score=claimed_score,
                applied_at=timestamp,
                identity_escrow=identity_escrow,
            )
            self._commit(
                timestamp,
                [
                    self._event(
                        LedgerEventType.APPLICATION_SUBMITTED,
                        loan_id,
                        activity_commitment,
                        proof_hash=proof_hash,
                        claimed_score=encode_u256(claimed_score),
                    )
                ],
                application=application,
            )

        logger.info(
            "loan_application_submitted",
            loan_id=loan_id,
            activity_commitment=activity_commitment,
            escrowed_identity=identity_escrow is not None,
        )
        return application

    async def approve_application(
        self,
        loan_id: int,
        activity_commitment: str,
        caller: str,
    ) -> Application:
        """Approve a pending application and start its repayment clock."""
        async with self._lock:
            loan = self._load_loan(loan_id)
            if caller != loan.lender:
                raise NotAuthorized("only the lender can approve applications", loan_id=loan_id)
            application = self._load_application(loan_id, activity_commitment)
            if application.status != ApplicationStatus.PENDING:
                raise StateConflict(
                    f"application is {application.status.value}, not pending",
                    loan_id=loan_id,
                )
            if loan.state not in (LoanState.PENDING, LoanState.ACTIVE):
                raise StateConflict(f"loan {loan_id} is {loan.state.value}", loan_id=loan_id)
            if loan.slots_available <= 0:
                raise SlotsExhausted(f"loan {loan_id} has no free slots", loan_id=loan_id)

            timestamp = self._current_time()
            deadline = timestamp + loan.repayment_period
            application = application.model_copy(
                update={
                    "status": ApplicationStatus.APPROVED,
                    "approved_at": timestamp,
                    "repayment_deadline": deadline,
                }
            )
            loan = loan.model_copy(
                update={
                    "filled_slots": loan.filled_slots + 1,
                    "state": self._advance(loan, LoanState.ACTIVE),
                    "borrower": loan.borrower or activity_commitment,
                }
            )
            self._commit(
                timestamp,
                [
                    self._event(
                        LedgerEventType.APPLICATION_APPROVED,
                        loan_id,
                        activity_commitment,
                        lender=loan.lender,
                        repayment_deadline=deadline,
                        filled_slots=loan.filled_slots,
                    )
                ],
                loan=loan,
                application=application,
            )

        logger.info(
            "loan_application_approved",
            loan_id=loan_id,
            activity_commitment=activity_commitment,
            repayment_deadline=deadline,
        )
        return application

    async def repay(
        self,
        loan_id: int,
        activity_commitment: str | None = None,
    ) -> Application:
        """Repay while ``now <= repayment_deadline``."""
        async with self._lock:
            loan = self._load_loan(loan_id)
            commitment = self._resolve_commitment(loan_id, activity_commitment)
            application = self._load_application(loan_id, commitment)

            if application.status == ApplicationStatus.REPAID:
                raise AlreadyRepaid("application already repaid", loan_id=loan_id)
            if application.status == ApplicationStatus.DEFAULTED:
                raise DeadlinePassed("application has defaulted", loan_id=loan_id)
            if application.status != ApplicationStatus.APPROVED:
                raise StateConflict("application has not been approved", loan_id=loan_id)

            deadline = self._require_deadline(application)
            timestamp = self._current_time()
            if timestamp > deadline:
                raise DeadlinePassed(
                    "repayment deadline has passed",
                    loan_id=loan_id,
                    repayment_deadline=deadline,
                    now=timestamp,
                )

            application = application.model_copy(
                update={"status": ApplicationStatus.REPAID, "repaid_at": timestamp}
            )
            if loan.state == LoanState.ACTIVE and self._all_settled(loan, application):
                loan = loan.model_copy(update={"state": self._advance(loan, LoanState.PAID)})

            self._commit(
                timestamp,
                [
                    self._event(
                        LedgerEventType.LOAN_REPAID,
                        loan_id,
                        commitment,
                        repayment_amount=encode_u256(loan.repayment_amount),
                    )
                ],
                loan=loan,
                application=application,
            )

        logger.info("loan_repaid", loan_id=loan_id, activity_commitment=commitment, loan_state=loan.state.value)
        return application

    def _all_settled(self, loan: Loan, repaid: Application) -> bool:
        """True when every slot is filled and every funded application is repaid."""
        if loan.filled_slots < loan.total_slots:
            return False
        for (lid, commitment), raw in self._applications.items():
            if lid != loan.id or commitment == repaid.activity_commitment:
                continue
            if raw["status"] in (ApplicationStatus.APPROVED.value, ApplicationStatus.DEFAULTED.value):
                return False
        return True

    async def check_and_trigger_default(
        self,
        loan_id: int,
        activity_commitment: str | None = None,
    ) -> DefaultOutcome:
        """Mark an application defaulted once its deadline has passed."""
        async with self._lock:
            loan = self._load_loan(loan_id)
            commitment = self._resolve_commitment(loan_id, activity_commitment)
            application = self._load_application(loan_id, commitment)

            if application.status == ApplicationStatus.DEFAULTED:
                logger.info("default_already_triggered", loan_id=loan_id, activity_commitment=commitment)
                return DefaultOutcome(triggered=False, application=application)
            if application.status == ApplicationStatus.REPAID:
                raise AlreadyRepaid("application was repaid; nothing to default", loan_id=loan_id)
            if application.status != ApplicationStatus.APPROVED:
                raise StateConflict("application has not been approved", loan_id=loan_id)

            deadline = self._require_deadline(application)
            timestamp = self._current_time()
            if timestamp <= deadline:
                raise DeadlineNotReached(
                    "repayment deadline has not passed",
                    loan_id=loan_id,
                    repayment_deadline=deadline,
                    now=timestamp,
                )

            application = application.model_copy(
                update={"status": ApplicationStatus.DEFAULTED, "defaulted_at": timestamp}
            )
            loan = loan.model_copy(update={"state": self._advance(loan, LoanState.DEFAULTED)})
            events = self._commit(
                timestamp,
                [
                    self._event(
                        LedgerEventType.LOAN_DEFAULTED,
                        loan_id,
                        commitment,
                        lender=loan.lender,
                        repayment_deadline=deadline,
                    )
                ],
                loan=loan,
                application=application,
            )

        logger.warning(
            "default_triggered",
            loan_id=loan_id,
            activity_commitment=commitment,
            repayment_deadline=deadline,
            defaulted_at=timestamp,
        )
        return DefaultOutcome(triggered=True, application=application, event=events[0])

    async def record_reveal(
        self,
        loan_id: int,
        activity_commitment: str,
        revealed_to: str,
    ) -> RevealReceipt:
        """Stamp a defaulted application as revealed and emit IdentityRevealed once."""
        async with self._lock:
            loan = self._load_loan(loan_id)
            application = self._load_application(loan_id, activity_commitment)

            if application.status != ApplicationStatus.DEFAULTED:
                raise StateConflict(
                    "identity can only be revealed after a default",
                    loan_id=loan_id,
                    status=application.status.value,
                )
            if revealed_to != loan.lender:
                raise NotAuthorized("identity may only be revealed to the lender", loan_id=loan_id)
            if application.revealed_at is not None:
                logger.info("reveal_already_recorded", loan_id=loan_id, activity_commitment=activity_commitment)
                return RevealReceipt(recorded=False, application=application)

            timestamp = self._current_time()
            application = application.model_copy(update={"revealed_at": timestamp})
            events = self._commit(
                timestamp,
                [
                    self._event(
                        LedgerEventType.IDENTITY_REVEALED,
                        loan_id,
                        activity_commitment,
                        lender=loan.lender,
                        amount_due=encode_u256(loan.repayment_amount),
                    )
                ],
                application=application,
            )

        logger.info("reveal_recorded", loan_id=loan_id, activity_commitment=activity_commitment, revealed_at=timestamp)
        return RevealReceipt(recorded=True, application=application, event=events[0])

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_loan(self, loan_id: int) -> Loan | None:
        raw = self._loans.get(loan_id)
        return None if raw is None else Loan.model_validate(raw)

    async def list_loans(self) -> list[Loan]:
        return [Loan.model_validate(raw) for _, raw in sorted(self._loans.items())]

    async def get_application(
        self,
        loan_id: int,
        activity_commitment: str,
    ) -> Application | None:
        raw = self._applications.get((loan_id, activity_commitment))
        return None if raw is None else Application.model_validate(raw)

    async def list_applications(self, loan_id: int) -> list[Application]:
        return [
            Application.model_validate(raw)
            for (lid, _), raw in self._applications.items()
            if lid == loan_id
        ]

    async def get_head(self) -> int:
        return self._block_number

    async def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        return [
            LedgerEvent.from_raw(raw)
            for raw in self._events
            if from_block < raw["block_number"] <= to_block
        ]

    # =========================================================================
    # Test Utilities
    # =========================================================================

    def clear_all(self) -> None:
        """Clear all stored data (for testing)."""
        self._loans.clear()
        self._applications.clear()
        self._events.clear()
        self._block_number = 0
        self._block_timestamp = 0
        self._next_loan_id = 1
        logger.debug("mock_ledger_cleared")

    def get_stats(self) -> dict[str, int]:
        """Get storage statistics."""
        return {
            "loans": len(self._loans),
            "applications": len(self._applications),
            "events": len(self._events),
            "block_number": self._block_number,
        }
