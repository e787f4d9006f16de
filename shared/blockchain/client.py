"""
Escrow Ledger Client Interface
==============================

Abstract base class and models for the commitment-gated loan escrow.

Raw ledger records are decoded into these models exactly once, here at
the client boundary (see ``shared.blockchain.codec``).

Version: 0.1.0
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, Field, field_validator

from shared.blockchain.codec import decode_optional_uint, decode_uint
from shared.config import BlockchainMode, settings
from shared.logging import get_logger

logger = get_logger(__name__)

BPS_DENOMINATOR = 10_000


class LoanState(str, Enum):
    """Loan lifecycle states. Transitions only move forward."""

    PENDING = "pending"
    ACTIVE = "active"
    PAID = "paid"
    DEFAULTED = "defaulted"


class ApplicationStatus(str, Enum):
    """Per-application status."""

    PENDING = "pending"
    APPROVED = "approved"
    REPAID = "repaid"
    DEFAULTED = "defaulted"


class LedgerEventType(str, Enum):
    """Events emitted by the escrow ledger."""

    LOAN_CREATED = "LoanCreated"
    APPLICATION_SUBMITTED = "ApplicationSubmitted"
    APPLICATION_APPROVED = "ApplicationApproved"
    LOAN_REPAID = "LoanRepaid"
    LOAN_DEFAULTED = "LoanDefaulted"
    IDENTITY_REVEALED = "IdentityRevealed"


# Monotonic ordering used to reject backwards transitions.
LOAN_STATE_ORDER = {
    LoanState.PENDING: 0,
    LoanState.ACTIVE: 1,
    LoanState.PAID: 2,
    LoanState.DEFAULTED: 2,
}


class IdentityEscrow(BaseModel):
    """Where a borrower's encrypted identity lives and how it was split."""

    blob_id: str = Field(..., min_length=1, description="Content id of the encrypted blob")
    threshold: int = Field(..., ge=2, description="Shares needed to reconstruct the key")
    total_shares: int = Field(..., ge=2, description="Shares handed to trustees")

    @field_validator("total_shares")
    @classmethod
    def total_must_cover_threshold(cls, v: int, info) -> int:
        threshold = info.data.get("threshold", 2)
        if v < threshold:
            raise ValueError(f"total_shares {v} must be >= threshold {threshold}")
        return v


class Loan(BaseModel):
    """A lender's loan offer and its aggregate state."""

    id: int
    lender: str
    borrower: str | None = Field(default=None, description="Activity commitment of the first approved borrower")
    amount_per_borrower: int
    total_slots: int
    filled_slots: int = 0
    interest_rate_bps: int
    repayment_period: int = Field(..., description="Seconds between approval and deadline")
    min_required_score: int
    state: LoanState = LoanState.PENDING
    created_at: int

    @field_validator(
        "id",
        "amount_per_borrower",
        "total_slots",
        "filled_slots",
        "interest_rate_bps",
        "repayment_period",
        "min_required_score",
        "created_at",
        mode="before",
    )
    @classmethod
    def decode_ledger_uint(cls, v: Any) -> int:
        return decode_uint(v)

    @property
    def repayment_amount(self) -> int:
        """Principal plus interest owed by one borrower."""
        return self.amount_per_borrower * (BPS_DENOMINATOR + self.interest_rate_bps) // BPS_DENOMINATOR

    @property
    def slots_available(self) -> int:
        return self.total_slots - self.filled_slots


class Application(BaseModel):
    """A borrower's application against a loan, keyed by (loan_id, activity_commitment)."""

    loan_id: int
    activity_commitment: str
    proof_hash: str
    claimed_score: int
    status: ApplicationStatus = ApplicationStatus.PENDING
    applied_at: int
    approved_at: int | None = None
    repayment_deadline: int | None = None
    repaid_at: int | None = None
    defaulted_at: int | None = None
    revealed_at: int | None = Field(default=None, description="Block time the identity reveal was recorded")
    identity_escrow: IdentityEscrow | None = None

    @field_validator("loan_id", "claimed_score", "applied_at", mode="before")
    @classmethod
    def decode_required_uint(cls, v: Any) -> int:
        return decode_uint(v)

    @field_validator("approved_at", "repayment_deadline", "repaid_at", "defaulted_at", "revealed_at", mode="before")
    @classmethod
    def decode_timestamp(cls, v: Any) -> int | None:
        return decode_optional_uint(v)


class LedgerEvent(BaseModel):
    """A decoded ledger event."""

    block_number: int
    event_type: LedgerEventType
    loan_id: int
    activity_commitment: str | None = None
    timestamp: int
    data: dict[str, Any] = Field(default_factory=dict)

    # Payload keys that carry ledger integers.
    UINT_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {
            "amount_per_borrower",
            "total_slots",
            "filled_slots",
            "interest_rate_bps",
            "repayment_period",
            "min_required_score",
            "repayment_deadline",
            "repayment_amount",
            "amount_due",
            "claimed_score",
        }
    )

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "LedgerEvent":
        """Decode a raw ledger log entry."""
        data = {
            key: decode_uint(value) if key in cls.UINT_FIELDS else value
            for key, value in raw.get("data", {}).items()
        }
        return cls(
            block_number=decode_uint(raw["block_number"]),
            event_type=LedgerEventType(raw["name"]),
            loan_id=decode_uint(raw["loan_id"]),
            activity_commitment=raw.get("activity_commitment"),
            timestamp=decode_uint(raw["timestamp"]),
            data=data,
        )

    @property
    def escrow_key(self) -> tuple[int, str | None]:
        return self.loan_id, self.activity_commitment


class DefaultOutcome(BaseModel):
    """Result of a default check."""

    triggered: bool
    application: Application
    event: LedgerEvent | None = None


class RevealReceipt(BaseModel):
    """Result of recording an identity reveal on the ledger."""

    recorded: bool
    application: Application
    event: LedgerEvent | None = None


class LedgerClient(ABC):
    """
    Abstract base class for escrow ledger clients.

    Every mutation is atomic: preconditions are re-checked inside the
    mutation against current ledger state, and either all effects apply
    or none do.
    """

    @property
    @abstractmethod
    def mode(self) -> BlockchainMode:
        """Get the ledger mode."""
        ...

    @abstractmethod
    async def health_check(self) -> dict[str, Any]:
        """Check ledger health."""
        ...

    @abstractmethod
    async def now(self) -> int:
        """Current block timestamp (seconds)."""
        ...

    # =========================================================================
    # Mutations
    # =========================================================================

    @abstractmethod
    async def create_offer(
        self,
        lender: str,
        amount_per_borrower: int,
        total_slots: int,
        interest_rate_bps: int,
        repayment_period: int,
        min_required_score: int,
    ) -> Loan:
        """
        Post a new loan offer.

        Raises:
            ValidationError: non-positive amount/slots/period or interest above 100%
        """
        ...

    @abstractmethod
    async def register_proof(
        self,
        proof_hash: str,
        activity_commitment: str,
        score: int,
    ) -> None:
        """Record a verified proof so applications can reference it by hash."""
        ...

    @abstractmethod
    async def apply_for_loan(
        self,
        loan_id: int,
        activity_commitment: str,
        proof_hash: str,
        claimed_score: int,
        identity_escrow: IdentityEscrow | None = None,
    ) -> Application:
        """
        Apply for a loan with a proof over the activity commitment.

        Raises:
            ProofInvalid: score below the loan minimum or verifier rejection
            StateConflict: loan closed, slots full, or duplicate application
        """
        ...

    @abstractmethod
    async def approve_application(
        self,
        loan_id: int,
        activity_commitment: str,
        caller: str,
    ) -> Application:
        """
        Approve a pending application (lender only).

        Sets ``repayment_deadline = now + repayment_period`` atomically.

        Raises:
            NotAuthorized: caller is not the lender
            SlotsExhausted: every slot already filled
        """
        ...

    @abstractmethod
    async def repay(
        self,
        loan_id: int,
        activity_commitment: str | None = None,
    ) -> Application:
        """
        Repay an approved application while ``now <= repayment_deadline``.

        Raises:
            AlreadyRepaid: repaid before
            DeadlinePassed: deadline expired or already defaulted
        """
        ...

    @abstractmethod
    async def check_and_trigger_default(
        self,
        loan_id: int,
        activity_commitment: str | None = None,
    ) -> DefaultOutcome:
        """
        Permissionless default enforcement once ``now > repayment_deadline``.

        A second call after a successful default returns ``triggered=False``
        and emits nothing.

        Raises:
            DeadlineNotReached: deadline not yet passed
            AlreadyRepaid: application was repaid
        """
        ...

    @abstractmethod
    async def record_reveal(
        self,
        loan_id: int,
        activity_commitment: str,
        revealed_to: str,
    ) -> RevealReceipt:
        """
        Record that a defaulted borrower's identity went to the lender.

        Emits ``IdentityRevealed`` once per application; later calls return
        ``recorded=False`` and emit nothing.

        Raises:
            StateConflict: the application has not defaulted
            NotAuthorized: ``revealed_to`` is not the loan's lender
        """
        ...

    # =========================================================================
    # Reads
    # =========================================================================

    @abstractmethod
    async def get_loan(self, loan_id: int) -> Loan | None:
        ...

    @abstractmethod
    async def list_loans(self) -> list[Loan]:
        ...

    @abstractmethod
    async def get_application(
        self,
        loan_id: int,
        activity_commitment: str,
    ) -> Application | None:
        ...

    @abstractmethod
    async def list_applications(self, loan_id: int) -> list[Application]:
        ...

    @abstractmethod
    async def get_head(self) -> int:
        """Latest block number."""
        ...

    @abstractmethod
    async def get_events(self, from_block: int, to_block: int) -> list[LedgerEvent]:
        """
        Get events in the half-open block range ``(from_block, to_block]``.

        Args:
            from_block: Last block already processed
            to_block: Last block to include

        Returns:
            Decoded events in ledger order
        """
        ...


# Global client instance
_client: LedgerClient | None = None


def get_ledger_client() -> LedgerClient:
    """
    Get the configured ledger client instance.

    Returns:
        LedgerClient instance based on settings
    """
    global _client

    if _client is None:
        mode = settings.blockchain.mode

        if mode == BlockchainMode.MOCK:
            from shared.blockchain.mock import MockLedgerClient

            _client = MockLedgerClient()
        elif mode in (BlockchainMode.TESTNET, BlockchainMode.MAINNET):
            raise NotImplementedError(
                f"Ledger mode '{mode.value}' has no client. "
                "Use BLOCKCHAIN_MODE=mock for development."
            )
        else:
            raise ValueError(f"Unknown ledger mode: {mode}")

        logger.info("ledger_client_initialized", mode=mode.value)

    return _client


def set_ledger_client(client: LedgerClient) -> None:
    """
    Set a custom ledger client.

    Args:
        client: LedgerClient instance
    """
    global _client
    _client = client
    logger.info("ledger_client_set", mode=client.mode.value)


def reset_ledger_client() -> None:
    """Reset the client to be re-initialized."""
    global _client
    _client = None
