"""
Error Taxonomy
==============

Exception hierarchy shared by the ledger, vault, trustee client and
reveal workflow. Every error carries a stable ``code`` and a ``retryable``
flag so callers (services, retry queue) can decide what to do without
string matching.

Version: 0.1.0
"""

from typing import Any


class EscrowError(Exception):
    """Base class for all escrow errors."""

    code: str = "escrow_error"
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API error bodies and logs."""
        return {"error": self.message, "error_code": self.code, "details": self.details or None}


class ValidationError(EscrowError):
    """Malformed or missing input. Never retried."""

    code = "validation_error"


class ProofInvalid(EscrowError):
    """The proof verifier rejected the application."""

    code = "proof_invalid"


# =============================================================================
# State conflicts
# =============================================================================


class StateConflict(EscrowError):
    """The ledger state does not allow the requested transition."""

    code = "state_conflict"


class LoanNotFound(StateConflict):
    code = "loan_not_found"


class ApplicationNotFound(StateConflict):
    code = "application_not_found"


class DuplicateApplication(StateConflict):
    code = "duplicate_application"


class NotAuthorized(StateConflict):
    code = "not_authorized"


class SlotsExhausted(StateConflict):
    code = "slots_exhausted"


class AlreadyRepaid(StateConflict):
    code = "already_repaid"


class DeadlinePassed(StateConflict):
    code = "deadline_passed"


class DeadlineNotReached(StateConflict):
    code = "deadline_not_reached"


# =============================================================================
# Network / reveal workflow
# =============================================================================


class TransientNetworkError(EscrowError):
    """A trustee or the blob store could not be reached in time."""

    code = "transient_network_error"
    retryable = True


class InsufficientShares(EscrowError):
    """Fewer shares than the threshold were available."""

    code = "insufficient_shares"
    retryable = True


class PartialDistribution(EscrowError):
    """Some shares could not be delivered to their trustees."""

    code = "partial_distribution"
    retryable = True


class RevealInProgress(EscrowError):
    """Another worker holds the reveal claim for this escrow."""

    code = "reveal_in_progress"
    retryable = True


class AlreadyRevealed(EscrowError):
    """A second reveal was attempted for an escrow that was already revealed."""

    code = "already_revealed"


class DecryptionFailed(EscrowError):
    """Wrong key or tampered ciphertext. Fatal for the reveal attempt."""

    code = "decryption_failed"


class InvariantViolation(EscrowError):
    """Persisted state broke an invariant that should be impossible."""

    code = "invariant_violation"


class BlobNotFound(EscrowError):
    """No blob is stored under the requested content id."""

    code = "blob_not_found"
