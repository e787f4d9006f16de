"""
Proof Verification
==================

The ledger consumes proof verification as a synchronous, deterministic
boolean oracle: ``verify(proof_hash, activity_commitment, threshold)``.

Groth16 verification itself happens before registration; the ledger only
consults the registry of accepted proofs.

Version: 1.0.0
"""

from typing import Protocol

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.zk.models import RegisteredProof

logger = get_logger(__name__)


class ProofVerifier(Protocol):
    """Protocol for the proof oracle used by the escrow ledger."""

    def verify(self, proof_hash: str, activity_commitment: str, threshold: int) -> bool:
        """True iff the proof binds ``activity_commitment`` to a score >= threshold."""
        ...


class RegisteredProofVerifier:
    """
    Verifier backed by the registry of accepted proofs.

    A proof is valid for an application when it was registered for the
    same activity commitment with a score at or above the threshold.
    """

    def __init__(self) -> None:
        self._proofs: dict[str, RegisteredProof] = {}

    def register(self, proof_hash: str, activity_commitment: str, score: int) -> RegisteredProof:
        """
        Record an accepted proof.

        Re-registering the same hash with the same binding is a no-op;
        rebinding a hash to another commitment or score is rejected.
        """
        if not proof_hash or not activity_commitment:
            raise ValidationError("proof_hash and activity_commitment are required")
        if score < 0:
            raise ValidationError("score must be non-negative", score=score)

        existing = self._proofs.get(proof_hash)
        if existing is not None:
            if existing.activity_commitment != activity_commitment or existing.score != score:
                raise ValidationError("proof hash already bound to another commitment", proof_hash=proof_hash)
            return existing

        record = RegisteredProof(
            proof_hash=proof_hash,
            activity_commitment=activity_commitment,
            score=score,
        )
        self._proofs[proof_hash] = record
        logger.info(
            "proof_registered",
            proof_hash=proof_hash,
            activity_commitment=activity_commitment,
        )
        return record

    def get(self, proof_hash: str) -> RegisteredProof | None:
        return self._proofs.get(proof_hash)

    def verify(self, proof_hash: str, activity_commitment: str, threshold: int) -> bool:
        record = self._proofs.get(proof_hash)
        valid = (
            record is not None
            and record.activity_commitment == activity_commitment
            and record.score >= threshold
        )
        logger.debug("zk_proof_checked", proof_hash=proof_hash, threshold=threshold, valid=valid)
        return valid


class StaticProofVerifier:
    """Verifier returning a fixed answer. Useful for wiring and tests."""

    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.calls: list[tuple[str, str, int]] = []

    def verify(self, proof_hash: str, activity_commitment: str, threshold: int) -> bool:
        self.calls.append((proof_hash, activity_commitment, threshold))
        return self.result
