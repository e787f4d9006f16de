"""
ZK-SNARK Data Models
====================

Pydantic models for proofs submitted with loan applications.

Version: 1.0.0
"""

import hashlib
import json
from datetime import UTC, datetime

from pydantic import BaseModel, Field


class ZKProof(BaseModel):
    """
    A zero-knowledge proof.

    Compatible with snarkjs Groth16 proof format.
    """

    # Proof points (G1 and G2 elements)
    pi_a: list[str] = Field(..., description="Proof point A (G1)")
    pi_b: list[list[str]] = Field(..., description="Proof point B (G2)")
    pi_c: list[str] = Field(..., description="Proof point C (G1)")

    # Protocol info
    protocol: str = Field(default="groth16")
    curve: str = Field(default="bn128")

    def to_calldata(self) -> list[int]:
        """Convert to verifier calldata format (8 uint256)."""
        return [
            int(self.pi_a[0]),
            int(self.pi_a[1]),
            int(self.pi_b[0][0]),
            int(self.pi_b[0][1]),
            int(self.pi_b[1][0]),
            int(self.pi_b[1][1]),
            int(self.pi_c[0]),
            int(self.pi_c[1]),
        ]

    def proof_hash(self) -> str:
        """Stable hash identifying this proof on the ledger."""
        canonical = json.dumps(self.to_calldata(), separators=(",", ":"))
        return "0x" + hashlib.sha256(canonical.encode()).hexdigest()


class PublicSignals(BaseModel):
    """Public inputs and outputs from an activity proof."""

    signals: list[str] = Field(..., description="Public signals as decimal strings")

    @property
    def activity_commitment(self) -> str:
        """The activity commitment (last signal) as 0x hex."""
        return hex(int(self.signals[-1])) if self.signals else ""

    def to_int_list(self) -> list[int]:
        """Convert to list of integers."""
        return [int(s) for s in self.signals]


class RegisteredProof(BaseModel):
    """A proof the verifier has accepted and recorded."""

    proof_hash: str
    activity_commitment: str
    score: int = Field(..., ge=0)
    registered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
