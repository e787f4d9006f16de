"""
ZK Proof Module
===============

Proof models and the verifier oracle consulted by the escrow ledger.

Usage:
    from shared.zk import RegisteredProofVerifier

    verifier = RegisteredProofVerifier()
    verifier.register(proof.proof_hash(), activity_commitment, score=750)
    assert verifier.verify(proof.proof_hash(), activity_commitment, threshold=500)

Version: 1.0.0
"""

from shared.zk.models import PublicSignals, RegisteredProof, ZKProof
from shared.zk.verifier import ProofVerifier, RegisteredProofVerifier, StaticProofVerifier


__all__ = [
    # Verifier
    "ProofVerifier",
    "RegisteredProofVerifier",
    "StaticProofVerifier",
    # Models
    "ZKProof",
    "PublicSignals",
    "RegisteredProof",
]
