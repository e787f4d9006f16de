"""
Commitments Module
==================

Persistent identity commitments and per-proof activity commitments.

Usage:
    from shared.commitments import CommitmentRegistry

    registry = CommitmentRegistry(store)
    identity = await registry.register_identity(wallet, private_material)
"""

from shared.commitments.registry import (
    CommitmentPair,
    CommitmentRegistry,
    derive_identity_commitment,
)

__all__ = [
    "CommitmentPair",
    "CommitmentRegistry",
    "derive_identity_commitment",
]
