"""
Commitment Registry
===================

Per-wallet identity and activity commitments.

- the identity commitment is derived once from opaque private material
  supplied by the proof subsystem and never changes afterwards
- the activity commitment is replaced on every proof generation
- a reverse index maps each activity commitment back to its wallet so a
  lender can recognise a repeat borrower by identity commitment alone

The identity, the current activity and the reverse index live under
separate keys. The identity key is only ever written with
insert-if-absent, so no activity update can touch it.

Version: 0.1.0
"""

import hashlib
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from shared.errors import ValidationError
from shared.logging import get_logger
from shared.store import KeyValueStore

logger = get_logger(__name__)

COMMITMENT_PREFIX = "commitment:"
IDENTITY_PREFIX = f"{COMMITMENT_PREFIX}identity:"
ACTIVITY_PREFIX = f"{COMMITMENT_PREFIX}activity:"
ACTIVITY_INDEX_PREFIX = "commitment-activity:"


class CommitmentPair(BaseModel):
    """Commitments registered for one wallet."""

    wallet_key: str
    identity_commitment: str | None = None
    activity_commitment: str | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


def derive_identity_commitment(wallet_key: str, private_material: bytes) -> str:
    """
    Derive an identity commitment.

    Args:
        wallet_key: Borrower wallet address
        private_material: Score + salt material from the proof subsystem

    Returns:
        0x-prefixed SHA-256 hex digest
    """
    digest = hashlib.sha256()
    digest.update(wallet_key.lower().encode())
    digest.update(b"|")
    digest.update(private_material)
    return "0x" + digest.hexdigest()


class CommitmentRegistry:
    """
    Store-backed commitment registry.

    Usage:
        registry = CommitmentRegistry(store)
        identity = await registry.register_identity(wallet, material)
        await registry.register_activity(wallet, activity_commitment)
        assert await registry.resolve(activity_commitment) == identity
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    @staticmethod
    def _wallet_key(wallet_key: str) -> str:
        if not wallet_key:
            raise ValidationError("wallet_key is required")
        return wallet_key.lower()

    async def get(self, wallet_key: str) -> CommitmentPair | None:
        """Get the commitment pair for a wallet."""
        wallet = self._wallet_key(wallet_key)
        identity = await self._store.get(f"{IDENTITY_PREFIX}{wallet}")
        activity = await self._store.get(f"{ACTIVITY_PREFIX}{wallet}")
        if identity is None and activity is None:
            return None

        updated = [r["updated_at"] for r in (identity, activity) if r is not None]
        return CommitmentPair(
            wallet_key=wallet,
            identity_commitment=identity["identity_commitment"] if identity else None,
            activity_commitment=activity["activity_commitment"] if activity else None,
            updated_at=max(datetime.fromisoformat(u) for u in updated),
        )

    async def register_identity(self, wallet_key: str, private_material: bytes) -> str:
        """
        Register the wallet's identity commitment if it has none.

        Idempotent: once a commitment exists it is returned unchanged and
        ``private_material`` is ignored. Concurrent first registrations
        agree on whichever insert landed first.

        Returns:
            The wallet's identity commitment
        """
        wallet = self._wallet_key(wallet_key)
        if not private_material:
            raise ValidationError("private_material is required", wallet_key=wallet)

        key = f"{IDENTITY_PREFIX}{wallet}"
        record = {
            "identity_commitment": derive_identity_commitment(wallet, private_material),
            "updated_at": datetime.now(UTC).isoformat(),
        }
        if await self._store.put_if_absent(key, record):
            logger.info("identity_commitment_registered", wallet_key=wallet)
            return record["identity_commitment"]

        logger.debug("identity_commitment_exists", wallet_key=wallet)
        existing = await self._store.get(key)
        return existing["identity_commitment"]

    async def register_activity(self, wallet_key: str, activity_commitment: str) -> CommitmentPair:
        """Replace the wallet's activity commitment and update the reverse index."""
        wallet = self._wallet_key(wallet_key)
        if not activity_commitment:
            raise ValidationError("activity_commitment is required", wallet_key=wallet)

        # Index first: a resolvable activity never points at a wallet that lacks it.
        await self._store.put(f"{ACTIVITY_INDEX_PREFIX}{activity_commitment}", wallet)
        await self._store.put(
            f"{ACTIVITY_PREFIX}{wallet}",
            {"activity_commitment": activity_commitment, "updated_at": datetime.now(UTC).isoformat()},
        )

        logger.info(
            "activity_commitment_registered",
            wallet_key=wallet,
            activity_commitment=activity_commitment,
        )
        return await self.get(wallet)  # type: ignore[return-value]

    async def resolve(self, activity_commitment: str) -> str | None:
        """
        Map an activity commitment to its identity commitment.

        Returns:
            Identity commitment, or None when no wallet has registered it
            (a normal outcome; the caller may retry after registration)
        """
        wallet = await self._store.get(f"{ACTIVITY_INDEX_PREFIX}{activity_commitment}")
        if wallet is None:
            logger.debug("activity_commitment_unresolved", activity_commitment=activity_commitment)
            return None
        identity = await self._store.get(f"{IDENTITY_PREFIX}{wallet}")
        return None if identity is None else identity["identity_commitment"]
