"""
Secret Vault
============

Encrypt an identity payload under a fresh key, split the key among
trustees and park the ciphertext in blob storage. The reverse path
reconstructs the key from a threshold of shares and opens the blob.

Version: 0.1.0
"""

from pydantic import BaseModel

from shared.blockchain.client import IdentityEscrow
from shared.config import settings
from shared.errors import ValidationError
from shared.logging import get_logger
from shared.vault import crypto
from shared.vault.blob import BlobStore
from shared.vault.crypto import EncryptedBlob
from shared.vault.shamir import Share, reconstruct_secret, split_secret

logger = get_logger(__name__)


def trustee_id(share_index: int) -> str:
    """Trustee that holds share ``share_index``."""
    return f"trustee_{share_index}"


class ShareAssignment(BaseModel):
    """A share addressed to the trustee that will hold it."""

    trustee_id: str
    share: Share


class EscrowedIdentity(BaseModel):
    """Output of escrowing one borrower identity."""

    escrow: IdentityEscrow
    assignments: list[ShareAssignment]

    @property
    def shares(self) -> list[Share]:
        return [a.share for a in self.assignments]


class SecretVault:
    """
    Threshold-escrowed encryption of identity payloads.

    Usage:
        vault = SecretVault(InMemoryBlobStore())
        escrowed = await vault.escrow_identity(payload, threshold=2, total=3)
        ...
        payload = await vault.open_identity(escrowed.escrow.blob_id, shares, 2)
    """

    def __init__(self, blob_store: BlobStore, key_bytes: int | None = None) -> None:
        self._blob_store = blob_store
        self._key_bytes = key_bytes or settings.vault.key_bytes

    @property
    def key_bytes(self) -> int:
        return self._key_bytes

    def split_and_encrypt(
        self,
        identity_payload: bytes,
        threshold: int,
        total: int,
    ) -> tuple[EncryptedBlob, list[Share]]:
        """
        Encrypt a payload and split its key.

        Args:
            identity_payload: Plaintext identity document
            threshold: Shares required to reconstruct (t >= 2)
            total: Shares produced (n >= t)

        Returns:
            (encrypted blob, n shares)
        """
        if not identity_payload:
            raise ValidationError("identity payload is empty")
        key = crypto.generate_key(self._key_bytes)
        blob = crypto.encrypt(identity_payload, key)
        shares = split_secret(key, threshold, total)
        return blob, shares

    def reconstruct(self, shares: list[Share], threshold: int) -> bytes:
        """Recover the key. Raises InsufficientShares below the threshold."""
        return reconstruct_secret(shares, threshold, self._key_bytes)

    @staticmethod
    def decrypt(blob: EncryptedBlob, key: bytes) -> bytes:
        """Open a blob. Raises DecryptionFailed on a wrong key or tampering."""
        return crypto.decrypt(blob, key)

    async def escrow_identity(
        self,
        identity_payload: bytes,
        threshold: int,
        total: int,
    ) -> EscrowedIdentity:
        """Split/encrypt, store the blob, and address each share to a trustee."""
        blob, shares = self.split_and_encrypt(identity_payload, threshold, total)
        blob_id = await self._blob_store.put(blob.to_bytes())

        logger.info("identity_escrowed", blob_id=blob_id, threshold=threshold, total=total)
        return EscrowedIdentity(
            escrow=IdentityEscrow(blob_id=blob_id, threshold=threshold, total_shares=total),
            assignments=[ShareAssignment(trustee_id=trustee_id(s.index), share=s) for s in shares],
        )

    async def open_identity(self, blob_id: str, shares: list[Share], threshold: int) -> bytes:
        """Reconstruct the key from ``shares`` and decrypt the stored blob."""
        key = self.reconstruct(shares, threshold)
        blob = EncryptedBlob.from_bytes(await self._blob_store.get(blob_id))
        return self.decrypt(blob, key)
