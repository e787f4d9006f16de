"""
Vault Module
============

Threshold-escrowed identity encryption.

- shamir: t-of-n sharing of the data key
- crypto: AES-256-GCM sealing of the identity payload
- blob: content-addressed ciphertext storage

Usage:
    from shared.vault import InMemoryBlobStore, SecretVault

    vault = SecretVault(InMemoryBlobStore())
    blob, shares = vault.split_and_encrypt(payload, threshold=2, total=3)
    key = vault.reconstruct(shares[:2], threshold=2)
    assert vault.decrypt(blob, key) == payload
"""

from shared.vault.blob import BlobStore, InMemoryBlobStore, KeyValueBlobStore, content_id
from shared.vault.crypto import EncryptedBlob, decrypt, encrypt, generate_key
from shared.vault.shamir import PRIME, Share, reconstruct_secret, split_secret
from shared.vault.vault import (
    EscrowedIdentity,
    SecretVault,
    ShareAssignment,
    trustee_id,
)

__all__ = [
    # Vault
    "SecretVault",
    "EscrowedIdentity",
    "ShareAssignment",
    "trustee_id",
    # Sharing
    "Share",
    "split_secret",
    "reconstruct_secret",
    "PRIME",
    # Encryption
    "EncryptedBlob",
    "encrypt",
    "decrypt",
    "generate_key",
    # Blobs
    "BlobStore",
    "InMemoryBlobStore",
    "KeyValueBlobStore",
    "content_id",
]
