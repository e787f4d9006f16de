"""
Authenticated Encryption
========================

AES-256-GCM for identity payloads (``cryptography``).

Blobs carry a fresh 12-byte nonce. Their content id is the SHA-256 of
``nonce || ciphertext`` so any store can address them by content.

Version: 0.1.0
"""

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel

from shared.errors import DecryptionFailed, ValidationError

KEY_BYTES = 32
NONCE_BYTES = 12


class EncryptedBlob(BaseModel):
    """Ciphertext plus the nonce it was sealed with."""

    nonce: bytes
    ciphertext: bytes

    @property
    def content_id(self) -> str:
        return "0x" + hashlib.sha256(self.to_bytes()).hexdigest()

    def to_bytes(self) -> bytes:
        return self.nonce + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "EncryptedBlob":
        if len(data) <= NONCE_BYTES:
            raise ValidationError("blob too short", length=len(data))
        return cls(nonce=data[:NONCE_BYTES], ciphertext=data[NONCE_BYTES:])


def generate_key(key_bytes: int = KEY_BYTES) -> bytes:
    """Generate a random AES key."""
    if key_bytes not in (16, 24, 32):
        raise ValidationError("AES key must be 16, 24 or 32 bytes", key_bytes=key_bytes)
    return AESGCM.generate_key(bit_length=key_bytes * 8)


def encrypt(plaintext: bytes, key: bytes) -> EncryptedBlob:
    """Seal ``plaintext`` under ``key`` with a fresh nonce."""
    nonce = os.urandom(NONCE_BYTES)
    return EncryptedBlob(nonce=nonce, ciphertext=AESGCM(key).encrypt(nonce, plaintext, None))


def decrypt(blob: EncryptedBlob, key: bytes) -> bytes:
    """
    Open a blob.

    Raises:
        DecryptionFailed: wrong key or tampered ciphertext
    """
    try:
        return AESGCM(key).decrypt(blob.nonce, blob.ciphertext, None)
    except InvalidTag:
        raise DecryptionFailed("authentication tag mismatch", content_id=blob.content_id) from None
    except ValueError as e:
        raise DecryptionFailed(f"unusable key: {e}", content_id=blob.content_id) from None
