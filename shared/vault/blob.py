"""
Blob Storage
============

Content-addressed storage for encrypted identity blobs.

Version: 0.1.0
"""

import base64
import hashlib
from typing import Protocol

from shared.errors import BlobNotFound
from shared.logging import get_logger
from shared.store import KeyValueStore

logger = get_logger(__name__)


def content_id(data: bytes) -> str:
    """SHA-256 content id."""
    return "0x" + hashlib.sha256(data).hexdigest()


class BlobStore(Protocol):
    """put(bytes) -> id / get(id) -> bytes, idempotent and content addressed."""

    async def put(self, data: bytes) -> str:
        ...

    async def get(self, blob_id: str) -> bytes:
        ...


class InMemoryBlobStore:
    """Dictionary-backed blob store for tests."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def put(self, data: bytes) -> str:
        blob_id = content_id(data)
        self._blobs[blob_id] = data
        return blob_id

    async def get(self, blob_id: str) -> bytes:
        try:
            return self._blobs[blob_id]
        except KeyError:
            raise BlobNotFound("unknown blob", blob_id=blob_id) from None

    def __len__(self) -> int:
        return len(self._blobs)


class KeyValueBlobStore:
    """Blob store layered on any KeyValueStore (base64 under ``blob:{id}``)."""

    PREFIX = "blob:"

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def put(self, data: bytes) -> str:
        blob_id = content_id(data)
        inserted = await self._store.put_if_absent(
            f"{self.PREFIX}{blob_id}",
            base64.b64encode(data).decode("ascii"),
        )
        logger.debug("blob_stored", blob_id=blob_id, size=len(data), new=inserted)
        return blob_id

    async def get(self, blob_id: str) -> bytes:
        encoded = await self._store.get(f"{self.PREFIX}{blob_id}")
        if encoded is None:
            raise BlobNotFound("unknown blob", blob_id=blob_id)
        return base64.b64decode(encoded)
