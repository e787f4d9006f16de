"""
Keyed Store Interface
=====================

Narrow get/put/delete contract behind which all persisted state lives
(commitments, shares, reveal records, retry jobs, watcher position).

Values are JSON-serialisable Python objects. Implementations must make
``put_if_absent`` atomic; it is the single-writer primitive the reveal
workflow relies on.

Version: 0.1.0
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class KeyValueStore(ABC):
    """Abstract async keyed store."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under ``key`` or None."""
        ...

    @abstractmethod
    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Store ``value`` under ``key``, overwriting any previous value."""
        ...

    @abstractmethod
    async def put_if_absent(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        """
        Atomically store ``value`` only if ``key`` is not present.

        Returns:
            True if this call inserted the value, False if the key existed.
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete ``key``. Returns True if something was deleted."""
        ...

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: Any) -> bool:
        """
        Atomically delete ``key`` only while it still holds ``expected``.

        Releases a lease without removing one that expired and was taken
        by someone else.
        """
        ...

    @abstractmethod
    def scan(self, prefix: str) -> AsyncIterator[tuple[str, Any]]:
        """Iterate ``(key, value)`` pairs whose key starts with ``prefix``."""
        ...

    async def close(self) -> None:
        """Release connections. No-op by default."""
        return None

    async def health_check(self) -> dict[str, Any]:
        """Report store health."""
        return {"status": "healthy", "backend": type(self).__name__}
