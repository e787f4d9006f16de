"""
In-Memory Store
===============

Process-local KeyValueStore for development and tests.

Values are copied through JSON on the way in and out so callers never
share mutable state with the store, matching the behaviour of a real
durable backend.

Version: 0.1.0
"""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

from shared.store.base import KeyValueStore


class InMemoryStore(KeyValueStore):
    """Dictionary-backed store guarded by an asyncio lock."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return raw

    def _expiry(self, ttl_seconds: int | None) -> float | None:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    async def get(self, key: str) -> Any | None:
        async with self._lock:
            raw = self._live(key)
        return None if raw is None else json.loads(raw)

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        raw = json.dumps(value)
        async with self._lock:
            self._data[key] = (raw, self._expiry(ttl_seconds))

    async def put_if_absent(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        raw = json.dumps(value)
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (raw, self._expiry(ttl_seconds))
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def delete_if_equals(self, key: str, expected: Any) -> bool:
        async with self._lock:
            raw = self._live(key)
            if raw is None or json.loads(raw) != expected:
                return False
            del self._data[key]
            return True

    async def scan(self, prefix: str) -> AsyncIterator[tuple[str, Any]]:
        async with self._lock:
            snapshot = [
                (key, raw)
                for key in sorted(self._data)
                if key.startswith(prefix) and (raw := self._live(key)) is not None
            ]
        for key, raw in snapshot:
            yield key, json.loads(raw)

    def clear(self) -> None:
        """Drop everything (for testing)."""
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)
