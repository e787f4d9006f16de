"""
Redis Store
===========

KeyValueStore backed by Redis. ``put_if_absent`` maps to ``SET NX``, which
is atomic across every process sharing the Redis instance.

Version: 0.1.0
"""

import json
import time
from collections.abc import AsyncIterator
from typing import Any

import redis.asyncio as aioredis
from redis.asyncio import Redis

from shared.logging import get_logger
from shared.store.base import KeyValueStore

logger = get_logger(__name__)

# Compare-and-delete in one round trip.
_DELETE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisStore(KeyValueStore):
    """
    Async Redis store.

    Keys are namespaced with ``key_prefix`` so several deployments can
    share one Redis database.
    """

    def __init__(self, client: Redis, key_prefix: str = "") -> None:  # type: ignore[type-arg]
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "") -> "RedisStore":
        """Create a store with its own connection pool."""
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
        logger.info("redis_store_created", key_prefix=key_prefix)
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        raw = await self._client.get(self._key(key))
        return None if raw is None else json.loads(raw)

    async def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        await self._client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    async def put_if_absent(
        self,
        key: str,
        value: Any,
        ttl_seconds: int | None = None,
    ) -> bool:
        inserted = await self._client.set(
            self._key(key),
            json.dumps(value),
            nx=True,
            ex=ttl_seconds,
        )
        return bool(inserted)

    async def delete(self, key: str) -> bool:
        return await self._client.delete(self._key(key)) > 0

    async def delete_if_equals(self, key: str, expected: Any) -> bool:
        deleted = await self._client.eval(_DELETE_IF_EQUALS, 1, self._key(key), json.dumps(expected))
        return bool(deleted)

    async def scan(self, prefix: str) -> AsyncIterator[tuple[str, Any]]:
        strip = len(self._prefix)
        async for full_key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
            raw = await self._client.get(full_key)
            if raw is not None:
                yield full_key[strip:], json.loads(raw)

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("redis_store_closed")

    async def health_check(self) -> dict[str, Any]:
        """
        Check Redis health.

        Returns:
            dict with status and latency
        """
        try:
            start = time.perf_counter()
            pong = await self._client.ping()
            latency_ms = (time.perf_counter() - start) * 1000
            return {
                "status": "healthy" if pong else "unhealthy",
                "backend": "redis",
                "latency_ms": round(latency_ms, 2),
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            return {"status": "unhealthy", "backend": "redis", "error": str(e)}
