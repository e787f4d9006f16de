"""
Store Module
============

Injected keyed storage for all persisted escrow state.

Usage:
    from shared.store import InMemoryStore, get_store

    store = get_store()          # backend chosen by STORE_BACKEND
    await store.put("loan:1", {"state": "pending"})
    inserted = await store.put_if_absent("reveal:1:0xabc", record)
"""

from shared.config import StoreBackend, settings
from shared.store.base import KeyValueStore
from shared.store.memory import InMemoryStore


def get_store() -> KeyValueStore:
    """
    Build a store from settings.

    Returns:
        KeyValueStore for the configured backend
    """
    if settings.store.backend == StoreBackend.REDIS:
        from shared.store.redis import RedisStore

        return RedisStore.from_url(settings.redis.url, key_prefix=settings.store.key_prefix)
    return InMemoryStore()


__all__ = [
    "KeyValueStore",
    "InMemoryStore",
    "get_store",
]
