"""Tiered read-through cache (memory / durable / remote)."""

from tieredcache.cache.durable import (
    DurableStore,
    InMemoryDurableStore,
    JsonFileDurableStore,
    RedisDurableStore,
    build_durable_store,
)
from tieredcache.cache.entry import (
    CacheEntry,
    CacheOutcome,
    CacheResult,
    CacheStats,
    EntryOrigin,
)
from tieredcache.cache.sweeper import CacheSweeper
from tieredcache.cache.tiered import CacheConfig, TieredCache

__all__ = [
    "CacheConfig",
    "CacheEntry",
    "CacheOutcome",
    "CacheResult",
    "CacheStats",
    "CacheSweeper",
    "DurableStore",
    "EntryOrigin",
    "InMemoryDurableStore",
    "JsonFileDurableStore",
    "RedisDurableStore",
    "TieredCache",
    "build_durable_store",
]
