"""tieredcache: read-through cache with TTL and stale-if-available fallback."""

from tieredcache.cache import (
    CacheConfig,
    CacheEntry,
    CacheOutcome,
    CacheResult,
    CacheStats,
    EntryOrigin,
    TieredCache,
)
from tieredcache.egress import EgressGuard, EgressStatus

__version__ = "1.0.0"

__all__ = [
    "CacheConfig",
    "CacheEntry",
    "CacheOutcome",
    "CacheResult",
    "CacheStats",
    "EgressGuard",
    "EgressStatus",
    "EntryOrigin",
    "TieredCache",
]
