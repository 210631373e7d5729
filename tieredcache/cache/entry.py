"""
Cache data model for tieredcache.

Defines the stored :class:`CacheEntry`, the tagged :class:`CacheResult`
returned by every read, and the :class:`CacheStats` snapshot.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class EntryOrigin(str, Enum):
    """How the value held by an entry was obtained."""

    REMOTE = "remote"
    DURABLE = "durable"
    FALLBACK = "fallback"


class CacheOutcome(str, Enum):
    """Which path satisfied (or failed to satisfy) a read."""

    HIT = "hit"
    DURABLE_HIT = "durable_hit"
    FETCHED = "fetched"
    STALE = "stale"
    MISS = "miss"
    FAILED = "failed"


class CacheEntry(BaseModel):
    """A single cached value.

    Attributes:
        key: Caller-facing cache key (without namespace prefix).
        value: Arbitrary JSON-serializable payload.
        created_at: UTC timestamp of the fetch or set that produced it.
        ttl_seconds: Per-entry lifetime.
        origin: Provenance tag, used for statistics only.
    """

    key: str
    value: Any = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ttl_seconds: float
    origin: EntryOrigin = EntryOrigin.REMOTE

    @field_validator("created_at")
    @classmethod
    def created_at_must_be_aware(cls, v: datetime) -> datetime:
        """Read naive timestamps (written by other clients) as UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def age_seconds(self, now: datetime) -> float:
        """Seconds elapsed between creation and *now*."""
        return (now - self.created_at).total_seconds()

    def is_valid(self, now: datetime, max_age_seconds: float) -> bool:
        """Whether the entry is younger than both its TTL and *max_age_seconds*."""
        age = self.age_seconds(now)
        return age < self.ttl_seconds and age < max_age_seconds


class CacheResult(BaseModel):
    """Outcome of a :meth:`TieredCache.get` call.

    ``value`` and ``origin`` are ``None`` for the ``miss`` and ``failed``
    outcomes.  ``error`` carries the fetch failure reason whenever the
    remote source was skipped or failed, including stale fallbacks.
    """

    key: str
    outcome: CacheOutcome
    value: Any = None
    origin: Optional[EntryOrigin] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.outcome not in (CacheOutcome.MISS, CacheOutcome.FAILED)

    @property
    def is_stale(self) -> bool:
        return self.outcome is CacheOutcome.STALE

    def value_or(self, default: Any) -> Any:
        """Return the value, or *default* when nothing was found."""
        return self.value if self.found else default


class CacheStats(BaseModel):
    """Point-in-time cache statistics.

    Attributes:
        total: Entries currently held in memory.
        valid: Entries still within TTL and max age.
        expired: Entries past TTL or max age, awaiting a sweep.
        origins: Entry count per :class:`EntryOrigin` value.
        memory_usage_bytes: Size of the JSON rendering of the memory tier.
        remote_fetch_enabled: Current state of the remote-fetch toggle.
        hits: Reads served from memory.
        durable_hits: Reads served from the durable tier and promoted.
        fetches: Successful remote fetches.
        stale_fallbacks: Reads served stale after a failed or skipped fetch.
        misses: Empty reads with remote fetch not permitted.
        failures: Empty reads after a failed fetch.
        egress: Egress guard status, if a guard is attached.
    """

    total: int = 0
    valid: int = 0
    expired: int = 0
    origins: Dict[str, int] = Field(
        default_factory=lambda: {origin.value: 0 for origin in EntryOrigin}
    )
    memory_usage_bytes: int = 0
    remote_fetch_enabled: bool = True
    hits: int = 0
    durable_hits: int = 0
    fetches: int = 0
    stale_fallbacks: int = 0
    misses: int = 0
    failures: int = 0
    egress: Optional[Dict[str, Any]] = None
