"""
Tiered read-through cache.

Serves values from an in-process map (memory tier), then a durable
key-value store (durable tier), then a caller-supplied fetch function
(remote source).  Successful fetches populate both cache tiers.  When the
remote source fails or is not permitted, a stale durable value is served
if one exists; otherwise the read comes back empty with an explicit
outcome instead of raising.

Concurrency:
    Each key has an ``asyncio.Lock`` guarding tier read-modify-write
    sequences; the fetch itself runs outside the lock.  With
    ``single_flight`` enabled, concurrent misses for one key share a
    single in-flight fetch.
"""

import asyncio
import copy
import functools
import inspect
import json
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from tieredcache.cache.durable import DurableStore, InMemoryDurableStore, build_durable_store
from tieredcache.cache.entry import (
    CacheEntry,
    CacheOutcome,
    CacheResult,
    CacheStats,
    EntryOrigin,
)
from tieredcache.cache.sweeper import CacheSweeper
from tieredcache.config import Settings, get_settings
from tieredcache.egress import EgressGuard
from tieredcache.exceptions import FetchTimeoutError, RemoteFetchDisabledError

logger = logging.getLogger(__name__)

Fetch = Callable[[], Union[Any, Awaitable[Any]]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheConfig(BaseModel):
    """Construction-time options for :class:`TieredCache`.

    Attributes:
        default_ttl_seconds: Lifetime used when a read or set gives none.
        max_age_seconds: Absolute age ceiling applied on top of every TTL.
        enable_durable_tier: Consult and write the durable tier.
        enable_remote_fetch: Initial state of the remote-fetch toggle.
        namespace: Prefix applied to every durable-tier key.
        fetch_timeout_seconds: Timeout for awaitable fetches; ``<= 0``
            waits indefinitely.
        single_flight: Coalesce concurrent fetches for the same key.
        sweep_interval_seconds: Cadence of the periodic expiry sweep.
    """

    default_ttl_seconds: float = Field(default=300.0, gt=0)
    max_age_seconds: float = Field(default=86400.0, gt=0)
    enable_durable_tier: bool = True
    enable_remote_fetch: bool = True
    namespace: str = "cache_"
    fetch_timeout_seconds: float = 30.0
    single_flight: bool = True
    sweep_interval_seconds: float = Field(default=600.0, gt=0)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CacheConfig":
        cache = (settings or get_settings()).cache
        return cls(
            default_ttl_seconds=cache.default_ttl_seconds,
            max_age_seconds=cache.max_age_seconds,
            enable_durable_tier=cache.enable_durable_tier,
            enable_remote_fetch=cache.enable_remote_fetch,
            namespace=cache.namespace,
            fetch_timeout_seconds=cache.fetch_timeout_seconds,
            single_flight=cache.single_flight,
            sweep_interval_seconds=cache.sweep_interval_seconds,
        )


class TieredCache:
    """Read-through cache over memory, durable and remote tiers.

    Args:
        config: Cache options.  Defaults are read from settings.
        durable_store: Backend for the durable tier.  Defaults to an
            :class:`InMemoryDurableStore`.
        egress_guard: Optional guard that suppresses remote fetches while
            the remote source is rate limiting or failing.
        clock: Source of the current UTC time (testing).
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        durable_store: Optional[DurableStore] = None,
        egress_guard: Optional[EgressGuard] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._config = config or CacheConfig.from_settings()
        self._durable: DurableStore = (
            durable_store if durable_store is not None else InMemoryDurableStore()
        )
        self._guard = egress_guard
        self._clock = clock or _utcnow

        self._memory: Dict[str, CacheEntry] = {}
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._inflight: Dict[str, asyncio.Future] = {}
        self._remote_enabled = self._config.enable_remote_fetch
        self._sweeper = CacheSweeper(
            self.clear_expired, self._config.sweep_interval_seconds
        )

        # Counters
        self._hits: int = 0
        self._durable_hits: int = 0
        self._fetches: int = 0
        self._stale_fallbacks: int = 0
        self._misses: int = 0
        self._failures: int = 0

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, clock: Optional[Clock] = None
    ) -> "TieredCache":
        """Build a cache, its durable store and egress guard from settings."""
        settings = settings or get_settings()
        guard = (
            EgressGuard.from_settings(settings.egress, clock=clock)
            if settings.egress.enabled
            else None
        )
        return cls(
            config=CacheConfig.from_settings(settings),
            durable_store=build_durable_store(settings),
            egress_guard=guard,
            clock=clock,
        )

    @property
    def config(self) -> CacheConfig:
        return self._config

    @property
    def sweeper(self) -> CacheSweeper:
        return self._sweeper

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        self._sweeper.start()

    async def stop(self) -> None:
        """Stop the periodic expiry sweep."""
        await self._sweeper.stop()

    async def __aenter__(self) -> "TieredCache":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        key: str,
        fetch: Fetch,
        ttl_seconds: Optional[float] = None,
        force_refresh: bool = False,
    ) -> CacheResult:
        """Return the value for *key*, fetching it when no tier has it.

        Lookup order, stopping at the first success:

        1. Memory tier, if the entry is valid (skipped on force refresh).
        2. Durable tier, if enabled and the entry is valid; the entry is
           promoted into memory (skipped on force refresh).
        3. Remote fetch, if permitted; the value is written to both tiers.
        4. Durable tier ignoring validity (stale fallback).

        Args:
            key: Non-empty cache key.
            fetch: Zero-argument callable producing the value.  May be a
                coroutine function; awaitables are subject to
                ``fetch_timeout_seconds``.
            ttl_seconds: Lifetime for a newly fetched entry.
            force_refresh: Bypass both cache tiers and fetch.

        Returns:
            A :class:`CacheResult` tagged with the path that served it.
            Fetch and tier failures are reported through the outcome,
            never raised.

        Raises:
            ValueError: If the key is empty.
        """
        self._validate_key(key)
        ttl = ttl_seconds if ttl_seconds is not None else self._config.default_ttl_seconds

        if not force_refresh:
            cached = await self._lookup(key)
            if cached is not None:
                return cached

        try:
            value = await self._fetch(key, fetch, ttl)
        except Exception as exc:
            return await self._fallback(key, exc)

        return CacheResult(
            key=key,
            outcome=CacheOutcome.FETCHED,
            value=copy.deepcopy(value),
            origin=EntryOrigin.REMOTE,
        )

    async def get_value(
        self,
        key: str,
        fetch: Fetch,
        ttl_seconds: Optional[float] = None,
        force_refresh: bool = False,
        default_factory: Callable[[], Any] = dict,
    ) -> Any:
        """Like :meth:`get` but return the bare value.

        Empty outcomes return ``default_factory()``, so the caller cannot
        tell a failed fetch from missing data.  Use :meth:`get` when that
        distinction matters.
        """
        result = await self.get(key, fetch, ttl_seconds=ttl_seconds, force_refresh=force_refresh)
        return result.value if result.found else default_factory()

    async def _lookup(self, key: str) -> Optional[CacheResult]:
        """Check the memory tier, then the durable tier, for a valid entry."""
        max_age = self._config.max_age_seconds
        async with self._lock_for(key):
            now = self._clock()
            entry = self._memory.get(key)
            if entry is not None and entry.is_valid(now, max_age):
                self._hits += 1
                logger.debug("Cache hit (memory)", extra={"cache_key": key})
                return CacheResult(
                    key=key,
                    outcome=CacheOutcome.HIT,
                    value=copy.deepcopy(entry.value),
                    origin=entry.origin,
                )

            if not self._config.enable_durable_tier:
                return None

            stored = await self._read_durable(key)
            if stored is None or not stored.is_valid(now, max_age):
                return None

            promoted = stored.model_copy(update={"origin": EntryOrigin.DURABLE})
            self._memory[key] = promoted
            self._durable_hits += 1
            logger.debug("Cache hit (durable)", extra={"cache_key": key})
            return CacheResult(
                key=key,
                outcome=CacheOutcome.DURABLE_HIT,
                value=copy.deepcopy(promoted.value),
                origin=EntryOrigin.DURABLE,
            )

    async def _fallback(self, key: str, error: Exception) -> CacheResult:
        """Serve a stale durable value after a failed or skipped fetch."""
        reason = str(error) or type(error).__name__
        skipped = isinstance(error, RemoteFetchDisabledError)
        if not skipped:
            logger.warning(
                "Remote fetch failed",
                extra={"cache_key": key, "error": reason},
            )

        if self._config.enable_durable_tier:
            async with self._lock_for(key):
                stored = await self._read_durable(key)
            if stored is not None:
                self._stale_fallbacks += 1
                logger.info("Using durable fallback", extra={"cache_key": key})
                return CacheResult(
                    key=key,
                    outcome=CacheOutcome.STALE,
                    value=stored.value,
                    origin=EntryOrigin.FALLBACK,
                    error=reason,
                )

        if skipped:
            self._misses += 1
            outcome = CacheOutcome.MISS
        else:
            self._failures += 1
            outcome = CacheOutcome.FAILED
        logger.warning(
            "No fallback available; returning empty result",
            extra={"cache_key": key, "outcome": outcome.value},
        )
        return CacheResult(key=key, outcome=outcome, error=reason)

    # ------------------------------------------------------------------
    # Remote fetch
    # ------------------------------------------------------------------

    async def _fetch(self, key: str, fetch: Fetch, ttl: float) -> Any:
        """Fetch *key* from the remote source, joining an in-flight fetch."""
        if not self._remote_enabled:
            raise RemoteFetchDisabledError("Remote fetch disabled")

        if not self._config.single_flight:
            self._check_guard()
            return await self._fetch_and_store(key, fetch, ttl)

        pending = self._inflight.get(key)
        if pending is None:
            self._check_guard()
            pending = asyncio.ensure_future(self._fetch_and_store(key, fetch, ttl))
            self._inflight[key] = pending
            pending.add_done_callback(functools.partial(self._forget_inflight, key))
        else:
            logger.debug("Joining in-flight fetch", extra={"cache_key": key})
        return await asyncio.shield(pending)

    def _check_guard(self) -> None:
        if self._guard is not None and not self._guard.allow_request():
            raise RemoteFetchDisabledError("Remote fetch suppressed in fallback mode")

    def _forget_inflight(self, key: str, future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # Mark the exception retrieved when every waiter was cancelled.
            future.exception()

    async def _fetch_and_store(self, key: str, fetch: Fetch, ttl: float) -> Any:
        logger.info("Fetching from remote source", extra={"cache_key": key})
        try:
            value = await self._call_fetch(fetch)
        except Exception as exc:
            if self._guard is not None:
                self._guard.record_failure(exc)
            raise
        if self._guard is not None:
            self._guard.record_success()
        self._fetches += 1
        await self.set(key, value, ttl_seconds=ttl, origin=EntryOrigin.REMOTE)
        return value

    async def _call_fetch(self, fetch: Fetch) -> Any:
        result = fetch()
        if not inspect.isawaitable(result):
            return result
        timeout = self._config.fetch_timeout_seconds
        if timeout <= 0:
            return await result
        try:
            return await asyncio.wait_for(result, timeout)
        except asyncio.TimeoutError as exc:
            raise FetchTimeoutError(f"Fetch timed out after {timeout}s") from exc

    # ------------------------------------------------------------------
    # Writes and maintenance
    # ------------------------------------------------------------------

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        origin: EntryOrigin = EntryOrigin.REMOTE,
    ) -> CacheEntry:
        """Create or replace the entry for *key* in every enabled tier.

        Durable-tier failures are logged and ignored; the memory tier is
        always written.

        Returns:
            A copy of the stored entry.

        Raises:
            ValueError: If the key is empty.
        """
        self._validate_key(key)
        entry = CacheEntry(
            key=key,
            value=copy.deepcopy(value),
            created_at=self._clock(),
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self._config.default_ttl_seconds,
            origin=origin,
        )
        async with self._lock_for(key):
            self._memory[key] = entry
            if self._config.enable_durable_tier:
                await self._write_durable(entry)
        logger.debug(
            "Cache set",
            extra={"cache_key": key, "origin": origin.value, "ttl_seconds": entry.ttl_seconds},
        )
        return entry.model_copy(deep=True)

    async def clear_expired(self) -> int:
        """Remove invalid memory entries and their durable records.

        Keys with a read in progress are left for the next sweep.

        Returns:
            Number of entries removed.
        """
        max_age = self._config.max_age_seconds
        now = self._clock()
        removed = 0
        for key, entry in list(self._memory.items()):
            if entry.is_valid(now, max_age):
                continue
            lock = self._lock_for(key)
            if lock.locked():
                logger.debug("Skipping busy expired entry", extra={"cache_key": key})
                continue
            async with lock:
                current = self._memory.get(key)
                if current is None or current.is_valid(self._clock(), max_age):
                    continue
                del self._memory[key]
                await self._delete_durable(key)
                removed += 1

        if removed:
            logger.info("Expired entries cleaned up", extra={"count": removed})
        return removed

    async def clear(self) -> int:
        """Empty the memory tier and every durable key under the namespace.

        Durable keys outside the namespace are untouched.

        Returns:
            Number of distinct keys removed across both tiers.
        """
        removed = set(self._memory)
        self._memory.clear()

        prefix = self._config.namespace
        try:
            durable_keys = await self._durable.keys(prefix)
        except Exception as exc:
            logger.warning(
                "Failed to enumerate durable tier during clear",
                extra={"namespace": prefix, "error": str(exc)},
            )
            durable_keys = []
        for durable_key in durable_keys:
            try:
                await self._durable.delete(durable_key)
            except Exception as exc:
                logger.warning(
                    "Failed to delete durable entry",
                    extra={"durable_key": durable_key, "error": str(exc)},
                )
                continue
            removed.add(durable_key[len(prefix):])

        logger.info("Cache cleared", extra={"entries_removed": len(removed)})
        return len(removed)

    # ------------------------------------------------------------------
    # Reporting and toggles
    # ------------------------------------------------------------------

    def get_stats(self) -> CacheStats:
        """Return statistics computed against the current time."""
        now = self._clock()
        max_age = self._config.max_age_seconds
        valid = 0
        origins = {origin.value: 0 for origin in EntryOrigin}
        for entry in self._memory.values():
            if entry.is_valid(now, max_age):
                valid += 1
            origins[entry.origin.value] += 1

        rendered = json.dumps(
            [[key, entry.model_dump()] for key, entry in self._memory.items()],
            default=str,
        )
        return CacheStats(
            total=len(self._memory),
            valid=valid,
            expired=len(self._memory) - valid,
            origins=origins,
            memory_usage_bytes=len(rendered.encode("utf-8")),
            remote_fetch_enabled=self._remote_enabled,
            hits=self._hits,
            durable_hits=self._durable_hits,
            fetches=self._fetches,
            stale_fallbacks=self._stale_fallbacks,
            misses=self._misses,
            failures=self._failures,
            egress=(
                self._guard.get_status().model_dump(mode="json")
                if self._guard is not None
                else None
            ),
        )

    @property
    def remote_fetch_enabled(self) -> bool:
        return self._remote_enabled

    def enable_remote_fetch(self) -> None:
        self._remote_enabled = True
        logger.info("Remote fetch enabled")

    def disable_remote_fetch(self) -> None:
        self._remote_enabled = False
        logger.info("Remote fetch disabled")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_key(key: str) -> None:
        if not key or not key.strip():
            raise ValueError("Key must not be empty")

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _durable_key(self, key: str) -> str:
        return f"{self._config.namespace}{key}"

    async def _read_durable(self, key: str) -> Optional[CacheEntry]:
        """Read and decode a durable entry.  Failures count as a miss."""
        try:
            raw = await self._durable.read(self._durable_key(key))
        except Exception as exc:
            logger.warning(
                "Durable read failed; treating as miss",
                extra={"cache_key": key, "error": str(exc)},
            )
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning(
                "Durable entry deserialize failed; discarding",
                extra={"cache_key": key, "error": str(exc)},
            )
            await self._delete_durable(key)
            return None

    async def _write_durable(self, entry: CacheEntry) -> None:
        try:
            await self._durable.write(self._durable_key(entry.key), entry.model_dump_json())
        except Exception as exc:
            logger.warning(
                "Failed to store in durable tier",
                extra={"cache_key": entry.key, "error": str(exc)},
            )

    async def _delete_durable(self, key: str) -> None:
        try:
            await self._durable.delete(self._durable_key(key))
        except Exception as exc:
            logger.warning(
                "Failed to delete from durable tier",
                extra={"cache_key": key, "error": str(exc)},
            )
