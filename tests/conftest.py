"""Shared fixtures for tieredcache tests."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from tieredcache.cache.durable import InMemoryDurableStore
from tieredcache.cache.tiered import CacheConfig, TieredCache


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, hours: float = 0) -> None:
        self.now += timedelta(seconds=seconds, hours=hours)


class CountingStore(InMemoryDurableStore):
    """In-memory durable store that counts calls and can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.reads: int = 0
        self.writes: int = 0
        self.deletes: List[str] = []
        self.fail_reads = False
        self.fail_writes = False

    async def read(self, key):
        self.reads += 1
        if self.fail_reads:
            raise OSError("disk unavailable")
        return await super().read(key)

    async def write(self, key, data):
        self.writes += 1
        if self.fail_writes:
            raise OSError("quota exceeded")
        await super().write(key, data)

    async def delete(self, key):
        self.deletes.append(key)
        await super().delete(key)


class Fetcher:
    """Callable fetch stub recording its call count."""

    def __init__(self, value=None, error: Optional[Exception] = None) -> None:
        self.value = value
        self.error = error
        self.calls: int = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


@pytest.fixture
def make_fetcher():
    """Factory for :class:`Fetcher` stubs."""
    return Fetcher


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def config() -> CacheConfig:
    return CacheConfig(default_ttl_seconds=300, max_age_seconds=86400)


@pytest.fixture
def cache(config: CacheConfig, store: CountingStore, clock: FakeClock) -> TieredCache:
    return TieredCache(config=config, durable_store=store, clock=clock)
