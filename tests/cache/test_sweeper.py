"""Tests for CacheSweeper and the cache's owned sweep lifecycle."""

import asyncio

import pytest

from tieredcache.cache.sweeper import CacheSweeper
from tieredcache.cache.tiered import CacheConfig, TieredCache
from tieredcache.exceptions import SweeperError


class TestCacheSweeperLifecycle:
    async def test_start_and_stop(self) -> None:
        sweeper = CacheSweeper(_sweep_returning(0), interval_seconds=10)
        sweeper.start()
        assert sweeper.is_running
        await sweeper.stop()
        assert not sweeper.is_running

    async def test_double_start_raises(self) -> None:
        sweeper = CacheSweeper(_sweep_returning(0), interval_seconds=10)
        sweeper.start()
        try:
            with pytest.raises(SweeperError, match="already running"):
                sweeper.start()
        finally:
            await sweeper.stop()

    async def test_stop_is_idempotent(self) -> None:
        sweeper = CacheSweeper(_sweep_returning(0), interval_seconds=10)
        await sweeper.stop()
        sweeper.start()
        await sweeper.stop()
        await sweeper.stop()

    async def test_restart_after_stop(self) -> None:
        sweeper = CacheSweeper(_sweep_returning(0), interval_seconds=10)
        sweeper.start()
        await sweeper.stop()
        sweeper.start()
        assert sweeper.is_running
        await sweeper.stop()

    def test_rejects_non_positive_interval(self) -> None:
        with pytest.raises(ValueError):
            CacheSweeper(_sweep_returning(0), interval_seconds=0)


class TestCacheSweeperLoop:
    async def test_runs_periodically(self) -> None:
        sweeper = CacheSweeper(_sweep_returning(2), interval_seconds=0.01)
        sweeper.start()
        await asyncio.sleep(0.1)
        await sweeper.stop()

        stats = sweeper.stats()
        assert stats["runs"] >= 2
        assert stats["entries_removed"] == stats["runs"] * 2
        assert stats["running"] is False

    async def test_failing_sweep_does_not_stop_loop(self) -> None:
        calls = 0

        async def flaky() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("durable tier offline")
            return 0

        sweeper = CacheSweeper(flaky, interval_seconds=0.01)
        sweeper.start()
        await asyncio.sleep(0.1)
        await sweeper.stop()

        assert sweeper.stats()["errors"] == 1
        assert calls >= 2

    async def test_run_once(self) -> None:
        sweeper = CacheSweeper(_sweep_returning(3), interval_seconds=10)
        assert await sweeper.run_once() == 3
        assert sweeper.stats()["runs"] == 1


class TestOwnedSweep:
    async def test_context_manager_starts_and_stops(self, store, clock) -> None:
        cache = TieredCache(config=CacheConfig(), durable_store=store, clock=clock)
        async with cache:
            assert cache.sweeper.is_running
        assert not cache.sweeper.is_running

    async def test_background_sweep_removes_expired(self, store, clock) -> None:
        cache = TieredCache(
            config=CacheConfig(sweep_interval_seconds=0.01),
            durable_store=store,
            clock=clock,
        )
        await cache.set("k", "v", ttl_seconds=5)
        clock.advance(seconds=10)

        cache.start()
        await asyncio.sleep(0.1)
        await cache.stop()

        assert cache.get_stats().total == 0
        assert await store.read("cache_k") is None


def _sweep_returning(count: int):
    async def sweep() -> int:
        return count

    return sweep
