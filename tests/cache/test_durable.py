"""
Tests for the durable-tier stores.

The Redis store uses fakeredis so no real Redis server is required.
"""

import json
from unittest.mock import AsyncMock

import fakeredis
import pytest
import redis.exceptions

from tieredcache.cache.durable import (
    DurableStore,
    InMemoryDurableStore,
    JsonFileDurableStore,
    RedisDurableStore,
    build_durable_store,
)
from tieredcache.config import Settings
from tieredcache.exceptions import ConfigurationError, DurableTierError


@pytest.fixture
def memory_store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def file_store(tmp_path) -> JsonFileDurableStore:
    return JsonFileDurableStore(str(tmp_path / "nested" / "cache.json"))


@pytest.fixture
def redis_store() -> RedisDurableStore:
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisDurableStore(_redis_client=client)


@pytest.fixture(params=["memory", "file", "redis"])
def any_store(request, memory_store, file_store, redis_store) -> DurableStore:
    return {"memory": memory_store, "file": file_store, "redis": redis_store}[request.param]


class TestStoreContract:
    """Behaviour shared by every backend."""

    async def test_conforms_to_protocol(self, any_store) -> None:
        assert isinstance(any_store, DurableStore)

    async def test_write_and_read(self, any_store) -> None:
        await any_store.write("cache_a", '{"v": 1}')
        assert await any_store.read("cache_a") == '{"v": 1}'

    async def test_read_missing(self, any_store) -> None:
        assert await any_store.read("cache_missing") is None

    async def test_overwrite(self, any_store) -> None:
        await any_store.write("cache_a", "1")
        await any_store.write("cache_a", "2")
        assert await any_store.read("cache_a") == "2"

    async def test_delete(self, any_store) -> None:
        await any_store.write("cache_a", "1")
        await any_store.delete("cache_a")
        assert await any_store.read("cache_a") is None

    async def test_delete_missing_is_noop(self, any_store) -> None:
        await any_store.delete("cache_nothing")

    async def test_keys_by_prefix(self, any_store) -> None:
        await any_store.write("cache_a", "1")
        await any_store.write("cache_b", "2")
        await any_store.write("profile", "3")
        assert sorted(await any_store.keys("cache_")) == ["cache_a", "cache_b"]


class TestJsonFileStore:
    async def test_persists_across_instances(self, tmp_path) -> None:
        path = str(tmp_path / "cache.json")
        await JsonFileDurableStore(path).write("cache_a", "1")
        assert await JsonFileDurableStore(path).read("cache_a") == "1"

    async def test_file_is_plain_json(self, file_store) -> None:
        await file_store.write("cache_a", "1")
        with open(file_store.path, encoding="utf-8") as fh:
            assert json.load(fh) == {"cache_a": "1"}

    async def test_corrupt_file_starts_empty(self, tmp_path) -> None:
        path = tmp_path / "cache.json"
        path.write_text("{broken")
        store = JsonFileDurableStore(str(path))
        assert await store.read("cache_a") is None
        await store.write("cache_a", "1")
        assert await JsonFileDurableStore(str(path)).read("cache_a") == "1"

    async def test_undecodable_file_starts_empty(self, tmp_path) -> None:
        path = tmp_path / "cache.json"
        path.write_bytes(b'{"cache_a": "\xff\xfe"}')
        store = JsonFileDurableStore(str(path))
        assert await store.read("cache_a") is None
        await store.write("cache_b", "2")
        assert await JsonFileDurableStore(str(path)).read("cache_b") == "2"

    async def test_unwritable_location_raises(self, tmp_path) -> None:
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = JsonFileDurableStore(str(blocker / "cache.json"))
        with pytest.raises(DurableTierError):
            await store.write("cache_a", "1")


class TestRedisStore:
    async def test_errors_are_wrapped(self) -> None:
        client = AsyncMock()
        client.get.side_effect = redis.exceptions.ConnectionError("refused")
        store = RedisDurableStore(_redis_client=client)
        with pytest.raises(DurableTierError, match="Redis get failed"):
            await store.read("cache_a")

    @pytest.mark.parametrize("prefix", ["tenant*_", "tenant?_", "tenant[ab]_"])
    async def test_glob_characters_in_prefix_match_literally(self, redis_store, prefix) -> None:
        await redis_store.write(f"{prefix}a", "1")
        await redis_store.write("tenantX_b", "2")
        await redis_store.write("tenanta_c", "3")
        assert await redis_store.keys(prefix) == [f"{prefix}a"]

    async def test_entries_have_no_redis_expiry(self, redis_store) -> None:
        await redis_store.write("cache_a", "1")
        assert await redis_store._client.ttl("cache_a") == -1


class TestBuildDurableStore:
    def test_memory_backend(self) -> None:
        assert isinstance(build_durable_store(Settings()), InMemoryDurableStore)

    def test_file_backend(self, tmp_path) -> None:
        settings = Settings()
        settings.durable.backend = "file"
        settings.durable.file_path = str(tmp_path / "c.json")
        store = build_durable_store(settings)
        assert isinstance(store, JsonFileDurableStore)
        assert store.path == tmp_path / "c.json"

    def test_redis_backend(self) -> None:
        settings = Settings()
        settings.durable.backend = "Redis"
        assert isinstance(build_durable_store(settings), RedisDurableStore)

    def test_unknown_backend(self) -> None:
        settings = Settings()
        settings.durable.backend = "localstorage"
        with pytest.raises(ConfigurationError, match="Unknown durable backend"):
            build_durable_store(settings)
