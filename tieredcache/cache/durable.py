"""
Durable key-value stores backing the cache's second tier.

Provides a unified ``DurableStore`` Protocol plus three backends:
in-process memory, a single JSON file on disk, and Redis.  Stores hold
already-serialized strings and raise on I/O failure; the cache decides
whether a failure matters.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tieredcache.config import Settings, get_settings
from tieredcache.exceptions import ConfigurationError, DurableTierError

logger = logging.getLogger(__name__)


@runtime_checkable
class DurableStore(Protocol):
    """Protocol for durable-tier backends.

    Any concrete implementation must provide these four coroutines.
    """

    async def read(self, key: str) -> Optional[str]:
        """Return the stored string for *key*, or ``None`` if absent."""
        ...

    async def write(self, key: str, data: str) -> None:
        """Store *data* under *key*, replacing any previous value."""
        ...

    async def delete(self, key: str) -> None:
        """Remove *key*.  Deleting an absent key is not an error."""
        ...

    async def keys(self, prefix: str) -> List[str]:
        """Return every stored key starting with *prefix*."""
        ...


class InMemoryDurableStore:
    """Dict-backed store.  Survives cache instances, not process restarts."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def write(self, key: str, data: str) -> None:
        self._data[key] = data

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]


class JsonFileDurableStore:
    """Store persisted as a single JSON object on disk.

    The document is loaded lazily on first access and rewritten in full on
    every mutation via a temp file and ``os.replace``, so a crash never
    leaves a half-written file.  File I/O runs in a worker thread.

    Args:
        path: Location of the JSON document.  Parent directories are
            created on first write.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._data: Optional[Dict[str, str]] = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_sync(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(
                "Durable cache file is corrupt; starting empty",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save_sync(self, data: Dict[str, str]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._path.parent), prefix=".cache-", suffix=".tmp"
            )
        except OSError as exc:
            raise DurableTierError(f"Cannot write {self._path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise DurableTierError(f"Cannot write {self._path}: {exc}") from exc

    async def _ensure_loaded(self) -> Dict[str, str]:
        if self._data is None:
            self._data = await asyncio.to_thread(self._load_sync)
        return self._data

    async def read(self, key: str) -> Optional[str]:
        async with self._lock:
            data = await self._ensure_loaded()
            return data.get(key)

    async def write(self, key: str, data: str) -> None:
        async with self._lock:
            current = await self._ensure_loaded()
            updated = dict(current)
            updated[key] = data
            await asyncio.to_thread(self._save_sync, updated)
            self._data = updated

    async def delete(self, key: str) -> None:
        async with self._lock:
            current = await self._ensure_loaded()
            if key not in current:
                return
            updated = {k: v for k, v in current.items() if k != key}
            await asyncio.to_thread(self._save_sync, updated)
            self._data = updated

    async def keys(self, prefix: str) -> List[str]:
        async with self._lock:
            data = await self._ensure_loaded()
            return [key for key in data if key.startswith(prefix)]


_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _glob_escape(prefix: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", prefix)


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisDurableStore:
    """Redis-backed store.

    Entries carry no Redis-side expiry; validity is decided by the cache
    on read so that stale values remain available as a fallback.

    Args:
        redis_url: Redis connection URL (e.g. redis://localhost:6379/0).
        _redis_client: Pre-built async client (testing).
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        _redis_client: Optional[Any] = None,
    ) -> None:
        if _redis_client is not None:
            self._client = _redis_client
        else:
            self._client = aioredis.from_url(redis_url, decode_responses=True)

    async def read(self, key: str) -> Optional[str]:
        try:
            data = await self._client.get(key)
        except RedisError as exc:
            raise DurableTierError(f"Redis get failed: {exc}") from exc
        return None if data is None else _decode(data)

    async def write(self, key: str, data: str) -> None:
        try:
            await self._client.set(key, data)
        except RedisError as exc:
            raise DurableTierError(f"Redis set failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as exc:
            raise DurableTierError(f"Redis delete failed: {exc}") from exc

    async def keys(self, prefix: str) -> List[str]:
        # SCAN MATCH is a glob; the prefix itself must match literally.
        pattern = f"{_glob_escape(prefix)}*"
        try:
            return [_decode(k) async for k in self._client.scan_iter(match=pattern)]
        except RedisError as exc:
            raise DurableTierError(f"Redis scan failed: {exc}") from exc

    async def close(self) -> None:
        await self._client.aclose()


def build_durable_store(settings: Optional[Settings] = None) -> DurableStore:
    """Create the durable store selected by ``settings.durable.backend``.

    Raises:
        ConfigurationError: If the backend name is not recognised.
    """
    settings = settings or get_settings()
    backend = settings.durable.backend.lower()
    if backend == "memory":
        return InMemoryDurableStore()
    if backend == "file":
        return JsonFileDurableStore(settings.durable.file_path)
    if backend == "redis":
        return RedisDurableStore(settings.durable.redis_url)
    raise ConfigurationError(f"Unknown durable backend: {settings.durable.backend}")


__all__ = [
    "DurableStore",
    "InMemoryDurableStore",
    "JsonFileDurableStore",
    "RedisDurableStore",
    "build_durable_store",
]
