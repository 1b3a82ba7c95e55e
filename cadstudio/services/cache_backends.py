"""Backing stores for the analysis result cache.

One addressable record per cache key. Two implementations:
  - FileCacheBackend: one ``{key}.json`` file per record, recency = mtime
  - RedisCacheBackend: one string per record + sorted-set index of write times

Backends raise on I/O failure; ResultCache is the layer that absorbs errors.
"""

import asyncio
import logging
import os
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from cadstudio.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredRecord:
    name: str
    size: int
    mtime: float


class CacheBackend(ABC):
    """Key-to-bytes mapping with size/recency enumeration."""

    kind = "abstract"

    async def connect(self) -> bool:
        return True

    async def disconnect(self) -> None:
        return None

    @abstractmethod
    async def read(self, name: str) -> bytes | None:
        """Return the record's bytes, or None when absent."""

    @abstractmethod
    async def write(self, name: str, data: bytes) -> None:
        """Create or overwrite a record, refreshing its write time."""

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Remove a record. Returns False when it did not exist."""

    @abstractmethod
    async def scan(self) -> list[StoredRecord]:
        """Enumerate every record with its size and last write time."""


class FileCacheBackend(CacheBackend):
    """Directory of ``{key}.json`` files. Filesystem calls run in a worker thread."""

    kind = "file"

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser()

    @property
    def root(self) -> Path:
        return self._root

    async def read(self, name: str) -> bytes | None:
        return await asyncio.to_thread(self._read_sync, name)

    async def write(self, name: str, data: bytes) -> None:
        await asyncio.to_thread(self._write_sync, name, data)

    async def delete(self, name: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, name)

    async def scan(self) -> list[StoredRecord]:
        return await asyncio.to_thread(self._scan_sync)

    def _read_sync(self, name: str) -> bytes | None:
        try:
            return self._path(name).read_bytes()
        except FileNotFoundError:
            return None

    def _write_sync(self, name: str, data: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        path = self._path(name)
        # Readers never observe a half-written record
        tmp = path.with_name(f".{path.stem}.{uuid.uuid4().hex}.tmp")
        try:
            tmp.write_bytes(data)
            os.replace(tmp, path)
        finally:
            tmp.unlink(missing_ok=True)

    def _delete_sync(self, name: str) -> bool:
        try:
            self._path(name).unlink()
            return True
        except FileNotFoundError:
            return False

    def _scan_sync(self) -> list[StoredRecord]:
        self._root.mkdir(parents=True, exist_ok=True)
        records: list[StoredRecord] = []
        for path in self._root.glob("*.json"):
            try:
                st = path.stat()
            except FileNotFoundError:
                continue  # deleted by a concurrent clear/evict
            records.append(StoredRecord(name=path.stem, size=st.st_size, mtime=st.st_mtime))
        return records

    def _path(self, name: str) -> Path:
        safe_name = name.replace("/", "_").replace("\\", "_")
        return self._root / f"{safe_name}.json"


class RedisCacheBackend(CacheBackend):
    """Redis-backed store for multi-instance deployments."""

    kind = "redis"

    def __init__(self, redis_url: str, prefix: str = "cadstudio:cache:", client=None) -> None:
        self._url = redis_url
        self._prefix = prefix
        self._index_key = f"{prefix}__index__"
        self._sizes_key = f"{prefix}__sizes__"
        self._redis = client

    async def connect(self) -> bool:
        """Connect to Redis. Returns True on success."""
        try:
            import redis.asyncio as aioredis

            if self._redis is None:
                self._redis = aioredis.from_url(self._url, socket_connect_timeout=3)
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis cache backend unavailable: %s", str(e)[:100])
            self._redis = None
            return False

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def read(self, name: str) -> bytes | None:
        return await self._client().get(self._key(name))

    async def write(self, name: str, data: bytes) -> None:
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.set(self._key(name), data)
            pipe.zadd(self._index_key, {name: time.time()})
            pipe.hset(self._sizes_key, name, len(data))
            await pipe.execute()

    async def delete(self, name: str) -> bool:
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.delete(self._key(name))
            pipe.zrem(self._index_key, name)
            pipe.hdel(self._sizes_key, name)
            removed, _, _ = await pipe.execute()
        return bool(removed)

    async def scan(self) -> list[StoredRecord]:
        client = self._client()
        stamps = await client.zrange(self._index_key, 0, -1, withscores=True)
        sizes = {_text(k): int(v) for k, v in (await client.hgetall(self._sizes_key)).items()}
        return [
            StoredRecord(name=_text(name), size=sizes.get(_text(name), 0), mtime=float(score))
            for name, score in stamps
        ]

    def _client(self):
        if self._redis is None:
            raise ConnectionError("Redis cache backend is not connected")
        return self._redis

    def _key(self, name: str) -> str:
        return f"{self._prefix}{name}"


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def create_cache_backend(settings: Settings) -> CacheBackend:
    """Instantiate the configured backend (not yet connected)."""
    backend = settings.cache_backend.lower()

    if backend == "file":
        return FileCacheBackend(settings.resolved_cache_dir)

    if backend == "redis":
        if not settings.redis_url:
            raise ValueError("REDIS_URL must be set when CACHE_BACKEND=redis")
        return RedisCacheBackend(settings.redis_url, prefix=settings.redis_key_prefix)

    raise ValueError(f"Unsupported cache backend: {backend!r}")
