"""Analysis result cache — content-addressed, size-bounded stage outputs.

Key = "{stage}-{first 16 hex of sha256(canonical selected fields)}".
Eviction removes the oldest-written records once the store exceeds its byte
budget; it runs as a background task after every store.

Graceful degradation: every I/O failure becomes a cache miss or a no-op.
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from cadstudio.orchestrator.schemas import CacheEntry, CacheLookup, CacheStats, ClearResult
from cadstudio.services.cache_backends import CacheBackend

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 500 * 1024 * 1024

# Fields that affect each stage's output
STAGE_FIELDS: dict[str, tuple[str, ...]] = {
    "create": ("shapes", "operations", "parts", "assembly", "export"),
    "drawing": (
        "shapes", "operations", "parts", "assembly", "export",
        "drawing", "drawing_plan", "tolerance", "dxfExport",
    ),
    "dfm": ("shapes", "operations", "manufacturing", "shop_profile"),
    "cost": (
        "shapes", "operations", "material", "process",
        "batch_size", "shop_profile", "dfm_score",
    ),
    "tolerance": ("parts", "assembly", "tolerance"),
}


def _truthy(value: Any) -> bool:
    return bool(value)


def _present(value: Any) -> bool:
    return value is not None


@dataclass(frozen=True)
class OptionOverlay:
    """Copies one runtime option onto the config before field selection."""
    option: str
    targets: tuple[tuple[str, ...], ...]
    when: Callable[[Any], bool] = _truthy


# Changing this table changes every key derived from it
OPTION_OVERLAYS: tuple[OptionOverlay, ...] = (
    OptionOverlay("process", (("manufacturing", "process"), ("process",))),
    OptionOverlay("material", (("manufacturing", "material"), ("material",))),
    OptionOverlay("batch", (("batch_size",),)),
    OptionOverlay("dxfExport", (("dxfExport",),), _present),
    OptionOverlay("shopProfile", (("shop_profile",),)),
    OptionOverlay("dfm_score", (("dfm_score",),), _present),
    OptionOverlay("monteCarlo", (("monteCarlo",),), _present),
    OptionOverlay("mcSamples", (("mcSamples",),), _present),
)


def apply_overlays(config: Mapping[str, Any], options: Mapping[str, Any]) -> dict[str, Any]:
    """Return a shallow copy of ``config`` with runtime options merged in."""
    merged = dict(config)
    copied: set[str] = set()
    for overlay in OPTION_OVERLAYS:
        value = options.get(overlay.option)
        if not overlay.when(value):
            continue
        for path in overlay.targets:
            if len(path) == 1:
                merged[path[0]] = value
                continue
            parent, leaf = path
            if parent not in copied:
                existing = merged.get(parent)
                merged[parent] = dict(existing) if isinstance(existing, Mapping) else {}
                copied.add(parent)
            merged[parent][leaf] = value
    return merged


def select_fields(stage: str, merged: Mapping[str, Any]) -> dict[str, Any]:
    return {k: merged[k] for k in STAGE_FIELDS[stage] if k in merged}


def canonical_json(data: Any) -> str:
    """Serialize with object keys sorted at every level; arrays keep their order."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_key(stage: str, config: Mapping[str, Any], options: Mapping[str, Any] | None = None) -> str | None:
    """Deterministic cache key, or None for an unknown (uncacheable) stage."""
    if stage not in STAGE_FIELDS:
        return None
    fields = select_fields(stage, apply_overlays(config, options or {}))
    digest = hashlib.sha256(canonical_json(fields).encode("utf-8")).hexdigest()[:16]
    return f"{stage}-{digest}"


class ResultCache:
    """Stage result store with byte budget and oldest-first eviction."""

    def __init__(self, backend: CacheBackend, max_bytes: int = DEFAULT_MAX_BYTES):
        self._backend = backend
        self._max_bytes = max_bytes
        self._pending: set[asyncio.Task] = set()

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @backend.setter
    def backend(self, backend: CacheBackend) -> None:
        self._backend = backend

    def compute_key(self, stage: str, config: Mapping[str, Any], options: Mapping[str, Any] | None = None) -> str | None:
        return compute_key(stage, config, options)

    async def get(self, key: str | None) -> CacheLookup:
        """Read an entry. Missing or unreadable records are misses."""
        if not key:
            return CacheLookup()
        try:
            raw = await self._backend.read(key)
        except Exception as e:
            logger.debug("Cache read error | key=%s | %s", key, str(e)[:100])
            return CacheLookup()
        if raw is None:
            return CacheLookup()
        try:
            entry = CacheEntry.model_validate(json.loads(raw))
        except Exception as e:
            logger.warning("Corrupt cache entry ignored | key=%s | %s", key, str(e)[:100])
            return CacheLookup()
        logger.info("Cache HIT | key=%s", key)
        return CacheLookup(hit=True, entry=entry)

    async def put(self, key: str | None, result: Any, stage: str) -> None:
        """Write an entry, then schedule eviction without waiting for it."""
        if not key:
            return
        entry = CacheEntry(result=result, stage=stage, timestamp=int(time.time() * 1000))
        try:
            await self._backend.write(key, entry.model_dump_json().encode("utf-8"))
        except Exception as e:
            logger.warning("Cache write failed | key=%s | %s", key, str(e)[:100])
            return
        logger.info("Cache SET | key=%s", key)
        self._schedule_eviction()

    async def evict_if_needed(self) -> int:
        """Delete oldest-written records until the store fits the budget."""
        records = await self._backend.scan()
        total = sum(r.size for r in records)
        if total <= self._max_bytes:
            return 0

        removed = 0
        for record in sorted(records, key=lambda r: r.mtime):
            if total <= self._max_bytes:
                break
            try:
                await self._backend.delete(record.name)
            except Exception as e:
                logger.debug("Cache evict skipped | key=%s | %s", record.name, str(e)[:100])
                continue
            total -= record.size
            removed += 1

        logger.info("Cache evicted %d entries | total=%d bytes", removed, total)
        return removed

    async def stats(self) -> CacheStats:
        try:
            records = await self._backend.scan()
        except Exception as e:
            logger.debug("Cache stats unavailable: %s", str(e)[:100])
            return CacheStats()

        by_stage: dict[str, int] = {}
        for record in records:
            stage = record.name.split("-")[0]
            by_stage[stage] = by_stage.get(stage, 0) + 1
        return CacheStats(
            entries=len(records),
            total_bytes=sum(r.size for r in records),
            by_stage=by_stage,
        )

    async def clear(self, stage: str | None = None) -> ClearResult:
        """Delete all entries, or only those of one stage."""
        try:
            records = await self._backend.scan()
        except Exception as e:
            logger.debug("Cache clear unavailable: %s", str(e)[:100])
            return ClearResult()

        prefix = f"{stage}-" if stage else ""
        deleted = 0
        for record in records:
            if not record.name.startswith(prefix):
                continue
            try:
                await self._backend.delete(record.name)
            except Exception as e:
                logger.debug("Cache delete skipped | key=%s | %s", record.name, str(e)[:100])
            deleted += 1

        logger.info("Cache cleared %d entries | stage=%s", deleted, stage or "*")
        return ClearResult(deleted=deleted)

    async def drain(self) -> None:
        """Wait for background eviction tasks to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule_eviction(self) -> None:
        task = asyncio.create_task(self._evict_in_background())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _evict_in_background(self) -> None:
        try:
            await self.evict_if_needed()
        except Exception as e:
            logger.debug("Cache eviction failed: %s", str(e)[:100])
