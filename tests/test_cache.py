"""Tests for the analysis result cache — key derivation, storage, eviction."""

import json
import os
import time

import pytest

from cadstudio.services.cache import (
    OPTION_OVERLAYS,
    STAGE_FIELDS,
    ResultCache,
    apply_overlays,
    canonical_json,
    compute_key,
)
from cadstudio.services.cache_backends import FileCacheBackend

MIB = 1024 * 1024


def _sparse_file(path, size):
    with open(path, "wb") as f:
        f.truncate(size)


class TestCacheKeyGeneration:
    def test_key_format(self, sample_config):
        key = compute_key("create", sample_config)
        stage, digest = key.split("-")
        assert stage == "create"
        assert len(digest) == 16
        int(digest, 16)

    def test_key_deterministic(self, sample_config):
        assert compute_key("dfm", sample_config, {}) == compute_key("dfm", sample_config, {})

    def test_key_order_independent(self):
        """Keys are sorted at every level, so order shouldn't matter."""
        config_a = {
            "operations": [{"kind": "cut"}],
            "shapes": [{"type": "box", "width": 10}],
            "manufacturing": {"process": "machining", "material": "SS304"},
        }
        config_b = {
            "manufacturing": {"material": "SS304", "process": "machining"},
            "shapes": [{"width": 10, "type": "box"}],
            "operations": [{"kind": "cut"}],
        }
        options = {"process": "casting", "material": "A36", "shopProfile": "shop_a"}
        for stage in STAGE_FIELDS:
            assert compute_key(stage, config_a, options) == compute_key(stage, config_b, options)

    def test_array_order_matters(self):
        key1 = compute_key("create", {"shapes": [{"id": "a"}, {"id": "b"}]})
        key2 = compute_key("create", {"shapes": [{"id": "b"}, {"id": "a"}]})
        assert key1 != key2

    def test_unknown_stage_returns_none(self, sample_config):
        assert compute_key("not-a-stage", sample_config, {}) is None

    def test_drawing_fields_do_not_affect_cost_key(self, sample_config):
        changed = {**sample_config, "drawing": {"views": ["front"]}, "drawing_plan": {"style": {}}}
        assert compute_key("cost", sample_config) == compute_key("cost", changed)

    def test_drawing_fields_affect_drawing_key(self, sample_config):
        changed = {**sample_config, "drawing": {"views": ["front"]}}
        assert compute_key("drawing", sample_config) != compute_key("drawing", changed)

    def test_material_option_affects_cost_key(self, sample_config):
        key1 = compute_key("cost", sample_config, {"material": "SS304"})
        key2 = compute_key("cost", sample_config, {"material": "AL6061"})
        assert key1 != key2

    def test_dfm_score_affects_cost_key_only(self, sample_config):
        assert compute_key("cost", sample_config, {"dfm_score": 80}) != compute_key(
            "cost", sample_config, {"dfm_score": 60}
        )
        assert compute_key("dfm", sample_config, {"dfm_score": 80}) == compute_key(
            "dfm", sample_config, {"dfm_score": 60}
        )

    def test_tolerance_ignores_shapes(self, sample_config):
        changed = {**sample_config, "shapes": [{"type": "sphere"}]}
        assert compute_key("tolerance", sample_config) == compute_key("tolerance", changed)

    def test_null_field_is_selected(self):
        assert compute_key("create", {"export": None}) != compute_key("create", {})

    def test_cache_method_matches_function(self, result_cache, sample_config):
        assert result_cache.compute_key("dfm", sample_config, {"batch": 5}) == compute_key(
            "dfm", sample_config, {"batch": 5}
        )


class TestOptionOverlays:
    def test_process_and_material_go_to_both_targets(self):
        merged = apply_overlays({"manufacturing": {"tolerance_class": "m"}}, {"process": "casting", "material": "A36"})
        assert merged["process"] == "casting"
        assert merged["material"] == "A36"
        assert merged["manufacturing"] == {"tolerance_class": "m", "process": "casting", "material": "A36"}

    def test_config_not_mutated(self):
        config = {"manufacturing": {"process": "machining"}}
        apply_overlays(config, {"process": "casting"})
        assert config == {"manufacturing": {"process": "machining"}}

    def test_renamed_options(self):
        merged = apply_overlays({}, {"batch": 50, "shopProfile": {"name": "shop_a"}})
        assert merged["batch_size"] == 50
        assert merged["shop_profile"] == {"name": "shop_a"}
        assert "batch" not in merged

    def test_falsy_values_skipped_for_truthy_options(self):
        merged = apply_overlays({"process": "milling"}, {"process": "", "batch": 0, "shopProfile": None})
        assert merged == {"process": "milling"}

    def test_present_options_pass_false_and_zero(self):
        merged = apply_overlays({}, {"dxfExport": False, "monteCarlo": False, "mcSamples": 0, "dfm_score": 0})
        assert merged == {"dxfExport": False, "monteCarlo": False, "mcSamples": 0, "dfm_score": 0}

    def test_none_values_skipped(self):
        merged = apply_overlays({}, {"dxfExport": None, "monteCarlo": None, "mcSamples": None, "dfm_score": None})
        assert merged == {}

    def test_overlay_table_is_fixed(self):
        assert [o.option for o in OPTION_OVERLAYS] == [
            "process", "material", "batch", "dxfExport",
            "shopProfile", "dfm_score", "monteCarlo", "mcSamples",
        ]


class TestCanonicalJson:
    def test_nested_keys_sorted(self):
        assert canonical_json({"b": {"d": 1, "c": 2}, "a": [3, {"f": 0, "e": 1}]}) == (
            '{"a":[3,{"e":1,"f":0}],"b":{"c":2,"d":1}}'
        )

    def test_non_ascii_kept(self):
        assert canonical_json({"name": "브래킷"}) == '{"name":"브래킷"}'


class TestResultCacheStorage:
    @pytest.mark.asyncio
    async def test_put_and_get(self, result_cache):
        key = compute_key("create", {"shapes": [{"type": "cylinder"}]})
        result = {"model_path": "output/a.step"}

        assert (await result_cache.get(key)).hit is False

        await result_cache.put(key, result, "create")
        lookup = await result_cache.get(key)
        await result_cache.drain()

        assert lookup.hit is True
        assert lookup.entry.result == result
        assert lookup.entry.stage == "create"
        assert isinstance(lookup.entry.timestamp, int)
        assert abs(lookup.entry.timestamp - time.time() * 1000) < 60_000

    @pytest.mark.asyncio
    async def test_record_file_layout(self, result_cache, cache_dir):
        await result_cache.put("dfm-0123456789abcdef", {"score": 90}, "dfm")
        await result_cache.drain()
        data = json.loads((cache_dir / "dfm-0123456789abcdef.json").read_text())
        assert data["result"] == {"score": 90}
        assert data["stage"] == "dfm"

    @pytest.mark.asyncio
    async def test_overwrite(self, result_cache):
        await result_cache.put("cost-aaaaaaaaaaaaaaaa", {"v": 1}, "cost")
        await result_cache.put("cost-aaaaaaaaaaaaaaaa", {"v": 2}, "cost")
        await result_cache.drain()
        lookup = await result_cache.get("cost-aaaaaaaaaaaaaaaa")
        assert lookup.entry.result == {"v": 2}

    @pytest.mark.asyncio
    async def test_get_miss(self, result_cache):
        lookup = await result_cache.get("create-ffffffffffffffff")
        assert lookup.hit is False
        assert lookup.entry is None

    @pytest.mark.asyncio
    async def test_empty_key_is_miss(self, result_cache):
        assert (await result_cache.get(None)).hit is False
        assert (await result_cache.get("")).hit is False

    @pytest.mark.asyncio
    async def test_put_without_key_is_noop(self, result_cache, cache_dir):
        await result_cache.put(None, {"v": 1}, "create")
        assert not cache_dir.exists()

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_miss(self, result_cache, cache_dir):
        cache_dir.mkdir(parents=True)
        (cache_dir / "create-invalid.json").write_text("{not json")
        (cache_dir / "dfm-notanobject.json").write_text("[1, 2, 3]")

        assert (await result_cache.get("create-invalid")).hit is False
        assert (await result_cache.get("dfm-notanobject")).hit is False


class TestEviction:
    @pytest.mark.asyncio
    async def test_evicts_oldest_first_until_within_budget(self, result_cache, cache_dir):
        cache_dir.mkdir(parents=True)
        now = time.time()
        for name, age in (("create-old", 30), ("dfm-mid", 20), ("cost-new", 10)):
            path = cache_dir / f"{name}.json"
            _sparse_file(path, 220 * MIB)
            os.utime(path, (now - age, now - age))

        removed = await result_cache.evict_if_needed()
        stats = await result_cache.stats()

        assert removed == 1
        assert stats.total_bytes <= 500 * MIB
        assert stats.entries < 3
        assert not (cache_dir / "create-old.json").exists()
        assert (cache_dir / "dfm-mid.json").exists()
        assert (cache_dir / "cost-new.json").exists()

    @pytest.mark.asyncio
    async def test_within_budget_is_noop(self, result_cache):
        await result_cache.put("create-1111111111111111", {"a": 1}, "create")
        await result_cache.drain()
        assert await result_cache.evict_if_needed() == 0
        assert (await result_cache.stats()).entries == 1

    @pytest.mark.asyncio
    async def test_put_triggers_background_eviction(self, cache_dir):
        cache = ResultCache(FileCacheBackend(cache_dir), max_bytes=200)
        await cache.put("create-aaaaaaaaaaaaaaaa", {"blob": "x" * 120}, "create")
        await cache.drain()
        os.utime(cache_dir / "create-aaaaaaaaaaaaaaaa.json", (time.time() - 60, time.time() - 60))

        await cache.put("dfm-bbbbbbbbbbbbbbbb", {"blob": "y" * 120}, "dfm")
        await cache.drain()

        assert (await cache.get("create-aaaaaaaaaaaaaaaa")).hit is False
        assert (await cache.get("dfm-bbbbbbbbbbbbbbbb")).hit is True

    @pytest.mark.asyncio
    async def test_eviction_skips_failed_deletes(self, cache_dir):
        class StickyBackend(FileCacheBackend):
            async def delete(self, name):
                if name == "create-old":
                    raise PermissionError(name)
                return await super().delete(name)

        cache = ResultCache(StickyBackend(cache_dir), max_bytes=100)
        cache_dir.mkdir(parents=True)
        now = time.time()
        for name, age in (("create-old", 30), ("dfm-mid", 20), ("cost-new", 10)):
            path = cache_dir / f"{name}.json"
            path.write_bytes(b"x" * 60)
            os.utime(path, (now - age, now - age))

        removed = await cache.evict_if_needed()

        assert removed == 2
        assert (cache_dir / "create-old.json").exists()
        assert not (cache_dir / "dfm-mid.json").exists()
        assert not (cache_dir / "cost-new.json").exists()


class TestStatsAndClear:
    @pytest.mark.asyncio
    async def test_stats_by_stage(self, result_cache):
        await result_cache.put(compute_key("create", {"shapes": [{"type": "box"}]}), {"ok": 1}, "create")
        await result_cache.put(compute_key("dfm", {"shapes": [{"type": "box"}]}), {"ok": 2}, "dfm")
        await result_cache.drain()

        stats = await result_cache.stats()
        assert stats.entries == 2
        assert stats.total_bytes > 0
        assert stats.by_stage == {"create": 1, "dfm": 1}
        assert stats.model_dump(by_alias=True).keys() == {"entries", "totalBytes", "byStage"}

    @pytest.mark.asyncio
    async def test_clear_by_stage(self, result_cache):
        await result_cache.put(compute_key("create", {"shapes": [{"type": "box"}]}), {"ok": 1}, "create")
        await result_cache.put(compute_key("dfm", {"shapes": [{"type": "box"}]}), {"ok": 2}, "dfm")
        await result_cache.drain()

        cleared = await result_cache.clear("create")
        stats = await result_cache.stats()
        assert cleared.deleted == 1
        assert stats.by_stage == {"dfm": 1}

        cleared = await result_cache.clear()
        assert cleared.deleted == 1
        assert (await result_cache.stats()).entries == 0

    @pytest.mark.asyncio
    async def test_empty_store(self, result_cache):
        stats = await result_cache.stats()
        assert stats.entries == 0
        assert stats.total_bytes == 0
        assert (await result_cache.clear()).deleted == 0


class TestInaccessibleStore:
    @pytest.fixture
    def broken_cache(self, tmp_path):
        not_a_dir = tmp_path / "not-a-dir"
        not_a_dir.write_text("plain file")
        return ResultCache(FileCacheBackend(not_a_dir))

    @pytest.mark.asyncio
    async def test_stats_zeroed(self, broken_cache):
        stats = await broken_cache.stats()
        assert stats.entries == 0
        assert stats.total_bytes == 0
        assert stats.by_stage == {}

    @pytest.mark.asyncio
    async def test_clear_zeroed(self, broken_cache):
        assert (await broken_cache.clear("create")).deleted == 0

    @pytest.mark.asyncio
    async def test_get_and_put_degrade(self, broken_cache):
        await broken_cache.put("create-aaaaaaaaaaaaaaaa", {"ok": 1}, "create")
        await broken_cache.drain()
        assert (await broken_cache.get("create-aaaaaaaaaaaaaaaa")).hit is False
