#!/usr/bin/env python3
"""Analysis toolchain verification script — run on the machine that hosts the scripts.

Usage:
  1. Set FREECAD_ROOT (and optionally PYTHON_EXECUTABLE, CACHE_BACKEND) in .env
  2. Run: python scripts/verify_toolchain.py [configs/examples/some.toml]

Steps:
  Step 1: Verify .env configuration and stage scripts
  Step 2: Verify the result cache backend (write / read / clear)
  Step 3: Full pipeline run against an example config (optional)
"""

import asyncio
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def step_header(n: int, title: str) -> None:
    print(f"\n{'='*60}")
    print(f"  Step {n}: {title}")
    print(f"{'='*60}\n")


def ok(msg: str) -> None:
    print(f"  ✅ {msg}")


def fail(msg: str) -> None:
    print(f"  ❌ {msg}")


def info(msg: str) -> None:
    print(f"  ℹ️  {msg}")


async def step1_verify_env():
    step_header(1, "Verify .env Configuration")
    from cadstudio.config import settings
    from cadstudio.orchestrator.stages import STAGES

    root = settings.resolved_root
    if not root.is_dir():
        fail(f"FREECAD_ROOT: {root} does not exist")
        return False
    ok(f"FREECAD_ROOT: {root}")
    ok(f"Python executable: {settings.python_executable}")

    scripts = [spec.script for spec in STAGES] + ["inspect_model.py", "postprocess_svg.py", "qa_scorer.py"]
    missing = [s for s in scripts if not (root / "scripts" / s).is_file()]
    for script in scripts:
        if script in missing:
            fail(f"scripts/{script}: missing")
        else:
            ok(f"scripts/{script}")

    return not missing


async def step2_verify_cache():
    step_header(2, "Verify Result Cache Backend")
    from cadstudio.config import settings
    from cadstudio.services.cache import ResultCache
    from cadstudio.services.cache_backends import create_cache_backend

    backend = create_cache_backend(settings)
    if not await backend.connect():
        fail(f"{backend.kind} backend: connection failed")
        return False

    cache = ResultCache(backend, max_bytes=settings.cache_max_bytes)
    key = cache.compute_key("create", {"shapes": [{"type": "box", "verify": True}]})
    info(f"Backend: {backend.kind} | probe key={key}")

    await cache.put(key, {"probe": True}, "create")
    lookup = await cache.get(key)
    await cache.drain()

    try:
        if not lookup.hit:
            fail("Probe entry could not be read back")
            return False
        ok("Write / read round-trip")
        await backend.delete(key)
        stats = await cache.stats()
        ok(f"Stats: entries={stats.entries} bytes={stats.total_bytes} byStage={stats.by_stage}")
        return True
    finally:
        await backend.disconnect()


async def step3_full_pipeline(config_path: str):
    step_header(3, "Full Pipeline Run")
    from cadstudio.config import settings
    from cadstudio.orchestrator.pipeline import StagePipeline
    from cadstudio.services.cache import ResultCache
    from cadstudio.services.cache_backends import FileCacheBackend
    from cadstudio.services.drawing_enrichment import DrawingEnricher
    from cadstudio.services.loaders import load_config, resolve_config_path
    from cadstudio.services.runner import ScriptRunner

    config = load_config(resolve_config_path(settings.resolved_root, config_path))
    info(f"Config: {config_path}")

    runner = ScriptRunner()
    cache = ResultCache(FileCacheBackend(settings.resolved_cache_dir), max_bytes=settings.cache_max_bytes)
    pipeline = StagePipeline(cache, runner, DrawingEnricher(runner))

    async def show(event):
        data = event.data
        if event.event == "stage":
            suffix = " (cached)" if data.get("cached") else ""
            print(f"    - {data['stage']}: {data['status']}{suffix} {data.get('error', '')}")

    run = await pipeline.run(config, sink=show)
    await cache.drain()

    for err in run.errors:
        fail(f"{err.stage}: {err.error[:80]}")
    if "create" in run.stages:
        ok(f"Completed stages: {', '.join(run.stages)}")
        return not run.errors
    fail("Model creation failed")
    return False


async def main():
    print("\n🛠  CAD Studio Backend — Toolchain Verification")
    print("=" * 60)

    results = {}

    # Step 1: Verify env + scripts
    results[1] = await step1_verify_env()

    # Step 2: Cache backend
    results[2] = await step2_verify_cache()

    # Step 3: Full pipeline (needs a config path argument)
    if len(sys.argv) > 1 and results[1]:
        results[3] = await step3_full_pipeline(sys.argv[1])
    else:
        info("Skipping full pipeline run (pass a config path to enable it)")

    # Summary
    print(f"\n{'='*60}")
    print("  SUMMARY")
    print(f"{'='*60}")
    for step_n, passed in sorted(results.items()):
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"  Step {step_n}: {status}")

    total_passed = sum(1 for v in results.values() if v)
    total = len(results)
    print(f"\n  {total_passed}/{total} steps passed")
    print(f"{'='*60}\n")

    sys.exit(0 if all(results.values()) else 1)


if __name__ == "__main__":
    asyncio.run(main())
