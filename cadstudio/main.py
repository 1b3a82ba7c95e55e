"""CAD Studio backend — FastAPI application entry point.

Provides /api/analyze (SSE progress stream) and the cache management endpoints.
"""

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from cadstudio.config import settings
from cadstudio.orchestrator.pipeline import StagePipeline
from cadstudio.orchestrator.schemas import STAGE_NAMES, AnalyzeRequest, ProgressEvent
from cadstudio.services.cache import ResultCache
from cadstudio.services.cache_backends import FileCacheBackend, create_cache_backend
from cadstudio.services.drawing_enrichment import DrawingEnricher
from cadstudio.services.loaders import (
    list_example_configs,
    load_config,
    load_shop_profile,
    resolve_config_path,
)
from cadstudio.services.runner import ScriptRunner

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("cadstudio")


# ═══════════════ RATE LIMITER ═══════════════

class RateLimiter:
    """Fixed-window rate limiter by IP."""

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def is_limited(self, ip: str) -> bool:
        now = time.monotonic()
        window_start = now - self.window
        hits = self._hits[ip]
        # Remove expired entries
        self._hits[ip] = [t for t in hits if t > window_start]
        if len(self._hits[ip]) >= self.max_requests:
            return True
        self._hits[ip].append(now)
        return False


rate_limiter = RateLimiter(settings.rate_limit_per_minute)
result_cache = ResultCache(create_cache_backend(settings), max_bytes=settings.cache_max_bytes)
script_runner = ScriptRunner()
stage_pipeline = StagePipeline(result_cache, script_runner, DrawingEnricher(script_runner))


def get_cache() -> ResultCache:
    return result_cache


def get_pipeline() -> StagePipeline:
    return stage_pipeline


# ═══════════════ LIFESPAN ═══════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("CAD Studio backend starting | root=%s", settings.resolved_root)

    # Initialize database (graceful degradation if unavailable)
    from cadstudio.database import close_db, init_db
    db_ok = await init_db()
    logger.info("Database: %s", "connected" if db_ok else "unavailable (continuing without)")

    # Connect cache backend (fall back to files if Redis is unavailable)
    if not await result_cache.backend.connect():
        result_cache.backend = FileCacheBackend(settings.resolved_cache_dir)
    logger.info("Result cache: %s backend", result_cache.backend.kind)

    yield

    await result_cache.drain()
    await result_cache.backend.disconnect()
    await close_db()
    logger.info("CAD Studio backend shutting down")


# ═══════════════ APP ═══════════════

app = FastAPI(
    title="CAD Studio API",
    description="Analysis pipeline orchestration for CAD configs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)


# ═══════════════ ENDPOINTS ═══════════════

@app.get("/api/health")
async def health(cache: ResultCache = Depends(get_cache)):
    return {
        "status": "ok",
        "root": str(settings.resolved_root),
        "cacheBackend": cache.backend.kind,
    }


@app.get("/api/examples")
async def examples():
    return list_example_configs(settings.resolved_root)


async def _log_analysis_history(record: dict[str, Any]):
    """Fire-and-forget background task to log the finished run to DB."""
    if "stages" not in record:
        return  # run never completed (client went away or config failed)
    try:
        from cadstudio.database import async_session_factory
        from cadstudio.models.analysis_history import AnalysisHistory

        async with async_session_factory() as session:
            session.add(AnalysisHistory(**record))
            await session.commit()
    except Exception as e:
        logger.debug("Analysis history logging skipped: %s", str(e)[:100])


@app.post("/api/analyze")
async def analyze(
    request: Request,
    background_tasks: BackgroundTasks,
    pipeline: StagePipeline = Depends(get_pipeline),
):
    """Run the analysis pipeline and stream progress as Server-Sent Events."""
    client_ip = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    if rate_limiter.is_limited(client_ip):
        return JSONResponse(status_code=429, content={"error": "Too many requests. Try again in a minute."})

    try:
        body = await request.json()
        analyze_req = AnalyzeRequest.model_validate(body)
    except (ValueError, ValidationError):
        return JSONResponse(status_code=400, content={"error": "Invalid request body."})

    if not analyze_req.config_path:
        return JSONResponse(status_code=400, content={"error": "configPath required"})

    try:
        full_path = resolve_config_path(settings.resolved_root, analyze_req.config_path)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    record: dict[str, Any] = {
        "config_path": analyze_req.config_path,
        "profile_name": analyze_req.profile_name or "",
        "client_ip_hash": hashlib.sha256(client_ip.encode()).hexdigest(),
    }

    async def event_stream():
        start = time.monotonic()
        try:
            config = await asyncio.to_thread(load_config, full_path)
        except Exception as e:
            logger.error("Config load failed | path=%s | %s", analyze_req.config_path, str(e)[:300])
            yield ProgressEvent(event="error", data={"error": str(e)}).to_sse()
            return

        shop_profile = await asyncio.to_thread(
            load_shop_profile, settings.resolved_root, analyze_req.profile_name,
        )
        cached: list[str] = []

        async for event in pipeline.iter_events(config, analyze_req.options, shop_profile=shop_profile):
            if event.event == "stage" and event.data.get("cached"):
                cached.append(event.data["stage"])
            if event.event == "complete":
                record.update(
                    stages=event.data["stages"],
                    errors=event.data["errors"],
                    cached_stages=cached,
                    execution_time_ms=int((time.monotonic() - start) * 1000),
                )
                logger.info(
                    "Analyze completed | path=%s | stages=%s | %dms | ip=%s",
                    analyze_req.config_path, ",".join(record["stages"]),
                    record["execution_time_ms"], client_ip,
                )
            yield event.to_sse()

    background_tasks.add_task(_log_analysis_history, record)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.get("/api/cache/stats")
async def cache_stats(cache: ResultCache = Depends(get_cache)):
    stats = await cache.stats()
    return stats.model_dump(by_alias=True)


@app.delete("/api/cache")
async def clear_cache(stage: str | None = None, cache: ResultCache = Depends(get_cache)):
    if stage and stage not in STAGE_NAMES:
        return JSONResponse(
            status_code=400,
            content={"error": f"Invalid stage. Allowed: {', '.join(STAGE_NAMES)}"},
        )
    result = await cache.clear(stage or None)
    return result.model_dump()
