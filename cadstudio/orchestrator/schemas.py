"""Pydantic models for API input/output — shared by the cache and the pipeline.

Split into: request inputs, cache records, and progress events.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field

STAGE_NAMES = ("create", "drawing", "dfm", "tolerance", "cost")


# ═══════════════ FRONTEND REQUEST ═══════════════

class AnalyzeOptions(BaseModel):
    """Per-run options. Accepts the frontend's camelCase names and snake_case."""

    model_config = {"populate_by_name": True}

    # Stage toggles; only an explicit false disables a stage
    drawing: bool | None = None
    dfm: bool | None = None
    tolerance: bool | None = None
    cost: bool | None = None

    process: str | None = None
    material: str | None = None
    batch: int | None = None
    dxf_export: bool | None = Field(default=None, alias="dxfExport")
    monte_carlo: bool | None = Field(default=None, alias="monteCarlo")
    mc_samples: Any = Field(default=None, alias="mcSamples")
    weights_preset: str | None = Field(default=None, alias="weightsPreset")
    standard: str | None = None

    def stage_enabled(self, stage: str) -> bool:
        return getattr(self, stage, None) is not False

    def key_options(self, **extra: Any) -> dict[str, Any]:
        """Runtime options in the shape the cache-key overlay expects."""
        opts: dict[str, Any] = {
            "process": self.process,
            "material": self.material,
            "batch": self.batch,
            "dxfExport": self.dxf_export,
            "monteCarlo": self.monte_carlo,
            "mcSamples": self.mc_samples,
        }
        opts.update(extra)
        return opts


class AnalyzeRequest(BaseModel):
    model_config = {"populate_by_name": True}

    config_path: str | None = Field(default=None, alias="configPath")
    options: AnalyzeOptions = Field(default_factory=AnalyzeOptions)
    profile_name: str | None = Field(default=None, alias="profileName")


# ═══════════════ CACHE RECORDS ═══════════════

class CacheEntry(BaseModel):
    """Persisted stage result. ``timestamp`` is epoch milliseconds."""
    result: Any = None
    stage: str = ""
    timestamp: int = 0


class CacheLookup(BaseModel):
    hit: bool = False
    entry: CacheEntry | None = None


class CacheStats(BaseModel):
    model_config = {"populate_by_name": True}

    entries: int = 0
    total_bytes: int = Field(default=0, alias="totalBytes")
    by_stage: dict[str, int] = Field(default_factory=dict, alias="byStage")


class ClearResult(BaseModel):
    deleted: int = 0


# ═══════════════ PROGRESS EVENTS ═══════════════

class StageError(BaseModel):
    stage: str
    error: str


class ProgressEvent(BaseModel):
    """One record of the run's event stream."""
    event: Literal["stage", "complete", "error"]
    data: dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"
