"""Static stage table: create → drawing → dfm → tolerance → cost.

Each StageSpec names its executor script and timeout, decides whether it
applies to a config, and builds the executor input from the config, the
run options, and the outputs of earlier stages.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from cadstudio.config import settings
from cadstudio.orchestrator.schemas import AnalyzeOptions

DEFAULT_STANDARD = "KS"
DEFAULT_PROCESS = "machining"
DEFAULT_MATERIAL = "SS304"


@dataclass
class StageContext:
    """Per-run state visible to input builders."""
    shop_profile: dict[str, Any] | None = None
    outputs: dict[str, Any] = field(default_factory=dict)


InputBuilder = Callable[[Mapping[str, Any], AnalyzeOptions, StageContext], dict[str, Any]]
Applicability = Callable[[Mapping[str, Any], AnalyzeOptions], bool]
KeyExtras = Callable[[StageContext], dict[str, Any]]


@dataclass(frozen=True)
class StageSpec:
    name: str
    script: str
    timeout: float
    output_key: str
    build_input: InputBuilder
    is_applicable: Applicability
    key_extras: KeyExtras = lambda ctx: {}


# ═══════════════ CONFIG PREDICATES ═══════════════

def _non_empty_list(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0


def has_geometry(config: Mapping[str, Any]) -> bool:
    return _non_empty_list(config.get("shapes")) or _non_empty_list(config.get("parts"))


def is_direct_import(config: Mapping[str, Any]) -> bool:
    """Config points at an external STEP file and defines no geometry itself."""
    source = _mapping(config.get("import")).get("source_step")
    return not has_geometry(config) and bool(source)


def has_assembly(config: Mapping[str, Any]) -> bool:
    return bool(config.get("assembly")) and _non_empty_list(config.get("parts"))


def _mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _positive_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def dfm_score(ctx: StageContext) -> Any:
    dfm = ctx.outputs.get("dfm")
    return dfm.get("score") if isinstance(dfm, Mapping) else None


# ═══════════════ INPUT BUILDERS ═══════════════

def _create_input(config, options, ctx):
    return dict(config)


def _drawing_input(config, options, ctx):
    cfg = dict(config)
    drawing = _mapping(cfg.get("drawing"))
    if options.dxf_export:
        drawing["dxf"] = True
    cfg["drawing"] = drawing
    return cfg


def _dfm_input(config, options, ctx):
    cfg = dict(config)
    manufacturing = _mapping(cfg.get("manufacturing"))
    if options.process:
        manufacturing["process"] = options.process
    if options.material:
        manufacturing["material"] = options.material
    if not manufacturing.get("process"):
        manufacturing["process"] = DEFAULT_PROCESS
    cfg["manufacturing"] = manufacturing
    if ctx.shop_profile:
        cfg["shop_profile"] = ctx.shop_profile
    return cfg


def _tolerance_input(config, options, ctx):
    cfg = dict(config)
    tolerance = _mapping(cfg.get("tolerance"))
    if isinstance(options.monte_carlo, bool):
        tolerance["monte_carlo"] = options.monte_carlo
    samples = _positive_number(options.mc_samples)
    if samples is not None:
        tolerance["mc_samples"] = math.floor(samples)
    cfg["tolerance"] = tolerance
    return cfg


def _cost_input(config, options, ctx):
    manufacturing = _mapping(config.get("manufacturing"))
    cfg = dict(config)
    cfg["dfm_result"] = ctx.outputs.get("dfm")
    cfg["material"] = options.material or manufacturing.get("material") or DEFAULT_MATERIAL
    cfg["process"] = options.process or manufacturing.get("process") or DEFAULT_PROCESS
    cfg["batch_size"] = options.batch or 1
    if ctx.shop_profile:
        cfg["shop_profile"] = ctx.shop_profile
    return cfg


# ═══════════════ STAGE TABLE ═══════════════

STAGES: tuple[StageSpec, ...] = (
    StageSpec(
        name="create",
        script="create_model.py",
        timeout=settings.create_timeout_seconds,
        output_key="model",
        build_input=_create_input,
        is_applicable=lambda config, options: True,
    ),
    StageSpec(
        name="drawing",
        script="generate_drawing.py",
        timeout=settings.drawing_timeout_seconds,
        output_key="drawing",
        build_input=_drawing_input,
        is_applicable=lambda config, options: options.stage_enabled("drawing"),
    ),
    StageSpec(
        name="dfm",
        script="dfm_checker.py",
        timeout=settings.dfm_timeout_seconds,
        output_key="dfm",
        build_input=_dfm_input,
        is_applicable=lambda config, options: options.stage_enabled("dfm"),
        key_extras=lambda ctx: {"shopProfile": ctx.shop_profile},
    ),
    StageSpec(
        name="tolerance",
        script="tolerance_analysis.py",
        timeout=settings.tolerance_timeout_seconds,
        output_key="tolerance",
        build_input=_tolerance_input,
        is_applicable=lambda config, options: options.stage_enabled("tolerance") and has_assembly(config),
    ),
    StageSpec(
        name="cost",
        script="cost_estimator.py",
        timeout=settings.cost_timeout_seconds,
        output_key="cost",
        build_input=_cost_input,
        is_applicable=lambda config, options: options.stage_enabled("cost"),
        key_extras=lambda ctx: {"shopProfile": ctx.shop_profile, "dfm_score": dfm_score(ctx)},
    ),
)
