"""Stage pipeline — runs the analysis stages in order for one request.

Responsibilities:
  - Skip stages that are disabled or structurally inapplicable
  - Check the result cache before invoking each stage's executor
  - Store fresh executor output back into the cache
  - Record stage failures and keep going (a failed create ends the run)
  - Emit stage:start / stage:done|error events, then one complete event
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from cadstudio.config import settings
from cadstudio.orchestrator.schemas import AnalyzeOptions, ProgressEvent, StageError
from cadstudio.orchestrator.stages import (
    DEFAULT_STANDARD,
    STAGES,
    StageContext,
    StageSpec,
    has_geometry,
    is_direct_import,
)
from cadstudio.services.cache import ResultCache
from cadstudio.services.drawing_enrichment import DrawingEnricher
from cadstudio.services.runner import StageExecutor

logger = logging.getLogger(__name__)

EventSink = Callable[[ProgressEvent], Awaitable[None]]

NO_GEOMETRY_ERROR = "Config has no shapes/parts. Define geometry before Analyze."
DRAWING_IMPORT_ERROR = (
    "Drawing generation is not available for STEP template-only configs. "
    "Add [[shapes]] or [[parts]] before generating drawing."
)


@dataclass
class PipelineRun:
    """Transient state of one run. Never persisted."""
    stages: list[str] = field(default_factory=list)
    errors: list[StageError] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    cached: list[str] = field(default_factory=list)
    cancelled: bool = False

    def complete_payload(self) -> dict[str, Any]:
        return {
            "stages": list(self.stages),
            "errors": [e.model_dump() for e in self.errors],
            **self.outputs,
        }


async def _discard(event: ProgressEvent) -> None:
    return None


def find_svg_path(result: Any) -> str | None:
    if not isinstance(result, Mapping):
        return None
    direct = result.get("svg_path") or result.get("drawing_path")
    if direct:
        return direct
    for entry in result.get("drawing_paths") or []:
        if isinstance(entry, Mapping) and entry.get("format") == "svg" and entry.get("path"):
            return entry["path"]
    return None


class StagePipeline:
    """Sequential, cache-aware stage runner."""

    def __init__(
        self,
        cache: ResultCache,
        executor: StageExecutor,
        enricher: DrawingEnricher | None = None,
        *,
        output_dir: Path | None = None,
        stages: tuple[StageSpec, ...] = STAGES,
    ):
        self.cache = cache
        self.executor = executor
        self.enricher = enricher
        self.output_dir = Path(output_dir) if output_dir is not None else settings.output_dir
        self.stages = stages
        self._background: set[asyncio.Task] = set()

    async def run(
        self,
        config: Mapping[str, Any],
        options: AnalyzeOptions | None = None,
        *,
        shop_profile: dict[str, Any] | None = None,
        sink: EventSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> PipelineRun:
        options = options or AnalyzeOptions()
        config = dict(config)
        config["standard"] = options.standard or DEFAULT_STANDARD

        run = PipelineRun()
        ctx = StageContext(shop_profile=shop_profile, outputs=run.outputs)
        send = sink or _discard

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        async def emit(event: str, data: dict[str, Any]) -> None:
            if not cancelled():
                await send(ProgressEvent(event=event, data=data))

        logger.info("Pipeline start | stages=%s", ",".join(s.name for s in self.stages))

        for spec in self.stages:
            if cancelled():
                break
            if not spec.is_applicable(config, options):
                logger.info("Pipeline | %s skipped", spec.name)
                continue

            await emit("stage", {"stage": spec.name, "status": "start"})
            try:
                done = await self._run_stage(spec, config, options, ctx)
            except Exception as e:
                message = str(e) or e.__class__.__name__
                logger.warning("Pipeline | %s failed | %s", spec.name, message[:200])
                run.errors.append(StageError(stage=spec.name, error=message))
                await emit("stage", {"stage": spec.name, "status": "error", "error": message})
                if spec.name == "create":
                    # Every later stage needs the model
                    break
                continue

            run.stages.append(spec.name)
            if done.get("cached"):
                run.cached.append(spec.name)
            await emit("stage", {"stage": spec.name, "status": "done", **done})

        if cancelled():
            run.cancelled = True
            logger.info("Pipeline cancelled | completed=%s", ",".join(run.stages))
            return run

        await emit("complete", run.complete_payload())
        logger.info(
            "Pipeline complete | stages=%s | errors=%d | cached=%d",
            ",".join(run.stages), len(run.errors), len(run.cached),
        )
        return run

    async def iter_events(
        self,
        config: Mapping[str, Any],
        options: AnalyzeOptions | None = None,
        *,
        shop_profile: dict[str, Any] | None = None,
    ) -> AsyncIterator[ProgressEvent]:
        """Yield the run's events. Closing the iterator cancels remaining stages."""
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        cancel = asyncio.Event()

        async def produce() -> None:
            try:
                await self.run(config, options, shop_profile=shop_profile, sink=queue.put, cancel_event=cancel)
            except Exception as e:
                logger.error("Pipeline crashed | %s", str(e)[:300])
                await queue.put(ProgressEvent(event="error", data={"error": str(e)}))
            finally:
                await queue.put(None)

        task = asyncio.create_task(produce())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                yield item
        finally:
            # An in-flight executor call is left to finish and populate the cache
            cancel.set()

    async def _run_stage(
        self,
        spec: StageSpec,
        config: dict[str, Any],
        options: AnalyzeOptions,
        ctx: StageContext,
    ) -> dict[str, Any]:
        """Run one stage. Returns extra fields for its done event."""
        if spec.name == "create":
            if is_direct_import(config):
                await self._inspect_source(config, ctx)
                return {"cached": False, "stepDirect": True}
            if not has_geometry(config):
                raise ValueError(NO_GEOMETRY_ERROR)
        elif spec.name == "drawing" and is_direct_import(config):
            raise ValueError(DRAWING_IMPORT_ERROR)

        try:
            key = self.cache.compute_key(spec.name, config, options.key_options(**spec.key_extras(ctx)))
        except (TypeError, ValueError) as e:
            # Unserializable input: run uncached
            logger.warning("Cache key unavailable | stage=%s | %s", spec.name, str(e)[:100])
            key = None
        lookup = await self.cache.get(key)
        if lookup.hit:
            self._adopt(spec, lookup.entry.result, ctx)
            return {"cached": True}

        payload = spec.build_input(config, options, ctx)
        result = await self.executor.execute(spec.script, payload, timeout=spec.timeout)
        if spec.name == "drawing":
            result = await self._enrich_drawing(result, payload, options)

        self._adopt(spec, result, ctx)
        await self.cache.put(key, result, spec.name)
        return {"cached": False}

    def _adopt(self, spec: StageSpec, result: Any, ctx: StageContext) -> None:
        if spec.name != "drawing":
            ctx.outputs[spec.output_key] = result
            return
        if not isinstance(result, Mapping):
            ctx.outputs["drawing"] = result
            return
        ctx.outputs["drawing"] = result.get("drawing") or result
        for extra in ("drawingSvg", "qa"):
            if result.get(extra):
                ctx.outputs[extra] = result[extra]

    async def _enrich_drawing(self, result: Any, payload: Mapping[str, Any], options: AnalyzeOptions) -> dict[str, Any]:
        """Best-effort post-process, preview and QA. Returns the cacheable composite."""
        composite: dict[str, Any] = {"drawing": result}
        svg_path = find_svg_path(result)
        if self.enricher is None or not svg_path:
            return composite

        plan = payload.get("drawing_plan")
        style = plan.get("style") if isinstance(plan, Mapping) else None
        profile = (style.get("stroke_profile") if isinstance(style, Mapping) else None) or "ks"

        try:
            await self.enricher.postprocess(svg_path, profile)
        except Exception as e:
            logger.debug("Drawing postprocess skipped | %s", str(e)[:200])

        try:
            composite["drawingSvg"] = await self.enricher.read_svg(svg_path)
        except Exception as e:
            logger.debug("Drawing SVG read skipped | %s", str(e)[:200])

        try:
            composite["qa"] = await self.enricher.score(svg_path, options.weights_preset)
        except Exception as e:
            logger.debug("Drawing QA skipped | %s", str(e)[:200])

        return composite

    async def _inspect_source(self, config: Mapping[str, Any], ctx: StageContext) -> None:
        """Direct-import create: inspect the external STEP file instead of building."""
        source = str(config["import"]["source_step"])
        inspected = await self.executor.execute(
            "inspect_model.py", {"file": source}, timeout=settings.inspect_timeout_seconds,
        )
        model = (inspected.get("model") if isinstance(inspected, Mapping) else None) or inspected
        if not isinstance(model, Mapping):
            model = {}

        name = config["import"].get("name") or Path(source.replace("\\", "/")).stem
        self._copy_source(source, name)

        ctx.outputs["model"] = {
            "success": True,
            "model": {**model, "name": name},
            "exports": [{"format": "step", "path": f"output/{name}.step"}],
            "stepDirect": True,
        }

    def _copy_source(self, source: str, name: str) -> None:
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, self.output_dir / f"{name}.step")
        except OSError as e:
            logger.debug("STEP copy skipped | %s", str(e)[:200])
