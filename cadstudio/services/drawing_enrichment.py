"""Optional presentation enrichments for generated SVG drawings.

  - postprocess(): geometry/style repair pass (postprocess_svg.py)
  - read_svg():    SVG text for inline preview
  - score():       QA score (qa_scorer.py)

Each raises on failure; the pipeline decides that failures are ignorable.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

from cadstudio.config import settings
from cadstudio.services.runner import ExecutorError, ScriptRunner

logger = logging.getLogger(__name__)

_SCORE_RE = re.compile(r"QA Score:\s*(\d+)/100", re.IGNORECASE)
_PROFILE_RE = re.compile(r"weight_profile:\s*([a-z0-9_-]+)", re.IGNORECASE)


class DrawingEnricher:
    def __init__(self, runner: ScriptRunner, timeout: float | None = None):
        self.runner = runner
        self.timeout = timeout if timeout is not None else settings.enrichment_timeout_seconds

    def resolve(self, svg_path: str) -> Path:
        path = Path(svg_path.replace("\\", "/"))
        return path if path.is_absolute() else self.runner.root / path

    async def postprocess(self, svg_path: str, profile: str = "ks") -> dict[str, str]:
        """Repair the SVG in place and write a repair report next to it."""
        svg = self.resolve(svg_path)
        report = svg.with_name(f"{svg.stem}_repair_report.json")
        output = await self.runner.run_cli(
            "postprocess_svg.py",
            [str(svg), "-o", str(svg), "--report", str(report), "--profile", profile or "ks"],
            timeout=self.timeout,
        )
        return {"output": output, "reportPath": str(report)}

    async def read_svg(self, svg_path: str) -> str:
        return await asyncio.to_thread(self.resolve(svg_path).read_text, encoding="utf-8")

    async def score(self, svg_path: str, weights_preset: str | None = None) -> dict[str, Any]:
        """Run the QA scorer and parse ``QA Score: N/100`` from its output."""
        svg = self.resolve(svg_path)
        args = [str(svg)]
        if weights_preset:
            args += ["--weights-preset", str(weights_preset)]

        stdout = await self.runner.run_cli("qa_scorer.py", args, timeout=self.timeout)
        return parse_qa_output(stdout, svg.name)


def parse_qa_output(stdout: str, file_name: str) -> dict[str, Any]:
    score = _SCORE_RE.search(stdout)
    if not score:
        raise ExecutorError(f"qa_scorer output did not include score: {stdout[-300:]}")

    result: dict[str, Any] = {"score": int(score.group(1)), "file": file_name}
    profile = _PROFILE_RE.search(stdout)
    if profile:
        result["weightProfile"] = profile.group(1)
    return result
