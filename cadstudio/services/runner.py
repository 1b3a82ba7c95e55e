"""Async subprocess wrapper for the analysis scripts.

Two calling conventions:
  - execute(): JSON payload on stdin, JSON result on stdout (stage executors)
  - run_cli(): argv-style tools whose stdout is returned as text (enrichments)

Non-zero exit, timeout and unparseable output all raise ExecutorError.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Protocol

from cadstudio.config import settings

logger = logging.getLogger(__name__)


class ExecutorError(RuntimeError):
    """An analysis script failed or produced unusable output."""


class ExecutorTimeoutError(ExecutorError):
    """An analysis script exceeded its time limit and was killed."""


class StageExecutor(Protocol):
    async def execute(self, script: str, payload: Any, *, timeout: float | None = None) -> Any:
        ...


class ScriptRunner:
    """Runs ``<python> <root>/scripts/<script>`` as a child process."""

    def __init__(self, root: Path | None = None, python_executable: str | None = None):
        self.root = Path(root) if root is not None else settings.resolved_root
        self.python_executable = python_executable or settings.python_executable

    @property
    def scripts_dir(self) -> Path:
        return self.root / "scripts"

    async def execute(self, script: str, payload: Any, *, timeout: float | None = None) -> Any:
        """Send ``payload`` as JSON on stdin and parse stdout as JSON."""
        stdin = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        stdout = await self._run(script, [], stdin, timeout)
        return _parse_json_output(script, stdout)

    async def run_cli(self, script: str, args: list[str], *, timeout: float | None = None) -> str:
        """Run a script with command-line arguments and return its stdout."""
        return await self._run(script, args, None, timeout)

    async def _run(self, script: str, args: list[str], stdin: bytes | None, timeout: float | None) -> str:
        cmd = [self.python_executable, str(self.scripts_dir / script), *args]
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.root),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExecutorError(f"{script} could not be started: {e}") from e

        try:
            out, err = await asyncio.wait_for(proc.communicate(stdin), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            elapsed_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Script timeout | script=%s | %dms (limit %ss)", script, elapsed_ms, timeout)
            raise ExecutorTimeoutError(f"{script} timed out after {timeout}s")

        elapsed_ms = int((time.monotonic() - start) * 1000)
        stdout = out.decode("utf-8", errors="replace")
        stderr = err.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            logger.warning("Script failed | script=%s | exit=%d | %dms", script, proc.returncode, elapsed_ms)
            tail = f"{stderr[-300:]} {stdout[-300:]}".strip()
            raise ExecutorError(f"{script} exited {proc.returncode}: {tail}")

        logger.info("Script OK | script=%s | %dms", script, elapsed_ms)
        return stdout


def _parse_json_output(script: str, stdout: str) -> Any:
    """Parse the whole stdout, falling back to its last non-empty line."""
    text = stdout.strip()
    if not text:
        raise ExecutorError(f"{script} produced no output")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    last_line = text.splitlines()[-1].strip()
    try:
        return json.loads(last_line)
    except json.JSONDecodeError as e:
        raise ExecutorError(f"{script} output is not valid JSON: {e} | {text[-300:]}") from e
