"""Async runner for external media command line tools."""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import Sequence
from dataclasses import dataclass

from resonance.errors import ExternalToolError
from resonance.logging import get_logger

logger = get_logger(__name__)

_STDERR_TAIL = 4000


@dataclass(slots=True, frozen=True)
class ToolResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


class ToolRunner:
    """Execute a tool, enforcing a timeout and killing it on cancellation.

    Non-zero exits and timeouts raise :class:`ExternalToolError` with the tool's
    stderr preserved.
    """

    def __init__(self, *, timeout_s: float = 900.0) -> None:
        self._timeout_s = timeout_s

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout_s: float | None = None,
        check: bool = True,
    ) -> ToolResult:
        argv = tuple(str(arg) for arg in args)
        if not argv:
            raise ValueError("empty command")
        tool = argv[0]
        command = shlex.join(argv)
        logger.info("Executing media tool: %s", command)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExternalToolError(tool, f"could not start: {exc}") from exc

        limit = timeout_s if timeout_s is not None else self._timeout_s
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), limit)
        except asyncio.TimeoutError as exc:
            await _terminate(process)
            logger.error("Media tool timed out after %ss: %s", limit, command)
            raise ExternalToolError(tool, f"timed out after {limit:g}s") from exc
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        result = ToolResult(
            args=argv,
            returncode=int(process.returncode or 0),
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            stderr = result.stderr.strip()[-_STDERR_TAIL:]
            logger.error("Media tool failed (%s) with exit %s", command, result.returncode)
            raise ExternalToolError(
                tool,
                f"exited with status {result.returncode}",
                exit_code=result.returncode,
                stderr=stderr,
            )
        return result


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


__all__ = ["ToolResult", "ToolRunner"]
