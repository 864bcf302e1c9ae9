"""audiowaveform wrapper producing peak JSON and a PNG preview."""

from __future__ import annotations

import json
from pathlib import Path

from resonance.errors import ExternalToolError
from resonance.media.tools import ToolRunner

PIXELS_PER_SECOND = 256
PNG_WIDTH = 1800
PNG_HEIGHT = 140


class AudioWaveform:
    def __init__(
        self,
        runner: ToolRunner,
        *,
        binary: str = "audiowaveform",
        pixels_per_second: int = PIXELS_PER_SECOND,
    ) -> None:
        self._runner = runner
        self._binary = binary
        self._pixels_per_second = max(1, pixels_per_second)

    async def generate_json(self, source: Path, target: Path) -> Path:
        await self._runner.run(
            [
                self._binary,
                "-i", str(source),
                "-o", str(target),
                "--pixels-per-second", str(self._pixels_per_second),
                "--bits", "8",
            ]
        )
        _validate_peaks(target)
        return target

    async def generate_png(self, source: Path, target: Path) -> Path:
        await self._runner.run(
            [
                self._binary,
                "-i", str(source),
                "-o", str(target),
                "--width", str(PNG_WIDTH),
                "--height", str(PNG_HEIGHT),
                "--no-axis-labels",
            ]
        )
        if not target.exists() or target.stat().st_size == 0:
            raise ExternalToolError("audiowaveform", "PNG preview was not written")
        return target


def _validate_peaks(path: Path) -> None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ExternalToolError("audiowaveform", f"unreadable peak data: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("data"), list):
        raise ExternalToolError("audiowaveform", "peak data has no 'data' array")


__all__ = ["AudioWaveform"]
