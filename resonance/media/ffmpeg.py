"""ffprobe/ffmpeg helpers for metadata, streaming segments, downloads, art and loudness."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from pathlib import Path

from resonance.errors import ExternalToolError
from resonance.media.tools import ToolRunner
from resonance.models import TranscodeFormat

_LOSSLESS_CODECS = frozenset({"flac", "alac", "wavpack", "ape", "tta", "mlp", "truehd"})

_INTEGRATED_RE = re.compile(r"I:\s*(-?\d+(?:\.\d+)?)\s*LUFS")
_TRUE_PEAK_RE = re.compile(r"Peak:\s*(-?\d+(?:\.\d+)?)\s*dBFS")
_LRA_RE = re.compile(r"LRA:\s*(-?\d+(?:\.\d+)?)\s*LU\b")

_NO_ARTWORK_MARKERS = (
    "Output file is empty",
    "does not contain any stream",
)

HLS_PLAYLIST_NAME = "playlist.m3u8"
HLS_INIT_NAME = "init.mp4"
HLS_SEGMENT_PATTERN = "segment_%03d.m4s"


@dataclass(slots=True, frozen=True)
class AudioMetadata:
    duration_ms: int
    sample_rate: int | None
    channels: int | None
    codec_name: str | None

    @property
    def is_lossless(self) -> bool:
        codec = (self.codec_name or "").lower()
        return codec.startswith("pcm_") or codec in _LOSSLESS_CODECS


@dataclass(slots=True, frozen=True)
class LoudnessMeasurement:
    integrated_lufs: float
    true_peak_dbfs: float | None
    loudness_range_lu: float | None


@dataclass(slots=True, frozen=True)
class HlsOutput:
    playlist: Path
    files: tuple[Path, ...]

    @property
    def segment_count(self) -> int:
        return sum(1 for path in self.files if path.suffix == ".m4s")


def parse_probe_output(stdout: str) -> AudioMetadata:
    """Build :class:`AudioMetadata` from ``ffprobe -print_format json`` output."""

    try:
        data = json.loads(stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ExternalToolError("ffprobe", f"unparseable output: {exc}") from exc
    streams = data.get("streams") or []
    audio = next((s for s in streams if s.get("codec_type", "audio") == "audio"), None)
    if audio is None:
        raise ExternalToolError("ffprobe", "no audio stream found")
    raw_duration = audio.get("duration") or (data.get("format") or {}).get("duration")
    try:
        duration_s = float(raw_duration)
    except (TypeError, ValueError) as exc:
        raise ExternalToolError("ffprobe", "missing duration") from exc
    return AudioMetadata(
        duration_ms=int(math.floor(duration_s * 1000)),
        sample_rate=_optional_int(audio.get("sample_rate")),
        channels=_optional_int(audio.get("channels")),
        codec_name=audio.get("codec_name"),
    )


def parse_loudness_output(stderr: str) -> LoudnessMeasurement:
    """Read the ebur128 summary block; the integrated value is mandatory."""

    summary_start = stderr.rfind("Summary:")
    text = stderr[summary_start:] if summary_start >= 0 else stderr
    integrated = _INTEGRATED_RE.findall(text)
    if not integrated:
        raise ExternalToolError("ffmpeg", "integrated loudness missing from ebur128 output")
    peaks = _TRUE_PEAK_RE.findall(text)
    ranges = _LRA_RE.findall(text)
    return LoudnessMeasurement(
        integrated_lufs=float(integrated[-1]),
        true_peak_dbfs=float(peaks[-1]) if peaks else None,
        loudness_range_lu=float(ranges[-1]) if ranges else None,
    )


def _optional_int(value: object) -> int | None:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


class FFmpeg:
    def __init__(self, runner: ToolRunner, *, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe") -> None:
        self._runner = runner
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe

    async def probe(self, source: Path) -> AudioMetadata:
        result = await self._runner.run(
            [
                self._ffprobe,
                "-v", "error",
                "-print_format", "json",
                "-show_format",
                "-show_streams",
                "-select_streams", "a:0",
                str(source),
            ]
        )
        return parse_probe_output(result.stdout)

    async def transcode_hls(
        self, source: Path, output_dir: Path, fmt: TranscodeFormat
    ) -> HlsOutput:
        """Segment ``source`` into fMP4 HLS under ``output_dir``."""

        output_dir.mkdir(parents=True, exist_ok=True)
        playlist = output_dir / HLS_PLAYLIST_NAME
        if fmt is TranscodeFormat.HLS_OPUS:
            codec = ["-c:a", "libopus", "-b:a", "160k"]
            segment_s = "6"
            extra = ["-movflags", "+faststart+frag_keyframe", "-frag_duration", "2000000"]
        elif fmt is TranscodeFormat.HLS_AAC:
            codec = ["-c:a", "aac", "-b:a", "256k"]
            segment_s = "6"
            extra = []
        elif fmt is TranscodeFormat.HLS_ALAC:
            codec = ["-c:a", "alac"]
            segment_s = "10"
            extra = ["-hls_playlist_type", "vod"]
        else:
            raise ValueError(f"{fmt.value} is not a streaming format")
        await self._runner.run(
            [
                self._ffmpeg,
                "-y",
                "-i", str(source),
                *codec,
                "-vn",
                "-f", "hls",
                "-hls_time", segment_s,
                "-hls_list_size", "0",
                "-hls_segment_type", "fmp4",
                "-hls_fmp4_init_filename", HLS_INIT_NAME,
                "-hls_segment_filename", str(output_dir / HLS_SEGMENT_PATTERN),
                *extra,
                str(playlist),
            ]
        )
        if not playlist.exists():
            raise ExternalToolError("ffmpeg", "HLS playlist was not written")
        files = tuple(sorted(path for path in output_dir.iterdir() if path.is_file()))
        return HlsOutput(playlist=playlist, files=files)

    async def transcode_mp3(self, source: Path, target: Path) -> Path:
        await self._runner.run(
            [
                self._ffmpeg,
                "-y",
                "-i", str(source),
                "-vn",
                "-c:a", "libmp3lame",
                "-b:a", "320k",
                str(target),
            ]
        )
        if not target.exists() or target.stat().st_size == 0:
            raise ExternalToolError("ffmpeg", "MP3 output is empty")
        return target

    async def extract_artwork(self, source: Path, target: Path) -> bool:
        """Copy the embedded picture to ``target``; ``False`` when the file has none."""

        result = await self._runner.run(
            [self._ffmpeg, "-y", "-i", str(source), "-an", "-vcodec", "copy", str(target)],
            check=False,
        )
        if any(marker in result.stderr for marker in _NO_ARTWORK_MARKERS):
            target.unlink(missing_ok=True)
            return False
        if result.returncode != 0:
            raise ExternalToolError(
                "ffmpeg",
                f"exited with status {result.returncode}",
                exit_code=result.returncode,
                stderr=result.stderr.strip()[-4000:],
            )
        return target.exists() and target.stat().st_size > 0

    async def resize_image(self, source: Path, target: Path, width: int, height: int) -> Path:
        scale = (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
        )
        await self._runner.run(
            [self._ffmpeg, "-y", "-i", str(source), "-vf", scale, "-q:v", "2", str(target)]
        )
        return target

    async def analyze_loudness(self, source: Path) -> LoudnessMeasurement:
        result = await self._runner.run(
            [
                self._ffmpeg,
                "-nostats",
                "-i", str(source),
                "-af", "ebur128=peak=true",
                "-f", "null",
                "-",
            ]
        )
        return parse_loudness_output(result.stderr)


__all__ = [
    "AudioMetadata",
    "FFmpeg",
    "HLS_PLAYLIST_NAME",
    "HlsOutput",
    "LoudnessMeasurement",
    "parse_loudness_output",
    "parse_probe_output",
]
