from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx
import pytest

from resonance.config import FingerprintConfig
from resonance.errors import ExternalToolError
from resonance.media.ffmpeg import FFmpeg, parse_loudness_output, parse_probe_output
from resonance.media.fingerprint import (
    AcoustIdClient,
    Fingerprint,
    parse_acoustid_response,
    parse_fpcalc_output,
)
from resonance.media.tools import ToolResult, ToolRunner
from resonance.media.waveform import AudioWaveform
from resonance.models import TranscodeFormat

EBUR128_SUMMARY = """
[Parsed_ebur128_0 @ 0x5581] Summary:

  Integrated loudness:
    I:         -14.3 LUFS
    Threshold: -24.6 LUFS

  Loudness range:
    LRA:         6.1 LU
    Threshold: -34.5 LUFS
    LRA low:   -19.4 LUFS
    LRA high:  -13.3 LUFS

  True peak:
    Peak:       -0.8 dBFS
"""


class ScriptedRunner:
    """Stand-in for :class:`ToolRunner` that records argv and replays canned output."""

    def __init__(
        self,
        *,
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
        side_effect: Callable[[Sequence[str]], None] | None = None,
    ) -> None:
        self.calls: list[list[str]] = []
        self._result = (stdout, stderr, returncode)
        self._side_effect = side_effect

    async def run(self, args: Sequence[str], *, timeout_s: float | None = None, check: bool = True):
        argv = [str(arg) for arg in args]
        self.calls.append(argv)
        if self._side_effect is not None:
            self._side_effect(argv)
        stdout, stderr, returncode = self._result
        return ToolResult(args=tuple(argv), returncode=returncode, stdout=stdout, stderr=stderr)


def test_parse_probe_output_reads_audio_stream() -> None:
    stdout = json.dumps(
        {
            "streams": [
                {
                    "codec_type": "audio",
                    "codec_name": "flac",
                    "sample_rate": "48000",
                    "channels": 2,
                    "duration": "215.4567",
                }
            ],
            "format": {"duration": "215.50"},
        }
    )

    metadata = parse_probe_output(stdout)

    assert metadata.duration_ms == 215_456
    assert metadata.sample_rate == 48000
    assert metadata.channels == 2
    assert metadata.is_lossless


def test_parse_probe_output_falls_back_to_format_duration() -> None:
    stdout = json.dumps(
        {"streams": [{"codec_name": "mp3", "sample_rate": "44100"}], "format": {"duration": "3.5"}}
    )

    metadata = parse_probe_output(stdout)

    assert metadata.duration_ms == 3500
    assert not metadata.is_lossless


@pytest.mark.parametrize(
    "stdout",
    ["not json", json.dumps({"streams": []}), json.dumps({"streams": [{"codec_name": "mp3"}]})],
)
def test_parse_probe_output_rejects_unusable_output(stdout: str) -> None:
    with pytest.raises(ExternalToolError):
        parse_probe_output(stdout)


def test_parse_loudness_output_reads_summary_block() -> None:
    noisy = "[Parsed_ebur128_0] t: 0.1 M: -20.0 S: -120.7 I: -19.0 LUFS LRA: 0.0 LU\n"

    measurement = parse_loudness_output(noisy + EBUR128_SUMMARY)

    assert measurement.integrated_lufs == pytest.approx(-14.3)
    assert measurement.loudness_range_lu == pytest.approx(6.1)
    assert measurement.true_peak_dbfs == pytest.approx(-0.8)


def test_parse_loudness_output_requires_integrated_value() -> None:
    with pytest.raises(ExternalToolError):
        parse_loudness_output("Summary:\n  True peak:\n    Peak: -1.0 dBFS\n")


def test_parse_fpcalc_output_floors_duration() -> None:
    result = parse_fpcalc_output(json.dumps({"duration": 183.92, "fingerprint": "AQADtEm"}))

    assert result == Fingerprint(fingerprint="AQADtEm", duration_s=183)


@pytest.mark.parametrize(
    "stdout",
    ["", json.dumps({"duration": 12.0}), json.dumps({"fingerprint": "AQAD"})],
)
def test_parse_fpcalc_output_rejects_incomplete_output(stdout: str) -> None:
    with pytest.raises(ExternalToolError):
        parse_fpcalc_output(stdout)


def test_parse_acoustid_response_picks_best_result() -> None:
    data = {
        "status": "ok",
        "results": [
            {"id": "low", "score": 0.4, "recordings": [{"id": "mb-low"}]},
            {"id": "high", "score": 0.93, "recordings": [{"id": "mb-1"}, {"id": "mb-2"}]},
        ],
    }

    match = parse_acoustid_response(data)

    assert match is not None
    assert (match.acoustid, match.musicbrainz_id, match.score) == ("high", "mb-1", 0.93)


def test_parse_acoustid_response_without_results() -> None:
    assert parse_acoustid_response({"status": "ok", "results": []}) is None
    assert parse_acoustid_response({"status": "error", "error": {"message": "invalid"}}) is None


@pytest.mark.asyncio
async def test_tool_runner_raises_with_stderr_on_failure() -> None:
    runner = ToolRunner(timeout_s=5)

    with pytest.raises(ExternalToolError) as excinfo:
        await runner.run(["sh", "-c", "echo 'moov atom not found' >&2; exit 3"])

    assert excinfo.value.exit_code == 3
    assert "moov atom not found" in str(excinfo.value)


@pytest.mark.asyncio
async def test_tool_runner_returns_output_and_enforces_timeout() -> None:
    runner = ToolRunner(timeout_s=5)

    result = await runner.run(["sh", "-c", "printf ok"])
    assert result.stdout == "ok"

    with pytest.raises(ExternalToolError) as excinfo:
        await runner.run(["sh", "-c", "sleep 5"], timeout_s=0.2)
    assert "timed out" in str(excinfo.value)


@pytest.mark.asyncio
async def test_tool_runner_reports_missing_binary() -> None:
    with pytest.raises(ExternalToolError):
        await ToolRunner().run(["resonance-no-such-tool", "--version"])


@pytest.mark.asyncio
async def test_extract_artwork_without_picture_returns_false(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        stderr="Output #0, image2: Output file is empty, nothing was encoded", returncode=1
    )
    ffmpeg = FFmpeg(runner)  # type: ignore[arg-type]

    found = await ffmpeg.extract_artwork(tmp_path / "in.mp3", tmp_path / "cover.jpg")

    assert found is False
    assert runner.calls[0][:2] == ["ffmpeg", "-y"]


@pytest.mark.asyncio
async def test_extract_artwork_propagates_real_failures(tmp_path: Path) -> None:
    runner = ScriptedRunner(stderr="Invalid data found when processing input", returncode=1)
    ffmpeg = FFmpeg(runner)  # type: ignore[arg-type]

    with pytest.raises(ExternalToolError):
        await ffmpeg.extract_artwork(tmp_path / "in.mp3", tmp_path / "cover.jpg")


@pytest.mark.asyncio
async def test_hls_transcode_uses_fmp4_segments(tmp_path: Path) -> None:
    def _write_outputs(argv: Sequence[str]) -> None:
        Path(argv[-1]).write_text("#EXTM3U\n")
        (Path(argv[-1]).parent / "segment_000.m4s").write_bytes(b"seg")

    runner = ScriptedRunner(side_effect=_write_outputs)
    ffmpeg = FFmpeg(runner)  # type: ignore[arg-type]

    output = await ffmpeg.transcode_hls(
        tmp_path / "in.flac", tmp_path / "out", TranscodeFormat.HLS_AAC
    )

    argv = runner.calls[0]
    assert argv[argv.index("-hls_segment_type") + 1] == "fmp4"
    assert argv[argv.index("-c:a") + 1] == "aac"
    assert output.segment_count == 1
    assert output.playlist.name == "playlist.m3u8"


@pytest.mark.asyncio
async def test_waveform_json_must_contain_peak_data(tmp_path: Path) -> None:
    def _write_json(argv: Sequence[str]) -> None:
        Path(argv[argv.index("-o") + 1]).write_text(json.dumps({"version": 2}))

    waveform = AudioWaveform(ScriptedRunner(side_effect=_write_json))  # type: ignore[arg-type]

    with pytest.raises(ExternalToolError):
        await waveform.generate_json(tmp_path / "in.flac", tmp_path / "peaks.json")


@pytest.mark.asyncio
async def test_waveform_json_uses_configured_resolution(tmp_path: Path) -> None:
    def _write_json(argv: Sequence[str]) -> None:
        Path(argv[argv.index("-o") + 1]).write_text(json.dumps({"data": [0, 3, -2, 5]}))

    runner = ScriptedRunner(side_effect=_write_json)
    waveform = AudioWaveform(runner, pixels_per_second=100)  # type: ignore[arg-type]

    await waveform.generate_json(tmp_path / "in.flac", tmp_path / "peaks.json")

    argv = runner.calls[0]
    assert argv[argv.index("--pixels-per-second") + 1] == "100"
    assert argv[argv.index("--bits") + 1] == "8"


def _acoustid_config(api_key: str | None = "test-key") -> FingerprintConfig:
    return FingerprintConfig(
        acoustid_api_key=api_key,
        acoustid_url="https://api.acoustid.test/v2/lookup",
        acoustid_timeout_ms=1000,
    )


def _client_factory(handler: Callable[[httpx.Request], httpx.Response]):
    return lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_acoustid_lookup_retries_server_errors() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if len(requests) == 1:
            return httpx.Response(503)
        return httpx.Response(
            200,
            json={"status": "ok", "results": [{"id": "acid-1", "score": 0.9, "recordings": []}]},
        )

    client = AcoustIdClient(_acoustid_config(), client_factory=_client_factory(handler))

    match = await client.lookup(Fingerprint(fingerprint="AQAD", duration_s=200))

    assert match is not None
    assert match.acoustid == "acid-1"
    assert match.musicbrainz_id is None
    assert len(requests) == 2
    assert requests[0].url.params["client"] == "test-key"
    assert requests[0].url.params["duration"] == "200"


@pytest.mark.asyncio
async def test_acoustid_lookup_failure_is_no_match() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"status": "error"})

    client = AcoustIdClient(_acoustid_config(), client_factory=_client_factory(handler))

    assert await client.lookup(Fingerprint(fingerprint="AQAD", duration_s=200)) is None


@pytest.mark.asyncio
async def test_acoustid_lookup_is_skipped_without_api_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    client = AcoustIdClient(_acoustid_config(None), client_factory=_client_factory(handler))

    assert not client.enabled
    assert await client.lookup(Fingerprint(fingerprint="AQAD", duration_s=200)) is None
