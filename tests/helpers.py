"""Fakes for the external collaborators used by processor and queue tests."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from resonance.config import load_config
from resonance.db import session_scope
from resonance.errors import ExternalToolError, InputMissingError, StorageError
from resonance.media.ffmpeg import (
    HLS_INIT_NAME,
    HLS_PLAYLIST_NAME,
    AudioMetadata,
    HlsOutput,
    LoudnessMeasurement,
)
from resonance.media.fingerprint import AcoustIdMatch, Fingerprint
from resonance.models import Asset, Track, TrackVersion
from resonance.processors.base import ProcessorDeps
from resonance.queue.jobs import JobContext
from resonance.services.analytics import AnalyticsService
from resonance.services.distribution import DistributionService
from resonance.services.media_dao import MediaDao
from resonance.storage.blob import StoredObject


class FakeStorage:
    def __init__(self, objects: dict[tuple[str, str], bytes] | None = None) -> None:
        self.objects: dict[tuple[str, str], bytes] = dict(objects or {})
        self.uploads: list[StoredObject] = []
        self.fail_uploads = False

    async def download(self, bucket: str, key: str, local_path: Path) -> Path:
        data = self.objects.get((bucket, key))
        if data is None:
            raise InputMissingError("Object", f"{bucket}/{key}")
        local_path.parent.mkdir(parents=True, exist_ok=True)
        local_path.write_bytes(data)
        return local_path

    async def upload(self, bucket: str, key: str, source: Path, content_type: str) -> StoredObject:
        if self.fail_uploads:
            raise StorageError(f"upload of {bucket}/{key} failed: connection reset")
        data = source.read_bytes()
        self.objects[(bucket, key)] = data
        stored = StoredObject(
            bucket=bucket,
            key=key,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            content_type=content_type,
        )
        self.uploads.append(stored)
        return stored

    async def delete(self, bucket: str, key: str) -> None:
        self.objects.pop((bucket, key), None)


@dataclass
class ToolCallLog:
    """Records the scratch directories the fake tools were handed."""

    workdirs: list[Path] = field(default_factory=list)
    calls: list[str] = field(default_factory=list)

    def record(self, name: str, path: Path) -> None:
        self.calls.append(name)
        self.workdirs.append(path.parent)


def _tool_failure(tool: str) -> ExternalToolError:
    return ExternalToolError(
        tool, "exited with status 1", exit_code=1, stderr="Invalid data found when processing input"
    )


class FakeFFmpeg:
    def __init__(
        self,
        log: ToolCallLog,
        *,
        fail: Iterable[str] = (),
        codec_name: str = "mp3",
        has_artwork: bool = True,
    ) -> None:
        self._log = log
        self._fail = set(fail)
        self._codec_name = codec_name
        self._has_artwork = has_artwork
        self.hls_formats: list[str] = []

    def _check(self, name: str, path: Path) -> None:
        self._log.record(name, path)
        if name in self._fail:
            raise _tool_failure("ffmpeg")

    async def probe(self, source: Path) -> AudioMetadata:
        self._check("probe", source)
        return AudioMetadata(
            duration_ms=183_456, sample_rate=44100, channels=2, codec_name=self._codec_name
        )

    async def transcode_hls(self, source: Path, output_dir: Path, fmt: Any) -> HlsOutput:
        self._check("transcode_hls", source)
        self.hls_formats.append(fmt.value)
        output_dir.mkdir(parents=True, exist_ok=True)
        names = [HLS_PLAYLIST_NAME, HLS_INIT_NAME, "segment_000.m4s", "segment_001.m4s"]
        for name in names:
            (output_dir / name).write_bytes(f"{name}-data".encode())
        files = tuple(sorted(output_dir / name for name in names))
        return HlsOutput(playlist=output_dir / HLS_PLAYLIST_NAME, files=files)

    async def transcode_mp3(self, source: Path, target: Path) -> Path:
        self._check("transcode_mp3", source)
        target.write_bytes(b"ID3mp3-data")
        return target

    async def extract_artwork(self, source: Path, target: Path) -> bool:
        self._check("extract_artwork", source)
        if not self._has_artwork:
            return False
        target.write_bytes(b"\xff\xd8jpeg")
        return True

    async def resize_image(self, source: Path, target: Path, width: int, height: int) -> Path:
        self._check("resize_image", source)
        target.write_bytes(f"jpeg-{width}x{height}".encode())
        return target

    async def analyze_loudness(self, source: Path) -> LoudnessMeasurement:
        self._check("analyze_loudness", source)
        return LoudnessMeasurement(integrated_lufs=-14.2, true_peak_dbfs=-1.1, loudness_range_lu=6.5)


class FakeWaveform:
    def __init__(self, log: ToolCallLog, *, fail: bool = False) -> None:
        self._log = log
        self._fail = fail

    async def generate_json(self, source: Path, target: Path) -> Path:
        self._log.record("waveform_json", source)
        if self._fail:
            raise _tool_failure("audiowaveform")
        target.write_text('{"version": 2, "bits": 8, "data": [0, 1, -3, 4]}')
        return target

    async def generate_png(self, source: Path, target: Path) -> Path:
        self._log.record("waveform_png", source)
        target.write_bytes(b"\x89PNG")
        return target


class FakeFpcalc:
    def __init__(self, log: ToolCallLog, *, fingerprint: str = "AQADtEmUaEkSRZEG", fail: bool = False):
        self._log = log
        self.fingerprint_value = fingerprint
        self._fail = fail

    async def fingerprint(self, source: Path) -> Fingerprint:
        self._log.record("fpcalc", source)
        if self._fail:
            raise _tool_failure("fpcalc")
        return Fingerprint(fingerprint=self.fingerprint_value, duration_s=183)


class FakeAcoustId:
    def __init__(self, match: AcoustIdMatch | None = None) -> None:
        self._match = match
        self.lookups: list[Fingerprint] = []

    async def lookup(self, fingerprint: Fingerprint) -> AcoustIdMatch | None:
        self.lookups.append(fingerprint)
        return self._match


@dataclass
class SeededVersion:
    track_id: str
    version_id: str
    asset_id: str
    owner_id: str
    bucket: str
    key: str


def seed_version(
    storage: FakeStorage | None = None,
    *,
    owner_id: str = "artist-1",
    title: str = "Night Drive",
    key: str | None = None,
    with_asset: bool = True,
) -> SeededVersion:
    """Insert a track, a pending version and its original asset."""

    bucket = load_config().storage.bucket_originals
    with session_scope() as session:
        track = Track(owner_user_id=owner_id, title=title)
        session.add(track)
        session.flush()
        asset_id = "missing-asset"
        object_key = key or f"uploads/{track.id}/original.flac"
        if with_asset:
            asset = Asset(bucket=bucket, key=object_key, size_bytes=12, mime="audio/flac")
            session.add(asset)
            session.flush()
            asset_id = str(asset.id)
        version = TrackVersion(track_id=track.id, original_asset_id=asset_id)
        session.add(version)
        session.flush()
        seeded = SeededVersion(
            track_id=str(track.id),
            version_id=str(version.id),
            asset_id=asset_id,
            owner_id=owner_id,
            bucket=bucket,
            key=object_key,
        )
    if storage is not None and with_asset:
        storage.objects[(bucket, object_key)] = b"fLaC-original-audio"
    return seeded


@dataclass
class Harness:
    deps: ProcessorDeps
    storage: FakeStorage
    ffmpeg: FakeFFmpeg
    waveform: FakeWaveform
    fpcalc: FakeFpcalc
    acoustid: FakeAcoustId
    log: ToolCallLog


def build_harness(
    scratch_root: Path,
    *,
    ffmpeg_fail: Iterable[str] = (),
    waveform_fail: bool = False,
    fpcalc_fail: bool = False,
    codec_name: str = "mp3",
    has_artwork: bool = True,
    manager: Any = None,
) -> Harness:
    log = ToolCallLog()
    storage = FakeStorage()
    ffmpeg = FakeFFmpeg(log, fail=ffmpeg_fail, codec_name=codec_name, has_artwork=has_artwork)
    waveform = FakeWaveform(log, fail=waveform_fail)
    fpcalc = FakeFpcalc(log, fail=fpcalc_fail)
    acoustid = FakeAcoustId()
    deps = ProcessorDeps(
        dao=MediaDao(),
        storage=storage,
        buckets=load_config().storage,
        ffmpeg=ffmpeg,  # type: ignore[arg-type]
        waveform=waveform,  # type: ignore[arg-type]
        fpcalc=fpcalc,  # type: ignore[arg-type]
        acoustid=acoustid,  # type: ignore[arg-type]
        distribution=DistributionService(),
        analytics=AnalyticsService(),
        manager=manager,
        scratch_root=scratch_root,
    )
    return Harness(
        deps=deps,
        storage=storage,
        ffmpeg=ffmpeg,
        waveform=waveform,
        fpcalc=fpcalc,
        acoustid=acoustid,
        log=log,
    )


def make_context(
    queue_name: str,
    payload: Any,
    *,
    job_id: int = 1,
    attempt: int = 1,
    max_attempts: int = 3,
    progress: list[int] | None = None,
) -> JobContext[Any]:
    seen = progress if progress is not None else []

    async def _record(percent: int) -> None:
        seen.append(percent)

    return JobContext(
        job_id=job_id,
        queue_name=queue_name,
        payload=payload,
        attempt=attempt,
        max_attempts=max_attempts,
        progress_reporter=_record,
    )
