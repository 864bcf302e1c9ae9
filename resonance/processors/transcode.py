"""Stream transcode: original audio to segmented fMP4 HLS."""

from __future__ import annotations

import uuid
from pathlib import Path

from resonance.errors import QueueUnavailableError
from resonance.logging import get_logger
from resonance.media.ffmpeg import HLS_PLAYLIST_NAME
from resonance.models import TrackVersionStatus, TranscodeFormat, TranscodeStatus
from resonance.processors.base import (
    ProcessorDeps,
    call_dao,
    download_original,
    load_version_and_original,
    run_stage,
    scratch_directory,
)
from resonance.queue.jobs import FingerprintPayload, JobContext, StageResult, TranscodePayload

logger = get_logger(__name__)

PLAYLIST_CONTENT_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_CONTENT_TYPE = "video/mp4"


def segment_prefix(version_id: str, fmt: TranscodeFormat) -> str:
    return f"tracks/{version_id}/{fmt.value}/{uuid.uuid4()}"


def content_type_for(path: Path) -> str:
    if path.suffix == ".m3u8":
        return PLAYLIST_CONTENT_TYPE
    return SEGMENT_CONTENT_TYPE


def choose_format(requested: TranscodeFormat, *, lossless_source: bool) -> TranscodeFormat:
    """Lossless sources requested with the default format get the ALAC ladder."""

    if lossless_source and requested is TranscodeFormat.HLS_OPUS:
        return TranscodeFormat.HLS_ALAC
    return requested


async def process_transcode(
    ctx: JobContext[TranscodePayload], deps: ProcessorDeps
) -> StageResult:
    payload = ctx.payload
    version_id = payload.version_id
    target_format: list[TranscodeFormat] = [payload.format]

    async def _body() -> StageResult:
        async with scratch_directory("transcode", root=deps.scratch_root) as workdir:
            await ctx.report_progress(5)
            _, original = await load_version_and_original(deps, version_id)
            await ctx.report_progress(10)

            source = await download_original(deps, original, workdir)
            await ctx.report_progress(20)

            metadata = await deps.ffmpeg.probe(source)
            await call_dao(
                deps.dao.update_version_metadata,
                version_id,
                duration_ms=metadata.duration_ms,
                sample_rate=metadata.sample_rate,
                channels=metadata.channels,
            )
            fmt = choose_format(payload.format, lossless_source=metadata.is_lossless)
            target_format[0] = fmt
            await ctx.report_progress(25)

            output = await deps.ffmpeg.transcode_hls(source, workdir / "output", fmt)
            await ctx.report_progress(80)

            bucket = deps.buckets.bucket_transcodes
            prefix = segment_prefix(version_id, fmt)
            playlist_asset_id: str | None = None
            for path in output.files:
                stored = await deps.storage.upload(
                    bucket, f"{prefix}/{path.name}", path, content_type_for(path)
                )
                if path.name == HLS_PLAYLIST_NAME:
                    asset = await call_dao(deps.dao.create_asset, stored)
                    playlist_asset_id = asset.id
            await ctx.report_progress(90)

            transcode_id = await call_dao(
                deps.dao.upsert_transcode,
                version_id,
                fmt,
                status=TranscodeStatus.READY,
                playlist_asset_id=playlist_asset_id,
                segment_prefix_key=prefix,
                segment_count=output.segment_count,
            )
            await call_dao(deps.dao.set_version_status, version_id, TrackVersionStatus.READY)
            await ctx.report_progress(95)

            await _enqueue_fingerprint(deps, version_id)
            await ctx.report_progress(100)
            return StageResult.ok(
                transcode_id=transcode_id,
                format=fmt.value,
                playlist_asset_id=playlist_asset_id,
                segment_count=output.segment_count,
                duration_ms=metadata.duration_ms,
            )

    async def _mark_failed(result: StageResult, terminal: bool) -> None:
        error = result.error or "transcode failed"
        version = await call_dao(deps.dao.get_version, version_id)
        if version is None:
            return
        await call_dao(
            deps.dao.upsert_transcode,
            version_id,
            target_format[0],
            status=TranscodeStatus.FAILED,
            error_message=error,
        )
        # The version stays pending while the queue will still retry.
        if not terminal:
            return
        await call_dao(
            deps.dao.set_version_status,
            version_id,
            TrackVersionStatus.FAILED,
            error_message=error,
        )

    return await run_stage(
        "transcode",
        version_id,
        _body,
        on_failure=_mark_failed,
        final_attempt=ctx.final_attempt,
    )


async def _enqueue_fingerprint(deps: ProcessorDeps, version_id: str) -> None:
    if deps.manager is None:
        return
    try:
        await deps.manager.enqueue_async(
            FingerprintPayload.queue_name, FingerprintPayload(version_id=version_id)
        )
    except QueueUnavailableError as exc:
        logger.error("Could not enqueue fingerprint job for %s: %s", version_id, exc)


__all__ = ["choose_format", "content_type_for", "process_transcode", "segment_prefix"]
