"""Lossy download transcode: a single 320 kbps MP3 per track."""

from __future__ import annotations

from resonance.processors.base import (
    ProcessorDeps,
    call_dao,
    download_original,
    load_version_and_original,
    run_stage,
    scratch_directory,
)
from resonance.queue.jobs import JobContext, Mp3TranscodePayload, StageResult

MP3_CONTENT_TYPE = "audio/mpeg"


def download_key(track_id: str) -> str:
    return f"downloads/{track_id}/320.mp3"


async def process_mp3_transcode(
    ctx: JobContext[Mp3TranscodePayload], deps: ProcessorDeps
) -> StageResult:
    payload = ctx.payload

    async def _body() -> StageResult:
        async with scratch_directory("mp3", root=deps.scratch_root) as workdir:
            await ctx.report_progress(5)
            _, original = await load_version_and_original(deps, payload.version_id)
            await ctx.report_progress(10)

            source = await download_original(deps, original, workdir)
            await ctx.report_progress(30)

            target = await deps.ffmpeg.transcode_mp3(source, workdir / "320.mp3")
            await ctx.report_progress(80)

            bucket = deps.buckets.bucket_transcodes
            key = download_key(payload.track_id)
            stored = await deps.storage.upload(bucket, key, target, MP3_CONTENT_TYPE)
            asset = await call_dao(deps.dao.create_asset, stored)
            await ctx.report_progress(100)
            return StageResult.ok(bucket=bucket, key=key, asset_id=asset.id)

    return await run_stage("mp3_transcode", payload.version_id, _body)


__all__ = ["download_key", "process_mp3_transcode"]
