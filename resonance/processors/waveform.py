"""Waveform stage: peak JSON plus a PNG preview for the player."""

from __future__ import annotations

from resonance.processors.base import (
    ProcessorDeps,
    call_dao,
    download_original,
    load_version_and_original,
    run_stage,
    scratch_directory,
)
from resonance.queue.jobs import JobContext, StageResult, WaveformPayload

JSON_CONTENT_TYPE = "application/json"
PNG_CONTENT_TYPE = "image/png"


async def process_waveform(ctx: JobContext[WaveformPayload], deps: ProcessorDeps) -> StageResult:
    version_id = ctx.payload.version_id

    async def _body() -> StageResult:
        async with scratch_directory("waveform", root=deps.scratch_root) as workdir:
            await ctx.report_progress(5)
            _, original = await load_version_and_original(deps, version_id)
            source = await download_original(deps, original, workdir)
            await ctx.report_progress(25)

            peaks = await deps.waveform.generate_json(source, workdir / "waveform.json")
            await ctx.report_progress(50)
            preview = await deps.waveform.generate_png(source, workdir / "waveform.png")
            await ctx.report_progress(70)

            bucket = deps.buckets.bucket_waveforms
            json_stored = await deps.storage.upload(
                bucket, f"{version_id}/waveform.json", peaks, JSON_CONTENT_TYPE
            )
            png_stored = await deps.storage.upload(
                bucket, f"{version_id}/waveform.png", preview, PNG_CONTENT_TYPE
            )
            json_asset = await call_dao(deps.dao.create_asset, json_stored)
            png_asset = await call_dao(deps.dao.create_asset, png_stored)
            waveform_id = await call_dao(
                deps.dao.upsert_waveform,
                version_id,
                json_asset_id=json_asset.id,
                png_asset_id=png_asset.id,
            )
            await ctx.report_progress(100)
            return StageResult.ok(
                waveform_id=waveform_id,
                json_asset_id=json_asset.id,
                png_asset_id=png_asset.id,
            )

    return await run_stage("waveform", version_id, _body)


__all__ = ["process_waveform"]
