"""Loudness stage: EBU R128 measurement stored on the track version."""

from __future__ import annotations

from resonance.errors import InputMissingError
from resonance.processors.base import (
    ProcessorDeps,
    call_dao,
    download_original,
    load_asset,
    run_stage,
    scratch_directory,
)
from resonance.queue.jobs import JobContext, LoudnessPayload, StageResult


async def process_loudness(ctx: JobContext[LoudnessPayload], deps: ProcessorDeps) -> StageResult:
    payload = ctx.payload

    async def _body() -> StageResult:
        async with scratch_directory("loudness", root=deps.scratch_root) as workdir:
            await ctx.report_progress(5)
            if await call_dao(deps.dao.get_version, payload.version_id) is None:
                raise InputMissingError("TrackVersion", payload.version_id)
            original = await load_asset(deps, payload.original_asset_id)
            source = await download_original(deps, original, workdir)
            await ctx.report_progress(30)

            measurement = await deps.ffmpeg.analyze_loudness(source)
            await ctx.report_progress(80)

            await call_dao(
                deps.dao.update_version_loudness,
                payload.version_id,
                integrated_lufs=measurement.integrated_lufs,
                true_peak_dbfs=measurement.true_peak_dbfs,
                loudness_range_lu=measurement.loudness_range_lu,
            )
            await ctx.report_progress(100)
            return StageResult.ok(
                loudness_lufs=measurement.integrated_lufs,
                true_peak_dbfs=measurement.true_peak_dbfs,
                loudness_range_lu=measurement.loudness_range_lu,
            )

    return await run_stage("loudness", payload.version_id, _body)


__all__ = ["process_loudness"]
