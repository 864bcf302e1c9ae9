"""Fingerprint stage: chromaprint, optional AcoustID match, duplicate check."""

from __future__ import annotations

from resonance.logging import get_logger
from resonance.processors.base import (
    ProcessorDeps,
    call_dao,
    download_original,
    load_version_and_original,
    run_stage,
    scratch_directory,
)
from resonance.queue.jobs import FingerprintPayload, JobContext, StageResult

logger = get_logger(__name__)


async def process_fingerprint(
    ctx: JobContext[FingerprintPayload], deps: ProcessorDeps
) -> StageResult:
    """Store the fingerprint and report the track when another version matches.

    Matching is exact string equality; the current version's own rows are
    excluded so a retried job never flags itself.
    """

    version_id = ctx.payload.version_id

    async def _body() -> StageResult:
        async with scratch_directory("fingerprint", root=deps.scratch_root) as workdir:
            await ctx.report_progress(5)
            version, original = await load_version_and_original(deps, version_id)
            await ctx.report_progress(10)

            source = await download_original(deps, original, workdir)
            await ctx.report_progress(30)

            result = await deps.fpcalc.fingerprint(source)
            await ctx.report_progress(60)

            duplicate_track_id = await call_dao(
                deps.dao.find_duplicate_track,
                result.fingerprint,
                exclude_version_id=version_id,
            )
            await ctx.report_progress(70)

            match = await deps.acoustid.lookup(result)
            await ctx.report_progress(80)

            fingerprint_id = await call_dao(
                deps.dao.upsert_fingerprint,
                version_id,
                fingerprint=result.fingerprint,
                duration_s=result.duration_s,
                acoustid=match.acoustid if match else None,
                musicbrainz_id=match.musicbrainz_id if match else None,
            )
            await ctx.report_progress(90)

            report_id = None
            if duplicate_track_id is not None:
                report = await call_dao(
                    deps.dao.create_duplicate_report,
                    version.track_id,
                    duplicate_of_track_id=duplicate_track_id,
                )
                report_id = report.report_id if report else None
                logger.info(
                    "Fingerprint of version %s matches track %s", version_id, duplicate_track_id
                )
            await ctx.report_progress(100)
            return StageResult.ok(
                fingerprint_id=fingerprint_id,
                fingerprint=result.fingerprint,
                duration=result.duration_s,
                duplicate_found=duplicate_track_id is not None,
                duplicate_track_id=duplicate_track_id,
                report_id=report_id,
                acoustid=match.acoustid if match else None,
            )

    return await run_stage("fingerprint", version_id, _body)


__all__ = ["process_fingerprint"]
