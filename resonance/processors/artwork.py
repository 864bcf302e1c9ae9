"""Artwork stage: embedded cover art resized to a full image and a thumbnail.

A file without embedded art is a successful run that changes nothing.
"""

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
from resonance.queue.jobs import ArtworkExtractPayload, JobContext, StageResult

FULL_SIZE = 1000
THUMBNAIL_SIZE = 200
JPEG_CONTENT_TYPE = "image/jpeg"


async def process_artwork(
    ctx: JobContext[ArtworkExtractPayload], deps: ProcessorDeps
) -> StageResult:
    payload = ctx.payload

    async def _body() -> StageResult:
        async with scratch_directory("artwork", root=deps.scratch_root) as workdir:
            await ctx.report_progress(5)
            version = await call_dao(deps.dao.get_version, payload.version_id)
            if version is None:
                raise InputMissingError("TrackVersion", payload.version_id)
            original = await load_asset(deps, payload.original_asset_id)
            source = await download_original(deps, original, workdir)
            await ctx.report_progress(30)

            extracted = workdir / "cover.jpg"
            if not await deps.ffmpeg.extract_artwork(source, extracted):
                await ctx.report_progress(100)
                return StageResult.ok(artwork_found=False)
            await ctx.report_progress(50)

            full = await deps.ffmpeg.resize_image(
                extracted, workdir / "full.jpg", FULL_SIZE, FULL_SIZE
            )
            thumbnail = await deps.ffmpeg.resize_image(
                extracted, workdir / "thumb.jpg", THUMBNAIL_SIZE, THUMBNAIL_SIZE
            )
            await ctx.report_progress(70)

            bucket = deps.buckets.bucket_images
            prefix = f"artwork/{version.track_id}/{version.id}"
            full_stored = await deps.storage.upload(
                bucket, f"{prefix}/full.jpg", full, JPEG_CONTENT_TYPE
            )
            thumb_stored = await deps.storage.upload(
                bucket, f"{prefix}/thumb.jpg", thumbnail, JPEG_CONTENT_TYPE
            )
            full_asset = await call_dao(deps.dao.create_asset, full_stored)
            thumb_asset = await call_dao(deps.dao.create_asset, thumb_stored)
            await call_dao(
                deps.dao.set_track_artwork,
                version.track_id,
                artwork_asset_id=full_asset.id,
                thumbnail_asset_id=thumb_asset.id,
            )
            await ctx.report_progress(100)
            return StageResult.ok(
                artwork_found=True,
                artwork_asset_id=full_asset.id,
                thumbnail_asset_id=thumb_asset.id,
            )

    return await run_stage("artwork_extract", payload.version_id, _body)


__all__ = ["process_artwork"]
