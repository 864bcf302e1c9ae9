"""Shared plumbing for the stage processors."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import tempfile
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, TypeVar

from resonance.config import StorageConfig
from resonance.errors import InputMissingError, ResonanceError
from resonance.logging import get_logger
from resonance.logging_events import log_event
from resonance.media.ffmpeg import FFmpeg
from resonance.media.fingerprint import AcoustIdClient, Fpcalc
from resonance.media.waveform import AudioWaveform
from resonance.queue.jobs import StageResult
from resonance.services.analytics import AnalyticsService
from resonance.services.distribution import DistributionService
from resonance.services.media_dao import AssetRow, MediaDao, TrackVersionRow
from resonance.storage.blob import BlobStorage

if TYPE_CHECKING:
    from resonance.queue.manager import QueueManager

logger = get_logger(__name__)

T = TypeVar("T")

StageBody = Callable[[], Awaitable[StageResult]]
FailureHook = Callable[[StageResult, bool], Awaitable[None]]


@dataclass(slots=True)
class ProcessorDeps:
    """Collaborators shared by every processor."""

    dao: MediaDao
    storage: BlobStorage
    buckets: StorageConfig
    ffmpeg: FFmpeg
    waveform: AudioWaveform
    fpcalc: Fpcalc
    acoustid: AcoustIdClient
    distribution: DistributionService
    analytics: AnalyticsService
    manager: QueueManager | None = None
    scratch_root: Path | None = None


async def call_dao(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Run a blocking DAO call in a worker thread."""

    return await asyncio.to_thread(func, *args, **kwargs)


async def call_dao_to_completion(func: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
    """Run a blocking DAO call whose thread must finish before the caller does.

    A worker thread cannot be interrupted, so when the caller is cancelled
    (deadline or shutdown) the cancellation is held back until the call has
    returned. The pool slot of the job stays taken for that whole time and a
    retry can never overlap the running batch.
    """

    future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        while not future.done():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.wait({future})
        if not future.cancelled() and future.exception() is not None:
            logger.warning(
                "Blocking call %s failed after cancellation: %s",
                getattr(func, "__qualname__", func),
                future.exception(),
            )
        raise


@asynccontextmanager
async def scratch_directory(stage: str, *, root: Path | None = None) -> AsyncIterator[Path]:
    """Yield a private working directory that is removed on every exit path.

    Removal is synchronous so it also completes when the job is cancelled by
    its deadline.
    """

    if root is not None:
        root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"resonance-{stage}-", dir=root))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)
        if path.exists():
            logger.warning("Scratch directory %s could not be removed", path)


async def load_version_and_original(
    deps: ProcessorDeps, version_id: str
) -> tuple[TrackVersionRow, AssetRow]:
    version = await call_dao(deps.dao.get_version, version_id)
    if version is None:
        raise InputMissingError("TrackVersion", version_id)
    asset = await call_dao(deps.dao.get_asset, version.original_asset_id)
    if asset is None:
        raise InputMissingError("Original asset", version.original_asset_id)
    return version, asset


async def load_asset(deps: ProcessorDeps, asset_id: str) -> AssetRow:
    asset = await call_dao(deps.dao.get_asset, asset_id)
    if asset is None:
        raise InputMissingError("Original asset", asset_id)
    return asset


async def download_original(deps: ProcessorDeps, asset: AssetRow, workdir: Path) -> Path:
    suffix = PurePosixPath(asset.key).suffix
    target = workdir / f"input{suffix}"
    return await deps.storage.download(asset.bucket, asset.key, target)


async def run_stage(
    stage: str,
    entity_id: str,
    body: StageBody,
    *,
    on_failure: FailureHook | None = None,
    final_attempt: bool = False,
) -> StageResult:
    """Run ``body`` and convert every failure into a :class:`StageResult`.

    Errors from the taxonomy keep their ``retryable`` flag; anything else is
    treated as retryable. ``on_failure`` receives the result and whether the
    failure is terminal: not retryable, or on the job's final attempt.
    Cancellation propagates; on the final attempt the hook still runs first
    because the queue will not try the job again.
    """

    start = time.perf_counter()
    try:
        result = await body()
    except ResonanceError as exc:
        logger.warning("Stage %s failed for %s: %s", stage, entity_id, exc)
        result = StageResult.failure(str(exc), retryable=exc.retryable)
    except asyncio.CancelledError:
        if final_attempt and on_failure is not None:
            interrupted = StageResult.failure(
                f"{stage} interrupted on its final attempt", retryable=False
            )
            await _run_failure_hook(on_failure, interrupted, True, stage, entity_id)
        raise
    except Exception as exc:
        logger.exception("Stage %s crashed for %s", stage, entity_id)
        result = StageResult.failure(f"{type(exc).__name__}: {exc}")

    if not result.success and on_failure is not None:
        terminal = final_attempt or not result.retryable
        await _run_failure_hook(on_failure, result, terminal, stage, entity_id)

    log_event(
        logger,
        f"stage.{stage}",
        entity_id=entity_id,
        status="ok" if result.success else "failed",
        duration_ms=int((time.perf_counter() - start) * 1000),
        retryable=None if result.success else result.retryable,
        error=result.error,
    )
    return result


async def _run_failure_hook(
    hook: FailureHook, result: StageResult, terminal: bool, stage: str, entity_id: str
) -> None:
    try:
        await asyncio.shield(hook(result, terminal))
    except Exception:
        logger.exception("Failure bookkeeping for %s %s did not complete", stage, entity_id)


__all__ = [
    "ProcessorDeps",
    "call_dao",
    "call_dao_to_completion",
    "download_original",
    "load_asset",
    "load_version_and_original",
    "run_stage",
    "scratch_directory",
]
