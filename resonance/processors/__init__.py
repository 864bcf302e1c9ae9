"""Stage processors bound to the worker queues."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from functools import partial

from resonance.processors.analytics_rollup import process_analytics_rollup
from resonance.processors.artwork import process_artwork
from resonance.processors.base import ProcessorDeps, run_stage, scratch_directory
from resonance.processors.distribution import process_distribution
from resonance.processors.fingerprint import process_fingerprint
from resonance.processors.loudness import process_loudness
from resonance.processors.mp3_transcode import process_mp3_transcode
from resonance.processors.transcode import process_transcode
from resonance.processors.waveform import process_waveform
from resonance.queue.dispatcher import Processor
from resonance.queue.jobs import (
    ANALYTICS_ROLLUP_JOB,
    ARTWORK_EXTRACT_JOB,
    DISTRIBUTION_JOB,
    FINGERPRINT_JOB,
    LOUDNESS_JOB,
    MP3_TRANSCODE_JOB,
    TRANSCODE_JOB,
    WAVEFORM_JOB,
    JobContext,
    StageResult,
)

StageFunction = Callable[[JobContext, ProcessorDeps], Awaitable[StageResult]]

STAGES: dict[str, StageFunction] = {
    TRANSCODE_JOB: process_transcode,
    MP3_TRANSCODE_JOB: process_mp3_transcode,
    WAVEFORM_JOB: process_waveform,
    ARTWORK_EXTRACT_JOB: process_artwork,
    LOUDNESS_JOB: process_loudness,
    FINGERPRINT_JOB: process_fingerprint,
    DISTRIBUTION_JOB: process_distribution,
    ANALYTICS_ROLLUP_JOB: process_analytics_rollup,
}


def default_processors(deps: ProcessorDeps) -> dict[str, Processor]:
    """Bind every stage to ``deps`` so the registry can call it with a job context."""

    return {queue_name: partial(stage, deps=deps) for queue_name, stage in STAGES.items()}


__all__ = [
    "ProcessorDeps",
    "STAGES",
    "default_processors",
    "run_stage",
    "scratch_directory",
]
