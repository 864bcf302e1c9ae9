"""Queue manager: the enqueue surface and the retry state machine."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from resonance.config import QueueConfig
from resonance.errors import InvalidPayloadError
from resonance.logging import get_logger
from resonance.models import TranscodeFormat
from resonance.queue.jobs import (
    QUEUE_NAMES,
    AnalyticsRollupPayload,
    ArtworkExtractPayload,
    DistributionPayload,
    FingerprintPayload,
    JobPayload,
    LoudnessPayload,
    Mp3TranscodePayload,
    StageResult,
    TranscodePayload,
    WaveformPayload,
    parse_payload,
    validate_period,
)
from resonance.queue.persistence import QueueJobDTO, QueueStore
from resonance.queue.retry import BackoffPolicy, NextState, RequeueAfter, next_state

logger = get_logger(__name__)

_ERROR_LIMIT = 2000


@dataclass(slots=True, frozen=True)
class QueueHealth:
    connected: bool
    active: int = 0
    queued: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {"connected": self.connected, "active": self.active, "queued": self.queued}


def truncate_error(message: str, limit: int = _ERROR_LIMIT) -> str:
    text = message.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


class QueueManager:
    """Owns the durable store for all named queues.

    Callers hold a reference to one instance; there is no module-level queue
    state.
    """

    def __init__(self, store: QueueStore, config: QueueConfig) -> None:
        self._store = store
        self._config = config

    @property
    def store(self) -> QueueStore:
        return self._store

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def queue_names(self) -> tuple[str, ...]:
        return QUEUE_NAMES

    def default_backoff(self) -> BackoffPolicy:
        retry = self._config.retry
        return BackoffPolicy(type=retry.backoff_type, delay_ms=retry.backoff_delay_ms)

    def enqueue(
        self,
        queue_name: str,
        payload: JobPayload | Mapping[str, Any],
        *,
        attempts: int | None = None,
        backoff: BackoffPolicy | None = None,
        timeout_s: int | None = None,
        delay_ms: int = 0,
    ) -> QueueJobDTO:
        """Validate ``payload`` for ``queue_name`` and store a new queued job."""

        if queue_name not in QUEUE_NAMES:
            raise InvalidPayloadError(f"unknown queue {queue_name!r}")
        if isinstance(payload, Mapping):
            typed = parse_payload(queue_name, payload)
        else:
            typed = payload
            if typed.queue_name != queue_name:
                raise InvalidPayloadError(
                    f"payload for {typed.queue_name!r} enqueued on {queue_name!r}"
                )
        available_at = None
        if delay_ms > 0:
            available_at = self._store.now() + timedelta(milliseconds=int(delay_ms))
        return self._store.enqueue(
            queue_name,
            typed.to_dict(),
            max_attempts=max(1, int(attempts or self._config.retry.attempts)),
            backoff=backoff or self.default_backoff(),
            timeout_s=timeout_s,
            available_at=available_at,
        )

    async def enqueue_async(
        self,
        queue_name: str,
        payload: JobPayload | Mapping[str, Any],
        **options: Any,
    ) -> QueueJobDTO:
        return await asyncio.to_thread(self.enqueue, queue_name, payload, **options)

    def enqueue_transcode(
        self,
        version_id: str,
        format: TranscodeFormat | str = TranscodeFormat.HLS_OPUS,
        **options: Any,
    ) -> QueueJobDTO:
        raw_format = format.value if isinstance(format, TranscodeFormat) else format
        payload = TranscodePayload.from_dict({"version_id": version_id, "format": raw_format})
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_mp3_transcode(self, version_id: str, track_id: str, **options: Any) -> QueueJobDTO:
        payload = Mp3TranscodePayload.from_dict({"version_id": version_id, "track_id": track_id})
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_waveform(self, version_id: str, **options: Any) -> QueueJobDTO:
        payload = WaveformPayload.from_dict({"version_id": version_id})
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_artwork_extract(
        self, version_id: str, original_asset_id: str, **options: Any
    ) -> QueueJobDTO:
        payload = ArtworkExtractPayload.from_dict(
            {"version_id": version_id, "original_asset_id": original_asset_id}
        )
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_loudness(self, version_id: str, original_asset_id: str, **options: Any) -> QueueJobDTO:
        payload = LoudnessPayload.from_dict(
            {"version_id": version_id, "original_asset_id": original_asset_id}
        )
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_fingerprint(self, version_id: str, **options: Any) -> QueueJobDTO:
        payload = FingerprintPayload.from_dict({"version_id": version_id})
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_distribution(self, period: str, **options: Any) -> QueueJobDTO:
        payload = DistributionPayload(period=validate_period(period))
        return self.enqueue(payload.queue_name, payload, **options)

    def enqueue_analytics_rollup(self, day: date | str, **options: Any) -> QueueJobDTO:
        raw = day.isoformat() if isinstance(day, date) else day
        payload = AnalyticsRollupPayload.from_dict({"day": raw})
        return self.enqueue(payload.queue_name, payload, **options)

    def get_job(self, job_id: int) -> QueueJobDTO | None:
        return self._store.get(job_id)

    def cancel(self, job_id: int) -> bool:
        """Cancel a job that is still queued; active jobs run to completion."""

        return self._store.cancel(job_id)

    def report_progress(self, job: QueueJobDTO, percent: int) -> None:
        self._store.report_progress(job.id, percent)

    def complete(self, job: QueueJobDTO, result: StageResult | Mapping[str, Any] | None) -> bool:
        payload = result.to_payload() if isinstance(result, StageResult) else result
        completed = self._store.complete(job.id, queue_name=job.queue_name, result_payload=payload)
        self._purge(job.queue_name)
        return completed

    def fail(self, job: QueueJobDTO, error: Any) -> NextState:
        """Apply the retry policy to a failed attempt of ``job``."""

        decision = next_state(job.attempts, job.max_attempts, error, job.backoff)
        message = truncate_error(str(error) or type(error).__name__)
        if isinstance(decision, RequeueAfter):
            self._store.requeue(
                job.id, queue_name=job.queue_name, error=message, delay_ms=decision.delay_ms
            )
        else:
            result_payload = error.to_payload() if isinstance(error, StageResult) else None
            self._store.fail(
                job.id,
                queue_name=job.queue_name,
                error=message,
                stop_reason=decision.reason,
                result_payload=result_payload,
            )
            self._purge(job.queue_name)
        return decision

    def _purge(self, queue_name: str) -> None:
        self._store.purge_finished(
            queue_name,
            keep_completed=self._config.keep_completed,
            keep_failed=self._config.keep_failed,
        )

    def health(self) -> dict[str, QueueHealth]:
        """Return per-queue connectivity and counts."""

        if not self._store.ping():
            return {name: QueueHealth(connected=False) for name in QUEUE_NAMES}
        report: dict[str, QueueHealth] = {}
        for name in QUEUE_NAMES:
            try:
                counts = self._store.count_by_status(name)
            except SQLAlchemyError:
                logger.warning("Queue %s health query failed", name, exc_info=True)
                report[name] = QueueHealth(connected=False)
                continue
            report[name] = QueueHealth(
                connected=True, active=counts["active"], queued=counts["queued"]
            )
        return report


__all__ = ["QueueHealth", "QueueManager", "truncate_error"]
