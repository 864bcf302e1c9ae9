"""Durable job storage backing every named queue."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, select, text, update
from sqlalchemy.exc import DBAPIError, OperationalError

from resonance.db import SessionFactory, session_scope
from resonance.errors import QueueUnavailableError
from resonance.logging import get_logger
from resonance.logging_events import log_event
from resonance.models import JobState, QueueJob
from resonance.queue.retry import BackoffPolicy

logger = get_logger(__name__)

STOP_REASON_CANCELLED = "cancelled"
STOP_REASON_LEASE_EXPIRED = "lease_expired"


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(slots=True)
class QueueJobDTO:
    """Snapshot of one stored job."""

    id: int
    queue_name: str
    payload: dict[str, Any]
    status: JobState
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy
    progress: int
    available_at: datetime
    created_at: datetime
    lease_expires_at: datetime | None = None
    timeout_s: int | None = None
    last_error: str | None = None
    stop_reason: str | None = None
    result_payload: dict[str, Any] | None = None
    finished_at: datetime | None = None


def _to_dto(record: QueueJob) -> QueueJobDTO:
    return QueueJobDTO(
        id=int(record.id),
        queue_name=str(record.queue_name),
        payload=dict(record.payload or {}),
        status=JobState(record.status),
        attempts=int(record.attempts or 0),
        max_attempts=int(record.max_attempts or 1),
        backoff=BackoffPolicy(
            type=str(record.backoff_type), delay_ms=int(record.backoff_delay_ms or 0)
        ),
        progress=int(record.progress or 0),
        available_at=record.available_at,
        created_at=record.created_at,
        lease_expires_at=record.lease_expires_at,
        timeout_s=record.timeout_s,
        last_error=record.last_error,
        stop_reason=record.stop_reason,
        result_payload=dict(record.result_payload) if record.result_payload else None,
        finished_at=record.finished_at,
    )


def _emit_job_event(job: QueueJobDTO, status: str, **extra: Any) -> None:
    log_event(
        logger,
        "queue.job",
        component="queue.persistence",
        entity_id=str(job.id),
        queue=job.queue_name,
        status=status,
        attempts=int(job.attempts),
        **extra,
    )


class QueueStore:
    """SQLAlchemy-backed job store; one instance serves every queue."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        now_factory: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._now = now_factory

    def enqueue(
        self,
        queue_name: str,
        payload: Mapping[str, Any],
        *,
        max_attempts: int,
        backoff: BackoffPolicy,
        timeout_s: int | None = None,
        available_at: datetime | None = None,
    ) -> QueueJobDTO:
        """Insert a new queued job; storage failures surface as ``QueueUnavailableError``."""

        now = self._now()
        try:
            with self._session_factory() as session:
                record = QueueJob(
                    queue_name=queue_name,
                    payload=dict(payload),
                    status=JobState.QUEUED.value,
                    attempts=0,
                    max_attempts=max(1, int(max_attempts)),
                    backoff_type=backoff.type,
                    backoff_delay_ms=max(0, int(backoff.delay_ms)),
                    timeout_s=timeout_s,
                    progress=0,
                    available_at=available_at or now,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
                session.flush()
                dto = _to_dto(record)
        except (OperationalError, DBAPIError) as exc:
            raise QueueUnavailableError(f"queue store unreachable: {exc}") from exc
        _emit_job_event(dto, "enqueued", max_attempts=dto.max_attempts)
        return dto

    def now(self) -> datetime:
        return self._now()

    def get(self, job_id: int) -> QueueJobDTO | None:
        with self._session_factory() as session:
            record = session.get(QueueJob, job_id)
            return _to_dto(record) if record is not None else None

    def fetch_ready(self, queue_name: str, *, limit: int = 100) -> list[QueueJobDTO]:
        """Return queued jobs whose ``available_at`` has passed, oldest first."""

        if limit <= 0:
            return []
        now = self._now()
        with self._session_factory() as session:
            self._release_expired_leases(session, queue_name, now)
            records = (
                session.execute(
                    select(QueueJob)
                    .where(
                        QueueJob.queue_name == queue_name,
                        QueueJob.status == JobState.QUEUED.value,
                        QueueJob.available_at <= now,
                    )
                    .order_by(QueueJob.available_at.asc(), QueueJob.id.asc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [_to_dto(record) for record in records]

    def _release_expired_leases(self, session: Any, queue_name: str, now: datetime) -> None:
        expired = (
            session.execute(
                select(QueueJob).where(
                    QueueJob.queue_name == queue_name,
                    QueueJob.status == JobState.ACTIVE.value,
                    QueueJob.lease_expires_at.is_not(None),
                    QueueJob.lease_expires_at <= now,
                )
            )
            .scalars()
            .all()
        )
        for record in expired:
            exhausted = int(record.attempts) >= int(record.max_attempts)
            record.lease_expires_at = None
            record.updated_at = now
            record.last_error = "lease expired before the job reported a result"
            if exhausted:
                record.status = JobState.FAILED.value
                record.stop_reason = STOP_REASON_LEASE_EXPIRED
                record.finished_at = now
            else:
                record.status = JobState.QUEUED.value
                record.available_at = now
            _emit_job_event(_to_dto(record), "lease_expired", requeued=not exhausted)
        if expired:
            session.flush()

    def lease(self, job_id: int, *, queue_name: str, lease_seconds: int) -> QueueJobDTO | None:
        """Move a queued job to ``active`` and count the attempt."""

        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .execution_options(synchronize_session=False)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.queue_name == queue_name,
                    QueueJob.status == JobState.QUEUED.value,
                    QueueJob.available_at <= now,
                    QueueJob.attempts < QueueJob.max_attempts,
                )
                .values(
                    status=JobState.ACTIVE.value,
                    attempts=QueueJob.attempts + 1,
                    lease_expires_at=now + timedelta(seconds=max(1, int(lease_seconds))),
                    updated_at=now,
                )
            )
            if not result.rowcount:
                return None
            record = session.get(QueueJob, job_id)
            session.refresh(record)
            dto = _to_dto(record)
        _emit_job_event(dto, "leased", lease_timeout_s=int(lease_seconds))
        return dto

    def report_progress(self, job_id: int, percent: int) -> bool:
        """Store progress for an active job; the stored value never decreases."""

        value = max(0, min(100, int(percent)))
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .execution_options(synchronize_session=False)
                .where(QueueJob.id == job_id, QueueJob.status == JobState.ACTIVE.value)
                .values(
                    progress=case((QueueJob.progress < value, value), else_=QueueJob.progress)
                )
            )
            return bool(result.rowcount)

    def complete(
        self,
        job_id: int,
        *,
        queue_name: str,
        result_payload: Mapping[str, Any] | None = None,
    ) -> bool:
        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .execution_options(synchronize_session=False)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.queue_name == queue_name,
                    QueueJob.status == JobState.ACTIVE.value,
                )
                .values(
                    status=JobState.COMPLETED.value,
                    progress=100,
                    lease_expires_at=None,
                    last_error=None,
                    stop_reason=None,
                    result_payload=dict(result_payload) if result_payload else None,
                    updated_at=now,
                    finished_at=now,
                )
            )
            if not result.rowcount:
                return False
            dto = _to_dto(session.get(QueueJob, job_id))
        _emit_job_event(dto, "completed")
        return True

    def requeue(self, job_id: int, *, queue_name: str, error: str, delay_ms: int) -> bool:
        """Return a failed attempt to the queue after ``delay_ms``."""

        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .execution_options(synchronize_session=False)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.queue_name == queue_name,
                    QueueJob.status == JobState.ACTIVE.value,
                    QueueJob.attempts < QueueJob.max_attempts,
                )
                .values(
                    status=JobState.QUEUED.value,
                    available_at=now + timedelta(milliseconds=max(0, int(delay_ms))),
                    lease_expires_at=None,
                    last_error=error,
                    updated_at=now,
                )
            )
            if not result.rowcount:
                return False
            dto = _to_dto(session.get(QueueJob, job_id))
        _emit_job_event(dto, "retry", retry_in_ms=int(delay_ms), error=error)
        return True

    def fail(
        self,
        job_id: int,
        *,
        queue_name: str,
        error: str,
        stop_reason: str,
        result_payload: Mapping[str, Any] | None = None,
    ) -> bool:
        """Mark a job terminally failed; it is never dispatched again."""

        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .execution_options(synchronize_session=False)
                .where(
                    QueueJob.id == job_id,
                    QueueJob.queue_name == queue_name,
                    QueueJob.status.in_((JobState.ACTIVE.value, JobState.QUEUED.value)),
                )
                .values(
                    status=JobState.FAILED.value,
                    lease_expires_at=None,
                    last_error=error,
                    stop_reason=stop_reason,
                    result_payload=dict(result_payload) if result_payload else None,
                    updated_at=now,
                    finished_at=now,
                )
            )
            if not result.rowcount:
                return False
            dto = _to_dto(session.get(QueueJob, job_id))
        _emit_job_event(dto, "failed", stop_reason=stop_reason, error=error)
        return True

    def cancel(self, job_id: int) -> bool:
        """Terminally fail a job that has not been dispatched yet."""

        now = self._now()
        with self._session_factory() as session:
            result = session.execute(
                update(QueueJob)
                .execution_options(synchronize_session=False)
                .where(QueueJob.id == job_id, QueueJob.status == JobState.QUEUED.value)
                .values(
                    status=JobState.FAILED.value,
                    stop_reason=STOP_REASON_CANCELLED,
                    last_error=STOP_REASON_CANCELLED,
                    updated_at=now,
                    finished_at=now,
                )
            )
            if not result.rowcount:
                return False
            dto = _to_dto(session.get(QueueJob, job_id))
        _emit_job_event(dto, "cancelled")
        return True

    def count_active(self, queue_name: str) -> int:
        with self._session_factory() as session:
            count = session.execute(
                select(func.count())
                .select_from(QueueJob)
                .where(
                    QueueJob.queue_name == queue_name,
                    QueueJob.status == JobState.ACTIVE.value,
                )
            ).scalar_one_or_none()
        return int(count or 0)

    def count_by_status(self, queue_name: str) -> dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        with self._session_factory() as session:
            rows = session.execute(
                select(QueueJob.status, func.count())
                .where(QueueJob.queue_name == queue_name)
                .group_by(QueueJob.status)
            ).all()
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts

    def purge_finished(self, queue_name: str, *, keep_completed: int, keep_failed: int) -> int:
        """Delete the oldest finished jobs beyond the retention counts."""

        removed = 0
        with self._session_factory() as session:
            for state, keep in (
                (JobState.COMPLETED, keep_completed),
                (JobState.FAILED, keep_failed),
            ):
                stale_ids = (
                    session.execute(
                        select(QueueJob.id)
                        .where(
                            QueueJob.queue_name == queue_name,
                            QueueJob.status == state.value,
                        )
                        .order_by(QueueJob.id.desc())
                        .offset(max(0, int(keep)))
                    )
                    .scalars()
                    .all()
                )
                if stale_ids:
                    session.execute(delete(QueueJob).where(QueueJob.id.in_(stale_ids)))
                    removed += len(stale_ids)
        if removed:
            log_event(
                logger,
                "queue.job",
                component="queue.persistence",
                queue=queue_name,
                status="purged",
                count=removed,
            )
        return removed

    def ping(self) -> bool:
        """Return ``True`` when the store answers a trivial query."""

        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
        except (OperationalError, DBAPIError):
            logger.warning("Queue store ping failed", exc_info=True)
            return False
        return True


__all__ = [
    "QueueJobDTO",
    "QueueStore",
    "STOP_REASON_CANCELLED",
    "STOP_REASON_LEASE_EXPIRED",
]
