"""Structured log events emitted by the queue runtime."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from resonance.logging_events import log_event


def format_datetime(value: datetime | None) -> str | None:
    """Return an ISO formatted timestamp for ``value`` if present."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat()
    return value.astimezone(timezone.utc).isoformat()


def emit_lease_event(
    logger: Any,
    *,
    job_id: int | str,
    queue: str,
    status: str,
    lease_timeout: int,
    available_at: str | None = None,
) -> None:
    _emit_event(
        logger,
        "queue.lease",
        {
            "entity_id": str(job_id),
            "queue": queue,
            "status": status,
            "lease_timeout": lease_timeout,
            "available_at": available_at,
        },
    )


def emit_dispatch_event(
    logger: Any,
    *,
    job_id: int | str,
    queue: str,
    status: str,
    attempts: int | None = None,
    max_attempts: int | None = None,
) -> None:
    _emit_event(
        logger,
        "queue.dispatch",
        {
            "entity_id": str(job_id),
            "queue": queue,
            "status": status,
            "attempts": attempts,
            "max_attempts": max_attempts,
        },
    )


def emit_commit_event(
    logger: Any,
    *,
    job_id: int | str,
    queue: str,
    status: str,
    attempts: int,
    duration_ms: int,
    retry_in_ms: int | None = None,
    stop_reason: str | None = None,
    error: str | None = None,
) -> None:
    _emit_event(
        logger,
        "queue.commit",
        {
            "entity_id": str(job_id),
            "queue": queue,
            "status": status,
            "attempts": attempts,
            "duration_ms": duration_ms,
            "retry_in_ms": retry_in_ms,
            "stop_reason": stop_reason,
            "error": error or None,
        },
    )


def emit_timeout_event(
    logger: Any,
    *,
    job_id: int | str,
    queue: str,
    timeout_s: float,
    attempts: int,
) -> None:
    _emit_event(
        logger,
        "queue.timeout",
        {
            "entity_id": str(job_id),
            "queue": queue,
            "status": "timeout",
            "timeout_s": float(timeout_s),
            "attempts": attempts,
        },
    )


def emit_pool_event(
    logger: Any,
    *,
    status: str,
    queues: int,
    in_flight: int | None = None,
) -> None:
    _emit_event(
        logger,
        "worker.pool",
        {"status": status, "queues": queues, "in_flight": in_flight},
    )


def _emit_event(logger: Any, event: str, payload: dict[str, Any]) -> None:
    log_event(logger, event, **payload)
