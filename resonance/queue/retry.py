"""Retry policy for queued jobs and backoff helpers for external calls."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar, Union

T = TypeVar("T")

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"

STOP_REASON_EXHAUSTED = "max_attempts_exhausted"
STOP_REASON_NON_RETRYABLE = "non_retryable"


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    type: str = BACKOFF_EXPONENTIAL
    delay_ms: int = 5000

    def delay_for(self, attempt: int) -> int:
        """Return the delay in ms before retrying after failed ``attempt`` (1-based)."""

        base = max(0, int(self.delay_ms))
        if self.type == BACKOFF_FIXED:
            return base
        if base == 0:
            return 0
        return exp_backoff_delays(base, max(1, attempt), 0)[max(1, attempt) - 1]


@dataclass(slots=True, frozen=True)
class RequeueAfter:
    delay_ms: int


@dataclass(slots=True, frozen=True)
class TerminalFail:
    reason: str


NextState = Union[RequeueAfter, TerminalFail]


def is_retryable(error: Any) -> bool:
    """Errors are retryable unless they carry ``retryable = False``."""

    return bool(getattr(error, "retryable", True))


def next_state(
    attempt: int,
    max_attempts: int,
    error: Any,
    policy: BackoffPolicy | None = None,
) -> NextState:
    """Decide what happens to a job whose ``attempt`` just failed with ``error``.

    Non-retryable errors fail terminally without spending the remaining
    attempts; otherwise the job is requeued until ``max_attempts`` is reached.
    """

    if not is_retryable(error):
        return TerminalFail(STOP_REASON_NON_RETRYABLE)
    if attempt >= max_attempts:
        return TerminalFail(STOP_REASON_EXHAUSTED)
    policy = policy or BackoffPolicy()
    return RequeueAfter(policy.delay_for(attempt))


def exp_backoff_delays(base_ms: int, max_attempts: int, jitter_pct: int) -> list[int]:
    """Return exponential backoff delays in milliseconds.

    ``jitter_pct`` increases each delay by the configured percentage so the
    nominal delay can be inspected in tests; random jitter is applied when
    actually sleeping.
    """

    base = max(1, int(base_ms))
    attempts = max(0, int(max_attempts))
    pct = max(0, int(jitter_pct))
    delays: list[int] = []
    for index in range(attempts):
        delay = base * (2**index)
        if pct:
            delay += int(delay * pct / 100)
        delays.append(delay)
    return delays


def _jitter_delay_ms(delay_ms: int, jitter_pct: int) -> float:
    delay = max(0, int(delay_ms))
    pct = max(0, int(jitter_pct))
    if delay <= 0 or pct <= 0:
        return float(delay)
    jitter = delay * pct / 100.0
    return random.uniform(max(0.0, delay - jitter), delay + jitter)


AsyncFactory = Callable[[], Awaitable[T]]
Classifier = Callable[[Exception], bool]


async def with_retry(
    async_fn: AsyncFactory[T],
    *,
    attempts: int,
    base_ms: int,
    jitter_pct: int,
    timeout_ms: int | None,
    classify_err: Classifier,
) -> T:
    """Execute ``async_fn`` with retries, exponential backoff and jitter."""

    max_attempts = max(1, int(attempts))
    timeout = int(timeout_ms) if timeout_ms is not None else None
    delays = exp_backoff_delays(max(1, int(base_ms)), max_attempts, 0)

    for attempt in range(1, max_attempts + 1):
        try:
            call = async_fn()
            if timeout is not None and timeout > 0:
                return await asyncio.wait_for(call, timeout / 1000.0)
            return await call
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not classify_err(exc) or attempt >= max_attempts:
                raise
            jittered_ms = _jitter_delay_ms(delays[attempt - 1], jitter_pct)
            if jittered_ms > 0:
                await asyncio.sleep(jittered_ms / 1000.0)
    raise RuntimeError("Retry loop exited unexpectedly")


__all__ = [
    "BACKOFF_EXPONENTIAL",
    "BACKOFF_FIXED",
    "BackoffPolicy",
    "NextState",
    "RequeueAfter",
    "STOP_REASON_EXHAUSTED",
    "STOP_REASON_NON_RETRYABLE",
    "TerminalFail",
    "exp_backoff_delays",
    "is_retryable",
    "next_state",
    "with_retry",
]
