"""Lease ready jobs from the store without exceeding pool capacity."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping

from resonance.logging import get_logger
from resonance.queue import events as queue_events
from resonance.queue.persistence import QueueJobDTO, QueueStore


class Scheduler:
    """Turn free pool slots into leased jobs, oldest first per queue."""

    def __init__(
        self,
        store: QueueStore,
        *,
        limits: Mapping[str, int],
        timeouts_s: Mapping[str, int],
        poll_interval_ms: int = 250,
        visibility_grace_s: int = 30,
    ) -> None:
        self._store = store
        self._limits = {name: max(1, int(limit)) for name, limit in limits.items()}
        self._timeouts_s = dict(timeouts_s)
        self._poll_interval = max(0.0, poll_interval_ms / 1000.0)
        self._visibility_grace_s = max(1, int(visibility_grace_s))
        self._logger = get_logger(__name__)

    @property
    def poll_interval(self) -> float:
        """Return the configured polling interval in seconds."""

        return self._poll_interval

    @property
    def queue_names(self) -> tuple[str, ...]:
        return tuple(self._limits)

    def lease_seconds_for(self, job: QueueJobDTO) -> int:
        timeout = job.timeout_s or self._timeouts_s.get(job.queue_name, 600)
        return int(timeout) + self._visibility_grace_s

    def lease_ready_jobs(self, capacity: Mapping[str, int]) -> list[QueueJobDTO]:
        """Lease at most ``capacity[queue]`` jobs per queue.

        The persisted active count is checked as well so a queue never holds
        more ``active`` rows than its limit, even while leases from an earlier
        run are still outstanding.
        """

        leased_jobs: list[QueueJobDTO] = []
        for queue_name, limit in self._limits.items():
            active = self._store.count_active(queue_name)
            free = min(int(capacity.get(queue_name, 0)), limit - active)
            if free <= 0:
                continue
            for job in self._store.fetch_ready(queue_name, limit=free):
                lease_seconds = self.lease_seconds_for(job)
                leased = self._store.lease(
                    job.id, queue_name=queue_name, lease_seconds=lease_seconds
                )
                queue_events.emit_lease_event(
                    self._logger,
                    job_id=job.id,
                    queue=queue_name,
                    status="leased" if leased is not None else "skipped",
                    lease_timeout=lease_seconds,
                    available_at=queue_events.format_datetime(job.available_at),
                )
                if leased is not None:
                    leased_jobs.append(leased)
        return leased_jobs

    async def sleep(self, stop_signal: asyncio.Event | None = None) -> None:
        """Wait one poll interval or until ``stop_signal`` is set."""

        timeout = self._poll_interval
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        if stop_signal is None:
            await asyncio.sleep(timeout)
            return
        waiter = asyncio.create_task(stop_signal.wait())
        try:
            await asyncio.wait({waiter}, timeout=timeout)
        finally:
            if not waiter.done():
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter


__all__ = ["Scheduler"]
