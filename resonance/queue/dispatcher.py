"""Asynchronous dispatcher executing leased jobs under per-queue limits."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from resonance.errors import InvalidPayloadError, JobTimeoutError
from resonance.logging import get_logger
from resonance.queue import events as queue_events
from resonance.queue.concurrency import BoundedPools
from resonance.queue.jobs import JobContext, StageResult, parse_payload
from resonance.queue.manager import QueueManager
from resonance.queue.persistence import QueueJobDTO
from resonance.queue.retry import RequeueAfter
from resonance.queue.scheduler import Scheduler

Processor = Callable[[JobContext[Any]], Awaitable[StageResult]]


@dataclass(slots=True, frozen=True)
class PoolBinding:
    """One processor bound to one queue with its own concurrency and deadline."""

    queue_name: str
    processor: Processor
    concurrency: int
    timeout_s: int


class Dispatcher:
    """Lease jobs, run their processors and commit the outcome."""

    def __init__(
        self,
        manager: QueueManager,
        bindings: Mapping[str, PoolBinding],
        *,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._manager = manager
        self._bindings = dict(bindings)
        config = manager.config
        self._pools = BoundedPools(
            {name: binding.concurrency for name, binding in self._bindings.items()}
        )
        self._scheduler = scheduler or Scheduler(
            manager.store,
            limits={name: binding.concurrency for name, binding in self._bindings.items()},
            timeouts_s={name: binding.timeout_s for name, binding in self._bindings.items()},
            poll_interval_ms=config.poll_interval_ms,
            visibility_grace_s=config.visibility_grace_s,
        )
        self._logger = get_logger(__name__)
        self._tasks: set[asyncio.Task[None]] = set()
        self._stop_event: asyncio.Event | None = None
        self._pending_stop = False
        self.started: asyncio.Event = asyncio.Event()
        self.stopped: asyncio.Event = asyncio.Event()
        self.stop_requested: bool = False

    @property
    def pools(self) -> BoundedPools:
        return self._pools

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self, lifespan: asyncio.Event | None = None) -> None:
        """Run the dispatch loop until stopped, then drain in-flight jobs."""

        self._prepare_run_state()
        try:
            self.started.set()
            while not self._should_stop(lifespan):
                leased = self.dispatch_once()
                if not leased:
                    await self._scheduler.sleep(self._stop_event)
        finally:
            if self._stop_event is not None:
                self._stop_event.set()
            self.stop_requested = True
            await self._await_all_tasks()
            self.stopped.set()

    def dispatch_once(self) -> list[QueueJobDTO]:
        """Lease as many jobs as there are free slots and start them."""

        capacity = {name: self._pools.free_slots(name) for name in self._bindings}
        leased = self._scheduler.lease_ready_jobs(capacity)
        for job in leased:
            self._start_job(job)
        return leased

    def request_stop(self) -> None:
        """Signal the dispatcher to exit the run loop."""

        self.stop_requested = True
        if self._stop_event is not None:
            self._stop_event.set()
        else:
            self._pending_stop = True

    def _prepare_run_state(self) -> None:
        self.started.clear()
        self.stopped.clear()
        self._stop_event = asyncio.Event()
        if self._pending_stop:
            self.stop_requested = True
            self._stop_event.set()
            self._pending_stop = False
        else:
            self.stop_requested = False

    def _should_stop(self, lifespan: asyncio.Event | None) -> bool:
        if self._stop_event is not None and self._stop_event.is_set():
            return True
        if lifespan is not None and lifespan.is_set():
            return True
        return False

    def _start_job(self, job: QueueJobDTO) -> None:
        binding = self._bindings[job.queue_name]
        self._pools.reserve(job.queue_name)
        task = asyncio.create_task(self._execute_job(job, binding))
        self._tasks.add(task)

        def _finished(done: asyncio.Task[None]) -> None:
            self._pools.release(job.queue_name)
            self._tasks.discard(done)
            if not done.cancelled() and done.exception() is not None:
                self._logger.error(
                    "Unhandled dispatch task error for job %s", job.id, exc_info=done.exception()
                )

        task.add_done_callback(_finished)

    async def _execute_job(self, job: QueueJobDTO, binding: PoolBinding) -> None:
        async with self._pools.acquire(job.queue_name):
            start = time.perf_counter()
            queue_events.emit_dispatch_event(
                self._logger,
                job_id=job.id,
                queue=job.queue_name,
                status="started",
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            )
            outcome = await self._run_processor(job, binding)
            if isinstance(outcome, StageResult) and outcome.success:
                self._handle_success(job, outcome, start)
            else:
                self._handle_failure(job, outcome, start)

    async def _run_processor(
        self, job: QueueJobDTO, binding: PoolBinding
    ) -> StageResult | Exception:
        try:
            payload = parse_payload(job.queue_name, job.payload)
        except InvalidPayloadError as exc:
            return exc

        async def _report(percent: int) -> None:
            await asyncio.to_thread(self._manager.report_progress, job, percent)

        context = JobContext(
            job_id=job.id,
            queue_name=job.queue_name,
            payload=payload,
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            progress_reporter=_report,
        )
        timeout_s = job.timeout_s or binding.timeout_s
        try:
            result = await asyncio.wait_for(binding.processor(context), timeout=timeout_s)
        except asyncio.TimeoutError:
            queue_events.emit_timeout_event(
                self._logger,
                job_id=job.id,
                queue=job.queue_name,
                timeout_s=timeout_s,
                attempts=job.attempts,
            )
            return JobTimeoutError(job.queue_name, timeout_s)
        except Exception as exc:
            self._logger.exception("Processor raised for job %s on %s", job.id, job.queue_name)
            return exc
        if not isinstance(result, StageResult):
            return TypeError(
                f"processor for {job.queue_name!r} returned {type(result).__name__}"
            )
        return result

    def _handle_success(self, job: QueueJobDTO, result: StageResult, start: float) -> None:
        self._manager.complete(job, result)
        queue_events.emit_commit_event(
            self._logger,
            job_id=job.id,
            queue=job.queue_name,
            status="completed",
            attempts=job.attempts,
            duration_ms=_elapsed_ms(start),
        )

    def _handle_failure(
        self, job: QueueJobDTO, error: StageResult | Exception, start: float
    ) -> None:
        decision = self._manager.fail(job, error)
        if isinstance(decision, RequeueAfter):
            status, retry_in_ms, stop_reason = "retry", decision.delay_ms, None
        else:
            status, retry_in_ms, stop_reason = "failed", None, decision.reason
        queue_events.emit_commit_event(
            self._logger,
            job_id=job.id,
            queue=job.queue_name,
            status=status,
            attempts=job.attempts,
            duration_ms=_elapsed_ms(start),
            retry_in_ms=retry_in_ms,
            stop_reason=stop_reason,
            error=str(error)[:512],
        )

    async def _await_all_tasks(self) -> None:
        if not self._tasks:
            return
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def cancel_in_flight(self) -> None:
        """Cancel running jobs; their leases expire and the jobs are retried."""

        for task in list(self._tasks):
            task.cancel()
        await self._await_all_tasks()


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


__all__ = ["Dispatcher", "PoolBinding", "Processor"]
