"""Worker pool registry: one processor and one concurrency limit per queue."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Mapping

from resonance.config import SERIALIZED_QUEUES
from resonance.logging import get_logger
from resonance.queue import events as queue_events
from resonance.queue.dispatcher import Dispatcher, PoolBinding, Processor
from resonance.queue.jobs import QUEUE_NAMES
from resonance.queue.manager import QueueManager

logger = get_logger(__name__)


class WorkerRegistry:
    """Bind processors to queues and start or stop every pool together."""

    def __init__(self, manager: QueueManager) -> None:
        self._manager = manager
        self._bindings: dict[str, PoolBinding] = {}
        self._dispatcher: Dispatcher | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def bindings(self) -> Mapping[str, PoolBinding]:
        return dict(self._bindings)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def dispatcher(self) -> Dispatcher | None:
        return self._dispatcher

    def register(
        self,
        queue_name: str,
        processor: Processor,
        *,
        concurrency: int | None = None,
        timeout_s: int | None = None,
    ) -> PoolBinding:
        """Bind ``processor`` to ``queue_name``; each queue takes exactly one processor."""

        if queue_name not in QUEUE_NAMES:
            raise ValueError(f"unknown queue {queue_name!r}")
        if queue_name in self._bindings:
            raise ValueError(f"queue {queue_name!r} already has a processor")
        if self.running:
            raise RuntimeError("cannot register processors while pools are running")
        config = self._manager.config
        limit = config.concurrency_for(queue_name)
        if concurrency is not None and queue_name not in SERIALIZED_QUEUES:
            limit = max(1, int(concurrency))
        binding = PoolBinding(
            queue_name=queue_name,
            processor=processor,
            concurrency=limit,
            timeout_s=max(1, int(timeout_s or config.timeout_for(queue_name))),
        )
        self._bindings[queue_name] = binding
        return binding

    def register_all(self, processors: Mapping[str, Processor]) -> None:
        for queue_name, processor in processors.items():
            self.register(queue_name, processor)

    async def start_all(self) -> None:
        """Start every registered pool in one dispatcher task."""

        if self.running:
            return
        if not self._bindings:
            raise RuntimeError("no processors registered")
        self._dispatcher = Dispatcher(self._manager, self._bindings)
        self._task = asyncio.create_task(self._dispatcher.run(), name="resonance-dispatcher")
        await self._dispatcher.started.wait()
        queue_events.emit_pool_event(logger, status="started", queues=len(self._bindings))

    async def stop_all(self, *, drain_timeout_s: float | None = None) -> None:
        """Stop leasing new jobs and wait for in-flight jobs to finish.

        When ``drain_timeout_s`` elapses first, the remaining jobs are
        cancelled; their leases expire and the queue retries them.
        """

        dispatcher, task = self._dispatcher, self._task
        if dispatcher is None or task is None:
            return
        queue_events.emit_pool_event(
            logger, status="stopping", queues=len(self._bindings), in_flight=dispatcher.in_flight
        )
        dispatcher.request_stop()
        try:
            if drain_timeout_s is None:
                await task
            else:
                await asyncio.wait_for(asyncio.shield(task), timeout=drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Drain timed out after %ss; cancelling in-flight jobs", drain_timeout_s)
            await dispatcher.cancel_in_flight()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None
        queue_events.emit_pool_event(logger, status="stopped", queues=len(self._bindings))


__all__ = ["WorkerRegistry"]
