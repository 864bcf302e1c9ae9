"""Queue health checks for the worker's probe endpoint."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from resonance.config import HealthConfig
from resonance.logging import get_logger
from resonance.queue.manager import QueueHealth, QueueManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class HealthReport:
    """Overall status plus per-queue connectivity detail."""

    status: str
    timestamp: datetime
    uptime_s: float
    version: str
    queues: dict[str, QueueHealth] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat(),
            "uptime_s": round(self.uptime_s, 3),
            "version": self.version,
            "queues": {name: item.as_dict() for name, item in self.queues.items()},
        }


class HealthService:
    """Probe every queue's durable store within the configured timeout."""

    def __init__(
        self,
        manager: QueueManager,
        *,
        config: HealthConfig,
        version: str,
        start_time: datetime | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._manager = manager
        self._config = config
        self._version = version
        self._clock = clock or (lambda: datetime.now(UTC))
        start = start_time or self._clock()
        if start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._start_time = start

    async def check(self) -> HealthReport:
        now = self._clock()
        timeout = max(0.1, self._config.probe_timeout_ms / 1000.0)
        try:
            queues = await asyncio.wait_for(asyncio.to_thread(self._manager.health), timeout)
        except TimeoutError:
            logger.warning("Queue health probe timed out after %.2f ms", timeout * 1000)
            queues = {name: QueueHealth(connected=False) for name in self._manager.queue_names}
        healthy = bool(queues) and all(item.connected for item in queues.values())
        return HealthReport(
            status="healthy" if healthy else "unhealthy",
            timestamp=now,
            uptime_s=max((now - self._start_time).total_seconds(), 0.0),
            version=self._version,
            queues=dict(queues),
        )


__all__ = ["HealthReport", "HealthService"]
