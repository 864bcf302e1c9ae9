from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from resonance.api.health import router as health_router
from resonance.config import AppConfig, HealthConfig
from resonance.main import WorkerRuntime, build_runtime, create_app
from resonance.queue.jobs import QUEUE_NAMES
from resonance.queue.manager import QueueHealth
from resonance.services.health import HealthService
from tests.helpers import FakeStorage


def _runtime(config: AppConfig) -> WorkerRuntime:
    return build_runtime(config, storage=FakeStorage())


def _unreachable_runtime(config: AppConfig) -> WorkerRuntime:
    runtime = _runtime(config)
    runtime.manager.store.ping = lambda: False  # type: ignore[method-assign]
    return runtime


def test_health_reports_connected_queues() -> None:
    app = create_app(runtime_factory=_runtime, start_workers=False)

    with TestClient(app) as client:
        app.state.runtime.manager.enqueue_waveform("v-1")
        response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"]
    assert set(body["queues"]) == set(QUEUE_NAMES)
    assert body["queues"]["waveform"] == {"connected": True, "active": 0, "queued": 1}
    assert body["uptime_s"] >= 0


def test_health_returns_503_when_store_is_unreachable() -> None:
    app = create_app(runtime_factory=_unreachable_runtime, start_workers=False)

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert all(not queue["connected"] for queue in body["queues"].values())


def test_health_without_runtime_is_unavailable() -> None:
    app = FastAPI()
    app.include_router(health_router)

    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 503


def test_lifespan_starts_and_stops_worker_pools() -> None:
    app = create_app(runtime_factory=_runtime, start_workers=True)

    with TestClient(app) as client:
        registry = app.state.runtime.registry
        assert registry.running
        assert set(registry.bindings) == set(QUEUE_NAMES)
        assert registry.bindings["distribution"].concurrency == 1
        assert client.get("/health").status_code == 200

    assert not registry.running


class _SlowManager:
    queue_names = ("transcode", "waveform")

    def health(self) -> dict[str, QueueHealth]:
        time.sleep(0.5)
        return {name: QueueHealth(connected=True) for name in self.queue_names}


@pytest.mark.asyncio
async def test_health_probe_timeout_marks_queues_disconnected() -> None:
    start = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    service = HealthService(
        _SlowManager(),  # type: ignore[arg-type]
        config=HealthConfig(port=3001, probe_timeout_ms=50),
        version="test",
        start_time=start,
        clock=lambda: start + timedelta(seconds=90),
    )

    report = await service.check()

    assert not report.ok
    assert report.uptime_s == 90
    assert set(report.queues) == {"transcode", "waveform"}
    assert all(not item.connected for item in report.queues.values())
