"""Entry point for the Resonance media worker."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

import uvicorn
from fastapi import FastAPI

from resonance import __version__
from resonance.api import health as health_api
from resonance.config import AppConfig, load_config
from resonance.db import init_db, session_scope
from resonance.logging import configure_logging, get_logger
from resonance.logging_events import log_event
from resonance.media.ffmpeg import FFmpeg
from resonance.media.fingerprint import AcoustIdClient, Fpcalc
from resonance.media.tools import ToolRunner
from resonance.media.waveform import AudioWaveform
from resonance.processors import ProcessorDeps, default_processors
from resonance.queue.manager import QueueManager
from resonance.queue.persistence import QueueStore
from resonance.queue.registry import WorkerRegistry
from resonance.services.analytics import AnalyticsService
from resonance.services.distribution import DistributionService
from resonance.services.health import HealthService
from resonance.services.media_dao import MediaDao
from resonance.storage.blob import BlobStorage, S3BlobStorage

logger = get_logger(__name__)
_APP_LISTEN_HOST = "0.0.0.0"


@dataclass(slots=True)
class WorkerRuntime:
    """Everything the process owns; one instance per app."""

    config: AppConfig
    manager: QueueManager
    registry: WorkerRegistry
    health: HealthService


def build_runtime(config: AppConfig, *, storage: BlobStorage | None = None) -> WorkerRuntime:
    manager = QueueManager(QueueStore(session_factory=session_scope), config.queue)
    runner = ToolRunner(timeout_s=float(config.media.timeout_s))
    deps = ProcessorDeps(
        dao=MediaDao(session_factory=session_scope),
        storage=storage or S3BlobStorage(config.storage),
        buckets=config.storage,
        ffmpeg=FFmpeg(runner, ffmpeg=config.media.ffmpeg, ffprobe=config.media.ffprobe),
        waveform=AudioWaveform(runner, binary=config.media.audiowaveform),
        fpcalc=Fpcalc(runner, binary=config.media.fpcalc),
        acoustid=AcoustIdClient(config.fingerprint),
        distribution=DistributionService(session_factory=session_scope),
        analytics=AnalyticsService(session_factory=session_scope),
        manager=manager,
    )
    registry = WorkerRegistry(manager)
    registry.register_all(default_processors(deps))
    health = HealthService(
        manager, config=config.health, version=__version__, start_time=datetime.now(UTC)
    )
    return WorkerRuntime(config=config, manager=manager, registry=registry, health=health)


RuntimeFactory = Callable[[AppConfig], WorkerRuntime]


def create_app(
    config: AppConfig | None = None,
    *,
    runtime_factory: RuntimeFactory = build_runtime,
    start_workers: bool = True,
) -> FastAPI:
    """Build the FastAPI app; its lifespan owns the worker pools."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app_config = config or load_config()
        configure_logging(app_config.logging.level, app_config.logging.log_file)
        init_db()
        runtime = runtime_factory(app_config)
        app.state.runtime = runtime
        app.state.health_service = runtime.health
        if start_workers:
            await runtime.registry.start_all()
        log_event(
            logger,
            "worker.startup",
            queues=len(runtime.registry.bindings),
            workers_started=start_workers,
            environment=app_config.environment,
        )
        try:
            yield
        finally:
            await runtime.registry.stop_all()
            log_event(logger, "worker.shutdown", queues=len(runtime.registry.bindings))

    app = FastAPI(title="Resonance Worker", version=__version__, lifespan=lifespan)
    app.include_router(health_api.router)
    return app


def run() -> None:
    config = load_config()
    configure_logging(config.logging.level, config.logging.log_file)
    logger.info("Starting Resonance worker on %s:%s", _APP_LISTEN_HOST, config.health.port)
    uvicorn.run(
        create_app(config),
        host=_APP_LISTEN_HOST,
        port=config.health.port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
