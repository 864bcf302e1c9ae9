"""Runtime configuration for the Resonance worker."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from resonance.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./resonance.db"

DEFAULT_CONCURRENCY: Mapping[str, int] = {
    "transcode": 2,
    "mp3-transcode": 2,
    "waveform": 4,
    "artwork-extract": 4,
    "loudness": 4,
    "analytics-rollup": 1,
    "fingerprint": 2,
    "distribution": 1,
}

DEFAULT_TIMEOUTS_S: Mapping[str, int] = {
    "transcode": 1800,
    "mp3-transcode": 900,
    "distribution": 900,
}
DEFAULT_JOB_TIMEOUT_S = 600

# Queues that mutate shared aggregate rows must never run in parallel.
SERIALIZED_QUEUES: frozenset[str] = frozenset({"distribution"})

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_TYPE = "exponential"
DEFAULT_BACKOFF_DELAY_MS = 5000
DEFAULT_POLL_INTERVAL_MS = 250
DEFAULT_VISIBILITY_GRACE_S = 30
DEFAULT_KEEP_COMPLETED = 100
DEFAULT_KEEP_FAILED = 500

DEFAULT_HEALTH_PORT = 3001
DEFAULT_HEALTH_PROBE_TIMEOUT_MS = 1000

DEFAULT_TOOL_TIMEOUT_S = 900
DEFAULT_ACOUSTID_URL = "https://api.acoustid.org/v2/lookup"
DEFAULT_ACOUSTID_TIMEOUT_MS = 5000

_BACKOFF_TYPES = frozenset({"exponential", "fixed"})

_RUNTIME_ENV_CACHE: dict[str, str] | None = None


def _env_key(queue_name: str, suffix: str) -> str:
    return f"{queue_name.replace('-', '_').upper()}_{suffix}"


@dataclass(slots=True, frozen=True)
class RetryDefaults:
    attempts: int
    backoff_type: str
    backoff_delay_ms: int


@dataclass(slots=True, frozen=True)
class QueueConfig:
    concurrency: dict[str, int]
    timeouts_s: dict[str, int]
    retry: RetryDefaults
    poll_interval_ms: int
    visibility_grace_s: int
    keep_completed: int
    keep_failed: int

    def concurrency_for(self, queue_name: str) -> int:
        if queue_name in SERIALIZED_QUEUES:
            return 1
        return max(1, self.concurrency.get(queue_name, 1))

    def timeout_for(self, queue_name: str) -> int:
        return max(1, self.timeouts_s.get(queue_name, DEFAULT_JOB_TIMEOUT_S))

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> QueueConfig:
        concurrency: dict[str, int] = {}
        timeouts: dict[str, int] = {}
        for name, default in DEFAULT_CONCURRENCY.items():
            concurrency[name] = _bounded_int(
                env.get(_env_key(name, "CONCURRENCY")), default=default, minimum=1
            )
            timeouts[name] = _bounded_int(
                env.get(_env_key(name, "TIMEOUT_S")),
                default=DEFAULT_TIMEOUTS_S.get(name, DEFAULT_JOB_TIMEOUT_S),
                minimum=1,
            )
        for name in SERIALIZED_QUEUES:
            if concurrency.get(name, 1) != 1:
                logger.warning("Ignoring concurrency override for serialized queue %s", name)
            concurrency[name] = 1

        backoff_type = str(env.get("JOB_BACKOFF_TYPE") or DEFAULT_BACKOFF_TYPE).strip().lower()
        if backoff_type not in _BACKOFF_TYPES:
            logger.warning("Unknown JOB_BACKOFF_TYPE %r; using %s", backoff_type, DEFAULT_BACKOFF_TYPE)
            backoff_type = DEFAULT_BACKOFF_TYPE
        retry = RetryDefaults(
            attempts=_bounded_int(
                env.get("JOB_RETRY_ATTEMPTS"), default=DEFAULT_RETRY_ATTEMPTS, minimum=1
            ),
            backoff_type=backoff_type,
            backoff_delay_ms=_bounded_int(
                env.get("JOB_BACKOFF_DELAY"), default=DEFAULT_BACKOFF_DELAY_MS, minimum=0
            ),
        )
        return cls(
            concurrency=concurrency,
            timeouts_s=timeouts,
            retry=retry,
            poll_interval_ms=_bounded_int(
                env.get("QUEUE_POLL_INTERVAL_MS"), default=DEFAULT_POLL_INTERVAL_MS, minimum=10
            ),
            visibility_grace_s=_bounded_int(
                env.get("QUEUE_VISIBILITY_GRACE_S"),
                default=DEFAULT_VISIBILITY_GRACE_S,
                minimum=1,
            ),
            keep_completed=_bounded_int(
                env.get("QUEUE_KEEP_COMPLETED"), default=DEFAULT_KEEP_COMPLETED, minimum=0
            ),
            keep_failed=_bounded_int(
                env.get("QUEUE_KEEP_FAILED"), default=DEFAULT_KEEP_FAILED, minimum=0
            ),
        )


@dataclass(slots=True, frozen=True)
class StorageConfig:
    endpoint: str
    port: int
    use_ssl: bool
    access_key: str
    secret_key: str
    region: str
    bucket_originals: str
    bucket_transcodes: str
    bucket_waveforms: str
    bucket_images: str

    @property
    def endpoint_url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.endpoint}:{self.port}"

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> StorageConfig:
        return cls(
            endpoint=str(env.get("MINIO_ENDPOINT") or "localhost"),
            port=_bounded_int(env.get("MINIO_PORT"), default=9000, minimum=1, maximum=65535),
            use_ssl=_as_bool(_env_value(env, "MINIO_USE_SSL"), default=False),
            access_key=str(env.get("MINIO_ACCESS_KEY") or "minioadmin"),
            secret_key=str(env.get("MINIO_SECRET_KEY") or "minioadmin"),
            region=str(env.get("MINIO_REGION") or "us-east-1"),
            bucket_originals=str(env.get("BUCKET_ORIGINALS") or "originals"),
            bucket_transcodes=str(env.get("BUCKET_TRANSCODES") or "transcodes"),
            bucket_waveforms=str(env.get("BUCKET_WAVEFORMS") or "waveforms"),
            bucket_images=str(env.get("BUCKET_IMAGES") or "images"),
        )


@dataclass(slots=True, frozen=True)
class DatabaseConfig:
    url: str


@dataclass(slots=True, frozen=True)
class MediaToolsConfig:
    ffmpeg: str
    ffprobe: str
    audiowaveform: str
    fpcalc: str
    timeout_s: int

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> MediaToolsConfig:
        return cls(
            ffmpeg=str(env.get("FFMPEG_BIN") or "ffmpeg"),
            ffprobe=str(env.get("FFPROBE_BIN") or "ffprobe"),
            audiowaveform=str(env.get("AUDIOWAVEFORM_BIN") or "audiowaveform"),
            fpcalc=str(env.get("FPCALC_BIN") or "fpcalc"),
            timeout_s=_bounded_int(
                env.get("MEDIA_TOOL_TIMEOUT_S"), default=DEFAULT_TOOL_TIMEOUT_S, minimum=1
            ),
        )


@dataclass(slots=True, frozen=True)
class FingerprintConfig:
    acoustid_api_key: str | None
    acoustid_url: str
    acoustid_timeout_ms: int

    @property
    def lookup_enabled(self) -> bool:
        return bool(self.acoustid_api_key)

    @classmethod
    def from_env(cls, env: Mapping[str, Any]) -> FingerprintConfig:
        api_key = _env_value(env, "ACOUSTID_API_KEY")
        return cls(
            acoustid_api_key=api_key.strip() if api_key and api_key.strip() else None,
            acoustid_url=str(env.get("ACOUSTID_URL") or DEFAULT_ACOUSTID_URL),
            acoustid_timeout_ms=_bounded_int(
                env.get("ACOUSTID_TIMEOUT_MS"), default=DEFAULT_ACOUSTID_TIMEOUT_MS, minimum=100
            ),
        )


@dataclass(slots=True, frozen=True)
class HealthConfig:
    port: int
    probe_timeout_ms: int


@dataclass(slots=True, frozen=True)
class LoggingConfig:
    level: str
    log_file: str | None = None


@dataclass(slots=True, frozen=True)
class AppConfig:
    database: DatabaseConfig
    queue: QueueConfig
    storage: StorageConfig
    media: MediaToolsConfig
    fingerprint: FingerprintConfig
    health: HealthConfig
    logging: LoggingConfig
    environment: str = field(default="production")


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env or os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def _load_env_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        values[key] = value.strip().strip("'\"")
    return values


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def get_env(name: str, default: str | None = None) -> str | None:
    """Return an environment variable honoring ENV > .env > defaults."""

    env = get_runtime_env()
    return env.get(name, default)


def load_config(env: Mapping[str, Any] | None = None) -> AppConfig:
    """Build the application configuration from the runtime environment."""

    env = env if env is not None else get_runtime_env()
    database_url = _env_value(env, "DATABASE_URL") or DEFAULT_DATABASE_URL
    return AppConfig(
        database=DatabaseConfig(url=database_url),
        queue=QueueConfig.from_env(env),
        storage=StorageConfig.from_env(env),
        media=MediaToolsConfig.from_env(env),
        fingerprint=FingerprintConfig.from_env(env),
        health=HealthConfig(
            port=_bounded_int(
                env.get("HEALTH_PORT"), default=DEFAULT_HEALTH_PORT, minimum=1, maximum=65535
            ),
            probe_timeout_ms=_bounded_int(
                env.get("HEALTH_PROBE_TIMEOUT_MS"),
                default=DEFAULT_HEALTH_PROBE_TIMEOUT_MS,
                minimum=10,
            ),
        ),
        logging=LoggingConfig(
            level=str(env.get("LOG_LEVEL") or "INFO"),
            log_file=_env_value(env, "LOG_FILE") or None,
        ),
        environment=str(env.get("APP_ENV") or "production"),
    )


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return str(value)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "FingerprintConfig",
    "HealthConfig",
    "LoggingConfig",
    "MediaToolsConfig",
    "QueueConfig",
    "RetryDefaults",
    "SERIALIZED_QUEUES",
    "StorageConfig",
    "get_env",
    "get_runtime_env",
    "load_config",
    "override_runtime_env",
]
