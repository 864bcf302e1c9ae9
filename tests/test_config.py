from __future__ import annotations

from resonance.config import (
    DEFAULT_CONCURRENCY,
    get_env,
    load_config,
    load_runtime_env,
    override_runtime_env,
)


def test_defaults_match_documented_pool_sizes() -> None:
    config = load_config({})

    assert config.queue.concurrency == dict(DEFAULT_CONCURRENCY)
    assert config.queue.timeout_for("transcode") == 1800
    assert config.queue.timeout_for("waveform") == 600
    assert config.queue.retry.attempts == 3
    assert config.queue.retry.backoff_type == "exponential"
    assert config.queue.retry.backoff_delay_ms == 5000
    assert config.health.port == 3001
    assert config.database.url == "sqlite:///./resonance.db"
    assert config.fingerprint.lookup_enabled is False


def test_concurrency_overrides_apply_per_queue() -> None:
    config = load_config({"TRANSCODE_CONCURRENCY": "6", "MP3_TRANSCODE_CONCURRENCY": "0"})

    assert config.queue.concurrency_for("transcode") == 6
    assert config.queue.concurrency_for("mp3-transcode") == 1


def test_distribution_queue_is_pinned_to_one_worker() -> None:
    config = load_config({"DISTRIBUTION_CONCURRENCY": "8"})

    assert config.queue.concurrency["distribution"] == 1
    assert config.queue.concurrency_for("distribution") == 1


def test_retry_and_backoff_overrides() -> None:
    config = load_config(
        {"JOB_RETRY_ATTEMPTS": "5", "JOB_BACKOFF_TYPE": "Fixed", "JOB_BACKOFF_DELAY": "250"}
    )

    assert config.queue.retry.attempts == 5
    assert config.queue.retry.backoff_type == "fixed"
    assert config.queue.retry.backoff_delay_ms == 250


def test_unknown_backoff_type_falls_back_to_exponential() -> None:
    config = load_config({"JOB_BACKOFF_TYPE": "linear", "JOB_BACKOFF_DELAY": "not-a-number"})

    assert config.queue.retry.backoff_type == "exponential"
    assert config.queue.retry.backoff_delay_ms == 5000


def test_storage_settings_build_endpoint_url() -> None:
    config = load_config(
        {
            "MINIO_ENDPOINT": "minio.internal",
            "MINIO_PORT": "9443",
            "MINIO_USE_SSL": "true",
            "BUCKET_WAVEFORMS": "peaks",
        }
    )

    assert config.storage.endpoint_url == "https://minio.internal:9443"
    assert config.storage.bucket_waveforms == "peaks"
    assert config.storage.bucket_originals == "originals"


def test_acoustid_lookup_requires_api_key() -> None:
    assert load_config({"ACOUSTID_API_KEY": "  "}).fingerprint.lookup_enabled is False
    assert load_config({"ACOUSTID_API_KEY": "key-123"}).fingerprint.lookup_enabled is True


def test_env_file_is_overridden_by_process_environment(tmp_path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# worker settings\nexport HEALTH_PORT=4001\nLOG_LEVEL='DEBUG'\n", encoding="utf-8"
    )

    env = load_runtime_env(env_file=env_file, base_env={"HEALTH_PORT": "5001"})

    assert env["HEALTH_PORT"] == "5001"
    assert env["LOG_LEVEL"] == "DEBUG"


def test_runtime_env_cache_can_be_overridden() -> None:
    override_runtime_env({"LOG_LEVEL": "WARNING"})

    assert get_env("LOG_LEVEL") == "WARNING"
    assert load_config().logging.level == "WARNING"
