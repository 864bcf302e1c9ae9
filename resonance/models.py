"""Database models for the Resonance worker."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from resonance.db import Base


def _utcnow() -> datetime:
    """Return a naive UTC timestamp for ORM defaults."""

    return datetime.now(UTC).replace(tzinfo=None)


def _uuid() -> str:
    return str(uuid.uuid4())


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_queue_jobs_attempts_non_negative"),
        CheckConstraint("attempts <= max_attempts", name="ck_queue_jobs_attempts_bounded"),
        CheckConstraint(
            "status IN ('queued','active','completed','failed')",
            name="ck_queue_jobs_status_valid",
        ),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_queue_jobs_progress_range"),
        Index("ix_queue_jobs_queue_status_available_at", "queue_name", "status", "available_at"),
        Index("ix_queue_jobs_lease_expires_at", "lease_expires_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue_name = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=JobState.QUEUED.value, index=True)
    payload = Column("payload_json", JSON, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff_type = Column(String(16), nullable=False, default="exponential")
    backoff_delay_ms = Column(Integer, nullable=False, default=5000)
    timeout_s = Column(Integer, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    available_at = Column(DateTime, nullable=False, default=_utcnow)
    lease_expires_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    stop_reason = Column(String(64), nullable=True)
    result_payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
    finished_at = Column(DateTime, nullable=True)


class Asset(Base):
    __tablename__ = "assets"

    id = Column(String(36), primary_key=True, default=_uuid)
    bucket = Column(String(100), nullable=False)
    key = Column(String(500), nullable=False)
    size_bytes = Column(BigInteger, nullable=False, default=0)
    mime = Column(String(100), nullable=False)
    sha256 = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class Track(Base):
    __tablename__ = "tracks"

    id = Column(String(36), primary_key=True, default=_uuid)
    owner_user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    artwork_asset_id = Column(String(36), nullable=True)
    artwork_thumbnail_asset_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class TrackVersionStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class TrackVersion(Base):
    __tablename__ = "track_versions"

    id = Column(String(36), primary_key=True, default=_uuid)
    track_id = Column(String(36), nullable=False, index=True)
    original_asset_id = Column(String(36), nullable=False)
    duration_ms = Column(Integer, nullable=True)
    sample_rate = Column(Integer, nullable=True)
    channels = Column(Integer, nullable=True)
    loudness_lufs = Column(Float, nullable=True)
    true_peak_dbfs = Column(Float, nullable=True)
    loudness_range_lu = Column(Float, nullable=True)
    status = Column(String(16), nullable=False, default=TrackVersionStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class TranscodeFormat(str, Enum):
    HLS_OPUS = "hls_opus"
    HLS_AAC = "hls_aac"
    HLS_ALAC = "hls_alac"
    MP3_320 = "mp3_320"


class TranscodeStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class Transcode(Base):
    __tablename__ = "transcodes"
    __table_args__ = (
        UniqueConstraint("track_version_id", "format", name="uq_transcodes_version_format"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    track_version_id = Column(String(36), nullable=False, index=True)
    format = Column(String(16), nullable=False)
    playlist_asset_id = Column(String(36), nullable=True)
    segment_prefix_key = Column(String(500), nullable=True)
    segment_count = Column(Integer, nullable=True)
    status = Column(String(16), nullable=False, default=TranscodeStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Waveform(Base):
    __tablename__ = "waveforms"

    id = Column(String(36), primary_key=True, default=_uuid)
    track_version_id = Column(String(36), nullable=False, unique=True)
    json_asset_id = Column(String(36), nullable=False)
    png_asset_id = Column(String(36), nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class AudioFingerprint(Base):
    __tablename__ = "audio_fingerprints"

    id = Column(String(36), primary_key=True, default=_uuid)
    track_version_id = Column(String(36), nullable=False, index=True)
    fingerprint = Column(Text, nullable=False, index=True)
    duration = Column(Integer, nullable=False)
    acoustid = Column(String(100), nullable=True)
    musicbrainz_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class ReportReason(str, Enum):
    COPYRIGHT_INFRINGEMENT = "copyright_infringement"


class ReportStatus(str, Enum):
    PENDING = "pending"


class Report(Base):
    __tablename__ = "reports"

    id = Column(String(36), primary_key=True, default=_uuid)
    reporter_id = Column(String(36), nullable=False)
    track_id = Column(String(36), nullable=False, index=True)
    reason = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ReportStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False, default=_utcnow)


class ContributionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class Contribution(Base):
    __tablename__ = "contributions"
    __table_args__ = (
        CheckConstraint(
            "artists_percentage + charity_percentage + platform_percentage = 100",
            name="ck_contributions_split_total",
        ),
        Index("ix_contributions_status_processed", "status", "processed_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    artists_percentage = Column(Integer, nullable=False, default=80)
    charity_percentage = Column(Integer, nullable=False, default=10)
    platform_percentage = Column(Integer, nullable=False, default=10)
    selected_charity_id = Column(String(36), nullable=True)
    status = Column(String(16), nullable=False, default=ContributionStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    processed_at = Column(DateTime, nullable=True)


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtistPayout(Base):
    __tablename__ = "artist_payouts"
    __table_args__ = (
        UniqueConstraint("artist_id", "period", name="uq_artist_payouts_artist_period"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    artist_id = Column(String(36), nullable=False, index=True)
    period = Column(String(7), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    contributor_count = Column(Integer, nullable=False, default=0)
    total_listen_ms = Column(BigInteger, nullable=False, default=0)
    status = Column(String(16), nullable=False, default=PayoutStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)


class Charity(Base):
    __tablename__ = "charities"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(100), nullable=False, unique=True)
    name = Column(String(200), nullable=False)
    total_received_cents = Column(BigInteger, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)


class AnalyticsPlay(Base):
    __tablename__ = "analytics_play"
    __table_args__ = (Index("ix_analytics_play_user_started", "user_id", "started_at"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    track_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True)
    ip_hash = Column(String(64), nullable=True)
    started_at = Column(DateTime, nullable=False, default=_utcnow, index=True)
    completed = Column(Boolean, nullable=False, default=False)
    watch_ms = Column(Integer, nullable=False, default=0)


class AnalyticsDaily(Base):
    __tablename__ = "analytics_daily"
    __table_args__ = (UniqueConstraint("track_id", "day", name="uq_analytics_daily_track_day"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    track_id = Column(String(36), nullable=False, index=True)
    day = Column(Date, nullable=False)
    plays = Column(Integer, nullable=False, default=0)
    uniques = Column(Integer, nullable=False, default=0)
    completions = Column(Integer, nullable=False, default=0)
    total_listen_ms = Column(BigInteger, nullable=False, default=0)
