"""Persistence helpers for the media processing stages."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from resonance.db import SessionFactory, session_scope
from resonance.models import (
    Asset,
    AudioFingerprint,
    Report,
    ReportReason,
    ReportStatus,
    Track,
    TrackVersion,
    TrackVersionStatus,
    Transcode,
    TranscodeFormat,
    TranscodeStatus,
    Waveform,
    _utcnow,
)
from resonance.storage.blob import StoredObject

DUPLICATE_REPORT_TEMPLATE = (
    "Automated duplicate detection: This track's audio fingerprint matches track "
    "{track_id}. Please verify originality."
)


@dataclass(slots=True, frozen=True)
class AssetRow:
    id: str
    bucket: str
    key: str
    size_bytes: int
    mime: str
    sha256: str | None


@dataclass(slots=True, frozen=True)
class TrackVersionRow:
    id: str
    track_id: str
    original_asset_id: str
    status: str
    duration_ms: int | None
    loudness_lufs: float | None


@dataclass(slots=True, frozen=True)
class DuplicateReport:
    report_id: str
    track_id: str
    duplicate_of_track_id: str


def _asset_row(record: Asset) -> AssetRow:
    return AssetRow(
        id=str(record.id),
        bucket=record.bucket,
        key=record.key,
        size_bytes=int(record.size_bytes or 0),
        mime=record.mime,
        sha256=record.sha256,
    )


def _version_row(record: TrackVersion) -> TrackVersionRow:
    return TrackVersionRow(
        id=str(record.id),
        track_id=str(record.track_id),
        original_asset_id=str(record.original_asset_id),
        status=record.status,
        duration_ms=record.duration_ms,
        loudness_lufs=record.loudness_lufs,
    )


class MediaDao:
    """Read and write the entities touched by the processing stages.

    Every method opens its own session so single-row updates commit
    independently; callers in async code go through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        now_factory: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._now_factory = now_factory

    def get_version(self, version_id: str) -> TrackVersionRow | None:
        with self._session_factory() as session:
            record = session.get(TrackVersion, version_id)
            return _version_row(record) if record is not None else None

    def get_asset(self, asset_id: str) -> AssetRow | None:
        with self._session_factory() as session:
            record = session.get(Asset, asset_id)
            return _asset_row(record) if record is not None else None

    def create_asset(self, stored: StoredObject) -> AssetRow:
        with self._session_factory() as session:
            record = Asset(
                bucket=stored.bucket,
                key=stored.key,
                size_bytes=stored.size_bytes,
                mime=stored.content_type,
                sha256=stored.sha256,
                created_at=self._now_factory(),
            )
            session.add(record)
            session.flush()
            return _asset_row(record)

    def update_version_metadata(
        self,
        version_id: str,
        *,
        duration_ms: int,
        sample_rate: int | None,
        channels: int | None,
    ) -> None:
        with self._session_factory() as session:
            record = session.get(TrackVersion, version_id)
            if record is None:
                return
            record.duration_ms = duration_ms
            if sample_rate is not None:
                record.sample_rate = sample_rate
            if channels is not None:
                record.channels = channels

    def set_version_status(
        self,
        version_id: str,
        status: TrackVersionStatus,
        *,
        error_message: str | None = None,
    ) -> None:
        with self._session_factory() as session:
            record = session.get(TrackVersion, version_id)
            if record is None:
                return
            record.status = status.value
            record.error_message = error_message

    def update_version_loudness(
        self,
        version_id: str,
        *,
        integrated_lufs: float,
        true_peak_dbfs: float | None,
        loudness_range_lu: float | None,
    ) -> None:
        with self._session_factory() as session:
            record = session.get(TrackVersion, version_id)
            if record is None:
                return
            record.loudness_lufs = integrated_lufs
            record.true_peak_dbfs = true_peak_dbfs
            record.loudness_range_lu = loudness_range_lu

    def upsert_transcode(
        self,
        version_id: str,
        fmt: TranscodeFormat,
        *,
        status: TranscodeStatus,
        playlist_asset_id: str | None = None,
        segment_prefix_key: str | None = None,
        segment_count: int | None = None,
        error_message: str | None = None,
    ) -> str:
        """Create or update the one Transcode row for ``(version, format)``."""

        with self._session_factory() as session:
            statement = (
                select(Transcode)
                .where(
                    Transcode.track_version_id == version_id,
                    Transcode.format == fmt.value,
                )
                .limit(1)
            )
            record = session.execute(statement).scalars().first()
            if record is None:
                record = Transcode(track_version_id=version_id, format=fmt.value)
                session.add(record)
            record.status = status.value
            record.error_message = error_message
            if playlist_asset_id is not None:
                record.playlist_asset_id = playlist_asset_id
            if segment_prefix_key is not None:
                record.segment_prefix_key = segment_prefix_key
            if segment_count is not None:
                record.segment_count = segment_count
            record.updated_at = self._now_factory()
            session.flush()
            return str(record.id)

    def upsert_waveform(self, version_id: str, *, json_asset_id: str, png_asset_id: str) -> str:
        with self._session_factory() as session:
            statement = select(Waveform).where(Waveform.track_version_id == version_id).limit(1)
            record = session.execute(statement).scalars().first()
            if record is None:
                record = Waveform(track_version_id=version_id, created_at=self._now_factory())
                session.add(record)
            record.json_asset_id = json_asset_id
            record.png_asset_id = png_asset_id
            session.flush()
            return str(record.id)

    def get_waveform_for_version(self, version_id: str) -> tuple[str, str] | None:
        with self._session_factory() as session:
            statement = select(Waveform).where(Waveform.track_version_id == version_id).limit(1)
            record = session.execute(statement).scalars().first()
            if record is None:
                return None
            return record.json_asset_id, record.png_asset_id

    def set_track_artwork(
        self, track_id: str, *, artwork_asset_id: str, thumbnail_asset_id: str
    ) -> None:
        with self._session_factory() as session:
            record = session.get(Track, track_id)
            if record is None:
                return
            record.artwork_asset_id = artwork_asset_id
            record.artwork_thumbnail_asset_id = thumbnail_asset_id

    def find_duplicate_track(self, fingerprint: str, *, exclude_version_id: str) -> str | None:
        """Return the track id of another version carrying an identical fingerprint."""

        with self._session_factory() as session:
            statement = (
                select(TrackVersion.track_id)
                .join(AudioFingerprint, AudioFingerprint.track_version_id == TrackVersion.id)
                .where(
                    AudioFingerprint.fingerprint == fingerprint,
                    AudioFingerprint.track_version_id != exclude_version_id,
                )
                .order_by(AudioFingerprint.created_at.asc())
                .limit(1)
            )
            track_id = session.execute(statement).scalars().first()
            return str(track_id) if track_id is not None else None

    def upsert_fingerprint(
        self,
        version_id: str,
        *,
        fingerprint: str,
        duration_s: int,
        acoustid: str | None = None,
        musicbrainz_id: str | None = None,
    ) -> str:
        """Store the version's fingerprint; a rerun replaces the values in place.

        ``created_at`` is kept from the first run so duplicate precedence
        does not change when a job is retried.
        """

        with self._session_factory() as session:
            statement = (
                select(AudioFingerprint)
                .where(AudioFingerprint.track_version_id == version_id)
                .limit(1)
            )
            record = session.execute(statement).scalars().first()
            if record is None:
                record = AudioFingerprint(
                    track_version_id=version_id, created_at=self._now_factory()
                )
                session.add(record)
            record.fingerprint = fingerprint
            record.duration = duration_s
            record.acoustid = acoustid
            record.musicbrainz_id = musicbrainz_id
            session.flush()
            return str(record.id)

    def create_duplicate_report(
        self, track_id: str, *, duplicate_of_track_id: str
    ) -> DuplicateReport | None:
        """File an automated copyright report on behalf of the track owner."""

        with self._session_factory() as session:
            track = session.get(Track, track_id)
            if track is None:
                return None
            report = Report(
                reporter_id=track.owner_user_id,
                track_id=track_id,
                reason=ReportReason.COPYRIGHT_INFRINGEMENT.value,
                details=DUPLICATE_REPORT_TEMPLATE.format(track_id=duplicate_of_track_id),
                status=ReportStatus.PENDING.value,
                created_at=self._now_factory(),
            )
            session.add(report)
            session.flush()
            return DuplicateReport(
                report_id=str(report.id),
                track_id=track_id,
                duplicate_of_track_id=duplicate_of_track_id,
            )


__all__ = [
    "AssetRow",
    "DuplicateReport",
    "MediaDao",
    "TrackVersionRow",
]
