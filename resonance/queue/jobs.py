"""Job names, typed payloads and the structured result every processor returns."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, ClassVar, Generic, TypeVar, Union

from resonance.errors import InvalidPayloadError
from resonance.models import TranscodeFormat

TRANSCODE_JOB = "transcode"
MP3_TRANSCODE_JOB = "mp3-transcode"
WAVEFORM_JOB = "waveform"
ARTWORK_EXTRACT_JOB = "artwork-extract"
LOUDNESS_JOB = "loudness"
FINGERPRINT_JOB = "fingerprint"
DISTRIBUTION_JOB = "distribution"
ANALYTICS_ROLLUP_JOB = "analytics-rollup"

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def _require_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidPayloadError(f"payload field '{key}' must be a non-empty string")
    return value.strip()


def validate_period(value: str) -> str:
    """Return ``value`` if it is a ``YYYY-MM`` calendar month, else raise."""

    if not isinstance(value, str) or _PERIOD_RE.match(value.strip()) is None:
        raise InvalidPayloadError(f"invalid period {value!r}; expected YYYY-MM")
    return value.strip()


@dataclass(slots=True, frozen=True)
class TranscodePayload:
    queue_name: ClassVar[str] = TRANSCODE_JOB

    version_id: str
    format: TranscodeFormat = TranscodeFormat.HLS_OPUS

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TranscodePayload:
        raw_format = data.get("format") or TranscodeFormat.HLS_OPUS.value
        try:
            fmt = TranscodeFormat(str(raw_format))
        except ValueError as exc:
            raise InvalidPayloadError(f"unsupported transcode format {raw_format!r}") from exc
        if fmt is TranscodeFormat.MP3_320:
            raise InvalidPayloadError("mp3_320 downloads are produced by the mp3-transcode queue")
        return cls(version_id=_require_str(data, "version_id"), format=fmt)

    def to_dict(self) -> dict[str, Any]:
        return {"version_id": self.version_id, "format": self.format.value}


@dataclass(slots=True, frozen=True)
class Mp3TranscodePayload:
    queue_name: ClassVar[str] = MP3_TRANSCODE_JOB

    version_id: str
    track_id: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Mp3TranscodePayload:
        return cls(
            version_id=_require_str(data, "version_id"),
            track_id=_require_str(data, "track_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class WaveformPayload:
    queue_name: ClassVar[str] = WAVEFORM_JOB

    version_id: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WaveformPayload:
        return cls(version_id=_require_str(data, "version_id"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ArtworkExtractPayload:
    queue_name: ClassVar[str] = ARTWORK_EXTRACT_JOB

    version_id: str
    original_asset_id: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArtworkExtractPayload:
        return cls(
            version_id=_require_str(data, "version_id"),
            original_asset_id=_require_str(data, "original_asset_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class LoudnessPayload:
    queue_name: ClassVar[str] = LOUDNESS_JOB

    version_id: str
    original_asset_id: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LoudnessPayload:
        return cls(
            version_id=_require_str(data, "version_id"),
            original_asset_id=_require_str(data, "original_asset_id"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class FingerprintPayload:
    queue_name: ClassVar[str] = FINGERPRINT_JOB

    version_id: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FingerprintPayload:
        return cls(version_id=_require_str(data, "version_id"))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class DistributionPayload:
    queue_name: ClassVar[str] = DISTRIBUTION_JOB

    period: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DistributionPayload:
        return cls(period=validate_period(_require_str(data, "period")))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class AnalyticsRollupPayload:
    queue_name: ClassVar[str] = ANALYTICS_ROLLUP_JOB

    day: date

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AnalyticsRollupPayload:
        raw = _require_str(data, "day")
        try:
            parsed = date.fromisoformat(raw)
        except ValueError as exc:
            raise InvalidPayloadError(f"invalid day {raw!r}; expected YYYY-MM-DD") from exc
        return cls(day=parsed)

    def to_dict(self) -> dict[str, Any]:
        return {"day": self.day.isoformat()}


JobPayload = Union[
    TranscodePayload,
    Mp3TranscodePayload,
    WaveformPayload,
    ArtworkExtractPayload,
    LoudnessPayload,
    FingerprintPayload,
    DistributionPayload,
    AnalyticsRollupPayload,
]

PAYLOAD_TYPES: Mapping[str, type[JobPayload]] = {
    payload_type.queue_name: payload_type
    for payload_type in (
        TranscodePayload,
        Mp3TranscodePayload,
        WaveformPayload,
        ArtworkExtractPayload,
        LoudnessPayload,
        FingerprintPayload,
        DistributionPayload,
        AnalyticsRollupPayload,
    )
}

QUEUE_NAMES: tuple[str, ...] = tuple(PAYLOAD_TYPES)


def parse_payload(queue_name: str, data: Mapping[str, Any]) -> JobPayload:
    """Return the typed payload for ``queue_name`` built from stored JSON."""

    payload_type = PAYLOAD_TYPES.get(queue_name)
    if payload_type is None:
        raise InvalidPayloadError(f"unknown queue {queue_name!r}")
    if not isinstance(data, Mapping):
        raise InvalidPayloadError("payload must be a mapping")
    return payload_type.from_dict(data)


@dataclass(slots=True)
class StageResult:
    """Outcome of one processor invocation.

    ``data`` holds the stage-specific result fields. On failure ``error`` keeps
    the diagnostic text and ``retryable`` tells the queue whether another
    attempt can help.
    """

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, **data: Any) -> StageResult:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, *, retryable: bool = True, **data: Any) -> StageResult:
        return cls(success=False, data=data, error=error, retryable=retryable)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        payload.update(self.data)
        if self.error is not None:
            payload["error"] = self.error
        return payload

    def __str__(self) -> str:
        return self.error or ("ok" if self.success else "failed")


P = TypeVar("P")

ProgressReporter = Callable[[int], Awaitable[None]]


async def _discard_progress(_: int) -> None:
    return None


@dataclass(slots=True)
class JobContext(Generic[P]):
    """Handle passed to a processor for one attempt of a job."""

    job_id: int
    queue_name: str
    payload: P
    attempt: int
    max_attempts: int
    progress_reporter: ProgressReporter = _discard_progress

    @property
    def final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    async def report_progress(self, percent: int) -> None:
        await self.progress_reporter(percent)


__all__ = [
    "ANALYTICS_ROLLUP_JOB",
    "ARTWORK_EXTRACT_JOB",
    "AnalyticsRollupPayload",
    "ArtworkExtractPayload",
    "DISTRIBUTION_JOB",
    "DistributionPayload",
    "FINGERPRINT_JOB",
    "FingerprintPayload",
    "JobContext",
    "JobPayload",
    "LOUDNESS_JOB",
    "LoudnessPayload",
    "MP3_TRANSCODE_JOB",
    "Mp3TranscodePayload",
    "PAYLOAD_TYPES",
    "QUEUE_NAMES",
    "StageResult",
    "TRANSCODE_JOB",
    "TranscodePayload",
    "WAVEFORM_JOB",
    "WaveformPayload",
    "parse_payload",
    "validate_period",
]
