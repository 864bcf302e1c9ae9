"""Chromaprint fingerprints via ``fpcalc`` and the optional AcoustID lookup."""

from __future__ import annotations

import asyncio
import json
import math
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from resonance.config import FingerprintConfig
from resonance.errors import ExternalToolError
from resonance.logging import get_logger
from resonance.media.tools import ToolRunner
from resonance.queue.retry import with_retry

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class Fingerprint:
    fingerprint: str
    duration_s: int


@dataclass(slots=True, frozen=True)
class AcoustIdMatch:
    acoustid: str
    musicbrainz_id: str | None
    score: float


def parse_fpcalc_output(stdout: str) -> Fingerprint:
    try:
        data = json.loads(stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ExternalToolError("fpcalc", f"unparseable output: {exc}") from exc
    fingerprint = str(data.get("fingerprint") or "").strip()
    if not fingerprint:
        raise ExternalToolError("fpcalc", "no fingerprint in output")
    try:
        duration = float(data.get("duration"))
    except (TypeError, ValueError) as exc:
        raise ExternalToolError("fpcalc", "no duration in output") from exc
    return Fingerprint(fingerprint=fingerprint, duration_s=int(math.floor(duration)))


class Fpcalc:
    def __init__(self, runner: ToolRunner, *, binary: str = "fpcalc") -> None:
        self._runner = runner
        self._binary = binary

    async def fingerprint(self, source: Path) -> Fingerprint:
        result = await self._runner.run([self._binary, "-json", str(source)])
        return parse_fpcalc_output(result.stdout)


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def parse_acoustid_response(data: object) -> AcoustIdMatch | None:
    """Pick the best-scoring result; ``None`` when the service found nothing."""

    if not isinstance(data, dict) or data.get("status") != "ok":
        return None
    results = [item for item in data.get("results") or [] if isinstance(item, dict)]
    if not results:
        return None
    best = max(results, key=lambda item: float(item.get("score") or 0.0))
    acoustid = best.get("id")
    if not acoustid:
        return None
    recordings = best.get("recordings") or []
    musicbrainz_id = None
    if recordings and isinstance(recordings[0], dict):
        musicbrainz_id = recordings[0].get("id")
    return AcoustIdMatch(
        acoustid=str(acoustid),
        musicbrainz_id=str(musicbrainz_id) if musicbrainz_id else None,
        score=float(best.get("score") or 0.0),
    )


class AcoustIdClient:
    """Look fingerprints up against AcoustID when an API key is configured.

    Lookup failures are logged and reported as "no match"; they never fail
    the fingerprint job.
    """

    def __init__(
        self,
        config: FingerprintConfig,
        *,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
        attempts: int = 3,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or self._default_client_factory
        self._attempts = max(1, attempts)

    @property
    def enabled(self) -> bool:
        return self._config.lookup_enabled

    def _default_client_factory(self) -> httpx.AsyncClient:
        timeout_seconds = max(0.1, self._config.acoustid_timeout_ms / 1000.0)
        return httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=False)

    async def _request(self, fingerprint: Fingerprint) -> object:
        params = {
            "client": self._config.acoustid_api_key or "",
            "duration": str(fingerprint.duration_s),
            "fingerprint": fingerprint.fingerprint,
            "meta": "recordings",
        }
        async with self._client_factory() as client:
            response = await client.get(self._config.acoustid_url, params=params)
            response.raise_for_status()
            return response.json()

    async def lookup(self, fingerprint: Fingerprint) -> AcoustIdMatch | None:
        if not self.enabled:
            return None
        try:
            data = await with_retry(
                lambda: self._request(fingerprint),
                attempts=self._attempts,
                base_ms=250,
                jitter_pct=20,
                timeout_ms=self._config.acoustid_timeout_ms,
                classify_err=_is_transient,
            )
        except (httpx.HTTPError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning("AcoustID lookup failed: %s", exc)
            return None
        return parse_acoustid_response(data)


__all__ = [
    "AcoustIdClient",
    "AcoustIdMatch",
    "Fingerprint",
    "Fpcalc",
    "parse_acoustid_response",
    "parse_fpcalc_output",
]
