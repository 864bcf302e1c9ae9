"""Play aggregation: listening records for payouts and daily track rollups."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import and_, case, distinct, func, select, update
from sqlalchemy.orm import Session

from resonance.db import SessionFactory, session_scope
from resonance.models import AnalyticsDaily, AnalyticsPlay, Track


@dataclass(slots=True, frozen=True)
class ListeningRecord:
    user_id: str
    artist_id: str
    total_listen_ms: int


@dataclass(slots=True, frozen=True)
class DailyTrackStats:
    track_id: str
    day: date
    plays: int
    uniques: int
    completions: int
    total_listen_ms: int


@dataclass(slots=True, frozen=True)
class RollupSummary:
    day: date
    tracks: int
    created: int
    updated: int
    plays: int

    def as_dict(self) -> dict[str, object]:
        return {
            "day": self.day.isoformat(),
            "tracks": self.tracks,
            "created": self.created,
            "updated": self.updated,
            "plays": self.plays,
        }


def period_bounds(period: str) -> tuple[datetime, datetime]:
    """Return ``[first day of month, first day of next month)`` for ``YYYY-MM``."""

    year_text, month_text = period.split("-", 1)
    year, month = int(year_text), int(month_text)
    start = datetime(year, month, 1)
    end = datetime(year + 1, 1, 1) if month == 12 else datetime(year, month + 1, 1)
    return start, end


def listening_records(
    session: Session, user_id: str, start: datetime, end: datetime
) -> list[ListeningRecord]:
    """Sum ``watch_ms`` per track owner for one listener within ``[start, end)``."""

    statement = (
        select(Track.owner_user_id, func.coalesce(func.sum(AnalyticsPlay.watch_ms), 0))
        .join(Track, Track.id == AnalyticsPlay.track_id)
        .where(
            AnalyticsPlay.user_id == user_id,
            AnalyticsPlay.started_at >= start,
            AnalyticsPlay.started_at < end,
        )
        .group_by(Track.owner_user_id)
        .order_by(Track.owner_user_id)
    )
    return [
        ListeningRecord(user_id=user_id, artist_id=str(artist_id), total_listen_ms=int(total or 0))
        for artist_id, total in session.execute(statement).all()
    ]


def aggregate_day(session: Session, day: date) -> list[DailyTrackStats]:
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    listener = func.coalesce(AnalyticsPlay.user_id, AnalyticsPlay.ip_hash)
    statement = (
        select(
            AnalyticsPlay.track_id,
            func.count(AnalyticsPlay.id),
            func.count(distinct(listener)),
            func.sum(case((AnalyticsPlay.completed.is_(True), 1), else_=0)),
            func.coalesce(func.sum(AnalyticsPlay.watch_ms), 0),
        )
        .where(and_(AnalyticsPlay.started_at >= start, AnalyticsPlay.started_at < end))
        .group_by(AnalyticsPlay.track_id)
        .order_by(AnalyticsPlay.track_id)
    )
    return [
        DailyTrackStats(
            track_id=str(track_id),
            day=day,
            plays=int(plays or 0),
            uniques=int(uniques or 0),
            completions=int(completions or 0),
            total_listen_ms=int(listen_ms or 0),
        )
        for track_id, plays, uniques, completions, listen_ms in session.execute(statement).all()
    ]


class AnalyticsService:
    def __init__(self, *, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    def listening_records_for(self, user_id: str, period: str) -> list[ListeningRecord]:
        start, end = period_bounds(period)
        with self._session_factory() as session:
            return listening_records(session, user_id, start, end)

    def rollup_day(self, day: date) -> RollupSummary:
        """Recompute the AnalyticsDaily rows for ``day``; re-running overwrites them."""

        with self._session_factory() as session:
            stats = aggregate_day(session, day)
            created, updated = _store_daily(session, stats)
        return RollupSummary(
            day=day,
            tracks=len(stats),
            created=created,
            updated=updated,
            plays=sum(item.plays for item in stats),
        )


def _store_daily(session: Session, stats: Sequence[DailyTrackStats]) -> tuple[int, int]:
    created = updated = 0
    for item in stats:
        result = session.execute(
            update(AnalyticsDaily)
            .where(AnalyticsDaily.track_id == item.track_id, AnalyticsDaily.day == item.day)
            .values(
                plays=item.plays,
                uniques=item.uniques,
                completions=item.completions,
                total_listen_ms=item.total_listen_ms,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            updated += 1
            continue
        session.add(
            AnalyticsDaily(
                track_id=item.track_id,
                day=item.day,
                plays=item.plays,
                uniques=item.uniques,
                completions=item.completions,
                total_listen_ms=item.total_listen_ms,
            )
        )
        created += 1
    session.flush()
    return created, updated


__all__ = [
    "AnalyticsService",
    "DailyTrackStats",
    "ListeningRecord",
    "RollupSummary",
    "aggregate_day",
    "listening_records",
    "period_bounds",
]
