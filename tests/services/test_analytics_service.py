from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import select

from resonance.db import session_scope
from resonance.models import AnalyticsDaily, AnalyticsPlay, Track
from resonance.services.analytics import AnalyticsService, period_bounds


def _track(owner_id: str) -> str:
    with session_scope() as session:
        track = Track(owner_user_id=owner_id, title="Late Show")
        session.add(track)
        session.flush()
        return str(track.id)


def _play(
    track_id: str,
    *,
    user_id: str | None = None,
    ip_hash: str | None = None,
    started_at: datetime,
    watch_ms: int,
    completed: bool = False,
) -> None:
    with session_scope() as session:
        session.add(
            AnalyticsPlay(
                track_id=track_id,
                user_id=user_id,
                ip_hash=ip_hash,
                started_at=started_at,
                watch_ms=watch_ms,
                completed=completed,
            )
        )


def _daily_rows() -> list[AnalyticsDaily]:
    with session_scope() as session:
        rows = session.execute(select(AnalyticsDaily)).scalars().all()
        session.expunge_all()
    return list(rows)


def test_period_bounds_cover_one_calendar_month() -> None:
    assert period_bounds("2024-02") == (datetime(2024, 2, 1), datetime(2024, 3, 1))
    assert period_bounds("2023-12") == (datetime(2023, 12, 1), datetime(2024, 1, 1))


def test_listening_records_sum_per_artist() -> None:
    first = _track("artist-a")
    second = _track("artist-a")
    third = _track("artist-b")
    _play(first, user_id="fan-1", started_at=datetime(2024, 3, 2), watch_ms=1_000)
    _play(second, user_id="fan-1", started_at=datetime(2024, 3, 3), watch_ms=2_000)
    _play(third, user_id="fan-1", started_at=datetime(2024, 3, 31, 23), watch_ms=500)
    _play(third, user_id="fan-2", started_at=datetime(2024, 3, 4), watch_ms=9_000)
    _play(third, user_id="fan-1", started_at=datetime(2024, 4, 1), watch_ms=9_000)

    records = AnalyticsService().listening_records_for("fan-1", "2024-03")

    totals = {record.artist_id: record.total_listen_ms for record in records}
    assert totals == {"artist-a": 3_000, "artist-b": 500}
    assert all(record.user_id == "fan-1" for record in records)


def test_rollup_day_counts_plays_uniques_and_completions() -> None:
    track_id = _track("artist-a")
    day = date(2024, 3, 5)
    _play(track_id, user_id="fan-1", started_at=datetime(2024, 3, 5, 8), watch_ms=100, completed=True)
    _play(track_id, user_id="fan-1", started_at=datetime(2024, 3, 5, 9), watch_ms=200)
    _play(track_id, ip_hash="ip-7", started_at=datetime(2024, 3, 5, 10), watch_ms=300, completed=True)
    _play(track_id, user_id="fan-2", started_at=datetime(2024, 3, 6, 0, 0), watch_ms=999)

    summary = AnalyticsService().rollup_day(day)

    assert summary.as_dict() == {
        "day": "2024-03-05",
        "tracks": 1,
        "created": 1,
        "updated": 0,
        "plays": 3,
    }
    [row] = _daily_rows()
    assert (row.plays, row.uniques, row.completions, row.total_listen_ms) == (3, 2, 2, 600)


def test_rollup_day_overwrites_on_rerun() -> None:
    track_id = _track("artist-a")
    day = date(2024, 3, 5)
    _play(track_id, user_id="fan-1", started_at=datetime(2024, 3, 5, 8), watch_ms=100)
    service = AnalyticsService()
    service.rollup_day(day)

    _play(track_id, user_id="fan-2", started_at=datetime(2024, 3, 5, 9), watch_ms=400)
    summary = service.rollup_day(day)

    assert summary.updated == 1
    assert summary.created == 0
    [row] = _daily_rows()
    assert row.plays == 2
    assert row.total_listen_ms == 500
