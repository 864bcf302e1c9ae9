from __future__ import annotations

from datetime import datetime

import pytest
from sqlalchemy import select

from resonance.db import session_scope
from resonance.errors import InvalidPayloadError
from resonance.models import (
    AnalyticsPlay,
    ArtistPayout,
    Charity,
    Contribution,
    ContributionStatus,
    PayoutStatus,
    Track,
)
from resonance.services.analytics import ListeningRecord
from resonance.services.distribution import (
    ContributionShare,
    DistributionService,
    allocate,
    split_artist_pool,
)

PERIOD = "2024-03"
IN_PERIOD = datetime(2024, 3, 10, 18, 30)


def _track(owner_id: str) -> str:
    with session_scope() as session:
        track = Track(owner_user_id=owner_id, title=f"Track by {owner_id}")
        session.add(track)
        session.flush()
        return str(track.id)


def _play(user_id: str, track_id: str, watch_ms: int, *, started_at: datetime = IN_PERIOD) -> None:
    with session_scope() as session:
        session.add(
            AnalyticsPlay(
                track_id=track_id,
                user_id=user_id,
                started_at=started_at,
                watch_ms=watch_ms,
                completed=True,
            )
        )


def _contribution(
    user_id: str,
    amount_cents: int,
    *,
    charity_id: str | None = None,
    status: ContributionStatus = ContributionStatus.COMPLETED,
    created_at: datetime = IN_PERIOD,
) -> str:
    with session_scope() as session:
        contribution = Contribution(
            user_id=user_id,
            amount_cents=amount_cents,
            artists_percentage=80,
            charity_percentage=10,
            platform_percentage=10,
            selected_charity_id=charity_id,
            status=status.value,
            created_at=created_at,
        )
        session.add(contribution)
        session.flush()
        return str(contribution.id)


def _charity(slug: str = "music-education", total: int = 0) -> str:
    with session_scope() as session:
        charity = Charity(slug=slug, name="Music Education Fund", total_received_cents=total)
        session.add(charity)
        session.flush()
        return str(charity.id)


def _payouts() -> dict[str, ArtistPayout]:
    with session_scope() as session:
        rows = session.execute(select(ArtistPayout)).scalars().all()
        session.expunge_all()
    return {row.artist_id: row for row in rows}


def _charity_total(charity_id: str) -> int:
    with session_scope() as session:
        return int(session.get(Charity, charity_id).total_received_cents)


def _processed_at(contribution_id: str) -> datetime | None:
    with session_scope() as session:
        return session.get(Contribution, contribution_id).processed_at


def test_artist_pool_is_split_by_listening_time() -> None:
    charity_id = _charity()
    first = _track("artist-a")
    second = _track("artist-b")
    _play("fan-1", first, 60_000)
    _play("fan-1", second, 40_000)
    contribution_id = _contribution("fan-1", 1000, charity_id=charity_id)

    result = DistributionService().run(PERIOD)

    payouts = _payouts()
    assert payouts["artist-a"].amount_cents == 480
    assert payouts["artist-b"].amount_cents == 320
    assert payouts["artist-a"].total_listen_ms == 60_000
    assert payouts["artist-a"].contributor_count == 1
    assert payouts["artist-a"].status == PayoutStatus.PENDING.value
    assert _charity_total(charity_id) == 100
    assert _processed_at(contribution_id) is not None
    assert result.contributions_processed == 1
    assert result.payouts_created == 2
    assert result.artists_paid == 2
    assert result.total_distributed_cents == 1000
    assert result.artist_allocated_cents == 800
    assert result.charity_amount_cents == 100
    assert result.platform_amount_cents == 100
    assert result.rounding_remainder_cents == 0


def test_second_run_for_the_same_period_changes_nothing() -> None:
    track_id = _track("artist-a")
    _play("fan-1", track_id, 90_000)
    _contribution("fan-1", 2500)
    service = DistributionService()

    first = service.run(PERIOD)
    second = service.run(PERIOD)

    assert first.contributions_processed == 1
    assert second.contributions_processed == 0
    assert second.payouts_created == second.payouts_updated == 0
    assert _payouts()["artist-a"].amount_cents == 2000


def test_later_contributions_accumulate_into_existing_payouts() -> None:
    track_id = _track("artist-a")
    _play("fan-1", track_id, 30_000)
    _play("fan-2", track_id, 10_000)
    _contribution("fan-1", 1000)
    service = DistributionService()
    service.run(PERIOD)

    _contribution("fan-2", 500)
    result = service.run(PERIOD)

    payout = _payouts()["artist-a"]
    assert result.payouts_updated == 1
    assert result.payouts_created == 0
    assert payout.amount_cents == 800 + 400
    assert payout.total_listen_ms == 40_000


def test_contributor_without_listening_leaves_pool_unallocated() -> None:
    contribution_id = _contribution("silent-fan", 1000)

    result = DistributionService().run(PERIOD)

    assert _payouts() == {}
    assert result.unallocated_artist_cents == 800
    assert result.artist_allocated_cents == 0
    assert result.unattributed_charity_cents == 100
    assert _processed_at(contribution_id) is not None


def test_unknown_charity_is_reported_as_unattributed() -> None:
    track_id = _track("artist-a")
    _play("fan-1", track_id, 1_000)
    _contribution("fan-1", 1000, charity_id="charity-that-left")

    result = DistributionService().run(PERIOD)

    assert result.unattributed_charity_cents == 100
    assert result.charity_amount_cents == 0


def test_charity_totals_are_incremented() -> None:
    charity_id = _charity(total=5_000)
    track_id = _track("artist-a")
    _play("fan-1", track_id, 1_000)
    _play("fan-2", track_id, 1_000)
    _contribution("fan-1", 1000, charity_id=charity_id)
    _contribution("fan-2", 2000, charity_id=charity_id)

    DistributionService().run(PERIOD)

    assert _charity_total(charity_id) == 5_000 + 100 + 200


def test_only_completed_contributions_in_period_are_processed() -> None:
    track_id = _track("artist-a")
    _play("fan-1", track_id, 1_000)
    pending = _contribution("fan-1", 1000, status=ContributionStatus.PENDING)
    earlier = _contribution("fan-1", 1000, created_at=datetime(2024, 2, 29, 23, 59))
    counted = _contribution("fan-1", 1000)

    result = DistributionService().run(PERIOD)

    assert result.contributions_processed == 1
    assert _processed_at(counted) is not None
    assert _processed_at(pending) is None
    assert _processed_at(earlier) is None


def test_plays_outside_the_period_are_ignored() -> None:
    track_id = _track("artist-a")
    _play("fan-1", track_id, 50_000, started_at=datetime(2024, 4, 1, 0, 0))
    _contribution("fan-1", 1000)

    result = DistributionService().run(PERIOD)

    assert result.unallocated_artist_cents == 800
    assert _payouts() == {}


def test_run_rejects_invalid_period() -> None:
    with pytest.raises(InvalidPayloadError):
        DistributionService().run("2024-00")


def test_floor_split_reports_rounding_remainder() -> None:
    records = [
        ListeningRecord(user_id="fan", artist_id=artist, total_listen_ms=1_000)
        for artist in ("a", "b", "c")
    ]

    shares = split_artist_pool(800, records)

    assert shares == {"a": 266, "b": 266, "c": 266}
    plan = allocate(
        [
            ContributionShare(
                id="c-1",
                user_id="fan",
                amount_cents=1000,
                artists_percentage=80,
                charity_percentage=10,
                platform_percentage=10,
            )
        ],
        {"fan": records},
    )
    assert plan.artist_allocated_cents == 798
    assert plan.rounding_remainder_cents == 2
    assert sum(item.amount_cents for item in plan.paid_artists) <= 800


def test_split_ignores_zero_listening() -> None:
    records = [
        ListeningRecord(user_id="fan", artist_id="a", total_listen_ms=0),
        ListeningRecord(user_id="fan", artist_id="b", total_listen_ms=0),
    ]

    assert split_artist_pool(800, records) == {}


def test_allocate_merges_contributors_per_artist() -> None:
    share = dict(artists_percentage=70, charity_percentage=20, platform_percentage=10)
    contributions = [
        ContributionShare(id="c-1", user_id="fan-1", amount_cents=1000, **share),
        ContributionShare(id="c-2", user_id="fan-2", amount_cents=3000, **share),
    ]
    listening = {
        "fan-1": [ListeningRecord("fan-1", "artist-a", 5_000)],
        "fan-2": [
            ListeningRecord("fan-2", "artist-a", 1_000),
            ListeningRecord("fan-2", "artist-b", 3_000),
        ],
    }

    plan = allocate(contributions, listening)

    assert plan.artists["artist-a"].amount_cents == 700 + 525
    assert plan.artists["artist-a"].contributor_count == 2
    assert plan.artists["artist-b"].amount_cents == 1575
    assert plan.charity_amount_cents == 0
    assert plan.unattributed_charity_cents == 800
    assert plan.platform_amount_cents == 400


def test_split_floors_each_share_from_the_unrounded_pool() -> None:
    records = [
        ListeningRecord(user_id="fan", artist_id="a", total_listen_ms=600),
        ListeningRecord(user_id="fan", artist_id="b", total_listen_ms=400),
    ]

    # 10% of 19 cents is a 1.9 cent pool; 60% of it floors to 1, not 0.
    assert split_artist_pool(19, records, artists_percentage=10) == {"a": 1, "b": 0}


def test_charity_amount_and_unattributed_never_overlap() -> None:
    charity_id = _charity()
    track_id = _track("artist-a")
    _play("fan-1", track_id, 1_000)
    _play("fan-2", track_id, 1_000)
    _contribution("fan-1", 1000, charity_id=charity_id)
    _contribution("fan-2", 2000)

    result = DistributionService().run(PERIOD)

    assert result.charity_amount_cents == 100
    assert result.unattributed_charity_cents == 200
    assert _charity_total(charity_id) == 100
