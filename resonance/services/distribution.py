"""User-centric revenue distribution.

Each completed contribution for a period is split three ways. The artist
share is divided among the artists the contributor listened to, in
proportion to listening time. The charity share goes to the selected
charity and the platform share is only reported. :func:`allocate` is the
pure calculation; :class:`DistributionService` loads its inputs and applies
the resulting increments in one transaction.

All amounts are integer cents and every split is floored. Money that cannot
be attributed stays undistributed and is reported in the summary: the artist
pool of a contributor with no listening, the charity share of a
contribution without a selected charity, and floor-rounding remainders.
The reported charity amount only counts money credited to a charity row,
so it never overlaps the unattributed amount.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from resonance.db import SessionFactory, session_scope
from resonance.logging import get_logger
from resonance.logging_events import log_event
from resonance.models import (
    ArtistPayout,
    Charity,
    Contribution,
    ContributionStatus,
    PayoutStatus,
    _utcnow,
)
from resonance.queue.jobs import validate_period
from resonance.services.analytics import ListeningRecord, listening_records, period_bounds

logger = get_logger(__name__)


@dataclass(slots=True, frozen=True)
class ContributionShare:
    id: str
    user_id: str
    amount_cents: int
    artists_percentage: int
    charity_percentage: int
    platform_percentage: int
    selected_charity_id: str | None = None

    @property
    def artist_pool_cents(self) -> int:
        return self.amount_cents * self.artists_percentage // 100

    @property
    def charity_cents(self) -> int:
        return self.amount_cents * self.charity_percentage // 100

    @property
    def platform_cents(self) -> int:
        return self.amount_cents * self.platform_percentage // 100


@dataclass(slots=True)
class ArtistAllocation:
    artist_id: str
    amount_cents: int = 0
    total_listen_ms: int = 0
    contributors: set[str] = field(default_factory=set)

    @property
    def contributor_count(self) -> int:
        return len(self.contributors)


@dataclass(slots=True)
class DistributionPlan:
    artists: dict[str, ArtistAllocation] = field(default_factory=dict)
    charity_totals: dict[str, int] = field(default_factory=dict)
    contributions_processed: int = 0
    contributions_total_cents: int = 0
    artist_allocated_cents: int = 0
    charity_amount_cents: int = 0
    platform_amount_cents: int = 0
    unallocated_artist_cents: int = 0
    unattributed_charity_cents: int = 0
    rounding_remainder_cents: int = 0

    @property
    def paid_artists(self) -> list[ArtistAllocation]:
        return [item for item in self.artists.values() if item.amount_cents > 0]


def split_artist_pool(
    amount_cents: int,
    records: Sequence[ListeningRecord],
    *,
    artists_percentage: int = 100,
) -> dict[str, int]:
    """Split the artist share of ``amount_cents`` by listening time.

    Each artist gets ``amount * artists_percentage * listen_ms / (100 * total_ms)``
    floored once, so the pool itself is never rounded before the split.
    Empty when nothing was heard.
    """

    per_artist: dict[str, int] = {}
    for record in records:
        if record.total_listen_ms <= 0:
            continue
        per_artist[record.artist_id] = per_artist.get(record.artist_id, 0) + record.total_listen_ms
    total_ms = sum(per_artist.values())
    if total_ms <= 0:
        return {}
    return {
        artist_id: amount_cents * artists_percentage * listen_ms // (100 * total_ms)
        for artist_id, listen_ms in per_artist.items()
    }


def allocate(
    contributions: Sequence[ContributionShare],
    listening: Mapping[str, Sequence[ListeningRecord]],
) -> DistributionPlan:
    """Compute payouts and charity totals for a batch of contributions.

    ``listening`` maps a contributor's user id to their per-artist listening
    records for the period.
    """

    plan = DistributionPlan()
    for contribution in contributions:
        plan.contributions_processed += 1
        plan.contributions_total_cents += contribution.amount_cents
        plan.platform_amount_cents += contribution.platform_cents

        charity_cents = contribution.charity_cents
        if contribution.selected_charity_id:
            charity_id = contribution.selected_charity_id
            plan.charity_amount_cents += charity_cents
            plan.charity_totals[charity_id] = plan.charity_totals.get(charity_id, 0) + charity_cents
        else:
            plan.unattributed_charity_cents += charity_cents

        records = listening.get(contribution.user_id, ())
        pool = contribution.artist_pool_cents
        shares = split_artist_pool(
            contribution.amount_cents, records, artists_percentage=contribution.artists_percentage
        )
        if not shares:
            plan.unallocated_artist_cents += pool
            continue
        plan.rounding_remainder_cents += pool - sum(shares.values())
        for artist_id, amount in shares.items():
            allocation = plan.artists.setdefault(artist_id, ArtistAllocation(artist_id=artist_id))
            allocation.amount_cents += amount
            allocation.contributors.add(contribution.user_id)
            allocation.total_listen_ms += sum(
                record.total_listen_ms for record in records if record.artist_id == artist_id
            )
            plan.artist_allocated_cents += amount
    return plan


@dataclass(slots=True, frozen=True)
class DistributionResult:
    period: str
    contributions_processed: int = 0
    payouts_created: int = 0
    payouts_updated: int = 0
    total_distributed_cents: int = 0
    artist_allocated_cents: int = 0
    charity_amount_cents: int = 0
    platform_amount_cents: int = 0
    artists_paid: int = 0
    unallocated_artist_cents: int = 0
    unattributed_charity_cents: int = 0
    rounding_remainder_cents: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "contributions_processed": self.contributions_processed,
            "payouts_created": self.payouts_created,
            "payouts_updated": self.payouts_updated,
            "total_distributed_cents": self.total_distributed_cents,
            "artist_allocated_cents": self.artist_allocated_cents,
            "charity_amount_cents": self.charity_amount_cents,
            "platform_amount_cents": self.platform_amount_cents,
            "artists_paid": self.artists_paid,
            "unallocated_artist_cents": self.unallocated_artist_cents,
            "unattributed_charity_cents": self.unattributed_charity_cents,
            "rounding_remainder_cents": self.rounding_remainder_cents,
        }


class DistributionService:
    """Run one period's distribution against the database.

    The whole batch runs in a single session: aggregates are changed with
    ``UPDATE ... SET x = x + delta`` (inserting the payout row when missing)
    and every processed contribution gets ``processed_at``, so a repeated run
    for the same period finds nothing left to do.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = session_scope,
        now_factory: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._now_factory = now_factory

    def run(self, period: str) -> DistributionResult:
        period = validate_period(period)
        start, end = period_bounds(period)
        with self._session_factory() as session:
            contributions = _eligible_contributions(session, start, end)
            if not contributions:
                log_event(logger, "distribution.run", period=period, status="empty")
                return DistributionResult(period=period)

            listening: dict[str, list[ListeningRecord]] = {}
            for contribution in contributions:
                if contribution.user_id not in listening:
                    listening[contribution.user_id] = listening_records(
                        session, contribution.user_id, start, end
                    )
            plan = allocate(contributions, listening)

            now = self._now_factory()
            created, updated = _apply_payouts(session, period, plan.paid_artists, now)
            unknown_charity_cents = _apply_charity_totals(session, plan.charity_totals)
            _mark_processed(session, [item.id for item in contributions], now)

        result = DistributionResult(
            period=period,
            contributions_processed=plan.contributions_processed,
            payouts_created=created,
            payouts_updated=updated,
            total_distributed_cents=plan.contributions_total_cents,
            artist_allocated_cents=plan.artist_allocated_cents,
            charity_amount_cents=plan.charity_amount_cents - unknown_charity_cents,
            platform_amount_cents=plan.platform_amount_cents,
            artists_paid=len(plan.paid_artists),
            unallocated_artist_cents=plan.unallocated_artist_cents,
            unattributed_charity_cents=plan.unattributed_charity_cents + unknown_charity_cents,
            rounding_remainder_cents=plan.rounding_remainder_cents,
        )
        log_event(
            logger,
            "distribution.run",
            period=period,
            status="completed",
            contributions=result.contributions_processed,
            artists_paid=result.artists_paid,
            payouts_created=created,
            payouts_updated=updated,
            unallocated_artist_cents=result.unallocated_artist_cents,
            unattributed_charity_cents=result.unattributed_charity_cents,
        )
        return result


def _eligible_contributions(
    session: Session, start: datetime, end: datetime
) -> list[ContributionShare]:
    statement = (
        select(Contribution)
        .where(
            Contribution.status == ContributionStatus.COMPLETED.value,
            Contribution.processed_at.is_(None),
            Contribution.created_at >= start,
            Contribution.created_at < end,
        )
        .order_by(Contribution.created_at.asc(), Contribution.id.asc())
    )
    return [
        ContributionShare(
            id=str(record.id),
            user_id=str(record.user_id),
            amount_cents=int(record.amount_cents),
            artists_percentage=int(record.artists_percentage),
            charity_percentage=int(record.charity_percentage),
            platform_percentage=int(record.platform_percentage),
            selected_charity_id=record.selected_charity_id,
        )
        for record in session.execute(statement).scalars()
    ]


def _apply_payouts(
    session: Session,
    period: str,
    allocations: Sequence[ArtistAllocation],
    now: datetime,
) -> tuple[int, int]:
    created = updated = 0
    for allocation in allocations:
        result = session.execute(
            update(ArtistPayout)
            .where(ArtistPayout.artist_id == allocation.artist_id, ArtistPayout.period == period)
            .values(
                amount_cents=ArtistPayout.amount_cents + allocation.amount_cents,
                total_listen_ms=ArtistPayout.total_listen_ms + allocation.total_listen_ms,
                contributor_count=allocation.contributor_count,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            updated += 1
            continue
        session.add(
            ArtistPayout(
                artist_id=allocation.artist_id,
                period=period,
                amount_cents=allocation.amount_cents,
                contributor_count=allocation.contributor_count,
                total_listen_ms=allocation.total_listen_ms,
                status=PayoutStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
        )
        session.flush()
        created += 1
    return created, updated


def _apply_charity_totals(session: Session, totals: Mapping[str, int]) -> int:
    """Increment charity totals; returns the cents owed to unknown charity ids."""

    unknown = 0
    for charity_id, amount in totals.items():
        if amount <= 0:
            continue
        result = session.execute(
            update(Charity)
            .where(Charity.id == charity_id)
            .values(total_received_cents=Charity.total_received_cents + amount)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            logger.warning("Charity %s not found; %s cents left unattributed", charity_id, amount)
            unknown += amount
    return unknown


def _mark_processed(session: Session, contribution_ids: Sequence[str], now: datetime) -> None:
    session.execute(
        update(Contribution)
        .where(Contribution.id.in_(list(contribution_ids)), Contribution.processed_at.is_(None))
        .values(processed_at=now)
        .execution_options(synchronize_session=False)
    )


__all__ = [
    "ArtistAllocation",
    "ContributionShare",
    "DistributionPlan",
    "DistributionResult",
    "DistributionService",
    "allocate",
    "split_artist_pool",
]
