"""Ranking aggregation: period buckets rebuilt from the point ledger.

A bucket is identified by (type, period_start, department). Totals come
from ``point_ledger`` rows inside ``[period_start, period_end)``, never
from the live running total, so recomputing a closed period always
gives the same result.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.db.models import PointAward, RankingEntry, User
from gamify.errors import AggregationInProgress, ValidationError
from gamify.locks import BucketGuard
from gamify.rankings.period_utils import RankingType, bucket_key, period_bounds
from gamify.rankings.ranking import PeriodTotal, RankedUser, rank_totals
from gamify.users.service import list_departments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankingRow:
    """Detached view of one ranking position."""

    type: str
    period_start: datetime
    period_end: datetime
    user_id: int
    points: int
    position: int
    department: str | None = None
    live: bool = False


def _row_from_entry(entry: RankingEntry) -> RankingRow:
    return RankingRow(
        type=entry.type,
        period_start=entry.period_start,
        period_end=entry.period_end,
        user_id=entry.user_id,
        points=entry.points,
        position=entry.position,
        department=entry.department or None,
    )


def _validate_window(period_start: datetime, period_end: datetime) -> None:
    if period_start.tzinfo is None or period_end.tzinfo is None:
        msg = "Period bounds must be timezone-aware"
        raise ValidationError(msg)
    if period_end <= period_start:
        msg = "period_end must be after period_start"
        raise ValidationError(msg)


async def collect_period_totals(
    db: AsyncSession,
    period_start: datetime,
    period_end: datetime,
    department: str | None = None,
) -> list[PeriodTotal]:
    """Sum awards per user with ``period_start <= occurred_at < period_end``."""
    _validate_window(period_start, period_end)
    stmt = (
        select(
            PointAward.user_id,
            func.sum(PointAward.amount).label("points"),
            func.min(PointAward.occurred_at).label("first_activity_at"),
        )
        .where(
            PointAward.occurred_at >= period_start,
            PointAward.occurred_at < period_end,
        )
        .group_by(PointAward.user_id)
    )
    if department:
        stmt = stmt.join(User, User.id == PointAward.user_id).where(User.department == department)

    result = await db.execute(stmt)
    return [
        PeriodTotal(
            user_id=row.user_id,
            points=int(row.points or 0),
            first_activity_at=row.first_activity_at,
        )
        for row in result.all()
    ]


class RankingAggregator:
    """Rebuilds ranking buckets; at most one recompute per bucket at a time."""

    def __init__(self, guard: BucketGuard | None = None, tz: tzinfo = timezone.utc) -> None:
        self.guard = guard or BucketGuard()
        self.tz = tz

    async def recompute_bucket(
        self,
        db: AsyncSession,
        ranking_type: RankingType,
        period_start: datetime,
        period_end: datetime,
        department: str | None = None,
    ) -> list[RankingRow]:
        """Recompute and atomically replace one bucket. Commits.

        The full ranking is computed before anything is written; a
        cancellation or failure during the write rolls back and leaves
        the previous bucket contents in place.

        Raises:
            AggregationInProgress: The bucket is already being recomputed.
        """
        ranking_type = RankingType(ranking_type)
        key = bucket_key(ranking_type, period_start, department)

        async with self.guard.hold(key):
            totals = await collect_period_totals(db, period_start, period_end, department)
            ranked: list[RankedUser] = rank_totals(totals)

            now = datetime.now(timezone.utc)
            staging = [
                RankingEntry(
                    type=ranking_type.value,
                    period_start=period_start,
                    period_end=period_end,
                    user_id=r.user_id,
                    points=r.points,
                    position=r.position,
                    department=department or "",
                    computed_at=now,
                )
                for r in ranked
            ]

            try:
                await db.execute(
                    delete(RankingEntry).where(
                        RankingEntry.type == ranking_type.value,
                        RankingEntry.period_start == period_start,
                        RankingEntry.department == (department or ""),
                    )
                )
                db.add_all(staging)
                await db.commit()
            except (Exception, asyncio.CancelledError):
                await db.rollback()
                raise

        logger.info(
            "Ranking bucket %s recomputed: %d entries", key, len(ranked),
        )
        return [
            RankingRow(
                type=ranking_type.value,
                period_start=period_start,
                period_end=period_end,
                user_id=r.user_id,
                points=r.points,
                position=r.position,
                department=department,
            )
            for r in ranked
        ]

    async def recompute_period(
        self,
        db: AsyncSession,
        ranking_type: RankingType,
        at: datetime,
        departments: list[str] | None = None,
        *,
        skip_busy: bool = True,
    ) -> dict[str | None, list[RankingRow]]:
        """Recompute the organisation-wide bucket and every department bucket
        of the period containing ``at``.

        ``departments=None`` means every department currently in the user
        directory. A bucket that is already being recomputed elsewhere is
        left out of the result when ``skip_busy`` is set; otherwise its
        AggregationInProgress propagates after the remaining buckets ran.
        """
        start, end = period_bounds(ranking_type, at, self.tz)
        if departments is None:
            departments = await list_departments(db)

        results: dict[str | None, list[RankingRow]] = {}
        busy: AggregationInProgress | None = None
        for department in [None, *departments]:
            try:
                results[department] = await self.recompute_bucket(
                    db, ranking_type, start, end, department,
                )
            except AggregationInProgress as exc:
                logger.info("Skipping busy ranking bucket: %s", exc)
                busy = busy or exc
        if busy is not None and not skip_busy:
            raise busy
        return results


async def get_ranking(
    db: AsyncSession,
    ranking_type: RankingType,
    period_start: datetime,
    department: str | None = None,
    *,
    limit: int = 100,
    offset: int = 0,
) -> list[RankingRow]:
    """Stored positions of a bucket, best first."""
    ranking_type = RankingType(ranking_type)
    result = await db.execute(
        select(RankingEntry)
        .where(
            RankingEntry.type == ranking_type.value,
            RankingEntry.period_start == period_start,
            RankingEntry.department == (department or ""),
        )
        .order_by(RankingEntry.position)
        .offset(offset)
        .limit(limit)
    )
    return [_row_from_entry(e) for e in result.scalars().all()]


async def get_user_ranking(
    db: AsyncSession,
    ranking_type: RankingType,
    user_id: int,
    period_start: datetime,
    period_end: datetime,
    department: str | None = None,
) -> RankingRow | None:
    """A user's position in a bucket.

    Falls back to a live computation from the ledger when the bucket has
    not been materialised yet (or the user joined it after the last
    recompute). Returns None when the user has no awards in the period.
    """
    ranking_type = RankingType(ranking_type)
    result = await db.execute(
        select(RankingEntry).where(
            RankingEntry.type == ranking_type.value,
            RankingEntry.period_start == period_start,
            RankingEntry.department == (department or ""),
            RankingEntry.user_id == user_id,
        )
    )
    entry = result.scalar_one_or_none()
    if entry is not None:
        return _row_from_entry(entry)

    ranked = rank_totals(await collect_period_totals(db, period_start, period_end, department))
    for r in ranked:
        if r.user_id == user_id:
            return RankingRow(
                type=ranking_type.value,
                period_start=period_start,
                period_end=period_end,
                user_id=user_id,
                points=r.points,
                position=r.position,
                department=department,
                live=True,
            )
    return None
