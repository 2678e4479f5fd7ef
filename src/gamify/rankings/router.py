"""Ranking API endpoints: leaderboards per period and department."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.config import get_settings
from gamify.dependencies import get_aggregator, get_db
from gamify.errors import NotFound, ValidationError
from gamify.rankings.period_utils import RankingType, period_bounds
from gamify.rankings.ranking_service import RankingAggregator, get_ranking, get_user_ranking
from gamify.rankings.schemas import RankingEntryResponse, RankingResponse, UserRankingResponse
from gamify.users.service import get_user

router = APIRouter(prefix="/api/v1/rankings", tags=["Rankings"])


def _bounds(ranking_type: RankingType, at: datetime | None) -> tuple[datetime, datetime]:
    if at is None:
        at = datetime.now(timezone.utc)
    elif at.tzinfo is None:
        msg = "'at' must include a timezone offset"
        raise ValidationError(msg)
    return period_bounds(ranking_type, at, get_settings().tz)


@router.get("/{ranking_type}", response_model=RankingResponse)
async def ranking(
    ranking_type: RankingType,
    at: datetime | None = Query(default=None, description="Any instant inside the period"),
    department: str | None = Query(default=None, max_length=64),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Stored leaderboard for the period containing ``at`` (default: now)."""
    start, end = _bounds(ranking_type, at)
    rows = await get_ranking(db, ranking_type, start, department, limit=limit, offset=offset)
    return RankingResponse(
        type=ranking_type.value,
        period_start=start,
        period_end=end,
        department=department,
        entries=[RankingEntryResponse(user_id=r.user_id, points=r.points, position=r.position) for r in rows],
    )


@router.get("/{ranking_type}/users/{user_id}", response_model=UserRankingResponse)
async def user_ranking(
    ranking_type: RankingType,
    user_id: int,
    at: datetime | None = Query(default=None),
    department: str | None = Query(default=None, max_length=64),
    db: AsyncSession = Depends(get_db),
):
    """A user's position; computed live when the bucket is not materialised yet."""
    await get_user(db, user_id)
    start, end = _bounds(ranking_type, at)
    row = await get_user_ranking(db, ranking_type, user_id, start, end, department)
    if row is None:
        msg = f"User {user_id} has no points in this {ranking_type.value} period"
        raise NotFound(msg)
    return UserRankingResponse(
        type=row.type,
        period_start=row.period_start,
        period_end=row.period_end,
        department=row.department,
        user_id=row.user_id,
        points=row.points,
        position=row.position,
        live=row.live,
    )


@router.post("/{ranking_type}/recompute", response_model=RankingResponse)
async def recompute(
    ranking_type: RankingType,
    at: datetime | None = Query(default=None),
    department: str | None = Query(default=None, max_length=64),
    db: AsyncSession = Depends(get_db),
    aggregator: RankingAggregator = Depends(get_aggregator),
):
    """Rebuild one bucket now. 409 if the bucket is already being recomputed."""
    start, end = _bounds(ranking_type, at)
    rows = await aggregator.recompute_bucket(db, ranking_type, start, end, department)
    return RankingResponse(
        type=ranking_type.value,
        period_start=start,
        period_end=end,
        department=department,
        entries=[RankingEntryResponse(user_id=r.user_id, points=r.points, position=r.position) for r in rows],
    )
