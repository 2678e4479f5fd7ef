"""Ranking period boundaries.

All periods are half-open ``[start, end)`` intervals. Weekly periods follow
the ISO week (Monday 00:00), monthly periods the calendar month, both
evaluated in the reference timezone and returned as UTC datetimes.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum


class RankingType(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ALL_TIME = "all-time"


ALL_TIME_START = datetime(1970, 1, 1, tzinfo=timezone.utc)
ALL_TIME_END = datetime(9999, 12, 31, tzinfo=timezone.utc)


def get_monday(dt: datetime | date) -> date:
    """Get the Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def _local_midnight(d: date, tz: tzinfo) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz).astimezone(timezone.utc)


def period_bounds(
    ranking_type: RankingType,
    at: datetime,
    tz: tzinfo = timezone.utc,
) -> tuple[datetime, datetime]:
    """(start, end) of the period of ``ranking_type`` containing ``at``."""
    ranking_type = RankingType(ranking_type)
    if ranking_type is RankingType.ALL_TIME:
        return ALL_TIME_START, ALL_TIME_END

    local = at.astimezone(tz)
    if ranking_type is RankingType.WEEKLY:
        monday = get_monday(local)
        return _local_midnight(monday, tz), _local_midnight(monday + timedelta(days=7), tz)

    first = local.date().replace(day=1)
    if first.month == 12:
        following = first.replace(year=first.year + 1, month=1)
    else:
        following = first.replace(month=first.month + 1)
    return _local_midnight(first, tz), _local_midnight(following, tz)


def previous_period_bounds(
    ranking_type: RankingType,
    at: datetime,
    tz: tzinfo = timezone.utc,
) -> tuple[datetime, datetime] | None:
    """The period that ended right before the one containing ``at`` (None for all-time)."""
    ranking_type = RankingType(ranking_type)
    if ranking_type is RankingType.ALL_TIME:
        return None
    start, _ = period_bounds(ranking_type, at, tz)
    return period_bounds(ranking_type, start - timedelta(microseconds=1), tz)


def bucket_key(ranking_type: RankingType, period_start: datetime, department: str | None = None) -> str:
    """Stable identifier for a (type, period, department) bucket."""
    ranking_type = RankingType(ranking_type)
    return f"{ranking_type.value}:{period_start.astimezone(timezone.utc).isoformat()}:{department or '*'}"
