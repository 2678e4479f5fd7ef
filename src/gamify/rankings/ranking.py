"""Deterministic ranking of period totals.

Users are ranked by points DESC, then by earliest qualifying activity
ASC, then by user id ASC. Positions are dense 1..N with no shared ranks.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class PeriodTotal:
    user_id: int
    points: int
    first_activity_at: datetime


@dataclass(frozen=True)
class RankedUser:
    user_id: int
    points: int
    position: int
    first_activity_at: datetime


def rank_totals(totals: Iterable[PeriodTotal]) -> list[RankedUser]:
    """Sort and number period totals. Same input always yields the same output."""

    def sort_key(t: PeriodTotal) -> tuple[int, datetime, int]:
        return (-t.points, t.first_activity_at, t.user_id)

    ordered = sorted(totals, key=sort_key)
    return [
        RankedUser(
            user_id=t.user_id,
            points=t.points,
            position=idx + 1,
            first_activity_at=t.first_activity_at,
        )
        for idx, t in enumerate(ordered)
    ]
