"""Streak tracking: consecutive calendar days of activity per activity type.

Day boundaries are evaluated in a single reference timezone so an event
at 23:59 and one at 00:01 local time always land on different days,
whatever offset the caller's timestamps carry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.db.models import Streak, User
from gamify.errors import AlreadyExists, NotFound, OutOfOrderEvent, ValidationError

logger = logging.getLogger(__name__)

# --- Milestone thresholds: day -> (reward id, bonus points) ---
MILESTONE_REWARDS: dict[int, tuple[str, int]] = {
    3: ("streak_3_days", 10),
    7: ("streak_7_days", 25),
    14: ("streak_14_days", 50),
    30: ("streak_30_days", 100),
    60: ("streak_60_days", 250),
    100: ("streak_100_days", 500),
    365: ("streak_365_days", 1000),
}


class StreakTransition(str, Enum):
    CREATED = "created"
    SAME_DAY = "same_day"
    CONTINUED = "continued"
    RESET = "reset"


@dataclass(frozen=True)
class MilestoneReward:
    day: int
    reward: str
    bonus_points: int
    received_at: datetime


@dataclass(frozen=True)
class StreakUpdateResult:
    user_id: int
    activity_type: str
    transition: StreakTransition
    consecutive_days: int
    longest_streak: int
    last_activity: datetime
    is_new_record: bool = False
    milestone: MilestoneReward | None = None


def calendar_day_distance(earlier: datetime, later: datetime, tz: tzinfo = timezone.utc) -> int:
    """Whole calendar days from ``earlier`` to ``later`` in ``tz`` (negative if later is before)."""
    return (later.astimezone(tz).date() - earlier.astimezone(tz).date()).days


def _grant_milestone(
    streak: Streak,
    now: datetime,
    milestones: dict[int, tuple[str, int]],
) -> MilestoneReward | None:
    """Append the reward for streak.consecutive_days if it is a milestone not yet received."""
    day = streak.consecutive_days
    if day not in milestones:
        return None
    received = list(streak.rewards_received or [])
    if any(r["day"] == day for r in received):
        return None

    reward_id, bonus = milestones[day]
    received.append({"day": day, "reward": reward_id, "received_at": now.isoformat()})
    received.sort(key=lambda r: r["day"])
    streak.rewards_received = received  # reassign so the JSON column is flagged dirty
    return MilestoneReward(day=day, reward=reward_id, bonus_points=bonus, received_at=now)


def _result(
    streak: Streak,
    transition: StreakTransition,
    is_new_record: bool = False,
    milestone: MilestoneReward | None = None,
) -> StreakUpdateResult:
    return StreakUpdateResult(
        user_id=streak.user_id,
        activity_type=streak.activity_type,
        transition=transition,
        consecutive_days=streak.consecutive_days,
        longest_streak=streak.longest_streak,
        last_activity=streak.last_activity,
        is_new_record=is_new_record,
        milestone=milestone,
    )


async def record_activity(
    db: AsyncSession,
    user_id: int,
    activity_type: str,
    at: datetime,
    *,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
    milestones: dict[int, tuple[str, int]] | None = None,
) -> StreakUpdateResult:
    """Advance the (user, activity_type) streak for an activity at ``at``. Flushes only.

    Raises:
        OutOfOrderEvent: ``at`` falls on a calendar day before the last activity.
        AlreadyExists: a concurrent writer created the row first.
    """
    if not activity_type:
        msg = "activity_type is required"
        raise ValidationError(msg)
    if at.tzinfo is None:
        msg = "Activity timestamp must be timezone-aware"
        raise ValidationError(msg)
    if now is None:
        now = datetime.now(timezone.utc)
    if milestones is None:
        milestones = MILESTONE_REWARDS

    result = await db.execute(
        select(Streak)
        .where(Streak.user_id == user_id, Streak.activity_type == activity_type)
        .with_for_update()
    )
    streak = result.scalar_one_or_none()

    if streak is None:
        if await db.get(User, user_id) is None:
            msg = f"User {user_id} not found"
            raise NotFound(msg)
        streak = Streak(
            user_id=user_id,
            activity_type=activity_type,
            consecutive_days=1,
            longest_streak=1,
            last_activity=at,
            rewards_received=[],
            created_at=now,
            updated_at=now,
        )
        db.add(streak)
        milestone = _grant_milestone(streak, now, milestones)
        try:
            await db.flush()
        except IntegrityError as exc:
            msg = f"Streak {activity_type!r} for user {user_id} was created concurrently"
            raise AlreadyExists(msg) from exc
        return _result(streak, StreakTransition.CREATED, milestone=milestone)

    distance = calendar_day_distance(streak.last_activity, at, tz)

    if distance < 0:
        msg = (
            f"Activity at {at.isoformat()} is before last {activity_type!r} activity "
            f"at {streak.last_activity.isoformat()}"
        )
        raise OutOfOrderEvent(msg)

    if distance == 0:
        return _result(streak, StreakTransition.SAME_DAY)

    is_new_record = False
    milestone = None
    if distance == 1:
        streak.consecutive_days += 1
        if streak.consecutive_days > streak.longest_streak:
            streak.longest_streak = streak.consecutive_days
            is_new_record = True
        milestone = _grant_milestone(streak, now, milestones)
        transition = StreakTransition.CONTINUED
    else:
        if streak.consecutive_days > 1:
            logger.info(
                "Streak %r for user %d broken after %d days",
                activity_type, user_id, streak.consecutive_days,
            )
        streak.consecutive_days = 1
        transition = StreakTransition.RESET

    streak.last_activity = at
    streak.updated_at = now
    await db.flush()
    return _result(streak, transition, is_new_record=is_new_record, milestone=milestone)


async def get_streak(db: AsyncSession, user_id: int, activity_type: str) -> Streak | None:
    result = await db.execute(
        select(Streak).where(Streak.user_id == user_id, Streak.activity_type == activity_type)
    )
    return result.scalar_one_or_none()


async def get_user_streaks(db: AsyncSession, user_id: int) -> list[Streak]:
    """All streaks of a user, longest running first."""
    result = await db.execute(
        select(Streak)
        .where(Streak.user_id == user_id)
        .order_by(Streak.consecutive_days.desc(), Streak.activity_type)
    )
    return list(result.scalars().all())


def is_at_risk(streak: Streak, now: datetime, tz: tzinfo = timezone.utc) -> bool:
    """True when the last activity was yesterday: today's activity keeps the streak alive."""
    if streak.consecutive_days == 0:
        return False
    yesterday = (now.astimezone(tz) - timedelta(days=1)).date()
    return streak.last_activity.astimezone(tz).date() == yesterday
