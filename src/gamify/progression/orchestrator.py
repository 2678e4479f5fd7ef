"""Progression orchestrator: one scored event fanned out to every mechanic.

Order per event:
1. Point ledger (a failure here aborts the whole event)
2. Streak tracker, plus milestone bonus points through the ledger
3. Companion experience (lazy unlock with defaults)
4. Debounced ranking refresh and pub/sub notifications

Each step commits on its own so a failing streak or companion update
never rolls back the point award. Events of one user are serialized
in-process by a keyed lock; the store adds row locks on top.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from gamify.errors import ValidationError
from gamify.locks import KeyedLock
from gamify.progression.companion_service import (
    DEFAULT_EVOLUTION_INTERVAL,
    CompanionUpdateResult,
    get_companion,
    grant_experience,
    unlock_companion,
)
from gamify.progression.level_table import LevelTable
from gamify.progression.notifications import (
    COMPANION_EVOLUTION,
    LEVEL_UP,
    STREAK_MILESTONE,
    ProgressionNotification,
    publish_notifications,
)
from gamify.progression.points_service import PointsResult, ProgressSnapshot, apply_points
from gamify.progression.streak_service import StreakUpdateResult, record_activity

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_EVENT_ID_LENGTH = 200


@dataclass(frozen=True)
class ScoredEvent:
    """A unit of scored user activity.

    ``event_id`` makes redelivery safe: the same id is applied once.
    A negative ``point_delta`` is only accepted with ``correction=True``;
    corrections touch the ledger and nothing else.
    """

    user_id: int
    point_delta: int
    activity_type: str
    timestamp: datetime
    companion_experience: int | None = None
    reason: str = "activity"
    event_id: str | None = None
    correction: bool = False

    def __post_init__(self) -> None:
        if isinstance(self.user_id, bool) or not isinstance(self.user_id, int) or self.user_id < 1:
            msg = f"user_id must be a positive integer, got {self.user_id!r}"
            raise ValidationError(msg)
        if isinstance(self.point_delta, bool) or not isinstance(self.point_delta, int):
            msg = f"point_delta must be an integer, got {self.point_delta!r}"
            raise ValidationError(msg)
        if self.point_delta < 0 and not self.correction:
            msg = "Negative point_delta is only allowed for corrections"
            raise ValidationError(msg)
        if not self.activity_type or not self.activity_type.strip():
            msg = "activity_type is required"
            raise ValidationError(msg)
        if not isinstance(self.timestamp, datetime) or self.timestamp.tzinfo is None:
            msg = "timestamp must be a timezone-aware datetime"
            raise ValidationError(msg)
        if self.companion_experience is not None and (
            isinstance(self.companion_experience, bool)
            or not isinstance(self.companion_experience, int)
            or self.companion_experience < 0
        ):
            msg = "companion_experience must be a non-negative integer"
            raise ValidationError(msg)
        if not self.reason:
            msg = "reason is required"
            raise ValidationError(msg)
        if self.event_id is not None and not (0 < len(self.event_id) <= MAX_EVENT_ID_LENGTH):
            msg = f"event_id must be 1-{MAX_EVENT_ID_LENGTH} characters"
            raise ValidationError(msg)


@dataclass(frozen=True)
class ProgressionOutcome:
    user_id: int
    new_total_points: int
    new_level: int
    previous_level: int
    duplicate: bool = False
    bonus_points: int = 0
    streak_result: StreakUpdateResult | None = None
    evolution_result: CompanionUpdateResult | None = None
    # mechanic name -> error code
    failures: dict[str, str] = field(default_factory=dict)
    notifications: tuple[ProgressionNotification, ...] = ()

    @property
    def leveled_up(self) -> bool:
        return self.new_level > self.previous_level

    @property
    def partial_failure(self) -> bool:
        return bool(self.failures)


class ProgressionOrchestrator:
    """Entry point for scored events."""

    def __init__(
        self,
        levels: LevelTable,
        *,
        redis: object | None = None,
        scheduler: object | None = None,
        tz: tzinfo = timezone.utc,
        notification_channel: str = "pubsub:progression",
        evolution_interval: int = DEFAULT_EVOLUTION_INTERVAL,
        companion_default_type: str = "pet",
        companion_default_name: str = "Adventurer",
        milestones: dict[int, tuple[str, int]] | None = None,
    ) -> None:
        self.levels = levels
        self.redis = redis
        self.scheduler = scheduler
        self.tz = tz
        self.notification_channel = notification_channel
        self.evolution_interval = evolution_interval
        self.companion_default_type = companion_default_type
        self.companion_default_name = companion_default_name
        self.milestones = milestones
        self._user_locks = KeyedLock()

    async def handle_event(self, db: AsyncSession, event: ScoredEvent) -> ProgressionOutcome:
        async with self._user_locks.hold(event.user_id):
            outcome = await self._handle(db, event)

        if outcome.notifications:
            await publish_notifications(self.redis, self.notification_channel, outcome.notifications)
        if not outcome.duplicate:
            await self._request_ranking_refresh(event)
        return outcome

    async def _handle(self, db: AsyncSession, event: ScoredEvent) -> ProgressionOutcome:
        failures: dict[str, str] = {}
        notifications: list[ProgressionNotification] = []

        # 1. Ledger: failure aborts the event.
        try:
            points = await apply_points(
                db,
                self.levels,
                event.user_id,
                event.point_delta,
                event.reason,
                activity_type=event.activity_type,
                occurred_at=event.timestamp,
                idempotency_key=f"event:{event.event_id}" if event.event_id else None,
            )
            await db.commit()
        except (Exception, asyncio.CancelledError):
            await db.rollback()
            raise

        if points.duplicate:
            logger.info("Duplicate event %s for user %d ignored", event.event_id, event.user_id)
            return self._outcome(event, points, points.progress, duplicate=True)

        final_progress: ProgressSnapshot = points.progress
        bonus_points = 0
        streak_result: StreakUpdateResult | None = None
        evolution_result: CompanionUpdateResult | None = None

        if not event.correction:
            # 2. Streak
            streak_result = await self._run_step(
                db, "streak", event.user_id, failures,
                lambda: record_activity(
                    db, event.user_id, event.activity_type, event.timestamp,
                    tz=self.tz, milestones=self.milestones,
                ),
            )
            milestone = streak_result.milestone if streak_result else None
            if milestone is not None:
                notifications.append(ProgressionNotification(
                    kind=STREAK_MILESTONE,
                    user_id=event.user_id,
                    data={
                        "activity_type": event.activity_type,
                        "day": milestone.day,
                        "reward": milestone.reward,
                        "bonus_points": milestone.bonus_points,
                    },
                ))
                bonus = await self._run_step(
                    db, "streak_bonus", event.user_id, failures,
                    lambda: apply_points(
                        db,
                        self.levels,
                        event.user_id,
                        milestone.bonus_points,
                        "streak_milestone",
                        description=f"{milestone.day}-day {event.activity_type} streak",
                        activity_type=event.activity_type,
                        occurred_at=event.timestamp,
                        idempotency_key=(
                            f"streak-milestone:{event.user_id}:{event.activity_type}:{milestone.day}"
                        ),
                    ),
                )
                if bonus is not None:
                    final_progress = bonus.progress
                    if not bonus.duplicate:
                        bonus_points = bonus.delta

            # 3. Companion
            if event.companion_experience is not None:
                evolution_result = await self._run_step(
                    db, "companion", event.user_id, failures,
                    lambda: self._grant_companion_experience(
                        db, event.user_id, event.companion_experience or 0,
                    ),
                )
                if evolution_result is not None:
                    for evolution in evolution_result.evolutions:
                        notifications.append(ProgressionNotification(
                            kind=COMPANION_EVOLUTION,
                            user_id=event.user_id,
                            data={
                                "name": evolution_result.name,
                                "stage": evolution.stage,
                                "level": evolution.reached_at_level,
                            },
                        ))

        # One level-up notification carrying only the final level.
        if final_progress.current_level > points.previous_level:
            definition = self.levels.get(final_progress.current_level)
            notifications.insert(0, ProgressionNotification(
                kind=LEVEL_UP,
                user_id=event.user_id,
                data={
                    "old_level": points.previous_level,
                    "new_level": final_progress.current_level,
                    "name": definition.name if definition else None,
                    "total_points": final_progress.total_points,
                },
            ))

        return self._outcome(
            event,
            points,
            final_progress,
            bonus_points=bonus_points,
            streak_result=streak_result,
            evolution_result=evolution_result,
            failures=failures,
            notifications=tuple(notifications),
        )

    async def _run_step(
        self,
        db: AsyncSession,
        name: str,
        user_id: int,
        failures: dict[str, str],
        step: Callable[[], Awaitable[T]],
    ) -> T | None:
        """Run one sub-mechanic and commit it; on failure roll it back and record the error code."""
        try:
            result = await step()
            await db.commit()
            return result
        except asyncio.CancelledError:
            await db.rollback()
            raise
        except Exception as exc:
            await db.rollback()
            failures[name] = getattr(exc, "code", "internal_error")
            logger.warning("%s update failed for user %d", name, user_id, exc_info=True)
            return None

    async def _grant_companion_experience(
        self, db: AsyncSession, user_id: int, amount: int,
    ) -> CompanionUpdateResult:
        if await get_companion(db, user_id) is None:
            await unlock_companion(
                db,
                user_id,
                self.companion_default_name,
                self.companion_default_type,
                evolution_interval=self.evolution_interval,
            )
        return await grant_experience(db, user_id, amount, evolution_interval=self.evolution_interval)

    async def _request_ranking_refresh(self, event: ScoredEvent) -> None:
        if self.scheduler is None or event.point_delta == 0:
            return
        try:
            await self.scheduler.request_refresh()  # type: ignore[attr-defined]
        except Exception:
            logger.warning("Failed to schedule ranking refresh", exc_info=True)

    @staticmethod
    def _outcome(
        event: ScoredEvent,
        points: PointsResult,
        final_progress: ProgressSnapshot,
        **kwargs: object,
    ) -> ProgressionOutcome:
        return ProgressionOutcome(
            user_id=event.user_id,
            new_total_points=final_progress.total_points,
            new_level=final_progress.current_level,
            previous_level=points.previous_level,
            **kwargs,  # type: ignore[arg-type]
        )
