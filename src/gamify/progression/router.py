"""Progression API endpoints: events, levels, progress, streaks, companion."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.config import get_settings
from gamify.db.models import Companion, Streak
from gamify.dependencies import get_db, get_levels, get_orchestrator
from gamify.errors import NotFound
from gamify.progression.companion_service import (
    get_companion,
    rename_companion,
    unlock_companion,
)
from gamify.progression.level_table import LevelTable
from gamify.progression.orchestrator import (
    ProgressionOrchestrator,
    ProgressionOutcome,
    ScoredEvent,
)
from gamify.progression.points_service import get_points_history, get_progress
from gamify.progression.schemas import (
    AllLevelsResponse,
    CompanionRenameRequest,
    CompanionResponse,
    CompanionResultResponse,
    CompanionUnlockRequest,
    LevelEntry,
    NotificationResponse,
    PointsHistoryEntry,
    PointsHistoryResponse,
    ProgressionOutcomeResponse,
    ProgressResponse,
    ScoredEventRequest,
    StreakResponse,
    StreakResultResponse,
    StreaksResponse,
)
from gamify.progression.streak_service import get_streak, get_user_streaks, is_at_risk
from gamify.users.service import get_user

router = APIRouter(prefix="/api/v1", tags=["Progression"])


def _outcome_response(outcome: ProgressionOutcome) -> ProgressionOutcomeResponse:
    streak = outcome.streak_result
    evolution = outcome.evolution_result
    return ProgressionOutcomeResponse(
        user_id=outcome.user_id,
        new_total_points=outcome.new_total_points,
        new_level=outcome.new_level,
        previous_level=outcome.previous_level,
        leveled_up=outcome.leveled_up,
        duplicate=outcome.duplicate,
        bonus_points=outcome.bonus_points,
        streak_result=StreakResultResponse(
            activity_type=streak.activity_type,
            transition=streak.transition.value,
            consecutive_days=streak.consecutive_days,
            longest_streak=streak.longest_streak,
            last_activity=streak.last_activity,
            is_new_record=streak.is_new_record,
            milestone=asdict(streak.milestone) if streak.milestone else None,
        ) if streak else None,
        evolution_result=CompanionResultResponse(
            name=evolution.name,
            type=evolution.type,
            experience=evolution.experience,
            previous_level=evolution.previous_level,
            level=evolution.level,
            current_evolution=evolution.current_evolution,
            next_evolution_level=evolution.next_evolution_level,
            evolutions=[asdict(e) for e in evolution.evolutions],
        ) if evolution else None,
        failures=outcome.failures,
        notifications=[NotificationResponse(event=n.kind, data=n.data) for n in outcome.notifications],
    )


def _streak_response(streak: Streak, now: datetime) -> StreakResponse:
    return StreakResponse(
        activity_type=streak.activity_type,
        consecutive_days=streak.consecutive_days,
        longest_streak=streak.longest_streak,
        last_activity=streak.last_activity,
        is_at_risk=is_at_risk(streak, now, get_settings().tz),
        rewards_received=streak.rewards_received or [],
    )


def _companion_response(companion: Companion) -> CompanionResponse:
    return CompanionResponse(
        user_id=companion.user_id,
        type=companion.type,
        name=companion.name,
        level=companion.level,
        experience=companion.experience,
        current_evolution=companion.current_evolution,
        next_evolution_level=companion.next_evolution_level,
        unlocked_at=companion.unlocked_at,
    )


# ── Events ──


@router.post("/events", response_model=ProgressionOutcomeResponse)
async def submit_event(
    body: ScoredEventRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProgressionOrchestrator = Depends(get_orchestrator),
):
    """Apply one scored event: points, streak, companion."""
    event = ScoredEvent(
        user_id=body.user_id,
        point_delta=body.point_delta,
        activity_type=body.activity_type,
        timestamp=body.timestamp or datetime.now(timezone.utc),
        companion_experience=body.companion_experience,
        reason=body.reason,
        event_id=body.event_id,
        correction=body.correction,
    )
    outcome = await orchestrator.handle_event(db, event)
    return _outcome_response(outcome)


# ── Levels / points ──


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels(levels: LevelTable = Depends(get_levels)):
    """Get the full level table."""
    return AllLevelsResponse(levels=[
        LevelEntry(
            level=d.level,
            points_required=d.points_required,
            name=d.name,
            color=d.color,
            benefits=list(d.benefits),
        )
        for d in levels
    ])


@router.get("/users/{user_id}/progress", response_model=ProgressResponse)
async def user_progress(
    user_id: int,
    db: AsyncSession = Depends(get_db),
    levels: LevelTable = Depends(get_levels),
):
    """Total points and progress towards the next level."""
    progress = await get_progress(db, user_id, levels)
    view = levels.progress(progress.total_points)
    view["level"] = progress.current_level
    return ProgressResponse(user_id=user_id, total_points=progress.total_points, **view)


@router.get("/users/{user_id}/points/history", response_model=PointsHistoryResponse)
async def points_history(
    user_id: int,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Latest point awards, newest first."""
    await get_user(db, user_id)
    entries = await get_points_history(db, user_id, limit=limit)
    return PointsHistoryResponse(
        user_id=user_id,
        entries=[
            PointsHistoryEntry(
                id=e.id,
                amount=e.amount,
                reason=e.reason,
                description=e.description,
                activity_type=e.activity_type,
                occurred_at=e.occurred_at,
            )
            for e in entries
        ],
    )


# ── Streaks ──


@router.get("/users/{user_id}/streaks", response_model=StreaksResponse)
async def user_streaks(user_id: int, db: AsyncSession = Depends(get_db)):
    """All streaks of a user, longest running first."""
    await get_user(db, user_id)
    now = datetime.now(timezone.utc)
    streaks = await get_user_streaks(db, user_id)
    return StreaksResponse(user_id=user_id, streaks=[_streak_response(s, now) for s in streaks])


@router.get("/users/{user_id}/streaks/{activity_type}", response_model=StreakResponse)
async def user_streak(user_id: int, activity_type: str, db: AsyncSession = Depends(get_db)):
    streak = await get_streak(db, user_id, activity_type)
    if streak is None:
        msg = f"No {activity_type!r} streak for user {user_id}"
        raise NotFound(msg)
    return _streak_response(streak, datetime.now(timezone.utc))


# ── Companion ──


@router.get("/users/{user_id}/companion", response_model=CompanionResponse)
async def companion_detail(user_id: int, db: AsyncSession = Depends(get_db)):
    companion = await get_companion(db, user_id)
    if companion is None:
        msg = f"User {user_id} has no companion"
        raise NotFound(msg)
    return _companion_response(companion)


@router.post("/users/{user_id}/companion", response_model=CompanionResponse, status_code=201)
async def companion_unlock(
    user_id: int,
    body: CompanionUnlockRequest,
    db: AsyncSession = Depends(get_db),
):
    """Unlock the user's companion (one per user)."""
    companion = await unlock_companion(
        db, user_id, body.name, body.type,
        evolution_interval=get_settings().companion_evolution_interval,
    )
    await db.commit()
    return _companion_response(companion)


@router.patch("/users/{user_id}/companion", response_model=CompanionResponse)
async def companion_rename(
    user_id: int,
    body: CompanionRenameRequest,
    db: AsyncSession = Depends(get_db),
):
    companion = await rename_companion(db, user_id, body.name)
    await db.commit()
    return _companion_response(companion)
