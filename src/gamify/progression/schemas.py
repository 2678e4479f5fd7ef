"""Pydantic request/response models for progression endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


# --- Events ---


class ScoredEventRequest(BaseModel):
    user_id: int = Field(gt=0)
    point_delta: int
    activity_type: str = Field(min_length=1, max_length=64)
    timestamp: datetime | None = None
    companion_experience: int | None = Field(default=None, ge=0)
    reason: str = Field(default="activity", min_length=1, max_length=64)
    event_id: str | None = Field(default=None, min_length=1, max_length=200)
    correction: bool = False


class MilestoneResponse(BaseModel):
    day: int
    reward: str
    bonus_points: int
    received_at: datetime


class StreakResultResponse(BaseModel):
    activity_type: str
    transition: str
    consecutive_days: int
    longest_streak: int
    last_activity: datetime
    is_new_record: bool = False
    milestone: MilestoneResponse | None = None


class EvolutionResponse(BaseModel):
    stage: int
    reached_at_level: int


class CompanionResultResponse(BaseModel):
    name: str
    type: str
    experience: int
    previous_level: int
    level: int
    current_evolution: int
    next_evolution_level: int
    evolutions: list[EvolutionResponse] = []


class NotificationResponse(BaseModel):
    event: str
    data: dict = {}


class ProgressionOutcomeResponse(BaseModel):
    user_id: int
    new_total_points: int
    new_level: int
    previous_level: int
    leveled_up: bool
    duplicate: bool = False
    bonus_points: int = 0
    streak_result: StreakResultResponse | None = None
    evolution_result: CompanionResultResponse | None = None
    failures: dict[str, str] = {}
    notifications: list[NotificationResponse] = []


# --- Levels / progress ---


class LevelEntry(BaseModel):
    level: int
    points_required: int
    name: str
    color: str
    benefits: list[str] = []


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]


class ProgressResponse(BaseModel):
    user_id: int
    total_points: int
    level: int
    name: str | None = None
    color: str | None = None
    points_into_level: int
    points_for_level: int
    next_level: int | None = None
    next_name: str | None = None
    percent: float


class PointsHistoryEntry(BaseModel):
    id: int
    amount: int
    reason: str
    description: str | None = None
    activity_type: str | None = None
    occurred_at: datetime


class PointsHistoryResponse(BaseModel):
    user_id: int
    entries: list[PointsHistoryEntry]


# --- Streaks ---


class RewardReceived(BaseModel):
    day: int
    reward: str
    received_at: datetime


class StreakResponse(BaseModel):
    activity_type: str
    consecutive_days: int
    longest_streak: int
    last_activity: datetime
    is_at_risk: bool = False
    rewards_received: list[RewardReceived] = []


class StreaksResponse(BaseModel):
    user_id: int
    streaks: list[StreakResponse]


# --- Companion ---


class CompanionUnlockRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    type: str = Field(default="pet", min_length=1, max_length=32)


class CompanionRenameRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)


class CompanionResponse(BaseModel):
    user_id: int
    type: str
    name: str
    level: int
    experience: int
    current_evolution: int
    next_evolution_level: int
    unlocked_at: datetime
