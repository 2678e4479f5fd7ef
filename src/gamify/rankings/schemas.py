"""Pydantic response models for ranking endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class RankingEntryResponse(BaseModel):
    user_id: int
    points: int
    position: int


class RankingResponse(BaseModel):
    type: str
    period_start: datetime
    period_end: datetime
    department: str | None = None
    entries: list[RankingEntryResponse]


class UserRankingResponse(BaseModel):
    type: str
    period_start: datetime
    period_end: datetime
    department: str | None = None
    user_id: int
    points: int
    position: int
    live: bool = False
