"""ORM models for the progression engine.

``user_progress``, ``streaks`` and ``companions`` are mutated only by the
progression services; ``rankings`` only by the ranking aggregator.
``point_ledger`` is append-only and is the source of truth for
period rankings.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from gamify.db.base import Base, BigIntPK, UTCDateTime, utcnow


# ---------------------------------------------------------------------------
# Users (directory owned by the platform; read for existence + department)
# ---------------------------------------------------------------------------


class User(Base):
    """Platform user. The engine reads it; only admin commands write it."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    department: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="user")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Level table
# ---------------------------------------------------------------------------


class Level(Base):
    """Reference data: points required per level. Seeded once, read-only."""

    __tablename__ = "levels"

    level: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    points_required: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    color: Mapped[str] = mapped_column(String(16), nullable=False)
    benefits: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


class UserProgress(Base):
    """Running point total and derived level, one row per user.

    ``points_balance`` is the raw sum of every ledger delta;
    ``total_points`` is that balance floored at zero.
    """

    __tablename__ = "user_progress"

    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, autoincrement=False
    )
    points_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class PointAward(Base):
    """Immutable point transaction log with idempotency key."""

    __tablename__ = "point_ledger"
    __table_args__ = (
        Index("idx_point_ledger_occurred", "occurred_at", "user_id"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------


class Streak(Base):
    """Consecutive-day activity per (user, activity type)."""

    __tablename__ = "streaks"
    __table_args__ = (
        UniqueConstraint("user_id", "activity_type", name="streaks_user_activity_key"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    consecutive_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # [{"day": 7, "reward": "streak_7_days", "received_at": "<iso>"}], ascending by day
    rewards_received: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Companions
# ---------------------------------------------------------------------------


class Companion(Base):
    """A user's single active companion."""

    __tablename__ = "companions"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="pet")
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    experience: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    current_evolution: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_evolution_level: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    unlocked_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------


class RankingEntry(Base):
    """One user's position inside a (type, period, department) bucket.

    ``department`` is ``""`` for the organisation-wide bucket so the
    uniqueness constraint also covers it.
    """

    __tablename__ = "rankings"
    __table_args__ = (
        UniqueConstraint(
            "type", "user_id", "period_start", "department", name="rankings_bucket_user_key"
        ),
        Index("idx_rankings_bucket_position", "type", "period_start", "department", "position"),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    user_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    department: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    computed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
