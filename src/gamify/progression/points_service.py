"""Point ledger: idempotent point application with level recomputation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.db.models import PointAward, User, UserProgress
from gamify.errors import NotFound, ValidationError
from gamify.progression.level_table import LevelTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Detached view of a user's progress row."""

    user_id: int
    total_points: int
    current_level: int


@dataclass(frozen=True)
class PointsResult:
    progress: ProgressSnapshot
    previous_level: int
    delta: int
    duplicate: bool = False

    @property
    def leveled_up(self) -> bool:
        return self.progress.current_level > self.previous_level


def _snapshot(row: UserProgress) -> ProgressSnapshot:
    return ProgressSnapshot(
        user_id=row.user_id,
        total_points=row.total_points,
        current_level=row.current_level,
    )


async def get_or_create_progress(
    db: AsyncSession,
    user_id: int,
    levels: LevelTable,
    *,
    for_update: bool = False,
) -> UserProgress:
    """Get (optionally row-locked) or create the progress row for a user.

    Raises:
        NotFound: If the user does not exist.
    """
    stmt = select(UserProgress).where(UserProgress.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    progress = result.scalar_one_or_none()
    if progress is not None:
        return progress

    if await db.get(User, user_id) is None:
        msg = f"User {user_id} not found"
        raise NotFound(msg)

    progress = UserProgress(
        user_id=user_id,
        points_balance=0,
        total_points=0,
        current_level=levels.level_for(0),
        updated_at=datetime.now(timezone.utc),
    )
    db.add(progress)
    await db.flush()
    return progress


async def get_progress(db: AsyncSession, user_id: int, levels: LevelTable) -> ProgressSnapshot:
    """Current progress for a user (a zero-point view if nothing was awarded yet)."""
    result = await db.execute(select(UserProgress).where(UserProgress.user_id == user_id))
    progress = result.scalar_one_or_none()
    if progress is not None:
        return _snapshot(progress)
    if await db.get(User, user_id) is None:
        msg = f"User {user_id} not found"
        raise NotFound(msg)
    return ProgressSnapshot(user_id=user_id, total_points=0, current_level=levels.level_for(0))


async def _key_used(db: AsyncSession, idempotency_key: str) -> bool:
    result = await db.execute(
        select(PointAward.id).where(PointAward.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none() is not None


async def _duplicate_result(db: AsyncSession, user_id: int, levels: LevelTable) -> PointsResult:
    current = await get_progress(db, user_id, levels)
    return PointsResult(
        progress=current,
        previous_level=current.current_level,
        delta=0,
        duplicate=True,
    )


async def apply_points(
    db: AsyncSession,
    levels: LevelTable,
    user_id: int,
    delta: int,
    reason: str,
    *,
    description: str | None = None,
    activity_type: str | None = None,
    occurred_at: datetime | None = None,
    idempotency_key: str | None = None,
) -> PointsResult:
    """Apply a point delta to a user. Flushes; the caller commits.

    1. Skip if the idempotency key was already used. A concurrent writer
       that commits the same key first makes the flush fail; the session
       is rolled back and the call reports a duplicate.
    2. Lock the progress row and append to point_ledger
    3. total_points = max(0, balance + delta)
    4. Recompute the level from the table (final level only)
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        msg = f"Point delta must be an integer, got {delta!r}"
        raise ValidationError(msg)
    if not reason:
        msg = "A reason is required for every point award"
        raise ValidationError(msg)
    if occurred_at is not None and occurred_at.tzinfo is None:
        msg = "occurred_at must be timezone-aware"
        raise ValidationError(msg)

    if idempotency_key is not None and await _key_used(db, idempotency_key):
        return await _duplicate_result(db, user_id, levels)

    now = datetime.now(timezone.utc)
    progress = await get_or_create_progress(db, user_id, levels, for_update=True)
    old_level = progress.current_level

    db.add(PointAward(
        user_id=user_id,
        amount=delta,
        reason=reason,
        description=description,
        activity_type=activity_type,
        occurred_at=occurred_at or now,
        created_at=now,
        idempotency_key=idempotency_key,
    ))

    progress.points_balance += delta
    progress.total_points = max(0, progress.points_balance)
    progress.current_level = levels.level_for(progress.total_points)
    progress.updated_at = now

    try:
        await db.flush()
    except IntegrityError:
        # A concurrent writer committed the same key after our lookup.
        await db.rollback()
        if idempotency_key is None or not await _key_used(db, idempotency_key):
            raise
        logger.info("Idempotency key %s applied concurrently; treating as duplicate", idempotency_key)
        return await _duplicate_result(db, user_id, levels)

    result = PointsResult(progress=_snapshot(progress), previous_level=old_level, delta=delta)
    if result.leveled_up:
        logger.info(
            "User %d leveled up %d -> %d (%d points)",
            user_id, old_level, progress.current_level, progress.total_points,
        )
    return result


async def get_points_history(db: AsyncSession, user_id: int, limit: int = 50) -> list[PointAward]:
    """Latest point awards for a user, newest first."""
    result = await db.execute(
        select(PointAward)
        .where(PointAward.user_id == user_id)
        .order_by(PointAward.occurred_at.desc(), PointAward.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
