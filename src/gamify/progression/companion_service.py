"""Companion unlock, experience and evolution."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.db.models import Companion, User
from gamify.errors import AlreadyExists, NotFound, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_EVOLUTION_INTERVAL = 5
MAX_NAME_LENGTH = 50


def level_for_experience(experience: int) -> int:
    """Companion level curve: floor(sqrt(experience / 10)) + 1.

    Level 2 at 10 XP, 3 at 40, 4 at 90, 5 at 160, 6 at 250.
    """
    return math.isqrt(max(0, experience) // 10) + 1


@dataclass(frozen=True)
class EvolutionEvent:
    stage: int
    reached_at_level: int


@dataclass(frozen=True)
class CompanionUpdateResult:
    user_id: int
    name: str
    type: str
    experience: int
    previous_level: int
    level: int
    current_evolution: int
    next_evolution_level: int
    evolutions: tuple[EvolutionEvent, ...] = ()

    @property
    def leveled_up(self) -> bool:
        return self.level > self.previous_level

    @property
    def evolved(self) -> bool:
        return bool(self.evolutions)


def _validate_name(name: str) -> str:
    name = (name or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        msg = f"Companion name must be 1-{MAX_NAME_LENGTH} characters"
        raise ValidationError(msg)
    return name


async def get_companion(db: AsyncSession, user_id: int, *, for_update: bool = False) -> Companion | None:
    stmt = select(Companion).where(Companion.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def unlock_companion(
    db: AsyncSession,
    user_id: int,
    name: str,
    companion_type: str = "pet",
    *,
    evolution_interval: int = DEFAULT_EVOLUTION_INTERVAL,
) -> Companion:
    """Create the user's companion.

    Raises:
        AlreadyExists: The user already has a companion.
        NotFound: The user does not exist.
    """
    name = _validate_name(name)
    if evolution_interval < 1:
        msg = "evolution_interval must be >= 1"
        raise ValidationError(msg)
    if await get_companion(db, user_id) is not None:
        msg = f"User {user_id} already has a companion"
        raise AlreadyExists(msg)
    if await db.get(User, user_id) is None:
        msg = f"User {user_id} not found"
        raise NotFound(msg)

    now = datetime.now(timezone.utc)
    companion = Companion(
        user_id=user_id,
        type=companion_type,
        name=name,
        level=1,
        experience=0,
        current_evolution=0,
        next_evolution_level=evolution_interval,
        unlocked_at=now,
        updated_at=now,
    )
    db.add(companion)
    try:
        await db.flush()
    except IntegrityError as exc:
        msg = f"User {user_id} already has a companion"
        raise AlreadyExists(msg) from exc
    logger.info("Companion %r unlocked for user %d", name, user_id)
    return companion


async def grant_experience(
    db: AsyncSession,
    user_id: int,
    amount: int,
    *,
    evolution_interval: int = DEFAULT_EVOLUTION_INTERVAL,
) -> CompanionUpdateResult:
    """Add experience, recompute level, and advance evolution one stage per boundary crossed.

    Raises:
        ValidationError: ``amount`` is negative.
        NotFound: The user has no companion.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        msg = f"Experience amount must be a non-negative integer, got {amount!r}"
        raise ValidationError(msg)

    companion = await get_companion(db, user_id, for_update=True)
    if companion is None:
        msg = f"User {user_id} has no companion"
        raise NotFound(msg)

    previous_level = companion.level
    companion.experience += amount
    companion.level = max(companion.level, level_for_experience(companion.experience))

    evolutions: list[EvolutionEvent] = []
    while companion.level >= companion.next_evolution_level:
        companion.current_evolution += 1
        evolutions.append(EvolutionEvent(
            stage=companion.current_evolution,
            reached_at_level=companion.next_evolution_level,
        ))
        companion.next_evolution_level += evolution_interval

    companion.updated_at = datetime.now(timezone.utc)
    await db.flush()

    if evolutions:
        logger.info(
            "Companion of user %d evolved to stage %d (level %d)",
            user_id, companion.current_evolution, companion.level,
        )

    return CompanionUpdateResult(
        user_id=user_id,
        name=companion.name,
        type=companion.type,
        experience=companion.experience,
        previous_level=previous_level,
        level=companion.level,
        current_evolution=companion.current_evolution,
        next_evolution_level=companion.next_evolution_level,
        evolutions=tuple(evolutions),
    )


async def rename_companion(db: AsyncSession, user_id: int, name: str) -> Companion:
    name = _validate_name(name)
    companion = await get_companion(db, user_id, for_update=True)
    if companion is None:
        msg = f"User {user_id} has no companion"
        raise NotFound(msg)
    companion.name = name
    companion.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return companion
