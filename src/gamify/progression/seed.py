"""Level seed data and loading of the level table from the store."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.db.models import Level
from gamify.progression.level_table import LevelDefinition, LevelTable

logger = logging.getLogger(__name__)

LEVEL_SEED_DATA: list[LevelDefinition] = [
    LevelDefinition(1, 0, "Newcomer", "#9CA3AF", ("Access to personal dashboard",)),
    LevelDefinition(2, 100, "Apprentice", "#60A5FA", ("Custom avatar frame",)),
    LevelDefinition(3, 250, "Contributor", "#34D399", ("Companion unlock",)),
    LevelDefinition(4, 500, "Achiever", "#A3E635", ("Weekly ranking highlight",)),
    LevelDefinition(5, 1000, "Specialist", "#FBBF24", ("Extra streak freeze", "Profile badge slot")),
    LevelDefinition(6, 2000, "Expert", "#F97316", ("Team challenge creation",)),
    LevelDefinition(7, 3500, "Master", "#EF4444", ("Mentor role eligibility",)),
    LevelDefinition(8, 5500, "Champion", "#EC4899", ("Exclusive companion skins",)),
    LevelDefinition(9, 8000, "Legend", "#8B5CF6", ("Hall of fame listing",)),
    LevelDefinition(10, 12000, "Mythic", "#0EA5E9", ("All benefits unlocked",)),
]


async def seed_levels(
    db: AsyncSession,
    definitions: list[LevelDefinition] | None = None,
) -> int:
    """Insert missing level definitions (idempotent). Existing rows are left untouched.

    Returns the number of levels inserted.
    """
    definitions = LEVEL_SEED_DATA if definitions is None else definitions
    # Validate the combined set before writing anything.
    LevelTable(definitions)

    result = await db.execute(select(Level.level))
    existing = set(result.scalars().all())

    inserted = 0
    for definition in definitions:
        if definition.level in existing:
            continue
        db.add(Level(
            level=definition.level,
            points_required=definition.points_required,
            name=definition.name,
            color=definition.color,
            benefits=list(definition.benefits),
        ))
        inserted += 1

    await db.commit()
    if inserted:
        logger.info("Seeded %d level definitions", inserted)
    return inserted


async def load_level_table(db: AsyncSession) -> LevelTable:
    """Read all level rows into an immutable LevelTable."""
    result = await db.execute(select(Level).order_by(Level.level))
    return LevelTable(
        LevelDefinition(
            level=row.level,
            points_required=row.points_required,
            name=row.name,
            color=row.color,
            benefits=tuple(row.benefits or ()),
        )
        for row in result.scalars()
    )
