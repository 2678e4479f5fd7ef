"""Level table: points required per level and level computation.

The table is immutable reference data. It is validated once when it is
built and shared read-only by every request afterwards.
"""

from __future__ import annotations

from bisect import bisect_right
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field

from gamify.errors import ValidationError

# Used when the table has no rows at all.
FALLBACK_LEVEL = 1


@dataclass(frozen=True)
class LevelDefinition:
    level: int
    points_required: int
    name: str
    color: str
    benefits: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.level < 1:
            msg = f"Level number must be >= 1, got {self.level}"
            raise ValidationError(msg)
        if self.points_required < 0:
            msg = f"Level {self.level}: points_required must be >= 0"
            raise ValidationError(msg)
        if not self.name:
            msg = f"Level {self.level}: name is required"
            raise ValidationError(msg)
        object.__setattr__(self, "benefits", tuple(self.benefits))


class LevelTable:
    """Sorted, validated level definitions with O(log N) lookup."""

    def __init__(self, definitions: Iterable[LevelDefinition]) -> None:
        ordered = sorted(definitions, key=lambda d: d.level)
        for prev, cur in zip(ordered, ordered[1:]):
            if prev.level == cur.level:
                msg = f"Duplicate level {cur.level}"
                raise ValidationError(msg)
            if cur.points_required <= prev.points_required:
                msg = (
                    f"points_required must strictly increase: level {cur.level} "
                    f"({cur.points_required}) <= level {prev.level} ({prev.points_required})"
                )
                raise ValidationError(msg)
        self._levels: tuple[LevelDefinition, ...] = tuple(ordered)
        self._thresholds: list[int] = [d.points_required for d in ordered]

    def __len__(self) -> int:
        return len(self._levels)

    def __iter__(self) -> Iterator[LevelDefinition]:
        return iter(self._levels)

    @property
    def lowest_level(self) -> int:
        return self._levels[0].level if self._levels else FALLBACK_LEVEL

    def get(self, level: int) -> LevelDefinition | None:
        for definition in self._levels:
            if definition.level == level:
                return definition
        return None

    def definition_for(self, total_points: int) -> LevelDefinition | None:
        """Highest definition whose threshold is <= total_points.

        Below the first threshold (no zero-point level) this is the lowest
        defined level; an empty table yields None.
        """
        if not self._levels:
            return None
        idx = bisect_right(self._thresholds, total_points) - 1
        return self._levels[max(idx, 0)]

    def level_for(self, total_points: int) -> int:
        definition = self.definition_for(total_points)
        return definition.level if definition else FALLBACK_LEVEL

    def progress(self, total_points: int) -> dict:
        """Level progress view: current level, next level, points into level."""
        current = self.definition_for(total_points)
        if current is None:
            return {
                "level": FALLBACK_LEVEL,
                "name": None,
                "color": None,
                "points_into_level": total_points,
                "points_for_level": 0,
                "next_level": None,
                "next_name": None,
                "percent": 100.0,
            }

        idx = self._levels.index(current)
        nxt = self._levels[idx + 1] if idx + 1 < len(self._levels) else None
        floor = current.points_required
        points_into_level = max(0, total_points - floor)
        if nxt is None:
            points_for_level = 0
            percent = 100.0
        else:
            points_for_level = nxt.points_required - floor
            percent = round(min(100.0, points_into_level / points_for_level * 100), 2)

        return {
            "level": current.level,
            "name": current.name,
            "color": current.color,
            "points_into_level": points_into_level,
            "points_for_level": points_for_level,
            "next_level": nxt.level if nxt else None,
            "next_name": nxt.name if nxt else None,
            "percent": percent,
        }
