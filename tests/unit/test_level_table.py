"""Level table tests: validation, lookup and progress view."""

import pytest

from gamify.errors import ValidationError
from gamify.progression.level_table import FALLBACK_LEVEL, LevelDefinition, LevelTable
from gamify.progression.seed import LEVEL_SEED_DATA


def _table(*thresholds: int) -> LevelTable:
    return LevelTable(
        LevelDefinition(i + 1, t, f"L{i + 1}", "#000000") for i, t in enumerate(thresholds)
    )


class TestLevelFor:
    """Largest level whose threshold is <= total points."""

    def test_zero_points_is_level_1(self):
        assert _table(0, 100, 250).level_for(0) == 1

    def test_exact_threshold_reaches_level(self):
        assert _table(0, 100, 250).level_for(100) == 2

    def test_one_below_threshold(self):
        assert _table(0, 100, 250).level_for(99) == 1

    def test_above_last_threshold_is_max_level(self):
        assert _table(0, 100, 250).level_for(10_000) == 3

    def test_150_points_is_level_2(self):
        assert _table(0, 100).level_for(150) == 2

    def test_empty_table_falls_back_to_level_1(self):
        table = LevelTable([])
        assert table.level_for(0) == FALLBACK_LEVEL == 1
        assert table.level_for(5000) == 1
        assert table.definition_for(5000) is None

    def test_no_zero_threshold_uses_lowest_level(self):
        table = LevelTable([
            LevelDefinition(1, 50, "A", "#111111"),
            LevelDefinition(2, 100, "B", "#222222"),
        ])
        assert table.level_for(0) == 1
        assert table.level_for(10) == 1

    def test_unsorted_input_is_sorted(self):
        table = LevelTable([
            LevelDefinition(2, 100, "B", "#222222"),
            LevelDefinition(1, 0, "A", "#111111"),
        ])
        assert [d.level for d in table] == [1, 2]

    def test_matches_linear_scan(self):
        table = _table(0, 100, 250, 500, 1000)
        for points in range(0, 1200, 7):
            expected = max(d.level for d in table if d.points_required <= points)
            assert table.level_for(points) == expected


class TestValidation:
    def test_duplicate_level_rejected(self):
        with pytest.raises(ValidationError):
            LevelTable([
                LevelDefinition(1, 0, "A", "#111111"),
                LevelDefinition(1, 10, "B", "#222222"),
            ])

    def test_thresholds_must_strictly_increase(self):
        with pytest.raises(ValidationError):
            LevelTable([
                LevelDefinition(1, 0, "A", "#111111"),
                LevelDefinition(2, 0, "B", "#222222"),
            ])

    def test_decreasing_thresholds_rejected(self):
        with pytest.raises(ValidationError):
            _table(0, 200, 100)

    def test_level_must_be_positive(self):
        with pytest.raises(ValidationError):
            LevelDefinition(0, 0, "Zero", "#000000")

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            LevelDefinition(1, -1, "Neg", "#000000")

    def test_benefits_frozen_as_tuple(self):
        definition = LevelDefinition(1, 0, "A", "#111111", ["x", "y"])  # type: ignore[arg-type]
        assert definition.benefits == ("x", "y")

    def test_seed_data_is_valid(self):
        table = LevelTable(LEVEL_SEED_DATA)
        assert len(table) == 10
        assert table.level_for(0) == 1


class TestProgress:
    def test_mid_level(self):
        view = _table(0, 100, 250).progress(175)
        assert view["level"] == 2
        assert view["points_into_level"] == 75
        assert view["points_for_level"] == 150
        assert view["next_level"] == 3
        assert view["percent"] == 50.0

    def test_max_level_is_complete(self):
        view = _table(0, 100).progress(400)
        assert view["level"] == 2
        assert view["next_level"] is None
        assert view["percent"] == 100.0

    def test_empty_table(self):
        view = LevelTable([]).progress(30)
        assert view["level"] == 1
        assert view["name"] is None
