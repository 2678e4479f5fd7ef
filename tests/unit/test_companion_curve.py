"""Companion experience curve tests."""

import pytest

from gamify.progression.companion_service import level_for_experience


class TestLevelForExperience:
    @pytest.mark.parametrize(
        ("experience", "level"),
        [(0, 1), (9, 1), (10, 2), (39, 2), (40, 3), (90, 4), (159, 4), (160, 5), (250, 6), (1000, 11)],
    )
    def test_curve(self, experience, level):
        assert level_for_experience(experience) == level

    def test_monotonic(self):
        levels = [level_for_experience(xp) for xp in range(0, 5000, 3)]
        assert levels == sorted(levels)

    def test_negative_experience_treated_as_zero(self):
        assert level_for_experience(-50) == 1
