"""Deterministic ranking tests: points DESC, earliest activity, user id."""

import random
from datetime import datetime, timedelta, timezone

from gamify.rankings.ranking import PeriodTotal, rank_totals

T0 = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class TestRankTotals:
    def test_empty(self):
        assert rank_totals([]) == []

    def test_points_descending(self):
        ranked = rank_totals([
            PeriodTotal(1, 10, T0),
            PeriodTotal(2, 30, T0),
            PeriodTotal(3, 20, T0),
        ])
        assert [r.user_id for r in ranked] == [2, 3, 1]

    def test_tie_broken_by_earliest_activity(self):
        """50, 50, 30: the earlier first activity ranks first."""
        ranked = rank_totals([
            PeriodTotal(1, 50, T0 + timedelta(hours=2)),
            PeriodTotal(2, 50, T0),
            PeriodTotal(3, 30, T0 - timedelta(hours=1)),
        ])
        assert [(r.user_id, r.position) for r in ranked] == [(2, 1), (1, 2), (3, 3)]

    def test_full_tie_broken_by_user_id(self):
        ranked = rank_totals([PeriodTotal(9, 5, T0), PeriodTotal(4, 5, T0)])
        assert [r.user_id for r in ranked] == [4, 9]

    def test_positions_dense_and_unique(self):
        totals = [PeriodTotal(i, i % 4, T0 + timedelta(minutes=i % 3)) for i in range(1, 41)]
        ranked = rank_totals(totals)
        assert [r.position for r in ranked] == list(range(1, 41))

    def test_input_order_does_not_matter(self):
        totals = [PeriodTotal(i, (i * 7) % 5, T0 + timedelta(minutes=i % 2)) for i in range(1, 30)]
        shuffled = list(totals)
        random.Random(42).shuffle(shuffled)
        assert rank_totals(totals) == rank_totals(shuffled)

    def test_negative_totals_rank_last(self):
        ranked = rank_totals([PeriodTotal(1, -20, T0), PeriodTotal(2, 0, T0)])
        assert [r.user_id for r in ranked] == [2, 1]
