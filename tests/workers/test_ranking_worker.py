"""Ranking worker task tests: open-period refresh, close-out, debounced scheduling."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from gamify.locks import BucketGuard
from gamify.progression.points_service import apply_points
from gamify.rankings import ranking_worker
from gamify.rankings.period_utils import RankingType, bucket_key, period_bounds
from gamify.rankings.ranking_service import RankingAggregator, get_ranking
from gamify.rankings.ranking_worker import (
    REFRESH_JOB,
    ArqRankingScheduler,
    close_previous_periods,
    closed_marker_key,
    refresh_open_rankings,
)

pytestmark = pytest.mark.asyncio

UTC = timezone.utc
# Monday 00:30: the week of Jan 29 and the month of January have just ended.
NOW = datetime(2024, 2, 5, 0, 30, tzinfo=UTC)


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def worker_session(monkeypatch, session_factory):
    async def _session():
        return session_factory()

    monkeypatch.setattr(ranking_worker, "_get_db_session", _session)


class TestCloseOut:
    async def test_closes_each_period_once(self, worker_session, db_session, levels, make_user):
        uid = (await make_user()).id
        await apply_points(db_session, levels, uid, 40, "task_completed", occurred_at=datetime(2024, 1, 30, tzinfo=UTC))
        await db_session.commit()
        redis = FakeRedis()
        ctx = {"aggregator": RankingAggregator(), "redis": redis, "now": NOW}

        assert await close_previous_periods(ctx) == 2
        assert await close_previous_periods(ctx) == 0

        week_start = datetime(2024, 1, 29, tzinfo=UTC)
        month_start = datetime(2024, 1, 1, tzinfo=UTC)
        assert closed_marker_key(RankingType.WEEKLY, week_start) in redis.store
        assert closed_marker_key(RankingType.MONTHLY, month_start) in redis.store

        weekly = await get_ranking(db_session, RankingType.WEEKLY, week_start)
        assert [(r.user_id, r.points) for r in weekly] == [(uid, 40)]

    async def test_failed_close_out_releases_marker(self, worker_session):
        aggregator = MagicMock()
        aggregator.tz = UTC
        aggregator.recompute_period = AsyncMock(side_effect=RuntimeError("db gone"))
        redis = FakeRedis()

        closed = await close_previous_periods({"aggregator": aggregator, "redis": redis, "now": NOW})

        assert closed == 0
        assert redis.store == {}

    async def test_busy_bucket_postpones_close_out(self, worker_session):
        guard = BucketGuard()
        redis = FakeRedis()
        week_start = datetime(2024, 1, 29, tzinfo=UTC)

        async with guard.hold(bucket_key(RankingType.WEEKLY, week_start)):
            closed = await close_previous_periods(
                {"aggregator": RankingAggregator(guard), "redis": redis, "now": NOW},
            )

        assert closed == 1
        assert closed_marker_key(RankingType.WEEKLY, week_start) not in redis.store
        assert closed_marker_key(RankingType.MONTHLY, datetime(2024, 1, 1, tzinfo=UTC)) in redis.store


class TestRefresh:
    async def test_refreshes_every_open_period(self, worker_session, make_user):
        await make_user(department="eng")

        # weekly, monthly and all-time; each with a global and an "eng" bucket
        assert await refresh_open_rankings({"aggregator": RankingAggregator(), "now": NOW}) == 6

    async def test_busy_bucket_does_not_block_the_others(self, worker_session, make_user):
        await make_user(department="eng")
        guard = BucketGuard()
        week_start, _ = period_bounds(RankingType.WEEKLY, NOW)

        async with guard.hold(bucket_key(RankingType.WEEKLY, week_start)):
            refreshed = await refresh_open_rankings({"aggregator": RankingAggregator(guard), "now": NOW})

        # only the global weekly bucket is skipped
        assert refreshed == 5


class TestScheduler:
    async def test_requests_in_one_window_share_a_job_id(self):
        pool = AsyncMock()
        pool.enqueue_job = AsyncMock(return_value=object())
        scheduler = ArqRankingScheduler(pool, delay_seconds=60)

        await scheduler.request_refresh(datetime(2024, 1, 1, 0, 0, 5, tzinfo=UTC))
        await scheduler.request_refresh(datetime(2024, 1, 1, 0, 0, 55, tzinfo=UTC))
        await scheduler.request_refresh(datetime(2024, 1, 1, 0, 1, 5, tzinfo=UTC))

        job_ids = [c.kwargs["_job_id"] for c in pool.enqueue_job.await_args_list]
        assert job_ids[0] == job_ids[1] != job_ids[2]
        assert all(c.args == (REFRESH_JOB,) for c in pool.enqueue_job.await_args_list)
        assert pool.enqueue_job.await_args.kwargs["_defer_by"] == 60

    async def test_already_queued(self):
        pool = AsyncMock()
        pool.enqueue_job = AsyncMock(return_value=None)

        assert await ArqRankingScheduler(pool).request_refresh() is False
