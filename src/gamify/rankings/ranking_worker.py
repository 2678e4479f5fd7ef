"""Ranking arq worker: periodic bucket rebuilds and period close-out.

Schedule:
- Open periods (weekly, monthly, all-time): every 5 minutes, plus a
  debounced refresh enqueued by the orchestrator after point awards
- Close-out of the week / month that just ended: checked hourly, run
  exactly once per period (Redis marker)

Import path for arq CLI: arq gamify.rankings.ranking_worker.WorkerSettings
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings
from sqlalchemy.ext.asyncio import AsyncSession

from gamify.config import get_settings
from gamify.database import close_db, get_session, init_db
from gamify.locks import BucketGuard
from gamify.rankings.period_utils import RankingType, previous_period_bounds
from gamify.rankings.ranking_service import RankingAggregator
from gamify.redis_client import create_redis

logger = logging.getLogger(__name__)

REFRESH_JOB = "refresh_open_rankings"
CLOSED_MARKER_TTL = 86400 * 400


def closed_marker_key(ranking_type: RankingType, period_start: datetime) -> str:
    return f"ranking:closed:{RankingType(ranking_type).value}:{period_start.isoformat()}"


async def _get_db_session() -> AsyncSession:
    """Get a database session for the worker."""
    async for session in get_session():
        return session
    raise RuntimeError("Failed to get database session")


class ArqRankingScheduler:
    """Enqueues a debounced open-period refresh on the arq queue.

    Every award inside the same debounce window maps to one job id, so
    a burst of events results in a single recompute.
    """

    def __init__(self, pool: object, delay_seconds: int = 60) -> None:
        self._pool = pool
        self._delay_seconds = delay_seconds

    async def request_refresh(self, now: datetime | None = None) -> bool:
        if now is None:
            now = datetime.now(timezone.utc)
        window = int(now.timestamp()) // max(1, self._delay_seconds)
        job = await self._pool.enqueue_job(  # type: ignore[attr-defined]
            REFRESH_JOB,
            _job_id=f"{REFRESH_JOB}:{window}",
            _defer_by=self._delay_seconds,
        )
        return job is not None


async def ranking_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize Redis + DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)

    redis_client = create_redis(settings.redis_url, max_connections=10)
    ctx["redis"] = redis_client
    ctx["aggregator"] = RankingAggregator(
        BucketGuard(redis_client, ttl_seconds=settings.ranking_lock_ttl_seconds),
        tz=settings.tz,
    )
    logger.info("Ranking worker started")


async def ranking_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Ranking worker shut down")


async def refresh_open_rankings(ctx: dict) -> int:  # type: ignore[type-arg]
    """Rebuild every bucket of the periods currently in progress.

    Buckets another worker is recomputing are skipped until the next tick.
    """
    aggregator: RankingAggregator = ctx["aggregator"]
    now = ctx.get("now") or datetime.now(timezone.utc)
    db = await _get_db_session()
    refreshed = 0
    try:
        for ranking_type in RankingType:
            buckets = await aggregator.recompute_period(db, ranking_type, now)
            refreshed += len(buckets)
        return refreshed
    finally:
        await db.close()


async def close_previous_periods(ctx: dict) -> int:  # type: ignore[type-arg]
    """Final recompute of the week and month that just ended, once per period."""
    aggregator: RankingAggregator = ctx["aggregator"]
    redis_client: aioredis.Redis = ctx["redis"]
    now = ctx.get("now") or datetime.now(timezone.utc)
    db = await _get_db_session()
    closed = 0
    try:
        for ranking_type in (RankingType.WEEKLY, RankingType.MONTHLY):
            bounds = previous_period_bounds(ranking_type, now, aggregator.tz)
            if bounds is None:
                continue
            start, _ = bounds
            marker = closed_marker_key(ranking_type, start)
            if not await redis_client.set(marker, now.isoformat(), nx=True, ex=CLOSED_MARKER_TTL):
                continue
            try:
                await aggregator.recompute_period(db, ranking_type, start, skip_busy=False)
            except Exception:
                # Let the next tick retry the close-out.
                await redis_client.delete(marker)
                logger.exception("Failed to close %s period starting %s", ranking_type.value, start)
                continue
            closed += 1
            logger.info("Closed %s ranking period starting %s", ranking_type.value, start.isoformat())
        return closed
    finally:
        await db.close()


class WorkerSettings:
    """arq worker settings for ranking aggregation."""

    functions = [refresh_open_rankings, close_previous_periods]
    cron_jobs = [
        cron(refresh_open_rankings, minute=set(range(0, 60, 5))),
        cron(close_previous_periods, minute=1),
    ]
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    on_startup = ranking_startup
    on_shutdown = ranking_shutdown
    max_jobs = 2
    job_timeout = 300  # 5 minutes max per recompute pass
    allow_abort_jobs = True
