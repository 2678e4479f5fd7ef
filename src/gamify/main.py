"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI

from gamify.config import get_settings
from gamify.database import close_db, get_session_factory, init_db
from gamify.health.router import router as health_router
from gamify.locks import BucketGuard
from gamify.middleware import setup_middleware
from gamify.progression.level_table import LevelTable
from gamify.progression.orchestrator import ProgressionOrchestrator
from gamify.progression.router import router as progression_router
from gamify.progression.seed import load_level_table, seed_levels
from gamify.rankings.ranking_service import RankingAggregator
from gamify.rankings.ranking_worker import ArqRankingScheduler
from gamify.rankings.router import router as rankings_router
from gamify.redis_client import close_redis, get_redis, init_redis

logger = logging.getLogger(__name__)


async def _load_levels() -> LevelTable:
    """Seed level definitions (idempotent) and load the table."""
    async with get_session_factory()() as db:
        try:
            await seed_levels(db)
        except Exception:
            await db.rollback()
            logger.warning("Level seeding failed (tables may not exist yet)", exc_info=True)
        try:
            return await load_level_table(db)
        except Exception:
            logger.warning("Level table unavailable, falling back to level 1", exc_info=True)
            return LevelTable([])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    redis = get_redis()

    levels = await _load_levels()

    arq_pool = None
    try:
        arq_pool = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    except Exception:
        logger.warning("arq pool unavailable, ranking refresh falls back to cron", exc_info=True)

    app.state.orchestrator = ProgressionOrchestrator(
        levels,
        redis=redis,
        scheduler=(
            ArqRankingScheduler(arq_pool, settings.ranking_refresh_delay_seconds)
            if arq_pool is not None else None
        ),
        tz=settings.tz,
        notification_channel=settings.notification_channel,
        evolution_interval=settings.companion_evolution_interval,
        companion_default_type=settings.companion_default_type,
        companion_default_name=settings.companion_default_name,
    )
    app.state.aggregator = RankingAggregator(
        BucketGuard(redis, ttl_seconds=settings.ranking_lock_ttl_seconds),
        tz=settings.tz,
    )

    yield

    if arq_pool is not None:
        await arq_pool.aclose()
    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Gamify Progression API",
        description="Points, levels, streaks, companions and rankings for the collaboration platform",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(progression_router)
    app.include_router(rankings_router)

    return app


app = create_app()
