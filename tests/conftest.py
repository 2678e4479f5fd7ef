"""Shared test fixtures.

Store-backed tests run against a throwaway SQLite file through
aiosqlite; the schema comes straight from the ORM metadata.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gamify.database import get_session
from gamify.db import models  # noqa: F401
from gamify.db.base import Base
from gamify.db.models import User
from gamify.main import create_app
from gamify.progression.level_table import LevelDefinition, LevelTable
from gamify.progression.orchestrator import ProgressionOrchestrator
from gamify.rankings.ranking_service import RankingAggregator

UTC = timezone.utc


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gamify-test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """A session for service calls and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def levels() -> LevelTable:
    """Small level table: 1 @ 0, 2 @ 100, 3 @ 250, 4 @ 500."""
    return LevelTable([
        LevelDefinition(1, 0, "Newcomer", "#9CA3AF"),
        LevelDefinition(2, 100, "Apprentice", "#60A5FA", ("Custom avatar frame",)),
        LevelDefinition(3, 250, "Contributor", "#34D399"),
        LevelDefinition(4, 500, "Achiever", "#A3E635"),
    ])


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory creating committed users."""
    counter = {"n": 0}

    async def _make(name: str | None = None, department: str | None = None, role: str = "user") -> User:
        counter["n"] += 1
        user = User(
            name=name or f"user-{counter['n']}",
            email=f"user{counter['n']}@example.com",
            department=department,
            role=role,
            created_at=datetime.now(UTC),
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    levels: LevelTable,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database.

    ASGITransport does not run the lifespan, so the engine services are
    placed on ``app.state`` directly.
    """
    app = create_app()

    async def _test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _test_session
    app.state.orchestrator = ProgressionOrchestrator(levels)
    app.state.aggregator = RankingAggregator()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
