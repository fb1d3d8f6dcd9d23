"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from budgetquest.db.base import Base
from budgetquest.db.models import User
from budgetquest.gamification.seed import seed_achievements


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database with every table created."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for test assertions."""
    factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db_session: AsyncSession) -> User:
    u = User(email="saver@example.com", name="Sam Saver")
    db_session.add(u)
    await db_session.commit()
    return u


@pytest_asyncio.fixture
async def seeded_db(db_session: AsyncSession) -> AsyncSession:
    """DB with the achievement catalog seeded."""
    await seed_achievements(db_session)
    return db_session


@pytest.fixture
def redis_mock() -> AsyncMock:
    """Redis stand-in that records publish calls."""
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def make_user(db_session: AsyncSession):
    """Factory for extra users (leaderboards, isolation checks)."""

    async def _make(email: str, name: str | None = None) -> User:
        u = User(email=email, name=name)
        db_session.add(u)
        await db_session.commit()
        return u

    return _make
