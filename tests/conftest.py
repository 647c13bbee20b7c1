"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tests.factories import T0, fresh_tokens
from trophybot.config import Settings
from trophybot.database import create_engine, create_session_factory
from trophybot.db import models  # noqa: F401
from trophybot.db.base import Base
from trophybot.db.models import User
from trophybot.tracking.repository import TrophyRepository


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, database_url="sqlite+aiosqlite://", discord_token="test-token")


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite database with the full schema, one file per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'trophybot.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> TrophyRepository:
    return TrophyRepository(session_factory)


@pytest_asyncio.fixture
async def linked_user(repository: TrophyRepository) -> User:
    """A linked user with long-lived tokens and the watermark at T0 - 1 day."""
    await repository.link_user("100", "Kratos", "acct-100", fresh_tokens(T0 + timedelta(days=365)))
    await repository.advance_watermark("100", T0 - timedelta(days=1))
    user = await repository.get_user("100")
    assert user is not None
    return user
