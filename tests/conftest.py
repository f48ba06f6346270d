"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from calibr.storage.database import init_async_db
from calibr.storage.repos import MarketDTO, MarketRepository


@pytest.fixture
def sample_market_id() -> str:
    """Sample market ID for testing."""
    return "polymarket:will-it-rain-tomorrow"


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    await init_async_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def ticking_clock() -> Callable[[], datetime]:
    """Clock that advances one minute per call, so chain order is deterministic."""
    start = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)
    calls = {"n": 0}

    def clock() -> datetime:
        calls["n"] += 1
        return start + timedelta(minutes=calls["n"])

    return clock


@pytest.fixture
async def open_market(async_session: AsyncSession, sample_market_id: str) -> MarketDTO:
    """An active market quoted at 50/50."""
    dto = MarketDTO(
        id=sample_market_id,
        question="Will it rain tomorrow?",
        best_yes_price=0.5,
        best_no_price=0.5,
    )
    await MarketRepository(async_session).upsert(dto)
    return dto
