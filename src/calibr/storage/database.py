"""Async engine and transactional sessions for the Calibr store.

PostgreSQL (asyncpg) is the production target; SQLite (aiosqlite) backs local
runs and the test suite. Repositories never commit, so the session scope
handed out here is the unit of work.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from calibr.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from calibr.config import DatabaseSettings

logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def normalize_async_database_url(database_url: str) -> str:
    """Rewrite a sync driver URL (``postgresql://``, ``sqlite://``) to its async driver."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            logger.warning(
                "DATABASE_URL uses sync driver %r; connecting with %r instead",
                sync_prefix,
                async_prefix,
            )
            return async_prefix + database_url[len(sync_prefix) :]
    return database_url


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Build the async engine for ``database_url``.

    SQLite gets foreign-key enforcement switched on per connection and loses
    the pool sizing options its pools reject.
    """
    url = normalize_async_database_url(database_url)
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
    engine = create_async_engine(url, **kwargs)
    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Objects stay readable after commit; DTOs are built from them afterwards.
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create every table directly (dev and tests; Alembic owns production)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")


class DatabaseManager:
    """Lazily built engine plus commit-or-rollback session scopes.

    Example:
        ```python
        db = DatabaseManager.from_settings(settings.database)
        async with db.get_async_session() as session:
            service = ForecastService(session)
            await service.create_forecast(user_id, payload)
        await db.dispose_async()
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self._engine_options: dict[str, Any] = {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "echo": echo,
        }
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> DatabaseManager:
        return cls(settings.url, pool_size=settings.pool_size, echo=settings.echo)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_db_engine(self.database_url, **self._engine_options)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._sessions is None:
            self._sessions = create_async_session_factory(self.engine)
        return self._sessions

    @asynccontextmanager
    async def get_async_session(self) -> AsyncIterator[AsyncSession]:
        """One unit of work: commit when the block succeeds, roll back when it raises."""
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            await session.commit()

    async def init_schema_async(self) -> None:
        await init_async_db(self.engine)

    async def dispose_async(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database engine disposed")
