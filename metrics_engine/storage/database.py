"""
Metrics Engine — Database Manager

Handles the async database connection, schema initialization, and session
management for the metric store.
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .db_models import Base


class EngineDatabase:
    """
    Async database manager for definitions, configurations and snapshots.

    Provides:
    - Automatic schema creation
    - Async session management
    - Graceful shutdown

    The same engine is handed to the query data source, so query templates
    run against the store's database unless a separate engine is supplied.
    """

    def __init__(self, url: str = "sqlite+aiosqlite:///./data/metrics_engine.db", echo: bool = False):
        """
        Initialize the database manager.

        Args:
            url: SQLAlchemy async database URL
            echo: Log every SQL statement
        """
        self.url = make_url(url)

        connect_args = {}
        if self.url.get_backend_name() == "sqlite":
            connect_args["check_same_thread"] = False  # Required for SQLite

        self.engine: AsyncEngine = create_async_engine(
            self.url,
            echo=echo,
            connect_args=connect_args,
        )

        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        self._initialized = False
        self._initialization_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """
        Initialize database schema.

        Creates all tables if they don't exist.
        Safe to call multiple times (idempotent).
        """
        async with self._initialization_lock:
            if self._initialized:
                return

            database = self.url.database
            if self.url.get_backend_name() == "sqlite" and database and database != ":memory:":
                Path(database).resolve().parent.mkdir(parents=True, exist_ok=True)

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self._initialized = True

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session (context manager).

        Usage:
            async with db.get_session() as session:
                await session.execute(...)
                await session.commit()
        """
        if not self._initialized:
            await self.initialize()

        async with self.session_factory() as session:
            yield session

    async def close(self) -> None:
        """Close database connections gracefully."""
        await self.engine.dispose()
        self._initialized = False
