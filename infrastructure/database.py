"""
Database Infrastructure & Connection Management
================================================
Async SQLAlchemy engine backing the SQL document store:
- Connection pooling (asyncpg in production, aiosqlite locally)
- Schema bootstrap on startup
- Session and transaction context managers

Architecture: Repository Pattern + Unit of Work
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from config.settings import DatabaseSettings, get_settings
from core.exceptions import DatabaseConnectionError
from infrastructure.schema import metadata


class DatabaseManager:
    """
    Engine and session lifecycle management.

    ``initialize()`` must run at startup; ``close()`` at shutdown.
    """

    def __init__(self, database_settings: Optional[DatabaseSettings] = None):
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._is_initialized: bool = False
        self._settings = database_settings or get_settings().database

    def _create_engine(self) -> AsyncEngine:
        if self._settings.is_sqlite:
            # In-memory SQLite must share one connection across sessions
            return create_async_engine(
                self._settings.async_url,
                echo=self._settings.echo_sql,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(
            self._settings.async_url,
            echo=self._settings.echo_sql,
            pool_size=self._settings.pool_size,
            max_overflow=self._settings.max_overflow,
            pool_timeout=self._settings.pool_timeout,
            pool_recycle=self._settings.pool_recycle,
            pool_pre_ping=True,
        )

    async def initialize(self) -> None:
        """Create the engine, bootstrap the schema and verify connectivity."""
        if self._is_initialized:
            logger.warning("Database already initialized")
            return

        try:
            self._engine = self._create_engine()
            self._session_factory = async_sessionmaker(
                self._engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            async with self._engine.begin() as conn:
                await conn.run_sync(metadata.create_all)

            await self.health_check()

            self._is_initialized = True
            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise DatabaseConnectionError(
                "Failed to initialize database connection",
                context={"host": self._settings.host, "database": self._settings.database},
                cause=e,
            ) from e

    async def close(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            self._is_initialized = False
            logger.info("Database connections closed")

    async def health_check(self) -> bool:
        """
        Verify database connectivity.

        Returns:
            True if healthy, raises otherwise
        """
        if not self._engine:
            raise DatabaseConnectionError("Database engine not initialized")

        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(text("SELECT 1"))
                return result.scalar() == 1
        except (OperationalError, DBAPIError) as e:
            logger.error(f"Database health check failed: {e}")
            raise DatabaseConnectionError("Database health check failed", cause=e) from e

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Provide an async session, committed on success and rolled back on error.

        Usage:
            async with db_manager.session() as session:
                result = await session.execute(query)
        """
        if not self._session_factory:
            raise DatabaseConnectionError("Database not initialized")

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Session error, rolled back: {e}")
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Transactional scope: every statement commits together or not at all."""
        async with self.session() as session:
            yield session

    @property
    def engine(self) -> AsyncEngine:
        if not self._engine:
            raise DatabaseConnectionError("Database engine not initialized")
        return self._engine
