"""
Database Session Management
PaperTrade Accounting Engine

Provides async database connection with:
- Connection pooling (PostgreSQL via asyncpg)
- In-memory / file SQLite via aiosqlite for tests and local runs
- Context manager support
- Health check capabilities
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from papertrade.core.config import DatabaseSettings, get_settings
from papertrade.db.base import Base


def create_engine_from_settings(config: DatabaseSettings) -> AsyncEngine:
    """Create the async engine, applying pool settings where the driver supports them."""
    if config.is_sqlite:
        # A single shared connection keeps ":memory:" databases alive across sessions
        return create_async_engine(
            config.url,
            echo=config.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=True,  # Verify connections before use
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class DatabaseService:
    """
    Owns the engine and session factory.

    Constructed explicitly and handed to the services that need it; there is
    no module-level engine.
    """

    def __init__(self, config: Optional[DatabaseSettings] = None):
        self.config = config or get_settings().db
        self.engine = create_engine_from_settings(self.config)
        self.session_factory = create_session_factory(self.engine)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for database sessions.

        Usage:
            async with database.session() as db:
                result = await db.execute(query)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables.

        Note: In production, schema is managed by migrations.
        """
        # Import models module to register all models with Base
        from papertrade.db import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    async def health_check(self) -> bool:
        """
        Check database connectivity.

        Returns True if database is accessible.
        """
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
                return True
        except Exception as e:
            logger.warning(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close all database connections."""
        await self.engine.dispose()
