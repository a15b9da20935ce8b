"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from pathlib import Path
from typing import AsyncGenerator, Optional, Tuple
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)

# Global engine and session maker, owned by the process entry point
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_and_session_maker(
    database_url: Optional[str] = None,
    echo: bool = False
) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """Build an async engine and a session maker bound to it."""
    url = DatabaseConfig.get_database_url(database_url)
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:"):
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        url,
        **DatabaseConfig.get_engine_config(url),
        echo=echo
    )
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )
    return engine, session_maker


async def init_database(database_url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """Initialize database connections and the global session maker."""
    global async_engine, async_session_maker

    logger.info("Initializing database connections")

    async_engine, async_session_maker = create_engine_and_session_maker(
        database_url, echo=settings.debug
    )

    logger.info("Database connections initialized", backend=async_engine.dialect.name)
    return async_session_maker


async def close_database() -> None:
    """Close database connections."""
    global async_engine, async_session_maker

    logger.info("Closing database connections")

    if async_engine:
        await async_engine.dispose()

    async_engine = None
    async_session_maker = None

    logger.info("Database connections closed")


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session with automatic cleanup.

    Usage:
        async with get_async_session() as session:
            # Use session here
            pass
    """
    if not async_session_maker:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


class DatabaseManager:
    """Database manager for administrative operations."""

    @staticmethod
    async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
        """Create all tables in the database."""
        from rwa_indexer.models.base import Base

        engine = engine or async_engine
        if not engine:
            raise RuntimeError("Database not initialized")

        logger.info("Creating database tables")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @staticmethod
    async def drop_tables(engine: Optional[AsyncEngine] = None) -> None:
        """Drop all tables in the database."""
        from rwa_indexer.models.base import Base

        engine = engine or async_engine
        if not engine:
            raise RuntimeError("Database not initialized")

        logger.warning("Dropping all database tables")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    @staticmethod
    async def health_check() -> bool:
        """Check database connectivity."""
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
