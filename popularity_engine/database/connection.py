"""
Database Connection Management

Async database engine and session factory with SQLAlchemy 2.0.
Implements connection setup, health checks, and graceful shutdown.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from sqlalchemy import text

from popularity_engine.config import DatabaseSettings, get_settings
from popularity_engine.database.models import Base

logger = structlog.get_logger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by the SQL storage gateway"""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(
    db_settings: Optional[DatabaseSettings] = None,
    create_tables: bool = False,
) -> AsyncEngine:
    """
    Initialize the database engine.
    
    Args:
        db_settings: Database settings (defaults to application settings)
        create_tables: Create missing tables (development and tests only)
    
    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory
    
    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine
    
    db_settings = db_settings or get_settings().database
    
    # AsyncPG handles its own connection pooling internally
    _engine = create_async_engine(
        db_settings.async_url,
        echo=db_settings.echo,
        pool_pre_ping=True,
        poolclass=NullPool,
    )
    _async_session_factory = create_session_factory(_engine)
    
    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_tables:
                await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database connection established",
            host=db_settings.host,
            database=db_settings.db,
        )
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await close_database()
        raise
    
    return _engine


async def close_database() -> None:
    """Dispose of the engine and drop the session factory."""
    global _engine, _async_session_factory
    
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory bound to the initialized engine."""
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _async_session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session.
    
    Context manager that provides a database session and handles
    commit/rollback/close automatically.
    
    Example:
        async with get_db() as db:
            result = await db.execute(query)
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def check_database_health() -> dict:
    """
    Check database health status.
    
    Returns:
        dict: Health status with latency information
    """
    try:
        start = time.perf_counter()
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000
        
        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }
