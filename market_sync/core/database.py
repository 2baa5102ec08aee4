"""
Database connection management for PostgreSQL (async for the service, sync for scripts).
"""
import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from market_sync.core.config import get_settings
from market_sync.core.exceptions import DatabaseError

settings = get_settings()
logger = logging.getLogger(__name__)

# PostgreSQL async engine
pg_engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.DEBUG,
)

AsyncSessionLocal = async_sessionmaker(
    pg_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get async PostgreSQL database session (FastAPI dependency)."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Get async PostgreSQL database session as context manager."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def execute_with_deadlock_retry(
    operation: Callable[[], Awaitable[Any]],
    max_retries: int = 3,
    base_delay: float = 0.1,
) -> Any:
    """
    Execute a database operation with automatic retry on deadlock.

    PostgreSQL codes: 40001 (serialization_failure), 40P01 (deadlock_detected).

    Args:
        operation: Async callable to execute
        max_retries: Maximum number of attempts
        base_delay: Base delay in seconds for exponential backoff

    Returns:
        Result of the operation

    Raises:
        DatabaseError: Still deadlocked after max_retries attempts
    """
    for attempt in range(max_retries):
        try:
            return await operation()
        except OperationalError as e:
            error_code = getattr(e.orig, "pgcode", None) or getattr(e.orig, "sqlstate", None)
            is_deadlock = (
                error_code in ("40001", "40P01")
                or "deadlock" in str(e).lower()
                or "serialization" in str(e).lower()
            )

            if not is_deadlock:
                raise
            if attempt == max_retries - 1:
                raise DatabaseError(
                    detail=f"Deadlock persisted after {max_retries} attempts",
                    operation=getattr(operation, "__name__", None),
                ) from e

            delay = base_delay * (2 ** attempt) + random.uniform(0, 0.1)
            logger.warning(
                f"Deadlock detected (attempt {attempt + 1}/{max_retries}). "
                f"Retrying after {delay:.2f}s..."
            )
            await asyncio.sleep(delay)


# Synchronous PostgreSQL engine (migration script)
_sync_pg_engine: Optional[Engine] = None


def get_sync_db_engine() -> Engine:
    """Get synchronous PostgreSQL engine (psycopg2)."""
    global _sync_pg_engine
    if _sync_pg_engine is None:
        sync_url = settings.DATABASE_URL.replace("postgresql+asyncpg://", "postgresql+psycopg2://")
        _sync_pg_engine = create_engine(
            sync_url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=settings.DEBUG,
        )
        logger.info("Synchronous PostgreSQL engine created (psycopg2)")
    return _sync_pg_engine


def create_isolated_async_engine() -> AsyncEngine:
    """
    Create a new isolated async engine for use in Celery tasks.
    The engine is bound to the event loop that first uses it.
    """
    return create_async_engine(
        settings.DATABASE_URL,
        pool_size=2,
        max_overflow=2,
        pool_pre_ping=True,
        pool_recycle=3600,
        echo=settings.DEBUG,
    )


@asynccontextmanager
async def get_isolated_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an isolated async database session for use in Celery tasks.

    Each call to asyncio.run() gets a fresh engine, which prevents
    "Task attached to a different loop" errors from pooled connections.
    """
    engine = create_isolated_async_engine()
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )

    try:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
    finally:
        # Must happen before the event loop closes
        await engine.dispose(close=True)
