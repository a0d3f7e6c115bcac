"""Async database session management for SQLAlchemy 2.0+.

This module provides async database operations using PostgreSQL with asyncpg
in production and SQLite with aiosqlite for tests and local runs.

Allocation and revocation run in SERIALIZABLE transactions. PostgreSQL
honours the isolation level natively; for SQLite the engine emits
``BEGIN IMMEDIATE`` for serializable transactions so concurrent writers
queue on the database write lock instead of reading stale totals.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from typing_extensions import Annotated

from orgquota.app.core.config import settings
from orgquota.app.core.logging import get_logger

logger = get_logger(__name__)

# Global session maker instance
_AsyncSessionLocal = None


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    """Take over transaction begin from the pysqlite driver.

    The driver otherwise defers BEGIN until the first DML statement, which
    would let the sufficiency SELECT run outside the transaction.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        if conn.get_execution_options().get("isolation_level") == "SERIALIZABLE":
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def build_async_engine(url: str) -> AsyncEngine:
    """Create an async engine for ``url`` without caching it.

    Args:
        url: SQLAlchemy database URL (postgresql+asyncpg or sqlite+aiosqlite)

    Returns:
        AsyncEngine instance
    """
    if "sqlite" in url.lower():
        engine = create_async_engine(
            url,
            echo=False,
            connect_args={"timeout": settings.db_sqlite_busy_timeout},
        )
        _install_sqlite_transaction_hooks(engine)
        logger.info("Created SQLite async engine")
        return engine

    engine = create_async_engine(
        url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=settings.db_pool_pre_ping,
        connect_args={"command_timeout": settings.db_command_timeout},
    )
    logger.info(
        f"Created PostgreSQL async engine (pool_size={settings.db_pool_size}, "
        f"max_overflow={settings.db_max_overflow}, "
        f"pool_timeout={settings.db_pool_timeout}s)"
    )
    return engine


@lru_cache(maxsize=1)
def get_async_engine(database_url: str | None = None) -> AsyncEngine:
    """Get or create the async database engine (singleton)."""
    return build_async_engine(database_url or settings.database_url)


def make_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the async session maker bound to the global engine."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = make_session_maker(get_async_engine())
    return _AsyncSessionLocal


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Async context manager for database sessions.

    Usage:
        async with get_async_session() as session:
            result = await session.execute(...)
    """
    session_maker = get_async_session_maker()
    async with session_maker() as session:
        yield session


async def close_async_engine() -> None:
    """Close the async engine.

    Call this on application shutdown to release database connections.
    """
    global _AsyncSessionLocal

    engine = get_async_engine()
    try:
        await engine.dispose()
        logger.debug("Async engine disposed successfully")
    except RuntimeError:
        # Event loop mismatch: the connections are already gone
        logger.debug("Engine dispose encountered RuntimeError (event loop mismatch)")

    get_async_engine.cache_clear()
    _AsyncSessionLocal = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read-committed database sessions.

    Used by read-only routes (summary, ledger history). Writes go through
    the allocation engine, which opens its own serializable transactions.

    Transaction handling:
    - Successful requests: changes are automatically committed
    - Exceptions: changes are rolled back, exception is re-raised
    """
    async with get_async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Type aliases for FastAPI dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_db)]
