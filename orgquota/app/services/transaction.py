"""Serializable unit of work for ledger mutations."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgquota.app.core.logging import get_logger
from orgquota.app.exceptions import TransactionConflict

logger = get_logger(__name__)

# serialization_failure, deadlock_detected
_CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})
_SQLITE_CONFLICT_MESSAGES = ("database is locked", "database table is locked")


def is_conflict_error(exc: DBAPIError) -> bool:
    """Check whether a driver error is a concurrent-write abort."""
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _CONFLICT_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(m in message for m in _SQLITE_CONFLICT_MESSAGES)


@asynccontextmanager
async def serializable_transaction(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Open a session running one SERIALIZABLE transaction.

    Commits when the block exits normally and rolls back on any
    exception. Store conflicts (including those raised at commit) are
    re-raised as TransactionConflict; nothing of the block is persisted.

    Usage:
        async with serializable_transaction(session_maker) as session:
            ...
    """
    async with session_maker() as session:
        try:
            async with session.begin():
                # Must be the first statement of the transaction
                await session.connection(
                    execution_options={"isolation_level": "SERIALIZABLE"}
                )
                yield session
        except DBAPIError as exc:
            if is_conflict_error(exc):
                logger.warning(f"Transaction aborted by concurrent update: {exc.orig}")
                raise TransactionConflict() from exc
            raise
