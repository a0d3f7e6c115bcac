"""Database initialization utilities."""

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncEngine

from orgquota.app.core.logging import get_logger
from orgquota.app.db.async_session import get_async_engine, make_session_maker
from orgquota.app.db.base import Base
from orgquota.app.db.models import TestKind, TestType

logger = get_logger(__name__)

# Master test types shipped with a fresh database. Existing rows are kept
# as-is so labels edited in production survive restarts.
DEFAULT_TEST_TYPES: dict[TestKind, dict[int, str]] = {
    TestKind.IELTS: {
        1: "Complete",
        2: "Listening",
        3: "Reading",
        4: "Writing",
        5: "Speaking",
    },
    TestKind.TOEFL: {
        1: "Complete",
        2: "Listening",
        3: "Structure",
        4: "Reading",
    },
}


async def drop_all_tables(engine: AsyncEngine | None = None) -> None:
    """Drop all database tables.

    WARNING: This will delete all data. Use only in development.
    """
    if engine is None:
        engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def create_all_tables(engine: AsyncEngine | None = None) -> None:
    """Create all database tables."""
    if engine is None:
        engine = get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_test_types(
    engine: AsyncEngine | None = None,
    test_types: dict[TestKind, dict[int, str]] | None = None,
) -> int:
    """Insert missing master test types.

    Returns:
        Number of rows inserted
    """
    if engine is None:
        engine = get_async_engine()
    test_types = DEFAULT_TEST_TYPES if test_types is None else test_types

    session_maker = make_session_maker(engine)
    inserted = 0
    async with session_maker() as session:
        async with session.begin():
            rows = (await session.execute(select(TestType.test_kind, TestType.id))).all()
            existing = {(kind, type_id) for kind, type_id in rows}
            for kind, labels in test_types.items():
                for type_id, label in labels.items():
                    if (kind, type_id) in existing:
                        continue
                    session.add(TestType(test_kind=kind, id=type_id, label=label))
                    inserted += 1
    if inserted:
        logger.info(f"Seeded {inserted} master test types")
    return inserted


async def init_database(drop_first: bool = False) -> None:
    """Initialize database with all tables and the master test types.

    Args:
        drop_first: If True, drop existing tables before creating.
    """
    if drop_first:
        await drop_all_tables()
    await create_all_tables()
    await seed_test_types()


async def verify_connection() -> bool:
    """Verify database connection is working.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        engine = get_async_engine()
        async with engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
