"""Tests for the serializable unit of work and conflict mapping."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from orgquota.app.db.models import Organization
from orgquota.app.exceptions import TransactionConflict
from orgquota.app.services.transaction import is_conflict_error, serializable_transaction


class _DriverError(Exception):
    def __init__(self, message: str = "", pgcode=None, sqlstate=None):
        super().__init__(message)
        self.pgcode = pgcode
        self.sqlstate = sqlstate


def _driver_error(message: str = "", **codes) -> DBAPIError:
    return DBAPIError("UPDATE quota_lots ...", {}, _DriverError(message, **codes))


class TestIsConflictError:

    @pytest.mark.parametrize("code", ["40001", "40P01"])
    def test_postgres_serialization_and_deadlock(self, code):
        assert is_conflict_error(_driver_error(pgcode=code)) is True
        assert is_conflict_error(_driver_error(pgcode=None, sqlstate=code)) is True

    def test_sqlite_locked(self):
        assert is_conflict_error(_driver_error("database is locked")) is True

    def test_other_errors(self):
        assert is_conflict_error(_driver_error(pgcode="23505")) is False
        assert is_conflict_error(_driver_error("no such table: quota_lots")) is False


class TestSerializableTransaction:

    @pytest.mark.asyncio
    async def test_commits_on_success(self, session_maker):
        async with serializable_transaction(session_maker) as session:
            session.add(Organization(name="Committed"))

        async with session_maker() as session:
            count = await session.execute(select(func.count(Organization.id)))
            assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_lock_error_becomes_conflict_and_rolls_back(self, session_maker):
        with pytest.raises(TransactionConflict):
            async with serializable_transaction(session_maker) as session:
                session.add(Organization(name="Rolled back"))
                await session.flush()
                raise OperationalError("COMMIT", {}, Exception("database is locked"))

        async with session_maker() as session:
            count = await session.execute(select(func.count(Organization.id)))
            assert count.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_other_driver_errors_propagate(self, session_maker):
        with pytest.raises(IntegrityError):
            async with serializable_transaction(session_maker):
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

    @pytest.mark.asyncio
    async def test_application_errors_propagate(self, session_maker):
        with pytest.raises(ValueError):
            async with serializable_transaction(session_maker) as session:
                session.add(Organization(name="Rolled back"))
                raise ValueError("boom")

        async with session_maker() as session:
            count = await session.execute(select(func.count(Organization.id)))
            assert count.scalar_one() == 0
