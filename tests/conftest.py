"""Shared fixtures: a real SQLite database per test and small row factories."""

from datetime import datetime
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from orgquota.app.core.config import settings
from orgquota.app.db.async_session import build_async_engine, make_session_maker
from orgquota.app.db.crud.lot import record_lot_purchase
from orgquota.app.db.init_db import create_all_tables, seed_test_types
from orgquota.app.db.models import (
    LedgerEntry,
    MemberQuotaBalance,
    Organization,
    QuotaLot,
    TestKind,
    User,
)
from orgquota.app.services.allocation import AllocationEngine, reset_allocation_engine
from orgquota.app.services.catalog import TestTypeCatalog, reset_test_type_catalog
from orgquota.app.services.onboarding import MemberOnboardingService, reset_onboarding_service


def _sqlite_url_from_absolute_path(path: str) -> str:
    # SQLAlchemy expects 4 slashes for absolute paths.
    return f"sqlite+aiosqlite:////{path.lstrip('/')}"


@pytest.fixture(autouse=True)
def _isolated_singletons(monkeypatch):
    monkeypatch.setattr(settings, "allocation_retry_base_delay", 0.0)
    reset_test_type_catalog()
    reset_allocation_engine()
    reset_onboarding_service()
    yield
    reset_test_type_catalog()
    reset_allocation_engine()
    reset_onboarding_service()


@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_async_engine(_sqlite_url_from_absolute_path(str(tmp_path / "orgquota_test.db")))
    await create_all_tables(engine)
    await seed_test_types(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_maker(db_engine)


@pytest_asyncio.fixture
async def catalog(session_maker) -> TestTypeCatalog:
    catalog = TestTypeCatalog()
    async with session_maker() as session:
        await catalog.load(session)
    return catalog


@pytest.fixture
def engine(session_maker, catalog) -> AllocationEngine:
    return AllocationEngine(session_maker, catalog=catalog)


@pytest.fixture
def onboarding(session_maker, catalog) -> MemberOnboardingService:
    return MemberOnboardingService(session_maker, catalog=catalog)


@pytest.fixture
def make_org(session_maker):
    async def _make_org(name: str = "Acme Language School") -> int:
        async with session_maker() as session:
            async with session.begin():
                org = Organization(name=name)
                session.add(org)
                await session.flush()
                return org.id

    return _make_org


@pytest.fixture
def make_user(session_maker):
    counter = {"n": 0}

    async def _make_user(name: Optional[str] = None) -> int:
        counter["n"] += 1
        n = counter["n"]
        async with session_maker() as session:
            async with session.begin():
                user = User(
                    name=name or f"Student {n}",
                    email=f"student{n}@example.com",
                    username=f"student{n}",
                )
                session.add(user)
                await session.flush()
                return user.id

    return _make_user


@pytest.fixture
def add_lot(session_maker):
    async def _add_lot(
        org_id: int,
        test_kind: TestKind,
        test_type_id: int,
        quantity: int,
        expires_at: Optional[datetime] = None,
    ) -> int:
        async with session_maker() as session:
            async with session.begin():
                lot = await record_lot_purchase(
                    session, org_id, test_kind, test_type_id, quantity, expires_at=expires_at
                )
                return lot.id

    return _add_lot


class StoreReader:
    """Reads the three stores directly, outside the engine."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    async def lots(self, org_id: int, test_kind: TestKind, test_type_id: int) -> list[QuotaLot]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(QuotaLot)
                .where(
                    QuotaLot.org_id == org_id,
                    QuotaLot.test_kind == test_kind,
                    QuotaLot.test_type_id == test_type_id,
                )
                .order_by(QuotaLot.id)
            )
            return list(result.scalars().all())

    async def org_remaining(self, org_id: int, test_kind: TestKind, test_type_id: int) -> int:
        lots = await self.lots(org_id, test_kind, test_type_id)
        return sum(lot.remaining_quantity for lot in lots if lot.active)

    async def balance(self, user_id: int, test_kind: TestKind, test_type_id: int) -> Optional[int]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(MemberQuotaBalance.quantity).where(
                    MemberQuotaBalance.user_id == user_id,
                    MemberQuotaBalance.test_kind == test_kind,
                    MemberQuotaBalance.test_type_id == test_type_id,
                    MemberQuotaBalance.deleted_at.is_(None),
                )
            )
            return result.scalar_one_or_none()

    async def ledger(self, org_id: int) -> list[LedgerEntry]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(LedgerEntry).where(LedgerEntry.org_id == org_id).order_by(LedgerEntry.id)
            )
            return list(result.scalars().all())

    async def count(self, model) -> int:
        async with self._session_maker() as session:
            result = await session.execute(select(func.count()).select_from(model))
            return int(result.scalar_one())

    async def snapshot(self, org_id: int) -> tuple:
        """Comparable image of every store row for failure-idempotence checks."""
        async with self._session_maker() as session:
            lots = (await session.execute(select(QuotaLot).order_by(QuotaLot.id))).scalars().all()
            balances = (
                await session.execute(select(MemberQuotaBalance).order_by(MemberQuotaBalance.id))
            ).scalars().all()
            entries = (
                await session.execute(select(LedgerEntry).order_by(LedgerEntry.id))
            ).scalars().all()
            users = (await session.execute(select(User.id).order_by(User.id))).scalars().all()
            return (
                [(l.id, l.original_quantity, l.remaining_quantity, l.active) for l in lots],
                [(b.id, b.user_id, b.test_kind, b.test_type_id, b.quantity) for b in balances],
                [(e.id, e.signed_quantity, e.org_remaining_after) for e in entries],
                list(users),
            )


@pytest.fixture
def stores(session_maker) -> StoreReader:
    return StoreReader(session_maker)
