"""Quota lot CRUD operations."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.db.models import QuotaLot, TestKind

# Earliest expiry first, lots without expiry last, then oldest lot first.
LOT_DRAW_ORDER = (
    QuotaLot.expires_at.is_(None),
    QuotaLot.expires_at,
    QuotaLot.id,
)


def _live_lot_filter(org_id: int, test_kind: TestKind, test_type_id: int) -> tuple:
    return (
        QuotaLot.org_id == org_id,
        QuotaLot.test_kind == test_kind,
        QuotaLot.test_type_id == test_type_id,
        QuotaLot.active.is_(True),
        QuotaLot.deleted_at.is_(None),
    )


async def record_lot_purchase(
    session: AsyncSession,
    org_id: int,
    test_kind: TestKind,
    test_type_id: int,
    quantity: int,
    expires_at: datetime | None = None,
) -> QuotaLot:
    """Record a purchased lot for an organization.

    Called by the purchase flow once payment is recorded. The caller owns
    the transaction; the lot is flushed so its id is available.

    Args:
        session: Database session
        org_id: Organization buying the lot
        test_kind: IELTS or TOEFL
        test_type_id: Test type within the kind
        quantity: Number of attempts purchased
        expires_at: Optional expiry, drives draw order

    Returns:
        The created QuotaLot
    """
    if quantity < 0:
        raise ValueError("Lot quantity cannot be negative")
    lot = QuotaLot(
        org_id=org_id,
        test_kind=test_kind,
        test_type_id=test_type_id,
        original_quantity=quantity,
        remaining_quantity=quantity,
        active=True,
        expires_at=expires_at,
    )
    session.add(lot)
    await session.flush()
    return lot


async def list_live_lots(
    session: AsyncSession,
    org_id: int,
    test_kind: TestKind,
    test_type_id: int,
    for_update: bool = True,
) -> list[QuotaLot]:
    """List active, non-deleted lots for a key in draw order.

    Lots are locked FOR UPDATE where the backend supports it, on top of
    the serializable isolation the engine requests.
    """
    stmt = (
        select(QuotaLot)
        .where(*_live_lot_filter(org_id, test_kind, test_type_id))
        .order_by(*LOT_DRAW_ORDER)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def lot_totals_by_type(
    session: AsyncSession,
    org_id: int,
) -> list[tuple[TestKind, int, int, int]]:
    """Aggregate live lots per (test_kind, test_type_id).

    Returns:
        Rows of (test_kind, test_type_id, purchased, remaining)
    """
    result = await session.execute(
        select(
            QuotaLot.test_kind,
            QuotaLot.test_type_id,
            func.coalesce(func.sum(QuotaLot.original_quantity), 0),
            func.coalesce(func.sum(QuotaLot.remaining_quantity), 0),
        )
        .where(
            QuotaLot.org_id == org_id,
            QuotaLot.active.is_(True),
            QuotaLot.deleted_at.is_(None),
        )
        .group_by(QuotaLot.test_kind, QuotaLot.test_type_id)
    )
    return [(kind, type_id, int(bought), int(left)) for kind, type_id, bought, left in result.all()]


async def deactivate_lot(session: AsyncSession, lot_id: int) -> bool:
    """Exclude a lot from consumption and aggregation.

    Returns:
        True if the lot existed and was active
    """
    lot = await session.get(QuotaLot, lot_id)
    if lot is None or not lot.active:
        return False
    lot.active = False
    await session.flush()
    return True
