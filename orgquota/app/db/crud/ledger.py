"""Ledger entry CRUD operations.

The ledger is append-only. Corrections are recorded as new entries.
"""
from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.db.models import LedgerEntry, TestKind


async def append_ledger_entry(
    session: AsyncSession,
    org_id: int,
    admin_id: int,
    user_id: int,
    test_kind: TestKind,
    test_type_id: int,
    signed_quantity: int,
    org_remaining_after: int,
) -> LedgerEntry:
    """Append one allocation (+) or revocation (-) record.

    Args:
        session: Database session inside the producing transaction
        org_id: Organization whose lots moved
        admin_id: Acting admin
        user_id: Member whose balance moved
        test_kind: IELTS or TOEFL
        test_type_id: Test type within the kind
        signed_quantity: Positive for allocation, negative for revocation
        org_remaining_after: Organization remaining total after the move

    Returns:
        The flushed LedgerEntry
    """
    if signed_quantity == 0:
        raise ValueError("Ledger entries cannot move zero quantity")
    entry = LedgerEntry(
        org_id=org_id,
        admin_id=admin_id,
        user_id=user_id,
        test_kind=test_kind,
        test_type_id=test_type_id,
        signed_quantity=signed_quantity,
        org_remaining_after=org_remaining_after,
    )
    session.add(entry)
    await session.flush()
    return entry


async def ledger_totals_by_type(
    session: AsyncSession,
    org_id: int,
) -> list[tuple[TestKind, int, int]]:
    """Net quantity moved to members per (test_kind, test_type_id).

    Returns:
        Rows of (test_kind, test_type_id, net_signed_quantity)
    """
    result = await session.execute(
        select(
            LedgerEntry.test_kind,
            LedgerEntry.test_type_id,
            func.coalesce(func.sum(LedgerEntry.signed_quantity), 0),
        )
        .where(LedgerEntry.org_id == org_id, LedgerEntry.deleted_at.is_(None))
        .group_by(LedgerEntry.test_kind, LedgerEntry.test_type_id)
    )
    return [(kind, type_id, int(net)) for kind, type_id, net in result.all()]


async def member_ledger_net(
    session: AsyncSession,
    org_id: int,
    user_id: int,
    test_kind: TestKind,
    test_type_id: int,
) -> int:
    """Net quantity this organization has moved to one member for a key."""
    result = await session.execute(
        select(func.coalesce(func.sum(LedgerEntry.signed_quantity), 0)).where(
            LedgerEntry.org_id == org_id,
            LedgerEntry.user_id == user_id,
            LedgerEntry.test_kind == test_kind,
            LedgerEntry.test_type_id == test_type_id,
            LedgerEntry.deleted_at.is_(None),
        )
    )
    return int(result.scalar_one())


async def list_ledger_entries(
    session: AsyncSession,
    org_id: int,
    user_id: int | None = None,
    test_kind: TestKind | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[LedgerEntry], int]:
    """Page through an organization's ledger, newest first.

    Returns:
        Tuple of (entries, total_matching)
    """
    filters = [LedgerEntry.org_id == org_id, LedgerEntry.deleted_at.is_(None)]
    if user_id is not None:
        filters.append(LedgerEntry.user_id == user_id)
    if test_kind is not None:
        filters.append(LedgerEntry.test_kind == test_kind)

    total = await session.execute(select(func.count(LedgerEntry.id)).where(*filters))
    result = await session.execute(
        select(LedgerEntry)
        .where(*filters)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), int(total.scalar_one())
