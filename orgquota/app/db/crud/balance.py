"""Member quota balance CRUD operations."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.db.models import MemberQuotaBalance, OrgMember, TestKind, User


async def get_member_balance(
    session: AsyncSession,
    user_id: int,
    test_kind: TestKind,
    test_type_id: int,
    for_update: bool = True,
) -> MemberQuotaBalance | None:
    """Get the live balance row for (user, kind, type), if any."""
    stmt = select(MemberQuotaBalance).where(
        MemberQuotaBalance.user_id == user_id,
        MemberQuotaBalance.test_kind == test_kind,
        MemberQuotaBalance.test_type_id == test_type_id,
        MemberQuotaBalance.deleted_at.is_(None),
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def add_to_member_balance(
    session: AsyncSession,
    user_id: int,
    test_kind: TestKind,
    test_type_id: int,
    amount: int,
    currency: str,
    expires_at: datetime | None = None,
) -> MemberQuotaBalance:
    """Increment the member's balance, creating the row on first grant.

    Lookup-then-create-or-update keeps a single live row per key; the
    partial unique index rejects a duplicate created by a racing writer.

    Returns:
        The updated or created balance
    """
    balance = await get_member_balance(session, user_id, test_kind, test_type_id)
    if balance is None:
        balance = MemberQuotaBalance(
            user_id=user_id,
            test_kind=test_kind,
            test_type_id=test_type_id,
            quantity=amount,
            currency=currency,
            expires_at=expires_at,
        )
        session.add(balance)
    else:
        balance.quantity = balance.quantity + amount
        if expires_at is not None:
            balance.expires_at = expires_at
    await session.flush()
    return balance


async def subtract_from_member_balance(
    session: AsyncSession,
    balance: MemberQuotaBalance,
    amount: int,
) -> MemberQuotaBalance:
    """Decrement a balance; callers check sufficiency first."""
    if amount > balance.quantity:
        raise ValueError("Balance cannot go negative")
    balance.quantity = balance.quantity - amount
    await session.flush()
    return balance


async def member_balances_for_org(
    session: AsyncSession,
    org_id: int,
) -> list[tuple[int, str, TestKind, int, int]]:
    """Live balances of the organization's active members.

    Returns:
        Rows of (user_id, user_name, test_kind, test_type_id, quantity)
    """
    result = await session.execute(
        select(
            User.id,
            User.name,
            MemberQuotaBalance.test_kind,
            MemberQuotaBalance.test_type_id,
            func.coalesce(func.sum(MemberQuotaBalance.quantity), 0),
        )
        .join(OrgMember, OrgMember.user_id == User.id)
        .join(MemberQuotaBalance, MemberQuotaBalance.user_id == User.id)
        .where(
            OrgMember.org_id == org_id,
            OrgMember.deleted_at.is_(None),
            User.deleted_at.is_(None),
            MemberQuotaBalance.deleted_at.is_(None),
        )
        .group_by(User.id, User.name, MemberQuotaBalance.test_kind, MemberQuotaBalance.test_type_id)
        .order_by(User.id)
    )
    return [
        (user_id, name, kind, type_id, int(quantity))
        for user_id, name, kind, type_id, quantity in result.all()
    ]
