"""Organization, user and membership rows touched by the ledger.

Full CRUD for these lives in the member-management service; this module
covers only the existence checks and the rows written while onboarding.
"""
from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.db.models import MemberRole, Organization, OrgMember, User


async def get_organization(session: AsyncSession, org_id: int) -> Organization | None:
    result = await session.execute(
        select(Organization).where(Organization.id == org_id, Organization.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_user(session: AsyncSession, user_id: int) -> User | None:
    result = await session.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def find_user_conflicts(session: AsyncSession, username: str, email: str) -> list[str]:
    """Return which of username/email already belong to a live user."""
    result = await session.execute(
        select(User).where(
            User.deleted_at.is_(None),
            or_(User.username == username, User.email == email),
        )
    )
    conflicts: list[str] = []
    for user in result.scalars().all():
        if user.username == username and "username" not in conflicts:
            conflicts.append("username")
        if user.email == email and "email" not in conflicts:
            conflicts.append("email")
    return conflicts


async def create_user(
    session: AsyncSession,
    name: str,
    email: str,
    username: str,
    phone: str | None = None,
) -> User:
    user = User(name=name, email=email, username=username, phone=phone, status=True)
    session.add(user)
    await session.flush()
    return user


async def get_membership(session: AsyncSession, org_id: int, user_id: int) -> OrgMember | None:
    result = await session.execute(
        select(OrgMember).where(
            OrgMember.org_id == org_id,
            OrgMember.user_id == user_id,
            OrgMember.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def create_membership(
    session: AsyncSession,
    org_id: int,
    user_id: int,
    role: MemberRole = MemberRole.USER,
) -> OrgMember:
    member = OrgMember(org_id=org_id, user_id=user_id, role=role, status=True)
    session.add(member)
    await session.flush()
    return member
