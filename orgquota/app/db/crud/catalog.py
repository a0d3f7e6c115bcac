"""Master test type catalog queries."""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.db.models import TestType


async def get_active_test_types(session: AsyncSession) -> list[TestType]:
    """Get all non-deleted master test types, ordered by kind and id."""
    result = await session.execute(
        select(TestType)
        .where(TestType.deleted_at.is_(None))
        .order_by(TestType.test_kind, TestType.id)
    )
    return list(result.scalars().all())
