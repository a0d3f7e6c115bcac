"""Read-only quota views for an organization.

Nothing here writes: the queries run at the session's default isolation
and only aggregate the lot store, the ledger and member balances.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.db.crud.balance import member_balances_for_org
from orgquota.app.db.crud.ledger import ledger_totals_by_type, list_ledger_entries
from orgquota.app.db.crud.lot import lot_totals_by_type
from orgquota.app.db.models import TestKind
from orgquota.app.services.catalog import TestTypeCatalog


@dataclass
class TypeSummary:
    test_type_id: int
    label: str
    topup: int = 0
    used: int = 0

    @property
    def remaining(self) -> int:
        return max(self.topup - self.used, 0)

    def to_dict(self) -> Dict[str, int]:
        return {"topup": self.topup, "used": self.used, "remaining": self.remaining}


@dataclass
class KindSummary:
    test_kind: TestKind
    types: Dict[int, TypeSummary] = field(default_factory=dict)

    @property
    def total_topup(self) -> int:
        return sum(t.topup for t in self.types.values())

    @property
    def total_used(self) -> int:
        return sum(t.used for t in self.types.values())

    @property
    def total_remaining(self) -> int:
        return sum(t.remaining for t in self.types.values())

    def to_dict(self) -> Dict[str, Any]:
        ordered = [self.types[type_id] for type_id in sorted(self.types)]
        return {
            "totalTopup": self.total_topup,
            "totalUsed": self.total_used,
            "totalRemaining": self.total_remaining,
            "perType": {str(t.test_type_id): t.to_dict() for t in ordered},
            "perTypeArray": [
                {"test_type_id": t.test_type_id, "label": t.label, **t.to_dict()}
                for t in ordered
            ],
        }


async def summarize(
    session: AsyncSession,
    org_id: int,
    catalog: TestTypeCatalog,
) -> Dict[str, Any]:
    """Per-kind topup/used/remaining for an organization.

    topup is the purchased quantity of active lots, used is the net ledger
    quantity, and remaining is max(topup - used, 0) per type. Kind totals
    are sums of the per-type values.

    Raises:
        UnknownTestType: a lot or ledger row references an id missing
            from the catalog
    """
    if not catalog.loaded:
        await catalog.load(session)

    kinds = {kind: KindSummary(kind) for kind in TestKind}

    def bucket(kind: TestKind, type_id: int) -> TypeSummary:
        types = kinds[kind].types
        if type_id not in types:
            types[type_id] = TypeSummary(type_id, catalog.label_for(kind, type_id))
        return types[type_id]

    for kind, type_id, purchased, _remaining in await lot_totals_by_type(session, org_id):
        bucket(kind, type_id).topup += purchased
    for kind, type_id, net in await ledger_totals_by_type(session, org_id):
        bucket(kind, type_id).used += net

    return {
        "orgId": org_id,
        "ielts": kinds[TestKind.IELTS].to_dict(),
        "toefl": kinds[TestKind.TOEFL].to_dict(),
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }


async def list_ledger(
    session: AsyncSession,
    org_id: int,
    user_id: Optional[int] = None,
    test_kind: Optional[TestKind] = None,
    limit: int = 50,
    offset: int = 0,
) -> Dict[str, Any]:
    """One page of the organization's ledger, newest first."""
    entries, total = await list_ledger_entries(
        session, org_id, user_id=user_id, test_kind=test_kind, limit=limit, offset=offset
    )
    return {
        "items": [entry.to_dict() for entry in entries],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


async def list_member_balances(
    session: AsyncSession,
    org_id: int,
    catalog: TestTypeCatalog,
) -> List[Dict[str, Any]]:
    """Granted quantity per member, keyed by test kind and type label.

    Every catalog label is present with 0 when the member holds nothing
    for it. Members of the organization without any balance row are not
    listed.
    """
    if not catalog.loaded:
        await catalog.load(session)

    def empty_quotas() -> Dict[str, Dict[str, int]]:
        return {
            kind.value: {label: 0 for label in catalog.labels_for(kind).values()}
            for kind in TestKind
        }

    members: Dict[int, Dict[str, Any]] = {}
    for user_id, name, kind, type_id, quantity in await member_balances_for_org(session, org_id):
        member = members.setdefault(
            user_id, {"user_id": user_id, "name": name, "quotas": empty_quotas()}
        )
        label = catalog.label_for(kind, type_id)
        member["quotas"][kind.value][label] += quantity
    return list(members.values())
