"""Reconciliation of the lot and balance projections against the ledger.

The ledger is the system of record. For every (test kind, test type) of an
organization these checks are made:

- lots/ledger: sum(remaining) must equal sum(original) - ledger net
- lots/purchased: sum(remaining) can never exceed sum(original)
- user/ledger: a user's ledger net in this organization is never negative
- user/balance: each user's balance must cover their ledger net in this
  organization (a user can also hold quota granted by another
  organization, so the balance may exceed it)

The check only reports; it never rewrites lots or balances.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.core.logging import get_log_context, get_logger
from orgquota.app.db.crud.ledger import ledger_totals_by_type
from orgquota.app.db.crud.lot import lot_totals_by_type
from orgquota.app.db.models import LedgerEntry, MemberQuotaBalance, TestKind

logger = get_logger(__name__)

Key = Tuple[TestKind, int]
UserKey = Tuple[int, TestKind, int]


async def _balances_by_user(session: AsyncSession, user_ids: Set[int]) -> Dict[UserKey, int]:
    if not user_ids:
        return {}
    result = await session.execute(
        select(
            MemberQuotaBalance.user_id,
            MemberQuotaBalance.test_kind,
            MemberQuotaBalance.test_type_id,
            func.coalesce(func.sum(MemberQuotaBalance.quantity), 0),
        )
        .where(
            MemberQuotaBalance.user_id.in_(user_ids),
            MemberQuotaBalance.deleted_at.is_(None),
        )
        .group_by(
            MemberQuotaBalance.user_id,
            MemberQuotaBalance.test_kind,
            MemberQuotaBalance.test_type_id,
        )
    )
    return {(user_id, kind, type_id): int(qty) for user_id, kind, type_id, qty in result.all()}


async def _ledger_net_by_user(session: AsyncSession, org_id: int) -> Dict[UserKey, int]:
    result = await session.execute(
        select(
            LedgerEntry.user_id,
            LedgerEntry.test_kind,
            LedgerEntry.test_type_id,
            func.coalesce(func.sum(LedgerEntry.signed_quantity), 0),
        )
        .where(LedgerEntry.org_id == org_id, LedgerEntry.deleted_at.is_(None))
        .group_by(LedgerEntry.user_id, LedgerEntry.test_kind, LedgerEntry.test_type_id)
    )
    return {(user_id, kind, type_id): int(net) for user_id, kind, type_id, net in result.all()}


async def reconcile(session: AsyncSession, org_id: int) -> Dict[str, Any]:
    """Compare lots and member balances with the ledger for one organization.

    Returns:
        {"orgId", "ok", "discrepancies"}; discrepancies is empty when the
        projections agree with the ledger. Each discrepancy names the
        failed ``check``.
    """
    purchased: Dict[Key, int] = defaultdict(int)
    remaining: Dict[Key, int] = defaultdict(int)
    for kind, type_id, bought, left in await lot_totals_by_type(session, org_id):
        purchased[(kind, type_id)] += bought
        remaining[(kind, type_id)] += left

    net: Dict[Key, int] = defaultdict(int)
    for kind, type_id, moved in await ledger_totals_by_type(session, org_id):
        net[(kind, type_id)] += moved

    discrepancies: List[Dict[str, Any]] = []
    for kind, type_id in sorted(set(purchased) | set(net), key=lambda k: (k[0].value, k[1])):
        bought = purchased[(kind, type_id)]
        actual = remaining[(kind, type_id)]
        expected = bought - net[(kind, type_id)]
        if expected != actual:
            discrepancies.append({
                "scope": "lots",
                "check": "ledger",
                "test": kind.value,
                "test_type_id": type_id,
                "expected": expected,
                "actual": actual,
            })
        if actual > bought:
            discrepancies.append({
                "scope": "lots",
                "check": "purchased",
                "test": kind.value,
                "test_type_id": type_id,
                "expected": bought,
                "actual": actual,
            })

    ledger_by_user = await _ledger_net_by_user(session, org_id)
    balances = await _balances_by_user(session, {user_id for user_id, _, _ in ledger_by_user})

    for (user_id, kind, type_id), moved in sorted(
        ledger_by_user.items(),
        key=lambda item: (item[0][0], item[0][1].value, item[0][2]),
    ):
        if moved < 0:
            # More came back from this member than the organization ever gave them
            discrepancies.append({
                "scope": "user",
                "check": "ledger",
                "user_id": user_id,
                "test": kind.value,
                "test_type_id": type_id,
                "expected": 0,
                "actual": moved,
            })
            continue
        held = balances.get((user_id, kind, type_id), 0)
        if held < moved:
            discrepancies.append({
                "scope": "user",
                "check": "balance",
                "user_id": user_id,
                "test": kind.value,
                "test_type_id": type_id,
                "expected": moved,
                "actual": held,
            })

    if discrepancies:
        logger.warning(
            f"Reconciliation found {len(discrepancies)} discrepancies",
            extra=get_log_context(org_id=org_id),
        )
    return {"orgId": org_id, "ok": not discrepancies, "discrepancies": discrepancies}
