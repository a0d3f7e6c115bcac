"""
Check organization quota lots and member balances against the ledger.

Usage:
    python scripts/reconcile_quotas.py            # every organization
    python scripts/reconcile_quotas.py 12 15      # only these organizations

Exits with status 1 when any discrepancy is found. Nothing is modified.
"""
import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from orgquota.app.core.logging import setup_logging
from orgquota.app.db.async_session import close_async_engine, get_async_session
from orgquota.app.db.models import Organization
from orgquota.app.services.reconcile import reconcile


async def reconcile_all(org_ids: list[int]) -> int:
    """Print a report per organization and return the number of problems."""
    problems = 0
    async with get_async_session() as session:
        if not org_ids:
            result = await session.execute(
                select(Organization.id)
                .where(Organization.deleted_at.is_(None))
                .order_by(Organization.id)
            )
            org_ids = list(result.scalars().all())

        print("=== Reconciling quota ledger ===\n")

        for org_id in org_ids:
            report = await reconcile(session, org_id)
            if report["ok"]:
                print(f"org {org_id}: OK")
                continue

            print(f"org {org_id}:")
            for item in report["discrepancies"]:
                who = f"user {item['user_id']} " if item["scope"] == "user" else ""
                print(
                    f"  {item['scope']}/{item['check']}: {who}{item['test']} type {item['test_type_id']} "
                    f"expected {item['expected']}, actual {item['actual']}"
                )
            problems += len(report["discrepancies"])

    await close_async_engine()
    print(f"\n{problems} discrepancies found" if problems else "\nAll organizations reconcile.")
    return problems


if __name__ == "__main__":
    setup_logging()
    ids = [int(arg) for arg in sys.argv[1:]]
    sys.exit(1 if asyncio.run(reconcile_all(ids)) else 0)
