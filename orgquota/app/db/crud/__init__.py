"""CRUD operations package.

- lot.py: Organization quota lots
- balance.py: Member quota balances
- ledger.py: Append-only ledger entries
- catalog.py: Master test types
- directory.py: Organization/user/membership rows used by onboarding
"""

from orgquota.app.db.crud.lot import (
    LOT_DRAW_ORDER,
    deactivate_lot,
    list_live_lots,
    lot_totals_by_type,
    record_lot_purchase,
)

from orgquota.app.db.crud.balance import (
    add_to_member_balance,
    get_member_balance,
    member_balances_for_org,
    subtract_from_member_balance,
)

from orgquota.app.db.crud.ledger import (
    append_ledger_entry,
    ledger_totals_by_type,
    list_ledger_entries,
    member_ledger_net,
)

from orgquota.app.db.crud.catalog import get_active_test_types

from orgquota.app.db.crud.directory import (
    create_membership,
    create_user,
    find_user_conflicts,
    get_membership,
    get_organization,
    get_user,
)

__all__ = [
    # Lot operations
    "LOT_DRAW_ORDER",
    "deactivate_lot",
    "list_live_lots",
    "lot_totals_by_type",
    "record_lot_purchase",
    # Balance operations
    "add_to_member_balance",
    "get_member_balance",
    "member_balances_for_org",
    "subtract_from_member_balance",
    # Ledger operations
    "append_ledger_entry",
    "ledger_totals_by_type",
    "list_ledger_entries",
    "member_ledger_net",
    # Catalog
    "get_active_test_types",
    # Directory
    "create_membership",
    "create_user",
    "find_user_conflicts",
    "get_membership",
    "get_organization",
    "get_user",
]
