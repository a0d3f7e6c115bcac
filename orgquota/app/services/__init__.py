"""Services package for the quota ledger.

This package provides:
- The allocation engine (allocate / revoke) and the per-grant primitive
- Member onboarding with its initial quota grants
- The test type catalog
- Read-only summaries, ledger history and reconciliation
"""

from orgquota.app.services.allocation import (
    AllocationEngine,
    AllocationResult,
    RevocationResult,
    draw_from_lots,
    get_allocation_engine,
    grant_quota,
    reset_allocation_engine,
    return_to_lots,
)
from orgquota.app.services.catalog import (
    TestTypeCatalog,
    get_test_type_catalog,
    reset_test_type_catalog,
)
from orgquota.app.services.onboarding import (
    BulkOnboardingResult,
    BulkRowResult,
    MemberOnboardingService,
    NewMember,
    OnboardingResult,
    QuotaGrantRequest,
    get_onboarding_service,
    reset_onboarding_service,
)
from orgquota.app.services.reconcile import reconcile
from orgquota.app.services.retry import RetryPolicy, with_retry
from orgquota.app.services.summary import list_ledger, list_member_balances, summarize
from orgquota.app.services.transaction import is_conflict_error, serializable_transaction

__all__ = [
    # Allocation
    "AllocationEngine",
    "AllocationResult",
    "RevocationResult",
    "draw_from_lots",
    "get_allocation_engine",
    "grant_quota",
    "reset_allocation_engine",
    "return_to_lots",
    # Catalog
    "TestTypeCatalog",
    "get_test_type_catalog",
    "reset_test_type_catalog",
    # Onboarding
    "BulkOnboardingResult",
    "BulkRowResult",
    "MemberOnboardingService",
    "NewMember",
    "OnboardingResult",
    "QuotaGrantRequest",
    "get_onboarding_service",
    "reset_onboarding_service",
    # Reads
    "list_ledger",
    "list_member_balances",
    "reconcile",
    "summarize",
    # Transactions
    "RetryPolicy",
    "is_conflict_error",
    "serializable_transaction",
    "with_retry",
]
