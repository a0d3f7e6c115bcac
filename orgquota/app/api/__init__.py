"""API endpoints package for the quota ledger."""

from orgquota.app.api.members import router as members_router
from orgquota.app.api.quotas import router as quotas_router

__all__ = [
    "members_router",
    "quotas_router",
]
