"""Database package for the quota ledger.

This package provides:
- Database models (QuotaLot, MemberQuotaBalance, LedgerEntry, TestType and
  the organization/user rows they reference)
- Async session management and serializable-transaction support for SQLite
- CRUD operations for all models
- FastAPI dependency injection support
"""

from orgquota.app.db.base import Base
from orgquota.app.db.models import (
    LedgerEntry,
    MemberQuotaBalance,
    MemberRole,
    Organization,
    OrgMember,
    QuotaLot,
    TestKind,
    TestType,
    User,
)
from orgquota.app.db.async_session import (
    SessionDep,
    build_async_engine,
    close_async_engine,
    get_async_engine,
    get_async_session,
    get_async_session_maker,
    get_db,
    make_session_maker,
)

__all__ = [
    # Base
    "Base",
    # Models
    "LedgerEntry",
    "MemberQuotaBalance",
    "MemberRole",
    "Organization",
    "OrgMember",
    "QuotaLot",
    "TestKind",
    "TestType",
    "User",
    # Session (async)
    "build_async_engine",
    "close_async_engine",
    "get_async_engine",
    "get_async_session",
    "get_async_session_maker",
    "get_db",
    "make_session_maker",
    # FastAPI Dependencies
    "SessionDep",
]
