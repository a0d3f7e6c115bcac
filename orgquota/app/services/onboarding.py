"""Member onboarding: create a user, grant their initial quota, add membership.

The whole onboarding of one member is one SERIALIZABLE transaction. If any
grant cannot be covered by the organization's lots, the user row, every
balance and every ledger entry written so far are rolled back together.
Bulk onboarding repeats this per row; rows commit independently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgquota.app.core.config import settings
from orgquota.app.core.logging import get_log_context, get_logger
from orgquota.app.db.crud.directory import (
    create_membership,
    create_user,
    find_user_conflicts,
    get_membership,
    get_organization,
)
from orgquota.app.db.models import MemberRole, TestKind
from orgquota.app.exceptions import (
    AlreadyMember,
    DuplicateUser,
    OrganizationNotFound,
    QuotaLedgerException,
    QuotasRequired,
)
from orgquota.app.services.allocation import (
    AllocationResult,
    grant_quota,
    require_actor,
    require_positive_amount,
)
from orgquota.app.services.catalog import TestTypeCatalog, get_test_type_catalog
from orgquota.app.services.retry import with_retry
from orgquota.app.services.transaction import serializable_transaction

logger = get_logger(__name__)


@dataclass
class QuotaGrantRequest:
    test_kind: TestKind
    test_type_id: int
    quota: int


@dataclass
class NewMember:
    """Details of a member to create together with their initial grants."""

    name: str
    email: str
    username: str
    quotas: list[QuotaGrantRequest] = field(default_factory=list)
    phone: Optional[str] = None
    currency: Optional[str] = None
    expires_at: Optional[datetime] = None
    role: MemberRole = MemberRole.USER


@dataclass
class OnboardingResult:
    org_id: int
    user_id: int
    member_id: int
    role: MemberRole
    grants: list[AllocationResult]

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "orgId": self.org_id,
            "user_id": self.user_id,
            "member_id": self.member_id,
            "role": self.role.value,
            "quotas": [
                {
                    "test": grant.test_kind.value,
                    "test_type_id": grant.test_type_id,
                    "quota": -grant.change,
                    "org_remaining_after": grant.after,
                }
                for grant in self.grants
            ],
        }


@dataclass
class BulkRowResult:
    index: int
    email: str
    username: str
    member_id: Optional[int] = None
    error: Optional[QuotaLedgerException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        row: dict = {
            "ok": self.ok,
            "index": self.index,
            "email": self.email,
            "username": self.username,
        }
        if self.error is None:
            row["memberId"] = self.member_id
        else:
            row["error"] = {"code": self.error.code, "message": self.error.message}
        return row


@dataclass
class BulkOnboardingResult:
    org_id: int
    rows: list[BulkRowResult]

    @property
    def success(self) -> int:
        return sum(1 for row in self.rows if row.ok)

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "orgId": self.org_id,
            "total": len(self.rows),
            "success": self.success,
            "failed": len(self.rows) - self.success,
            "results": [row.to_dict() for row in self.rows],
        }


class MemberOnboardingService:
    """Creates members and grants their starting quota atomically."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        catalog: Optional[TestTypeCatalog] = None,
    ):
        self._session_maker = session_maker
        self._catalog = catalog or get_test_type_catalog()

    @with_retry()
    async def create_member(
        self,
        org_id: int,
        actor_id: Optional[int],
        member: NewMember,
    ) -> OnboardingResult:
        """Create a user, grant each requested quota, then add the membership.

        Raises:
            QuotasRequired: no grant was requested (checked before any write)
            ActorRequired, InvalidAmount, UnknownTestType
            OrganizationNotFound, DuplicateUser, AlreadyMember
            InsufficientOrgQuota: one grant could not be covered
            TransactionConflict: after retries are exhausted
        """
        if not member.quotas:
            raise QuotasRequired()
        actor_id = require_actor(actor_id)
        for grant in member.quotas:
            require_positive_amount(grant.quota)

        context = get_log_context(org_id=org_id, actor_id=actor_id)
        currency = member.currency or settings.default_currency

        try:
            async with serializable_transaction(self._session_maker) as session:
                if await get_organization(session, org_id) is None:
                    raise OrganizationNotFound(org_id)
                for grant in member.quotas:
                    await self._catalog.ensure_known(session, grant.test_kind, grant.test_type_id)

                conflicts = await find_user_conflicts(session, member.username, member.email)
                if conflicts:
                    raise DuplicateUser(conflicts)

                try:
                    user = await create_user(
                        session,
                        name=member.name,
                        email=member.email,
                        username=member.username,
                        phone=member.phone,
                    )
                except IntegrityError as e:
                    # Unique index hit by a concurrent registration
                    raise DuplicateUser(["username", "email"]) from e

                grants: list[AllocationResult] = []
                for grant in member.quotas:
                    grants.append(
                        await grant_quota(
                            session,
                            org_id=org_id,
                            actor_id=actor_id,
                            user_id=user.id,
                            test_kind=grant.test_kind,
                            test_type_id=grant.test_type_id,
                            amount=grant.quota,
                            currency=currency,
                            expires_at=member.expires_at,
                        )
                    )

                if await get_membership(session, org_id, user.id) is not None:
                    raise AlreadyMember(org_id, user.id)
                membership = await create_membership(session, org_id, user.id, role=member.role)

                result = OnboardingResult(
                    org_id=org_id,
                    user_id=user.id,
                    member_id=membership.id,
                    role=membership.role,
                    grants=grants,
                )
        except QuotaLedgerException as e:
            logger.warning(f"Member onboarding rejected: {e.code}: {e.message}", extra=context)
            raise

        for grant in result.grants:
            logger.info(
                f"Granted {-grant.change} {grant.test_kind.value}:{grant.test_type_id} "
                f"to new member (org remaining {grant.before} -> {grant.after})",
                extra=get_log_context(
                    org_id=org_id,
                    actor_id=actor_id,
                    user_id=result.user_id,
                    test_kind=grant.test_kind.value,
                    test_type_id=grant.test_type_id,
                ),
            )
        return result

    async def create_members(
        self,
        org_id: int,
        actor_id: Optional[int],
        members: list[NewMember],
    ) -> BulkOnboardingResult:
        """Onboard several members, each row in its own transaction.

        A row that fails with a ledger error is reported in its result and
        does not undo rows that already succeeded. A missing actor rejects
        the whole batch before any row runs.
        """
        actor_id = require_actor(actor_id)
        rows: list[BulkRowResult] = []

        for index, member in enumerate(members):
            row = BulkRowResult(index=index, email=member.email, username=member.username)
            try:
                created = await self.create_member(org_id, actor_id, member)
                row.member_id = created.member_id
            except QuotaLedgerException as e:
                row.error = e
            rows.append(row)

        result = BulkOnboardingResult(org_id=org_id, rows=rows)
        logger.info(
            f"Bulk onboarding finished: {result.success}/{len(rows)} members created",
            extra=get_log_context(org_id=org_id, actor_id=actor_id),
        )
        return result


# Global instance
_onboarding_service: Optional[MemberOnboardingService] = None


def get_onboarding_service() -> MemberOnboardingService:
    """Get the global MemberOnboardingService instance."""
    global _onboarding_service
    if _onboarding_service is None:
        from orgquota.app.db.async_session import get_async_session_maker

        _onboarding_service = MemberOnboardingService(get_async_session_maker())
    return _onboarding_service


def reset_onboarding_service() -> None:
    """Reset the global service instance. Useful for testing."""
    global _onboarding_service
    _onboarding_service = None
