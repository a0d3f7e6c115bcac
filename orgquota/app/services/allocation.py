"""Allocation engine: moves quota between organization lots and members.

Every public operation runs in its own SERIALIZABLE transaction and writes
in a fixed order: lots, then the member balance, then the ledger entry.
Precondition failures are raised before anything is flushed, and the
transaction is rolled back on any error, so a failed call leaves lots,
balances and the ledger untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgquota.app.core.config import settings
from orgquota.app.core.logging import get_log_context, get_logger
from orgquota.app.db.crud.balance import (
    add_to_member_balance,
    get_member_balance,
    subtract_from_member_balance,
)
from orgquota.app.db.crud.directory import get_organization, get_user
from orgquota.app.db.crud.ledger import append_ledger_entry, member_ledger_net
from orgquota.app.db.crud.lot import list_live_lots
from orgquota.app.db.models import QuotaLot, TestKind
from orgquota.app.exceptions import (
    ActorRequired,
    InsufficientOrgQuota,
    InsufficientUserQuota,
    InvalidAmount,
    NoActiveLot,
    OrganizationNotFound,
    QuotaLedgerException,
    UserNotFound,
)
from orgquota.app.services.catalog import TestTypeCatalog, get_test_type_catalog
from orgquota.app.services.retry import with_retry
from orgquota.app.services.transaction import serializable_transaction

logger = get_logger(__name__)


@dataclass
class AllocationResult:
    """Snapshot returned by allocate and by each onboarding grant."""

    test_kind: TestKind
    org_id: int
    user_id: int
    test_type_id: int
    before: int
    change: int
    after: int

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "test": self.test_kind.value,
            "orgId": self.org_id,
            "test_type_id": self.test_type_id,
            "before": self.before,
            "change": self.change,
            "after": self.after,
        }


@dataclass
class RevocationResult:
    test_kind: TestKind
    org_id: int
    user_id: int
    test_type_id: int
    before: int
    change: int
    after: int
    user_balance_after: int

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "test": self.test_kind.value,
            "orgId": self.org_id,
            "test_type_id": self.test_type_id,
            "change": self.change,
            "after": self.after,
        }


def require_actor(actor_id: Optional[int]) -> int:
    if actor_id is None:
        raise ActorRequired()
    return actor_id


def require_positive_amount(amount: object) -> int:
    # bool is an int subclass; True is not a quantity
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount)
    return amount


def draw_from_lots(lots: Sequence[QuotaLot], amount: int) -> list[tuple[QuotaLot, int]]:
    """Consume ``amount`` from lots in the given order.

    Each lot gives min(left, lot.remaining_quantity); empty lots are
    skipped. Callers check sufficiency first.

    Returns:
        List of (lot, quantity_taken) in draw order
    """
    left = amount
    draws: list[tuple[QuotaLot, int]] = []
    for lot in lots:
        if left <= 0:
            break
        take = min(left, lot.remaining_quantity)
        if take <= 0:
            continue
        lot.remaining_quantity = lot.remaining_quantity - take
        draws.append((lot, take))
        left -= take
    if left > 0:
        raise ValueError(f"Lots are short by {left}")
    return draws


def return_to_lots(lots: Sequence[QuotaLot], amount: int) -> list[tuple[QuotaLot, int]]:
    """Give ``amount`` back to lots in reverse draw order.

    Each lot is refilled up to its original quantity; whatever is left
    after that goes to the last lot in draw order.

    Returns:
        List of (lot, quantity_returned)
    """
    if not lots:
        raise ValueError("No lot can receive the returned quantity")
    left = amount
    returns: list[tuple[QuotaLot, int]] = []
    for lot in reversed(lots):
        if left <= 0:
            break
        give = min(left, lot.consumed_quantity)
        if give <= 0:
            continue
        lot.remaining_quantity = lot.remaining_quantity + give
        returns.append((lot, give))
        left -= give
    if left > 0:
        last = lots[-1]
        last.remaining_quantity = last.remaining_quantity + left
        returns.append((last, left))
    return returns


async def grant_quota(
    session: AsyncSession,
    org_id: int,
    actor_id: int,
    user_id: int,
    test_kind: TestKind,
    test_type_id: int,
    amount: int,
    currency: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> AllocationResult:
    """Consume-or-fail primitive shared by allocate and member onboarding.

    Must run inside a serializable transaction owned by the caller. Raises
    InsufficientOrgQuota before any write when the live lots cannot cover
    ``amount``; the caller's transaction then rolls back everything it did.

    Args:
        session: Session of the enclosing serializable transaction
        org_id: Organization whose lots are consumed
        actor_id: Acting admin recorded in the ledger
        user_id: Member receiving the quota
        test_kind: IELTS or TOEFL
        test_type_id: Test type within the kind
        amount: Positive quantity to move
        currency: Currency stored on a newly created balance
        expires_at: Expiry stored on the balance

    Returns:
        AllocationResult with before/after organization remaining
    """
    lots = await list_live_lots(session, org_id, test_kind, test_type_id)
    remaining_before = sum(lot.remaining_quantity for lot in lots)
    if remaining_before < amount:
        raise InsufficientOrgQuota(
            remaining=remaining_before,
            requested=amount,
            test_kind=test_kind.value,
            test_type_id=test_type_id,
        )

    draw_from_lots(lots, amount)
    await session.flush()

    await add_to_member_balance(
        session,
        user_id=user_id,
        test_kind=test_kind,
        test_type_id=test_type_id,
        amount=amount,
        currency=currency or settings.default_currency,
        expires_at=expires_at,
    )

    remaining_after = remaining_before - amount
    await append_ledger_entry(
        session,
        org_id=org_id,
        admin_id=actor_id,
        user_id=user_id,
        test_kind=test_kind,
        test_type_id=test_type_id,
        signed_quantity=amount,
        org_remaining_after=remaining_after,
    )

    return AllocationResult(
        test_kind=test_kind,
        org_id=org_id,
        user_id=user_id,
        test_type_id=test_type_id,
        before=remaining_before,
        change=-amount,
        after=remaining_after,
    )


class AllocationEngine:
    """Allocate and revoke quota between an organization and its members.

    The engine holds no per-key state: concurrent calls are linearized by
    the store's serializable isolation, and a call aborted by a concurrent
    writer is re-run from scratch by the retry wrapper.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        catalog: Optional[TestTypeCatalog] = None,
    ):
        self._session_maker = session_maker
        self._catalog = catalog or get_test_type_catalog()

    @property
    def catalog(self) -> TestTypeCatalog:
        return self._catalog

    async def _ensure_parties(self, session: AsyncSession, org_id: int, user_id: int) -> None:
        if await get_organization(session, org_id) is None:
            raise OrganizationNotFound(org_id)
        if await get_user(session, user_id) is None:
            raise UserNotFound(user_id)

    @with_retry()
    async def allocate(
        self,
        org_id: int,
        actor_id: Optional[int],
        user_id: int,
        test_kind: TestKind,
        test_type_id: int,
        amount: int,
    ) -> AllocationResult:
        """Move ``amount`` from the organization's lots to the member.

        Raises:
            ActorRequired, InvalidAmount, UnknownTestType,
            OrganizationNotFound, UserNotFound, InsufficientOrgQuota,
            TransactionConflict (after retries are exhausted)
        """
        actor_id = require_actor(actor_id)
        amount = require_positive_amount(amount)
        context = get_log_context(
            org_id=org_id, actor_id=actor_id, user_id=user_id,
            test_kind=test_kind.value, test_type_id=test_type_id,
        )

        try:
            async with serializable_transaction(self._session_maker) as session:
                await self._catalog.ensure_known(session, test_kind, test_type_id)
                await self._ensure_parties(session, org_id, user_id)
                result = await grant_quota(
                    session,
                    org_id=org_id,
                    actor_id=actor_id,
                    user_id=user_id,
                    test_kind=test_kind,
                    test_type_id=test_type_id,
                    amount=amount,
                )
        except QuotaLedgerException as e:
            logger.warning(f"Allocation rejected: {e.code}: {e.message}", extra=context)
            raise

        logger.info(
            f"Allocated {amount} {test_kind.value}:{test_type_id} "
            f"(org remaining {result.before} -> {result.after})",
            extra=context,
        )
        return result

    @with_retry()
    async def revoke(
        self,
        org_id: int,
        actor_id: Optional[int],
        user_id: int,
        test_kind: TestKind,
        test_type_id: int,
        amount: int,
    ) -> RevocationResult:
        """Move ``amount`` from the member back to the organization's lots.

        The revocable amount is capped by both the member's balance and the
        net quantity this organization allocated to them, so quota granted
        by another organization is never credited here.

        Raises:
            ActorRequired, InvalidAmount, UnknownTestType,
            OrganizationNotFound, UserNotFound, InsufficientUserQuota,
            NoActiveLot, TransactionConflict
        """
        actor_id = require_actor(actor_id)
        amount = require_positive_amount(amount)
        context = get_log_context(
            org_id=org_id, actor_id=actor_id, user_id=user_id,
            test_kind=test_kind.value, test_type_id=test_type_id,
        )

        try:
            async with serializable_transaction(self._session_maker) as session:
                await self._catalog.ensure_known(session, test_kind, test_type_id)
                await self._ensure_parties(session, org_id, user_id)

                balance = await get_member_balance(session, user_id, test_kind, test_type_id)
                user_quota = balance.quantity if balance is not None else 0
                # Only quota this organization granted can flow back to its lots
                granted_here = await member_ledger_net(
                    session, org_id, user_id, test_kind, test_type_id
                )
                revocable = max(min(user_quota, granted_here), 0)
                if balance is None or revocable < amount:
                    raise InsufficientUserQuota(balance=revocable, requested=amount)

                lots = await list_live_lots(session, org_id, test_kind, test_type_id)
                if not lots:
                    raise NoActiveLot(org_id, test_kind.value, test_type_id)
                remaining_before = sum(lot.remaining_quantity for lot in lots)

                return_to_lots(lots, amount)
                await session.flush()

                await subtract_from_member_balance(session, balance, amount)

                remaining_after = remaining_before + amount
                await append_ledger_entry(
                    session,
                    org_id=org_id,
                    admin_id=actor_id,
                    user_id=user_id,
                    test_kind=test_kind,
                    test_type_id=test_type_id,
                    signed_quantity=-amount,
                    org_remaining_after=remaining_after,
                )
                result = RevocationResult(
                    test_kind=test_kind,
                    org_id=org_id,
                    user_id=user_id,
                    test_type_id=test_type_id,
                    before=remaining_before,
                    change=amount,
                    after=remaining_after,
                    user_balance_after=balance.quantity,
                )
        except QuotaLedgerException as e:
            logger.warning(f"Revocation rejected: {e.code}: {e.message}", extra=context)
            raise

        logger.info(
            f"Revoked {amount} {test_kind.value}:{test_type_id} "
            f"(org remaining {result.before} -> {result.after})",
            extra=context,
        )
        return result


# Global instance
_allocation_engine: Optional[AllocationEngine] = None


def get_allocation_engine() -> AllocationEngine:
    """Get the global AllocationEngine bound to the application database."""
    global _allocation_engine
    if _allocation_engine is None:
        from orgquota.app.db.async_session import get_async_session_maker

        _allocation_engine = AllocationEngine(get_async_session_maker())
    return _allocation_engine


def reset_allocation_engine() -> None:
    """Reset the global engine instance. Useful for testing."""
    global _allocation_engine
    _allocation_engine = None
