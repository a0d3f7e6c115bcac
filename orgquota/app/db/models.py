import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from orgquota.app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TestKind(str, enum.Enum):
    """Top-level exam family."""

    __test__ = False

    IELTS = "IELTS"
    TOEFL = "TOEFL"


class MemberRole(str, enum.Enum):
    ADMIN = "Admin"
    USER = "User"


_test_kind_column = Enum(TestKind, native_enum=False, length=10, name="test_kind")


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str] = mapped_column(String(320), unique=True)
    username: Mapped[str] = mapped_column(String(150), unique=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OrgMember(Base):
    __tablename__ = "org_members"
    __table_args__ = (
        Index("idx_org_members_org_user", "org_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"))
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    role: Mapped[MemberRole] = mapped_column(
        Enum(MemberRole, native_enum=False, length=10, values_callable=lambda e: [m.value for m in e]),
        default=MemberRole.USER,
    )
    status: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TestType(Base):
    """Master catalog entry: one skill/section or "Complete" variant of a test kind."""

    __tablename__ = "test_types"
    __test__ = False

    test_kind: Mapped[TestKind] = mapped_column(_test_kind_column, primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    label: Mapped[str] = mapped_column(String(100))
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class QuotaLot(Base):
    """One purchased batch of attempts for an organization and test type.

    remaining_quantity only decreases through consumption and increases
    through revocation-return; original_quantity is the purchased amount.
    """

    __tablename__ = "quota_lots"
    __table_args__ = (
        CheckConstraint("remaining_quantity >= 0", name="ck_quota_lots_remaining_nonneg"),
        CheckConstraint("original_quantity >= 0", name="ck_quota_lots_original_nonneg"),
        Index("idx_quota_lots_key", "org_id", "test_kind", "test_type_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"))
    test_kind: Mapped[TestKind] = mapped_column(_test_kind_column)
    test_type_id: Mapped[int] = mapped_column(Integer)
    original_quantity: Mapped[int] = mapped_column(Integer)
    remaining_quantity: Mapped[int] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def consumed_quantity(self) -> int:
        return self.original_quantity - self.remaining_quantity

    def __repr__(self) -> str:
        return (
            f"<QuotaLot(id={self.id}, org={self.org_id}, {self.test_kind.value}:{self.test_type_id}, "
            f"remaining={self.remaining_quantity}/{self.original_quantity})>"
        )


class MemberQuotaBalance(Base):
    __tablename__ = "member_quota_balances"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_member_quota_balances_nonneg"),
        # One live row per (user, kind, type)
        Index(
            "uq_member_quota_balances_key",
            "user_id",
            "test_kind",
            "test_type_id",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    test_kind: Mapped[TestKind] = mapped_column(_test_kind_column)
    test_type_id: Mapped[int] = mapped_column(Integer)
    quantity: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="IDR")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LedgerEntry(Base):
    """Immutable audit record of one allocation (+) or revocation (-)."""

    __tablename__ = "quota_ledger_entries"
    __table_args__ = (
        CheckConstraint("signed_quantity <> 0", name="ck_quota_ledger_nonzero"),
        Index("idx_quota_ledger_key", "org_id", "test_kind", "test_type_id"),
        Index("idx_quota_ledger_user", "user_id"),
        Index("idx_quota_ledger_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"))
    admin_id: Mapped[int] = mapped_column(Integer)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    test_kind: Mapped[TestKind] = mapped_column(_test_kind_column)
    test_type_id: Mapped[int] = mapped_column(Integer)
    signed_quantity: Mapped[int] = mapped_column(Integer)
    org_remaining_after: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "admin_id": self.admin_id,
            "user_id": self.user_id,
            "test": self.test_kind.value,
            "test_type_id": self.test_type_id,
            "signed_quantity": self.signed_quantity,
            "org_remaining_after": self.org_remaining_after,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
