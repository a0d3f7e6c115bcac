"""Organization member endpoints: onboarding with quota and balance listing."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field, field_validator

from orgquota.app.db.dependencies import SessionDep
from orgquota.app.db.models import MemberRole, TestKind
from orgquota.app.services.catalog import TestTypeCatalog, get_test_type_catalog
from orgquota.app.services.onboarding import (
    MemberOnboardingService,
    NewMember,
    QuotaGrantRequest,
    get_onboarding_service,
)
from orgquota.app.services.summary import list_member_balances

router = APIRouter(prefix="/b2b/orgs/{org_id}/members", tags=["members"])

OnboardingDep = Annotated[MemberOnboardingService, Depends(get_onboarding_service)]
CatalogDep = Annotated[TestTypeCatalog, Depends(get_test_type_catalog)]


class QuotaInput(BaseModel):
    test: TestKind
    test_type_id: int = Field(..., ge=1)
    quota: int = Field(..., ge=1)

    @field_validator("test", mode="before")
    @classmethod
    def normalize_test(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


class MemberInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    username: str = Field(..., min_length=1, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=30)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    expires_at: Optional[datetime] = None
    role: MemberRole = MemberRole.USER
    # Emptiness is checked by the service so it surfaces as QUOTAS_REQUIRED
    quotas: list[QuotaInput] = Field(default_factory=list)

    @field_validator("name", "username")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("cannot be empty")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email")
        return v

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v

    def to_new_member(self) -> NewMember:
        return NewMember(
            name=self.name,
            email=self.email,
            username=self.username,
            phone=self.phone,
            currency=self.currency,
            expires_at=self.expires_at,
            role=self.role,
            quotas=[
                QuotaGrantRequest(test_kind=q.test, test_type_id=q.test_type_id, quota=q.quota)
                for q in self.quotas
            ],
        )


class CreateMemberRequest(MemberInput):
    admin_id: Optional[int] = Field(default=None, ge=1)


class BulkCreateMembersRequest(BaseModel):
    admin_id: Optional[int] = Field(default=None, ge=1)
    users: list[MemberInput] = Field(..., min_length=1, max_length=500)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_member(
    org_id: int,
    data: CreateMemberRequest,
    service: OnboardingDep,
) -> dict[str, Any]:
    """Create a user, grant the requested quota and add them to the organization.

    Either everything is created or nothing is: a grant the organization
    cannot cover aborts the whole request.
    """
    result = await service.create_member(
        org_id=org_id,
        actor_id=data.admin_id,
        member=data.to_new_member(),
    )
    return result.to_dict()


@router.post("/bulk")
async def create_members(
    org_id: int,
    data: BulkCreateMembersRequest,
    service: OnboardingDep,
) -> dict[str, Any]:
    """Onboard a list of members; each row succeeds or fails on its own."""
    result = await service.create_members(
        org_id=org_id,
        actor_id=data.admin_id,
        members=[row.to_new_member() for row in data.users],
    )
    return result.to_dict()


@router.get("/quotas")
async def member_quotas(
    org_id: int,
    session: SessionDep,
    catalog: CatalogDep,
) -> dict[str, Any]:
    return {"orgId": org_id, "items": await list_member_balances(session, org_id, catalog)}
