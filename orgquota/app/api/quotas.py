"""Organization quota endpoints: allocate, revoke and read-only views."""

from __future__ import annotations

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from orgquota.app.db.dependencies import SessionDep
from orgquota.app.db.models import TestKind
from orgquota.app.services.allocation import AllocationEngine, get_allocation_engine
from orgquota.app.services.catalog import TestTypeCatalog, get_test_type_catalog
from orgquota.app.services.reconcile import reconcile
from orgquota.app.services.summary import list_ledger, summarize

router = APIRouter(prefix="/b2b/orgs/{org_id}/quotas", tags=["quotas"])

EngineDep = Annotated[AllocationEngine, Depends(get_allocation_engine)]
CatalogDep = Annotated[TestTypeCatalog, Depends(get_test_type_catalog)]


def _normalize_test_kind(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().upper()
    return v


class QuotaMoveRequest(BaseModel):
    # Optional here so a missing actor is reported as ACTOR_REQUIRED
    admin_id: Optional[int] = Field(default=None, ge=1)
    user_id: int = Field(..., ge=1)
    test: TestKind
    test_type_id: int = Field(..., ge=1)
    amount: int = Field(..., ge=1)

    @field_validator("test", mode="before")
    @classmethod
    def normalize_test(cls, v: Any) -> Any:
        return _normalize_test_kind(v)


class AllocateResponse(BaseModel):
    ok: bool
    test: TestKind
    orgId: int
    test_type_id: int
    before: int
    change: int
    after: int


class RevokeResponse(BaseModel):
    ok: bool
    test: TestKind
    orgId: int
    test_type_id: int
    change: int
    after: int


@router.post("/allocate", response_model=AllocateResponse)
async def allocate_quota(
    org_id: int,
    data: QuotaMoveRequest,
    engine: EngineDep,
) -> dict[str, Any]:
    """Allocate quota from the organization's lots to a member."""
    result = await engine.allocate(
        org_id=org_id,
        actor_id=data.admin_id,
        user_id=data.user_id,
        test_kind=data.test,
        test_type_id=data.test_type_id,
        amount=data.amount,
    )
    return result.to_dict()


@router.post("/revoke", response_model=RevokeResponse)
async def revoke_quota(
    org_id: int,
    data: QuotaMoveRequest,
    engine: EngineDep,
) -> dict[str, Any]:
    """Return unused quota from a member to the organization's lots."""
    result = await engine.revoke(
        org_id=org_id,
        actor_id=data.admin_id,
        user_id=data.user_id,
        test_kind=data.test,
        test_type_id=data.test_type_id,
        amount=data.amount,
    )
    return result.to_dict()


@router.get("/summary")
async def quota_summary(
    org_id: int,
    session: SessionDep,
    catalog: CatalogDep,
) -> dict[str, Any]:
    return await summarize(session, org_id, catalog)


@router.get("/ledger")
async def quota_ledger(
    org_id: int,
    session: SessionDep,
    user_id: Optional[int] = Query(default=None, ge=1),
    test: Optional[str] = Query(default=None, pattern="^(?i:ielts|toefl)$"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """Ledger history for the organization, newest first."""
    test_kind = TestKind(_normalize_test_kind(test)) if test else None
    return await list_ledger(
        session, org_id, user_id=user_id, test_kind=test_kind, limit=limit, offset=offset
    )


@router.get("/reconcile")
async def quota_reconcile(org_id: int, session: SessionDep) -> dict[str, Any]:
    """Check lots and member balances against the ledger."""
    return await reconcile(session, org_id)
