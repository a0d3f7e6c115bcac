"""HTTP tests for the quota and member routes."""

import asyncio
from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgquota.app.core.config import settings
from orgquota.app.db.async_session import (
    build_async_engine,
    close_async_engine,
    get_async_engine,
    get_db,
    make_session_maker,
)
from orgquota.app.db.crud.lot import record_lot_purchase
from orgquota.app.db.init_db import create_all_tables, seed_test_types
from orgquota.app.db.models import Organization, TestKind, User
from orgquota.app.main import create_app
from orgquota.app.services.allocation import AllocationEngine, get_allocation_engine
from orgquota.app.services.catalog import TestTypeCatalog, get_test_type_catalog
from orgquota.app.services.onboarding import MemberOnboardingService, get_onboarding_service


def _sqlite_url_from_absolute_path(path: str) -> str:
    # SQLAlchemy expects 4 slashes for absolute paths.
    return f"sqlite+aiosqlite:////{path.lstrip('/')}"


@dataclass
class Api:
    client: TestClient
    org_id: int
    user_id: int
    session_maker: async_sessionmaker[AsyncSession]


@pytest.fixture
def api(tmp_path):
    engine = build_async_engine(_sqlite_url_from_absolute_path(str(tmp_path / "orgquota_api.db")))
    session_maker = make_session_maker(engine)
    catalog = TestTypeCatalog()

    async def init_db() -> tuple[int, int]:
        await create_all_tables(engine)
        await seed_test_types(engine)
        async with session_maker() as session:
            await catalog.load(session)
        async with session_maker() as session:
            async with session.begin():
                org = Organization(name="Acme Language School")
                user = User(name="Budi", email="budi@example.com", username="budi")
                session.add_all([org, user])
                await session.flush()
                await record_lot_purchase(session, org.id, TestKind.IELTS, 1, 10)
                await record_lot_purchase(session, org.id, TestKind.IELTS, 5, 2)
                return org.id, user.id

    org_id, user_id = asyncio.run(init_db())

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app = create_app()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_test_type_catalog] = lambda: catalog
    app.dependency_overrides[get_allocation_engine] = lambda: AllocationEngine(
        session_maker, catalog=catalog
    )
    app.dependency_overrides[get_onboarding_service] = lambda: MemberOnboardingService(
        session_maker, catalog=catalog
    )

    client = TestClient(app, raise_server_exceptions=False)
    yield Api(client=client, org_id=org_id, user_id=user_id, session_maker=session_maker)

    asyncio.run(engine.dispose())


def _move(api: Api, **overrides) -> dict:
    body = {"admin_id": 1, "user_id": api.user_id, "test": "IELTS", "test_type_id": 1, "amount": 6}
    body.update(overrides)
    return body


def test_allocate_and_revoke(api: Api) -> None:
    base = f"/b2b/orgs/{api.org_id}/quotas"

    resp = api.client.post(f"{base}/allocate", json=_move(api))
    assert resp.status_code == 200, resp.text
    assert resp.json() == {
        "ok": True,
        "test": "IELTS",
        "orgId": api.org_id,
        "test_type_id": 1,
        "before": 10,
        "change": -6,
        "after": 4,
    }
    assert resp.headers["X-Request-ID"]

    resp = api.client.post(f"{base}/allocate", json=_move(api, amount=5))
    assert resp.status_code == 400
    data = resp.json()
    assert data["error"] == "INSUFFICIENT_ORG_QUOTA"
    assert data["remaining"] == 4
    assert data["requested"] == 5
    assert data["request_id"]

    resp = api.client.post(f"{base}/revoke", json=_move(api, amount=2, test="ielts"))
    assert resp.status_code == 200, resp.text
    assert resp.json() == {
        "ok": True,
        "test": "IELTS",
        "orgId": api.org_id,
        "test_type_id": 1,
        "change": 2,
        "after": 6,
    }


def test_request_id_is_echoed_in_errors(api: Api) -> None:
    resp = api.client.post(
        f"/b2b/orgs/{api.org_id}/quotas/revoke",
        json=_move(api, amount=1),
        headers={"X-Request-ID": "req-123"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "INSUFFICIENT_USER_QUOTA"
    assert resp.json()["request_id"] == "req-123"
    assert resp.headers["X-Request-ID"] == "req-123"


@pytest.mark.parametrize(
    ("overrides", "status", "code"),
    [
        ({"admin_id": None}, 400, "ACTOR_REQUIRED"),
        ({"test_type_id": 9}, 400, "UNKNOWN_TEST_TYPE"),
        ({"user_id": 999}, 404, "USER_NOT_FOUND"),
    ],
)
def test_allocate_errors(api: Api, overrides: dict, status: int, code: str) -> None:
    resp = api.client.post(f"/b2b/orgs/{api.org_id}/quotas/allocate", json=_move(api, **overrides))
    assert resp.status_code == status
    assert resp.json()["error"] == code


def test_unknown_org(api: Api) -> None:
    resp = api.client.post(f"/b2b/orgs/{api.org_id + 50}/quotas/allocate", json=_move(api))
    assert resp.status_code == 404
    assert resp.json()["error"] == "ORG_NOT_FOUND"


@pytest.mark.parametrize(
    "overrides",
    [{"amount": 0}, {"amount": -1}, {"test": "GRE"}, {"test_type_id": 0}],
)
def test_malformed_body_is_rejected(api: Api, overrides: dict) -> None:
    resp = api.client.post(f"/b2b/orgs/{api.org_id}/quotas/allocate", json=_move(api, **overrides))
    assert resp.status_code == 422


def test_summary_ledger_and_reconcile(api: Api) -> None:
    base = f"/b2b/orgs/{api.org_id}/quotas"
    api.client.post(f"{base}/allocate", json=_move(api, amount=3))
    api.client.post(f"{base}/revoke", json=_move(api, amount=1))

    summary = api.client.get(f"{base}/summary").json()
    assert summary["orgId"] == api.org_id
    assert summary["ielts"]["totalTopup"] == 12
    assert summary["ielts"]["totalUsed"] == 2
    assert summary["ielts"]["totalRemaining"] == 10
    assert summary["ielts"]["perType"]["5"] == {"topup": 2, "used": 0, "remaining": 2}
    assert summary["toefl"]["perTypeArray"] == []

    ledger = api.client.get(f"{base}/ledger", params={"test": "ielts", "limit": 1}).json()
    assert ledger["total"] == 2
    assert ledger["limit"] == 1
    assert ledger["items"][0]["signed_quantity"] == -1
    assert ledger["items"][0]["org_remaining_after"] == 8

    report = api.client.get(f"{base}/reconcile").json()
    assert report == {"orgId": api.org_id, "ok": True, "discrepancies": []}


def test_create_member_and_list_balances(api: Api) -> None:
    resp = api.client.post(
        f"/b2b/orgs/{api.org_id}/members",
        json={
            "admin_id": 1,
            "name": " Jane Doe ",
            "email": "JANE@example.com",
            "username": "janedoe",
            "quotas": [{"test": "IELTS", "test_type_id": 1, "quota": 4}],
        },
    )
    assert resp.status_code == 201, resp.text
    created = resp.json()
    assert created["quotas"] == [
        {"test": "IELTS", "test_type_id": 1, "quota": 4, "org_remaining_after": 6}
    ]

    balances = api.client.get(f"/b2b/orgs/{api.org_id}/members/quotas").json()
    assert balances["orgId"] == api.org_id
    [member] = balances["items"]
    assert member["user_id"] == created["user_id"]
    assert member["name"] == "Jane Doe"
    assert member["quotas"]["IELTS"]["Complete"] == 4


def test_create_member_rolls_back_when_quota_is_short(api: Api) -> None:
    resp = api.client.post(
        f"/b2b/orgs/{api.org_id}/members",
        json={
            "admin_id": 1,
            "name": "Jane Doe",
            "email": "jane@example.com",
            "username": "janedoe",
            "quotas": [
                {"test": "IELTS", "test_type_id": 1, "quota": 1},
                {"test": "IELTS", "test_type_id": 5, "quota": 3},
            ],
        },
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "INSUFFICIENT_ORG_QUOTA"

    summary = api.client.get(f"/b2b/orgs/{api.org_id}/quotas/summary").json()
    assert summary["ielts"]["totalUsed"] == 0
    assert api.client.get(f"/b2b/orgs/{api.org_id}/members/quotas").json()["items"] == []


@pytest.mark.parametrize(
    ("body", "status", "code"),
    [
        ({"quotas": []}, 400, "QUOTAS_REQUIRED"),
        ({"username": "budi"}, 409, "USER_DUPLICATE"),
    ],
)
def test_create_member_errors(api: Api, body: dict, status: int, code: str) -> None:
    payload = {
        "admin_id": 1,
        "name": "Jane Doe",
        "email": "jane@example.com",
        "username": "janedoe",
        "quotas": [{"test": "TOEFL", "test_type_id": 1, "quota": 1}],
    }
    payload.update(body)

    resp = api.client.post(f"/b2b/orgs/{api.org_id}/members", json=payload)
    assert resp.status_code == status
    assert resp.json()["error"] == code


def test_generated_request_id(api: Api) -> None:
    resp = api.client.get(f"/b2b/orgs/{api.org_id}/quotas/reconcile")
    assert resp.status_code == 200
    assert len(resp.headers["X-Request-ID"]) == 36


def test_health_reports_database(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(
        settings,
        "database_url_override",
        _sqlite_url_from_absolute_path(str(tmp_path / "orgquota_health.db")),
    )
    get_async_engine.cache_clear()
    try:
        resp = TestClient(create_app()).get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "components": {"database": {"status": "ok"}}}
    finally:
        asyncio.run(close_async_engine())


def test_bulk_create_members(api: Api) -> None:
    def row(username: str, quota: int) -> dict:
        return {
            "name": username.title(),
            "email": f"{username}@example.com",
            "username": username,
            "quotas": [{"test": "ielts", "test_type_id": 5, "quota": quota}],
        }

    resp = api.client.post(
        f"/b2b/orgs/{api.org_id}/members/bulk",
        json={"admin_id": 1, "users": [row("sari", 2), row("tono", 1)]},
    )
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert (data["total"], data["success"], data["failed"]) == (2, 1, 1)
    assert data["results"][0]["ok"] is True
    assert data["results"][1]["error"]["code"] == "INSUFFICIENT_ORG_QUOTA"

    items = api.client.get(f"/b2b/orgs/{api.org_id}/members/quotas").json()["items"]
    assert [item["name"] for item in items] == ["Sari"]


def test_bulk_create_members_rejects_empty_list(api: Api) -> None:
    resp = api.client.post(
        f"/b2b/orgs/{api.org_id}/members/bulk", json={"admin_id": 1, "users": []}
    )
    assert resp.status_code == 422
