"""Tests for the master test type catalog."""

import pytest

from orgquota.app.db.init_db import DEFAULT_TEST_TYPES, seed_test_types
from orgquota.app.db.models import TestKind, TestType
from orgquota.app.exceptions import UnknownTestType
from orgquota.app.services.catalog import (
    TestTypeCatalog,
    get_test_type_catalog,
    reset_test_type_catalog,
)


@pytest.mark.asyncio
async def test_load_reads_seeded_types(catalog):
    assert catalog.loaded is True
    assert catalog.labels_for(TestKind.IELTS) == DEFAULT_TEST_TYPES[TestKind.IELTS]
    assert catalog.label_for(TestKind.TOEFL, 3) == "Structure"
    catalog.validate()


@pytest.mark.asyncio
async def test_seed_is_idempotent(db_engine):
    assert await seed_test_types(db_engine) == 0


def test_unknown_id_fails_loudly():
    catalog = TestTypeCatalog({TestKind.IELTS: {1: "Complete"}, TestKind.TOEFL: {1: "Complete"}})

    with pytest.raises(UnknownTestType) as exc_info:
        catalog.label_for(TestKind.IELTS, 6)
    assert exc_info.value.code == "UNKNOWN_TEST_TYPE"


def test_validate_rejects_empty_kind():
    catalog = TestTypeCatalog({TestKind.IELTS: {1: "Complete"}, TestKind.TOEFL: {}})

    with pytest.raises(RuntimeError, match="TOEFL"):
        catalog.validate()


def test_unloaded_catalog_refuses_lookups():
    catalog = TestTypeCatalog()

    assert catalog.loaded is False
    with pytest.raises(RuntimeError):
        catalog.labels_for(TestKind.IELTS)


@pytest.mark.asyncio
async def test_ensure_known_reloads_on_miss(session_maker, catalog):
    async with session_maker() as session:
        async with session.begin():
            session.add(TestType(test_kind=TestKind.TOEFL, id=5, label="Writing"))

    async with session_maker() as session:
        assert await catalog.ensure_known(session, TestKind.TOEFL, 5) == "Writing"
        with pytest.raises(UnknownTestType):
            await catalog.ensure_known(session, TestKind.TOEFL, 6)


def test_singleton():
    reset_test_type_catalog()

    first = get_test_type_catalog()
    assert get_test_type_catalog() is first

    reset_test_type_catalog()
    assert get_test_type_catalog() is not first


def test_invalidate_cache():
    catalog = TestTypeCatalog({TestKind.IELTS: {1: "Complete"}, TestKind.TOEFL: {1: "Complete"}})

    catalog.invalidate_cache()

    assert catalog.loaded is False
