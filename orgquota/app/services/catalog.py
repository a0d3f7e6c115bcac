"""Master test type catalog with in-memory caching.

Holds an explicit mapping of (test kind, test type id) -> label loaded from
the ``test_types`` table. Lookups for ids that are not in the mapping raise
UnknownTestType instead of falling back to a generic label.
"""

from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orgquota.app.core.logging import get_logger
from orgquota.app.db.crud.catalog import get_active_test_types
from orgquota.app.db.models import TestKind
from orgquota.app.exceptions import UnknownTestType

logger = get_logger(__name__)


class TestTypeCatalog:
    """Cached view of the master test type table.

    Cache strategy:
    - Loaded once on first use (or at startup via load())
    - An unknown id triggers one reload before failing, so types added
      after startup are picked up
    - Single instance per application (use get_test_type_catalog())
    """

    __test__ = False

    def __init__(self, labels: Optional[Dict[TestKind, Dict[int, str]]] = None):
        self._labels: Optional[Dict[TestKind, Dict[int, str]]] = labels

    @property
    def loaded(self) -> bool:
        return self._labels is not None

    async def load(self, session: AsyncSession) -> Dict[TestKind, Dict[int, str]]:
        """(Re)load the mapping from the database."""
        labels: Dict[TestKind, Dict[int, str]] = {kind: {} for kind in TestKind}
        for row in await get_active_test_types(session):
            labels[row.test_kind][row.id] = row.label
        self._labels = labels
        logger.debug(
            "Test type catalog loaded: "
            + ", ".join(f"{kind.value}={len(ids)}" for kind, ids in labels.items())
        )
        return labels

    def validate(self) -> None:
        """Fail loudly when a test kind has no master types at all."""
        if self._labels is None:
            raise RuntimeError("Test type catalog is not loaded")
        missing = [kind.value for kind, ids in self._labels.items() if not ids]
        if missing:
            raise RuntimeError(f"Master test type catalog is empty for: {', '.join(missing)}")

    def labels_for(self, test_kind: TestKind) -> Dict[int, str]:
        if self._labels is None:
            raise RuntimeError("Test type catalog is not loaded")
        return dict(self._labels.get(test_kind, {}))

    def label_for(self, test_kind: TestKind, test_type_id: int) -> str:
        """Resolve a label from the loaded mapping.

        Raises:
            UnknownTestType: the id is not in the catalog for this kind
        """
        labels = self.labels_for(test_kind)
        if test_type_id not in labels:
            raise UnknownTestType(test_kind.value, test_type_id)
        return labels[test_type_id]

    async def ensure_known(
        self,
        session: AsyncSession,
        test_kind: TestKind,
        test_type_id: int,
    ) -> str:
        """Validate membership, reloading once on a miss.

        Returns:
            The label of the test type
        """
        if self._labels is None or test_type_id not in self._labels.get(test_kind, {}):
            await self.load(session)
        return self.label_for(test_kind, test_type_id)

    def invalidate_cache(self) -> None:
        self._labels = None


# Global instance
_test_type_catalog: Optional[TestTypeCatalog] = None


def get_test_type_catalog() -> TestTypeCatalog:
    """Get the global TestTypeCatalog instance (singleton)."""
    global _test_type_catalog
    if _test_type_catalog is None:
        _test_type_catalog = TestTypeCatalog()
    return _test_type_catalog


def reset_test_type_catalog() -> None:
    """Reset the global catalog instance. Useful for testing."""
    global _test_type_catalog
    _test_type_catalog = None
