from __future__ import annotations

from typing import Any

import pytest

from src.core.rows import Row
from src.engine.adapters.local_dataset import LocalDataset
from src.engine.registry import ComponentRegistry, Resources


@pytest.fixture
def make_dataset():
    def _make(*dicts: dict[str, Any], num_partitions: int = 2) -> LocalDataset[Row]:
        return LocalDataset.from_mappings(list(dicts), num_partitions=num_partitions)

    return _make


@pytest.fixture
def resources():
    def _no_db():
        raise AssertionError("tests must not open a real DB session factory")

    return Resources(session_factory_provider=_no_db)


@pytest.fixture
def registry_with(resources):
    """Реестр с реальными планировщиками и подставными input/output."""
    from src.engine.registry import default_registry

    def _make(*, inputs=None, outputs=None) -> ComponentRegistry:
        base = default_registry(resources)
        return ComponentRegistry(
            inputs=inputs or {},
            derivers=base.derivers,
            planners=base.planners,
            outputs=outputs or {},
            resources=resources,
        )

    return _make
