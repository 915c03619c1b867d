# tests/conftest.py
"""Shared test fixtures.

Fixtures build the engine the way production does, minus the filesystem
warehouse: an in-memory SQLite warehouse, a blob store under tmp_path and a
pinned evaluation date so date-range rules are reproducible.

In-memory warehouses are visible only to the thread that created them.
Threaded tests build their own file-backed warehouse under tmp_path.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from hypothesis import HealthCheck, Phase, Verbosity, settings

from fundtrace.contracts.enums import RelationKind
from fundtrace.core.blob_store import FilesystemBlobStore
from fundtrace.core.config import FundtraceSettings, StreamingSettings
from fundtrace.core.warehouse.database import WarehouseDB
from fundtrace.engine.service import EvidenceEngine
from tests.helpers.evidence import AS_OF

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


@pytest.fixture
def warehouse() -> Iterator[WarehouseDB]:
    db = WarehouseDB.in_memory()
    yield db
    db.close()


@pytest.fixture
def blobs(tmp_path: Path) -> FilesystemBlobStore:
    return FilesystemBlobStore(tmp_path / "blobs")


@pytest.fixture
def engine_settings() -> FundtraceSettings:
    return FundtraceSettings(
        streaming=StreamingSettings(
            topics={
                "disbursements": RelationKind.DISBURSEMENT,
                "drawdowns": RelationKind.DRAWDOWN,
            }
        )
    )


@pytest.fixture
def engine(warehouse: WarehouseDB, blobs: FilesystemBlobStore, engine_settings: FundtraceSettings) -> EvidenceEngine:
    return EvidenceEngine(warehouse, blobs, engine_settings, today=lambda: AS_OF)
