"""Shared test fixtures for strata-catalog.

Every catalog fixture runs against an InMemoryFileIO and a zero-wait retry
policy. The ``catalog`` fixture is parametrized over both backends; tests
that depend on authoritative requirement checks use ``validating_catalog``
or ``cas_catalog`` directly.

Note:
    No __init__.py files in test directories - pytest uses importlib mode
    which causes namespace collisions with __init__.py files.
"""

from __future__ import annotations

from collections.abc import Callable, Generator

import pytest

from strata_catalog.backend import (
    CatalogBackend,
    InMemoryCatalogBackend,
    ValidatingCatalogBackend,
)
from strata_catalog.catalog import Catalog
from strata_catalog.config import CatalogConfig
from strata_catalog.identifiers import Namespace, TableIdentifier
from strata_catalog.io import InMemoryFileIO
from strata_catalog.reporting import CommitReport, MetricsReport, MetricsReporter, ScanReport
from strata_catalog.schema import NestedField, Schema
from strata_catalog.snapshots import DataFile
from strata_catalog.table import Table
from strata_catalog.telemetry import reset_tracer
from strata_catalog.types import FieldType

# =============================================================================
# Reporter
# =============================================================================


class RecordingReporter(MetricsReporter):
    """Collects every report it receives."""

    def __init__(self) -> None:
        self.reports: list[MetricsReport] = []

    def report(self, report: MetricsReport) -> None:
        self.reports.append(report)

    @property
    def commit_reports(self) -> list[CommitReport]:
        return [r for r in self.reports if isinstance(r, CommitReport)]

    @property
    def scan_reports(self) -> list[ScanReport]:
        return [r for r in self.reports if isinstance(r, ScanReport)]


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_tracer() -> Generator[None, None, None]:
    """Start and finish every test with an empty tracer cache."""
    reset_tracer()
    yield
    reset_tracer()


@pytest.fixture
def io() -> InMemoryFileIO:
    return InMemoryFileIO()


@pytest.fixture
def config() -> CatalogConfig:
    """Catalog configuration that never sleeps between commit attempts."""
    return CatalogConfig(retry_min_wait_ms=0, retry_max_wait_ms=0)


@pytest.fixture
def reporter() -> RecordingReporter:
    return RecordingReporter()


@pytest.fixture
def namespace() -> Namespace:
    return Namespace.of("db")


@pytest.fixture
def identifier() -> TableIdentifier:
    return TableIdentifier.of("db", "events")


@pytest.fixture
def schema() -> Schema:
    """Three-column schema; ids are reassigned on create."""
    return Schema.of(
        NestedField(field_id=1, name="id", field_type=FieldType.LONG, required=True),
        NestedField(field_id=2, name="data", field_type=FieldType.STRING),
        NestedField(field_id=3, name="ts", field_type=FieldType.TIMESTAMPTZ),
    )


@pytest.fixture
def make_data_file() -> Callable[..., DataFile]:
    """Factory for data files under ``memory://data/``."""

    def make(name: str, record_count: int = 10, **kwargs: object) -> DataFile:
        return DataFile(
            file_path=f"memory://data/{name}.parquet",
            record_count=record_count,
            file_size_in_bytes=record_count * 100,
            **kwargs,
        )

    return make


# =============================================================================
# Catalog Fixtures
# =============================================================================


def _catalog(
    backend: CatalogBackend,
    io: InMemoryFileIO,
    config: CatalogConfig,
    reporter: RecordingReporter,
    namespace: Namespace,
) -> Catalog:
    catalog = Catalog("test", backend, io, config, reporter=reporter)
    catalog.create_namespace(namespace)
    return catalog


@pytest.fixture(params=["cas", "validating"])
def catalog(
    request: pytest.FixtureRequest,
    io: InMemoryFileIO,
    config: CatalogConfig,
    reporter: RecordingReporter,
    namespace: Namespace,
) -> Catalog:
    """Catalog with namespace ``db``, once per backend."""
    backend: CatalogBackend
    if request.param == "validating":
        backend = ValidatingCatalogBackend()
    else:
        backend = InMemoryCatalogBackend()
    return _catalog(backend, io, config, reporter, namespace)


@pytest.fixture
def validating_catalog(
    io: InMemoryFileIO,
    config: CatalogConfig,
    reporter: RecordingReporter,
    namespace: Namespace,
) -> Catalog:
    """Catalog whose backend evaluates requirements and allows retries."""
    return _catalog(ValidatingCatalogBackend(), io, config, reporter, namespace)


@pytest.fixture
def cas_catalog(
    io: InMemoryFileIO,
    config: CatalogConfig,
    reporter: RecordingReporter,
    namespace: Namespace,
) -> Catalog:
    """Catalog whose backend only compares pointers (one attempt per commit)."""
    return _catalog(InMemoryCatalogBackend(), io, config, reporter, namespace)


@pytest.fixture
def table(catalog: Catalog, identifier: TableIdentifier, schema: Schema) -> Table:
    """Empty unpartitioned table ``db.events``."""
    return catalog.create_table(identifier, schema)


__all__ = ["RecordingReporter"]
