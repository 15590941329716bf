"""Unit tests for Table accessors, scans and metadata tables."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from strata_catalog.catalog import Catalog
from strata_catalog.errors import NoSuchTableError, ValidationError
from strata_catalog.identifiers import TableIdentifier
from strata_catalog.schema import Schema
from strata_catalog.snapshots import DataFile
from strata_catalog.table import MetadataTable, MetadataTableType, Table
from strata_catalog.types import FieldType

if TYPE_CHECKING:
    from tests.conftest import RecordingReporter

MakeFile = Callable[..., DataFile]


@pytest.fixture
def history(table: Table, make_data_file: MakeFile) -> list[int]:
    """Two appends (``a`` then ``b``); returns their snapshot ids."""
    ids = []
    for name in ("a", "b"):
        table.new_append().append_file(make_data_file(name)).commit()
        snapshot = table.current_snapshot()
        assert snapshot is not None
        ids.append(snapshot.snapshot_id)
    return ids


def _metadata_table(catalog: Catalog, suffix: str) -> MetadataTable:
    loaded = catalog.load_table(TableIdentifier.of("db", "events", suffix))
    assert isinstance(loaded, MetadataTable)
    return loaded


# =============================================================================
# Accessors
# =============================================================================


class TestTable:
    """Tests for Table accessors."""

    def test_name(self, table: Table) -> None:
        """Test the full name includes the catalog name."""
        assert table.name() == "test.db.events"
        assert repr(table) == "Table(name='test.db.events')"

    def test_defaults(self, table: Table) -> None:
        """Test a new table's location and definition accessors."""
        assert table.location() == "memory://warehouse/db/events"
        assert table.format_version() == 2
        assert table.spec().is_unpartitioned
        assert table.sort_order().is_unsorted
        assert list(table.schemas()) == [0]
        assert table.snapshots() == []
        assert table.refs() == {}

    def test_history(self, table: Table, history: list[int]) -> None:
        """Test the snapshot log lists main's snapshots oldest first."""
        assert [e.snapshot_id for e in table.history()] == history
        assert table.snapshot_for_ref("main") == table.current_snapshot()
        assert table.snapshot(history[0]) is not None

    def test_metadata_file_locations(self, table: Table, history: list[int]) -> None:
        """Test every committed version is tracked, current file last."""
        locations = table.metadata_file_locations()
        assert len(locations) == 3
        assert locations[-1] == table.metadata_file_location()
        assert locations[0].startswith(f"{table.location()}/metadata/00000-")


# =============================================================================
# Scans
# =============================================================================


class TestTableScan:
    """Tests for scan planning and time travel."""

    def test_empty_table(self, table: Table, reporter: RecordingReporter) -> None:
        """Test scanning an empty table plans nothing and still reports."""
        assert table.new_scan().plan_files() == []
        report = reporter.scan_reports[-1]
        assert report.snapshot_id is None
        assert report.result_data_files == 0
        assert report.table_name == "test.db.events"

    def test_plan_current(
        self, table: Table, history: list[int], reporter: RecordingReporter
    ) -> None:
        """Test the current snapshot's files are planned with their spec."""
        tasks = table.new_scan().plan_files()
        assert [t.data_file.file_path for t in tasks] == [
            "memory://data/a.parquet",
            "memory://data/b.parquet",
        ]
        assert all(t.spec.spec_id == 0 for t in tasks)
        assert reporter.scan_reports[-1].snapshot_id == history[1]
        assert reporter.scan_reports[-1].result_data_files == 2

    def test_use_snapshot(self, table: Table, history: list[int]) -> None:
        """Test time travel to an older snapshot."""
        tasks = table.new_scan().use_snapshot(history[0]).plan_files()
        assert [t.data_file.file_path for t in tasks] == ["memory://data/a.parquet"]

    def test_use_ref(self, table: Table, history: list[int]) -> None:
        """Test scanning a tag reads its snapshot."""
        table.manage_snapshots().create_tag("v1", history[0]).commit()
        scan = table.new_scan().use_ref("v1")
        assert scan.snapshot() == table.snapshot(history[0])

    def test_unknown_ref_and_snapshot(self, table: Table, history: list[int]) -> None:
        """Test selecting something that does not exist fails."""
        with pytest.raises(ValidationError, match="Cannot find ref x"):
            table.new_scan().use_ref("x")
        with pytest.raises(ValidationError, match="Cannot find snapshot with id: 42"):
            table.new_scan().use_snapshot(42)

    def test_scan_schema(self, table: Table, history: list[int]) -> None:
        """Test branches read with the table schema, tags and snapshots with their own."""
        table.manage_snapshots().create_tag("v1", history[1]).create_branch("audit").commit()
        table.update_schema().add_column("region", FieldType.STRING).commit()

        assert table.new_scan().schema().schema_id == 1
        assert table.new_scan().use_ref("audit").schema().schema_id == 1
        assert table.new_scan().use_ref("v1").schema().schema_id == 0
        assert table.new_scan().use_snapshot(history[0]).schema().schema_id == 0

    def test_scan_is_immutable(self, table: Table, history: list[int]) -> None:
        """Test selecting a snapshot returns a new scan."""
        scan = table.new_scan()
        scan.use_snapshot(history[0])
        assert scan.snapshot() == table.current_snapshot()


# =============================================================================
# Metadata Tables
# =============================================================================


class TestMetadataTables:
    """Tests for the read-only metadata views."""

    def test_load_by_suffix(self, catalog: Catalog, table: Table) -> None:
        """Test metadata tables are addressed as a child of the table."""
        snapshots = _metadata_table(catalog, "snapshots")
        assert snapshots.name() == "test.db.events.snapshots"
        assert snapshots.table_type == MetadataTableType.SNAPSHOTS
        assert snapshots.rows() == []

    def test_unknown_suffix(self, catalog: Catalog, table: Table) -> None:
        """Test an unknown suffix is just a missing table."""
        with pytest.raises(NoSuchTableError, match="Table does not exist: db.events.partitions"):
            catalog.load_table(TableIdentifier.of("db", "events", "partitions"))

    def test_files(self, catalog: Catalog, table: Table, history: list[int]) -> None:
        """Test the files view lists live data files."""
        rows = _metadata_table(catalog, "files").rows()
        assert [r["file_path"] for r in rows] == [
            "memory://data/a.parquet",
            "memory://data/b.parquet",
        ]
        assert rows[0]["spec_id"] == 0
        assert rows[0]["partition"] == ""
        assert rows[0]["record_count"] == 10

    def test_snapshots(self, catalog: Catalog, table: Table, history: list[int]) -> None:
        """Test the snapshots view carries operation and summary."""
        rows = _metadata_table(catalog, "snapshots").rows()
        assert [r["snapshot_id"] for r in rows] == history
        assert rows[1]["parent_id"] == history[0]
        assert rows[1]["operation"] == "append"
        summary = json.loads(rows[1]["summary"])
        assert summary["added-data-files"] == "1"
        assert summary["total-data-files"] == "2"

    def test_history_after_rollback(
        self, catalog: Catalog, table: Table, history: list[int]
    ) -> None:
        """Test rolled-back snapshots are no longer current ancestors."""
        table.manage_snapshots().rollback_to(history[0]).commit()
        rows = _metadata_table(catalog, "history").rows()
        assert [r["snapshot_id"] for r in rows] == [history[0], history[1], history[0]]
        flags = {r["snapshot_id"]: r["is_current_ancestor"] for r in rows}
        assert flags == {history[0]: True, history[1]: False}

    def test_refs(self, catalog: Catalog, table: Table, history: list[int]) -> None:
        """Test the refs view lists branches and tags by name."""
        table.manage_snapshots().create_tag("v1", history[0]).commit()
        rows = _metadata_table(catalog, "refs").rows()
        assert [(r["name"], r["type"], r["snapshot_id"]) for r in rows] == [
            ("main", "BRANCH", history[1]),
            ("v1", "TAG", history[0]),
        ]

    def test_metadata_log_entries(
        self, catalog: Catalog, table: Table, history: list[int]
    ) -> None:
        """Test the metadata log view ends with the current file."""
        rows = _metadata_table(catalog, "metadata_log_entries").rows()
        assert [r["file"] for r in rows] == table.refresh().metadata_file_locations()

    def test_schema(self, catalog: Catalog, table: Table) -> None:
        """Test each view has a fixed schema."""
        schema = _metadata_table(catalog, "refs").schema()
        assert isinstance(schema, Schema)
        assert [f.name for f in schema.fields][:3] == ["name", "type", "snapshot_id"]
