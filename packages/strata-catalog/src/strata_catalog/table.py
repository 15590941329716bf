"""Table handles, scans and read-only metadata tables.

A ``Table`` wraps a TableOperations and hands out update builders bound to
it. Reads go through the last loaded metadata; ``refresh()`` re-reads the
catalog pointer.

Example:
    >>> table = catalog.load_table(TableIdentifier.of("db", "events"))
    >>> table.update_schema().add_column("region", FieldType.STRING).commit()
    >>> tasks = table.new_scan().use_ref("audit").plan_files()
"""

from __future__ import annotations

import json
import time
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict

from strata_catalog.errors import ValidationError
from strata_catalog.expire import ExpireSnapshots
from strata_catalog.manage_snapshots import ManageSnapshots
from strata_catalog.partitioning import PartitionSpec
from strata_catalog.properties_update import UpdateProperties
from strata_catalog.reporting import ScanReport
from strata_catalog.schema import NestedField, Schema
from strata_catalog.schema_update import UpdateSchema
from strata_catalog.snapshot_producer import AppendFiles, DeleteFiles, OverwriteFiles
from strata_catalog.snapshots import (
    DataFile,
    RefType,
    Snapshot,
    SnapshotLogEntry,
    SnapshotRef,
    read_data_files,
)
from strata_catalog.sort_order_update import ReplaceSortOrder
from strata_catalog.sorting import SortOrder
from strata_catalog.spec_update import UpdateSpec
from strata_catalog.transaction import Transaction, TransactionKind
from strata_catalog.types import FieldType

if TYPE_CHECKING:
    from strata_catalog.identifiers import TableIdentifier
    from strata_catalog.io import FileIO
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import TableOperations
    from strata_catalog.reporting import MetricsReporter

logger = structlog.get_logger(__name__)


# =============================================================================
# Table
# =============================================================================


class Table:
    """A catalog table.

    Attributes:
        identifier: Catalog identifier.
        operations: Commit engine for this table.
    """

    def __init__(
        self,
        identifier: TableIdentifier,
        operations: TableOperations,
        reporter: MetricsReporter,
        catalog_name: str,
    ) -> None:
        """Initialize Table.

        Args:
            identifier: Catalog identifier.
            operations: Commit engine for this table.
            reporter: Receives a ScanReport per planning call.
            catalog_name: Name of the owning catalog.
        """
        self.identifier = identifier
        self.operations = operations
        self._reporter = reporter
        self._catalog_name = catalog_name

    def name(self) -> str:
        """Fully qualified name, ``{catalog}.{namespace}.{table}``."""
        return f"{self._catalog_name}.{self.identifier}"

    @property
    def metadata(self) -> TableMetadata:
        return self.operations.current()

    @property
    def io(self) -> FileIO:
        return self.operations.io

    def refresh(self) -> Table:
        """Re-read the catalog pointer."""
        self.operations.refresh()
        return self

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    def uuid(self) -> str:
        return self.metadata.uuid

    def format_version(self) -> int:
        return self.metadata.format_version

    def location(self) -> str:
        return self.metadata.location

    def properties(self) -> dict[str, str]:
        return dict(self.metadata.properties)

    def schema(self) -> Schema:
        return self.metadata.schema()

    def schemas(self) -> dict[int, Schema]:
        return {s.schema_id: s for s in self.metadata.schemas}

    def spec(self) -> PartitionSpec:
        return self.metadata.spec()

    def specs(self) -> dict[int, PartitionSpec]:
        return {s.spec_id: s for s in self.metadata.specs}

    def sort_order(self) -> SortOrder:
        return self.metadata.sort_order()

    def sort_orders(self) -> dict[int, SortOrder]:
        return {o.order_id: o for o in self.metadata.sort_orders}

    def current_snapshot(self) -> Snapshot | None:
        return self.metadata.current_snapshot()

    def snapshot(self, snapshot_id: int) -> Snapshot | None:
        return self.metadata.snapshot_by_id(snapshot_id)

    def snapshots(self) -> list[Snapshot]:
        return list(self.metadata.snapshots)

    def snapshot_for_ref(self, name: str) -> Snapshot | None:
        return self.metadata.snapshot_for_ref(name)

    def refs(self) -> dict[str, SnapshotRef]:
        return dict(self.metadata.refs)

    def history(self) -> list[SnapshotLogEntry]:
        """Entries of the main branch's snapshot log, oldest first."""
        return list(self.metadata.snapshot_log)

    def metadata_file_location(self) -> str | None:
        return self.metadata.metadata_file_location

    def metadata_file_locations(self) -> list[str]:
        """Metadata files still tracked: the retained log entries plus the current file."""
        metadata = self.metadata
        locations = [entry.metadata_file for entry in metadata.previous_files]
        if metadata.metadata_file_location is not None:
            locations.append(metadata.metadata_file_location)
        return locations

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def update_schema(self) -> UpdateSchema:
        return UpdateSchema(self.operations)

    def update_spec(self) -> UpdateSpec:
        return UpdateSpec(self.operations)

    def replace_sort_order(self) -> ReplaceSortOrder:
        return ReplaceSortOrder(self.operations)

    def update_properties(self) -> UpdateProperties:
        return UpdateProperties(self.operations)

    def manage_snapshots(self) -> ManageSnapshots:
        return ManageSnapshots(self.operations)

    def new_append(self) -> AppendFiles:
        return AppendFiles(self.operations)

    def new_delete(self) -> DeleteFiles:
        return DeleteFiles(self.operations)

    def new_overwrite(self) -> OverwriteFiles:
        return OverwriteFiles(self.operations)

    def expire_snapshots(self) -> ExpireSnapshots:
        return ExpireSnapshots(self.operations)

    def new_transaction(self) -> Transaction:
        """Start a transaction on the currently loaded metadata."""
        return Transaction(self.operations, TransactionKind.SIMPLE, self.operations.current())

    def new_scan(self) -> TableScan:
        return TableScan(self.metadata, self.io, self._reporter, self.name())

    def __repr__(self) -> str:
        """Return string representation."""
        return f"Table(name={self.name()!r})"


# =============================================================================
# Scans
# =============================================================================


class FileScanTask(BaseModel):
    """One data file to read, with the spec it was written with."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    data_file: DataFile
    spec: PartitionSpec


class TableScan:
    """Plans the data files of one snapshot.

    Scans are immutable: ``use_ref`` and ``use_snapshot`` return a new scan.
    """

    def __init__(
        self,
        metadata: TableMetadata,
        io: FileIO,
        reporter: MetricsReporter,
        table_name: str,
        snapshot_id: int | None = None,
        ref_name: str | None = None,
    ) -> None:
        self._metadata = metadata
        self._io = io
        self._reporter = reporter
        self._table_name = table_name
        self._snapshot_id = snapshot_id
        self._ref_name = ref_name

    def use_ref(self, name: str) -> TableScan:
        """Scan the head of branch or tag ``name``.

        Raises:
            ValidationError: If the ref does not exist.
        """
        ref = self._metadata.refs.get(name)
        if ref is None:
            msg = f"Cannot find ref {name}"
            raise ValidationError(msg, field="ref", value=name)
        return TableScan(
            self._metadata, self._io, self._reporter, self._table_name, ref.snapshot_id, name
        )

    def use_snapshot(self, snapshot_id: int) -> TableScan:
        if self._metadata.snapshot_by_id(snapshot_id) is None:
            msg = f"Cannot find snapshot with id: {snapshot_id}"
            raise ValidationError(msg, field="snapshot_id", value=snapshot_id)
        return TableScan(self._metadata, self._io, self._reporter, self._table_name, snapshot_id)

    def snapshot(self) -> Snapshot | None:
        """The snapshot to read; the current snapshot unless another was selected."""
        if self._snapshot_id is None:
            return self._metadata.current_snapshot()
        return self._metadata.snapshot_by_id(self._snapshot_id)

    def schema(self) -> Schema:
        """Branches read with the table schema; tags and snapshots with their own."""
        if self._snapshot_id is None:
            return self._metadata.schema()
        ref = self._metadata.refs.get(self._ref_name) if self._ref_name else None
        if ref is not None and ref.ref_type == RefType.BRANCH:
            return self._metadata.schema()
        snapshot = self.snapshot()
        if snapshot is not None and snapshot.schema_id is not None:
            schema = self._metadata.schema_by_id(snapshot.schema_id)
            if schema is not None:
                return schema
        return self._metadata.schema()

    def plan_files(self) -> list[FileScanTask]:
        """Return one task per live data file and report the scan."""
        start = time.monotonic()
        snapshot = self.snapshot()
        tasks = []
        if snapshot is not None:
            for data_file in read_data_files(self._io, snapshot):
                spec = self._metadata.spec_by_id(data_file.spec_id or 0) or self._metadata.spec()
                tasks.append(FileScanTask(data_file=data_file, spec=spec))
        schema = self.schema()
        self._reporter.report(
            ScanReport(
                table_name=self._table_name,
                snapshot_id=snapshot.snapshot_id if snapshot else None,
                schema_id=schema.schema_id,
                result_data_files=len(tasks),
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        )
        logger.debug(
            "scan_planned",
            table_name=self._table_name,
            snapshot_id=snapshot.snapshot_id if snapshot else None,
            files=len(tasks),
        )
        return tasks


# =============================================================================
# Metadata Tables
# =============================================================================


class MetadataTableType(str, Enum):
    """Suffixes that address a read-only view over a table's metadata."""

    FILES = "files"
    SNAPSHOTS = "snapshots"
    HISTORY = "history"
    REFS = "refs"
    METADATA_LOG_ENTRIES = "metadata_log_entries"

    @classmethod
    def from_name(cls, name: str) -> MetadataTableType | None:
        return next((t for t in cls if t.value == name.lower()), None)


def _columns(*columns: tuple[str, FieldType, bool]) -> Schema:
    return Schema(
        fields=tuple(
            NestedField(field_id=i, name=name, field_type=field_type, required=required)
            for i, (name, field_type, required) in enumerate(columns, start=1)
        )
    )


_METADATA_TABLE_SCHEMAS = {
    MetadataTableType.FILES: _columns(
        ("file_path", FieldType.STRING, True),
        ("spec_id", FieldType.INT, False),
        ("partition", FieldType.STRING, True),
        ("record_count", FieldType.LONG, True),
        ("file_size_in_bytes", FieldType.LONG, True),
    ),
    MetadataTableType.SNAPSHOTS: _columns(
        ("committed_at", FieldType.TIMESTAMPTZ, True),
        ("snapshot_id", FieldType.LONG, True),
        ("parent_id", FieldType.LONG, False),
        ("operation", FieldType.STRING, False),
        ("manifest_list", FieldType.STRING, False),
        ("summary", FieldType.STRING, False),
    ),
    MetadataTableType.HISTORY: _columns(
        ("made_current_at", FieldType.TIMESTAMPTZ, True),
        ("snapshot_id", FieldType.LONG, True),
        ("parent_id", FieldType.LONG, False),
        ("is_current_ancestor", FieldType.BOOLEAN, True),
    ),
    MetadataTableType.REFS: _columns(
        ("name", FieldType.STRING, True),
        ("type", FieldType.STRING, True),
        ("snapshot_id", FieldType.LONG, True),
        ("max_reference_age_in_ms", FieldType.LONG, False),
        ("min_snapshots_to_keep", FieldType.INT, False),
        ("max_snapshot_age_in_ms", FieldType.LONG, False),
    ),
    MetadataTableType.METADATA_LOG_ENTRIES: _columns(
        ("timestamp", FieldType.TIMESTAMPTZ, True),
        ("file", FieldType.STRING, True),
    ),
}


class MetadataTable:
    """Read-only projection of a table's metadata, addressed as ``{table}.{suffix}``."""

    def __init__(self, table: Table, table_type: MetadataTableType) -> None:
        self._table = table
        self.table_type = table_type

    def name(self) -> str:
        return f"{self._table.name()}.{self.table_type.value}"

    def schema(self) -> Schema:
        return _METADATA_TABLE_SCHEMAS[self.table_type]

    def rows(self) -> list[dict[str, Any]]:
        """Materialize the view from the base table's current metadata."""
        metadata = self._table.metadata
        if self.table_type == MetadataTableType.FILES:
            return self._file_rows(metadata)
        if self.table_type == MetadataTableType.SNAPSHOTS:
            return [
                {
                    "committed_at": s.timestamp_ms,
                    "snapshot_id": s.snapshot_id,
                    "parent_id": s.parent_snapshot_id,
                    "operation": s.operation.value,
                    "manifest_list": s.manifest_list,
                    "summary": json.dumps(s.summary, sort_keys=True),
                }
                for s in metadata.snapshots
            ]
        if self.table_type == MetadataTableType.HISTORY:
            ancestors = {s.snapshot_id for s in metadata.ancestors_of(metadata.current_snapshot_id)}
            rows = []
            for entry in metadata.snapshot_log:
                snapshot = metadata.snapshot_by_id(entry.snapshot_id)
                rows.append(
                    {
                        "made_current_at": entry.timestamp_ms,
                        "snapshot_id": entry.snapshot_id,
                        "parent_id": snapshot.parent_snapshot_id if snapshot else None,
                        "is_current_ancestor": entry.snapshot_id in ancestors,
                    }
                )
            return rows
        if self.table_type == MetadataTableType.REFS:
            return [
                {
                    "name": name,
                    "type": ref.ref_type.value.upper(),
                    "snapshot_id": ref.snapshot_id,
                    "max_reference_age_in_ms": ref.max_ref_age_ms,
                    "min_snapshots_to_keep": ref.min_snapshots_to_keep,
                    "max_snapshot_age_in_ms": ref.max_snapshot_age_ms,
                }
                for name, ref in sorted(metadata.refs.items())
            ]
        rows = [
            {"timestamp": e.timestamp_ms, "file": e.metadata_file}
            for e in metadata.metadata_log
        ]
        if metadata.metadata_file_location is not None:
            rows.append(
                {"timestamp": metadata.last_updated_ms, "file": metadata.metadata_file_location}
            )
        return rows

    def _file_rows(self, metadata: TableMetadata) -> list[dict[str, Any]]:
        snapshot = metadata.current_snapshot()
        if snapshot is None:
            return []
        return [
            {
                "file_path": f.file_path,
                "spec_id": f.spec_id,
                "partition": "/".join(f"{k}={v}" for k, v in f.partition.items()),
                "record_count": f.record_count,
                "file_size_in_bytes": f.file_size_in_bytes,
            }
            for f in read_data_files(self._table.io, snapshot)
        ]

    def __repr__(self) -> str:
        """Return string representation."""
        return f"MetadataTable(name={self.name()!r})"


__all__ = [
    "FileScanTask",
    "MetadataTable",
    "MetadataTableType",
    "Table",
    "TableScan",
]
