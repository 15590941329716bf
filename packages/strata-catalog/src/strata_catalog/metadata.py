"""TableMetadata: the immutable, versioned description of a table.

Every commit produces a new TableMetadata derived from a base (see
``strata_catalog.updates.apply_updates``); instances are never mutated and are
safe to share across threads. The location of the metadata file an instance
was read from is carried in ``metadata_file_location`` but is not part of the
serialized file.

Metadata files are named ``{location}/metadata/{version:05d}-{uuid}.metadata.json``
where version increases by one per commit.

Example:
    >>> metadata = new_table_metadata(schema, UNPARTITIONED_SPEC, UNSORTED_ORDER,
    ...                               "memory://wh/db/t", {})
    >>> metadata.schema().schema_id
    0
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterator

from pydantic import BaseModel, ConfigDict, Field, model_validator

from strata_catalog.config import TableProperties
from strata_catalog.errors import ValidationError
from strata_catalog.io import FileIO
from strata_catalog.partitioning import (
    PARTITION_DATA_ID_START,
    PartitionField,
    PartitionSpec,
)
from strata_catalog.schema import Schema, assign_fresh_ids
from strata_catalog.snapshots import (
    MAIN_BRANCH,
    MetadataLogEntry,
    Snapshot,
    SnapshotLogEntry,
    SnapshotRef,
    now_ms,
)
from strata_catalog.sorting import (
    INITIAL_SORT_ORDER_ID,
    UNSORTED_ORDER,
    SortField,
    SortOrder,
)

SUPPORTED_FORMAT_VERSIONS = (1, 2, 3)
INITIAL_SCHEMA_ID = 0
INITIAL_SPEC_ID = 0
INITIAL_SEQUENCE_NUMBER = 0

_METADATA_FILE = re.compile(r"/(\d+)-[^/]*\.metadata\.json$")


class TableMetadata(BaseModel):
    """Full state of a table at one version.

    Attributes:
        uuid: Table uuid, fixed at creation and preserved by replace.
        format_version: Table format version (1..3), never decreases.
        location: Base location for data and metadata files.
        last_sequence_number: Highest sequence number assigned (0 on v1).
        last_updated_ms: Time of the change that produced this version.
        last_column_id: Highest field id ever assigned.
        schemas: Every schema, by ascending id.
        current_schema_id: Id of the current schema.
        specs: Every partition spec, by ascending id.
        default_spec_id: Id of the spec new files are written with.
        last_partition_id: Highest partition field id ever assigned.
        sort_orders: Every sort order, by ascending id.
        default_sort_order_id: Id of the default sort order (0 = unsorted).
        properties: Table properties.
        snapshots: Every retained snapshot.
        refs: Branches and tags by name; ``main`` is the current snapshot.
        snapshot_log: History of the main branch.
        metadata_log: Prior metadata file locations, oldest first.
        metadata_file_location: Where this version was written (not serialized).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    uuid: str = Field(..., min_length=1, description="Table uuid")
    format_version: int = Field(default=2, ge=1, le=3, description="Format version")
    location: str = Field(..., min_length=1, description="Table base location")
    last_sequence_number: int = Field(default=INITIAL_SEQUENCE_NUMBER, ge=0)
    last_updated_ms: int = Field(..., ge=0, description="Last update time (epoch ms)")
    last_column_id: int = Field(..., ge=0, description="Highest assigned field id")
    schemas: tuple[Schema, ...] = Field(..., min_length=1, description="All schemas")
    current_schema_id: int = Field(..., ge=0, description="Current schema id")
    specs: tuple[PartitionSpec, ...] = Field(..., min_length=1, description="All specs")
    default_spec_id: int = Field(..., ge=0, description="Default spec id")
    last_partition_id: int = Field(..., ge=PARTITION_DATA_ID_START - 1)
    sort_orders: tuple[SortOrder, ...] = Field(..., min_length=1, description="All orders")
    default_sort_order_id: int = Field(..., ge=0, description="Default sort order id")
    properties: dict[str, str] = Field(default_factory=dict, description="Table properties")
    snapshots: tuple[Snapshot, ...] = Field(default=(), description="Retained snapshots")
    refs: dict[str, SnapshotRef] = Field(default_factory=dict, description="Branches and tags")
    snapshot_log: tuple[SnapshotLogEntry, ...] = Field(default=(), description="Main history")
    metadata_log: tuple[MetadataLogEntry, ...] = Field(default=(), description="Prior files")
    metadata_file_location: str | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _validate_references(self) -> TableMetadata:
        self.check_references()
        return self

    def check_references(self) -> None:
        """Raise ValueError if any id reference does not resolve."""
        if self.schema_by_id(self.current_schema_id) is None:
            msg = f"Current schema id does not exist: {self.current_schema_id}"
            raise ValueError(msg)
        if self.spec_by_id(self.default_spec_id) is None:
            msg = f"Default partition spec id does not exist: {self.default_spec_id}"
            raise ValueError(msg)
        if self.sort_order_by_id(self.default_sort_order_id) is None:
            msg = f"Default sort order id does not exist: {self.default_sort_order_id}"
            raise ValueError(msg)
        snapshot_ids = {s.snapshot_id for s in self.snapshots}
        for name, ref in self.refs.items():
            if ref.snapshot_id not in snapshot_ids:
                msg = f"Ref {name} points at unknown snapshot: {ref.snapshot_id}"
                raise ValueError(msg)
        schema_ids = {s.schema_id for s in self.schemas}
        for snapshot in self.snapshots:
            if snapshot.schema_id is not None and snapshot.schema_id not in schema_ids:
                msg = (
                    f"Snapshot {snapshot.snapshot_id} references unknown schema: "
                    f"{snapshot.schema_id}"
                )
                raise ValueError(msg)

    # -------------------------------------------------------------------------
    # Schemas, specs and sort orders
    # -------------------------------------------------------------------------

    def schema(self) -> Schema:
        """Return the current schema."""
        schema = self.schema_by_id(self.current_schema_id)
        assert schema is not None  # guaranteed by check_references
        return schema

    def schema_by_id(self, schema_id: int) -> Schema | None:
        return next((s for s in self.schemas if s.schema_id == schema_id), None)

    def spec(self) -> PartitionSpec:
        """Return the default partition spec."""
        spec = self.spec_by_id(self.default_spec_id)
        assert spec is not None  # guaranteed by check_references
        return spec

    def spec_by_id(self, spec_id: int) -> PartitionSpec | None:
        return next((s for s in self.specs if s.spec_id == spec_id), None)

    def sort_order(self) -> SortOrder:
        """Return the default sort order."""
        order = self.sort_order_by_id(self.default_sort_order_id)
        assert order is not None  # guaranteed by check_references
        return order

    def sort_order_by_id(self, order_id: int) -> SortOrder | None:
        return next((o for o in self.sort_orders if o.order_id == order_id), None)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    @property
    def current_snapshot_id(self) -> int | None:
        ref = self.refs.get(MAIN_BRANCH)
        return ref.snapshot_id if ref else None

    def current_snapshot(self) -> Snapshot | None:
        """Return the head of the main branch, or None for an empty table."""
        snapshot_id = self.current_snapshot_id
        return self.snapshot_by_id(snapshot_id) if snapshot_id is not None else None

    def snapshot_by_id(self, snapshot_id: int) -> Snapshot | None:
        return next((s for s in self.snapshots if s.snapshot_id == snapshot_id), None)

    def snapshot_for_ref(self, name: str) -> Snapshot | None:
        ref = self.refs.get(name)
        return self.snapshot_by_id(ref.snapshot_id) if ref else None

    def ancestors_of(self, snapshot_id: int | None) -> Iterator[Snapshot]:
        """Yield ``snapshot_id`` and its retained ancestors, newest first."""
        current = self.snapshot_by_id(snapshot_id) if snapshot_id is not None else None
        while current is not None:
            yield current
            if current.parent_snapshot_id is None:
                return
            current = self.snapshot_by_id(current.parent_snapshot_id)

    def next_sequence_number(self) -> int:
        """Sequence number for a new snapshot (always 0 on v1 tables)."""
        if self.format_version == 1:
            return INITIAL_SEQUENCE_NUMBER
        return self.last_sequence_number + 1

    def next_snapshot_timestamp(self) -> int:
        """A timestamp strictly after every change recorded in this version."""
        latest = max((s.timestamp_ms for s in self.snapshots), default=0)
        return max(now_ms(), latest + 1, self.last_updated_ms + 1)

    @property
    def previous_files(self) -> tuple[MetadataLogEntry, ...]:
        """Prior metadata files still tracked by the metadata log."""
        return self.metadata_log


# =============================================================================
# Table Creation
# =============================================================================


def rebind_spec(
    spec: PartitionSpec,
    source_schema: Schema,
    target_schema: Schema,
    spec_id: int,
    field_ids: Iterator[int],
) -> PartitionSpec:
    """Rebind ``spec`` from ``source_schema`` ids to ``target_schema`` ids by column name.

    Args:
        spec: Spec bound to ``source_schema``.
        source_schema: Schema the spec was built against.
        target_schema: Schema to bind to.
        spec_id: Id for the result.
        field_ids: Supplies a partition field id per field, in order.

    Raises:
        ValidationError: If a source column is missing from ``target_schema``.
    """
    fields = []
    for field in spec.fields:
        target = _rebind_source(field.source_id, source_schema, target_schema)
        fields.append(
            PartitionField(
                source_id=target,
                field_id=next(field_ids),
                name=field.name,
                transform=field.transform,
            )
        )
    rebound = PartitionSpec(spec_id=spec_id, fields=tuple(fields))
    rebound.check_compatible(target_schema)
    return rebound


def rebind_sort_order(
    order: SortOrder,
    source_schema: Schema,
    target_schema: Schema,
    order_id: int,
) -> SortOrder:
    """Rebind ``order`` to ``target_schema`` ids by column name."""
    if order.is_unsorted:
        return UNSORTED_ORDER
    fields = tuple(
        SortField(
            source_id=_rebind_source(f.source_id, source_schema, target_schema),
            transform=f.transform,
            direction=f.direction,
            null_order=f.null_order,
        )
        for f in order.fields
    )
    rebound = SortOrder(order_id=order_id, fields=fields)
    rebound.check_compatible(target_schema)
    return rebound


def _rebind_source(source_id: int, source_schema: Schema, target_schema: Schema) -> int:
    name = source_schema.column_name(source_id)
    target = target_schema.find_field(name) if name is not None else None
    if target is None:
        msg = f"Cannot find source column: {name if name is not None else source_id}"
        raise ValidationError(msg, field="source_id", value=source_id)
    return target.field_id


def split_format_version(
    properties: dict[str, str],
    default: int,
) -> tuple[int, dict[str, str]]:
    """Pop the reserved ``format-version`` property.

    Returns:
        The requested format version (or ``default``) and the remaining properties.

    Raises:
        ValidationError: If the version is not a supported integer.
    """
    remaining = dict(properties)
    raw = remaining.pop(TableProperties.FORMAT_VERSION, None)
    if raw is None:
        return default, remaining
    try:
        version = int(raw)
    except ValueError:
        msg = f"Invalid format version: {raw}"
        raise ValidationError(msg, field=TableProperties.FORMAT_VERSION, value=raw) from None
    if version not in SUPPORTED_FORMAT_VERSIONS:
        msg = f"Unsupported format version: {version}"
        raise ValidationError(msg, field=TableProperties.FORMAT_VERSION, value=version)
    return version, remaining


def new_table_metadata(
    schema: Schema,
    spec: PartitionSpec,
    sort_order: SortOrder,
    location: str,
    properties: dict[str, str],
    format_version: int = 2,
) -> TableMetadata:
    """Build the first version of a new table.

    Field ids are reassigned from 1 in column order, partition field ids from
    1000, and partition and sort fields are rebound to the new ids by name.
    A ``format-version`` entry in ``properties`` overrides ``format_version``.

    Args:
        schema: Requested schema (caller ids are discarded).
        spec: Partition spec bound to ``schema``.
        sort_order: Sort order bound to ``schema``.
        location: Table base location.
        properties: Requested table properties.
        format_version: Version used when ``properties`` does not name one.

    Returns:
        Metadata with a fresh uuid and no snapshots.

    Raises:
        ValidationError: If the spec or order cannot be bound to the schema.
    """
    version, table_properties = split_format_version(properties, format_version)

    last_column_id = 0

    def next_column_id() -> int:
        nonlocal last_column_id
        last_column_id += 1
        return last_column_id

    fresh_schema = assign_fresh_ids(schema, next_column_id)
    fresh_spec = rebind_spec(
        spec,
        schema,
        fresh_schema,
        INITIAL_SPEC_ID,
        iter(range(PARTITION_DATA_ID_START, PARTITION_DATA_ID_START + len(spec.fields))),
    )
    fresh_order = rebind_sort_order(sort_order, schema, fresh_schema, INITIAL_SORT_ORDER_ID)

    return TableMetadata(
        uuid=str(uuid.uuid4()),
        format_version=version,
        location=location.rstrip("/"),
        last_updated_ms=now_ms(),
        last_column_id=last_column_id,
        schemas=(fresh_schema,),
        current_schema_id=fresh_schema.schema_id,
        specs=(fresh_spec,),
        default_spec_id=fresh_spec.spec_id,
        last_partition_id=fresh_spec.last_assigned_field_id,
        sort_orders=(fresh_order,),
        default_sort_order_id=fresh_order.order_id,
        properties=table_properties,
    )


# =============================================================================
# Metadata Files
# =============================================================================


def parse_metadata_version(metadata_location: str | None) -> int:
    """Return the version encoded in a metadata file name, or -1 if none."""
    if metadata_location is None:
        return -1
    match = _METADATA_FILE.search(metadata_location)
    return int(match.group(1)) if match else -1


def new_metadata_location(table_location: str, previous_location: str | None) -> str:
    """Location for the next metadata file after ``previous_location``."""
    version = parse_metadata_version(previous_location) + 1
    return f"{table_location}/metadata/{version:05d}-{uuid.uuid4()}.metadata.json"


def write_table_metadata(io: FileIO, location: str, metadata: TableMetadata) -> None:
    """Write ``metadata`` to a new file; existing files are never overwritten."""
    io.new_output(location).write(metadata.model_dump_json().encode("utf-8"))


def read_table_metadata(io: FileIO, location: str) -> TableMetadata:
    """Read the metadata file at ``location``.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    raw = io.new_input(location).read()
    metadata = TableMetadata.model_validate_json(raw)
    return metadata.model_copy(update={"metadata_file_location": location})


__all__ = [
    "INITIAL_SCHEMA_ID",
    "INITIAL_SEQUENCE_NUMBER",
    "INITIAL_SPEC_ID",
    "SUPPORTED_FORMAT_VERSIONS",
    "TableMetadata",
    "new_metadata_location",
    "new_table_metadata",
    "parse_metadata_version",
    "read_table_metadata",
    "rebind_sort_order",
    "rebind_spec",
    "split_format_version",
    "write_table_metadata",
]
