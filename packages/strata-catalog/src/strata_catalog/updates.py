"""Metadata update actions and the pure fold that applies them.

Each builder expresses its change as a list of MetadataUpdate actions. The
same actions are folded onto the base at apply time and, on an authoritative
commit retry, replayed onto the refreshed base. Actions that add a schema,
spec or sort order assign the id at fold time (reusing an existing id when the
content matches), and the matching ``Set*`` action may refer to "the one just
added" with id -1.

Example:
    >>> updates = [AddSchema(added_schema=schema, last_column_id=3), SetCurrentSchema()]
    >>> new_metadata = apply_updates(base, updates)
"""

from __future__ import annotations

from functools import singledispatch
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from strata_catalog.config import TableProperties
from strata_catalog.errors import NoSuchSnapshotError, ValidationError
from strata_catalog.metadata import (
    SUPPORTED_FORMAT_VERSIONS,
    TableMetadata,
    rebind_sort_order,
    rebind_spec,
    split_format_version,
)
from strata_catalog.partitioning import PARTITION_DATA_ID_START, PartitionField, PartitionSpec
from strata_catalog.schema import Schema, reassign_ids_by_name
from strata_catalog.snapshots import (
    MAIN_BRANCH,
    RefType,
    Snapshot,
    SnapshotLogEntry,
    SnapshotRef,
    now_ms,
)
from strata_catalog.sorting import INITIAL_SORT_ORDER_ID, UNSORTED_ORDER_ID, SortOrder

LAST_ADDED = -1
"""Id placeholder meaning "the schema/spec/order added earlier in this fold"."""


# =============================================================================
# Update Actions
# =============================================================================


class _Update(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class UpgradeFormatVersion(_Update):
    action: Literal["upgrade-format-version"] = "upgrade-format-version"
    format_version: int = Field(..., ge=1)


class AddSchema(_Update):
    action: Literal["add-schema"] = "add-schema"
    added_schema: Schema
    last_column_id: int = Field(..., ge=0)


class SetCurrentSchema(_Update):
    action: Literal["set-current-schema"] = "set-current-schema"
    schema_id: int = LAST_ADDED


class AddPartitionSpec(_Update):
    action: Literal["add-spec"] = "add-spec"
    spec: PartitionSpec


class SetDefaultSpec(_Update):
    action: Literal["set-default-spec"] = "set-default-spec"
    spec_id: int = LAST_ADDED


class AddSortOrder(_Update):
    action: Literal["add-sort-order"] = "add-sort-order"
    sort_order: SortOrder


class SetDefaultSortOrder(_Update):
    action: Literal["set-default-sort-order"] = "set-default-sort-order"
    sort_order_id: int = LAST_ADDED


class AddSnapshot(_Update):
    action: Literal["add-snapshot"] = "add-snapshot"
    snapshot: Snapshot


class SetSnapshotRef(_Update):
    action: Literal["set-snapshot-ref"] = "set-snapshot-ref"
    ref_name: str = Field(..., min_length=1)
    snapshot_id: int
    ref_type: RefType = RefType.BRANCH
    max_ref_age_ms: int | None = None
    max_snapshot_age_ms: int | None = None
    min_snapshots_to_keep: int | None = None


class RemoveSnapshots(_Update):
    action: Literal["remove-snapshots"] = "remove-snapshots"
    snapshot_ids: tuple[int, ...]


class RemoveSnapshotRef(_Update):
    action: Literal["remove-snapshot-ref"] = "remove-snapshot-ref"
    ref_name: str


class SetLocation(_Update):
    action: Literal["set-location"] = "set-location"
    location: str = Field(..., min_length=1)


class SetProperties(_Update):
    action: Literal["set-properties"] = "set-properties"
    updates: dict[str, str]


class RemoveProperties(_Update):
    action: Literal["remove-properties"] = "remove-properties"
    removals: tuple[str, ...]


class RemoveSchemas(_Update):
    action: Literal["remove-schemas"] = "remove-schemas"
    schema_ids: tuple[int, ...]


class RemovePartitionSpecs(_Update):
    action: Literal["remove-partition-specs"] = "remove-partition-specs"
    spec_ids: tuple[int, ...]


class RemoveSortOrders(_Update):
    action: Literal["remove-sort-orders"] = "remove-sort-orders"
    sort_order_ids: tuple[int, ...]


MetadataUpdate = (
    UpgradeFormatVersion
    | AddSchema
    | SetCurrentSchema
    | AddPartitionSpec
    | SetDefaultSpec
    | AddSortOrder
    | SetDefaultSortOrder
    | AddSnapshot
    | SetSnapshotRef
    | RemoveSnapshots
    | RemoveSnapshotRef
    | SetLocation
    | SetProperties
    | RemoveProperties
    | RemoveSchemas
    | RemovePartitionSpecs
    | RemoveSortOrders
)


# =============================================================================
# Fold
# =============================================================================


class _UpdateContext:
    """Ids added earlier in the fold, for LAST_ADDED resolution."""

    def __init__(self) -> None:
        self.last_added_schema_id: int | None = None
        self.last_added_spec_id: int | None = None
        self.last_added_order_id: int | None = None
        self.added_snapshots: dict[int, int] = {}

    def resolve(self, requested: int, last_added: int | None, kind: str) -> int:
        if requested != LAST_ADDED:
            return requested
        if last_added is None:
            msg = f"Cannot set last added {kind}: no {kind} has been added"
            raise ValidationError(msg, field=kind)
        return last_added


@singledispatch
def _apply_table_update(
    update: _Update,
    metadata: TableMetadata,
    context: _UpdateContext,
) -> TableMetadata:
    msg = f"Unsupported metadata update: {update}"
    raise NotImplementedError(msg)


@_apply_table_update.register(UpgradeFormatVersion)
def _(
    update: UpgradeFormatVersion, metadata: TableMetadata, context: _UpdateContext
) -> TableMetadata:
    if update.format_version not in SUPPORTED_FORMAT_VERSIONS:
        msg = f"Unsupported format version: {update.format_version}"
        raise ValidationError(msg, field="format_version", value=update.format_version)
    if update.format_version < metadata.format_version:
        msg = f"Cannot downgrade v{metadata.format_version} table to v{update.format_version}"
        raise ValidationError(msg, field="format_version", value=update.format_version)
    if update.format_version == metadata.format_version:
        return metadata
    return metadata.model_copy(update={"format_version": update.format_version})


@_apply_table_update.register(AddSchema)
def _(update: AddSchema, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    if update.last_column_id < metadata.last_column_id:
        msg = (
            f"Invalid last column id {update.last_column_id}, "
            f"must be >= {metadata.last_column_id}"
        )
        raise ValidationError(msg, field="last_column_id", value=update.last_column_id)
    last_column_id = max(metadata.last_column_id, update.last_column_id)
    for existing in metadata.schemas:
        if existing.same_structure(update.added_schema):
            context.last_added_schema_id = existing.schema_id
            return metadata.model_copy(update={"last_column_id": last_column_id})
    schema_id = max(s.schema_id for s in metadata.schemas) + 1
    context.last_added_schema_id = schema_id
    added = update.added_schema.model_copy(update={"schema_id": schema_id})
    return metadata.model_copy(
        update={"schemas": (*metadata.schemas, added), "last_column_id": last_column_id},
    )


@_apply_table_update.register(SetCurrentSchema)
def _(update: SetCurrentSchema, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    schema_id = context.resolve(update.schema_id, context.last_added_schema_id, "schema")
    if metadata.schema_by_id(schema_id) is None:
        msg = f"Cannot set current schema to unknown schema: {schema_id}"
        raise ValidationError(msg, field="schema_id", value=schema_id)
    return metadata.model_copy(update={"current_schema_id": schema_id})


@_apply_table_update.register(AddPartitionSpec)
def _(update: AddPartitionSpec, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    last_partition_id = max(metadata.last_partition_id, update.spec.last_assigned_field_id)
    for existing in metadata.specs:
        if existing.compatible_with(update.spec):
            context.last_added_spec_id = existing.spec_id
            return metadata
    spec_id = max(s.spec_id for s in metadata.specs) + 1
    context.last_added_spec_id = spec_id
    added = update.spec.model_copy(update={"spec_id": spec_id})
    return metadata.model_copy(
        update={"specs": (*metadata.specs, added), "last_partition_id": last_partition_id},
    )


@_apply_table_update.register(SetDefaultSpec)
def _(update: SetDefaultSpec, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    spec_id = context.resolve(update.spec_id, context.last_added_spec_id, "partition spec")
    if metadata.spec_by_id(spec_id) is None:
        msg = f"Cannot set default partition spec to unknown spec: {spec_id}"
        raise ValidationError(msg, field="spec_id", value=spec_id)
    return metadata.model_copy(update={"default_spec_id": spec_id})


@_apply_table_update.register(AddSortOrder)
def _(update: AddSortOrder, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    for existing in metadata.sort_orders:
        if existing.same_order(update.sort_order):
            context.last_added_order_id = existing.order_id
            return metadata
    if update.sort_order.is_unsorted:
        order_id = UNSORTED_ORDER_ID
    else:
        order_id = max([o.order_id for o in metadata.sort_orders], default=UNSORTED_ORDER_ID) + 1
    context.last_added_order_id = order_id
    added = update.sort_order.model_copy(update={"order_id": order_id})
    orders = tuple(sorted((*metadata.sort_orders, added), key=lambda o: o.order_id))
    return metadata.model_copy(update={"sort_orders": orders})


@_apply_table_update.register(SetDefaultSortOrder)
def _(
    update: SetDefaultSortOrder, metadata: TableMetadata, context: _UpdateContext
) -> TableMetadata:
    order_id = context.resolve(update.sort_order_id, context.last_added_order_id, "sort order")
    if metadata.sort_order_by_id(order_id) is None:
        msg = f"Cannot set default sort order to unknown order: {order_id}"
        raise ValidationError(msg, field="sort_order_id", value=order_id)
    return metadata.model_copy(update={"default_sort_order_id": order_id})


@_apply_table_update.register(AddSnapshot)
def _(update: AddSnapshot, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    snapshot = update.snapshot
    if metadata.snapshot_by_id(snapshot.snapshot_id) is not None:
        msg = f"Snapshot already exists: {snapshot.snapshot_id}"
        raise ValidationError(msg, field="snapshot_id", value=snapshot.snapshot_id)
    if (
        metadata.format_version >= 2
        and snapshot.parent_snapshot_id is not None
        and snapshot.sequence_number <= metadata.last_sequence_number
    ):
        msg = (
            f"Cannot add snapshot with sequence number {snapshot.sequence_number} "
            f"older than last sequence number {metadata.last_sequence_number}"
        )
        raise ValidationError(msg, field="sequence_number", value=snapshot.sequence_number)
    context.added_snapshots[snapshot.snapshot_id] = snapshot.timestamp_ms
    return metadata.model_copy(
        update={
            "snapshots": (*metadata.snapshots, snapshot),
            "last_sequence_number": max(metadata.last_sequence_number, snapshot.sequence_number),
        },
    )


@_apply_table_update.register(SetSnapshotRef)
def _(update: SetSnapshotRef, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    if metadata.snapshot_by_id(update.snapshot_id) is None:
        msg = f"Cannot set {update.ref_name} to unknown snapshot: {update.snapshot_id}"
        raise NoSuchSnapshotError(msg, snapshot_id=update.snapshot_id)
    if update.ref_name == MAIN_BRANCH and update.ref_type != RefType.BRANCH:
        msg = f"Cannot create a tag named {MAIN_BRANCH}"
        raise ValidationError(msg, field="ref_name", value=update.ref_name)
    ref = SnapshotRef(
        snapshot_id=update.snapshot_id,
        ref_type=update.ref_type,
        max_ref_age_ms=update.max_ref_age_ms,
        max_snapshot_age_ms=update.max_snapshot_age_ms,
        min_snapshots_to_keep=update.min_snapshots_to_keep,
    )
    if metadata.refs.get(update.ref_name) == ref:
        return metadata
    changes: dict[str, object] = {"refs": {**metadata.refs, update.ref_name: ref}}
    if update.ref_name == MAIN_BRANCH:
        timestamp = context.added_snapshots.get(update.snapshot_id, now_ms())
        entry = SnapshotLogEntry(timestamp_ms=timestamp, snapshot_id=update.snapshot_id)
        changes["snapshot_log"] = (*metadata.snapshot_log, entry)
    return metadata.model_copy(update=changes)


@_apply_table_update.register(RemoveSnapshots)
def _(update: RemoveSnapshots, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    removed = set(update.snapshot_ids)
    referenced = sorted(n for n, r in metadata.refs.items() if r.snapshot_id in removed)
    if referenced:
        msg = f"Cannot remove snapshots still referenced by refs: {referenced}"
        raise ValidationError(msg, field="snapshot_ids", value=referenced)
    return metadata.model_copy(
        update={
            "snapshots": tuple(s for s in metadata.snapshots if s.snapshot_id not in removed),
            "snapshot_log": tuple(
                e for e in metadata.snapshot_log if e.snapshot_id not in removed
            ),
        },
    )


@_apply_table_update.register(RemoveSnapshotRef)
def _(update: RemoveSnapshotRef, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    if update.ref_name not in metadata.refs:
        return metadata
    refs = {n: r for n, r in metadata.refs.items() if n != update.ref_name}
    return metadata.model_copy(update={"refs": refs})


@_apply_table_update.register(SetLocation)
def _(update: SetLocation, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    return metadata.model_copy(update={"location": update.location.rstrip("/")})


@_apply_table_update.register(SetProperties)
def _(update: SetProperties, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    reserved = TableProperties.RESERVED & update.updates.keys()
    if reserved:
        msg = f"Cannot set reserved table properties: {sorted(reserved)}"
        raise ValidationError(msg, field="properties", value=sorted(reserved))
    return metadata.model_copy(update={"properties": {**metadata.properties, **update.updates}})


@_apply_table_update.register(RemoveProperties)
def _(update: RemoveProperties, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    removals = set(update.removals)
    properties = {k: v for k, v in metadata.properties.items() if k not in removals}
    return metadata.model_copy(update={"properties": properties})


@_apply_table_update.register(RemoveSchemas)
def _(update: RemoveSchemas, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    if metadata.current_schema_id in update.schema_ids:
        msg = f"Cannot remove current schema: {metadata.current_schema_id}"
        raise ValidationError(msg, field="schema_ids", value=metadata.current_schema_id)
    removed = set(update.schema_ids)
    schemas = tuple(s for s in metadata.schemas if s.schema_id not in removed)
    return metadata.model_copy(update={"schemas": schemas})


@_apply_table_update.register(RemovePartitionSpecs)
def _(
    update: RemovePartitionSpecs, metadata: TableMetadata, context: _UpdateContext
) -> TableMetadata:
    if metadata.default_spec_id in update.spec_ids:
        msg = f"Cannot remove default partition spec: {metadata.default_spec_id}"
        raise ValidationError(msg, field="spec_ids", value=metadata.default_spec_id)
    removed = set(update.spec_ids)
    specs = tuple(s for s in metadata.specs if s.spec_id not in removed)
    return metadata.model_copy(update={"specs": specs})


@_apply_table_update.register(RemoveSortOrders)
def _(update: RemoveSortOrders, metadata: TableMetadata, context: _UpdateContext) -> TableMetadata:
    if metadata.default_sort_order_id in update.sort_order_ids:
        msg = f"Cannot remove default sort order: {metadata.default_sort_order_id}"
        raise ValidationError(msg, field="sort_order_ids", value=metadata.default_sort_order_id)
    removed = set(update.sort_order_ids)
    orders = tuple(o for o in metadata.sort_orders if o.order_id not in removed)
    return metadata.model_copy(update={"sort_orders": orders})


def apply_updates(base: TableMetadata, updates: list[MetadataUpdate]) -> TableMetadata:
    """Fold ``updates`` onto ``base`` and return the new metadata.

    Pure: ``base`` is unchanged and nothing is written. The result carries no
    metadata file location until it is committed.

    Raises:
        ValidationError: If an update is invalid for the metadata it meets.
        NoSuchSnapshotError: If a ref is pointed at an unknown snapshot.
    """
    context = _UpdateContext()
    metadata = base
    for update in updates:
        metadata = _apply_table_update(update, metadata, context)

    last_updated_ms = max(
        now_ms(),
        base.last_updated_ms,
        *context.added_snapshots.values(),
    )
    metadata = metadata.model_copy(
        update={"last_updated_ms": last_updated_ms, "metadata_file_location": None},
    )
    try:
        metadata.check_references()
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    return metadata


# =============================================================================
# Replacement
# =============================================================================


def replace_table_updates(
    base: TableMetadata,
    schema: Schema,
    spec: PartitionSpec,
    sort_order: SortOrder,
    location: str | None,
    properties: dict[str, str],
) -> list[MetadataUpdate]:
    """Updates that replace ``base``'s definition while keeping its identity.

    The uuid, snapshots and snapshot log are kept; the ``main`` ref is
    removed. Columns keep the id of a same-named column in the current schema,
    partition fields keep the id of an existing field with the same source
    and transform, requested properties are merged over the existing ones and
    the format version only ever goes up.

    Raises:
        ValidationError: If the spec or order cannot be bound to the new schema.
    """
    requested_version, requested_properties = split_format_version(
        properties, base.format_version
    )
    updates: list[MetadataUpdate] = []
    if requested_version > base.format_version:
        updates.append(UpgradeFormatVersion(format_version=requested_version))

    fresh_schema, last_column_id, _ = reassign_ids_by_name(
        schema, base.schema(), base.last_column_id
    )
    existing_schema = next((s for s in base.schemas if s.same_structure(fresh_schema)), None)
    if existing_schema is not None:
        updates.append(SetCurrentSchema(schema_id=existing_schema.schema_id))
    else:
        updates.append(AddSchema(added_schema=fresh_schema, last_column_id=last_column_id))
        updates.append(SetCurrentSchema())

    fresh_spec = _replacement_spec(base, spec, schema, fresh_schema)
    existing_spec = next((s for s in base.specs if s.compatible_with(fresh_spec)), None)
    if existing_spec is not None:
        updates.append(SetDefaultSpec(spec_id=existing_spec.spec_id))
    else:
        updates.append(AddPartitionSpec(spec=fresh_spec))
        updates.append(SetDefaultSpec())

    fresh_order = rebind_sort_order(sort_order, schema, fresh_schema, INITIAL_SORT_ORDER_ID)
    existing_order = next((o for o in base.sort_orders if o.same_order(fresh_order)), None)
    if existing_order is not None:
        updates.append(SetDefaultSortOrder(sort_order_id=existing_order.order_id))
    else:
        updates.append(AddSortOrder(sort_order=fresh_order))
        updates.append(SetDefaultSortOrder())

    if location is not None and location.rstrip("/") != base.location:
        updates.append(SetLocation(location=location))
    if requested_properties:
        updates.append(SetProperties(updates=requested_properties))
    if MAIN_BRANCH in base.refs:
        updates.append(RemoveSnapshotRef(ref_name=MAIN_BRANCH))
    return updates


def _replacement_spec(
    base: TableMetadata,
    spec: PartitionSpec,
    source_schema: Schema,
    fresh_schema: Schema,
) -> PartitionSpec:
    bound = rebind_spec(
        spec,
        source_schema,
        fresh_schema,
        0,
        iter(range(PARTITION_DATA_ID_START, PARTITION_DATA_ID_START + len(spec.fields))),
    )
    known = {
        (f.source_id, f.transform): f.field_id for s in base.specs for f in s.fields
    }
    last_id = base.last_partition_id
    fields = []
    for field in bound.fields:
        field_id = known.get((field.source_id, field.transform))
        if field_id is None:
            last_id += 1
            field_id = last_id
        fields.append(
            PartitionField(
                source_id=field.source_id,
                field_id=field_id,
                name=field.name,
                transform=field.transform,
            )
        )
    return PartitionSpec(spec_id=0, fields=tuple(fields))


__all__ = [
    "LAST_ADDED",
    "AddPartitionSpec",
    "AddSchema",
    "AddSnapshot",
    "AddSortOrder",
    "MetadataUpdate",
    "RemovePartitionSpecs",
    "RemoveProperties",
    "RemoveSchemas",
    "RemoveSnapshotRef",
    "RemoveSnapshots",
    "RemoveSortOrders",
    "SetCurrentSchema",
    "SetDefaultSortOrder",
    "SetDefaultSpec",
    "SetLocation",
    "SetProperties",
    "SetSnapshotRef",
    "UpgradeFormatVersion",
    "apply_updates",
    "replace_table_updates",
]
