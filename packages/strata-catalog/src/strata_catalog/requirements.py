"""Commit requirements: assertions about the base a change was built on.

A pending change carries the requirements that justify it. An authoritative
backend evaluates them against the table's current metadata at swap time;
the commit engine re-evaluates them against the refreshed base before
replaying a change on retry.

Requirements are derived from the updates themselves
(``requirements_for_updates``): adding a schema asserts the last assigned field
id, setting the current schema asserts the current schema id, writing a
branch asserts the branch head, and so on. Replacing a table asserts only the
uuid plus the id counters its new schema or spec consumes.

Example:
    >>> reqs = requirements_for_updates(base, [AddSchema(...), SetCurrentSchema()])
    >>> [r.description for r in reqs]
    ['table uuid', 'last assigned field id', 'current schema']
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

from strata_catalog.errors import RequirementFailedError, TableAlreadyExistsError
from strata_catalog.metadata import TableMetadata
from strata_catalog.snapshots import RefType
from strata_catalog.updates import (
    AddPartitionSpec,
    AddSchema,
    MetadataUpdate,
    RemovePartitionSpecs,
    RemoveSchemas,
    SetCurrentSchema,
    SetDefaultSortOrder,
    SetDefaultSpec,
    SetSnapshotRef,
)


class TableRequirement(BaseModel):
    """Base class for commit requirements."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def description(self) -> str:
        raise NotImplementedError

    def validate(self, base: TableMetadata | None) -> None:
        """Raise RequirementFailedError if the requirement does not hold for ``base``."""
        raise NotImplementedError

    def _fail(self, detail: str) -> RequirementFailedError:
        return RequirementFailedError(f"Requirement failed: {detail}", requirement=self)

    def _require_base(self, base: TableMetadata | None) -> TableMetadata:
        if base is None:
            raise self._fail("current table metadata is missing")
        return base


class AssertCreate(TableRequirement):
    """The table must not exist yet."""

    type: Literal["assert-create"] = "assert-create"

    @property
    def description(self) -> str:
        return "table does not exist"

    def validate(self, base: TableMetadata | None) -> None:
        if base is not None:
            raise TableAlreadyExistsError("Requirement failed: table already exists")


class AssertTableUUID(TableRequirement):
    """The table uuid must match."""

    type: Literal["assert-table-uuid"] = "assert-table-uuid"
    uuid: str

    @property
    def description(self) -> str:
        return "table uuid"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        if base.uuid != self.uuid:
            raise self._fail(f"UUID does not match: expected {self.uuid} != {base.uuid}")


class AssertRefSnapshotId(TableRequirement):
    """A branch or tag must still point at ``snapshot_id`` (None: must not exist)."""

    type: Literal["assert-ref-snapshot-id"] = "assert-ref-snapshot-id"
    ref: str
    snapshot_id: int | None = None

    @property
    def description(self) -> str:
        return f"ref {self.ref}"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        current = base.refs.get(self.ref)
        if current is None:
            if self.snapshot_id is not None:
                raise self._fail(
                    f"branch or tag {self.ref} is missing, expected {self.snapshot_id}"
                )
            return
        kind = "branch" if current.ref_type == RefType.BRANCH else "tag"
        if self.snapshot_id is None:
            raise self._fail(f"{kind} {self.ref} was created concurrently")
        if current.snapshot_id != self.snapshot_id:
            raise self._fail(
                f"{kind} {self.ref} has changed: "
                f"expected id {self.snapshot_id} != {current.snapshot_id}"
            )


class AssertLastAssignedFieldId(TableRequirement):
    type: Literal["assert-last-assigned-field-id"] = "assert-last-assigned-field-id"
    last_assigned_field_id: int

    @property
    def description(self) -> str:
        return "last assigned field id"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        if base.last_column_id != self.last_assigned_field_id:
            raise self._fail(
                "last assigned field id changed: "
                f"expected id {self.last_assigned_field_id} != {base.last_column_id}"
            )


class AssertCurrentSchemaId(TableRequirement):
    type: Literal["assert-current-schema-id"] = "assert-current-schema-id"
    current_schema_id: int

    @property
    def description(self) -> str:
        return "current schema"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        if base.current_schema_id != self.current_schema_id:
            raise self._fail(
                "current schema changed: "
                f"expected id {self.current_schema_id} != {base.current_schema_id}"
            )


class AssertLastAssignedPartitionId(TableRequirement):
    type: Literal["assert-last-assigned-partition-id"] = "assert-last-assigned-partition-id"
    last_assigned_partition_id: int

    @property
    def description(self) -> str:
        return "last assigned partition id"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        if base.last_partition_id != self.last_assigned_partition_id:
            raise self._fail(
                "last assigned partition id changed: "
                f"expected id {self.last_assigned_partition_id} != {base.last_partition_id}"
            )


class AssertDefaultSpecId(TableRequirement):
    type: Literal["assert-default-spec-id"] = "assert-default-spec-id"
    default_spec_id: int

    @property
    def description(self) -> str:
        return "default partition spec"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        if base.default_spec_id != self.default_spec_id:
            raise self._fail(
                "default partition spec changed: "
                f"expected id {self.default_spec_id} != {base.default_spec_id}"
            )


class AssertDefaultSortOrderId(TableRequirement):
    type: Literal["assert-default-sort-order-id"] = "assert-default-sort-order-id"
    default_sort_order_id: int

    @property
    def description(self) -> str:
        return "default sort order"

    def validate(self, base: TableMetadata | None) -> None:
        base = self._require_base(base)
        if base.default_sort_order_id != self.default_sort_order_id:
            raise self._fail(
                "default sort order changed: "
                f"expected id {self.default_sort_order_id} != {base.default_sort_order_id}"
            )


# =============================================================================
# Derivation
# =============================================================================


def requirements_for_create() -> list[TableRequirement]:
    return [AssertCreate()]


def requirements_for_updates(
    base: TableMetadata,
    updates: list[MetadataUpdate],
    is_replace: bool = False,
) -> list[TableRequirement]:
    """Derive the requirements justifying ``updates`` against ``base``.

    Each kind of assertion is recorded at most once. For replacements, only
    the uuid and the id counters consumed by an added schema or spec are
    asserted.

    Args:
        base: Metadata the updates were built on.
        updates: The updates, in application order.
        is_replace: Whether the updates replace the table definition.

    Returns:
        Requirements in derivation order, starting with the uuid assertion.
    """
    requirements: list[TableRequirement] = [AssertTableUUID(uuid=base.uuid)]
    seen: set[str] = set()

    def require(key: str, requirement: TableRequirement) -> None:
        if key not in seen:
            seen.add(key)
            requirements.append(requirement)

    for update in updates:
        if isinstance(update, AddSchema):
            require(
                "last-field-id",
                AssertLastAssignedFieldId(last_assigned_field_id=base.last_column_id),
            )
        elif isinstance(update, AddPartitionSpec):
            require(
                "last-partition-id",
                AssertLastAssignedPartitionId(last_assigned_partition_id=base.last_partition_id),
            )
        elif is_replace:
            continue
        elif isinstance(update, (SetCurrentSchema, RemoveSchemas)):
            require(
                "current-schema",
                AssertCurrentSchemaId(current_schema_id=base.current_schema_id),
            )
        elif isinstance(update, (SetDefaultSpec, RemovePartitionSpecs)):
            require("default-spec", AssertDefaultSpecId(default_spec_id=base.default_spec_id))
        elif isinstance(update, SetDefaultSortOrder):
            require(
                "default-sort-order",
                AssertDefaultSortOrderId(default_sort_order_id=base.default_sort_order_id),
            )
        elif isinstance(update, SetSnapshotRef):
            current = base.refs.get(update.ref_name)
            require(
                f"ref:{update.ref_name}",
                AssertRefSnapshotId(
                    ref=update.ref_name,
                    snapshot_id=current.snapshot_id if current else None,
                ),
            )
    return requirements


def validate_requirements(
    requirements: list[TableRequirement],
    base: TableMetadata | None,
) -> None:
    """Validate every requirement against ``base``, failing on the first that does not hold."""
    for requirement in requirements:
        requirement.validate(base)


__all__ = [
    "AssertCreate",
    "AssertCurrentSchemaId",
    "AssertDefaultSortOrderId",
    "AssertDefaultSpecId",
    "AssertLastAssignedFieldId",
    "AssertLastAssignedPartitionId",
    "AssertRefSnapshotId",
    "AssertTableUUID",
    "TableRequirement",
    "requirements_for_create",
    "requirements_for_updates",
    "validate_requirements",
]
