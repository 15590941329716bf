"""Partition spec evolution builder.

Example:
    >>> table.update_spec().add_field("ts", Transform.day()).commit()
    >>> table.update_spec().remove_field("ts_day").commit()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from strata_catalog.errors import ValidationError
from strata_catalog.operations import PendingUpdate
from strata_catalog.partitioning import PartitionField, PartitionSpec, Transform, TransformType
from strata_catalog.updates import AddPartitionSpec, MetadataUpdate, SetDefaultSpec

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget

logger = structlog.get_logger(__name__)


class UpdateSpec(PendingUpdate):
    """Add, remove and rename fields of the default partition spec.

    New fields take ids after the table's ``last_partition_id``; removed ids
    are never reissued. On format v1 tables a removed field stays in the spec
    with a ``void`` transform so the positions of later fields do not move.
    """

    operation = "update-spec"

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._schema = self._base.schema()
        self._fields: list[PartitionField] = list(self._base.spec().fields)
        self._last_partition_id = self._base.last_partition_id

    def add_field(
        self,
        source_name: str,
        transform: Transform | None = None,
        name: str | None = None,
    ) -> UpdateSpec:
        """Partition by ``transform`` of ``source_name`` (identity by default)."""
        transform = transform or Transform.identity()
        source = self._schema.find_field(source_name)
        if source is None:
            msg = f"Cannot find source column: {source_name}"
            raise ValidationError(msg, field="source_name", value=source_name)
        if not transform.can_transform(source.field_type):
            msg = f"Invalid source type {source.field_type.value} for transform: {transform}"
            raise ValidationError(msg, field="transform", value=str(transform))
        for existing in self._fields:
            if existing.source_id == source.field_id and existing.transform == transform:
                msg = f"Cannot add duplicate partition field: {existing.name}"
                raise ValidationError(msg, field="transform", value=str(transform))
        field_name = name or transform.default_name(source_name)
        if self._find(field_name) is not None:
            msg = f"Cannot add partition field, name already exists: {field_name}"
            raise ValidationError(msg, field="name", value=field_name)
        self._last_partition_id += 1
        self._fields.append(
            PartitionField(
                source_id=source.field_id,
                field_id=self._last_partition_id,
                name=field_name,
                transform=transform,
            )
        )
        return self

    def remove_field(self, name: str) -> UpdateSpec:
        field = self._find(name)
        if field is None or field.transform.kind == TransformType.VOID:
            msg = f"Cannot find partition field to remove: {name}"
            raise ValidationError(msg, field="name", value=name)
        index = self._fields.index(field)
        if self._base.format_version == 1:
            self._fields[index] = field.model_copy(
                update={"transform": Transform.void(), "name": f"{field.name}_{field.field_id}"}
            )
        else:
            del self._fields[index]
        return self

    def rename_field(self, name: str, new_name: str) -> UpdateSpec:
        field = self._find(name)
        if field is None:
            msg = f"Cannot find partition field to rename: {name}"
            raise ValidationError(msg, field="name", value=name)
        if self._find(new_name) is not None:
            msg = f"Cannot rename partition field {name}, name already exists: {new_name}"
            raise ValidationError(msg, field="new_name", value=new_name)
        self._fields[self._fields.index(field)] = field.model_copy(update={"name": new_name})
        return self

    def apply(self) -> PartitionSpec:
        """Return the resulting spec without committing."""
        spec = PartitionSpec(spec_id=self._base.default_spec_id, fields=tuple(self._fields))
        spec.check_compatible(self._schema)
        return spec

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        spec = self.apply()
        logger.debug(
            "spec_update_applied",
            fields=len(spec.fields),
            last_partition_id=self._last_partition_id,
        )
        return [AddPartitionSpec(spec=spec), SetDefaultSpec()]

    def _find(self, name: str) -> PartitionField | None:
        return next((f for f in self._fields if f.name == name), None)


__all__ = ["UpdateSpec"]
