"""Schema evolution builder.

Changes are recorded against a working copy of the current schema, so later
calls see earlier ones (a column added here can be renamed here). New columns
take ids from the table's ``last_column_id``; ids of deleted columns are never
handed out again, even when a column of the same name is added later.

Example:
    >>> table.update_schema().add_column("count", FieldType.LONG).commit()
    >>> table.update_schema().rename_column("count", "total").commit()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from strata_catalog.errors import ValidationError
from strata_catalog.operations import PendingUpdate
from strata_catalog.schema import NestedField, Schema
from strata_catalog.types import FieldType, can_promote
from strata_catalog.updates import AddSchema, MetadataUpdate, SetCurrentSchema

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget

logger = structlog.get_logger(__name__)


class UpdateSchema(PendingUpdate):
    """Add, delete, rename and retype columns of the current schema."""

    operation = "update-schema"

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        schema = self._base.schema()
        self._fields: dict[int, NestedField] = {f.field_id: f for f in schema.fields}
        self._identifier_ids: list[int] = list(schema.identifier_field_ids)
        self._last_column_id = self._base.last_column_id
        self._allow_incompatible = False

    def allow_incompatible_changes(self) -> UpdateSchema:
        """Permit adding required columns and tightening nullability."""
        self._allow_incompatible = True
        return self

    # -------------------------------------------------------------------------
    # Column changes
    # -------------------------------------------------------------------------

    def add_column(
        self,
        name: str,
        field_type: FieldType,
        doc: str | None = None,
        required: bool = False,
        precision: int | None = None,
        scale: int | None = None,
    ) -> UpdateSchema:
        """Add a column with the next unused field id."""
        if self._find(name) is not None:
            msg = f"Cannot add column, name already exists: {name}"
            raise ValidationError(msg, field="name", value=name)
        if required and not self._allow_incompatible:
            msg = f"Incompatible change: cannot add required column: {name}"
            raise ValidationError(msg, field="required", value=name)
        self._last_column_id += 1
        self._fields[self._last_column_id] = NestedField(
            field_id=self._last_column_id,
            name=name,
            field_type=field_type,
            required=required,
            doc=doc,
            precision=precision,
            scale=scale,
        )
        return self

    def delete_column(self, name: str) -> UpdateSchema:
        field = self._require(name, "delete")
        if field.field_id in self._identifier_ids:
            msg = f"Cannot delete identifier field: {name}"
            raise ValidationError(msg, field="name", value=name)
        del self._fields[field.field_id]
        return self

    def rename_column(self, name: str, new_name: str) -> UpdateSchema:
        field = self._require(name, "rename")
        existing = self._find(new_name)
        if existing is not None and existing.field_id != field.field_id:
            msg = f"Cannot rename {name}: column already exists: {new_name}"
            raise ValidationError(msg, field="new_name", value=new_name)
        self._replace(field, name=new_name)
        return self

    def update_column(
        self,
        name: str,
        field_type: FieldType,
        precision: int | None = None,
        scale: int | None = None,
    ) -> UpdateSchema:
        """Widen a column's type (int to long, float to double, wider decimal)."""
        field = self._require(name, "update")
        if field.field_type == FieldType.DECIMAL and field_type == FieldType.DECIMAL:
            widened = (
                precision is not None
                and field.precision is not None
                and precision >= field.precision
                and (scale if scale is not None else field.scale) == field.scale
            )
            if not widened:
                msg = (
                    f"Cannot change column type: {name}: decimal({field.precision}, "
                    f"{field.scale}) -> decimal({precision}, {scale})"
                )
                raise ValidationError(msg, field="field_type", value=name)
            self._replace(field, precision=precision)
            return self
        if not can_promote(field.field_type, field_type):
            msg = (
                f"Cannot change column type: {name}: "
                f"{field.field_type.value} -> {field_type.value}"
            )
            raise ValidationError(msg, field="field_type", value=name)
        self._replace(field, field_type=field_type)
        return self

    def make_column_optional(self, name: str) -> UpdateSchema:
        field = self._require(name, "update")
        if field.field_id in self._identifier_ids:
            msg = f"Cannot make identifier field optional: {name}"
            raise ValidationError(msg, field="name", value=name)
        self._replace(field, required=False)
        return self

    def require_column(self, name: str) -> UpdateSchema:
        field = self._require(name, "update")
        if not field.required and not self._allow_incompatible:
            msg = f"Cannot change column nullability: {name}: optional -> required"
            raise ValidationError(msg, field="required", value=name)
        self._replace(field, required=True)
        return self

    def update_column_doc(self, name: str, doc: str | None) -> UpdateSchema:
        field = self._require(name, "update")
        self._replace(field, doc=doc)
        return self

    def set_identifier_fields(self, *names: str) -> UpdateSchema:
        """Replace the identifier columns; each must exist and be required."""
        ids = []
        for name in names:
            field = self._find(name)
            if field is None:
                msg = f"Cannot add field {name} as an identifier field: not found"
                raise ValidationError(msg, field="identifier_fields", value=name)
            if not field.required:
                msg = f"Cannot add field {name} as an identifier field: not a required field"
                raise ValidationError(msg, field="identifier_fields", value=name)
            if field.field_type in (FieldType.FLOAT, FieldType.DOUBLE):
                msg = (
                    f"Cannot add field {name} as an identifier field: "
                    f"must not be float or double"
                )
                raise ValidationError(msg, field="identifier_fields", value=name)
            ids.append(field.field_id)
        self._identifier_ids = ids
        return self

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply(self) -> Schema:
        """Return the resulting schema without committing.

        Raises:
            ValidationError: If the current partition spec or sort order
                references a deleted or incompatible column.
        """
        schema = Schema(
            schema_id=self._base.current_schema_id,
            fields=tuple(self._fields.values()),
            identifier_field_ids=tuple(self._identifier_ids),
        )
        self._base.spec().check_compatible(schema)
        self._base.sort_order().check_compatible(schema)
        return schema

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        schema = self.apply()
        logger.debug(
            "schema_update_applied",
            columns=len(schema.fields),
            last_column_id=self._last_column_id,
        )
        return [
            AddSchema(added_schema=schema, last_column_id=self._last_column_id),
            SetCurrentSchema(),
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _find(self, name: str) -> NestedField | None:
        return next((f for f in self._fields.values() if f.name == name), None)

    def _require(self, name: str, verb: str) -> NestedField:
        field = self._find(name)
        if field is None:
            msg = f"Cannot {verb} missing column: {name}"
            raise ValidationError(msg, field="name", value=name)
        return field

    def _replace(self, field: NestedField, **changes: object) -> None:
        self._fields[field.field_id] = field.model_copy(update=changes)


__all__ = ["UpdateSchema"]
