"""Table schema models.

A Schema is an ordered tuple of NestedField columns plus the schema id under
which it is stored in TableMetadata. Field ids are assigned by the table and
never reused; see ``assign_fresh_ids`` and ``reassign_ids_by_name``.

Example:
    >>> from strata_catalog.schema import NestedField, Schema
    >>> from strata_catalog.types import FieldType
    >>> schema = Schema(fields=(
    ...     NestedField(field_id=1, name="id", field_type=FieldType.INT, required=True),
    ...     NestedField(field_id=2, name="data", field_type=FieldType.STRING),
    ... ))
    >>> schema.find_field("data").field_id
    2
"""

from __future__ import annotations

from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from strata_catalog.types import FieldType


class NestedField(BaseModel):
    """A single column.

    Attributes:
        field_id: Table-unique field id.
        name: Column name.
        field_type: Primitive column type.
        required: Whether the column is NOT NULL.
        doc: Optional column documentation.
        precision: Decimal precision, or fixed length for FIXED.
        scale: Decimal scale.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    field_id: int = Field(..., ge=0, description="Table-unique field id")
    name: str = Field(..., min_length=1, max_length=255, description="Column name")
    field_type: FieldType = Field(..., description="Column type")
    required: bool = Field(default=False, description="Whether the column is NOT NULL")
    doc: str | None = Field(default=None, max_length=1000, description="Column documentation")
    precision: int | None = Field(default=None, ge=1, le=38, description="Decimal precision")
    scale: int | None = Field(default=None, ge=0, description="Decimal scale")

    def same_column(self, other: NestedField) -> bool:
        """Compare by name, type and nullability, ignoring the field id."""
        return (
            self.name == other.name
            and self.field_type == other.field_type
            and self.required == other.required
            and self.precision == other.precision
            and self.scale == other.scale
        )

    def __str__(self) -> str:
        """Render as ``id: name: required|optional type``."""
        optional = "required" if self.required else "optional"
        return f"{self.field_id}: {self.name}: {optional} {self.field_type.value}"


class Schema(BaseModel):
    """An ordered set of columns stored under a schema id.

    Attributes:
        schema_id: Id of this schema within TableMetadata.schemas.
        fields: Columns in order.
        identifier_field_ids: Ids of columns forming the row identifier.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    schema_id: int = Field(default=0, ge=0, description="Schema id")
    fields: tuple[NestedField, ...] = Field(default=(), description="Columns in order")
    identifier_field_ids: tuple[int, ...] = Field(
        default=(),
        description="Ids of identifier columns",
    )

    @model_validator(mode="after")
    def _validate_unique_columns(self) -> Schema:
        """Reject duplicate column names or field ids."""
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            msg = f"Duplicate column names in schema: {names}"
            raise ValueError(msg)
        ids = [f.field_id for f in self.fields]
        if len(ids) != len(set(ids)):
            msg = f"Duplicate field ids in schema: {ids}"
            raise ValueError(msg)
        missing = set(self.identifier_field_ids) - set(ids)
        if missing:
            msg = f"Identifier field ids not in schema: {sorted(missing)}"
            raise ValueError(msg)
        return self

    @classmethod
    def of(cls, *fields: NestedField, schema_id: int = 0) -> Schema:
        """Build a schema from positional fields."""
        return cls(schema_id=schema_id, fields=tuple(fields))

    def find_field(self, name: str) -> NestedField | None:
        """Return the column with ``name`` or None."""
        for field in self.fields:
            if field.name == name:
                return field
        return None

    def find_field_by_id(self, field_id: int) -> NestedField | None:
        """Return the column with ``field_id`` or None."""
        for field in self.fields:
            if field.field_id == field_id:
                return field
        return None

    def column_name(self, field_id: int) -> str | None:
        field = self.find_field_by_id(field_id)
        return field.name if field else None

    @property
    def column_names(self) -> list[str]:
        return [f.name for f in self.fields]

    @property
    def highest_field_id(self) -> int:
        return max((f.field_id for f in self.fields), default=0)

    def as_struct(self) -> tuple[NestedField, ...]:
        """Return the column tuple; equal structs have equal ids, names and types."""
        return self.fields

    def same_columns(self, other: Schema) -> bool:
        """Compare column names, types and order, ignoring field ids."""
        if len(self.fields) != len(other.fields):
            return False
        return all(a.same_column(b) for a, b in zip(self.fields, other.fields))

    def same_structure(self, other: Schema) -> bool:
        """Compare columns and identifier fields, ignoring the schema id."""
        return (
            self.fields == other.fields
            and self.identifier_field_ids == other.identifier_field_ids
        )

    def __str__(self) -> str:
        """Render one column per line."""
        cols = "\n".join(f"  {f}" for f in self.fields)
        return f"table {{\n{cols}\n}}"


# =============================================================================
# Field Id Assignment
# =============================================================================


def assign_fresh_ids(schema: Schema, next_id: Callable[[], int]) -> Schema:
    """Return ``schema`` with every column renumbered by ``next_id``.

    Identifier field ids are mapped to the new numbering.

    Args:
        schema: Schema carrying caller-supplied ids.
        next_id: Called once per column, in column order.

    Returns:
        A schema with schema_id 0 and fresh field ids.
    """
    id_map: dict[int, int] = {}
    fields = []
    for field in schema.fields:
        new_id = next_id()
        id_map[field.field_id] = new_id
        fields.append(field.model_copy(update={"field_id": new_id}))
    return Schema(
        fields=tuple(fields),
        identifier_field_ids=tuple(id_map[i] for i in schema.identifier_field_ids),
    )


def reassign_ids_by_name(
    schema: Schema,
    base: Schema,
    last_column_id: int,
) -> tuple[Schema, int, dict[int, int]]:
    """Renumber ``schema`` reusing ids of same-named columns in ``base``.

    Columns whose name exists in ``base`` keep that column's id; every other
    column gets the next id after ``last_column_id``.

    Returns:
        The renumbered schema, the new last column id, and a map from the
        caller's field ids to the assigned ids.
    """
    id_map: dict[int, int] = {}
    fields = []
    last_id = last_column_id
    for field in schema.fields:
        existing = base.find_field(field.name)
        if existing is not None:
            new_id = existing.field_id
        else:
            last_id += 1
            new_id = last_id
        id_map[field.field_id] = new_id
        fields.append(field.model_copy(update={"field_id": new_id}))
    renumbered = Schema(
        fields=tuple(fields),
        identifier_field_ids=tuple(id_map[i] for i in schema.identifier_field_ids),
    )
    return renumbered, last_id, id_map


__all__ = ["NestedField", "Schema", "assign_fresh_ids", "reassign_ids_by_name"]
