"""Partition transforms and partition specs.

Partition field ids start at 1000 (``PARTITION_DATA_ID_START``) and are
allocated from TableMetadata.last_partition_id; an unpartitioned table has
last_partition_id 999.

Example:
    >>> from strata_catalog.partitioning import PartitionSpecBuilder
    >>> spec = PartitionSpecBuilder(schema).bucket("id", 16).identity("data").build()
    >>> [str(f.transform) for f in spec.fields]
    ['bucket[16]', 'identity']
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from strata_catalog.errors import ValidationError
from strata_catalog.schema import Schema
from strata_catalog.types import TEMPORAL_TYPES, FieldType

PARTITION_DATA_ID_START = 1000
"""First partition field id; unpartitioned tables have last_partition_id 999."""

_PARAM_TRANSFORM = re.compile(r"^(bucket|truncate)\[(\d+)\]$")


class TransformType(str, Enum):
    """Partition and sort transform functions.

    Attributes:
        IDENTITY: Source value unchanged
        BUCKET: Hash into N buckets (param = N)
        TRUNCATE: Truncate to width (param = width)
        YEAR: Years since epoch
        MONTH: Months since epoch
        DAY: Days since epoch
        HOUR: Hours since epoch
        VOID: Always null; replaces removed fields on v1 tables
    """

    IDENTITY = "identity"
    BUCKET = "bucket"
    TRUNCATE = "truncate"
    YEAR = "year"
    MONTH = "month"
    DAY = "day"
    HOUR = "hour"
    VOID = "void"


_NAME_SUFFIX: dict[TransformType, str] = {
    TransformType.BUCKET: "bucket",
    TransformType.TRUNCATE: "trunc",
    TransformType.YEAR: "year",
    TransformType.MONTH: "month",
    TransformType.DAY: "day",
    TransformType.HOUR: "hour",
    TransformType.VOID: "null",
}

_BUCKET_TYPES = frozenset(FieldType) - {FieldType.BOOLEAN, FieldType.FLOAT, FieldType.DOUBLE}
_TRUNCATE_TYPES = frozenset(
    {FieldType.INT, FieldType.LONG, FieldType.DECIMAL, FieldType.STRING, FieldType.BINARY},
)


class Transform(BaseModel):
    """A transform with its optional integer parameter.

    Attributes:
        kind: Transform function.
        param: Bucket count or truncation width.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: TransformType = Field(..., description="Transform function")
    param: int | None = Field(default=None, ge=1, description="Bucket count or width")

    @model_validator(mode="after")
    def _validate_param(self) -> Transform:
        """Require a parameter exactly for bucket and truncate."""
        needs_param = self.kind in (TransformType.BUCKET, TransformType.TRUNCATE)
        if needs_param and self.param is None:
            msg = f"Transform {self.kind.value} requires a parameter"
            raise ValueError(msg)
        if not needs_param and self.param is not None:
            msg = f"Transform {self.kind.value} does not take a parameter"
            raise ValueError(msg)
        return self

    @classmethod
    def identity(cls) -> Transform:
        return cls(kind=TransformType.IDENTITY)

    @classmethod
    def bucket(cls, num_buckets: int) -> Transform:
        return cls(kind=TransformType.BUCKET, param=num_buckets)

    @classmethod
    def truncate(cls, width: int) -> Transform:
        return cls(kind=TransformType.TRUNCATE, param=width)

    @classmethod
    def year(cls) -> Transform:
        return cls(kind=TransformType.YEAR)

    @classmethod
    def month(cls) -> Transform:
        return cls(kind=TransformType.MONTH)

    @classmethod
    def day(cls) -> Transform:
        return cls(kind=TransformType.DAY)

    @classmethod
    def hour(cls) -> Transform:
        return cls(kind=TransformType.HOUR)

    @classmethod
    def void(cls) -> Transform:
        return cls(kind=TransformType.VOID)

    @classmethod
    def parse(cls, value: str) -> Transform:
        """Parse the string form, e.g. ``"bucket[16]"`` or ``"day"``."""
        match = _PARAM_TRANSFORM.match(value)
        if match:
            return cls(kind=TransformType(match.group(1)), param=int(match.group(2)))
        return cls(kind=TransformType(value))

    def can_transform(self, field_type: FieldType) -> bool:
        """Return True if this transform applies to a column of ``field_type``."""
        if self.kind in (TransformType.IDENTITY, TransformType.VOID):
            return True
        if self.kind == TransformType.BUCKET:
            return field_type in _BUCKET_TYPES
        if self.kind == TransformType.TRUNCATE:
            return field_type in _TRUNCATE_TYPES
        if self.kind == TransformType.HOUR:
            return field_type in (FieldType.TIMESTAMP, FieldType.TIMESTAMPTZ)
        return field_type in TEMPORAL_TYPES

    def default_name(self, source_name: str) -> str:
        """Partition field name used when the caller does not supply one."""
        if self.kind == TransformType.IDENTITY:
            return source_name
        return f"{source_name}_{_NAME_SUFFIX[self.kind]}"

    def __str__(self) -> str:
        """Render as ``bucket[16]`` / ``identity``."""
        if self.param is not None:
            return f"{self.kind.value}[{self.param}]"
        return self.kind.value


class PartitionField(BaseModel):
    """A partition field derived from a source column.

    Attributes:
        source_id: Field id of the source column.
        field_id: Partition field id (>= 1000).
        name: Partition field name.
        transform: Transform applied to the source value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_id: int = Field(..., ge=0, description="Source column field id")
    field_id: int = Field(..., ge=PARTITION_DATA_ID_START, description="Partition field id")
    name: str = Field(..., min_length=1, max_length=255, description="Partition field name")
    transform: Transform = Field(..., description="Transform applied to the source")


class PartitionSpec(BaseModel):
    """Partition specification stored under a spec id.

    Attributes:
        spec_id: Id of this spec within TableMetadata.specs.
        fields: Partition fields in order (empty for unpartitioned).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    spec_id: int = Field(default=0, ge=0, description="Spec id")
    fields: tuple[PartitionField, ...] = Field(default=(), description="Partition fields")

    @model_validator(mode="after")
    def _validate_unique_fields(self) -> PartitionSpec:
        """Reject duplicate partition names or field ids."""
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            msg = f"Duplicate partition field names: {names}"
            raise ValueError(msg)
        ids = [f.field_id for f in self.fields]
        if len(ids) != len(set(ids)):
            msg = f"Duplicate partition field ids: {ids}"
            raise ValueError(msg)
        return self

    @property
    def is_unpartitioned(self) -> bool:
        """True if there are no fields or every field is void."""
        return all(f.transform.kind == TransformType.VOID for f in self.fields)

    @property
    def last_assigned_field_id(self) -> int:
        return max((f.field_id for f in self.fields), default=PARTITION_DATA_ID_START - 1)

    def find_field(self, name: str) -> PartitionField | None:
        for field in self.fields:
            if field.name == name:
                return field
        return None

    def compatible_with(self, other: PartitionSpec) -> bool:
        """True if both specs have the same field list, ignoring spec ids."""
        return self.fields == other.fields

    def check_compatible(self, schema: Schema) -> None:
        """Raise ValidationError if a field's source is missing or mistyped."""
        for field in self.fields:
            source = schema.find_field_by_id(field.source_id)
            if source is None:
                if field.transform.kind == TransformType.VOID:
                    continue
                msg = f"Cannot find source column for partition field: {field.name}"
                raise ValidationError(msg, field="source_id", value=field.source_id)
            if not field.transform.can_transform(source.field_type):
                msg = (
                    f"Invalid source type {source.field_type.value} "
                    f"for transform: {field.transform}"
                )
                raise ValidationError(msg, field=field.name)


UNPARTITIONED_SPEC = PartitionSpec(spec_id=0)


class PartitionSpecBuilder:
    """Fluent builder binding partition fields to a schema's columns by name.

    Field ids are assigned from 1000 in the order fields are added; tables
    renumber them on create.

    Example:
        >>> spec = PartitionSpecBuilder(schema).bucket("id", 16, name="shard").build()
    """

    def __init__(self, schema: Schema, spec_id: int = 0) -> None:
        self._schema = schema
        self._spec_id = spec_id
        self._fields: list[PartitionField] = []
        self._last_id = PARTITION_DATA_ID_START - 1

    def add(
        self, source_name: str, transform: Transform, name: str | None = None
    ) -> PartitionSpecBuilder:
        """Add a partition field on ``source_name`` with ``transform``."""
        source = self._schema.find_field(source_name)
        if source is None:
            msg = f"Cannot find source column: {source_name}"
            raise ValidationError(msg, field="source_name", value=source_name)
        if not transform.can_transform(source.field_type):
            msg = f"Invalid source type {source.field_type.value} for transform: {transform}"
            raise ValidationError(msg, field="transform", value=str(transform))
        for existing in self._fields:
            if existing.source_id == source.field_id and existing.transform == transform:
                msg = f"Cannot add redundant partition: {existing.name} conflicts with {transform}"
                raise ValidationError(msg, field="transform", value=str(transform))
        field_name = name or transform.default_name(source_name)
        if any(f.name == field_name for f in self._fields):
            msg = f"Cannot use partition name more than once: {field_name}"
            raise ValidationError(msg, field="name", value=field_name)
        self._last_id += 1
        self._fields.append(
            PartitionField(
                source_id=source.field_id,
                field_id=self._last_id,
                name=field_name,
                transform=transform,
            )
        )
        return self

    def identity(self, source_name: str, name: str | None = None) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.identity(), name)

    def bucket(
        self, source_name: str, num_buckets: int, name: str | None = None
    ) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.bucket(num_buckets), name)

    def truncate(
        self, source_name: str, width: int, name: str | None = None
    ) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.truncate(width), name)

    def year(self, source_name: str, name: str | None = None) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.year(), name)

    def month(self, source_name: str, name: str | None = None) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.month(), name)

    def day(self, source_name: str, name: str | None = None) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.day(), name)

    def hour(self, source_name: str, name: str | None = None) -> PartitionSpecBuilder:
        return self.add(source_name, Transform.hour(), name)

    def build(self) -> PartitionSpec:
        return PartitionSpec(spec_id=self._spec_id, fields=tuple(self._fields))


__all__ = [
    "PARTITION_DATA_ID_START",
    "UNPARTITIONED_SPEC",
    "PartitionField",
    "PartitionSpec",
    "PartitionSpecBuilder",
    "Transform",
    "TransformType",
]
