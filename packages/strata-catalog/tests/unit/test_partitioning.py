"""Unit tests for partition transforms, specs and the spec builder."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from strata_catalog.errors import ValidationError
from strata_catalog.partitioning import (
    PARTITION_DATA_ID_START,
    UNPARTITIONED_SPEC,
    PartitionField,
    PartitionSpec,
    PartitionSpecBuilder,
    Transform,
    TransformType,
)
from strata_catalog.schema import Schema
from strata_catalog.types import FieldType


class TestTransform:
    """Tests for Transform."""

    @pytest.mark.parametrize("value", ["identity", "bucket[16]", "truncate[4]", "day", "void"])
    def test_parse_round_trips_string_form(self, value: str) -> None:
        """Test the string form parses back to the same transform."""
        assert str(Transform.parse(value)) == value

    def test_param_required_for_bucket(self) -> None:
        """Test bucket requires a bucket count."""
        with pytest.raises(PydanticValidationError, match="requires a parameter"):
            Transform(kind=TransformType.BUCKET)

    def test_param_rejected_for_identity(self) -> None:
        """Test identity takes no parameter."""
        with pytest.raises(PydanticValidationError, match="does not take a parameter"):
            Transform(kind=TransformType.IDENTITY, param=3)

    @pytest.mark.parametrize(
        ("transform", "field_type", "allowed"),
        [
            (Transform.bucket(8), FieldType.LONG, True),
            (Transform.bucket(8), FieldType.DOUBLE, False),
            (Transform.truncate(4), FieldType.STRING, True),
            (Transform.truncate(4), FieldType.BOOLEAN, False),
            (Transform.day(), FieldType.TIMESTAMPTZ, True),
            (Transform.day(), FieldType.STRING, False),
            (Transform.hour(), FieldType.DATE, False),
            (Transform.void(), FieldType.BINARY, True),
        ],
    )
    def test_can_transform(
        self, transform: Transform, field_type: FieldType, allowed: bool
    ) -> None:
        """Test source type compatibility."""
        assert transform.can_transform(field_type) is allowed

    @pytest.mark.parametrize(
        ("transform", "expected"),
        [
            (Transform.identity(), "ts"),
            (Transform.bucket(16), "ts_bucket"),
            (Transform.truncate(2), "ts_trunc"),
            (Transform.day(), "ts_day"),
        ],
    )
    def test_default_name(self, transform: Transform, expected: str) -> None:
        """Test default partition field names."""
        assert transform.default_name("ts") == expected


class TestPartitionSpec:
    """Tests for PartitionSpec."""

    def test_unpartitioned(self) -> None:
        """Test the unpartitioned spec has no fields and last id 999."""
        assert UNPARTITIONED_SPEC.is_unpartitioned
        assert UNPARTITIONED_SPEC.last_assigned_field_id == PARTITION_DATA_ID_START - 1

    def test_all_void_is_unpartitioned(self) -> None:
        """Test a spec of only void fields counts as unpartitioned."""
        spec = PartitionSpec(
            fields=(
                PartitionField(source_id=1, field_id=1000, name="a", transform=Transform.void()),
            )
        )
        assert spec.is_unpartitioned

    def test_partition_field_ids_start_at_1000(self) -> None:
        """Test partition field ids below 1000 are rejected."""
        with pytest.raises(PydanticValidationError):
            PartitionField(source_id=1, field_id=999, name="a", transform=Transform.identity())

    def test_check_compatible_missing_source(self, schema: Schema) -> None:
        """Test a field whose source column is gone fails validation."""
        spec = PartitionSpec(
            fields=(
                PartitionField(
                    source_id=42, field_id=1000, name="x", transform=Transform.identity()
                ),
            )
        )
        with pytest.raises(ValidationError, match="Cannot find source column"):
            spec.check_compatible(schema)

    def test_compatible_with_ignores_spec_id(self, schema: Schema) -> None:
        """Test spec equivalence ignores the spec id."""
        a = PartitionSpecBuilder(schema, spec_id=0).identity("data").build()
        b = PartitionSpecBuilder(schema, spec_id=3).identity("data").build()
        assert a.compatible_with(b)


class TestPartitionSpecBuilder:
    """Tests for PartitionSpecBuilder."""

    def test_build(self, schema: Schema) -> None:
        """Test fields are bound by name with ids from 1000."""
        spec = PartitionSpecBuilder(schema).bucket("id", 16).day("ts").build()
        assert [(f.name, f.field_id, f.source_id) for f in spec.fields] == [
            ("id_bucket", 1000, 1),
            ("ts_day", 1001, 3),
        ]
        assert spec.last_assigned_field_id == 1001

    def test_missing_source(self, schema: Schema) -> None:
        """Test unknown source columns are rejected."""
        with pytest.raises(ValidationError, match="Cannot find source column: nope"):
            PartitionSpecBuilder(schema).identity("nope")

    def test_incompatible_transform(self, schema: Schema) -> None:
        """Test transforms that do not apply to the source type are rejected."""
        with pytest.raises(ValidationError, match="Invalid source type string"):
            PartitionSpecBuilder(schema).day("data")

    def test_redundant_field(self, schema: Schema) -> None:
        """Test the same transform on the same source is rejected."""
        builder = PartitionSpecBuilder(schema).bucket("id", 4)
        with pytest.raises(ValidationError, match="redundant partition"):
            builder.bucket("id", 4, name="other")

    def test_duplicate_name(self, schema: Schema) -> None:
        """Test partition field names must be unique."""
        builder = PartitionSpecBuilder(schema).identity("data", name="p")
        with pytest.raises(ValidationError, match="more than once: p"):
            builder.bucket("id", 4, name="p")
