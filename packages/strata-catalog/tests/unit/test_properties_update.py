"""Unit tests for the table properties builder."""

from __future__ import annotations

import pytest

from strata_catalog.errors import ValidationError
from strata_catalog.table import Table


class TestUpdateProperties:
    """Tests for UpdateProperties."""

    def test_set_and_remove(self, table: Table) -> None:
        """Test keys are set and removed and others are left alone."""
        table.update_properties().set_all({"owner": "etl", "tmp": "1"}).commit()
        table.update_properties().set("owner", "ops").remove("tmp").commit()
        assert table.properties() == {"owner": "ops"}

    def test_apply_previews(self, table: Table) -> None:
        """Test apply returns the merged properties without committing."""
        preview = table.update_properties().set("owner", "etl").apply()
        assert preview == {"owner": "etl"}
        assert table.properties() == {}

    def test_remove_and_update_same_key(self, table: Table) -> None:
        """Test a key cannot be both set and removed."""
        with pytest.raises(ValidationError, match="Cannot remove and update the same key: k"):
            table.update_properties().set("k", "v").remove("k")
        with pytest.raises(ValidationError, match="Cannot remove and update the same key: k"):
            table.update_properties().remove("k").set("k", "v")

    def test_reserved_key_cannot_be_removed(self, table: Table) -> None:
        """Test format-version cannot be removed."""
        with pytest.raises(ValidationError, match="Cannot remove reserved table property"):
            table.update_properties().remove("format-version")

    def test_format_version_upgrade(self, table: Table) -> None:
        """Test setting format-version upgrades the table instead of storing it."""
        table.update_properties().set("format-version", "3").commit()
        assert table.format_version() == 3
        assert "format-version" not in table.properties()

    def test_format_version_downgrade(self, table: Table) -> None:
        """Test the format version never goes down."""
        with pytest.raises(ValidationError, match="Cannot downgrade v2 table to v1"):
            table.update_properties().set("format-version", "1").commit()
