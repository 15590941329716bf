"""Unit tests for namespaces and table identifiers."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from strata_catalog.identifiers import Namespace, TableIdentifier


class TestNamespace:
    """Tests for Namespace."""

    def test_of_and_str(self) -> None:
        """Test namespace levels render dotted."""
        namespace = Namespace.of("prod", "db")
        assert namespace.levels == ("prod", "db")
        assert str(namespace) == "prod.db"

    def test_empty(self) -> None:
        """Test the root namespace has no levels."""
        assert Namespace.empty().is_empty
        assert not Namespace.of("db").is_empty

    def test_parent_and_child(self) -> None:
        """Test navigating the namespace hierarchy."""
        namespace = Namespace.of("prod", "db")
        assert namespace.parent == Namespace.of("prod")
        assert Namespace.of("prod").child("db") == namespace

    def test_empty_level_rejected(self) -> None:
        """Test empty level names are rejected."""
        with pytest.raises(PydanticValidationError, match="non-empty"):
            Namespace.of("prod", "")

    def test_hashable(self) -> None:
        """Test namespaces can key dictionaries."""
        assert {Namespace.of("db"): 1}[Namespace.of("db")] == 1


class TestTableIdentifier:
    """Tests for TableIdentifier."""

    def test_of(self) -> None:
        """Test the last part is the table name."""
        identifier = TableIdentifier.of("prod", "db", "events")
        assert identifier.namespace == Namespace.of("prod", "db")
        assert identifier.name == "events"
        assert str(identifier) == "prod.db.events"

    def test_parse(self) -> None:
        """Test parsing a dotted identifier."""
        assert TableIdentifier.parse("db.events") == TableIdentifier.of("db", "events")

    def test_root_namespace_str(self) -> None:
        """Test a table in the root namespace renders as its name."""
        assert str(TableIdentifier.of("events")) == "events"

    def test_to_namespace(self) -> None:
        """Test an identifier can be read as a namespace."""
        assert TableIdentifier.of("db", "events").to_namespace() == Namespace.of("db", "events")

    def test_of_requires_name(self) -> None:
        """Test at least a table name is required."""
        with pytest.raises(ValueError, match="at least a table name"):
            TableIdentifier.of()
