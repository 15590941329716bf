"""Unit tests for transactions: simple, create, replace and create-or-replace."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from strata_catalog.catalog import Catalog
from strata_catalog.errors import (
    NoSuchTableError,
    RequirementFailedError,
    TableAlreadyExistsError,
    ValidationError,
)
from strata_catalog.identifiers import TableIdentifier
from strata_catalog.io import InMemoryFileIO
from strata_catalog.partitioning import PartitionSpecBuilder, Transform
from strata_catalog.schema import NestedField, Schema
from strata_catalog.snapshots import DataFile, read_data_files
from strata_catalog.table import Table
from strata_catalog.types import FieldType

if TYPE_CHECKING:
    from tests.conftest import RecordingReporter

MakeFile = Callable[..., DataFile]


def _metadata_files(io: InMemoryFileIO, table: Table) -> list[str]:
    prefix = f"{table.location()}/metadata/"
    return [f for f in io.list_prefix(prefix) if f.endswith(".metadata.json")]


def _paths(table: Table) -> list[str]:
    snapshot = table.current_snapshot()
    assert snapshot is not None
    return [f.file_path for f in read_data_files(table.io, snapshot)]


def _load(catalog: Catalog, identifier: TableIdentifier) -> Table:
    table = catalog.load_table(identifier)
    assert isinstance(table, Table)
    return table


# =============================================================================
# Simple Transactions
# =============================================================================


class TestSimpleTransaction:
    """Tests for transactions on an existing table."""

    def test_changes_commit_together(
        self,
        table: Table,
        make_data_file: MakeFile,
        io: InMemoryFileIO,
        reporter: RecordingReporter,
    ) -> None:
        """Test staged changes land in one metadata file and see each other."""
        before = len(_metadata_files(io, table))
        reports = len(reporter.commit_reports)
        txn = table.new_transaction()
        txn.update_spec().add_field("id", Transform.bucket(4)).commit()
        txn.new_append().append_file(make_data_file("a")).commit()
        assert table.current_snapshot() is None

        committed = txn.commit_transaction()
        assert committed.default_spec_id == 1
        files = read_data_files(io, table.refresh().current_snapshot())  # type: ignore[arg-type]
        assert [f.spec_id for f in files] == [1]
        assert len(_metadata_files(io, table)) == before + 1
        assert [r.operation for r in reporter.commit_reports[reports:]] == ["transaction"]

    def test_two_appends(self, table: Table, make_data_file: MakeFile) -> None:
        """Test a later append in a transaction builds on the earlier staged one."""
        txn = table.new_transaction()
        txn.new_append().append_file(make_data_file("a")).commit()
        txn.new_append().append_file(make_data_file("b")).commit()
        txn.commit_transaction()
        table.refresh()
        assert _paths(table) == ["memory://data/a.parquet", "memory://data/b.parquet"]
        assert len(table.snapshots()) == 2

    def test_outdated_builder(self, table: Table) -> None:
        """Test a builder created before another change was staged is rejected."""
        txn = table.new_transaction()
        first = txn.update_properties().set("a", "1")
        second = txn.update_properties().set("b", "2")
        first.commit()
        with pytest.raises(ValidationError, match="built on outdated transaction state"):
            second.commit()

    def test_commit_once(self, table: Table) -> None:
        """Test a transaction commits at most once."""
        txn = table.new_transaction()
        txn.update_properties().set("a", "1").commit()
        txn.commit_transaction()
        with pytest.raises(ValidationError, match="Transaction has already been committed"):
            txn.commit_transaction()
        with pytest.raises(ValidationError, match="Transaction has already been committed"):
            txn.update_properties().set("b", "2").commit()

    def test_empty_transaction(self, table: Table, io: InMemoryFileIO) -> None:
        """Test committing nothing writes nothing."""
        before = _metadata_files(io, table)
        assert table.new_transaction().commit_transaction() == table.metadata
        assert _metadata_files(io, table) == before

    def test_rebased_on_concurrent_append(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        table: Table,
        make_data_file: MakeFile,
    ) -> None:
        """Test a transaction with an append is rebuilt on a concurrent append."""
        txn = table.new_transaction()
        txn.update_schema().add_column("region", FieldType.STRING).commit()
        txn.new_append().append_file(make_data_file("mine")).commit()

        _load(catalog, identifier).new_append().append_file(make_data_file("theirs")).commit()

        committed = txn.commit_transaction()
        assert committed.schema().find_field("region") is not None
        table.refresh()
        assert _paths(table) == ["memory://data/theirs.parquet", "memory://data/mine.parquet"]

    def test_broken_requirement_fails(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        table: Table,
        make_data_file: MakeFile,
    ) -> None:
        """Test a transaction whose schema base moved fails on rebuild."""
        txn = table.new_transaction()
        txn.update_schema().add_column("region", FieldType.STRING).commit()
        txn.new_append().append_file(make_data_file("mine")).commit()

        _load(catalog, identifier).update_schema().add_column("other", FieldType.INT).commit()

        with pytest.raises(RequirementFailedError, match="last assigned field id changed"):
            txn.commit_transaction()


# =============================================================================
# Create Transactions
# =============================================================================


class TestCreateTransaction:
    """Tests for create transactions."""

    def test_create_with_data(
        self,
        catalog: Catalog,
        schema: Schema,
        make_data_file: MakeFile,
    ) -> None:
        """Test the table appears only when the transaction commits."""
        identifier = TableIdentifier.of("db", "fresh")
        builder = catalog.build_table(identifier, schema).with_property("owner", "etl")
        txn = builder.create_transaction()
        txn.new_append().append_file(make_data_file("a")).commit()
        assert not catalog.table_exists(identifier)

        txn.commit_transaction()
        table = _load(catalog, identifier)
        assert table.properties() == {"owner": "etl"}
        assert _paths(table) == ["memory://data/a.parquet"]

    def test_create_existing(
        self, catalog: Catalog, identifier: TableIdentifier, table: Table, schema: Schema
    ) -> None:
        """Test starting a create transaction for an existing table fails."""
        with pytest.raises(TableAlreadyExistsError, match="Table already exists: db.events"):
            catalog.build_table(identifier, schema).create_transaction()

    def test_concurrent_create(self, catalog: Catalog, schema: Schema) -> None:
        """Test the second of two racing creates fails."""
        identifier = TableIdentifier.of("db", "race")
        first = catalog.build_table(identifier, schema).create_transaction()
        second = catalog.build_table(identifier, schema).create_transaction()
        first.commit_transaction()
        with pytest.raises(TableAlreadyExistsError):
            second.commit_transaction()


# =============================================================================
# Replace Transactions
# =============================================================================


def _replacement_schema() -> Schema:
    return Schema.of(
        NestedField(field_id=1, name="id", field_type=FieldType.LONG, required=True),
        NestedField(field_id=2, name="payload", field_type=FieldType.STRING),
    )


class TestReplaceTransaction:
    """Tests for replace and create-or-replace transactions."""

    def test_replace_keeps_identity(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        table: Table,
        make_data_file: MakeFile,
    ) -> None:
        """Test replacing keeps uuid, snapshots and matching column ids."""
        table.new_append().append_file(make_data_file("a")).commit()
        uuid = table.uuid()

        txn = catalog.build_table(identifier, _replacement_schema()).replace_transaction()
        txn.commit_transaction()
        table.refresh()
        assert table.uuid() == uuid
        assert table.current_snapshot() is None
        assert len(table.snapshots()) == 1
        assert [(f.name, f.field_id) for f in table.schema().fields] == [("id", 1), ("payload", 4)]
        assert table.metadata.last_column_id == 4

    def test_replace_missing(self, catalog: Catalog, schema: Schema) -> None:
        """Test replacing a missing table fails."""
        with pytest.raises(NoSuchTableError):
            catalog.build_table(TableIdentifier.of("db", "nope"), schema).replace_transaction()

    def test_replace_merges_properties(
        self, catalog: Catalog, identifier: TableIdentifier, table: Table
    ) -> None:
        """Test requested properties are merged over the existing ones."""
        table.update_properties().set_all({"owner": "etl", "keep": "1"}).commit()
        txn = catalog.build_table(identifier, _replacement_schema()).with_property(
            "owner", "ops"
        ).replace_transaction()
        txn.commit_transaction()
        assert table.refresh().properties() == {"owner": "ops", "keep": "1"}

    def test_replace_rebased_on_property_change(
        self, catalog: Catalog, identifier: TableIdentifier, table: Table
    ) -> None:
        """Test a concurrent property change does not block a replace."""
        txn = catalog.build_table(identifier, _replacement_schema()).replace_transaction()
        table.update_properties().set("owner", "etl").commit()
        committed = txn.commit_transaction()
        assert committed.properties == {"owner": "etl"}
        assert committed.schema().find_field("payload") is not None

    def test_replace_fails_after_schema_change(
        self, catalog: Catalog, identifier: TableIdentifier, table: Table
    ) -> None:
        """Test a concurrent schema change invalidates the replacement ids."""
        txn = catalog.build_table(identifier, _replacement_schema()).replace_transaction()
        table.update_schema().add_column("other", FieldType.INT).commit()
        with pytest.raises(RequirementFailedError, match="last assigned field id changed"):
            txn.commit_transaction()

    def test_create_or_replace(
        self, catalog: Catalog, schema: Schema, make_data_file: MakeFile
    ) -> None:
        """Test create-or-replace creates, then replaces."""
        identifier = TableIdentifier.of("db", "either")
        catalog.build_table(identifier, schema).create_or_replace_transaction().commit_transaction()
        created = _load(catalog, identifier)
        created.new_append().append_file(make_data_file("a")).commit()

        txn = catalog.build_table(identifier, _replacement_schema()).create_or_replace_transaction()
        txn.new_append().append_file(make_data_file("b")).commit()
        txn.commit_transaction()
        replaced = _load(catalog, identifier)
        assert replaced.uuid() == created.uuid()
        assert _paths(replaced) == ["memory://data/b.parquet"]
        assert len(replaced.snapshots()) == 2

    def test_replace_keeps_snapshot_log(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        schema: Schema,
        table: Table,
        make_data_file: MakeFile,
    ) -> None:
        """Test a replace with data appends one log entry and keeps the earlier ones."""
        table.new_append().append_file(make_data_file("a")).commit()
        before = table.history()
        assert len(before) == 1

        txn = catalog.build_table(identifier, schema).replace_transaction()
        txn.new_append().append_file(make_data_file("b")).commit()
        txn.commit_transaction()
        table.refresh()

        after = table.history()
        head = table.current_snapshot()
        assert head is not None
        assert len(after) == 2
        assert after[0] == before[0]
        assert after[1].snapshot_id == head.snapshot_id
        assert after[1].snapshot_id != before[0].snapshot_id


class TestConcurrentReplace:
    """Tests for replace transactions racing each other."""

    def test_unchanged_schema_replace_after_competing_replace(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        schema: Schema,
        table: Table,
        make_data_file: MakeFile,
    ) -> None:
        """Test a replace keeping the schema commits after another replace changed it."""
        table.new_append().append_file(make_data_file("a")).commit()
        original = table.schema()

        second = catalog.build_table(identifier, schema).replace_transaction()
        second.new_append().append_file(make_data_file("c")).commit()

        first = catalog.build_table(identifier, _replacement_schema()).replace_transaction()
        first.new_append().append_file(make_data_file("b")).commit()
        first.commit_transaction()

        after_first = _load(catalog, identifier)
        assert [f.name for f in after_first.schema().fields] == ["id", "payload"]
        assert after_first.uuid() == table.uuid()
        assert _paths(after_first) == ["memory://data/b.parquet"]

        second.commit_transaction()

        after_second = _load(catalog, identifier)
        assert after_second.schema() == original
        assert after_second.uuid() == table.uuid()
        assert _paths(after_second) == ["memory://data/c.parquet"]

    def test_unchanged_spec_replace_after_competing_replace(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        schema: Schema,
        table: Table,
        make_data_file: MakeFile,
    ) -> None:
        """Test an unpartitioned replace commits after another replace added a spec."""
        table.new_append().append_file(make_data_file("a")).commit()

        second = catalog.build_table(identifier, schema).replace_transaction()
        second.new_append().append_file(make_data_file("c")).commit()

        bucketed = PartitionSpecBuilder(schema).bucket("id", 16).build()
        first = (
            catalog.build_table(identifier, schema)
            .with_partition_spec(bucketed)
            .replace_transaction()
        )
        first.new_append().append_file(make_data_file("b")).commit()
        first.commit_transaction()

        after_first = _load(catalog, identifier)
        assert [f.name for f in after_first.spec().fields] == ["id_bucket"]
        assert after_first.uuid() == table.uuid()
        assert _paths(after_first) == ["memory://data/b.parquet"]

        second.commit_transaction()

        after_second = _load(catalog, identifier)
        assert after_second.spec().is_unpartitioned()
        assert after_second.uuid() == table.uuid()
        assert _paths(after_second) == ["memory://data/c.parquet"]
