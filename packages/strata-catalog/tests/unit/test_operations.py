"""Unit tests for the commit engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from strata_catalog.backend import (
    CatalogBackend,
    InMemoryCatalogBackend,
    ValidatingCatalogBackend,
)
from strata_catalog.config import CatalogConfig
from strata_catalog.errors import (
    CommitConflictError,
    CommitFailedError,
    NoSuchTableError,
    RequirementFailedError,
)
from strata_catalog.identifiers import TableIdentifier
from strata_catalog.io import InMemoryFileIO
from strata_catalog.metadata import TableMetadata, new_table_metadata
from strata_catalog.operations import PendingChange, TableOperations
from strata_catalog.partitioning import UNPARTITIONED_SPEC
from strata_catalog.requirements import AssertCreate
from strata_catalog.schema import NestedField, Schema
from strata_catalog.sorting import UNSORTED_ORDER
from strata_catalog.types import FieldType
from strata_catalog.updates import AddSchema, SetCurrentSchema, SetProperties

if TYPE_CHECKING:
    from strata_catalog.catalog import Catalog
    from strata_catalog.io import FileIO
    from strata_catalog.requirements import TableRequirement
    from strata_catalog.table import Table
    from tests.conftest import RecordingReporter


class AlwaysConflictingBackend(ValidatingCatalogBackend):
    """Authoritative backend whose swaps never succeed after creation."""

    def commit_table(
        self,
        identifier: TableIdentifier,
        expected_location: str | None,
        new_location: str,
        requirements: list[TableRequirement],
        io: FileIO,
    ) -> None:
        if expected_location is None:
            super().commit_table(identifier, expected_location, new_location, requirements, io)
            return
        raise CommitConflictError("Cannot commit: pointer moved")


def _ops(
    backend: CatalogBackend,
    io: InMemoryFileIO,
    config: CatalogConfig,
    reporter: RecordingReporter,
) -> TableOperations:
    identifier = TableIdentifier.of("db", "events")
    return TableOperations(backend, io, identifier, config, reporter, "test.db.events")


def _create(ops: TableOperations, schema: Schema, properties: dict[str, str]) -> TableMetadata:
    metadata = new_table_metadata(
        schema, UNPARTITIONED_SPEC, UNSORTED_ORDER, "memory://wh/db/events", properties
    )
    return ops.commit(PendingChange(None, metadata, [], [AssertCreate()], "create"))


def _set(base: TableMetadata, **properties: str) -> PendingChange:
    return PendingChange.from_updates(base, [SetProperties(updates=properties)], "set-properties")


def _metadata_files(io: InMemoryFileIO) -> list[str]:
    return [f for f in io.list_prefix("memory://wh/db/events/metadata/") if "snap-" not in f]


def _table_metadata_files(io: InMemoryFileIO, table: Table) -> list[str]:
    prefix = f"{table.location()}/metadata/"
    return [f for f in io.list_prefix(prefix) if f.endswith(".metadata.json")]


# =============================================================================
# Single Writer
# =============================================================================


class TestCommit:
    """Tests for uncontended commits."""

    def test_create(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test creating writes version 0 and reports one attempt."""
        ops = _ops(ValidatingCatalogBackend(), io, config, reporter)
        created = _create(ops, schema, {})
        assert created.metadata_file_location is not None
        assert "/metadata/00000-" in created.metadata_file_location
        assert ops.current() is created
        [report] = reporter.commit_reports
        assert (report.operation, report.attempts, report.success) == ("create", 1, True)
        assert report.table_name == "test.db.events"

    def test_versions_increase(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test each commit writes the next version and logs the previous file."""
        ops = _ops(InMemoryCatalogBackend(), io, config, reporter)
        created = _create(ops, schema, {})
        updated = ops.commit(_set(created, a="1"))
        assert updated.metadata_file_location is not None
        assert "/metadata/00001-" in updated.metadata_file_location
        assert [e.metadata_file for e in updated.metadata_log] == [created.metadata_file_location]
        assert ops.refresh() == updated

    def test_on_committed_called(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test the post-commit hook receives the committed metadata."""
        ops = _ops(InMemoryCatalogBackend(), io, config, reporter)
        created = _create(ops, schema, {})
        seen: list[TableMetadata] = []
        pending = _set(created, a="1")
        pending.on_committed = seen.append
        committed = ops.commit(pending)
        assert seen == [committed]

    def test_refresh_after_drop(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test refreshing a dropped table fails."""
        backend = InMemoryCatalogBackend()
        ops = _ops(backend, io, config, reporter)
        _create(ops, schema, {})
        backend.drop_table(ops.identifier)
        with pytest.raises(NoSuchTableError, match="Table does not exist: db.events"):
            ops.refresh()

    def test_metadata_log_trimmed_and_files_deleted(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test old metadata files fall out of the log and are deleted when enabled."""
        ops = _ops(InMemoryCatalogBackend(), io, config, reporter)
        v0 = _create(
            ops,
            schema,
            {
                "write.metadata.previous-versions-max": "1",
                "metadata.delete-after-commit.enabled": "true",
            },
        )
        v1 = ops.commit(_set(v0, a="1"))
        v2 = ops.commit(_set(v1, a="2"))
        assert [e.metadata_file for e in v2.metadata_log] == [v1.metadata_file_location]
        assert v0.metadata_file_location in io.deleted_files
        assert _metadata_files(io) == sorted(
            [v1.metadata_file_location, v2.metadata_file_location]
        )

    def test_old_files_kept_by_default(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test trimmed files stay in storage unless deletion is enabled."""
        ops = _ops(InMemoryCatalogBackend(), io, config, reporter)
        v0 = _create(ops, schema, {"write.metadata.previous-versions-max": "1"})
        v1 = ops.commit(_set(v0, a="1"))
        ops.commit(_set(v1, a="2"))
        assert io.deleted_files == []
        assert len(_metadata_files(io)) == 3

    def test_schema_commits_keep_bounded_history(
        self,
        catalog: Catalog,
        identifier: TableIdentifier,
        io: InMemoryFileIO,
        schema: Schema,
    ) -> None:
        """Test a table keeps only the current file plus previous-versions-max in storage."""
        table = catalog.create_table(
            identifier,
            schema,
            properties={
                "write.metadata.previous-versions-max": "2",
                "metadata.delete-after-commit.enabled": "true",
            },
        )
        for i in range(1, 6):
            table.update_schema().add_column(f"extra_{i}", FieldType.STRING).commit()
            expected = min(i, 2)
            log = table.metadata.metadata_log
            assert len(log) == expected
            files = _table_metadata_files(io, table)
            assert len(files) == expected + 1
            assert sorted(files) == sorted(
                [*(e.metadata_file for e in log), table.metadata_file_location()]
            )
        assert len(table.metadata.metadata_log) == 2
        assert len(_table_metadata_files(io, table)) == 3


# =============================================================================
# Concurrent Writers
# =============================================================================


class TestConcurrentCommit:
    """Tests for commits built on a stale base."""

    def test_stale_properties_rebased_on_validating_backend(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test a change whose requirements still hold is replayed on the new base."""
        backend = ValidatingCatalogBackend()
        ops = _ops(backend, io, config, reporter)
        stale = _create(ops, schema, {})
        other = _ops(backend, io, config, reporter)
        other.commit(_set(other.current(), a="1"))

        committed = ops.commit(_set(stale, b="2"))
        assert committed.properties == {"a": "1", "b": "2"}
        assert reporter.commit_reports[-1].attempts == 2
        assert len(_metadata_files(io)) == 3

    def test_stale_commit_fails_on_cas_backend(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test a pointer-only backend gives a stale change one attempt."""
        backend = InMemoryCatalogBackend()
        ops = _ops(backend, io, config, reporter)
        stale = _create(ops, schema, {})
        other = _ops(backend, io, config, reporter)
        other.commit(_set(other.current(), a="1"))

        with pytest.raises(CommitFailedError, match="Cannot commit db.events") as exc_info:
            ops.commit(_set(stale, b="2"))
        assert "gave up" not in str(exc_info.value)
        assert exc_info.value.retry_count == 0
        report = reporter.commit_reports[-1]
        assert (report.success, report.error) == (False, "CommitFailedError")
        assert len(_metadata_files(io)) == 2

    def test_broken_requirement_not_retried(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test a stale schema change fails with the requirement it broke."""
        backend = ValidatingCatalogBackend()
        ops = _ops(backend, io, config, reporter)
        stale = _create(ops, schema, {})
        extra = NestedField(field_id=4, name="extra", field_type=FieldType.INT)
        wider = Schema(fields=(*stale.schema().fields, extra))
        other = _ops(backend, io, config, reporter)
        other.commit(
            PendingChange.from_updates(
                other.current(),
                [AddSchema(added_schema=wider, last_column_id=4), SetCurrentSchema()],
                "update-schema",
            )
        )
        other_extra = NestedField(field_id=4, name="other", field_type=FieldType.INT)
        competing = Schema(fields=(*stale.schema().fields, other_extra))
        with pytest.raises(RequirementFailedError, match="last assigned field id changed"):
            ops.commit(
                PendingChange.from_updates(
                    stale,
                    [AddSchema(added_schema=competing, last_column_id=4), SetCurrentSchema()],
                    "update-schema",
                )
            )
        assert reporter.commit_reports[-1].attempts == 1

    def test_gives_up_after_retries(
        self,
        io: InMemoryFileIO,
        config: CatalogConfig,
        reporter: RecordingReporter,
        schema: Schema,
    ) -> None:
        """Test repeated conflicts end in CommitFailedError naming the attempts."""
        ops = _ops(AlwaysConflictingBackend(), io, config, reporter)
        created = _create(ops, schema, {"commit.retry.num-retries": "2"})
        with pytest.raises(CommitFailedError, match="gave up after 3 attempts") as exc_info:
            ops.commit(_set(created, a="1"))
        assert exc_info.value.retry_count == 2
        assert not isinstance(exc_info.value, CommitConflictError)
        assert reporter.commit_reports[-1].attempts == 3
        assert _metadata_files(io) == [created.metadata_file_location]
