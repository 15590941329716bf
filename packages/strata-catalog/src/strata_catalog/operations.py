"""Commit engine.

TableOperations owns one table's view of the catalog pointer and turns a
PendingChange into an atomic pointer advance:

1. write any manifest lists and the candidate metadata file,
2. ask the backend to swap the pointer from the base location to the new one,
3. on a conflict, refresh, rebase the change onto the new base and retry
   (authoritative backends only, bounded by the table's retry policy),
4. on success, record the base in the metadata log and prune old files.

A failed attempt deletes everything it wrote, so the pointer never references
a partial write. Every outcome is reported to the injected MetricsReporter.

Example:
    >>> ops = TableOperations(backend, io, identifier, config, reporter, "prod.db.events")
    >>> committed = ops.commit(update_schema.pending())
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from strata_catalog.config import CatalogConfig, TableProperties, property_as_bool, property_as_int
from strata_catalog.errors import (
    CatalogError,
    CommitConflictError,
    CommitFailedError,
    NoSuchTableError,
    RequirementFailedError,
)
from strata_catalog.metadata import (
    TableMetadata,
    new_metadata_location,
    read_table_metadata,
    write_table_metadata,
)
from strata_catalog.reporting import CommitReport, MetricsReporter
from strata_catalog.requirements import (
    AssertRefSnapshotId,
    TableRequirement,
    requirements_for_updates,
    validate_requirements,
)
from strata_catalog.retry import CommitRetryPolicy, create_commit_retrying
from strata_catalog.snapshots import MetadataLogEntry, Snapshot
from strata_catalog.telemetry import traced
from strata_catalog.updates import MetadataUpdate, apply_updates

if TYPE_CHECKING:
    from strata_catalog.backend import CatalogBackend
    from strata_catalog.identifiers import TableIdentifier
    from strata_catalog.io import FileIO

logger = structlog.get_logger(__name__)


# =============================================================================
# Pending Change
# =============================================================================


class PendingChange:
    """A candidate commit, distinct from the act of committing it.

    Attributes:
        base: Metadata the change was built on (None when creating a table).
        metadata: Candidate metadata.
        updates: Actions that turn ``base`` into ``metadata``.
        requirements: Assertions about ``base`` that must hold at swap time.
        operation: Name of the change for reports and logs.
        manifests: Manifest list files to write before the metadata file.
        snapshot: Snapshot added by the change, if any.
        on_committed: Called with the committed metadata after the pointer moved.
    """

    def __init__(
        self,
        base: TableMetadata | None,
        metadata: TableMetadata,
        updates: list[MetadataUpdate],
        requirements: list[TableRequirement],
        operation: str,
        manifests: dict[str, bytes] | None = None,
        snapshot: Snapshot | None = None,
        rebuild: Callable[[TableMetadata], PendingChange] | None = None,
        revalidate: bool = True,
        refresh_before_commit: bool = False,
        on_committed: Callable[[TableMetadata], None] | None = None,
    ) -> None:
        """Initialize PendingChange.

        Args:
            base: Metadata the change was built on.
            metadata: Candidate metadata.
            updates: Actions folded onto ``base``.
            requirements: Assertions about ``base``.
            operation: Name of the change.
            manifests: Manifest list contents by location.
            snapshot: Snapshot added by the change.
            rebuild: Re-derives the change from a newer base. Without it the
                updates are replayed.
            revalidate: Whether rebasing first checks ``requirements`` against
                the newer base.
            refresh_before_commit: Whether the first attempt rebases onto the
                latest pointer instead of the captured base.
            on_committed: Post-commit hook, e.g. deleting files that are no longer
                referenced.
        """
        self.base = base
        self.metadata = metadata
        self.updates = updates
        self.requirements = requirements
        self.operation = operation
        self.manifests = manifests or {}
        self.snapshot = snapshot
        self._rebuild = rebuild
        self.revalidate = revalidate
        self.refresh_before_commit = refresh_before_commit
        self.on_committed = on_committed

    @classmethod
    def from_updates(
        cls,
        base: TableMetadata,
        updates: list[MetadataUpdate],
        operation: str,
    ) -> PendingChange:
        """Fold ``updates`` onto ``base`` and derive the requirements."""
        return cls(
            base=base,
            metadata=apply_updates(base, updates),
            updates=updates,
            requirements=requirements_for_updates(base, updates),
            operation=operation,
        )

    @property
    def rebuildable(self) -> bool:
        return self._rebuild is not None

    def replay(self, base: TableMetadata) -> PendingChange:
        """Re-create this change on top of ``base`` without checking requirements."""
        if self._rebuild is not None:
            return self._rebuild(base)
        return PendingChange(
            base=base,
            metadata=apply_updates(base, self.updates),
            updates=self.updates,
            requirements=self.requirements,
            operation=self.operation,
            manifests=self.manifests,
            snapshot=self.snapshot,
            revalidate=self.revalidate,
            refresh_before_commit=self.refresh_before_commit,
            on_committed=self.on_committed,
        )

    def rebase(self, fresh: TableMetadata) -> PendingChange:
        """Re-create this change on ``fresh`` after a conflict.

        Raises:
            RequirementFailedError: If a requirement no longer holds.
        """
        if self.revalidate:
            validate_requirements(self.requirements, fresh)
        return self.replay(fresh)

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"PendingChange(operation={self.operation!r}, "
            f"updates={len(self.updates)}, "
            f"requirements={[r.description for r in self.requirements]})"
        )


# =============================================================================
# Table Operations
# =============================================================================


def _commit_attributes(self: TableOperations, pending: PendingChange) -> dict[str, Any]:
    return {
        "table.name": self.table_name,
        "commit.operation": pending.operation,
        "commit.updates": len(pending.updates),
    }


class TableOperations:
    """Refresh and commit for one table.

    Attributes:
        identifier: Catalog identifier of the table.
        io: FileIO used for metadata and manifest files.
        config: Catalog configuration (retry defaults).
        table_name: Fully qualified name used in reports.
    """

    def __init__(
        self,
        backend: CatalogBackend,
        io: FileIO,
        identifier: TableIdentifier,
        config: CatalogConfig,
        reporter: MetricsReporter,
        table_name: str,
        current: TableMetadata | None = None,
    ) -> None:
        """Initialize TableOperations.

        Args:
            backend: Catalog backend owning the table pointer.
            io: FileIO for metadata files.
            identifier: Table identifier.
            config: Catalog configuration.
            reporter: Receives a CommitReport per commit.
            table_name: Fully qualified name used in reports.
            current: Already-loaded metadata, if any.
        """
        self._backend = backend
        self.io = io
        self.identifier = identifier
        self.config = config
        self._reporter = reporter
        self.table_name = table_name
        self._current = current
        self._log = logger.bind(table_identifier=str(identifier))

    @property
    def supports_server_side_retry(self) -> bool:
        return self._backend.supports_server_side_retry

    def current(self) -> TableMetadata:
        """Return the last loaded metadata, loading it if needed."""
        if self._current is None:
            return self.refresh()
        return self._current

    def refresh(self) -> TableMetadata:
        """Re-read the catalog pointer.

        Raises:
            NoSuchTableError: If the table no longer exists.
        """
        self._current = self._read_current()
        return self._current

    def _read_current(self) -> TableMetadata:
        location = self._backend.current_location(self.identifier)
        if location is None:
            msg = f"Table does not exist: {self.identifier}"
            raise NoSuchTableError(msg, table_identifier=str(self.identifier))
        if self._current is not None and self._current.metadata_file_location == location:
            return self._current
        return read_table_metadata(self.io, location)

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    @traced(operation_name="strata.catalog.commit", attributes_fn=_commit_attributes)
    def commit(self, pending: PendingChange) -> TableMetadata:
        """Commit ``pending`` and return the committed metadata.

        Raises:
            CommitFailedError: The pointer moved and the change could not be
                rebased (``RequirementFailedError`` names the failed assertion).
            TableAlreadyExistsError: A create lost the race.
            NoSuchTableError: The table was dropped.
            ValidationError: The change is invalid against a rebased base.
        """
        authoritative = self._backend.supports_server_side_retry
        properties = (pending.base or pending.metadata).properties
        policy = CommitRetryPolicy.for_table(self.config, properties)
        retrying = create_commit_retrying(policy, authoritative)

        change = pending
        attempts = 0
        start = time.monotonic()

        def attempt() -> TableMetadata:
            nonlocal change, attempts
            attempts += 1
            if attempts > 1 or change.refresh_before_commit:
                change = self._rebase_if_stale(change)
            return self._attempt(change)

        try:
            committed = retrying(attempt)
        except CommitConflictError as exc:
            message = exc.message
            if authoritative:
                message = f"{exc.message} (gave up after {attempts} attempts)"
            failure = CommitFailedError(message, retry_count=attempts - 1)
            self._report(change, attempts, start, failure)
            self._log.warning("commit_failed", error=message, attempts=attempts)
            raise failure from exc
        except CatalogError as exc:
            self._report(change, attempts, start, exc)
            self._log.warning(
                "commit_failed",
                error=exc.message,
                error_type=type(exc).__name__,
                attempts=attempts,
            )
            raise

        self._report(change, attempts, start, None)
        if change.on_committed is not None:
            change.on_committed(committed)
        self._log.info(
            "table_committed",
            operation=pending.operation,
            metadata_location=committed.metadata_file_location,
            attempts=attempts,
        )
        return committed

    def _rebase_if_stale(self, change: PendingChange) -> PendingChange:
        if change.base is None:
            return change
        fresh = self.refresh()
        if fresh.metadata_file_location == change.base.metadata_file_location:
            return change
        self._log.debug(
            "rebasing_change",
            operation=change.operation,
            base_location=change.base.metadata_file_location,
            current_location=fresh.metadata_file_location,
        )
        return change.rebase(fresh)

    def _attempt(self, change: PendingChange) -> TableMetadata:
        base_location = change.base.metadata_file_location if change.base else None
        metadata = self._with_metadata_log(change)
        new_location = new_metadata_location(metadata.location, base_location)

        written: list[str] = []
        try:
            for location, content in change.manifests.items():
                self.io.new_output(location).write(content)
                written.append(location)
            write_table_metadata(self.io, new_location, metadata)
            written.append(new_location)
            self._backend.commit_table(
                self.identifier,
                base_location,
                new_location,
                change.requirements,
                self.io,
            )
        except RequirementFailedError as exc:
            self._delete_files(written)
            if change.rebuildable and isinstance(exc.requirement, AssertRefSnapshotId):
                # the branch moved; the change is re-derived from the new head
                raise CommitConflictError(exc.message) from exc
            raise
        except Exception:
            self._delete_files(written)
            raise

        committed = metadata.model_copy(update={"metadata_file_location": new_location})
        self._current = committed
        if change.base is not None:
            self._delete_dropped_metadata_files(change.base, committed)
        return committed

    def _with_metadata_log(self, change: PendingChange) -> TableMetadata:
        """Append the base location to the metadata log, keeping the newest entries."""
        base = change.base
        metadata = change.metadata
        if base is None or base.metadata_file_location is None:
            return metadata
        max_entries = max(
            1,
            property_as_int(
                metadata.properties,
                TableProperties.METADATA_PREVIOUS_VERSIONS_MAX,
                TableProperties.METADATA_PREVIOUS_VERSIONS_MAX_DEFAULT,
            ),
        )
        entry = MetadataLogEntry(
            timestamp_ms=base.last_updated_ms,
            metadata_file=base.metadata_file_location,
        )
        log = (*metadata.metadata_log, entry)[-max_entries:]
        return metadata.model_copy(update={"metadata_log": log})

    def _delete_dropped_metadata_files(self, base: TableMetadata, committed: TableMetadata) -> None:
        enabled = property_as_bool(
            committed.properties,
            TableProperties.METADATA_DELETE_AFTER_COMMIT_ENABLED,
            TableProperties.METADATA_DELETE_AFTER_COMMIT_ENABLED_DEFAULT,
        )
        if not enabled:
            return
        retained = {e.metadata_file for e in committed.metadata_log}
        dropped = [e.metadata_file for e in base.metadata_log if e.metadata_file not in retained]
        for location in dropped:
            self.io.delete(location)
        if dropped:
            self._log.debug("metadata_files_deleted", count=len(dropped))

    def _delete_files(self, locations: list[str]) -> None:
        for location in locations:
            self.io.delete(location)

    def _report(
        self,
        change: PendingChange,
        attempts: int,
        start: float,
        error: Exception | None,
    ) -> None:
        snapshot = change.snapshot
        self._reporter.report(
            CommitReport(
                table_name=self.table_name,
                snapshot_id=snapshot.snapshot_id if snapshot else None,
                sequence_number=snapshot.sequence_number if snapshot else None,
                operation=change.operation,
                attempts=attempts,
                duration_ms=int((time.monotonic() - start) * 1000),
                success=error is None,
                error=type(error).__name__ if error else None,
            )
        )


# =============================================================================
# Pending Updates
# =============================================================================


class UpdateTarget(Protocol):
    """What builders commit into: a table's operations or an open transaction."""

    io: FileIO
    config: CatalogConfig

    def current(self) -> TableMetadata: ...

    def commit(self, pending: PendingChange) -> TableMetadata: ...


class PendingUpdate(ABC):
    """Base class for metadata update builders.

    ``apply()`` previews the result without side effects; ``commit()`` is the
    only call that changes catalog state. The base is captured when the
    builder is created.
    """

    operation = "update"

    def __init__(self, target: UpdateTarget) -> None:
        """Initialize PendingUpdate.

        Args:
            target: Table operations or transaction to commit into.
        """
        self._target = target
        self._base = target.current()

    @abstractmethod
    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        """Return the actions expressing this change against ``base``."""

    def pending(self) -> PendingChange:
        """Build the candidate commit without side effects."""
        return PendingChange.from_updates(self._base, self._updates(self._base), self.operation)

    def commit(self) -> TableMetadata:
        """Commit the change and return the committed metadata."""
        return self._target.commit(self.pending())


__all__ = [
    "PendingChange",
    "PendingUpdate",
    "TableOperations",
    "UpdateTarget",
]
