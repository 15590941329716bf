"""Multi-update transactions.

Builders created from a transaction stage their change instead of committing
it. Each staged change is folded onto the transaction's working metadata, so
later changes observe earlier ones (a file appended after a spec change is
stamped with the new spec id). ``commit_transaction()`` commits every staged
change as one pointer swap.

Four kinds exist:

- simple: changes to an existing table,
- create: a new table plus changes, committed only if the table still does
  not exist,
- replace: a new definition for an existing table that keeps its uuid,
  snapshots and history,
- create-or-replace: replace when the table exists, create otherwise.

Example:
    >>> txn = table.new_transaction()
    >>> txn.update_spec().add_field("region").commit()
    >>> txn.new_append().append_file(data_file).commit()
    >>> txn.commit_transaction()
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from strata_catalog.errors import ValidationError
from strata_catalog.expire import ExpireSnapshots
from strata_catalog.io import StagedFileIO
from strata_catalog.manage_snapshots import ManageSnapshots
from strata_catalog.operations import PendingChange
from strata_catalog.properties_update import UpdateProperties
from strata_catalog.requirements import (
    TableRequirement,
    requirements_for_create,
    requirements_for_updates,
    validate_requirements,
)
from strata_catalog.schema_update import UpdateSchema
from strata_catalog.snapshot_producer import AppendFiles, DeleteFiles, OverwriteFiles
from strata_catalog.sort_order_update import ReplaceSortOrder
from strata_catalog.spec_update import UpdateSpec
from strata_catalog.telemetry import traced
from strata_catalog.updates import MetadataUpdate, apply_updates

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import TableOperations
    from strata_catalog.snapshots import Snapshot

logger = structlog.get_logger(__name__)

ReplacementFn = Callable[["TableMetadata"], list[MetadataUpdate]]
"""Builds the updates that replace a table's definition on a given base."""


class TransactionKind(str, Enum):
    """Kinds of transaction.

    Attributes:
        SIMPLE: Changes to an existing table
        CREATE: Create a table, with optional further changes
        REPLACE: Replace an existing table's definition
        CREATE_OR_REPLACE: Replace if present, create otherwise (resolved at start)
    """

    SIMPLE = "simple"
    CREATE = "create"
    REPLACE = "replace"
    CREATE_OR_REPLACE = "create-or-replace"


def _transaction_attributes(self: Transaction, *args: Any, **kwargs: Any) -> dict[str, Any]:
    return {
        "table.name": self.table_name,
        "transaction.kind": self.kind.value,
        "transaction.changes": len(self._steps),
    }


class Transaction:
    """A group of table changes committed atomically.

    Attributes:
        kind: Transaction kind.
        io: Table FileIO that also serves staged manifest lists (used by builders).
        config: Catalog configuration (used by builders).
    """

    def __init__(
        self,
        operations: TableOperations,
        kind: TransactionKind,
        base: TableMetadata | None,
        start: TableMetadata | None = None,
        replacement: ReplacementFn | None = None,
    ) -> None:
        """Initialize Transaction.

        Args:
            operations: Commit engine of the table.
            kind: Transaction kind.
            base: Committed metadata the transaction starts from (None to create).
            start: Initial metadata of a create transaction.
            replacement: Builds the replacement updates of a replace transaction.

        Raises:
            ValidationError: If the arguments do not match ``kind``.
        """
        self._ops = operations
        self.kind = kind
        self.io = StagedFileIO(operations.io)
        self.config = operations.config
        self.table_name = operations.table_name
        self._base = base
        self._replacement = replacement
        self._replacement_updates: list[MetadataUpdate] = []
        self._steps: list[PendingChange] = []
        self._committed = False

        if base is None:
            if start is None:
                msg = "A create transaction requires initial metadata"
                raise ValidationError(msg, field="start")
            self._start = start
        elif replacement is not None:
            self._replacement_updates = replacement(base)
            self._start = apply_updates(base, self._replacement_updates)
        else:
            self._start = base
        self._working = self._start
        self._log = logger.bind(table_name=self.table_name, kind=kind.value)

    # -------------------------------------------------------------------------
    # UpdateTarget
    # -------------------------------------------------------------------------

    def current(self) -> TableMetadata:
        """Working metadata: the start plus every staged change."""
        return self._working

    def commit(self, pending: PendingChange) -> TableMetadata:
        """Stage ``pending``; called by builders created from this transaction.

        Raises:
            ValidationError: If the transaction is closed or ``pending`` was
                built before the latest staged change.
        """
        self._check_open()
        if pending.base is not self._working:
            msg = "Cannot stage a change built on outdated transaction state"
            raise ValidationError(msg, field="base")
        self._steps.append(pending)
        self.io.stage(pending.manifests)
        self._working = pending.metadata
        self._log.debug("transaction_change_staged", operation=pending.operation)
        return self._working

    # -------------------------------------------------------------------------
    # Builders
    # -------------------------------------------------------------------------

    def update_schema(self) -> UpdateSchema:
        return UpdateSchema(self)

    def update_spec(self) -> UpdateSpec:
        return UpdateSpec(self)

    def replace_sort_order(self) -> ReplaceSortOrder:
        return ReplaceSortOrder(self)

    def update_properties(self) -> UpdateProperties:
        return UpdateProperties(self)

    def manage_snapshots(self) -> ManageSnapshots:
        return ManageSnapshots(self)

    def new_append(self) -> AppendFiles:
        return AppendFiles(self)

    def new_delete(self) -> DeleteFiles:
        return DeleteFiles(self)

    def new_overwrite(self) -> OverwriteFiles:
        return OverwriteFiles(self)

    def expire_snapshots(self) -> ExpireSnapshots:
        return ExpireSnapshots(self)

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    @traced(
        operation_name="strata.catalog.commit_transaction",
        attributes_fn=_transaction_attributes,
    )
    def commit_transaction(self) -> TableMetadata:
        """Commit every staged change as one pointer swap.

        Raises:
            TableAlreadyExistsError: A create transaction lost the race.
            CommitFailedError: The commit conflicted and could not be rebased.
            ValidationError: The transaction was already committed.
        """
        self._check_open()
        if self._base is None:
            change = self._create_change()
        elif self._replacement is not None:
            fixed = requirements_for_updates(
                self._base, self._replacement_updates, is_replace=True
            )
            change = self._replace_change(
                self._replacement,
                self._base,
                self._replacement_updates,
                self._start,
                self._steps,
                fixed,
            )
        elif not self._steps:
            self._committed = True
            return self._base
        else:
            fixed_updates = [u for s in self._steps if not s.rebuildable for u in s.updates]
            fixed = requirements_for_updates(self._base, fixed_updates)
            change = self._simple_change(self._base, self._steps, fixed)

        committed = self._ops.commit(change)
        self._committed = True
        self._log.info(
            "transaction_committed",
            changes=len(self._steps),
            metadata_location=committed.metadata_file_location,
        )
        return committed

    def _create_change(self) -> PendingChange:
        return PendingChange(
            base=None,
            metadata=self._working,
            updates=[u for s in self._steps for u in s.updates],
            requirements=requirements_for_create(),
            operation="create-table",
            manifests=_manifests(self._steps),
            snapshot=_last_snapshot(self._steps),
            on_committed=_chain_callbacks(self._steps),
        )

    def _simple_change(
        self,
        base: TableMetadata,
        steps: list[PendingChange],
        fixed: list[TableRequirement],
    ) -> PendingChange:
        # snapshot producers re-derive their ref assertions from the base they land on
        rederived = requirements_for_updates(
            base, [u for s in steps if s.rebuildable for u in s.updates]
        )

        def rebuild(fresh: TableMetadata) -> PendingChange:
            validate_requirements(fixed, fresh)
            return self._simple_change(fresh, self._replay(fresh, steps), fixed)

        return PendingChange(
            base=base,
            metadata=steps[-1].metadata,
            updates=[u for s in steps for u in s.updates],
            requirements=_merge(fixed, rederived),
            operation=steps[0].operation if len(steps) == 1 else "transaction",
            manifests=_manifests(steps),
            snapshot=_last_snapshot(steps),
            rebuild=rebuild,
            revalidate=False,
            refresh_before_commit=any(s.rebuildable for s in steps),
            on_committed=_chain_callbacks(steps),
        )

    def _replace_change(
        self,
        replacement: ReplacementFn,
        base: TableMetadata,
        replacement_updates: list[MetadataUpdate],
        start: TableMetadata,
        steps: list[PendingChange],
        fixed: list[TableRequirement],
    ) -> PendingChange:
        def rebuild(fresh: TableMetadata) -> PendingChange:
            validate_requirements(fixed, fresh)
            fresh_updates = replacement(fresh)
            fresh_start = apply_updates(fresh, fresh_updates)
            replayed = self._replay(fresh_start, steps)
            return self._replace_change(
                replacement, fresh, fresh_updates, fresh_start, replayed, fixed
            )

        current = requirements_for_updates(base, replacement_updates, is_replace=True)
        return PendingChange(
            base=base,
            metadata=steps[-1].metadata if steps else start,
            updates=[*replacement_updates, *(u for s in steps for u in s.updates)],
            requirements=_merge(fixed, current),
            operation="replace-table",
            manifests=_manifests(steps),
            snapshot=_last_snapshot(steps),
            rebuild=rebuild,
            revalidate=False,
            refresh_before_commit=True,
            on_committed=_chain_callbacks(steps),
        )

    def _replay(self, start: TableMetadata, steps: list[PendingChange]) -> list[PendingChange]:
        replayed = []
        current = start
        for step in steps:
            step = step.replay(current)
            self.io.stage(step.manifests)
            replayed.append(step)
            current = step.metadata
        return replayed

    def _check_open(self) -> None:
        if self._committed:
            msg = "Transaction has already been committed"
            raise ValidationError(msg, field="transaction")

    def __repr__(self) -> str:
        """Return string representation."""
        return (
            f"Transaction(table={self.table_name!r}, kind={self.kind.value!r}, "
            f"changes={len(self._steps)})"
        )


# =============================================================================
# Helpers
# =============================================================================


def _merge(*groups: list[TableRequirement]) -> list[TableRequirement]:
    merged: list[TableRequirement] = []
    for group in groups:
        for requirement in group:
            if requirement not in merged:
                merged.append(requirement)
    return merged


def _manifests(steps: list[PendingChange]) -> dict[str, bytes]:
    manifests: dict[str, bytes] = {}
    for step in steps:
        manifests.update(step.manifests)
    return manifests


def _last_snapshot(steps: list[PendingChange]) -> Snapshot | None:
    return next((s.snapshot for s in reversed(steps) if s.snapshot is not None), None)


def _chain_callbacks(steps: list[PendingChange]) -> Callable[[TableMetadata], None] | None:
    callbacks = [s.on_committed for s in steps if s.on_committed is not None]
    if not callbacks:
        return None

    def run(committed: TableMetadata) -> None:
        for callback in callbacks:
            callback(committed)

    return run


__all__ = ["Transaction", "TransactionKind"]
