"""Snapshot expiration and metadata garbage collection.

Retention is computed per reference:

- each branch keeps its head and walks back through ancestors while fewer
  than ``min_snapshots_to_keep`` are kept or the ancestor is newer than the
  branch's age horizon,
- each tag keeps its head,
- snapshots no reference reaches are kept while newer than the default horizon,
- a non-main ref older than its ``max_ref_age_ms`` is removed first.

With ``clean_expired_metadata(True)`` schemas, specs and sort orders no live
snapshot uses are removed too; the current schema, default spec and default
sort order always stay. After the commit, manifest lists of expired snapshots
and data files no live snapshot references are deleted.

Example:
    >>> table.expire_snapshots().expire_older_than(cutoff_ms).retain_last(2).commit()
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from strata_catalog.config import TableProperties, property_as_bool, property_as_int
from strata_catalog.errors import ValidationError
from strata_catalog.operations import PendingChange, PendingUpdate
from strata_catalog.snapshots import MAIN_BRANCH, DataFile, Snapshot, now_ms, read_data_files
from strata_catalog.updates import (
    MetadataUpdate,
    RemovePartitionSpecs,
    RemoveSchemas,
    RemoveSnapshotRef,
    RemoveSnapshots,
    RemoveSortOrders,
)

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget

logger = structlog.get_logger(__name__)


class ExpireSnapshots(PendingUpdate):
    """Remove old snapshots and, optionally, metadata they alone used."""

    operation = "expire-snapshots"

    def __init__(self, target: UpdateTarget) -> None:
        """Initialize ExpireSnapshots.

        Raises:
            ValidationError: If ``gc.enabled`` is false for the table.
        """
        super().__init__(target)
        gc_enabled = property_as_bool(
            self._base.properties,
            TableProperties.GC_ENABLED,
            TableProperties.GC_ENABLED_DEFAULT,
        )
        if not gc_enabled:
            msg = f"Cannot expire snapshots: GC is disabled ({TableProperties.GC_ENABLED}=false)"
            raise ValidationError(msg, field=TableProperties.GC_ENABLED, value="false")
        self._now = now_ms()
        self._older_than: int | None = None
        self._snapshot_ids: set[int] = set()
        self._retain_last: int | None = None
        self._clean_metadata = False
        self._clean_files = True
        self._delete: Callable[[str], None] = target.io.delete
        self._expired: list[Snapshot] = []

    def expire_older_than(self, timestamp_ms: int) -> ExpireSnapshots:
        """Expire unprotected snapshots created before ``timestamp_ms``."""
        self._older_than = timestamp_ms
        return self

    def expire_snapshot_id(self, snapshot_id: int) -> ExpireSnapshots:
        """Expire ``snapshot_id`` regardless of age."""
        self._snapshot_ids.add(snapshot_id)
        return self

    def retain_last(self, count: int) -> ExpireSnapshots:
        """Keep at least ``count`` ancestors of each branch head."""
        if count < 1:
            msg = f"Number of snapshots to retain must be at least 1, cannot be: {count}"
            raise ValidationError(msg, field="retain_last", value=count)
        self._retain_last = count
        return self

    def clean_expired_metadata(self, clean: bool) -> ExpireSnapshots:
        self._clean_metadata = clean
        return self

    def clean_expired_files(self, clean: bool) -> ExpireSnapshots:
        self._clean_files = clean
        return self

    def delete_with(self, delete: Callable[[str], None]) -> ExpireSnapshots:
        """Use ``delete`` instead of FileIO to remove expired files."""
        self._delete = delete
        return self

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def apply(self) -> list[Snapshot]:
        """Return the snapshots that would expire, without committing."""
        self._updates(self._base)
        return list(self._expired)

    def pending(self) -> PendingChange:
        """Build the change; a retry recomputes retention on the newer base."""
        return self._build(self._base)

    def _build(self, base: TableMetadata) -> PendingChange:
        change = PendingChange.from_updates(base, self._updates(base), self.operation)
        return PendingChange(
            base=change.base,
            metadata=change.metadata,
            updates=change.updates,
            requirements=change.requirements,
            operation=change.operation,
            rebuild=self._build,
            revalidate=False,
            refresh_before_commit=True,
            on_committed=self._cleanup if self._clean_files else None,
        )

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        self._expired = []
        default_horizon = self._default_horizon(base)
        default_min_keep = self._retain_last or property_as_int(
            base.properties,
            TableProperties.MIN_SNAPSHOTS_TO_KEEP,
            TableProperties.MIN_SNAPSHOTS_TO_KEEP_DEFAULT,
        )

        expired_refs = self._expired_refs(base)
        refs = {n: r for n, r in base.refs.items() if n not in expired_refs}

        retained: set[int] = set()
        reachable: set[int] = set()
        for ref in refs.values():
            if not ref.is_branch:
                retained.add(ref.snapshot_id)
                reachable.add(ref.snapshot_id)
                continue
            horizon = default_horizon
            if ref.max_snapshot_age_ms is not None:
                horizon = self._now - ref.max_snapshot_age_ms
            min_keep = ref.min_snapshots_to_keep or default_min_keep
            kept = 0
            walking = True
            for ancestor in base.ancestors_of(ref.snapshot_id):
                reachable.add(ancestor.snapshot_id)
                if walking and (kept < min_keep or ancestor.timestamp_ms >= horizon):
                    retained.add(ancestor.snapshot_id)
                    kept += 1
                else:
                    walking = False

        for snapshot in base.snapshots:
            if snapshot.snapshot_id not in reachable and snapshot.timestamp_ms >= default_horizon:
                retained.add(snapshot.snapshot_id)

        heads = {r.snapshot_id for r in refs.values()}
        for snapshot_id in self._snapshot_ids:
            if snapshot_id in heads:
                names = sorted(n for n, r in refs.items() if r.snapshot_id == snapshot_id)
                msg = f"Cannot expire {snapshot_id}. Still referenced by refs: {names}"
                raise ValidationError(msg, field="snapshot_id", value=snapshot_id)
        retained -= self._snapshot_ids

        self._expired = [s for s in base.snapshots if s.snapshot_id not in retained]
        updates: list[MetadataUpdate] = [
            RemoveSnapshotRef(ref_name=name) for name in sorted(expired_refs)
        ]
        if self._expired:
            updates.append(
                RemoveSnapshots(snapshot_ids=tuple(s.snapshot_id for s in self._expired))
            )
        if self._clean_metadata:
            live = [s for s in base.snapshots if s.snapshot_id in retained]
            updates.extend(self._unused_metadata(base, live))

        logger.debug(
            "snapshots_expiring",
            expired=len(self._expired),
            expired_refs=sorted(expired_refs),
            retained=len(retained),
        )
        return updates

    def _default_horizon(self, base: TableMetadata) -> int:
        if self._older_than is not None:
            return self._older_than
        max_age = property_as_int(
            base.properties,
            TableProperties.MAX_SNAPSHOT_AGE_MS,
            TableProperties.MAX_SNAPSHOT_AGE_MS_DEFAULT,
        )
        return self._now - max_age

    def _expired_refs(self, base: TableMetadata) -> set[str]:
        expired = set()
        for name, ref in base.refs.items():
            if name == MAIN_BRANCH or ref.max_ref_age_ms is None:
                continue
            snapshot = base.snapshot_by_id(ref.snapshot_id)
            if snapshot is not None and self._now - snapshot.timestamp_ms > ref.max_ref_age_ms:
                expired.add(name)
        return expired

    def _unused_metadata(
        self, base: TableMetadata, live: list[Snapshot]
    ) -> list[MetadataUpdate]:
        schema_ids = {base.current_schema_id}
        schema_ids.update(s.schema_id for s in live if s.schema_id is not None)
        spec_ids = {base.default_spec_id}
        order_ids = {base.default_sort_order_id}
        for data_file in self._live_files(live):
            if data_file.spec_id is not None:
                spec_ids.add(data_file.spec_id)
            if data_file.sort_order_id is not None:
                order_ids.add(data_file.sort_order_id)

        updates: list[MetadataUpdate] = []
        unused_schemas = tuple(s.schema_id for s in base.schemas if s.schema_id not in schema_ids)
        if unused_schemas:
            updates.append(RemoveSchemas(schema_ids=unused_schemas))
        unused_specs = tuple(s.spec_id for s in base.specs if s.spec_id not in spec_ids)
        if unused_specs:
            updates.append(RemovePartitionSpecs(spec_ids=unused_specs))
        unused_orders = tuple(
            o.order_id for o in base.sort_orders if o.order_id not in order_ids
        )
        if unused_orders:
            updates.append(RemoveSortOrders(sort_order_ids=unused_orders))
        return updates

    def _live_files(self, snapshots: list[Snapshot]) -> list[DataFile]:
        files: dict[str, DataFile] = {}
        for snapshot in snapshots:
            for data_file in read_data_files(self._target.io, snapshot):
                files[data_file.file_path] = data_file
        return list(files.values())

    # -------------------------------------------------------------------------
    # File cleanup
    # -------------------------------------------------------------------------

    def _cleanup(self, committed: TableMetadata) -> None:
        """Delete manifest lists of expired snapshots and data files only they referenced."""
        if not self._expired:
            return
        live_paths = {f.file_path for f in self._live_files(list(committed.snapshots))}
        expired_paths: set[str] = set()
        for snapshot in self._expired:
            expired_paths.update(
                f.file_path for f in read_data_files(self._target.io, snapshot)
            )
        deleted = 0
        for path in sorted(expired_paths - live_paths):
            self._delete(path)
            deleted += 1
        for snapshot in self._expired:
            self._delete(snapshot.manifest_list)
        logger.info(
            "expired_files_deleted",
            manifest_lists=len(self._expired),
            data_files=deleted,
        )


__all__ = ["ExpireSnapshots"]
