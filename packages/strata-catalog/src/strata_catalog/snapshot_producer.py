"""Snapshot producers: append, delete and overwrite data files.

A producer builds a new snapshot whose parent is the head of the branch it
writes (``main`` unless ``to_branch`` names another). The data file list of
the new snapshot is the parent's list with the requested changes applied, and
files added here are stamped with the table's default partition spec id as of
the metadata the snapshot is built on.

Producers are re-derived rather than replayed: before writing, the commit
engine refreshes the pointer and builds the snapshot again on the latest
branch head, so concurrent appends do not conflict.

Example:
    >>> table.new_append().append_file(DataFile(file_path="s3://b/d/1.parquet")).commit()
    >>> table.new_delete().to_branch("audit").delete_file("s3://b/d/1.parquet").commit()
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING

import structlog

from strata_catalog.errors import ValidationError
from strata_catalog.operations import PendingChange, PendingUpdate
from strata_catalog.requirements import requirements_for_updates
from strata_catalog.snapshots import (
    MAIN_BRANCH,
    DataFile,
    ManifestList,
    Operation,
    RefType,
    Snapshot,
    encode_manifest_list,
    generate_snapshot_id,
    manifest_list_location,
    read_data_files,
)
from strata_catalog.updates import AddSnapshot, MetadataUpdate, SetSnapshotRef, apply_updates

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget

logger = structlog.get_logger(__name__)


class SnapshotProducer(PendingUpdate):
    """Base class for builders that add a snapshot."""

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._branch = MAIN_BRANCH
        self._snapshot_id = generate_snapshot_id()

    def to_branch(self, branch: str) -> SnapshotProducer:
        """Write to ``branch`` instead of ``main``.

        Raises:
            ValidationError: If the branch does not exist.
        """
        self._check_branch(self._base, branch)
        self._branch = branch
        return self

    @abstractmethod
    def _operation(self) -> Operation: ...

    @abstractmethod
    def _data_files(
        self, base: TableMetadata, existing: tuple[DataFile, ...]
    ) -> tuple[DataFile, ...]:
        """Return the file list of the new snapshot given its parent's."""

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        return self._build(base).updates

    def apply(self) -> Snapshot:
        """Return the snapshot this producer would add, without committing."""
        snapshot = self._build(self._base).snapshot
        assert snapshot is not None
        return snapshot

    def pending(self) -> PendingChange:
        return self._build(self._base)

    def _build(self, base: TableMetadata) -> PendingChange:
        self._check_branch(base, self._branch)
        ref = base.refs.get(self._branch)
        parent = base.snapshot_by_id(ref.snapshot_id) if ref else None
        existing = read_data_files(self._target.io, parent) if parent else ()
        data_files = self._data_files(base, existing)

        manifest_list = manifest_list_location(base.location, self._snapshot_id)
        snapshot = Snapshot(
            snapshot_id=self._snapshot_id,
            parent_snapshot_id=parent.snapshot_id if parent else None,
            sequence_number=base.next_sequence_number(),
            timestamp_ms=base.next_snapshot_timestamp(),
            schema_id=base.current_schema_id,
            operation=self._operation(),
            manifest_list=manifest_list,
            summary=_summary(existing, data_files),
        )
        updates: list[MetadataUpdate] = [
            AddSnapshot(snapshot=snapshot),
            SetSnapshotRef(
                ref_name=self._branch,
                snapshot_id=snapshot.snapshot_id,
                ref_type=RefType.BRANCH,
                max_ref_age_ms=ref.max_ref_age_ms if ref else None,
                max_snapshot_age_ms=ref.max_snapshot_age_ms if ref else None,
                min_snapshots_to_keep=ref.min_snapshots_to_keep if ref else None,
            ),
        ]
        logger.debug(
            "snapshot_produced",
            snapshot_id=snapshot.snapshot_id,
            parent_snapshot_id=snapshot.parent_snapshot_id,
            branch=self._branch,
            data_files=len(data_files),
        )
        manifest = ManifestList(snapshot_id=snapshot.snapshot_id, data_files=data_files)
        return PendingChange(
            base=base,
            metadata=apply_updates(base, updates),
            updates=updates,
            requirements=requirements_for_updates(base, updates),
            operation=snapshot.operation.value,
            manifests={manifest_list: encode_manifest_list(manifest)},
            snapshot=snapshot,
            rebuild=self._build,
            revalidate=False,
            refresh_before_commit=True,
        )

    @staticmethod
    def _check_branch(base: TableMetadata, branch: str) -> None:
        ref = base.refs.get(branch)
        if ref is None and branch != MAIN_BRANCH:
            msg = f"Cannot use branch (does not exist): {branch}"
            raise ValidationError(msg, field="branch", value=branch)
        if ref is not None and not ref.is_branch:
            msg = f"Cannot write to tag: {branch}"
            raise ValidationError(msg, field="branch", value=branch)


def _summary(before: tuple[DataFile, ...], after: tuple[DataFile, ...]) -> dict[str, str]:
    before_paths = {f.file_path for f in before}
    after_paths = {f.file_path for f in after}
    added = [f for f in after if f.file_path not in before_paths]
    deleted = [f for f in before if f.file_path not in after_paths]
    return {
        "added-data-files": str(len(added)),
        "deleted-data-files": str(len(deleted)),
        "total-data-files": str(len(after)),
        "added-records": str(sum(f.record_count for f in added)),
        "deleted-records": str(sum(f.record_count for f in deleted)),
        "total-records": str(sum(f.record_count for f in after)),
    }


def _stamp(base: TableMetadata, data_file: DataFile) -> DataFile:
    """Fill in the spec and sort order ids the file is written with."""
    changes: dict[str, object] = {}
    if data_file.spec_id is None:
        changes["spec_id"] = base.default_spec_id
    elif base.spec_by_id(data_file.spec_id) is None:
        msg = f"Cannot find partition spec {data_file.spec_id} for file: {data_file.file_path}"
        raise ValidationError(msg, field="spec_id", value=data_file.spec_id)
    if data_file.sort_order_id is None:
        changes["sort_order_id"] = base.default_sort_order_id
    return data_file.model_copy(update=changes) if changes else data_file


class AppendFiles(SnapshotProducer):
    """Add data files in a new ``append`` snapshot."""

    operation = Operation.APPEND.value

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._added: list[DataFile] = []

    def append_file(self, data_file: DataFile) -> AppendFiles:
        self._added.append(data_file)
        return self

    def _operation(self) -> Operation:
        return Operation.APPEND

    def _data_files(
        self, base: TableMetadata, existing: tuple[DataFile, ...]
    ) -> tuple[DataFile, ...]:
        return (*existing, *(_stamp(base, f) for f in self._added))


class DeleteFiles(SnapshotProducer):
    """Remove data files in a new ``delete`` snapshot.

    Paths not present in the parent snapshot are ignored.
    """

    operation = Operation.DELETE.value

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._deleted: set[str] = set()

    def delete_file(self, data_file: DataFile | str) -> DeleteFiles:
        path = data_file if isinstance(data_file, str) else data_file.file_path
        self._deleted.add(path)
        return self

    def _operation(self) -> Operation:
        return Operation.DELETE

    def _data_files(
        self, base: TableMetadata, existing: tuple[DataFile, ...]
    ) -> tuple[DataFile, ...]:
        return tuple(f for f in existing if f.file_path not in self._deleted)


class OverwriteFiles(SnapshotProducer):
    """Delete and add data files atomically in one ``overwrite`` snapshot."""

    operation = Operation.OVERWRITE.value

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._added: list[DataFile] = []
        self._deleted: set[str] = set()

    def add_file(self, data_file: DataFile) -> OverwriteFiles:
        self._added.append(data_file)
        return self

    def delete_file(self, data_file: DataFile | str) -> OverwriteFiles:
        path = data_file if isinstance(data_file, str) else data_file.file_path
        self._deleted.add(path)
        return self

    def _operation(self) -> Operation:
        return Operation.OVERWRITE

    def _data_files(
        self, base: TableMetadata, existing: tuple[DataFile, ...]
    ) -> tuple[DataFile, ...]:
        kept = tuple(f for f in existing if f.file_path not in self._deleted)
        return (*kept, *(_stamp(base, f) for f in self._added))


__all__ = ["AppendFiles", "DeleteFiles", "OverwriteFiles", "SnapshotProducer"]
