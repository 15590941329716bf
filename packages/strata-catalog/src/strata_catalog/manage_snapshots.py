"""Branch and tag management builder.

Example:
    >>> table.manage_snapshots().create_tag("v1", snapshot_id).create_branch("audit").commit()
    >>> table.manage_snapshots().rollback_to(parent_id).commit()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from strata_catalog.errors import ValidationError
from strata_catalog.operations import PendingUpdate
from strata_catalog.snapshots import MAIN_BRANCH, RefType, SnapshotRef
from strata_catalog.updates import MetadataUpdate, RemoveSnapshotRef, SetSnapshotRef

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget


class ManageSnapshots(PendingUpdate):
    """Create, move and remove snapshot references.

    Calls are validated against the refs as changed by earlier calls on the
    same builder.
    """

    operation = "manage-snapshots"

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._refs: dict[str, SnapshotRef] = dict(self._base.refs)
        self._actions: list[MetadataUpdate] = []

    # -------------------------------------------------------------------------
    # Branches
    # -------------------------------------------------------------------------

    def create_branch(self, name: str, snapshot_id: int | None = None) -> ManageSnapshots:
        """Create a branch at ``snapshot_id`` (the current snapshot by default)."""
        self._require_absent(name)
        target = self._resolve_snapshot(snapshot_id)
        self._set(name, SnapshotRef(snapshot_id=target, ref_type=RefType.BRANCH))
        return self

    def remove_branch(self, name: str) -> ManageSnapshots:
        if name == MAIN_BRANCH:
            msg = f"Cannot remove {MAIN_BRANCH} branch"
            raise ValidationError(msg, field="name", value=name)
        self._require_ref(name, RefType.BRANCH)
        self._remove(name)
        return self

    def replace_branch(self, name: str, snapshot_id: int) -> ManageSnapshots:
        """Point an existing branch at ``snapshot_id``, keeping its retention settings."""
        ref = self._require_ref(name, RefType.BRANCH)
        target = self._resolve_snapshot(snapshot_id)
        self._set(name, ref.model_copy(update={"snapshot_id": target}))
        return self

    def rollback_to(self, snapshot_id: int) -> ManageSnapshots:
        """Move ``main`` back to an ancestor of its current snapshot."""
        current = self._refs.get(MAIN_BRANCH)
        head = current.snapshot_id if current else None
        ancestors = {s.snapshot_id for s in self._base.ancestors_of(head)}
        if snapshot_id not in ancestors:
            msg = (
                f"Cannot roll back to snapshot, not an ancestor of the current state: "
                f"{snapshot_id}"
            )
            raise ValidationError(msg, field="snapshot_id", value=snapshot_id)
        return self.set_current_snapshot(snapshot_id)

    def set_current_snapshot(self, snapshot_id: int) -> ManageSnapshots:
        """Move ``main`` to any retained snapshot."""
        target = self._resolve_snapshot(snapshot_id)
        ref = self._refs.get(MAIN_BRANCH) or SnapshotRef(snapshot_id=target)
        self._set(MAIN_BRANCH, ref.model_copy(update={"snapshot_id": target}))
        return self

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def create_tag(self, name: str, snapshot_id: int) -> ManageSnapshots:
        if name == MAIN_BRANCH:
            msg = f"Cannot create a tag named {MAIN_BRANCH}"
            raise ValidationError(msg, field="name", value=name)
        self._require_absent(name)
        target = self._resolve_snapshot(snapshot_id)
        self._set(name, SnapshotRef(snapshot_id=target, ref_type=RefType.TAG))
        return self

    def remove_tag(self, name: str) -> ManageSnapshots:
        self._require_ref(name, RefType.TAG)
        self._remove(name)
        return self

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    def set_min_snapshots_to_keep(self, name: str, count: int) -> ManageSnapshots:
        ref = self._require_ref(name, RefType.BRANCH)
        self._set(name, ref.model_copy(update={"min_snapshots_to_keep": count}))
        return self

    def set_max_snapshot_age_ms(self, name: str, age_ms: int) -> ManageSnapshots:
        ref = self._require_ref(name, RefType.BRANCH)
        self._set(name, ref.model_copy(update={"max_snapshot_age_ms": age_ms}))
        return self

    def set_max_ref_age_ms(self, name: str, age_ms: int) -> ManageSnapshots:
        ref = self._require_ref(name, None)
        self._set(name, ref.model_copy(update={"max_ref_age_ms": age_ms}))
        return self

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply(self) -> dict[str, SnapshotRef]:
        """Return the resulting refs without committing."""
        return dict(self._refs)

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        return list(self._actions)

    def _resolve_snapshot(self, snapshot_id: int | None) -> int:
        if snapshot_id is None:
            current = self._refs.get(MAIN_BRANCH)
            if current is None:
                msg = "Cannot create a ref without a snapshot: table has no current snapshot"
                raise ValidationError(msg, field="snapshot_id")
            return current.snapshot_id
        if self._base.snapshot_by_id(snapshot_id) is None:
            msg = f"Cannot find snapshot with id: {snapshot_id}"
            raise ValidationError(msg, field="snapshot_id", value=snapshot_id)
        return snapshot_id

    def _require_absent(self, name: str) -> None:
        if name in self._refs:
            msg = f"Ref {name} already exists"
            raise ValidationError(msg, field="name", value=name)

    def _require_ref(self, name: str, ref_type: RefType | None) -> SnapshotRef:
        ref = self._refs.get(name)
        if ref is None:
            kind = ref_type.value if ref_type else "ref"
            msg = f"{kind.capitalize()} does not exist: {name}"
            raise ValidationError(msg, field="name", value=name)
        if ref_type is not None and ref.ref_type != ref_type:
            msg = f"Ref {name} is a {ref.ref_type.value} not a {ref_type.value}"
            raise ValidationError(msg, field="name", value=name)
        return ref

    def _set(self, name: str, ref: SnapshotRef) -> None:
        self._refs[name] = ref
        self._actions.append(
            SetSnapshotRef(
                ref_name=name,
                snapshot_id=ref.snapshot_id,
                ref_type=ref.ref_type,
                max_ref_age_ms=ref.max_ref_age_ms,
                max_snapshot_age_ms=ref.max_snapshot_age_ms,
                min_snapshots_to_keep=ref.min_snapshots_to_keep,
            )
        )

    def _remove(self, name: str) -> None:
        del self._refs[name]
        self._actions.append(RemoveSnapshotRef(ref_name=name))


__all__ = ["ManageSnapshots"]
