"""Unit tests for branch and tag management."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from strata_catalog.errors import ValidationError
from strata_catalog.snapshots import MAIN_BRANCH, DataFile, RefType
from strata_catalog.table import Table


@pytest.fixture
def history(table: Table, make_data_file: Callable[..., DataFile]) -> list[int]:
    """Ids of three snapshots appended to main, oldest first."""
    ids = []
    for name in ("a", "b", "c"):
        table.new_append().append_file(make_data_file(name)).commit()
        snapshot = table.current_snapshot()
        assert snapshot is not None
        ids.append(snapshot.snapshot_id)
    return ids


class TestRefs:
    """Tests for creating and removing branches and tags."""

    def test_create_tag_and_branch(self, table: Table, history: list[int]) -> None:
        """Test tags point at a snapshot and branches default to the current one."""
        table.manage_snapshots().create_tag("v1", history[0]).create_branch("audit").commit()
        refs = table.refs()
        assert (refs["v1"].snapshot_id, refs["v1"].ref_type) == (history[0], RefType.TAG)
        assert (refs["audit"].snapshot_id, refs["audit"].ref_type) == (history[2], RefType.BRANCH)

    def test_duplicate_ref(self, table: Table, history: list[int]) -> None:
        """Test ref names are unique across branches and tags."""
        table.manage_snapshots().create_tag("v1", history[0]).commit()
        with pytest.raises(ValidationError, match="Ref v1 already exists"):
            table.manage_snapshots().create_branch("v1")

    def test_unknown_snapshot(self, table: Table, history: list[int]) -> None:
        """Test refs must point at a retained snapshot."""
        with pytest.raises(ValidationError, match="Cannot find snapshot with id: 42"):
            table.manage_snapshots().create_tag("v1", 42)

    def test_branch_on_empty_table(self, table: Table) -> None:
        """Test a default branch needs a current snapshot."""
        with pytest.raises(ValidationError, match="table has no current snapshot"):
            table.manage_snapshots().create_branch("audit")

    def test_remove(self, table: Table, history: list[int]) -> None:
        """Test removing refs and the errors for missing or mistyped names."""
        table.manage_snapshots().create_tag("v1", history[0]).create_branch("audit").commit()
        with pytest.raises(ValidationError, match="Cannot remove main branch"):
            table.manage_snapshots().remove_branch(MAIN_BRANCH)
        with pytest.raises(ValidationError, match="Branch does not exist: nope"):
            table.manage_snapshots().remove_branch("nope")
        with pytest.raises(ValidationError, match="Tag does not exist: nope"):
            table.manage_snapshots().remove_tag("nope")
        with pytest.raises(ValidationError, match="Ref v1 is a tag not a branch"):
            table.manage_snapshots().remove_branch("v1")
        table.manage_snapshots().remove_tag("v1").remove_branch("audit").commit()
        assert set(table.refs()) == {MAIN_BRANCH}
        assert len(table.snapshots()) == 3

    def test_main_cannot_be_tagged(self, table: Table, history: list[int]) -> None:
        """Test main is reserved for the main branch."""
        with pytest.raises(ValidationError, match="Cannot create a tag named main"):
            table.manage_snapshots().create_tag(MAIN_BRANCH, history[0])

    def test_calls_see_earlier_calls(self, table: Table, history: list[int]) -> None:
        """Test a ref created in the builder can be changed in the same builder."""
        refs = (
            table.manage_snapshots()
            .create_branch("audit", history[0])
            .replace_branch("audit", history[1])
            .set_min_snapshots_to_keep("audit", 2)
            .set_max_ref_age_ms("audit", 1000)
            .apply()
        )
        assert refs["audit"].snapshot_id == history[1]
        assert (refs["audit"].min_snapshots_to_keep, refs["audit"].max_ref_age_ms) == (2, 1000)
        assert "audit" not in table.refs()


class TestCurrentSnapshot:
    """Tests for moving the main branch."""

    def test_rollback_to_ancestor(self, table: Table, history: list[int]) -> None:
        """Test rollback moves main back and logs the change."""
        table.manage_snapshots().rollback_to(history[0]).commit()
        snapshot = table.current_snapshot()
        assert snapshot is not None and snapshot.snapshot_id == history[0]
        assert [e.snapshot_id for e in table.history()] == [*history, history[0]]

    def test_rollback_to_non_ancestor(self, table: Table, history: list[int]) -> None:
        """Test rollback only accepts ancestors of the current snapshot."""
        table.manage_snapshots().rollback_to(history[0]).commit()
        with pytest.raises(ValidationError, match="not an ancestor of the current state"):
            table.manage_snapshots().rollback_to(history[2])

    def test_set_current_snapshot(self, table: Table, history: list[int]) -> None:
        """Test main can move to any retained snapshot."""
        table.manage_snapshots().rollback_to(history[0]).commit()
        table.manage_snapshots().set_current_snapshot(history[2]).commit()
        snapshot = table.current_snapshot()
        assert snapshot is not None and snapshot.snapshot_id == history[2]
