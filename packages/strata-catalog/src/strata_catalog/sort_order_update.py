"""Sort order replacement builder."""

from __future__ import annotations

from typing import TYPE_CHECKING

from strata_catalog.operations import PendingUpdate
from strata_catalog.sorting import NullOrder, SortOrder, SortOrderBuilder
from strata_catalog.updates import AddSortOrder, MetadataUpdate, SetDefaultSortOrder

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget
    from strata_catalog.partitioning import Transform


class ReplaceSortOrder(PendingUpdate):
    """Replace the default sort order with the keys given, in order.

    Committing with no keys sets the table to unsorted (order id 0). An order
    equal to an existing one reuses its id.

    Example:
        >>> table.replace_sort_order().asc("id").desc("ts").commit()
    """

    operation = "replace-sort-order"

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._builder = SortOrderBuilder(self._base.schema())

    def asc(
        self,
        source_name: str,
        transform: Transform | None = None,
        null_order: NullOrder = NullOrder.NULLS_FIRST,
    ) -> ReplaceSortOrder:
        self._builder.asc(source_name, transform, null_order)
        return self

    def desc(
        self,
        source_name: str,
        transform: Transform | None = None,
        null_order: NullOrder = NullOrder.NULLS_LAST,
    ) -> ReplaceSortOrder:
        self._builder.desc(source_name, transform, null_order)
        return self

    def apply(self) -> SortOrder:
        """Return the resulting order without committing."""
        return self._builder.build()

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        return [AddSortOrder(sort_order=self.apply()), SetDefaultSortOrder()]


__all__ = ["ReplaceSortOrder"]
