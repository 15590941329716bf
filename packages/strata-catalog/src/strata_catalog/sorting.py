"""Sort orders.

Order id 0 is reserved for the unsorted order; the first real order a table
receives gets id 1.

Example:
    >>> from strata_catalog.sorting import SortOrderBuilder
    >>> from strata_catalog.partitioning import Transform
    >>> order = SortOrderBuilder(schema).asc("id", Transform.bucket(16)).asc("id").build()
    >>> order.is_unsorted
    False
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from strata_catalog.errors import ValidationError
from strata_catalog.partitioning import Transform
from strata_catalog.schema import Schema

UNSORTED_ORDER_ID = 0
INITIAL_SORT_ORDER_ID = 1


class SortDirection(str, Enum):
    """Sort direction."""

    ASC = "asc"
    DESC = "desc"


class NullOrder(str, Enum):
    """Placement of nulls."""

    NULLS_FIRST = "nulls-first"
    NULLS_LAST = "nulls-last"


class SortField(BaseModel):
    """One sort key.

    Attributes:
        source_id: Field id of the source column.
        transform: Transform applied before comparison.
        direction: Ascending or descending.
        null_order: Where nulls sort.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_id: int = Field(..., ge=0, description="Source column field id")
    transform: Transform = Field(default_factory=Transform.identity, description="Transform")
    direction: SortDirection = Field(default=SortDirection.ASC, description="Sort direction")
    null_order: NullOrder = Field(default=NullOrder.NULLS_FIRST, description="Null placement")


class SortOrder(BaseModel):
    """A sort order stored under an order id.

    Attributes:
        order_id: Id within TableMetadata.sort_orders (0 = unsorted).
        fields: Sort keys in priority order.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    order_id: int = Field(default=UNSORTED_ORDER_ID, ge=0, description="Sort order id")
    fields: tuple[SortField, ...] = Field(default=(), description="Sort keys")

    @property
    def is_unsorted(self) -> bool:
        return not self.fields

    @property
    def is_sorted(self) -> bool:
        return bool(self.fields)

    def same_order(self, other: SortOrder) -> bool:
        """True if both orders have the same keys, ignoring order ids."""
        return self.fields == other.fields

    def check_compatible(self, schema: Schema) -> None:
        """Raise ValidationError if a key's source is missing or mistyped."""
        for field in self.fields:
            source = schema.find_field_by_id(field.source_id)
            if source is None:
                msg = f"Cannot find source column for sort field: {field.source_id}"
                raise ValidationError(msg, field="source_id", value=field.source_id)
            if not field.transform.can_transform(source.field_type):
                msg = (
                    f"Invalid source type {source.field_type.value} "
                    f"for transform: {field.transform}"
                )
                raise ValidationError(msg, field=source.name)


UNSORTED_ORDER = SortOrder(order_id=UNSORTED_ORDER_ID)


class SortOrderBuilder:
    """Fluent builder binding sort keys to a schema's columns by name."""

    def __init__(self, schema: Schema, order_id: int = INITIAL_SORT_ORDER_ID) -> None:
        self._schema = schema
        self._order_id = order_id
        self._fields: list[SortField] = []

    def _add(
        self,
        source_name: str,
        transform: Transform | None,
        direction: SortDirection,
        null_order: NullOrder,
    ) -> SortOrderBuilder:
        source = self._schema.find_field(source_name)
        if source is None:
            msg = f"Cannot find field '{source_name}' in struct: {self._schema.column_names}"
            raise ValidationError(msg, field="source_name", value=source_name)
        transform = transform or Transform.identity()
        if not transform.can_transform(source.field_type):
            msg = f"Invalid source type {source.field_type.value} for transform: {transform}"
            raise ValidationError(msg, field="transform", value=str(transform))
        self._fields.append(
            SortField(
                source_id=source.field_id,
                transform=transform,
                direction=direction,
                null_order=null_order,
            )
        )
        return self

    def asc(
        self,
        source_name: str,
        transform: Transform | None = None,
        null_order: NullOrder = NullOrder.NULLS_FIRST,
    ) -> SortOrderBuilder:
        return self._add(source_name, transform, SortDirection.ASC, null_order)

    def desc(
        self,
        source_name: str,
        transform: Transform | None = None,
        null_order: NullOrder = NullOrder.NULLS_LAST,
    ) -> SortOrderBuilder:
        return self._add(source_name, transform, SortDirection.DESC, null_order)

    def build(self) -> SortOrder:
        """Return the order; an empty builder yields the unsorted order."""
        if not self._fields:
            return UNSORTED_ORDER
        return SortOrder(order_id=self._order_id, fields=tuple(self._fields))


__all__ = [
    "INITIAL_SORT_ORDER_ID",
    "UNSORTED_ORDER",
    "UNSORTED_ORDER_ID",
    "NullOrder",
    "SortDirection",
    "SortField",
    "SortOrder",
    "SortOrderBuilder",
]
