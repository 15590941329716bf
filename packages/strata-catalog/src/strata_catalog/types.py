"""Primitive column types and allowed type promotions.

Example:
    >>> from strata_catalog.types import FieldType, can_promote
    >>> can_promote(FieldType.INT, FieldType.LONG)
    True
    >>> can_promote(FieldType.LONG, FieldType.INT)
    False
"""

from __future__ import annotations

from enum import Enum


class FieldType(str, Enum):
    """Primitive column types.

    Values are the lower-case names stored in metadata files. ``DECIMAL``
    carries precision and scale on the field, ``FIXED`` its length in
    ``precision``. Promotions allowed on existing columns are listed in
    ``can_promote``.
    """

    BOOLEAN = "boolean"
    INT = "int"
    LONG = "long"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    DATE = "date"
    TIME = "time"
    TIMESTAMP = "timestamp"
    TIMESTAMPTZ = "timestamptz"
    STRING = "string"
    UUID = "uuid"
    FIXED = "fixed"
    BINARY = "binary"


_VALID_PROMOTIONS: dict[FieldType, frozenset[FieldType]] = {
    FieldType.INT: frozenset({FieldType.LONG}),
    FieldType.FLOAT: frozenset({FieldType.DOUBLE}),
}

TEMPORAL_TYPES = frozenset(
    {FieldType.DATE, FieldType.TIMESTAMP, FieldType.TIMESTAMPTZ},
)
"""Types accepted by the year/month/day transforms."""


def can_promote(source: FieldType, target: FieldType) -> bool:
    """Return True if a column of ``source`` type may be widened to ``target``.

    Identity is always allowed. Decimal widening is checked separately since it
    depends on precision and scale.
    """
    if source == target:
        return True
    return target in _VALID_PROMOTIONS.get(source, frozenset())


__all__ = ["TEMPORAL_TYPES", "FieldType", "can_promote"]
