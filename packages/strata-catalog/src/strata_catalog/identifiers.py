"""Namespace and table identifiers.

Example:
    >>> TableIdentifier.of("db", "events")
    TableIdentifier(namespace=Namespace(levels=('db',)), name='events')
    >>> str(TableIdentifier.parse("a.b.events").namespace)
    'a.b'
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Namespace(BaseModel):
    """An ordered sequence of name segments; empty is the root namespace."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    levels: tuple[str, ...] = Field(default=(), description="Name segments")

    @field_validator("levels")
    @classmethod
    def _validate_levels(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        if any(not level for level in value):
            msg = f"Namespace levels must be non-empty: {value}"
            raise ValueError(msg)
        return value

    @classmethod
    def of(cls, *levels: str) -> Namespace:
        return cls(levels=tuple(levels))

    @classmethod
    def empty(cls) -> Namespace:
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.levels

    @property
    def parent(self) -> Namespace:
        return Namespace(levels=self.levels[:-1])

    def child(self, name: str) -> Namespace:
        return Namespace(levels=(*self.levels, name))

    def __str__(self) -> str:
        return ".".join(self.levels)


class TableIdentifier(BaseModel):
    """A table name qualified by its namespace."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: Namespace = Field(default_factory=Namespace, description="Containing namespace")
    name: str = Field(..., min_length=1, description="Table name")

    @classmethod
    def of(cls, *parts: str) -> TableIdentifier:
        """Build from segments; the last one is the table name."""
        if not parts:
            msg = "Table identifier requires at least a table name"
            raise ValueError(msg)
        return cls(namespace=Namespace(levels=tuple(parts[:-1])), name=parts[-1])

    @classmethod
    def parse(cls, identifier: str) -> TableIdentifier:
        """Parse a dotted identifier such as ``"db.events"``."""
        return cls.of(*identifier.split("."))

    def to_namespace(self) -> Namespace:
        """Treat this identifier as a namespace (used to resolve metadata tables)."""
        return self.namespace.child(self.name)

    def __str__(self) -> str:
        if self.namespace.is_empty:
            return self.name
        return f"{self.namespace}.{self.name}"


__all__ = ["Namespace", "TableIdentifier"]
