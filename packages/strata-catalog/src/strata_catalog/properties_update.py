"""Table property builder."""

from __future__ import annotations

from typing import TYPE_CHECKING

from strata_catalog.config import TableProperties
from strata_catalog.errors import ValidationError
from strata_catalog.metadata import split_format_version
from strata_catalog.operations import PendingUpdate
from strata_catalog.updates import (
    MetadataUpdate,
    RemoveProperties,
    SetProperties,
    UpgradeFormatVersion,
)

if TYPE_CHECKING:
    from strata_catalog.metadata import TableMetadata
    from strata_catalog.operations import UpdateTarget


class UpdateProperties(PendingUpdate):
    """Set and remove table properties.

    Keys not named are left as they are. ``format-version`` is not stored as a
    property; setting it upgrades the table's format version instead.

    Example:
        >>> table.update_properties().set("owner", "etl").remove("tmp").commit()
    """

    operation = "update-properties"

    def __init__(self, target: UpdateTarget) -> None:
        super().__init__(target)
        self._updates_map: dict[str, str] = {}
        self._removals: set[str] = set()

    def set(self, key: str, value: str) -> UpdateProperties:
        if key in self._removals:
            msg = f"Cannot remove and update the same key: {key}"
            raise ValidationError(msg, field="key", value=key)
        self._updates_map[key] = value
        return self

    def set_all(self, properties: dict[str, str]) -> UpdateProperties:
        for key, value in properties.items():
            self.set(key, value)
        return self

    def remove(self, key: str) -> UpdateProperties:
        if key in self._updates_map:
            msg = f"Cannot remove and update the same key: {key}"
            raise ValidationError(msg, field="key", value=key)
        if key in TableProperties.RESERVED:
            msg = f"Cannot remove reserved table property: {key}"
            raise ValidationError(msg, field="key", value=key)
        self._removals.add(key)
        return self

    def apply(self) -> dict[str, str]:
        """Return the resulting properties without committing."""
        _, updates = split_format_version(self._updates_map, self._base.format_version)
        properties = {k: v for k, v in self._base.properties.items() if k not in self._removals}
        properties.update(updates)
        return properties

    def _updates(self, base: TableMetadata) -> list[MetadataUpdate]:
        version, updates = split_format_version(self._updates_map, base.format_version)
        actions: list[MetadataUpdate] = []
        if version != base.format_version:
            actions.append(UpgradeFormatVersion(format_version=version))
        if updates:
            actions.append(SetProperties(updates=updates))
        if self._removals:
            actions.append(RemoveProperties(removals=tuple(sorted(self._removals))))
        return actions


__all__ = ["UpdateProperties"]
