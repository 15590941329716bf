"""Configuration models and table property keys for strata-catalog.

CatalogConfig holds catalog-wide settings (warehouse location, retry policy,
namespace capabilities). TableProperties names the table-scoped keys the
commit engine and garbage collection read from ``TableMetadata.properties``.

Example:
    >>> from strata_catalog.config import CatalogConfig, TableProperties
    >>> config = CatalogConfig(warehouse_location="memory://warehouse", max_commit_retries=2)
    >>> TableProperties.GC_ENABLED
    'gc.enabled'
"""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# =============================================================================
# Table Properties
# =============================================================================


class TableProperties:
    """Recognized table property keys and their defaults."""

    FORMAT_VERSION = "format-version"
    """Reserved: sets TableMetadata.format_version, never stored in properties."""

    COMMIT_NUM_RETRIES = "commit.retry.num-retries"
    COMMIT_MIN_RETRY_WAIT_MS = "commit.retry.min-wait-ms"
    COMMIT_MAX_RETRY_WAIT_MS = "commit.retry.max-wait-ms"

    METADATA_DELETE_AFTER_COMMIT_ENABLED = "metadata.delete-after-commit.enabled"
    METADATA_DELETE_AFTER_COMMIT_ENABLED_DEFAULT = False

    METADATA_PREVIOUS_VERSIONS_MAX = "write.metadata.previous-versions-max"
    METADATA_PREVIOUS_VERSIONS_MAX_DEFAULT = 100

    GC_ENABLED = "gc.enabled"
    GC_ENABLED_DEFAULT = True

    MAX_SNAPSHOT_AGE_MS = "history.expire.max-snapshot-age-ms"
    MAX_SNAPSHOT_AGE_MS_DEFAULT = 5 * 24 * 60 * 60 * 1000

    MIN_SNAPSHOTS_TO_KEEP = "history.expire.min-snapshots-to-keep"
    MIN_SNAPSHOTS_TO_KEEP_DEFAULT = 1

    RESERVED = frozenset({FORMAT_VERSION})


CATALOG_DEFAULT_PREFIX = "default-"
"""Catalog property prefix for table properties applied when not requested."""

CATALOG_OVERRIDE_PREFIX = "override-"
"""Catalog property prefix for table properties that always win."""


def property_as_int(properties: Mapping[str, str], key: str, default: int) -> int:
    """Read an integer table property, falling back to ``default`` when unset."""
    value = properties.get(key)
    if value is None:
        return default
    return int(value)


def property_as_bool(properties: Mapping[str, str], key: str, default: bool) -> bool:
    """Read a boolean table property ("true"/"false", case-insensitive)."""
    value = properties.get(key)
    if value is None:
        return default
    return value.strip().lower() == "true"


# =============================================================================
# Catalog Configuration
# =============================================================================


class CatalogConfig(BaseModel):
    """Catalog-wide settings.

    Retry settings here are defaults; the ``commit.retry.*`` table properties
    override them per table.

    Attributes:
        warehouse_location: Root under which default table locations are derived.
        default_format_version: Format version for new tables without an explicit one.
        max_commit_retries: Retries after the first attempt for authoritative backends.
        retry_min_wait_ms: Minimum backoff between attempts.
        retry_max_wait_ms: Maximum backoff between attempts.
        retry_multiplier: Exponential backoff multiplier.
        supports_nested_namespaces: Whether multi-level namespaces are allowed.
        supports_empty_namespace: Whether tables may live in the root namespace.
        requires_namespace_create: Whether tables need an existing namespace.

    Example:
        >>> config = CatalogConfig(retry_min_wait_ms=0, retry_max_wait_ms=0)
        >>> config.max_commit_retries
        4
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    warehouse_location: str = Field(
        default="memory://warehouse",
        min_length=1,
        description="Root location for default table locations",
    )
    default_format_version: int = Field(
        default=2,
        ge=1,
        le=3,
        description="Format version for new tables",
    )
    max_commit_retries: int = Field(
        default=4,
        ge=0,
        le=100,
        description="Retries after the first commit attempt",
    )
    retry_min_wait_ms: int = Field(
        default=100,
        ge=0,
        description="Minimum wait between commit attempts",
    )
    retry_max_wait_ms: int = Field(
        default=60_000,
        ge=0,
        description="Maximum wait between commit attempts",
    )
    retry_multiplier: float = Field(
        default=2.0,
        gt=0,
        description="Exponential backoff multiplier",
    )
    supports_nested_namespaces: bool = Field(
        default=True,
        description="Allow multi-level namespaces",
    )
    supports_empty_namespace: bool = Field(
        default=False,
        description="Allow tables in the root namespace",
    )
    requires_namespace_create: bool = Field(
        default=True,
        description="Tables require an existing namespace",
    )

    @field_validator("warehouse_location")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        """Normalize the warehouse root so derived locations have one separator."""
        return value.rstrip("/") or value

    @model_validator(mode="after")
    def _validate_wait_bounds(self) -> CatalogConfig:
        """Ensure min wait does not exceed max wait."""
        if self.retry_min_wait_ms > self.retry_max_wait_ms:
            msg = (
                f"retry_min_wait_ms ({self.retry_min_wait_ms}) must not exceed "
                f"retry_max_wait_ms ({self.retry_max_wait_ms})"
            )
            raise ValueError(msg)
        return self


__all__ = [
    "CATALOG_DEFAULT_PREFIX",
    "CATALOG_OVERRIDE_PREFIX",
    "CatalogConfig",
    "TableProperties",
    "property_as_bool",
    "property_as_int",
]
