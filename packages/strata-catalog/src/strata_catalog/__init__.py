"""strata-catalog: transactional table catalog and metadata engine.

A catalog maps table identifiers to immutable metadata files. Every change to
a table writes a new metadata file and atomically swaps the catalog pointer,
guarded by requirements that are checked against the current metadata
(optimistic concurrency). Conflicting commits are rebased and retried.

Example:
    >>> from strata_catalog import Catalog, InMemoryFileIO, ValidatingCatalogBackend
    >>> from strata_catalog import Namespace, TableIdentifier
    >>>
    >>> catalog = Catalog("prod", ValidatingCatalogBackend(), InMemoryFileIO())
    >>> catalog.create_namespace(Namespace.of("db"))
    >>> table = catalog.create_table(TableIdentifier.of("db", "events"), schema)
    >>> table.new_append().append_file(data_file).commit()

Modules:
    catalog: Catalog and TableBuilder
    table: Table, scans and metadata tables
    transaction: Multi-change transactions
    operations: Commit engine
    backend: Catalog backends
    errors: Exception hierarchy
"""

from __future__ import annotations

__version__ = "0.1.0"
__all__ = [
    # Catalog
    "Catalog",
    "CatalogConfig",
    "TableBuilder",
    "TableProperties",
    # Identifiers
    "Namespace",
    "TableIdentifier",
    # Table model
    "DataFile",
    "FieldType",
    "NestedField",
    "PartitionSpec",
    "PartitionSpecBuilder",
    "Schema",
    "Snapshot",
    "SortOrder",
    "SortOrderBuilder",
    # Tables
    "MetadataTable",
    "Table",
    "Transaction",
    # Backends and IO
    "CatalogBackend",
    "FileIO",
    "InMemoryCatalogBackend",
    "InMemoryFileIO",
    "ValidatingCatalogBackend",
    # Reporting
    "LoggingMetricsReporter",
    "MetricsReporter",
]

_EXPORTS = {
    "Catalog": "strata_catalog.catalog",
    "TableBuilder": "strata_catalog.catalog",
    "CatalogConfig": "strata_catalog.config",
    "TableProperties": "strata_catalog.config",
    "Namespace": "strata_catalog.identifiers",
    "TableIdentifier": "strata_catalog.identifiers",
    "DataFile": "strata_catalog.snapshots",
    "Snapshot": "strata_catalog.snapshots",
    "FieldType": "strata_catalog.types",
    "NestedField": "strata_catalog.schema",
    "Schema": "strata_catalog.schema",
    "PartitionSpec": "strata_catalog.partitioning",
    "PartitionSpecBuilder": "strata_catalog.partitioning",
    "SortOrder": "strata_catalog.sorting",
    "SortOrderBuilder": "strata_catalog.sorting",
    "MetadataTable": "strata_catalog.table",
    "Table": "strata_catalog.table",
    "Transaction": "strata_catalog.transaction",
    "CatalogBackend": "strata_catalog.backend",
    "InMemoryCatalogBackend": "strata_catalog.backend",
    "ValidatingCatalogBackend": "strata_catalog.backend",
    "FileIO": "strata_catalog.io",
    "InMemoryFileIO": "strata_catalog.io",
    "LoggingMetricsReporter": "strata_catalog.reporting",
    "MetricsReporter": "strata_catalog.reporting",
}


# Lazy imports to keep `import strata_catalog` cheap
def __getattr__(name: str) -> object:
    """Lazy import of package components."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        msg = f"module {__name__!r} has no attribute {name!r}"
        raise AttributeError(msg)
    import importlib

    return getattr(importlib.import_module(module_name), name)
