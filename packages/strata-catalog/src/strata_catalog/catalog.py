"""Catalog: namespaces, table lifecycle and table builders.

The catalog owns a CatalogBackend (namespace directory and table pointers), a
FileIO for metadata files and a MetricsReporter that every loaded table
reports to. All table changes go through TableOperations, so the catalog is
only responsible for identifiers, defaults and lifecycle.

Catalog properties prefixed ``default-`` fill table properties a caller did
not request; properties prefixed ``override-`` always win.

Example:
    >>> catalog = Catalog("prod", ValidatingCatalogBackend(), InMemoryFileIO())
    >>> catalog.create_namespace(Namespace.of("db"))
    >>> table = catalog.build_table(TableIdentifier.of("db", "events"), schema).create()
"""

from __future__ import annotations

import functools
from typing import TYPE_CHECKING, Any

import structlog

from strata_catalog.config import (
    CATALOG_DEFAULT_PREFIX,
    CATALOG_OVERRIDE_PREFIX,
    CatalogConfig,
    TableProperties,
    property_as_bool,
)
from strata_catalog.errors import (
    NoSuchNamespaceError,
    NoSuchTableError,
    TableAlreadyExistsError,
    ValidationError,
)
from strata_catalog.identifiers import Namespace, TableIdentifier
from strata_catalog.metadata import TableMetadata, new_table_metadata, read_table_metadata
from strata_catalog.operations import TableOperations
from strata_catalog.partitioning import UNPARTITIONED_SPEC, PartitionSpec
from strata_catalog.reporting import LoggingMetricsReporter, MetricsReporter
from strata_catalog.requirements import requirements_for_create
from strata_catalog.snapshots import read_data_files
from strata_catalog.sorting import UNSORTED_ORDER, SortOrder
from strata_catalog.table import MetadataTable, MetadataTableType, Table
from strata_catalog.telemetry import traced
from strata_catalog.transaction import Transaction, TransactionKind
from strata_catalog.updates import replace_table_updates

if TYPE_CHECKING:
    from strata_catalog.backend import CatalogBackend
    from strata_catalog.io import FileIO
    from strata_catalog.schema import Schema

logger = structlog.get_logger(__name__)


def _table_attributes(
    self: Any, identifier: TableIdentifier, *args: Any, **kwargs: Any
) -> dict[str, Any]:
    return {"catalog.name": self.name, "table.identifier": str(identifier)}


def _namespace_attributes(
    self: Any, namespace: Namespace, *args: Any, **kwargs: Any
) -> dict[str, Any]:
    return {"catalog.name": self.name, "namespace": str(namespace)}


# =============================================================================
# Catalog
# =============================================================================


class Catalog:
    """Entry point for namespaces and tables.

    Attributes:
        name: Catalog name, the first part of every table's full name.
        config: Catalog configuration.
        properties: Catalog properties (``default-*`` / ``override-*`` table defaults).
    """

    def __init__(
        self,
        name: str,
        backend: CatalogBackend,
        io: FileIO,
        config: CatalogConfig | None = None,
        properties: dict[str, str] | None = None,
        reporter: MetricsReporter | None = None,
    ) -> None:
        """Initialize Catalog.

        Args:
            name: Catalog name.
            backend: Namespace directory and table pointer store.
            io: FileIO for metadata, manifest and data files.
            config: Catalog configuration (defaults apply when omitted).
            properties: Catalog properties.
            reporter: Receives commit and scan reports (logs them by default).
        """
        self.name = name
        self._backend = backend
        self._io = io
        self.config = config or CatalogConfig()
        self.properties = dict(properties or {})
        self._reporter = reporter or LoggingMetricsReporter()
        self._log = logger.bind(catalog=name)

    @property
    def supports_server_side_retry(self) -> bool:
        """Whether the backend evaluates commit requirements authoritatively."""
        return self._backend.supports_server_side_retry

    # -------------------------------------------------------------------------
    # Namespaces
    # -------------------------------------------------------------------------

    @traced(
        operation_name="strata.catalog.create_namespace",
        attributes_fn=_namespace_attributes,
    )
    def create_namespace(
        self, namespace: Namespace, properties: dict[str, str] | None = None
    ) -> None:
        """Create ``namespace``.

        Raises:
            NamespaceAlreadyExistsError: If it already exists.
            ValidationError: If the namespace is empty, or nested while the
                catalog does not support nesting.
        """
        if namespace.is_empty:
            msg = "Cannot create the root namespace"
            raise ValidationError(msg, field="namespace")
        if len(namespace.levels) > 1 and not self.config.supports_nested_namespaces:
            msg = f"Nested namespaces are not supported: {namespace}"
            raise ValidationError(msg, field="namespace", value=str(namespace))
        self._backend.create_namespace(namespace, properties or {})
        self._log.info("namespace_created", namespace=str(namespace))

    @traced(
        operation_name="strata.catalog.drop_namespace",
        attributes_fn=_namespace_attributes,
    )
    def drop_namespace(self, namespace: Namespace) -> bool:
        """Drop an empty namespace; return False if it did not exist.

        Raises:
            NamespaceNotEmptyError: If it still contains tables.
        """
        dropped = self._backend.drop_namespace(namespace)
        if dropped:
            self._log.info("namespace_dropped", namespace=str(namespace))
        return dropped

    def namespace_exists(self, namespace: Namespace) -> bool:
        return self._backend.load_namespace_properties(namespace) is not None

    def load_namespace_metadata(self, namespace: Namespace) -> dict[str, str]:
        """Return the namespace properties.

        Raises:
            NoSuchNamespaceError: If the namespace does not exist.
        """
        properties = self._backend.load_namespace_properties(namespace)
        if properties is None:
            raise self._no_such_namespace(namespace)
        return properties

    @traced(
        operation_name="strata.catalog.set_namespace_properties",
        attributes_fn=_namespace_attributes,
    )
    def set_namespace_properties(self, namespace: Namespace, properties: dict[str, str]) -> None:
        """Merge ``properties`` into the namespace's properties."""
        self._backend.update_namespace_properties(namespace, dict(properties), set())
        self._log.debug(
            "namespace_properties_set", namespace=str(namespace), keys=sorted(properties)
        )

    @traced(
        operation_name="strata.catalog.remove_namespace_properties",
        attributes_fn=_namespace_attributes,
    )
    def remove_namespace_properties(self, namespace: Namespace, keys: set[str]) -> bool:
        """Remove ``keys``; return whether any of them was present."""
        existing = self.load_namespace_metadata(namespace)
        self._backend.update_namespace_properties(namespace, {}, set(keys))
        return any(key in existing for key in keys)

    def list_namespaces(self, parent: Namespace | None = None) -> list[Namespace]:
        """Direct children of ``parent`` (top-level namespaces by default).

        Raises:
            NoSuchNamespaceError: If ``parent`` is given and does not exist.
        """
        parent = parent or Namespace.empty()
        if not parent.is_empty and not self.namespace_exists(parent):
            raise self._no_such_namespace(parent)
        return self._backend.list_namespaces(parent)

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def list_tables(self, namespace: Namespace) -> list[TableIdentifier]:
        """Tables directly in ``namespace``.

        Raises:
            NoSuchNamespaceError: If the namespace does not exist.
        """
        self._check_namespace(namespace)
        return self._backend.list_tables(namespace)

    def build_table(self, identifier: TableIdentifier, schema: Schema) -> TableBuilder:
        return TableBuilder(self, identifier, schema)

    def create_table(
        self,
        identifier: TableIdentifier,
        schema: Schema,
        spec: PartitionSpec | None = None,
        sort_order: SortOrder | None = None,
        location: str | None = None,
        properties: dict[str, str] | None = None,
    ) -> Table:
        """Shorthand for ``build_table(...).create()``."""
        builder = self.build_table(identifier, schema)
        if spec is not None:
            builder.with_partition_spec(spec)
        if sort_order is not None:
            builder.with_sort_order(sort_order)
        if location is not None:
            builder.with_location(location)
        if properties:
            builder.with_properties(properties)
        return builder.create()

    @traced(operation_name="strata.catalog.load_table", attributes_fn=_table_attributes)
    def load_table(self, identifier: TableIdentifier) -> Table | MetadataTable:
        """Load a table, or a metadata table addressed as ``{table}.{suffix}``.

        Raises:
            NoSuchTableError: If neither exists.
        """
        if self._backend.current_location(identifier) is not None:
            return self._load(identifier)
        table_type = MetadataTableType.from_name(identifier.name)
        if table_type is not None and not identifier.namespace.is_empty:
            base_identifier = TableIdentifier(
                namespace=identifier.namespace.parent,
                name=identifier.namespace.levels[-1],
            )
            if self._backend.current_location(base_identifier) is not None:
                return MetadataTable(self._load(base_identifier), table_type)
        raise self._no_such_table(identifier)

    def table_exists(self, identifier: TableIdentifier) -> bool:
        return self._backend.current_location(identifier) is not None

    @traced(operation_name="strata.catalog.drop_table", attributes_fn=_table_attributes)
    def drop_table(self, identifier: TableIdentifier, purge: bool = False) -> bool:
        """Remove a table; return False if it did not exist.

        With ``purge`` every metadata file still tracked is deleted, and, when
        ``gc.enabled`` allows it, every manifest list and data file too.
        """
        location = self._backend.current_location(identifier)
        if location is None:
            return False
        metadata = read_table_metadata(self._io, location) if purge else None
        if self._backend.drop_table(identifier) is None:
            return False
        self._log.info("table_dropped", table_identifier=str(identifier), purge=purge)
        if metadata is not None:
            self._purge(metadata)
        return True

    @traced(operation_name="strata.catalog.rename_table", attributes_fn=_table_attributes)
    def rename_table(self, source: TableIdentifier, target: TableIdentifier) -> None:
        """Rename ``source`` to ``target`` atomically.

        Raises:
            NoSuchNamespaceError: If either namespace does not exist.
            NoSuchTableError: If ``source`` does not exist.
            TableAlreadyExistsError: If ``target`` exists.
        """
        self._check_namespace(source.namespace)
        self._check_namespace(target.namespace)
        self._backend.rename_table(source, target)
        self._log.info("table_renamed", source=str(source), target=str(target))

    @traced(operation_name="strata.catalog.register_table", attributes_fn=_table_attributes)
    def register_table(self, identifier: TableIdentifier, metadata_location: str) -> Table:
        """Attach an existing metadata file as a new table.

        Raises:
            TableAlreadyExistsError: If ``identifier`` is taken.
            NoSuchTableError: If the metadata file does not exist.
        """
        self._check_namespace(identifier.namespace)
        if self.table_exists(identifier):
            raise self._table_exists(identifier)
        if not self._io.new_input(metadata_location).exists():
            msg = f"Metadata file does not exist: {metadata_location}"
            raise NoSuchTableError(msg, table_identifier=str(identifier))
        metadata = read_table_metadata(self._io, metadata_location)
        self._backend.commit_table(
            identifier, None, metadata_location, requirements_for_create(), self._io
        )
        self._log.info(
            "table_registered",
            table_identifier=str(identifier),
            metadata_location=metadata_location,
        )
        return self._table(identifier, metadata)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _operations(
        self, identifier: TableIdentifier, current: TableMetadata | None = None
    ) -> TableOperations:
        return TableOperations(
            self._backend,
            self._io,
            identifier,
            self.config,
            self._reporter,
            f"{self.name}.{identifier}",
            current,
        )

    def _table(self, identifier: TableIdentifier, metadata: TableMetadata) -> Table:
        return Table(identifier, self._operations(identifier, metadata), self._reporter, self.name)

    def _load(self, identifier: TableIdentifier) -> Table:
        ops = self._operations(identifier)
        ops.refresh()
        return Table(identifier, ops, self._reporter, self.name)

    def _default_location(self, identifier: TableIdentifier) -> str:
        parts = [self.config.warehouse_location, *identifier.namespace.levels, identifier.name]
        return "/".join(parts)

    def _table_properties(self, requested: dict[str, str], creating: bool) -> dict[str, str]:
        properties: dict[str, str] = {}
        if creating:
            properties.update(_strip_prefix(self.properties, CATALOG_DEFAULT_PREFIX))
        properties.update(requested)
        properties.update(_strip_prefix(self.properties, CATALOG_OVERRIDE_PREFIX))
        return properties

    def _check_namespace(self, namespace: Namespace) -> None:
        if namespace.is_empty:
            if not self.config.supports_empty_namespace:
                msg = "Tables in the root namespace are not supported"
                raise ValidationError(msg, field="namespace")
            return
        if self.config.requires_namespace_create and not self.namespace_exists(namespace):
            raise self._no_such_namespace(namespace)

    def _purge(self, metadata: TableMetadata) -> None:
        locations = [e.metadata_file for e in metadata.metadata_log]
        if metadata.metadata_file_location is not None:
            locations.append(metadata.metadata_file_location)
        gc_enabled = property_as_bool(
            metadata.properties, TableProperties.GC_ENABLED, TableProperties.GC_ENABLED_DEFAULT
        )
        if gc_enabled:
            data_files: set[str] = set()
            for snapshot in metadata.snapshots:
                if self._io.new_input(snapshot.manifest_list).exists():
                    data_files.update(f.file_path for f in read_data_files(self._io, snapshot))
                    locations.append(snapshot.manifest_list)
            locations.extend(sorted(data_files))
        for location in locations:
            self._io.delete(location)
        self._log.info("table_purged", files=len(locations), gc_enabled=gc_enabled)

    @staticmethod
    def _no_such_namespace(namespace: Namespace) -> NoSuchNamespaceError:
        msg = f"Namespace does not exist: {namespace}"
        return NoSuchNamespaceError(msg, namespace=str(namespace))

    @staticmethod
    def _no_such_table(identifier: TableIdentifier) -> NoSuchTableError:
        msg = f"Table does not exist: {identifier}"
        return NoSuchTableError(msg, table_identifier=str(identifier))

    @staticmethod
    def _table_exists(identifier: TableIdentifier) -> TableAlreadyExistsError:
        msg = f"Table already exists: {identifier}"
        return TableAlreadyExistsError(msg, table_identifier=str(identifier))

    def __repr__(self) -> str:
        """Return string representation."""
        return f"Catalog(name={self.name!r}, backend={type(self._backend).__name__})"


def _strip_prefix(properties: dict[str, str], prefix: str) -> dict[str, str]:
    return {k[len(prefix) :]: v for k, v in properties.items() if k.startswith(prefix)}


# =============================================================================
# Table Builder
# =============================================================================


class TableBuilder:
    """Fluent definition of a table to create or replace.

    Example:
        >>> table = (
        ...     catalog.build_table(identifier, schema)
        ...     .with_partition_spec(spec)
        ...     .with_property("owner", "etl")
        ...     .create()
        ... )
    """

    def __init__(self, catalog: Catalog, identifier: TableIdentifier, schema: Schema) -> None:
        self._catalog = catalog
        self._identifier = identifier
        self._schema = schema
        self._spec = UNPARTITIONED_SPEC
        self._sort_order = UNSORTED_ORDER
        self._location: str | None = None
        self._properties: dict[str, str] = {}

    def with_location(self, location: str) -> TableBuilder:
        self._location = location
        return self

    def with_partition_spec(self, spec: PartitionSpec) -> TableBuilder:
        self._spec = spec
        return self

    def with_sort_order(self, sort_order: SortOrder) -> TableBuilder:
        self._sort_order = sort_order
        return self

    def with_properties(self, properties: dict[str, str]) -> TableBuilder:
        self._properties.update(properties)
        return self

    def with_property(self, key: str, value: str) -> TableBuilder:
        self._properties[key] = value
        return self

    def create(self) -> Table:
        """Create the table.

        Raises:
            TableAlreadyExistsError: If the table exists, or is created concurrently.
            NoSuchNamespaceError: If the namespace does not exist.
        """
        transaction = self.create_transaction()
        metadata = transaction.commit_transaction()
        return self._catalog._table(self._identifier, metadata)

    def create_transaction(self) -> Transaction:
        """Start a transaction that creates the table when committed.

        Raises:
            TableAlreadyExistsError: If the table already exists.
        """
        self._catalog._check_namespace(self._identifier.namespace)
        if self._catalog.table_exists(self._identifier):
            raise self._catalog._table_exists(self._identifier)
        return self._create(TransactionKind.CREATE)

    def replace_transaction(self) -> Transaction:
        """Start a transaction that replaces the existing table's definition.

        Raises:
            NoSuchTableError: If the table does not exist.
        """
        ops = self._catalog._operations(self._identifier)
        base = ops.refresh()
        return self._replace(ops, base, TransactionKind.REPLACE)

    def create_or_replace_transaction(self) -> Transaction:
        """Replace the table if it exists, otherwise create it."""
        self._catalog._check_namespace(self._identifier.namespace)
        if not self._catalog.table_exists(self._identifier):
            return self._create(TransactionKind.CREATE_OR_REPLACE)
        ops = self._catalog._operations(self._identifier)
        base = ops.refresh()
        return self._replace(ops, base, TransactionKind.CREATE_OR_REPLACE)

    def _create(self, kind: TransactionKind) -> Transaction:
        catalog = self._catalog
        metadata = new_table_metadata(
            self._schema,
            self._spec,
            self._sort_order,
            self._location or catalog._default_location(self._identifier),
            catalog._table_properties(self._properties, creating=True),
            catalog.config.default_format_version,
        )
        logger.debug(
            "table_create_started",
            table_identifier=str(self._identifier),
            location=metadata.location,
            format_version=metadata.format_version,
        )
        return Transaction(catalog._operations(self._identifier), kind, None, start=metadata)

    def _replace(
        self, ops: TableOperations, base: TableMetadata, kind: TransactionKind
    ) -> Transaction:
        replacement = functools.partial(
            replace_table_updates,
            schema=self._schema,
            spec=self._spec,
            sort_order=self._sort_order,
            location=self._location,
            properties=self._catalog._table_properties(self._properties, creating=False),
        )
        logger.debug("table_replace_started", table_identifier=str(self._identifier))
        return Transaction(ops, kind, base, replacement=replacement)


__all__ = ["Catalog", "TableBuilder"]
