"""Catalog backend adapters.

A backend owns the namespace directory and one current-metadata pointer per
table, and provides the atomic compare-and-swap the commit engine relies on.
Backends differ in whether they can evaluate commit requirements themselves:

- ``InMemoryCatalogBackend`` only compares pointers. Any mismatch is reported
  as a conflict the engine must treat as terminal.
- ``ValidatingCatalogBackend`` reads the current metadata and evaluates the
  requirements before the swap, so it reports exactly which requirement
  failed and lets the engine rebase and retry when they all still hold.

Example:
    >>> backend = ValidatingCatalogBackend()
    >>> backend.supports_server_side_retry
    True
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

from strata_catalog.errors import (
    CommitConflictError,
    NamespaceAlreadyExistsError,
    NamespaceNotEmptyError,
    NoSuchNamespaceError,
    NoSuchTableError,
    TableAlreadyExistsError,
)
from strata_catalog.identifiers import Namespace, TableIdentifier
from strata_catalog.metadata import read_table_metadata
from strata_catalog.requirements import validate_requirements

if TYPE_CHECKING:
    from strata_catalog.io import FileIO
    from strata_catalog.requirements import TableRequirement

logger = structlog.get_logger(__name__)


class CatalogBackend(ABC):
    """Storage for namespaces and table pointers.

    Attributes:
        supports_server_side_retry: Whether commit requirements are evaluated
            authoritatively at swap time.
    """

    supports_server_side_retry: bool = False

    # -------------------------------------------------------------------------
    # Namespaces
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_namespace(self, namespace: Namespace, properties: dict[str, str]) -> None:
        """Raises NamespaceAlreadyExistsError if ``namespace`` exists."""

    @abstractmethod
    def drop_namespace(self, namespace: Namespace) -> bool:
        """Return False if absent; raise NamespaceNotEmptyError if it holds tables."""

    @abstractmethod
    def load_namespace_properties(self, namespace: Namespace) -> dict[str, str] | None:
        """Return the namespace properties, or None if it does not exist."""

    @abstractmethod
    def update_namespace_properties(
        self,
        namespace: Namespace,
        updates: dict[str, str],
        removals: set[str],
    ) -> None:
        """Raises NoSuchNamespaceError if ``namespace`` does not exist."""

    @abstractmethod
    def list_namespaces(self, parent: Namespace) -> list[Namespace]:
        """Direct children of ``parent`` (root when empty)."""

    # -------------------------------------------------------------------------
    # Table pointers
    # -------------------------------------------------------------------------

    @abstractmethod
    def current_location(self, identifier: TableIdentifier) -> str | None:
        """Current metadata location for ``identifier``, or None if absent."""

    @abstractmethod
    def list_tables(self, namespace: Namespace) -> list[TableIdentifier]: ...

    @abstractmethod
    def commit_table(
        self,
        identifier: TableIdentifier,
        expected_location: str | None,
        new_location: str,
        requirements: list[TableRequirement],
        io: FileIO,
    ) -> None:
        """Swap the pointer from ``expected_location`` to ``new_location``.

        ``expected_location`` None means the table must not exist yet.

        Raises:
            CommitConflictError: The pointer no longer equals ``expected_location``.
            RequirementFailedError: A requirement failed (authoritative backends).
            TableAlreadyExistsError: Creating a table that now exists.
            NoSuchTableError: The table was dropped concurrently.
        """

    @abstractmethod
    def drop_table(self, identifier: TableIdentifier) -> str | None:
        """Remove the pointer; return the last location or None if absent."""

    @abstractmethod
    def rename_table(self, source: TableIdentifier, target: TableIdentifier) -> None:
        """Move a pointer atomically; neither side changes on failure."""


# =============================================================================
# In-Memory Backends
# =============================================================================


class InMemoryCatalogBackend(CatalogBackend):
    """Dict-backed backend offering compare-and-swap only."""

    supports_server_side_retry = False

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._namespaces: dict[Namespace, dict[str, str]] = {}
        self._tables: dict[TableIdentifier, str] = {}
        self._log = logger.bind(backend=type(self).__name__)

    def create_namespace(self, namespace: Namespace, properties: dict[str, str]) -> None:
        with self._lock:
            if namespace in self._namespaces:
                msg = f"Namespace already exists: {namespace}"
                raise NamespaceAlreadyExistsError(msg, namespace=str(namespace))
            self._namespaces[namespace] = dict(properties)

    def drop_namespace(self, namespace: Namespace) -> bool:
        with self._lock:
            if namespace not in self._namespaces:
                return False
            if any(t.namespace == namespace for t in self._tables):
                msg = f"{namespace} is not empty"
                raise NamespaceNotEmptyError(msg, namespace=str(namespace))
            del self._namespaces[namespace]
            return True

    def load_namespace_properties(self, namespace: Namespace) -> dict[str, str] | None:
        with self._lock:
            properties = self._namespaces.get(namespace)
            return dict(properties) if properties is not None else None

    def update_namespace_properties(
        self,
        namespace: Namespace,
        updates: dict[str, str],
        removals: set[str],
    ) -> None:
        with self._lock:
            properties = self._namespaces.get(namespace)
            if properties is None:
                msg = f"Namespace does not exist: {namespace}"
                raise NoSuchNamespaceError(msg, namespace=str(namespace))
            for key in removals:
                properties.pop(key, None)
            properties.update(updates)

    def list_namespaces(self, parent: Namespace) -> list[Namespace]:
        depth = len(parent.levels)
        with self._lock:
            children = {
                Namespace(levels=ns.levels[: depth + 1])
                for ns in self._namespaces
                if len(ns.levels) > depth and ns.levels[:depth] == parent.levels
            }
        return sorted(children, key=lambda ns: ns.levels)

    def current_location(self, identifier: TableIdentifier) -> str | None:
        with self._lock:
            return self._tables.get(identifier)

    def list_tables(self, namespace: Namespace) -> list[TableIdentifier]:
        with self._lock:
            tables = [t for t in self._tables if t.namespace == namespace]
        return sorted(tables, key=lambda t: t.name)

    def commit_table(
        self,
        identifier: TableIdentifier,
        expected_location: str | None,
        new_location: str,
        requirements: list[TableRequirement],
        io: FileIO,
    ) -> None:
        with self._lock:
            current = self._tables.get(identifier)
            self._check_requirements(identifier, current, requirements, io)
            self._compare(identifier, expected_location, current)
            self._tables[identifier] = new_location
        self._log.debug(
            "pointer_swapped",
            table_identifier=str(identifier),
            previous_location=expected_location,
            metadata_location=new_location,
        )

    def _check_requirements(
        self,
        identifier: TableIdentifier,
        current: str | None,
        requirements: list[TableRequirement],
        io: FileIO,
    ) -> None:
        """Hook for authoritative backends; plain CAS checks nothing."""

    def _compare(
        self,
        identifier: TableIdentifier,
        expected_location: str | None,
        current: str | None,
    ) -> None:
        if expected_location is None:
            if current is not None:
                msg = f"Table already exists: {identifier}"
                raise TableAlreadyExistsError(msg, table_identifier=str(identifier))
            return
        if current is None:
            msg = f"Table does not exist: {identifier}"
            raise NoSuchTableError(msg, table_identifier=str(identifier))
        if current != expected_location:
            msg = (
                f"Cannot commit {identifier}: base metadata location '{expected_location}' "
                f"is not same as the current location '{current}'"
            )
            raise CommitConflictError(
                msg,
                expected_location=expected_location,
                current_location=current,
            )

    def drop_table(self, identifier: TableIdentifier) -> str | None:
        with self._lock:
            return self._tables.pop(identifier, None)

    def rename_table(self, source: TableIdentifier, target: TableIdentifier) -> None:
        with self._lock:
            if source not in self._tables:
                msg = f"Table does not exist: {source}"
                raise NoSuchTableError(msg, table_identifier=str(source))
            if target in self._tables:
                msg = f"Table already exists: {target}"
                raise TableAlreadyExistsError(msg, table_identifier=str(target))
            self._tables[target] = self._tables.pop(source)


class ValidatingCatalogBackend(InMemoryCatalogBackend):
    """Backend that evaluates requirements against the current metadata before swapping.

    Requirements are checked first, so a stale base whose assertions still
    hold surfaces as CommitConflictError (retryable) and one whose assertions
    broke surfaces as RequirementFailedError naming the predicate.
    """

    supports_server_side_retry = True

    def _check_requirements(
        self,
        identifier: TableIdentifier,
        current: str | None,
        requirements: list[TableRequirement],
        io: FileIO,
    ) -> None:
        base = read_table_metadata(io, current) if current is not None else None
        validate_requirements(requirements, base)


__all__ = ["CatalogBackend", "InMemoryCatalogBackend", "ValidatingCatalogBackend"]
