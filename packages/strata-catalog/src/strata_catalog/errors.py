"""Exception types for strata-catalog.

This module defines the exception hierarchy for catalog and commit operations.
All exceptions inherit from CatalogError to enable catch-all error handling.

The ``message`` attribute of every error carries the stable contract string
(e.g. "Table does not exist: ns.tbl"); ``str(error)`` appends any details, so
``str(error)`` is for humans and log lines. Tooling that matches or parses
error text must read ``.message``, never ``str(error)``.

Exception Hierarchy:
    CatalogError (base)
    ├── ValidationError - Invalid input, missing branch, GC disabled
    ├── NamespaceError - Namespace-related errors
    │   ├── NamespaceAlreadyExistsError - Namespace creation conflict
    │   ├── NoSuchNamespaceError - Namespace not found
    │   └── NamespaceNotEmptyError - Drop of a namespace that still has tables
    ├── TableError - Table lookup and identity errors
    │   ├── TableAlreadyExistsError - Create/rename/register conflict
    │   └── NoSuchTableError - Table not found
    ├── CommitFailedError - Terminal commit failure
    │   ├── CommitConflictError - Catalog pointer moved (retryable)
    │   └── RequirementFailedError - A commit requirement no longer holds
    └── SnapshotError - Unresolvable snapshot references
        └── NoSuchSnapshotError - Snapshot not found

Example:
    >>> from strata_catalog.errors import CatalogError, TableAlreadyExistsError
    >>> try:
    ...     catalog.create_table(identifier, schema)
    ... except TableAlreadyExistsError as e:
    ...     print(e.message)
    ... except CatalogError as e:
    ...     print(type(e).__name__, e.details)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from strata_catalog.requirements import TableRequirement


class CatalogError(Exception):
    """Base exception for all strata-catalog errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional error context.

    Example:
        >>> try:
        ...     catalog.load_table(identifier)
        ... except CatalogError as e:
        ...     logger.error("catalog_operation_failed", error=str(e), details=e.details)
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize CatalogError.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Message followed by the details, if any."""
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(CatalogError):
    """A builder or catalog call was given input it cannot apply.

    Raised before any commit is attempted: bad builder input, a reference to a
    branch that does not exist, or an operation the table properties forbid.
    Never retried and never reported as a commit conflict.

    Attributes:
        field: Argument or attribute that was rejected.
        value: The rejected value.

    Example:
        >>> raise ValidationError(
        ...     "Cannot use branch (does not exist): audit",
        ...     field="branch",
        ...     value="audit",
        ... )
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        value: Any = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize ValidationError.

        Args:
            message: Human-readable error description.
            field: Argument or attribute that was rejected.
            value: The rejected value.
            details: Additional error context.
        """
        _details = details or {}
        if field:
            _details["field"] = field
        if value is not None:
            _details["value"] = str(value)
        super().__init__(message, _details)
        self.field = field
        self.value = value


# =============================================================================
# Namespace Errors
# =============================================================================


class NamespaceError(CatalogError):
    """A namespace lookup, create or drop failed.

    Attributes:
        namespace: Dotted namespace name.
    """

    def __init__(
        self,
        message: str,
        namespace: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize NamespaceError.

        Args:
            message: Human-readable error description.
            namespace: Dotted namespace name.
            details: Additional error context.
        """
        super().__init__(message, details)
        self.namespace = namespace


class NamespaceAlreadyExistsError(NamespaceError):
    """Namespace already exists in the catalog."""

    pass


class NoSuchNamespaceError(NamespaceError):
    """The namespace is not registered in the catalog.

    Example:
        >>> raise NoSuchNamespaceError(
        ...     "Namespace does not exist: db", namespace="db"
        ... )
    """

    pass


class NamespaceNotEmptyError(NamespaceError):
    """Namespace still contains tables and cannot be dropped."""

    pass


# =============================================================================
# Table Errors
# =============================================================================


class TableError(CatalogError):
    """A table lookup, create or rename failed.

    Attributes:
        table_identifier: Dotted table identifier (e.g. "db.events").
    """

    def __init__(
        self,
        message: str,
        table_identifier: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize TableError.

        Args:
            message: Human-readable error description.
            table_identifier: Dotted table identifier.
            details: Additional error context.
        """
        super().__init__(message, details)
        self.table_identifier = table_identifier


class TableAlreadyExistsError(TableError):
    """The target table identifier is already taken.

    Raised by create, rename and register when the target identifier is
    taken, and by create transactions that lose a creation race.

    Example:
        >>> raise TableAlreadyExistsError(
        ...     "Table already exists: db.events", table_identifier="db.events"
        ... )
    """

    pass


class NoSuchTableError(TableError):
    """No pointer is registered for the table identifier."""

    pass


# =============================================================================
# Commit Errors
# =============================================================================


class CommitFailedError(CatalogError):
    """A commit could not be applied and will not be retried.

    The catalog pointer is unchanged when this is raised.

    Attributes:
        retry_count: Attempts made after the first one.
    """

    def __init__(
        self,
        message: str,
        retry_count: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize CommitFailedError.

        Args:
            message: Human-readable error description.
            retry_count: Attempts made after the first one.
            details: Additional error context.
        """
        _details = details or {}
        if retry_count is not None:
            _details["retry_count"] = retry_count
        super().__init__(message, _details)
        self.retry_count = retry_count


class CommitConflictError(CommitFailedError):
    """The catalog pointer moved between refresh and swap.

    This is the only commit error that the retry policy retries, and only for
    backends that evaluate requirements authoritatively.

    Attributes:
        expected_location: Metadata location the commit was based on.
        current_location: Metadata location found at swap time.
    """

    def __init__(
        self,
        message: str,
        expected_location: str | None = None,
        current_location: str | None = None,
        retry_count: int | None = None,
    ) -> None:
        """Initialize CommitConflictError.

        Args:
            message: Human-readable error description.
            expected_location: Metadata location the commit was based on.
            current_location: Metadata location found at swap time.
            retry_count: Attempts made after the first one.
        """
        super().__init__(message, retry_count=retry_count)
        self.expected_location = expected_location
        self.current_location = current_location


class RequirementFailedError(CommitFailedError):
    """A requirement recorded at apply time no longer holds.

    Attributes:
        requirement: The requirement that failed.
    """

    def __init__(
        self,
        message: str,
        requirement: TableRequirement | None = None,
    ) -> None:
        """Initialize RequirementFailedError.

        Args:
            message: Human-readable error description.
            requirement: The requirement that failed.
        """
        super().__init__(message)
        self.requirement = requirement


# =============================================================================
# Snapshot Errors
# =============================================================================


class SnapshotError(CatalogError):
    """A snapshot reference could not be resolved.

    Attributes:
        snapshot_id: Id of the snapshot that was referenced.
    """

    def __init__(
        self,
        message: str,
        snapshot_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize SnapshotError.

        Args:
            message: Human-readable error description.
            snapshot_id: Id of the snapshot that was referenced.
            details: Additional error context.
        """
        _details = details or {}
        if snapshot_id is not None:
            _details["snapshot_id"] = snapshot_id
        super().__init__(message, _details)
        self.snapshot_id = snapshot_id


class NoSuchSnapshotError(SnapshotError):
    """Snapshot not found in table metadata."""

    pass


__all__ = [
    "CatalogError",
    "CommitConflictError",
    "CommitFailedError",
    "NamespaceAlreadyExistsError",
    "NamespaceError",
    "NamespaceNotEmptyError",
    "NoSuchNamespaceError",
    "NoSuchSnapshotError",
    "NoSuchTableError",
    "RequirementFailedError",
    "SnapshotError",
    "TableAlreadyExistsError",
    "TableError",
    "ValidationError",
]
