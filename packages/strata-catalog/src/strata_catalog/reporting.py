"""Metrics reports and the pluggable reporter interface.

Reporters are injected into the catalog and handed to every table it loads;
there is no process-global reporter. A ``CommitReport`` is delivered for each
commit outcome (success or terminal failure) and a ``ScanReport`` for each
scan planning call.

Example:
    >>> class CountingReporter(MetricsReporter):
    ...     def __init__(self):
    ...         self.reports = []
    ...     def report(self, report):
    ...         self.reports.append(report)
    >>> catalog = Catalog("prod", backend, io, reporter=CountingReporter())
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class CommitReport(BaseModel):
    """Outcome of one logical commit.

    Attributes:
        table_name: Fully qualified table name.
        snapshot_id: Snapshot produced, if the commit added one.
        sequence_number: Sequence number of that snapshot.
        operation: Kind of change committed (e.g. "append", "update-schema").
        attempts: Number of write attempts made.
        duration_ms: Wall time from first attempt to outcome.
        success: Whether the pointer advanced.
        error: Exception class name when the commit failed.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    table_name: str
    snapshot_id: int | None = None
    sequence_number: int | None = None
    operation: str
    attempts: int = Field(..., ge=0)
    duration_ms: int = Field(..., ge=0)
    success: bool
    error: str | None = None


class ScanReport(BaseModel):
    """Outcome of one scan planning call.

    Attributes:
        table_name: Fully qualified table name.
        snapshot_id: Snapshot scanned, or None for an empty table.
        schema_id: Schema the scan projects.
        result_data_files: Number of files planned.
        duration_ms: Planning wall time.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    table_name: str
    snapshot_id: int | None = None
    schema_id: int
    result_data_files: int = Field(..., ge=0)
    duration_ms: int = Field(..., ge=0)


MetricsReport = CommitReport | ScanReport


class MetricsReporter(ABC):
    """Receives metrics reports."""

    @abstractmethod
    def report(self, report: MetricsReport) -> None: ...


class LoggingMetricsReporter(MetricsReporter):
    """Default reporter: logs every report through structlog."""

    def report(self, report: MetricsReport) -> None:
        if isinstance(report, CommitReport):
            logger.info("commit_report", **report.model_dump())
        else:
            logger.info("scan_report", **report.model_dump())


__all__ = [
    "CommitReport",
    "LoggingMetricsReporter",
    "MetricsReport",
    "MetricsReporter",
    "ScanReport",
]
