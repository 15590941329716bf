"""Snapshots, references, data files and history entries.

A snapshot points at a manifest list written through FileIO. The manifest
list records every data file live in that snapshot, each stamped with the
partition spec id that was the table default when the file was added.

Example:
    >>> from strata_catalog.snapshots import DataFile
    >>> DataFile(file_path="s3://b/data/a.parquet", record_count=2, file_size_in_bytes=10)
    DataFile(file_path='s3://b/data/a.parquet', ...)
"""

from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from strata_catalog.io import FileIO

MAIN_BRANCH = "main"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def generate_snapshot_id() -> int:
    """Return a random positive 63-bit snapshot id."""
    value = uuid.uuid4().int
    return ((value >> 64) ^ (value & 0xFFFFFFFFFFFFFFFF)) & 0x7FFFFFFFFFFFFFFF


# =============================================================================
# Enumerations
# =============================================================================


class Operation(str, Enum):
    """Snapshot operation types.

    Attributes:
        APPEND: Only data files were added
        OVERWRITE: Data files were added and removed
        DELETE: Only data files were removed
        REPLACE: Files were rewritten without changing table data
    """

    APPEND = "append"
    OVERWRITE = "overwrite"
    DELETE = "delete"
    REPLACE = "replace"


class RefType(str, Enum):
    """Kind of a named snapshot reference."""

    BRANCH = "branch"
    TAG = "tag"


# =============================================================================
# Models
# =============================================================================


class DataFile(BaseModel):
    """A data file tracked by a snapshot.

    Attributes:
        file_path: Storage location of the file.
        spec_id: Partition spec the file was written with (stamped on append).
        partition: Partition values keyed by partition field name.
        record_count: Number of rows.
        file_size_in_bytes: File size.
        sort_order_id: Sort order the file was written with, if any.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    file_path: str = Field(..., min_length=1, description="Storage location")
    spec_id: int | None = Field(default=None, ge=0, description="Partition spec id")
    partition: dict[str, str] = Field(default_factory=dict, description="Partition values")
    record_count: int = Field(default=0, ge=0, description="Row count")
    file_size_in_bytes: int = Field(default=0, ge=0, description="File size")
    sort_order_id: int | None = Field(default=None, ge=0, description="Sort order id")

    @classmethod
    def with_partition_path(cls, file_path: str, partition_path: str, **kwargs: object) -> DataFile:
        """Build a data file from a ``name=value/name=value`` partition path."""
        partition = dict(part.split("=", 1) for part in partition_path.split("/") if part)
        return cls(file_path=file_path, partition=partition, **kwargs)


class Snapshot(BaseModel):
    """An immutable point-in-time view of the table's data files.

    Attributes:
        snapshot_id: Unique snapshot id.
        parent_snapshot_id: Snapshot this one was derived from.
        sequence_number: Data sequence number (0 on v1 tables).
        timestamp_ms: Creation time.
        schema_id: Current schema id when the snapshot was written.
        operation: What kind of change produced the snapshot.
        manifest_list: Location of the manifest list file.
        summary: Counters describing the change.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    snapshot_id: int = Field(..., ge=0, description="Snapshot id")
    parent_snapshot_id: int | None = Field(default=None, description="Parent snapshot id")
    sequence_number: int = Field(default=0, ge=0, description="Sequence number")
    timestamp_ms: int = Field(..., ge=0, description="Creation time (epoch ms)")
    schema_id: int | None = Field(default=None, ge=0, description="Schema id at write time")
    operation: Operation = Field(default=Operation.APPEND, description="Snapshot operation")
    manifest_list: str = Field(..., min_length=1, description="Manifest list location")
    summary: dict[str, str] = Field(default_factory=dict, description="Change counters")


class SnapshotRef(BaseModel):
    """A named branch or tag pointing at a snapshot.

    Attributes:
        snapshot_id: Referenced snapshot.
        ref_type: Branch or tag.
        max_ref_age_ms: Age after which the ref itself may be expired.
        max_snapshot_age_ms: Branch-level override of the snapshot age horizon.
        min_snapshots_to_keep: Branch-level override of retained ancestors.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    snapshot_id: int = Field(..., ge=0, description="Referenced snapshot id")
    ref_type: RefType = Field(default=RefType.BRANCH, description="Branch or tag")
    max_ref_age_ms: int | None = Field(default=None, gt=0, description="Ref max age")
    max_snapshot_age_ms: int | None = Field(default=None, gt=0, description="Snapshot max age")
    min_snapshots_to_keep: int | None = Field(default=None, gt=0, description="Ancestors kept")

    @property
    def is_branch(self) -> bool:
        return self.ref_type == RefType.BRANCH


class SnapshotLogEntry(BaseModel):
    """One entry of the main branch history."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timestamp_ms: int = Field(..., ge=0)
    snapshot_id: int = Field(..., ge=0)


class MetadataLogEntry(BaseModel):
    """One prior metadata file location."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    timestamp_ms: int = Field(..., ge=0)
    metadata_file: str = Field(..., min_length=1)


# =============================================================================
# Manifest Lists
# =============================================================================


class ManifestList(BaseModel):
    """Serialized content of a snapshot's manifest list file."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    snapshot_id: int
    data_files: tuple[DataFile, ...] = ()


def manifest_list_location(table_location: str, snapshot_id: int) -> str:
    """Location for a new manifest list under the table's metadata directory."""
    return f"{table_location}/metadata/snap-{snapshot_id}-{uuid.uuid4()}.json"


def encode_manifest_list(manifest: ManifestList) -> bytes:
    """Serialize a manifest list; the commit engine writes it before the metadata file."""
    return manifest.model_dump_json().encode("utf-8")


def read_data_files(io: FileIO, snapshot: Snapshot) -> tuple[DataFile, ...]:
    """Return the data files live in ``snapshot``.

    Raises:
        FileNotFoundError: If the manifest list was removed.
    """
    raw = io.new_input(snapshot.manifest_list).read()
    return ManifestList.model_validate_json(raw).data_files


__all__ = [
    "MAIN_BRANCH",
    "DataFile",
    "ManifestList",
    "MetadataLogEntry",
    "Operation",
    "RefType",
    "Snapshot",
    "SnapshotLogEntry",
    "SnapshotRef",
    "encode_manifest_list",
    "generate_snapshot_id",
    "manifest_list_location",
    "now_ms",
    "read_data_files",
]
