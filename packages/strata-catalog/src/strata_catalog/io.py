"""File I/O collaborator interface.

The catalog core never touches storage directly: metadata files, manifest
lists, and purges go through a FileIO. ``InMemoryFileIO`` keeps files in a
dict and is what tests and the in-memory backends use.

Example:
    >>> io = InMemoryFileIO()
    >>> io.new_output("memory://wh/t/metadata/00000.metadata.json").write(b"{}")
    >>> io.new_input("memory://wh/t/metadata/00000.metadata.json").read()
    b'{}'
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod

import structlog

logger = structlog.get_logger(__name__)


class InputFile(ABC):
    """Readable file handle."""

    def __init__(self, location: str) -> None:
        self.location = location

    @abstractmethod
    def exists(self) -> bool: ...

    @abstractmethod
    def read(self) -> bytes:
        """Return the file contents.

        Raises:
            FileNotFoundError: If the file does not exist.
        """


class OutputFile(ABC):
    """Writable file handle."""

    def __init__(self, location: str) -> None:
        self.location = location

    @abstractmethod
    def exists(self) -> bool: ...

    @abstractmethod
    def write(self, data: bytes, overwrite: bool = False) -> None:
        """Write ``data`` to the location.

        Raises:
            FileExistsError: If the file exists and ``overwrite`` is False.
        """


class FileIO(ABC):
    """Storage collaborator used for metadata files, manifest lists and purges."""

    @abstractmethod
    def new_input(self, location: str) -> InputFile: ...

    @abstractmethod
    def new_output(self, location: str) -> OutputFile: ...

    @abstractmethod
    def delete(self, location: str) -> None:
        """Delete the file at ``location``; deleting a missing file is a no-op."""


# =============================================================================
# In-Memory Implementation
# =============================================================================


class _MemoryInputFile(InputFile):
    def __init__(self, location: str, io: InMemoryFileIO) -> None:
        super().__init__(location)
        self._io = io

    def exists(self) -> bool:
        return self.location in self._io.files

    def read(self) -> bytes:
        try:
            return self._io.files[self.location]
        except KeyError:
            msg = f"File does not exist: {self.location}"
            raise FileNotFoundError(msg) from None


class _MemoryOutputFile(OutputFile):
    def __init__(self, location: str, io: InMemoryFileIO) -> None:
        super().__init__(location)
        self._io = io

    def exists(self) -> bool:
        return self.location in self._io.files

    def write(self, data: bytes, overwrite: bool = False) -> None:
        with self._io.lock:
            if not overwrite and self.location in self._io.files:
                msg = f"File already exists: {self.location}"
                raise FileExistsError(msg)
            self._io.files[self.location] = data
            self._io.written_files.append(self.location)


class InMemoryFileIO(FileIO):
    """Dict-backed FileIO.

    Attributes:
        files: Current file contents by location.
        written_files: Every location written, in order.
        deleted_files: Every location deleted, in order.
    """

    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}
        self.written_files: list[str] = []
        self.deleted_files: list[str] = []
        self.lock = threading.Lock()

    def new_input(self, location: str) -> InputFile:
        return _MemoryInputFile(location, self)

    def new_output(self, location: str) -> OutputFile:
        return _MemoryOutputFile(location, self)

    def delete(self, location: str) -> None:
        with self.lock:
            if self.files.pop(location, None) is not None:
                self.deleted_files.append(location)
                logger.debug("file_deleted", location=location)

    def list_prefix(self, prefix: str) -> list[str]:
        """Return existing locations starting with ``prefix``, sorted."""
        return sorted(loc for loc in self.files if loc.startswith(prefix))


# =============================================================================
# Staged Overlay
# =============================================================================


class _StagedInputFile(InputFile):
    def __init__(self, location: str, data: bytes) -> None:
        super().__init__(location)
        self._data = data

    def exists(self) -> bool:
        return True

    def read(self) -> bytes:
        return self._data


class StagedFileIO(FileIO):
    """Read-through view serving files that are staged but not yet written.

    A transaction stages the manifest lists of its pending snapshots here so
    that a later change in the same transaction can read them. Writes and
    deletes go straight to the wrapped FileIO.
    """

    def __init__(self, io: FileIO) -> None:
        self._io = io
        self.staged: dict[str, bytes] = {}

    def stage(self, files: dict[str, bytes]) -> None:
        self.staged.update(files)

    def new_input(self, location: str) -> InputFile:
        data = self.staged.get(location)
        if data is not None:
            return _StagedInputFile(location, data)
        return self._io.new_input(location)

    def new_output(self, location: str) -> OutputFile:
        return self._io.new_output(location)

    def delete(self, location: str) -> None:
        self._io.delete(location)


__all__ = ["FileIO", "InMemoryFileIO", "InputFile", "OutputFile", "StagedFileIO"]
