"""Storage abstraction: file descriptors, storage errors and the storage interface."""

from __future__ import annotations

import abc
import enum
import threading
from dataclasses import dataclass
from typing import Any


class FileType(enum.IntFlag):
    """Kind of file kept by a storage; values may be OR'ed together."""

    MANIFEST = 1
    JOURNAL = 2
    TABLE = 4
    TEMP = 8
    ALL = MANIFEST | JOURNAL | TABLE | TEMP

    def __str__(self) -> str:
        name = _TYPE_NAMES.get(int(self))
        if name is None:
            return f"<unknown:{int(self)}>"
        return name


_TYPE_NAMES = {
    FileType.MANIFEST.value: "manifest",
    FileType.JOURNAL.value: "journal",
    FileType.TABLE.value: "table",
    FileType.TEMP.value: "temp",
}

_NAME_FORMATS = {
    FileType.MANIFEST.value: "MANIFEST-{:06d}",
    FileType.JOURNAL.value: "{:06d}.log",
    FileType.TABLE.value: "{:06d}.ldb",
    FileType.TEMP.value: "{:06d}.tmp",
}


@dataclass(frozen=True)
class FileDesc:
    """Identifies a file within a storage by its type and number."""

    type: FileType = FileType(0)
    num: int = 0

    def is_zero(self) -> bool:
        """Return True if this is the empty descriptor."""
        return int(self.type) == 0 and self.num == 0

    def __str__(self) -> str:
        fmt = _NAME_FORMATS.get(int(self.type))
        if fmt is None:
            return f"{int(self.type):#x}-{self.num}"
        return fmt.format(self.num)


def file_desc_ok(fd: FileDesc) -> bool:
    """Return True if fd names a known file type with a non-negative number."""
    return int(fd.type) in _TYPE_NAMES and fd.num >= 0


class StorageError(Exception):
    """Base class for storage errors."""


class FileOpenError(StorageError):
    """The file is still open."""

    def __init__(self, message: str = "ldbstore/storage: file still open") -> None:
        super().__init__(message)


class InvalidFileError(StorageError):
    """The file descriptor is not valid for the operation."""

    def __init__(self, message: str = "ldbstore/storage: invalid file for argument") -> None:
        super().__init__(message)


class LockedError(StorageError):
    """The storage is already locked."""

    def __init__(self, message: str = "ldbstore/storage: already locked") -> None:
        super().__init__(message)


class ClosedError(StorageError):
    """The storage or file is closed."""

    def __init__(self, message: str = "ldbstore/storage: closed") -> None:
        super().__init__(message)


class CorruptedError(StorageError):
    """A file is corrupted; wraps the underlying cause."""

    def __init__(self, err: Any, fd: FileDesc | None = None) -> None:
        self.err = err
        self.fd = fd if fd is not None else FileDesc()
        super().__init__(err)

    def __str__(self) -> str:
        if not self.fd.is_zero():
            return f"{self.err} [file={self.fd}]"
        return str(self.err)


def is_corrupted(err: object) -> bool:
    """Return True if err reports file corruption."""
    return isinstance(err, CorruptedError)


class Storage(abc.ABC):
    """A storage of numbered files plus a meta pointer; safe for concurrent use."""

    @abc.abstractmethod
    def lock(self) -> Any:
        """Lock the storage; the returned object has an ``unlock`` method."""

    @abc.abstractmethod
    def log(self, message: str) -> None:
        """Record a log line."""

    @abc.abstractmethod
    def set_meta(self, fd: FileDesc) -> None:
        """Atomically store fd as the meta pointer."""

    @abc.abstractmethod
    def get_meta(self) -> FileDesc:
        """Return the stored meta pointer; raise FileNotFoundError if none."""

    @abc.abstractmethod
    def list(self, file_type: FileType) -> list[FileDesc]:
        """Return descriptors of files whose type matches file_type."""

    @abc.abstractmethod
    def open(self, fd: FileDesc) -> Any:
        """Open the file read-only."""

    @abc.abstractmethod
    def create(self, fd: FileDesc) -> Any:
        """Create or truncate the file and open it write-only."""

    @abc.abstractmethod
    def remove(self, fd: FileDesc) -> None:
        """Remove the file."""

    @abc.abstractmethod
    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        """Rename old_fd to new_fd."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the storage."""

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class _CountingReader:
    def __init__(self, reader: Any, owner: CountingStorage) -> None:
        self._reader = reader
        self._owner = owner

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        self._owner._add_read(len(data))
        return data

    def readinto(self, buffer: Any) -> int:
        n = self._reader.readinto(buffer) or 0
        self._owner._add_read(n)
        return n

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._reader.seek(offset, whence)

    def tell(self) -> int:
        return self._reader.tell()

    def close(self) -> None:
        self._reader.close()

    def __enter__(self) -> _CountingReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._reader, name)


class _CountingWriter:
    def __init__(self, writer: Any, owner: CountingStorage) -> None:
        self._writer = writer
        self._owner = owner

    def write(self, data: bytes) -> int:
        n = self._writer.write(data)
        if n is None:
            n = len(data)
        self._owner._add_write(n)
        return n

    def sync(self) -> None:
        self._writer.sync()

    def close(self) -> None:
        self._writer.close()

    def __enter__(self) -> _CountingWriter:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def __getattr__(self, name: str) -> Any:
        return getattr(self._writer, name)


class CountingStorage(Storage):
    """Wraps a storage and counts bytes read from and written to its files."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._read = 0
        self._write = 0
        self._mu = threading.Lock()

    def _add_read(self, n: int) -> None:
        with self._mu:
            self._read += n

    def _add_write(self, n: int) -> None:
        with self._mu:
            self._write += n

    def reads(self) -> int:
        """Total bytes read so far."""
        with self._mu:
            return self._read

    def writes(self) -> int:
        """Total bytes written so far."""
        with self._mu:
            return self._write

    def lock(self) -> Any:
        return self._storage.lock()

    def log(self, message: str) -> None:
        self._storage.log(message)

    def set_meta(self, fd: FileDesc) -> None:
        self._storage.set_meta(fd)

    def get_meta(self) -> FileDesc:
        return self._storage.get_meta()

    def list(self, file_type: FileType) -> list[FileDesc]:
        return self._storage.list(file_type)

    def open(self, fd: FileDesc) -> _CountingReader:
        return _CountingReader(self._storage.open(fd), self)

    def create(self, fd: FileDesc) -> _CountingWriter:
        return _CountingWriter(self._storage.create(fd), self)

    def remove(self, fd: FileDesc) -> None:
        self._storage.remove(fd)

    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        self._storage.rename(old_fd, new_fd)

    def close(self) -> None:
        self._storage.close()