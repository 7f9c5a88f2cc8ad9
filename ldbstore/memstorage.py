"""Memory-backed storage."""

from __future__ import annotations

import io
import threading

from ldbstore.storage import (
    ClosedError,
    FileDesc,
    FileOpenError,
    FileType,
    InvalidFileError,
    LockedError,
    Storage,
    file_desc_ok,
)


class _MemFile:
    __slots__ = ("data", "open")

    def __init__(self) -> None:
        self.data = bytearray()
        self.open = False


class MemStorageLock:
    """Lock held on a MemStorage until unlocked."""

    def __init__(self, storage: MemStorage) -> None:
        self._storage = storage

    def unlock(self) -> None:
        """Release the lock if it is still the storage's current lock."""
        ms = self._storage
        with ms._mu:
            if ms._slock is self:
                ms._slock = None

    def __enter__(self) -> MemStorageLock:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unlock()


class _MemReader:
    def __init__(self, storage: MemStorage, mem_file: _MemFile) -> None:
        self._storage = storage
        self._file = mem_file
        self._buf = io.BytesIO(bytes(mem_file.data))
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        return self._buf.read(size)

    def readinto(self, buffer: bytearray) -> int:
        return self._buf.readinto(buffer)

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._buf.seek(offset, whence)

    def tell(self) -> int:
        return self._buf.tell()

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def close(self) -> None:
        with self._storage._mu:
            if self.closed:
                return
            self.closed = True
            self._file.open = False
        self._buf.close()

    def __enter__(self) -> _MemReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class _MemWriter:
    def __init__(self, storage: MemStorage, mem_file: _MemFile) -> None:
        self._storage = storage
        self._file = mem_file
        self.closed = False

    def write(self, data: bytes) -> int:
        if self.closed:
            raise ClosedError()
        self._file.data.extend(data)
        return len(data)

    def sync(self) -> None:
        """Nothing to flush for memory files."""

    def close(self) -> None:
        with self._storage._mu:
            if self.closed:
                return
            self.closed = True
            self._file.open = False

    def __enter__(self) -> _MemWriter:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class MemStorage(Storage):
    """A storage that keeps every file in memory."""

    def __init__(self) -> None:
        self._mu = threading.RLock()
        self._slock: MemStorageLock | None = None
        self._files: dict[FileDesc, _MemFile] = {}
        self._meta = FileDesc()

    def lock(self) -> MemStorageLock:
        with self._mu:
            if self._slock is not None:
                raise LockedError()
            self._slock = MemStorageLock(self)
            return self._slock

    def log(self, message: str) -> None:
        """Memory storage discards log lines."""

    def set_meta(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._meta = fd

    def get_meta(self) -> FileDesc:
        with self._mu:
            if self._meta.is_zero():
                raise FileNotFoundError("meta not set")
            return self._meta

    def list(self, file_type: FileType) -> list[FileDesc]:
        with self._mu:
            return [fd for fd in self._files if fd.type & file_type]

    def open(self, fd: FileDesc) -> _MemReader:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            mem_file = self._files.get(fd)
            if mem_file is None:
                raise FileNotFoundError(str(fd))
            if mem_file.open:
                raise FileOpenError()
            mem_file.open = True
            return _MemReader(self, mem_file)

    def create(self, fd: FileDesc) -> _MemWriter:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            mem_file = self._files.get(fd)
            if mem_file is not None:
                if mem_file.open:
                    raise FileOpenError()
                mem_file.data.clear()
            else:
                mem_file = _MemFile()
                self._files[fd] = mem_file
            mem_file.open = True
            return _MemWriter(self, mem_file)

    def remove(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            if self._files.pop(fd, None) is None:
                raise FileNotFoundError(str(fd))

    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        if not file_desc_ok(old_fd) or not file_desc_ok(new_fd):
            raise InvalidFileError()
        if old_fd == new_fd:
            return
        with self._mu:
            old_file = self._files.get(old_fd)
            if old_file is None:
                raise FileNotFoundError(str(old_fd))
            new_file = self._files.get(new_fd)
            if (new_file is not None and new_file.open) or old_file.open:
                raise FileOpenError()
            del self._files[old_fd]
            self._files[new_fd] = old_file

    def close(self) -> None:
        """Memory storage has nothing to release."""