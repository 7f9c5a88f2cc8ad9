"""Filesystem-backed storage."""

from __future__ import annotations

import datetime
import errno
import os
import re
import stat
import threading
from typing import Any

import portalocker

from ldbstore.storage import (
    ClosedError,
    CorruptedError,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
    Storage,
    StorageError,
    file_desc_ok,
    is_corrupted,
)

LOG_SIZE_THRESHOLD = 1024 * 1024

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_VALID_TYPES = frozenset(
    int(t) for t in (FileType.MANIFEST, FileType.JOURNAL, FileType.TABLE, FileType.TEMP)
)
_NUMBERED_NAME = re.compile(r"([+-]?[0-9]+)\.(\S+)", re.ASCII)
_MANIFEST_NAME = re.compile(r"MANIFEST-([+-]?[0-9]+)\s*", re.ASCII)
_PENDING_NUM = re.compile(r"[+-]?[0-9]+", re.ASCII)
_TAIL_TYPES = {
    "log": FileType.JOURNAL,
    "ldb": FileType.TABLE,
    "sst": FileType.TABLE,
    "tmp": FileType.TEMP,
}
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


class ReadOnlyError(StorageError):
    """The storage was opened read-only."""

    def __init__(self, message: str = "ldbstore/storage: storage is read-only") -> None:
        super().__init__(message)


def generate_name(fd: FileDesc) -> str:
    """Return the file name used on disk for fd."""
    if int(fd.type) not in _VALID_TYPES:
        raise ValueError("invalid file type")
    return str(fd)


def generate_old_name(fd: FileDesc) -> str:
    """Return the legacy file name for fd; tables once used the .sst suffix."""
    if fd.type == FileType.TABLE:
        return f"{fd.num:06d}.sst"
    return generate_name(fd)


def _fits_int64(value: int) -> bool:
    return _INT64_MIN <= value <= _INT64_MAX


def parse_name(name: str) -> FileDesc | None:
    """Parse a file name into a FileDesc, or return None if it names no storage file."""
    match = _NUMBERED_NAME.match(name)
    if match is not None:
        num = int(match.group(1))
        if _fits_int64(num):
            file_type = _TAIL_TYPES.get(match.group(2))
            if file_type is None:
                return None
            return FileDesc(file_type, num)
    match = _MANIFEST_NAME.fullmatch(name)
    if match is not None:
        num = int(match.group(1))
        if _fits_int64(num):
            return FileDesc(FileType.MANIFEST, num)
    return None


def _write_file_synced(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def _sync_dir(path: str) -> None:
    if os.name == "nt":
        return
    dir_fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    except OSError as exc:
        # Some systems refuse fsync on a directory.
        if exc.errno != errno.EINVAL:
            raise
    finally:
        os.close(dir_fd)


class _FileLock:
    """Process-wide lock held on the LOCK file."""

    def __init__(self, path: str, read_only: bool) -> None:
        flags = (os.O_RDONLY if read_only else os.O_RDWR) | getattr(os, "O_BINARY", 0)
        try:
            fileno = os.open(path, flags)
        except FileNotFoundError:
            fileno = os.open(path, flags | os.O_CREAT, 0o644)
        self._file = os.fdopen(fileno, "rb" if read_only else "r+b")
        mode = portalocker.LOCK_SH if read_only else portalocker.LOCK_EX
        try:
            portalocker.lock(self._file, mode | portalocker.LOCK_NB)
        except portalocker.LockException as exc:
            self._file.close()
            raise LockedError(f"ldbstore/storage: lock {path}: already locked") from exc

    def release(self) -> None:
        try:
            portalocker.unlock(self._file)
        finally:
            self._file.close()


class FileStorageLock:
    """Lock held on a FileStorage until unlocked."""

    def __init__(self, storage: FileStorage | None = None) -> None:
        self._storage = storage

    def unlock(self) -> None:
        """Release the lock if it is still the storage's current lock."""
        fs = self._storage
        if fs is None:
            return
        with fs._mu:
            if fs._slock is self:
                fs._slock = None

    def __enter__(self) -> FileStorageLock:
        return self

    def __exit__(self, *exc: object) -> None:
        self.unlock()


class _FileWrap:
    """An open file of a FileStorage."""

    def __init__(self, file: Any, storage: FileStorage, fd: FileDesc) -> None:
        self._file = file
        self._storage = storage
        self.fd = fd
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        return self._file.read(size)

    def readinto(self, buffer: Any) -> int:
        return self._file.readinto(buffer)

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._file.seek(offset, whence)

    def tell(self) -> int:
        return self._file.tell()

    def write(self, data: bytes) -> int:
        return self._file.write(data)

    def flush(self) -> None:
        self._file.flush()

    def fileno(self) -> int:
        return self._file.fileno()

    def sync(self) -> None:
        """Commit the file contents to stable storage."""
        self._file.flush()
        os.fsync(self._file.fileno())
        if self.fd.type == FileType.MANIFEST:
            # A new manifest also needs its directory entry on disk.
            try:
                _sync_dir(self._storage._path)
            except OSError as exc:
                with self._storage._mu:
                    self._storage._log(f"syncDir: {exc}")
                raise

    def close(self) -> None:
        fs = self._storage
        with fs._mu:
            if self.closed:
                raise ClosedError()
            self.closed = True
            fs._open -= 1
            try:
                self._file.close()
            except OSError as exc:
                fs._log(f"close {self.fd}: {exc}")
                raise

    def __enter__(self) -> _FileWrap:
        return self

    def __exit__(self, *exc: object) -> None:
        if not self.closed:
            self.close()


class _CurrentFile:
    __slots__ = ("name", "fd")

    def __init__(self, name: str, fd: FileDesc) -> None:
        self.name = name
        self.fd = fd


class FileStorage(Storage):
    """A storage backed by a directory; holds a lock on it while open."""

    def __init__(self, path: str | os.PathLike, read_only: bool = False) -> None:
        path = os.fspath(path)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            if read_only:
                raise
            os.makedirs(path, mode=0o755, exist_ok=True)
        else:
            if not stat.S_ISDIR(st.st_mode):
                raise NotADirectoryError(f"ldbstore/storage: open {path}: not a directory")

        flock = _FileLock(os.path.join(path, "LOCK"), read_only)
        logw = None
        log_size = 0
        if not read_only:
            try:
                logw = open(os.path.join(path, "LOG"), "ab", buffering=0)
                log_size = logw.seek(0, os.SEEK_END)
            except BaseException:
                if logw is not None:
                    logw.close()
                flock.release()
                raise

        self._path = path
        self._read_only = read_only
        self._mu = threading.Lock()
        self._flock = flock
        self._slock: FileStorageLock | None = None
        self._logw = logw
        self._log_size = log_size
        # Number of open files; negative once the storage is closed.
        self._open = 0
        self._day = 0

    def _join(self, name: str) -> str:
        return os.path.join(self._path, name)

    def _check_open(self) -> None:
        if self._open < 0:
            raise ClosedError()

    def lock(self) -> FileStorageLock:
        with self._mu:
            self._check_open()
            if self._read_only:
                return FileStorageLock()
            if self._slock is not None:
                raise LockedError()
            self._slock = FileStorageLock(self)
            return self._slock

    # Logging.

    def _write_log(self, data: bytes) -> int:
        try:
            return self._logw.write(data) or 0
        except OSError:
            return 0

    def _print_day(self, t: datetime.datetime) -> None:
        if self._day == t.day:
            return
        self._day = t.day
        stamp = f"{_MONTHS[t.month - 1]} {t.day}, {t.year} ({t.tzname() or ''})"
        self._write_log(f"=============== {stamp} ===============\n".encode())

    def _do_log(self, t: datetime.datetime, message: str) -> None:
        if self._log_size > LOG_SIZE_THRESHOLD:
            if self._logw is not None:
                self._logw.close()
            self._logw = None
            self._log_size = 0
            try:
                os.replace(self._join("LOG"), self._join("LOG.old"))
            except OSError:
                pass
        if self._logw is None:
            try:
                self._logw = open(self._join("LOG"), "ab", buffering=0)
            except OSError:
                return
            self._day = 0
        self._print_day(t)
        line = f"{t:%H:%M:%S}.{t.microsecond:06d} {message}\n"
        self._log_size += self._write_log(line.encode("utf-8", "surrogateescape"))

    def log(self, message: str) -> None:
        if self._read_only:
            return
        t = datetime.datetime.now().astimezone()
        with self._mu:
            if self._open < 0:
                return
            self._do_log(t, message)

    def _log(self, message: str) -> None:
        if not self._read_only:
            self._do_log(datetime.datetime.now().astimezone(), message)

    # Meta.

    def _set_meta(self, fd: FileDesc) -> None:
        content = (generate_name(fd) + "\n").encode()
        current_path = self._join("CURRENT")
        if os.path.exists(current_path):
            try:
                with open(current_path, "rb") as f:
                    old = f.read()
            except OSError as exc:
                self._log(f"backup CURRENT: {exc}")
                raise
            if old == content:
                return
            try:
                _write_file_synced(current_path + ".bak", old)
            except OSError as exc:
                self._log(f"backup CURRENT: {exc}")
                raise
        pending_path = f"{current_path}.{fd.num}"
        try:
            _write_file_synced(pending_path, content)
        except OSError as exc:
            self._log(f"create CURRENT.{fd.num}: {exc}")
            raise
        try:
            os.replace(pending_path, current_path)
        except OSError as exc:
            self._log(f"rename CURRENT.{fd.num}: {exc}")
            raise
        try:
            _sync_dir(self._path)
        except OSError as exc:
            self._log(f"syncDir: {exc}")
            raise

    def set_meta(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        if self._read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            self._set_meta(fd)

    def _try_current(self, name: str) -> _CurrentFile:
        with open(self._join(name), "rb") as f:
            content = f.read()
        fd = None
        if content.endswith(b"\n"):
            fd = parse_name(content[:-1].decode("utf-8", "surrogateescape"))
        if fd is None:
            self._log(f"{name}: corrupted content: {content!r}")
            raise CorruptedError("ldbstore/storage: corrupted or incomplete CURRENT file")
        target = self._join(generate_name(fd))
        try:
            os.stat(target)
        except FileNotFoundError:
            self._log(f"{name}: missing target file: {fd}")
            raise
        return _CurrentFile(name, fd)

    def _try_currents(self, names: list[str]) -> _CurrentFile:
        last_corruption: CorruptedError | None = None
        for name in names:
            try:
                return self._try_current(name)
            except FileNotFoundError:
                continue
            except CorruptedError as exc:
                last_corruption = exc
        if last_corruption is not None:
            raise last_corruption
        raise FileNotFoundError("ldbstore/storage: no valid CURRENT file")

    def get_meta(self) -> FileDesc:
        with self._mu:
            self._check_open()
            names = os.listdir(self._path)

            # Try in order: pending CURRENT.<num> (descending), CURRENT, CURRENT.bak.
            nums = sorted(
                (
                    int(name[8:])
                    for name in names
                    if name.startswith("CURRENT.")
                    and name != "CURRENT.bak"
                    and _PENDING_NUM.fullmatch(name[8:])
                    and _fits_int64(int(name[8:]))
                ),
                reverse=True,
            )
            pend_names = [f"CURRENT.{num}" for num in nums]

            pend_cur: _CurrentFile | None = None
            pend_err: Exception = FileNotFoundError("ldbstore/storage: no valid CURRENT file")
            if pend_names:
                try:
                    pend_cur = self._try_currents(pend_names)
                except (FileNotFoundError, CorruptedError) as exc:
                    pend_err = exc

            cur: _CurrentFile | None = None
            cur_err: Exception = FileNotFoundError("ldbstore/storage: no valid CURRENT file")
            try:
                cur = self._try_currents(["CURRENT", "CURRENT.bak"])
            except (FileNotFoundError, CorruptedError) as exc:
                cur_err = exc

            # A pending file wins unless it is obsolete.
            if pend_cur is not None and (cur is None or pend_cur.fd.num > cur.fd.num):
                cur = pend_cur

            if cur is not None:
                if not self._read_only and (cur.name != "CURRENT" or pend_names):
                    try:
                        self._set_meta(cur.fd)
                    except OSError:
                        pass
                    else:
                        for name in pend_names:
                            try:
                                os.remove(self._join(name))
                            except OSError as exc:
                                self._log(f"remove {name}: {exc}")
                return cur.fd

            if is_corrupted(pend_err):
                raise pend_err
            raise cur_err

    # Files.

    def list(self, file_type: FileType) -> list[FileDesc]:
        with self._mu:
            self._check_open()
            names = os.listdir(self._path)
        result = []
        for name in names:
            fd = parse_name(name)
            if fd is not None and fd.type & file_type:
                result.append(fd)
        return result

    def open(self, fd: FileDesc) -> _FileWrap:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        with self._mu:
            self._check_open()
            try:
                f = open(self._join(generate_name(fd)), "rb")
            except FileNotFoundError:
                if fd.type != FileType.TABLE:
                    raise
                f = open(self._join(generate_old_name(fd)), "rb")
            self._open += 1
            return _FileWrap(f, self, fd)

    def create(self, fd: FileDesc) -> _FileWrap:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        if self._read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            f = open(self._join(generate_name(fd)), "wb")
            self._open += 1
            return _FileWrap(f, self, fd)

    def remove(self, fd: FileDesc) -> None:
        if not file_desc_ok(fd):
            raise InvalidFileError()
        if self._read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            try:
                os.remove(self._join(generate_name(fd)))
            except FileNotFoundError as err:
                if fd.type != FileType.TABLE:
                    self._log(f"remove {fd}: {err}")
                    raise
                try:
                    os.remove(self._join(generate_old_name(fd)))
                except FileNotFoundError:
                    raise err from None
                except OSError as old_err:
                    self._log(f"remove {fd}: {err} (old name)")
                    raise old_err from err
                self._log(f"remove {fd}: {err} (old name)")
            except OSError as err:
                self._log(f"remove {fd}: {err}")
                raise

    def rename(self, old_fd: FileDesc, new_fd: FileDesc) -> None:
        if not file_desc_ok(old_fd) or not file_desc_ok(new_fd):
            raise InvalidFileError()
        if old_fd == new_fd:
            return
        if self._read_only:
            raise ReadOnlyError()
        with self._mu:
            self._check_open()
            os.replace(self._join(generate_name(old_fd)), self._join(generate_name(new_fd)))

    def close(self) -> None:
        with self._mu:
            self._check_open()
            if self._open > 0:
                self._log(f"close: warning, {self._open} files still open")
            self._open = -1
            if self._logw is not None:
                self._logw.close()
                self._logw = None
            self._flock.release()


def open_file(path: str | os.PathLike, read_only: bool = False) -> FileStorage:
    """Open a directory-backed storage, locking the directory."""
    return FileStorage(path, read_only)