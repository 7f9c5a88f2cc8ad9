import pytest

from ldbstore.memstorage import MemStorage
from ldbstore.storage import (
    FileDesc,
    FileOpenError,
    FileType,
    InvalidFileError,
    LockedError,
    file_desc_ok,
)


def test_mem_storage_lock():
    m = MemStorage()
    lock = m.lock()
    with pytest.raises(LockedError):
        m.lock()
    lock.unlock()
    lock2 = m.lock()
    with pytest.raises(LockedError):
        m.lock()
    lock2.unlock()


def test_stale_lock_unlock_does_not_release_new_lock():
    m = MemStorage()
    lock = m.lock()
    lock.unlock()
    current = m.lock()
    lock.unlock()
    with pytest.raises(LockedError):
        m.lock()
    current.unlock()


def test_mem_storage_files():
    m = MemStorage()
    fd = FileDesc(FileType.TABLE, 1)
    w = m.create(fd)
    w.write(b"abc")
    w.close()
    assert len(m.list(FileType.ALL)) == 1

    r = m.open(fd)
    assert r.read() == b"abc"
    r.close()

    held = m.open(fd)
    with pytest.raises(FileOpenError):
        m.open(fd)
    assert held.read() == b"abc"

    m.remove(fd)
    assert m.list(FileType.ALL) == []
    with pytest.raises(FileNotFoundError):
        m.open(fd)


def test_mem_storage_rename():
    fd1 = FileDesc(FileType.TABLE, 1)
    fd2 = FileDesc(FileType.TABLE, 2)
    m = MemStorage()
    with m.create(fd1) as w:
        w.write(b"abc")

    with m.open(fd1) as r:
        assert r.read() == b"abc"

    assert all(file_desc_ok(fd) for fd in m.list(FileType.ALL))

    m.rename(fd1, fd2)

    with m.open(fd2) as r:
        assert r.read() == b"abc"

    fds = m.list(FileType.ALL)
    assert fds == [fd2]
    assert all(file_desc_ok(fd) for fd in fds)
    with pytest.raises(FileNotFoundError):
        m.open(fd1)


def test_rename_same_fd_is_noop():
    m = MemStorage()
    fd = FileDesc(FileType.TABLE, 3)
    with m.create(fd) as w:
        w.write(b"z")
    m.rename(fd, fd)
    assert m.list(FileType.ALL) == [fd]


def test_rename_open_file_fails():
    m = MemStorage()
    fd1 = FileDesc(FileType.TABLE, 1)
    fd2 = FileDesc(FileType.TABLE, 2)
    w = m.create(fd1)
    with pytest.raises(FileOpenError):
        m.rename(fd1, fd2)
    w.close()
    target = m.create(fd2)
    with pytest.raises(FileOpenError):
        m.rename(fd1, fd2)
    target.close()
    m.rename(fd1, fd2)
    assert m.list(FileType.ALL) == [fd2]


def test_rename_missing_file():
    m = MemStorage()
    with pytest.raises(FileNotFoundError):
        m.rename(FileDesc(FileType.TABLE, 1), FileDesc(FileType.TABLE, 2))


def test_meta_roundtrip():
    m = MemStorage()
    with pytest.raises(FileNotFoundError):
        m.get_meta()
    fd = FileDesc(FileType.MANIFEST, 5)
    m.set_meta(fd)
    assert m.get_meta() == fd


def test_invalid_fd_rejected():
    m = MemStorage()
    bad = FileDesc(FileType.TABLE, -1)
    for op in (m.set_meta, m.open, m.create, m.remove):
        with pytest.raises(InvalidFileError):
            op(bad)
    with pytest.raises(InvalidFileError):
        m.rename(bad, FileDesc(FileType.TABLE, 1))


def test_create_truncates_and_rejects_open():
    m = MemStorage()
    fd = FileDesc(FileType.JOURNAL, 4)
    with m.create(fd) as w:
        w.write(b"long content")
    reader = m.open(fd)
    with pytest.raises(FileOpenError):
        m.create(fd)
    reader.close()
    with m.create(fd) as w:
        w.write(b"new")
    with m.open(fd) as r:
        assert r.read() == b"new"


def test_writer_open_blocks_reader():
    m = MemStorage()
    fd = FileDesc(FileType.TEMP, 9)
    w = m.create(fd)
    with pytest.raises(FileOpenError):
        m.open(fd)
    w.close()
    w.close()
    with m.open(fd) as r:
        assert r.read() == b""


def test_reader_sees_snapshot():
    m = MemStorage()
    fd = FileDesc(FileType.TABLE, 8)
    with m.create(fd) as w:
        w.write(b"abcdef")
    with m.open(fd) as r:
        r.seek(3)
        assert r.read() == b"def"
        r.seek(0)
        assert r.read(2) == b"ab"


def test_list_filters_by_type():
    m = MemStorage()
    table = FileDesc(FileType.TABLE, 1)
    journal = FileDesc(FileType.JOURNAL, 2)
    manifest = FileDesc(FileType.MANIFEST, 3)
    for fd in (table, journal, manifest):
        m.create(fd).close()
    assert m.list(FileType.TABLE) == [table]
    assert sorted(m.list(FileType.TABLE | FileType.JOURNAL), key=lambda f: f.num) == [
        table,
        journal,
    ]
    assert len(m.list(FileType.ALL)) == 3
    assert m.list(FileType.TEMP) == []


def test_remove_missing_file():
    m = MemStorage()
    with pytest.raises(FileNotFoundError):
        m.remove(FileDesc(FileType.TABLE, 1))