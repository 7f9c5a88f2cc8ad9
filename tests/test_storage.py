import pytest

from ldbstore.memstorage import MemStorage
from ldbstore.storage import (
    CorruptedError,
    CountingStorage,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
    Storage,
    StorageError,
    file_desc_ok,
    is_corrupted,
)


@pytest.mark.parametrize(
    "ftype,num,name",
    [
        (FileType.JOURNAL, 100, "000100.log"),
        (FileType.JOURNAL, 0, "000000.log"),
        (FileType.TABLE, 0, "000000.ldb"),
        (FileType.MANIFEST, 2, "MANIFEST-000002"),
        (FileType.MANIFEST, 7, "MANIFEST-000007"),
        (FileType.JOURNAL, 9223372036854775807, "9223372036854775807.log"),
        (FileType.TEMP, 100, "000100.tmp"),
    ],
)
def test_file_desc_str(ftype, num, name):
    assert str(FileDesc(ftype, num)) == name


@pytest.mark.parametrize(
    "ftype,name",
    [
        (FileType.MANIFEST, "manifest"),
        (FileType.JOURNAL, "journal"),
        (FileType.TABLE, "table"),
        (FileType.TEMP, "temp"),
    ],
)
def test_file_type_str(ftype, name):
    assert str(ftype) == name


def test_unknown_file_type_str():
    assert str(FileType(3)) == "<unknown:3>"


def test_all_type_lists_every_type():
    stor = MemStorage()
    fds = [
        FileDesc(FileType.MANIFEST, 1),
        FileDesc(FileType.JOURNAL, 2),
        FileDesc(FileType.TABLE, 3),
        FileDesc(FileType.TEMP, 4),
    ]
    for fd in fds:
        with stor.create(fd):
            pass
    assert set(stor.list(FileType.ALL)) == set(fds)
    for fd in fds:
        assert stor.list(fd.type) == [fd]


def test_zero_file_desc():
    assert FileDesc().is_zero()
    assert FileDesc(FileType(0), 0).is_zero()
    assert not FileDesc(FileType.TABLE, 0).is_zero()
    assert not FileDesc(FileType(0), 5).is_zero()


def test_file_desc_equality_and_hash():
    a = FileDesc(FileType.TABLE, 4)
    b = FileDesc(FileType.TABLE, 4)
    assert a == b
    assert len({a, b}) == 1


@pytest.mark.parametrize(
    "fd,ok",
    [
        (FileDesc(FileType.MANIFEST, 1), True),
        (FileDesc(FileType.JOURNAL, 0), True),
        (FileDesc(FileType.TABLE, 10), True),
        (FileDesc(FileType.TEMP, 3), True),
        (FileDesc(FileType.TABLE, -1), False),
        (FileDesc(FileType(0), 1), False),
        (FileDesc(FileType.ALL, 1), False),
        (FileDesc(), False),
    ],
)
def test_file_desc_ok(fd, ok):
    assert file_desc_ok(fd) is ok


def test_corrupted_error_without_fd_shows_cause():
    err = CorruptedError(ValueError("broken block"))
    assert str(err) == "broken block"
    assert err.fd.is_zero()


def test_corrupted_error_with_fd_shows_file():
    err = CorruptedError("bad data", FileDesc(FileType.TABLE, 7))
    assert str(err) == "bad data [file=000007.ldb]"


def test_is_corrupted():
    assert is_corrupted(CorruptedError("x"))
    assert not is_corrupted(ValueError("x"))
    assert not is_corrupted(None)


def test_storage_is_abstract():
    with pytest.raises(TypeError):
        Storage()


def test_counting_storage_counts_writes_and_reads():
    stor = CountingStorage(MemStorage())
    fd = FileDesc(FileType.TABLE, 1)
    with stor.create(fd) as w:
        w.write(b"hello")
        w.write(b"world!")
        w.sync()
    assert stor.writes() == len(b"hello") + len(b"world!")
    assert stor.reads() == 0
    with stor.open(fd) as r:
        assert r.read(5) == b"hello"
        assert r.read() == b"world!"
    assert stor.reads() == len(b"helloworld!")


def test_counting_storage_readinto_and_seek():
    stor = CountingStorage(MemStorage())
    fd = FileDesc(FileType.JOURNAL, 2)
    with stor.create(fd) as w:
        w.write(b"abcdef")
    with stor.open(fd) as r:
        r.seek(2)
        assert r.tell() == 2
        buf = bytearray(3)
        assert r.readinto(buf) == 3
        assert bytes(buf) == b"cde"
    assert stor.reads() == 3


def test_counting_storage_delegates_metadata():
    inner = MemStorage()
    stor = CountingStorage(inner)
    fd1 = FileDesc(FileType.MANIFEST, 1)
    fd2 = FileDesc(FileType.MANIFEST, 2)
    with stor.create(fd1) as w:
        w.write(b"x")
    stor.set_meta(fd1)
    assert stor.get_meta() == fd1
    assert inner.get_meta() == fd1
    stor.rename(fd1, fd2)
    assert stor.list(FileType.ALL) == [fd2]
    stor.remove(fd2)
    assert inner.list(FileType.ALL) == []


def test_counting_storage_lock_is_shared():
    inner = MemStorage()
    stor = CountingStorage(inner)
    lock = stor.lock()
    with pytest.raises(LockedError):
        inner.lock()
    with pytest.raises(StorageError):
        stor.lock()
    lock.unlock()
    again = inner.lock()
    with pytest.raises(LockedError):
        stor.lock()
    again.unlock()


def test_counting_storage_rejects_invalid_fd():
    stor = CountingStorage(MemStorage())
    with pytest.raises(InvalidFileError):
        stor.set_meta(FileDesc(FileType.TABLE, -1))