import contextlib
import re

import pytest

from ldbstore.filestorage import (
    LOG_SIZE_THRESHOLD,
    FileStorage,
    ReadOnlyError,
    generate_name,
    generate_old_name,
    open_file,
    parse_name,
)
from ldbstore.storage import (
    ClosedError,
    CorruptedError,
    FileDesc,
    FileType,
    InvalidFileError,
    LockedError,
)

NAME_CASES = [
    ([], "000100.log", FileType.JOURNAL, 100),
    ([], "000000.log", FileType.JOURNAL, 0),
    (["000000.sst"], "000000.ldb", FileType.TABLE, 0),
    ([], "MANIFEST-000002", FileType.MANIFEST, 2),
    ([], "MANIFEST-000007", FileType.MANIFEST, 7),
    ([], "9223372036854775807.log", FileType.JOURNAL, 9223372036854775807),
    ([], "000100.tmp", FileType.TEMP, 100),
]

INVALID_NAMES = [
    "",
    "foo",
    "foo-dx-100.log",
    ".log",
    "",
    "manifest",
    "CURREN",
    "CURRENTX",
    "MANIFES",
    "MANIFEST",
    "MANIFEST-",
    "XMANIFEST-3",
    "MANIFEST-3x",
    "LOC",
    "LOCKx",
    "LO",
    "LOGx",
    "18446744073709551616.log",
    "184467440737095516150.log",
    "100",
    "100.",
    "100.lop",
]


@pytest.fixture
def db_dir(tmp_path):
    return tmp_path / "db"


@pytest.fixture
def storage(db_dir):
    fs = open_file(db_dir, False)
    yield fs
    with contextlib.suppress(ClosedError):
        fs.close()


@pytest.mark.parametrize("old_names, name, ftype, num", NAME_CASES)
def test_generate_name(old_names, name, ftype, num):
    assert generate_name(FileDesc(ftype, num)) == name


@pytest.mark.parametrize("old_names, name, ftype, num", NAME_CASES)
def test_parse_name(old_names, name, ftype, num):
    for candidate in [name, *old_names]:
        assert parse_name(candidate) == FileDesc(ftype, num)


@pytest.mark.parametrize("name", INVALID_NAMES)
def test_invalid_names(name):
    assert parse_name(name) is None


def test_generate_name_rejects_unknown_type():
    with pytest.raises(ValueError):
        generate_name(FileDesc(FileType(0), 1))


def test_generate_old_name():
    assert generate_old_name(FileDesc(FileType.TABLE, 5)) == "000005.sst"
    assert generate_old_name(FileDesc(FileType.JOURNAL, 5)) == "000005.log"


@pytest.mark.parametrize("num", [1, 7, 123456, 1 << 40, (1 << 63) - 1])
def test_meta_set_get(storage, num):
    fd = FileDesc(FileType.MANIFEST, num)
    with storage.create(fd) as w:
        w.write(b"TEST")
    storage.set_meta(fd)
    assert storage.get_meta() == fd


def _write_currents(fs, root, currents):
    for num, kind, manifest, corrupt in currents:
        name = {"current": "CURRENT", "backup": "CURRENT.bak"}.get(kind, f"CURRENT.{num}")
        fd = FileDesc(FileType.MANIFEST, num)
        content = generate_name(fd) + "\n"
        if corrupt:
            content = content[:-2]
        (root / name).write_bytes(content.encode())
        if manifest:
            with fs.create(fd) as w:
                w.write(b"TEST")


META_CASES = [
    ([(2, "backup", True, False), (1, "current", False, False)], 2),
    ([(2, "backup", True, False), (1, "current", True, False)], 1),
    ([(2, "pending", True, False), (3, "pending", True, False), (4, "current", True, False)], 4),
    ([(2, "pending", True, False), (3, "pending", True, False), (4, "current", True, True)], 3),
    (
        [
            (2, "pending", True, False),
            (3, "pending", True, False),
            (5, "current", True, True),
            (4, "backup", True, False),
        ],
        4,
    ),
    ([(4, "pending", True, False), (3, "pending", True, False), (2, "current", True, False)], 4),
    ([(4, "pending", True, True), (3, "pending", True, False), (2, "current", True, False)], 3),
    ([(4, "pending", True, True), (3, "pending", True, True), (2, "current", True, False)], 2),
    ([(4, "pending", False, False), (3, "pending", True, False), (2, "current", True, False)], 3),
    (
        [
            (4, "pending", False, False),
            (3, "pending", True, False),
            (6, "current", False, False),
            (5, "backup", True, False),
        ],
        5,
    ),
]


@pytest.mark.parametrize("currents, expect", META_CASES)
def test_meta_recovery(storage, db_dir, currents, expect):
    _write_currents(storage, db_dir, currents)
    fd = storage.get_meta()
    assert fd == FileDesc(FileType.MANIFEST, expect)
    rogue = [
        p.name
        for p in db_dir.iterdir()
        if p.name.startswith("CURRENT") and p.name not in ("CURRENT", "CURRENT.bak")
    ]
    assert rogue == []
    assert storage.get_meta() == fd


def test_meta_not_exist(storage, db_dir):
    _write_currents(
        storage,
        db_dir,
        [
            (4, "pending", False, False),
            (3, "pending", False, False),
            (6, "current", False, False),
            (5, "backup", False, False),
        ],
    )
    with pytest.raises(FileNotFoundError):
        storage.get_meta()


def test_meta_corrupt(storage, db_dir):
    _write_currents(
        storage,
        db_dir,
        [
            (4, "pending", False, True),
            (3, "pending", False, False),
            (6, "current", False, False),
            (5, "backup", False, False),
        ],
    )
    with pytest.raises(CorruptedError):
        storage.get_meta()


def test_meta_empty_directory(storage):
    with pytest.raises(FileNotFoundError):
        storage.get_meta()


def test_set_meta_rejects_invalid_fd(storage):
    with pytest.raises(InvalidFileError):
        storage.set_meta(FileDesc(FileType(0), 3))


def test_set_meta_keeps_backup(storage, db_dir):
    for num in (1, 2):
        fd = FileDesc(FileType.MANIFEST, num)
        with storage.create(fd) as w:
            w.write(b"TEST")
        storage.set_meta(fd)
    assert storage.get_meta() == FileDesc(FileType.MANIFEST, 2)
    assert (db_dir / "CURRENT").read_bytes() == b"MANIFEST-000002\n"
    assert (db_dir / "CURRENT.bak").read_bytes() == b"MANIFEST-000001\n"


def test_locking(db_dir):
    p1 = open_file(db_dir, False)
    with pytest.raises(LockedError):
        open_file(db_dir, False)
    p1.close()

    p3 = open_file(db_dir, False)
    try:
        lock = p3.lock()
        with pytest.raises(LockedError):
            p3.lock()
        lock.unlock()
        p3.lock()
        with pytest.raises(LockedError):
            p3.lock()
    finally:
        p3.close()


def test_read_only_locking(db_dir):
    p1 = open_file(db_dir, False)
    with pytest.raises(LockedError):
        open_file(db_dir, True)
    p1.close()

    p3 = open_file(db_dir, True)
    p4 = open_file(db_dir, True)
    try:
        with pytest.raises(LockedError):
            open_file(db_dir, False)
    finally:
        p3.close()
        p4.close()
    p5 = open_file(db_dir, False)
    p5.close()
    with pytest.raises(ClosedError):
        p5.close()


def test_read_only_rejects_writes(db_dir):
    open_file(db_dir, False).close()
    ro = FileStorage(db_dir, True)
    try:
        fd = FileDesc(FileType.TABLE, 1)
        with pytest.raises(ReadOnlyError):
            ro.create(fd)
        with pytest.raises(ReadOnlyError):
            ro.remove(fd)
        with pytest.raises(ReadOnlyError):
            ro.set_meta(FileDesc(FileType.MANIFEST, 1))
    finally:
        ro.close()


def test_read_only_missing_directory(db_dir):
    with pytest.raises(FileNotFoundError):
        open_file(db_dir, True)
    assert not db_dir.exists()


def test_open_regular_file(tmp_path):
    path = tmp_path / "plain"
    path.write_bytes(b"x")
    with pytest.raises(NotADirectoryError):
        open_file(path, False)


def test_create_open_read(storage):
    fd = FileDesc(FileType.TABLE, 1)
    with storage.create(fd) as w:
        assert w.write(b"abc") == 3
        w.sync()
    with storage.open(fd) as r:
        assert r.read() == b"abc"


def test_open_falls_back_to_old_name(storage, db_dir):
    (db_dir / "000005.sst").write_bytes(b"old")
    with storage.open(FileDesc(FileType.TABLE, 5)) as r:
        assert r.read() == b"old"


def test_open_missing(storage):
    with pytest.raises(FileNotFoundError):
        storage.open(FileDesc(FileType.JOURNAL, 9))


def test_list(storage, db_dir):
    for fd in (
        FileDesc(FileType.TABLE, 1),
        FileDesc(FileType.JOURNAL, 2),
        FileDesc(FileType.MANIFEST, 3),
    ):
        with storage.create(fd):
            pass
    (db_dir / "000009.sst").write_bytes(b"")
    assert set(storage.list(FileType.ALL)) == {
        FileDesc(FileType.TABLE, 1),
        FileDesc(FileType.JOURNAL, 2),
        FileDesc(FileType.MANIFEST, 3),
        FileDesc(FileType.TABLE, 9),
    }
    assert set(storage.list(FileType.TABLE)) == {
        FileDesc(FileType.TABLE, 1),
        FileDesc(FileType.TABLE, 9),
    }


def test_remove(storage, db_dir):
    fd = FileDesc(FileType.JOURNAL, 4)
    with storage.create(fd):
        pass
    storage.remove(fd)
    assert storage.list(FileType.ALL) == []
    with pytest.raises(FileNotFoundError):
        storage.remove(fd)


def test_remove_old_name(storage, db_dir):
    (db_dir / "000004.sst").write_bytes(b"x")
    assert storage.list(FileType.ALL) == [FileDesc(FileType.TABLE, 4)]
    storage.remove(FileDesc(FileType.TABLE, 4))
    assert storage.list(FileType.ALL) == []
    assert not (db_dir / "000004.sst").exists()


def test_rename(storage):
    fd1 = FileDesc(FileType.TABLE, 1)
    fd2 = FileDesc(FileType.TABLE, 2)
    with storage.create(fd1) as w:
        w.write(b"abc")
    storage.rename(fd1, fd2)
    with storage.open(fd2) as r:
        assert r.read() == b"abc"
    with pytest.raises(FileNotFoundError):
        storage.open(fd1)


def test_rename_invalid(storage):
    with pytest.raises(InvalidFileError):
        storage.rename(FileDesc(FileType.TABLE, -1), FileDesc(FileType.TABLE, 2))


def test_file_close_twice(storage):
    w = storage.create(FileDesc(FileType.TEMP, 1))
    w.close()
    with pytest.raises(ClosedError):
        w.close()


def test_closed_storage(storage):
    storage.close()
    with pytest.raises(ClosedError):
        storage.list(FileType.ALL)
    with pytest.raises(ClosedError):
        storage.lock()
    with pytest.raises(ClosedError):
        storage.get_meta()
    with pytest.raises(ClosedError):
        storage.close()


def test_log_written(storage, db_dir):
    storage.log("hello world")
    assert storage.list(FileType.ALL) == []
    storage.close()
    text = (db_dir / "LOG").read_text()
    assert text.startswith("=============== ")
    assert re.search(r"^\d{2}:\d{2}:\d{2}\.\d{6} hello world$", text, re.MULTILINE)


def test_log_rotation(storage, db_dir):
    storage.log("x" * (LOG_SIZE_THRESHOLD + 1))
    storage.log("after")
    assert storage.list(FileType.ALL) == []
    assert parse_name("LOG.old") is None
    storage.close()
    assert (db_dir / "LOG.old").stat().st_size > LOG_SIZE_THRESHOLD
    text = (db_dir / "LOG").read_text()
    assert "after" in text
    assert len(text) < 1000