"""Session records: the entries of a manifest journal."""

from __future__ import annotations

import enum
import io
from dataclasses import dataclass, field
from typing import BinaryIO

from ldbstore.format import MAX_VARINT_LEN64, put_uvarint
from ldbstore.storage import CorruptedError, FileDesc


class RecordTag(enum.IntEnum):
    """Field tags written to disk; these numbers must not change."""

    COMPARER = 1
    JOURNAL_NUM = 2
    NEXT_FILE_NUM = 3
    SEQ_NUM = 4
    COMP_PTR = 5
    DEL_TABLE = 6
    ADD_TABLE = 7
    # 8 was used for large value refs
    PREV_JOURNAL_NUM = 9


class ManifestCorruptedError(CorruptedError):
    """A manifest record could not be decoded."""

    def __init__(self, field: str, reason: str, fd: FileDesc | None = None) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"ldbstore: manifest corrupted (field '{field}'): {reason}", fd)


@dataclass(frozen=True)
class CompPtr:
    """Compaction pointer for a level."""

    level: int
    ikey: bytes


@dataclass(frozen=True)
class AddedTable:
    """A table added to a level."""

    level: int
    num: int
    size: int
    imin: bytes
    imax: bytes


@dataclass(frozen=True)
class DeletedTable:
    """A table removed from a level."""

    level: int
    num: int


_OVERFLOW = "varint overflows a 64-bit integer"
_INT64_LIMIT = 1 << 63


def _read_uvarint_or_eof(stream: BinaryIO, name: str) -> int | None:
    result = 0
    shift = 0
    for i in range(MAX_VARINT_LEN64):
        chunk = stream.read(1)
        if not chunk:
            if i == 0:
                return None
            raise ManifestCorruptedError(name, "short read")
        byte = chunk[0]
        if byte < 0x80:
            if i == MAX_VARINT_LEN64 - 1 and byte > 1:
                raise ManifestCorruptedError(name, _OVERFLOW)
            return result | (byte << shift)
        result |= (byte & 0x7F) << shift
        shift += 7
    raise ManifestCorruptedError(name, _OVERFLOW)


def _read_uvarint(stream: BinaryIO, name: str) -> int:
    value = _read_uvarint_or_eof(stream, name)
    if value is None:
        raise ManifestCorruptedError(name, "short read")
    return value


def _read_varint(stream: BinaryIO, name: str) -> int:
    value = _read_uvarint(stream, name)
    if value >= _INT64_LIMIT:
        raise ManifestCorruptedError(name, "invalid negative value")
    return value


def _read_bytes(stream: BinaryIO, name: str) -> bytes:
    n = _read_uvarint(stream, name)
    data = stream.read(n)
    if len(data) < n:
        raise ManifestCorruptedError(name, "short read")
    return bytes(data)


@dataclass
class SessionRecord:
    """A set of changes to the database state, as stored in the manifest."""

    comparer: str = ""
    journal_num: int = 0
    prev_journal_num: int = 0
    next_file_num: int = 0
    seq_num: int = 0
    comp_ptrs: list[CompPtr] = field(default_factory=list)
    added_tables: list[AddedTable] = field(default_factory=list)
    deleted_tables: list[DeletedTable] = field(default_factory=list)
    _present: int = field(default=0, init=False, repr=False)

    def has(self, tag: int) -> bool:
        """Return True if the field with the given tag is set."""
        return bool(self._present & (1 << int(tag)))

    def _mark(self, tag: RecordTag) -> None:
        self._present |= 1 << tag

    def _unmark(self, tag: RecordTag) -> None:
        self._present &= ~(1 << tag)

    def set_comparer(self, name: str) -> None:
        self._mark(RecordTag.COMPARER)
        self.comparer = name

    def set_journal_num(self, num: int) -> None:
        self._mark(RecordTag.JOURNAL_NUM)
        self.journal_num = num

    def set_prev_journal_num(self, num: int) -> None:
        self._mark(RecordTag.PREV_JOURNAL_NUM)
        self.prev_journal_num = num

    def set_next_file_num(self, num: int) -> None:
        self._mark(RecordTag.NEXT_FILE_NUM)
        self.next_file_num = num

    def set_seq_num(self, num: int) -> None:
        self._mark(RecordTag.SEQ_NUM)
        self.seq_num = num

    def add_comp_ptr(self, level: int, ikey: bytes) -> None:
        self._mark(RecordTag.COMP_PTR)
        self.comp_ptrs.append(CompPtr(level, bytes(ikey)))

    def reset_comp_ptrs(self) -> None:
        self._unmark(RecordTag.COMP_PTR)
        self.comp_ptrs.clear()

    def add_table(self, level: int, num: int, size: int, imin: bytes, imax: bytes) -> None:
        self._mark(RecordTag.ADD_TABLE)
        self.added_tables.append(AddedTable(level, num, size, bytes(imin), bytes(imax)))

    def reset_added_tables(self) -> None:
        self._unmark(RecordTag.ADD_TABLE)
        self.added_tables.clear()

    def del_table(self, level: int, num: int) -> None:
        self._mark(RecordTag.DEL_TABLE)
        self.deleted_tables.append(DeletedTable(level, num))

    def reset_deleted_tables(self) -> None:
        self._unmark(RecordTag.DEL_TABLE)
        self.deleted_tables.clear()

    def encode(self) -> bytes:
        """Serialize the set fields; raises ValueError on a negative number."""
        out = bytearray()

        def put(value: int) -> None:
            out.extend(put_uvarint(value))

        def put_int(value: int) -> None:
            if value < 0:
                raise ValueError("invalid negative value")
            put(value)

        def put_bytes(data: bytes) -> None:
            put(len(data))
            out.extend(data)

        if self.has(RecordTag.COMPARER):
            put(RecordTag.COMPARER)
            put_bytes(self.comparer.encode("utf-8", "surrogateescape"))
        if self.has(RecordTag.JOURNAL_NUM):
            put(RecordTag.JOURNAL_NUM)
            put_int(self.journal_num)
        if self.has(RecordTag.NEXT_FILE_NUM):
            put(RecordTag.NEXT_FILE_NUM)
            put_int(self.next_file_num)
        if self.has(RecordTag.SEQ_NUM):
            put(RecordTag.SEQ_NUM)
            put(self.seq_num)
        for ptr in self.comp_ptrs:
            put(RecordTag.COMP_PTR)
            put(ptr.level)
            put_bytes(ptr.ikey)
        for deleted in self.deleted_tables:
            put(RecordTag.DEL_TABLE)
            put(deleted.level)
            put_int(deleted.num)
        for added in self.added_tables:
            put(RecordTag.ADD_TABLE)
            put(added.level)
            put_int(added.num)
            put_int(added.size)
            put_bytes(added.imin)
            put_bytes(added.imax)
        return bytes(out)

    def decode(self, data: bytes | BinaryIO) -> None:
        """Read fields from bytes or a binary stream into this record.

        Raises ManifestCorruptedError when the data is malformed.
        """
        if isinstance(data, (bytes, bytearray, memoryview)):
            stream: BinaryIO = io.BytesIO(bytes(data))
        else:
            stream = data
        while True:
            tag = _read_uvarint_or_eof(stream, "field-header")
            if tag is None:
                return
            if tag == RecordTag.COMPARER:
                name = _read_bytes(stream, "comparer")
                self.set_comparer(name.decode("utf-8", "surrogateescape"))
            elif tag == RecordTag.JOURNAL_NUM:
                self.set_journal_num(_read_varint(stream, "journal-num"))
            elif tag == RecordTag.PREV_JOURNAL_NUM:
                self.set_prev_journal_num(_read_varint(stream, "prev-journal-num"))
            elif tag == RecordTag.NEXT_FILE_NUM:
                self.set_next_file_num(_read_varint(stream, "next-file-num"))
            elif tag == RecordTag.SEQ_NUM:
                self.set_seq_num(_read_uvarint(stream, "seq-num"))
            elif tag == RecordTag.COMP_PTR:
                level = _read_uvarint(stream, "comp-ptr.level")
                ikey = _read_bytes(stream, "comp-ptr.ikey")
                self.add_comp_ptr(level, ikey)
            elif tag == RecordTag.ADD_TABLE:
                level = _read_uvarint(stream, "add-table.level")
                num = _read_varint(stream, "add-table.num")
                size = _read_varint(stream, "add-table.size")
                imin = _read_bytes(stream, "add-table.imin")
                imax = _read_bytes(stream, "add-table.imax")
                self.add_table(level, num, size, imin, imax)
            elif tag == RecordTag.DEL_TABLE:
                level = _read_uvarint(stream, "del-table.level")
                num = _read_varint(stream, "del-table.num")
                self.del_table(level, num)