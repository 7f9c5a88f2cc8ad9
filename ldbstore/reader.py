"""Table reader: random access and iteration over sorted-table files."""

from __future__ import annotations

import enum
import struct
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from ldbstore.block import Block, BlockIterator
from ldbstore.format import (
    BLOCK_TRAILER_LEN,
    FOOTER_LEN,
    MAGIC,
    BlockHandle,
    Compression,
    IteratorReleasedError,
    KeyRange,
    NotFoundError,
    ReaderReleasedError,
    TableCorruptedError,
    TableError,
    TableOptions,
    crc32c,
    read_uvarint,
)
from ldbstore.snappy import SnappyError, decompress
from ldbstore.storage import CorruptedError, FileDesc

_U32 = struct.Struct("<I")
_U32_PAIR = struct.Struct("<II")


def _decode_handle(data: bytes, pos: int = 0) -> tuple[BlockHandle, int] | None:
    """Decode a block handle at pos; return it with its encoded size, or None."""
    try:
        offset, n = read_uvarint(data, pos)
        length, m = read_uvarint(data, pos + n)
    except (ValueError, IndexError):
        return None
    if n == 0 or m == 0:
        return None
    return BlockHandle(offset, length), n + m


def _is_corrupted(err: BaseException) -> bool:
    return isinstance(err, (TableCorruptedError, CorruptedError))


@dataclass
class _FilterBlock:
    data: bytes
    o_offset: int
    base_lg: int
    filters_num: int

    def contains(self, filt: Any, offset: int, key: bytes) -> bool:
        i = offset >> self.base_lg
        if i < self.filters_num:
            n, m = _U32_PAIR.unpack_from(self.data, self.o_offset + i * 4)
            if n < m <= self.o_offset:
                return bool(filt.contains(self.data[n:m], key))
            if n == m:
                return False
        return True


class _Dir(enum.IntEnum):
    RELEASED = -1
    SOI = 0
    EOI = 1
    BACKWARD = 2
    FORWARD = 3


class TableIterator:
    """Bidirectional iterator over a table: an index block walking its data blocks.

    Corrupted data blocks are skipped unless the reader is strict; any other
    failure stops the iterator and is reported by ``error()``.
    """

    def __init__(
        self,
        reader: TableReader,
        index: BlockIterator | None,
        key_range: KeyRange | None = None,
        strict: bool = False,
        error: Exception | None = None,
    ) -> None:
        self._reader = reader
        self._index = index
        self._range = key_range
        self._strict = strict
        self._data: BlockIterator | None = None
        self._data_err: Exception | None = None
        self._err = error
        self._dir = _Dir.SOI

    def _usable(self) -> bool:
        if self._err is not None:
            return False
        if self._dir == _Dir.RELEASED:
            self._err = IteratorReleasedError()
            return False
        return True

    def _clear_data(self) -> None:
        if self._data is not None:
            self._data.release()
        self._data = None
        self._data_err = None

    def _set_data(self) -> None:
        self._clear_data()
        value = self._index.value()
        if value is None:
            return
        decoded = _decode_handle(value)
        if decoded is None:
            self._data_err = self._reader._corrupted_bh(
                self._reader.index_handle, "bad data block handle"
            )
            return
        key_range = None
        if self._range is not None and (self._index._is_first() or self._index._is_last()):
            key_range = self._range
        try:
            self._data = self._reader._data_iterator(decoded[0], key_range)
        except (TableCorruptedError, TableError, ReaderReleasedError, OSError) as exc:
            self._data_err = exc

    def _data_failed(self) -> bool:
        err = self._data_err if self._data is None else self._data.error()
        if err is None:
            return False
        if self._strict or not _is_corrupted(err):
            self._err = err
            return True
        return False

    def _index_failed(self) -> None:
        err = self._index.error()
        if err is not None:
            self._err = err

    def _forward(self, ok: bool) -> bool:
        self._dir = _Dir.FORWARD
        while not ok:
            if self._data_failed():
                return False
            if not self._index.next():
                self._index_failed()
                self._clear_data()
                self._dir = _Dir.EOI
                return False
            self._set_data()
            ok = self._data is not None and self._data.first()
        return True

    def _backward(self, ok: bool) -> bool:
        self._dir = _Dir.BACKWARD
        while not ok:
            if self._data_failed():
                return False
            if not self._index.prev():
                self._index_failed()
                self._clear_data()
                self._dir = _Dir.SOI
                return False
            self._set_data()
            ok = self._data is not None and self._data.last()
        return True

    def first(self) -> bool:
        """Move to the first entry."""
        if not self._usable():
            return False
        self._clear_data()
        if not self._index.first():
            self._index_failed()
            self._dir = _Dir.EOI
            return False
        self._set_data()
        return self._forward(self._data is not None and self._data.first())

    def last(self) -> bool:
        """Move to the last entry."""
        if not self._usable():
            return False
        self._clear_data()
        if not self._index.last():
            self._index_failed()
            self._dir = _Dir.SOI
            return False
        self._set_data()
        return self._backward(self._data is not None and self._data.last())

    def seek(self, key: bytes) -> bool:
        """Move to the first entry whose key is greater than or equal to key."""
        if not self._usable():
            return False
        key = bytes(key)
        self._clear_data()
        if not self._index.seek(key):
            self._index_failed()
            self._dir = _Dir.EOI
            return False
        self._set_data()
        return self._forward(self._data is not None and self._data.seek(key))

    def next(self) -> bool:
        """Move to the next entry."""
        if self._dir == _Dir.EOI or not self._usable():
            return False
        if self._dir == _Dir.SOI:
            return self.first()
        return self._forward(self._data is not None and self._data.next())

    def prev(self) -> bool:
        """Move to the previous entry."""
        if self._dir == _Dir.SOI or not self._usable():
            return False
        if self._dir == _Dir.EOI:
            return self.last()
        return self._backward(self._data is not None and self._data.prev())

    def valid(self) -> bool:
        """True if positioned on an entry."""
        return (
            self._err is None
            and self._dir in (_Dir.FORWARD, _Dir.BACKWARD)
            and self._data is not None
            and self._data.valid()
        )

    def key(self) -> bytes | None:
        """Key of the current entry, or None when not positioned on one."""
        if not self.valid():
            return None
        return self._data.key()

    def value(self) -> bytes | None:
        """Value of the current entry, or None when not positioned on one."""
        if not self.valid():
            return None
        return self._data.value()

    def error(self) -> Exception | None:
        """The error met so far, if any."""
        return self._err

    def release(self) -> None:
        """Release the iterator; later use reports IteratorReleasedError."""
        if self._dir == _Dir.RELEASED:
            return
        self._clear_data()
        if self._index is not None:
            self._index.release()
            self._index = None
        self._dir = _Dir.RELEASED

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs from the first entry; raise any error met."""
        ok = self.first()
        while ok:
            yield self._data.key(), self._data.value() or b""
            ok = self.next()
        if self._err is not None:
            raise self._err

    def __enter__(self) -> TableIterator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class TableReader:
    """Reads a table from bytes or a seekable binary stream of the given size.

    A corrupted table does not fail construction; the corruption is raised by
    every later operation instead.
    """

    def __init__(
        self,
        source: Any,
        size: int,
        fd: FileDesc | None = None,
        options: TableOptions | None = None,
    ) -> None:
        if source is None:
            raise TableError("ldbstore/table: nil file")
        options = options if options is not None else TableOptions()
        self._mu = threading.RLock()
        self._source = source
        self._fd = fd
        self._options = options
        self._cmp = options.comparer
        self._filter: Any = None
        self._verify = bool(getattr(options, "verify_checksums", True))
        self._strict = bool(getattr(options, "strict_reader", False))
        self._err: Exception | None = None
        self.data_end = 0
        self.meta_handle = BlockHandle()
        self.index_handle = BlockHandle()
        self.filter_handle = BlockHandle()
        self._index_block: Block | None = None
        self._filter_block: _FilterBlock | None = None
        self._open(size)

    # Errors.

    def _block_kind(self, bh: BlockHandle) -> str:
        if bh.offset == self.meta_handle.offset:
            return "meta-block"
        if bh.offset == self.index_handle.offset:
            return "index-block"
        if bh.offset == self.filter_handle.offset and self.filter_handle.length > 0:
            return "filter-block"
        return "data-block"

    def _corrupted(self, pos: int, size: int, kind: str, reason: str) -> TableCorruptedError:
        return TableCorruptedError(reason, pos=pos, size=size, kind=kind, fd=self._fd)

    def _corrupted_bh(self, bh: BlockHandle, reason: str) -> TableCorruptedError:
        return self._corrupted(bh.offset, bh.length, self._block_kind(bh), reason)

    # Raw access.

    def _read_at(self, offset: int, n: int) -> bytes:
        source = self._source
        if isinstance(source, (bytes, bytearray, memoryview)):
            return bytes(source[offset : offset + n])
        source.seek(offset)
        return bytes(source.read(n))

    def _read_raw_block(self, bh: BlockHandle, verify: bool) -> bytes:
        need = bh.length + BLOCK_TRAILER_LEN
        data = self._read_at(bh.offset, need)
        if len(data) < need:
            raise self._corrupted_bh(bh, "short read")
        if verify:
            n = bh.length + 1
            want = _U32.unpack_from(data, n)[0]
            got = crc32c(data[:n])
            if want != got:
                raise self._corrupted_bh(bh, f"checksum mismatch, want={want:#x} got={got:#x}")
        block_type = data[bh.length]
        body = data[: bh.length]
        if block_type == Compression.NONE:
            return body
        if block_type == Compression.SNAPPY:
            try:
                return decompress(body)
            except SnappyError as exc:
                raise self._corrupted_bh(bh, str(exc)) from exc
        raise self._corrupted_bh(bh, f"unknown compression type {block_type:#x}")

    def _read_block(self, bh: BlockHandle, verify: bool) -> Block:
        data = self._read_raw_block(bh, verify)
        if len(data) < 4:
            raise self._corrupted_bh(bh, "block too short")
        restarts = _U32.unpack_from(data, len(data) - 4)[0]
        if (restarts + 1) * 4 > len(data):
            raise self._corrupted_bh(bh, "bad restart points length")
        block = Block(data, bh)
        block.comparer = self._cmp
        block.fd = self._fd
        block.kind = self._block_kind(bh)
        return block

    def _read_filter_block(self, bh: BlockHandle) -> _FilterBlock:
        data = self._read_raw_block(bh, True)
        n = len(data)
        if n < 5:
            raise self._corrupted_bh(bh, "too short")
        m = n - 5
        o_offset = _U32.unpack_from(data, m)[0]
        if o_offset > m:
            raise self._corrupted_bh(bh, "invalid data-offsets offset")
        return _FilterBlock(data, o_offset, data[n - 1], (m - o_offset) // 4)

    # Opening.

    def _find_filter(self, name: str) -> Any:
        primary = self._options.filter
        if primary is not None and primary.name == name:
            return primary
        for alt in getattr(self._options, "alt_filters", None) or ():
            if alt.name == name:
                return alt
        return None

    def _open(self, size: int) -> None:
        if size < FOOTER_LEN:
            self._err = self._corrupted(0, size, "table", "too small")
            return
        footer_pos = size - FOOTER_LEN
        footer = self._read_at(footer_pos, FOOTER_LEN)
        if len(footer) < FOOTER_LEN or footer[FOOTER_LEN - len(MAGIC) :] != MAGIC:
            self._err = self._corrupted(footer_pos, FOOTER_LEN, "table-footer", "bad magic number")
            return
        decoded = _decode_handle(footer, 0)
        if decoded is None:
            self._err = self._corrupted(
                footer_pos, FOOTER_LEN, "table-footer", "bad metaindex block handle"
            )
            return
        self.meta_handle, n = decoded
        decoded = _decode_handle(footer, n)
        if decoded is None:
            self._err = self._corrupted(
                footer_pos, FOOTER_LEN, "table-footer", "bad index block handle"
            )
            return
        self.index_handle = decoded[0]

        try:
            meta = self._read_block(self.meta_handle, True)
        except TableCorruptedError as exc:
            self._err = exc
            return
        self.data_end = self.meta_handle.offset

        meta_iter = BlockIterator(meta, None, True)
        while meta_iter.next():
            key = meta_iter.key()
            if not key.startswith(b"filter."):
                continue
            filt = self._find_filter(key[7:].decode("utf-8", "surrogateescape"))
            if filt is None:
                continue
            handle = _decode_handle(meta_iter.value())
            if handle is None:
                continue
            self._filter = filt
            self.filter_handle = handle[0]
            self.data_end = self.filter_handle.offset
            break
        meta_iter.release()

        try:
            self._index_block = self._read_block(self.index_handle, True)
        except TableCorruptedError as exc:
            self._err = exc
            return
        if self._filter is not None:
            try:
                self._filter_block = self._read_filter_block(self.filter_handle)
            except TableCorruptedError:
                # Work without the filter then.
                self._filter = None

    # Public interface.

    def _check(self) -> None:
        if self._err is not None:
            raise self._err

    def _index_handle_of(self, value: bytes | None) -> BlockHandle:
        decoded = _decode_handle(value or b"")
        if decoded is None:
            self._err = self._corrupted_bh(self.index_handle, "bad data block handle")
            raise self._err
        return decoded[0]

    def _data_iterator(self, bh: BlockHandle, key_range: KeyRange | None) -> BlockIterator:
        with self._mu:
            self._check()
            block = self._read_block(bh, self._verify)
        return BlockIterator(block, key_range, False)

    def index_block(self) -> Block:
        """Read and return the index block."""
        with self._mu:
            self._check()
            return self._read_block(self.index_handle, True)

    def iterator(self, key_range: KeyRange | None = None) -> TableIterator:
        """Return an iterator over the table, limited to key_range if given."""
        with self._mu:
            if self._err is not None:
                return TableIterator(self, None, key_range, self._strict, error=self._err)
            index = BlockIterator(self._index_block, key_range, True)
            return TableIterator(self, index, key_range, self._strict)

    def _find(self, key: bytes, filtered: bool, no_value: bool) -> tuple[bytes, bytes | None]:
        with self._mu:
            self._check()
            key = bytes(key)
            index = BlockIterator(self._index_block, None, True)
            try:
                if not index.seek(key):
                    raise index.error() or NotFoundError()
                handle = self._index_handle_of(index.value())
                # The filter is only meaningful for exact matches.
                if filtered and self._filter is not None and self._filter_block is not None:
                    if not self._filter_block.contains(self._filter, handle.offset, key):
                        raise NotFoundError()
                data = self._data_iterator(handle, None)
                if not data.seek(key):
                    err = data.error()
                    data.release()
                    if err is not None:
                        raise err
                    # The nearest greater key starts the next block.
                    if not index.next():
                        raise index.error() or NotFoundError()
                    handle = self._index_handle_of(index.value())
                    data = self._data_iterator(handle, None)
                    if not data.next():
                        err = data.error()
                        data.release()
                        raise err or NotFoundError()
                rkey = data.key()
                value = None if no_value else data.value()
                data.release()
                return rkey, value
            finally:
                index.release()

    def find(self, key: bytes) -> tuple[bytes, bytes]:
        """Return the first (key, value) whose key is >= key.

        Raises NotFoundError if there is none, or if the filter rules key out.
        """
        rkey, value = self._find(key, True, False)
        return rkey, value if value is not None else b""

    def find_key(self, key: bytes) -> bytes:
        """Return the first key that is >= key; raises NotFoundError if there is none."""
        return self._find(key, True, True)[0]

    def get(self, key: bytes) -> bytes:
        """Return the value stored for key; raises NotFoundError if absent."""
        key = bytes(key)
        rkey, value = self._find(key, False, False)
        equal = self._cmp.compare(rkey, key) == 0 if self._cmp is not None else rkey == key
        if not equal:
            raise NotFoundError()
        return value if value is not None else b""

    def offset_of(self, key: bytes) -> int:
        """Return the approximate file offset at which key's data starts."""
        with self._mu:
            self._check()
            index = BlockIterator(self._index_block, None, True)
            try:
                if index.seek(bytes(key)):
                    return self._index_handle_of(index.value()).offset
                err = index.error()
                if err is not None:
                    raise err
                return self.data_end
            finally:
                index.release()

    def release(self) -> None:
        """Release the reader, closing the source if it can be closed."""
        with self._mu:
            close = getattr(self._source, "close", None)
            if callable(close):
                close()
            self._index_block = None
            self._filter_block = None
            self._err = ReaderReleasedError()

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        it = self.iterator()
        try:
            yield from it
        finally:
            it.release()

    def __enter__(self) -> TableReader:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()