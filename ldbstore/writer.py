"""Table writer: builds sorted-table files from ordered key/value pairs."""

from __future__ import annotations

import struct
from typing import Any, BinaryIO

from ldbstore.format import (
    BLOCK_TRAILER_LEN,
    FOOTER_LEN,
    MAGIC,
    BlockHandle,
    Compression,
    TableError,
    TableOptions,
    crc32c,
    put_uvarint,
)
from ldbstore.snappy import compress

_U32 = struct.Struct("<I")


def shared_prefix_len(a: bytes, b: bytes) -> int:
    """Return the length of the common prefix of a and b."""
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


class BlockWriter:
    """Builds one block of prefix-compressed key/value entries."""

    def __init__(self, restart_interval: int) -> None:
        if restart_interval <= 0:
            raise ValueError("restart interval must be positive")
        self.restart_interval = restart_interval
        self.buf = bytearray()
        self.entries = 0
        self.prev_key = b""
        self.restarts: list[int] = []

    def append(self, key: bytes, value: bytes) -> None:
        """Add an entry, sharing its key prefix with the previous one."""
        key = bytes(key)
        value = bytes(value)
        shared = 0
        if self.entries % self.restart_interval == 0:
            self.restarts.append(len(self.buf))
        else:
            shared = shared_prefix_len(self.prev_key, key)
        self.buf += put_uvarint(shared)
        self.buf += put_uvarint(len(key) - shared)
        self.buf += put_uvarint(len(value))
        self.buf += key[shared:]
        self.buf += value
        self.prev_key = key
        self.entries += 1

    def finish(self) -> None:
        """Write the restart points trailer."""
        if self.entries == 0:
            # A block holds at least one restart point.
            self.restarts.append(0)
        self.restarts.append(len(self.restarts))
        for restart in self.restarts:
            self.buf += _U32.pack(restart)

    def reset(self) -> None:
        """Empty the block; the previous key is kept."""
        self.buf.clear()
        self.entries = 0
        self.restarts.clear()

    def bytes_len(self) -> int:
        """Return the size the block will have once finished."""
        restarts = len(self.restarts) or 1
        return len(self.buf) + 4 * restarts + 4


class _FilterWriter:
    def __init__(self, generator: Any, base_lg: int) -> None:
        self.generator = generator
        self.base_lg = base_lg
        self.buf = bytearray()
        self.keys = 0
        self.offsets: list[int] = []

    def add(self, key: bytes) -> None:
        if self.generator is None:
            return
        self.generator.add(key)
        self.keys += 1

    def flush(self, offset: int) -> None:
        if self.generator is None:
            return
        while offset >> self.base_lg > len(self.offsets):
            self._generate()

    def finish(self) -> None:
        if self.generator is None:
            return
        if self.keys > 0:
            self._generate()
        self.offsets.append(len(self.buf))
        for offset in self.offsets:
            self.buf += _U32.pack(offset)
        self.buf.append(self.base_lg)

    def _generate(self) -> None:
        self.offsets.append(len(self.buf))
        if self.keys > 0:
            self.buf += self.generator.generate()
            self.keys = 0


class TableWriter:
    """Writes a table to a binary stream; keys must be appended in increasing order.

    A filter generator, when a filter is configured, has ``add(key)`` and
    ``generate()``, the latter returning the filter data for the keys added
    since the last call.
    """

    def __init__(self, out: BinaryIO, options: TableOptions | None = None) -> None:
        options = options if options is not None else TableOptions()
        self._out = out
        self._error: Exception | None = None
        self._cmp = options.comparer
        self._filter = options.filter
        self._compression = Compression(options.compression)
        self._block_size = options.block_size
        self._data_block = BlockWriter(options.block_restart_interval)
        self._index_block = BlockWriter(1)
        generator = self._filter.new_generator() if self._filter is not None else None
        self._filter_block = _FilterWriter(generator, options.filter_base_lg)
        self._filter_block.flush(0)
        self._pending: BlockHandle | None = None
        self._offset = 0
        self._entries = 0

    def _compare(self, a: bytes, b: bytes) -> int:
        if self._cmp is not None:
            return self._cmp.compare(a, b)
        return (a > b) - (a < b)

    def _write_block(self, buf: bytes, compression: Compression) -> BlockHandle:
        if compression == Compression.SNAPPY:
            block = bytearray(compress(buf))
        else:
            block = bytearray(buf)
        block.append(compression)
        block += _U32.pack(crc32c(block))
        self._out.write(block)
        handle = BlockHandle(self._offset, len(block) - BLOCK_TRAILER_LEN)
        self._offset += len(block)
        return handle

    def _flush_pending(self, key: bytes | None) -> None:
        if self._pending is None:
            return
        prev = self._data_block.prev_key
        separator = None
        if self._cmp is not None:
            if not key:
                separator = self._cmp.successor(prev)
            else:
                separator = self._cmp.separator(prev, key)
        if separator is None:
            separator = prev
        self._index_block.append(separator, self._pending.encode())
        self._data_block.prev_key = b""
        self._pending = None

    def _finish_block(self) -> None:
        self._data_block.finish()
        self._pending = self._write_block(bytes(self._data_block.buf), self._compression)
        self._data_block.reset()
        self._filter_block.flush(self._offset)

    def append(self, key: bytes, value: bytes) -> None:
        """Append a key/value pair; raises ValueError if keys are out of order."""
        if self._error is not None:
            raise self._error
        key = bytes(key)
        prev = self._data_block.prev_key
        if self._entries > 0 and self._compare(prev, key) >= 0:
            self._error = ValueError(
                f"ldbstore/table: writer: keys are not in increasing order: {prev!r}, {key!r}"
            )
            raise self._error
        self._flush_pending(key)
        self._data_block.append(key, value)
        self._filter_block.add(key)
        if self._data_block.bytes_len() >= self._block_size:
            try:
                self._finish_block()
            except Exception as exc:
                self._error = exc
                raise
        self._entries += 1

    def blocks_len(self) -> int:
        """Number of data blocks written so far."""
        n = self._index_block.entries
        if self._pending is not None:
            n += 1
        return n

    def entries_len(self) -> int:
        """Number of entries appended so far."""
        return self._entries

    def bytes_len(self) -> int:
        """Number of bytes written so far."""
        return self._offset

    def close(self) -> None:
        """Finalize the table; no more entries can be appended afterwards."""
        if self._error is not None:
            raise self._error
        try:
            self._close()
        except Exception as exc:
            self._error = exc
            raise
        self._error = TableError("ldbstore/table: writer is closed")

    def _close(self) -> None:
        # Write the last data block, or an empty one if there are none.
        if self._data_block.entries > 0 or self._entries == 0:
            self._finish_block()
        self._flush_pending(None)

        filter_handle = None
        self._filter_block.finish()
        if self._filter_block.buf:
            filter_handle = self._write_block(bytes(self._filter_block.buf), Compression.NONE)

        if filter_handle is not None and filter_handle.length > 0:
            name = f"filter.{self._filter.name}".encode()
            self._data_block.append(name, filter_handle.encode())
        self._data_block.finish()
        meta_handle = self._write_block(bytes(self._data_block.buf), self._compression)

        self._index_block.finish()
        index_handle = self._write_block(bytes(self._index_block.buf), self._compression)

        footer = bytearray(FOOTER_LEN)
        handles = meta_handle.encode() + index_handle.encode()
        footer[: len(handles)] = handles
        footer[FOOTER_LEN - len(MAGIC) :] = MAGIC
        self._out.write(footer)
        self._offset += FOOTER_LEN