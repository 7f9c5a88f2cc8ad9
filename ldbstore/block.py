"""Table blocks: prefix-compressed entries with restart points, and their iterator."""

from __future__ import annotations

import enum
import struct
from collections.abc import Callable, Iterator
from typing import Any

from ldbstore.format import (
    BlockHandle,
    IteratorReleasedError,
    KeyRange,
    TableCorruptedError,
    TableError,
    read_uvarint,
)
from ldbstore.storage import FileDesc

_U32 = struct.Struct("<I")


def _search(n: int, pred: Callable[[int], bool]) -> int:
    """Return the smallest i in [0, n) for which pred(i) holds, or n."""
    lo, hi = 0, n
    while lo < hi:
        mid = (lo + hi) // 2
        if pred(mid):
            hi = mid
        else:
            lo = mid + 1
    return lo


class Block:
    """A decoded block: entries followed by restart points and their count.

    ``comparer`` (None for bytewise ordering), ``fd`` and ``kind`` may be set
    by the owner; they are used for ordering keys and for error reports.
    """

    def __init__(self, data: bytes, handle: BlockHandle | None = None) -> None:
        self.data = bytes(data)
        self.handle = handle if handle is not None else BlockHandle()
        self.comparer: Any = None
        self.fd: FileDesc | None = None
        self.kind = "data-block"
        if len(self.data) < 4:
            raise self._corrupted("block too short")
        self.restarts_len = _U32.unpack_from(self.data, len(self.data) - 4)[0]
        self.restarts_offset = len(self.data) - (self.restarts_len + 1) * 4
        if self.restarts_offset < 0:
            raise self._corrupted("bad restart points length")

    def _corrupted(self, reason: str) -> TableCorruptedError:
        return TableCorruptedError(
            reason,
            pos=self.handle.offset,
            size=self.handle.length,
            kind=self.kind,
            fd=self.fd,
        )

    def _compare(self, a: bytes, b: bytes) -> int:
        if self.comparer is not None:
            return self.comparer.compare(a, b)
        return (a > b) - (a < b)

    def restart_offset(self, index: int) -> int:
        """Return the entry offset of the given restart point."""
        return _U32.unpack_from(self.data, self.restarts_offset + 4 * index)[0]

    def _restart_key(self, index: int) -> bytes:
        # Shared length is always zero at a restart point, so it is one byte.
        offset = self.restart_offset(index) + 1
        try:
            key_len, n1 = read_uvarint(self.data, offset)
            _, n2 = read_uvarint(self.data, offset + n1)
        except ValueError as exc:
            raise self._corrupted("entries corrupted") from exc
        start = offset + n1 + n2
        return self.data[start : start + key_len]

    def seek(self, rstart: int, rlimit: int, key: bytes) -> tuple[int, int]:
        """Return (restart index, offset) of the last restart point not after key."""
        found = _search(
            rlimit - rstart,
            lambda i: self._compare(self._restart_key(rstart + i), key) > 0,
        )
        index = max(found + rstart - 1, rstart)
        return index, self.restart_offset(index)

    def restart_index(self, rstart: int, rlimit: int, offset: int) -> int:
        """Return the index of the last restart point at or before offset."""
        found = _search(rlimit - rstart, lambda i: self.restart_offset(rstart + i) > offset)
        return found + rstart - 1

    def entry(self, offset: int) -> tuple[bytes, bytes, int, int]:
        """Decode the entry at offset; return (unshared key, value, shared length, size).

        At the end of the entries the size is 0.
        """
        if offset >= self.restarts_offset:
            if offset != self.restarts_offset:
                raise self._corrupted("entries offset not aligned")
            return b"", b"", 0, 0
        try:
            shared, n0 = read_uvarint(self.data, offset)
            key_len, n1 = read_uvarint(self.data, offset + n0)
            value_len, n2 = read_uvarint(self.data, offset + n0 + n1)
        except ValueError as exc:
            raise self._corrupted("entries corrupted") from exc
        m = n0 + n1 + n2
        n = m + key_len + value_len
        if offset + n > self.restarts_offset:
            raise self._corrupted("entries corrupted")
        key_start = offset + m
        key = self.data[key_start : key_start + key_len]
        value = self.data[key_start + key_len : offset + n]
        return key, value, shared, n


class _Dir(enum.IntEnum):
    RELEASED = -1
    SOI = 0
    EOI = 1
    BACKWARD = 2
    FORWARD = 3


class BlockIterator:
    """Bidirectional iterator over the entries of a block, optionally limited to a key range.

    Positioning methods return True when the iterator lands on an entry;
    failures are kept and reported by ``error()``.
    """

    def __init__(
        self,
        block: Block,
        key_range: KeyRange | None = None,
        include_limit: bool = False,
    ) -> None:
        self._block: Block | None = block
        self._key = bytearray()
        self._value: bytes | None = None
        self._offset = 0
        self._prev_offset = 0
        self._prev_node: list[int] = []
        self._prev_keys = bytearray()
        self._restart_index = 0
        self._dir = _Dir.SOI
        self._ri_start = 0
        self._ri_limit = block.restarts_len
        self._offset_start = 0
        self._offset_real_start = 0
        self._offset_limit = block.restarts_offset
        self._err: Exception | None = None

        if key_range is None:
            return
        if key_range.start is not None:
            if self.seek(key_range.start):
                self._ri_start = block.restart_index(
                    self._restart_index, block.restarts_len, self._prev_offset
                )
                self._offset_start = block.restart_offset(self._ri_start)
                self._offset_real_start = self._prev_offset
            else:
                self._ri_start = block.restarts_len
                self._offset_start = block.restarts_offset
                self._offset_real_start = block.restarts_offset
        if key_range.limit is not None:
            if self.seek(key_range.limit) and (not include_limit or self.next()):
                self._offset_limit = self._prev_offset
                self._ri_limit = self._restart_index + 1
        self._reset()
        if self._offset_start > self._offset_limit:
            self._set_error(TableError("ldbstore/table: invalid slice range"))

    def _set_error(self, err: Exception) -> None:
        self._err = err
        self._key = bytearray()
        self._value = None
        self._prev_node = []
        self._prev_keys = bytearray()

    def _reset(self) -> None:
        if self._dir == _Dir.BACKWARD:
            self._prev_node.clear()
            self._prev_keys.clear()
        self._restart_index = self._ri_start
        self._offset = self._offset_start
        self._dir = _Dir.SOI
        self._key.clear()
        self._value = None

    def _is_first(self) -> bool:
        if self._dir == _Dir.FORWARD:
            return self._prev_offset == self._offset_real_start
        if self._dir == _Dir.BACKWARD:
            return len(self._prev_node) == 1 and self._restart_index == self._ri_start
        return False

    def _is_last(self) -> bool:
        if self._dir in (_Dir.FORWARD, _Dir.BACKWARD):
            return self._offset == self._offset_limit
        return False

    def _check_usable(self) -> bool:
        if self._err is not None:
            return False
        if self._dir == _Dir.RELEASED:
            self._err = IteratorReleasedError()
            return False
        return True

    def first(self) -> bool:
        """Move to the first entry."""
        if not self._check_usable():
            return False
        if self._dir == _Dir.BACKWARD:
            self._prev_node.clear()
            self._prev_keys.clear()
        self._dir = _Dir.SOI
        return self.next()

    def last(self) -> bool:
        """Move to the last entry."""
        if not self._check_usable():
            return False
        if self._dir == _Dir.BACKWARD:
            self._prev_node.clear()
            self._prev_keys.clear()
        self._dir = _Dir.EOI
        return self.prev()

    def seek(self, key: bytes) -> bool:
        """Move to the first entry whose key is greater than or equal to key."""
        if not self._check_usable():
            return False
        block = self._block
        key = bytes(key)
        try:
            ri, offset = block.seek(self._ri_start, self._ri_limit, key)
        except TableCorruptedError as exc:
            self._set_error(exc)
            return False
        self._restart_index = ri
        self._offset = max(self._offset_start, offset)
        if self._dir in (_Dir.SOI, _Dir.EOI):
            self._dir = _Dir.FORWARD
        while self.next():
            if block._compare(bytes(self._key), key) >= 0:
                return True
        return False

    def next(self) -> bool:
        """Move to the next entry."""
        if self._dir == _Dir.EOI or self._err is not None:
            return False
        if not self._check_usable():
            return False
        block = self._block
        if self._dir == _Dir.SOI:
            self._restart_index = self._ri_start
            self._offset = self._offset_start
        elif self._dir == _Dir.BACKWARD:
            self._prev_node.clear()
            self._prev_keys.clear()
        try:
            while self._offset < self._offset_real_start:
                key, value, shared, n = block.entry(self._offset)
                if n == 0:
                    self._dir = _Dir.EOI
                    return False
                del self._key[shared:]
                self._key += key
                self._value = value
                self._offset += n
            if self._offset >= self._offset_limit:
                self._dir = _Dir.EOI
                if self._offset != self._offset_limit:
                    self._set_error(block._corrupted("entries offset not aligned"))
                return False
            key, value, shared, n = block.entry(self._offset)
        except TableCorruptedError as exc:
            self._set_error(exc)
            return False
        if n == 0:
            self._dir = _Dir.EOI
            return False
        del self._key[shared:]
        self._key += key
        self._value = value
        self._prev_offset = self._offset
        self._offset += n
        self._dir = _Dir.FORWARD
        return True

    def prev(self) -> bool:
        """Move to the previous entry."""
        if self._dir == _Dir.SOI or self._err is not None:
            return False
        if not self._check_usable():
            return False
        block = self._block

        if self._dir == _Dir.FORWARD:
            # Change direction.
            self._offset = self._prev_offset
            if self._offset == self._offset_real_start:
                self._dir = _Dir.SOI
                return False
            ri = block.restart_index(self._restart_index, self._ri_limit, self._offset)
            self._dir = _Dir.BACKWARD
        elif self._dir == _Dir.EOI:
            self._restart_index = self._ri_limit
            self._offset = self._offset_limit
            if self._offset == self._offset_real_start:
                self._dir = _Dir.SOI
                return False
            ri = self._ri_limit - 1
            self._dir = _Dir.BACKWARD
        elif len(self._prev_node) == 1:
            # End of a restart range.
            self._offset = self._prev_node[0]
            self._prev_node.clear()
            if self._restart_index == self._ri_start:
                self._dir = _Dir.SOI
                return False
            self._restart_index -= 1
            ri = self._restart_index
        else:
            # Inside a restart range: take the entry from the cache.
            key_offset, value_offset, value_len = self._prev_node[-3:]
            del self._prev_node[-3:]
            self._key = bytearray(self._prev_keys[key_offset:])
            del self._prev_keys[key_offset:]
            value_end = value_offset + value_len
            self._value = block.data[value_offset:value_end]
            self._offset = value_end
            return True

        # Decode the restart range, caching every entry before the target.
        self._key.clear()
        self._value = None
        offset = block.restart_offset(ri)
        if offset == self._offset:
            ri -= 1
            if ri < 0:
                self._dir = _Dir.SOI
                return False
            offset = block.restart_offset(ri)
        self._prev_node.append(offset)
        while True:
            try:
                key, value, shared, n = block.entry(offset)
            except TableCorruptedError as exc:
                self._set_error(exc)
                return False
            if offset >= self._offset_real_start:
                if self._value is not None:
                    self._prev_node += [
                        len(self._prev_keys),
                        offset - len(self._value),
                        len(self._value),
                    ]
                    self._prev_keys += self._key
                self._value = value
            del self._key[shared:]
            self._key += key
            offset += n
            if n == 0 or offset >= self._offset:
                if offset != self._offset:
                    self._set_error(block._corrupted("entries offset not aligned"))
                    return False
                break
        self._restart_index = ri
        self._offset = offset
        return True

    def key(self) -> bytes | None:
        """Key of the current entry, or None when not positioned on one."""
        if self._err is not None or self._dir <= _Dir.EOI:
            return None
        return bytes(self._key)

    def value(self) -> bytes | None:
        """Value of the current entry, or None when not positioned on one."""
        if self._err is not None or self._dir <= _Dir.EOI:
            return None
        return bytes(self._value) if self._value is not None else None

    def valid(self) -> bool:
        """True if positioned on an entry."""
        return self._err is None and self._dir in (_Dir.BACKWARD, _Dir.FORWARD)

    def error(self) -> Exception | None:
        """The error met so far, if any."""
        return self._err

    def release(self) -> None:
        """Release the iterator; later use reports IteratorReleasedError."""
        if self._dir != _Dir.RELEASED:
            self._block = None
            self._prev_node = []
            self._prev_keys = bytearray()
            self._key = bytearray()
            self._value = None
            self._dir = _Dir.RELEASED

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs from the first entry; raise any error met."""
        ok = self.first()
        while ok:
            yield bytes(self._key), bytes(self._value or b"")
            ok = self.next()
        if self._err is not None:
            raise self._err

    def __enter__(self) -> BlockIterator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()