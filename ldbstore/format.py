"""Table file format: block handles, varints, checksums, options and table errors."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from ldbstore.storage import CorruptedError, FileDesc

BLOCK_TRAILER_LEN = 5
FOOTER_LEN = 48
MAGIC = b"\x57\xfb\x80\x8b\x24\x75\x47\xdb"
MAX_VARINT_LEN64 = 10

DEFAULT_BLOCK_SIZE = 4096
DEFAULT_BLOCK_RESTART_INTERVAL = 16
DEFAULT_FILTER_BASE_LG = 11

_OVERFLOW = "varint overflows a 64-bit integer"


class Compression(enum.IntEnum):
    """Per-block compression; the value is the block type byte on disk."""

    NONE = 0
    SNAPPY = 1


@dataclass
class TableOptions:
    """Options used when writing and reading tables.

    ``comparer`` is None for bytewise ordering, or an object with
    ``compare(a, b)``, ``separator(a, b)`` and ``successor(a)``.
    ``filter`` is None or an object with ``name``, ``new_generator()`` and
    ``contains(filter_data, key)``.
    """

    block_size: int = DEFAULT_BLOCK_SIZE
    block_restart_interval: int = DEFAULT_BLOCK_RESTART_INTERVAL
    compression: Compression = Compression.SNAPPY
    comparer: Any = None
    filter: Any = None
    alt_filters: tuple = field(default_factory=tuple)
    filter_base_lg: int = DEFAULT_FILTER_BASE_LG
    verify_checksum: bool = True
    strict_reader: bool = False

    def __post_init__(self) -> None:
        if self.block_size <= 0:
            self.block_size = DEFAULT_BLOCK_SIZE
        if self.block_restart_interval <= 0:
            self.block_restart_interval = DEFAULT_BLOCK_RESTART_INTERVAL
        if self.filter_base_lg <= 0 or self.filter_base_lg >= 32:
            self.filter_base_lg = DEFAULT_FILTER_BASE_LG
        self.compression = Compression(self.compression)
        self.alt_filters = tuple(self.alt_filters)


@dataclass(frozen=True)
class KeyRange:
    """A key range; a None start is before all keys, a None limit after all keys."""

    start: bytes | None = None
    limit: bytes | None = None


def put_uvarint(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as a varint."""
    if value < 0 or value >= 1 << 64:
        raise ValueError(f"value out of range for uvarint: {value}")
    out = bytearray()
    while value >= 0x80:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def read_uvarint(data: bytes, offset: int = 0) -> tuple[int, int]:
    """Decode a varint at offset; return (value, bytes consumed).

    Raises ValueError if the varint is truncated or overflows 64 bits.
    """
    result = 0
    shift = 0
    for i in range(MAX_VARINT_LEN64):
        pos = offset + i
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        if byte < 0x80:
            if i == MAX_VARINT_LEN64 - 1 and byte > 1:
                raise ValueError(_OVERFLOW)
            return result | (byte << shift), i + 1
        result |= (byte & 0x7F) << shift
        shift += 7
    raise ValueError(_OVERFLOW)


@dataclass(frozen=True)
class BlockHandle:
    """Location of a block within a table file."""

    offset: int = 0
    length: int = 0

    def encode(self) -> bytes:
        """Encode as two varints: offset then length."""
        return put_uvarint(self.offset) + put_uvarint(self.length)

    @classmethod
    def decode(cls, data: bytes) -> tuple[BlockHandle, int]:
        """Decode a handle from the start of data; return (handle, bytes consumed)."""
        offset, n = read_uvarint(data, 0)
        length, m = read_uvarint(data, n)
        return cls(offset, length), n + m


def _make_crc_table() -> tuple[int, ...]:
    poly = 0x82F63B78
    table = []
    for i in range(256):
        c = i
        for _ in range(8):
            c = (c >> 1) ^ poly if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def _crc32c_raw(data: bytes) -> int:
    crc = 0xFFFFFFFF
    for byte in bytes(data):
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


def crc32c(data: bytes) -> int:
    """Return the masked CRC-32C (Castagnoli) checksum stored in block trailers."""
    c = _crc32c_raw(data)
    rotated = ((c >> 15) | (c << 17)) & 0xFFFFFFFF
    return (rotated + 0xA282EAD8) & 0xFFFFFFFF


class TableError(Exception):
    """Base class for table errors."""


class TableCorruptedError(CorruptedError, TableError):
    """A table file is corrupted."""

    def __init__(
        self,
        reason: str,
        pos: int = 0,
        size: int = 0,
        kind: str = "",
        fd: FileDesc | None = None,
    ) -> None:
        self.reason = reason
        self.pos = pos
        self.size = size
        self.kind = kind
        super().__init__(reason, fd)

    def __str__(self) -> str:
        msg = f"ldbstore/table: corruption on {self.kind} (pos={self.pos}): {self.reason}"
        if not self.fd.is_zero():
            return f"{msg} [file={self.fd}]"
        return msg


class NotFoundError(TableError, LookupError):
    """The key was not found."""

    def __init__(self, message: str = "ldbstore: not found") -> None:
        super().__init__(message)


class ReaderReleasedError(TableError):
    """The table reader has been released."""

    def __init__(self, message: str = "ldbstore/table: reader released") -> None:
        super().__init__(message)


class IteratorReleasedError(TableError):
    """The iterator has been released."""

    def __init__(self, message: str = "ldbstore/table: iterator released") -> None:
        super().__init__(message)