"""Snappy block compression, as used for compressed table blocks."""

from __future__ import annotations

from ldbstore.format import put_uvarint, read_uvarint

_MAX_BLOCK_SIZE = 65536
_MAX_DECODED = 0xFFFFFFFF
_MIN_MATCH = 4

_TAG_LITERAL = 0
_TAG_COPY1 = 1
_TAG_COPY2 = 2
_TAG_COPY4 = 3

_CORRUPT = "snappy: corrupt input"
_TOO_LARGE = "snappy: decoded block is too large"


class SnappyError(ValueError):
    """Compressed data is corrupt or too large."""


def max_encoded_len(size: int) -> int:
    """Return the largest possible compressed length for size input bytes."""
    if size < 0:
        raise ValueError("negative size")
    if size > _MAX_DECODED:
        raise SnappyError(_TOO_LARGE)
    n = 32 + size + size // 6
    if n > _MAX_DECODED:
        raise SnappyError(_TOO_LARGE)
    return n


def _read_preamble(data: bytes) -> tuple[int, int]:
    try:
        length, n = read_uvarint(data, 0)
    except ValueError as exc:
        raise SnappyError(_CORRUPT) from exc
    if length > _MAX_DECODED:
        raise SnappyError(_TOO_LARGE)
    return length, n


def decoded_len(data: bytes) -> int:
    """Return the length of the data that compressed data decodes to."""
    return _read_preamble(bytes(data))[0]


def _emit_literal(out: bytearray, literal: bytes) -> None:
    n = len(literal) - 1
    if n < 60:
        out.append(n << 2 | _TAG_LITERAL)
    else:
        width = (n.bit_length() + 7) // 8
        out.append((59 + width) << 2 | _TAG_LITERAL)
        out += n.to_bytes(width, "little")
    out += literal


def _emit_copy(out: bytearray, offset: int, length: int) -> None:
    offset_bytes = offset.to_bytes(2, "little")
    while length >= 68:
        out.append(63 << 2 | _TAG_COPY2)
        out += offset_bytes
        length -= 64
    if length > 64:
        out.append(59 << 2 | _TAG_COPY2)
        out += offset_bytes
        length -= 60
    if length >= 12 or offset >= 2048:
        out.append((length - 1) << 2 | _TAG_COPY2)
        out += offset_bytes
    else:
        out.append((offset >> 8) << 5 | (length - 4) << 2 | _TAG_COPY1)
        out.append(offset & 0xFF)


def _compress_block(out: bytearray, src: bytes) -> None:
    n = len(src)
    if n < _MIN_MATCH:
        if n:
            _emit_literal(out, src)
        return
    table: dict[bytes, int] = {}
    literal_start = 0
    i = 0
    skip = 32
    last = n - _MIN_MATCH
    while i <= last:
        key = src[i : i + _MIN_MATCH]
        candidate = table.get(key)
        table[key] = i
        if candidate is None:
            # Step further on long runs of misses.
            step = skip >> 5
            skip += step
            i += step
            continue
        length = _MIN_MATCH
        while i + length < n and src[candidate + length] == src[i + length]:
            length += 1
        if literal_start < i:
            _emit_literal(out, src[literal_start:i])
        _emit_copy(out, i - candidate, length)
        i += length
        literal_start = i
        skip = 32
    if literal_start < n:
        _emit_literal(out, src[literal_start:])


def compress(data: bytes) -> bytes:
    """Compress data into a snappy block."""
    src = bytes(data)
    max_encoded_len(len(src))
    out = bytearray(put_uvarint(len(src)))
    for start in range(0, len(src), _MAX_BLOCK_SIZE):
        _compress_block(out, src[start : start + _MAX_BLOCK_SIZE])
    return bytes(out)


def decompress(data: bytes) -> bytes:
    """Decompress a snappy block; raises SnappyError on corrupt input."""
    src = bytes(data)
    expected, pos = _read_preamble(src)
    out = bytearray()
    end = len(src)
    while pos < end:
        tag = src[pos]
        kind = tag & 0x03
        pos += 1
        if kind == _TAG_LITERAL:
            x = tag >> 2
            if x < 60:
                length = x + 1
            else:
                width = x - 59
                if pos + width > end:
                    raise SnappyError(_CORRUPT)
                length = int.from_bytes(src[pos : pos + width], "little") + 1
                pos += width
            if length > end - pos or length > expected - len(out):
                raise SnappyError(_CORRUPT)
            out += src[pos : pos + length]
            pos += length
            continue
        if kind == _TAG_COPY1:
            if pos + 1 > end:
                raise SnappyError(_CORRUPT)
            length = 4 + ((tag >> 2) & 0x07)
            offset = (tag & 0xE0) << 3 | src[pos]
            pos += 1
        elif kind == _TAG_COPY2:
            if pos + 2 > end:
                raise SnappyError(_CORRUPT)
            length = 1 + (tag >> 2)
            offset = int.from_bytes(src[pos : pos + 2], "little")
            pos += 2
        else:
            if pos + 4 > end:
                raise SnappyError(_CORRUPT)
            length = 1 + (tag >> 2)
            offset = int.from_bytes(src[pos : pos + 4], "little")
            pos += 4
        if offset <= 0 or offset > len(out) or length > expected - len(out):
            raise SnappyError(_CORRUPT)
        start = len(out) - offset
        if offset >= length:
            out += out[start : start + length]
        else:
            pattern = bytes(out[start:])
            reps, rem = divmod(length, offset)
            out += pattern * reps + pattern[:rem]
    if len(out) != expected:
        raise SnappyError(_CORRUPT)
    return bytes(out)