"""
beam_spy.compact_term
=====================

Decoder (and encoder) for the BEAM *compact term* encoding, the
tag-plus-value variable-length format used for instruction operands in
the ``Code`` chunk and for entries of the ``Line`` chunk.

Layout of the first byte::

    7 6 5 4 3 2 1 0
    v v v v 0 t t t     value 0..15 in the high nibble
    v v v 0 1 t t t     11-bit value: high 3 bits here, low 8 in next byte
    n n n 1 1 t t t     n+2 big-endian bytes follow (n < 7)
    1 1 1 1 1 t t t     byte count is a nested ``u`` value + 9

``ttt`` is the :class:`Tag`.  Only the ``i`` tag is signed.  The ``z``
(extended) tag carries a sub-tag in the high nibble and is only valid in
the single-byte form; its payload is decoded by the caller.

Every failure is reported as :class:`~beam_spy.errors.CompactTermError`;
the decoder never reads past the end of the buffer.
"""

from __future__ import annotations

import enum
from typing import Iterator, Optional, Tuple

from beam_spy.errors import CompactTermError


class Tag(enum.IntEnum):
    U = 0   # literal / unsigned
    I = 1   # integer
    A = 2   # atom index
    X = 3   # x register
    Y = 4   # y register
    F = 5   # label
    H = 6   # character
    Z = 7   # extended


class ExtTag(enum.IntEnum):
    """Sub-tags carried by :attr:`Tag.Z`."""

    FLOAT = 0
    LIST = 1
    FLOAT_REG = 2
    ALLOC_LIST = 3
    LITERAL = 4
    TYPED_REG = 5


# Largest byte count the loader accepts for a single value.
MAX_VALUE_BYTES = 1 << 16


def _byte_at(data: bytes, pos: int, chunk: Optional[str]) -> int:
    if pos >= len(data):
        raise CompactTermError("truncated compact term", chunk=chunk, offset=pos)
    return data[pos]


def decode(
    data: bytes, pos: int = 0, *, chunk: Optional[str] = None
) -> Tuple[Tag, int, int]:
    """Decode one compact term at *pos*.

    Returns ``(tag, value, size)`` where *size* is the number of bytes
    consumed.  For :attr:`Tag.Z` the value is the :class:`ExtTag` number.
    """
    first = _byte_at(data, pos, chunk)
    tag = Tag(first & 0x07)

    if tag == Tag.Z:
        if first & 0x08:
            raise CompactTermError(
                f"unsupported extended tag byte 0x{first:02x}",
                chunk=chunk,
                offset=pos,
            )
        return tag, first >> 4, 1

    if not first & 0x08:
        return tag, first >> 4, 1

    if not first & 0x10:
        low = _byte_at(data, pos + 1, chunk)
        return tag, ((first & 0xE0) << 3) | low, 2

    cursor = pos + 1
    length_code = first >> 5
    if length_code < 7:
        count = length_code + 2
    else:
        len_tag, nested, used = decode(data, cursor, chunk=chunk)
        if len_tag != Tag.U:
            raise CompactTermError(
                "length prefix is not an unsigned literal",
                chunk=chunk,
                offset=cursor,
            )
        cursor += used
        count = nested + 9
        if count > MAX_VALUE_BYTES:
            raise CompactTermError(
                f"value of {count} bytes is too large", chunk=chunk, offset=pos
            )

    end = cursor + count
    if end > len(data):
        raise CompactTermError("truncated compact term", chunk=chunk, offset=pos)
    value = int.from_bytes(data[cursor:end], "big", signed=(tag == Tag.I))
    return tag, value, end - pos


def decode_value(
    data: bytes, pos: int = 0, *, chunk: Optional[str] = None
) -> Tuple[int, int]:
    """Decode a compact term and return ``(value, size)``, ignoring the tag."""
    _tag, value, size = decode(data, pos, chunk=chunk)
    return value, size


def decode_int(
    data: bytes,
    pos: int = 0,
    *,
    expect: Tag = Tag.U,
    chunk: Optional[str] = None,
) -> Tuple[int, int]:
    """Decode a compact term that must carry the *expect* tag."""
    tag, value, size = decode(data, pos, chunk=chunk)
    if tag != expect:
        raise CompactTermError(
            f"expected tag {expect.name.lower()}, got {tag.name.lower()}",
            chunk=chunk,
            offset=pos,
        )
    return value, size


def iter_terms(
    data: bytes, pos: int, count: int, *, chunk: Optional[str] = None
) -> Iterator[Tuple[Tag, int, int]]:
    """Yield ``(tag, value, offset)`` for *count* consecutive terms."""
    for _ in range(count):
        tag, value, size = decode(data, pos, chunk=chunk)
        yield tag, value, pos
        pos += size


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _to_bytes(value: int) -> bytes:
    """Minimal big-endian bytes; a leading zero keeps positives positive."""
    size = max(1, (value.bit_length() + 8) // 8)
    return value.to_bytes(size, "big", signed=True)


def _negative_to_bytes(value: int) -> bytes:
    size = max(2, (value + 1).bit_length() // 8 + 1)
    return value.to_bytes(size, "big", signed=True)


def _encode_bytes(tag: int, payload: bytes) -> bytes:
    count = len(payload)
    if count < 2:
        payload = payload.rjust(2, b"\x00")
        count = 2
    if count <= 8:
        return bytes([((count - 2) << 5) | 0x18 | tag]) + payload
    return bytes([0xF8 | tag]) + encode(Tag.U, count - 9) + payload


def encode(tag: int, value: int) -> bytes:
    """Encode *value* with *tag*, choosing the shortest form."""
    tag = int(tag)
    if value < 0:
        if tag != Tag.I:
            raise ValueError("only the integer tag may carry negative values")
        return _encode_bytes(tag, _negative_to_bytes(value))
    if value < 16:
        return bytes([(value << 4) | tag])
    if value < 0x800:
        return bytes([((value >> 3) & 0xE0) | 0x08 | tag, value & 0xFF])
    return _encode_bytes(tag, _to_bytes(value))


def encode_ext(ext: ExtTag) -> bytes:
    """Encode the leading byte of an extended (``z``) term."""
    return bytes([(int(ext) << 4) | Tag.Z])
