"""
beam_spy.line_table
===================

Builds the line-index → source-line map from a ``Line`` chunk.

Chunk layout::

    u32 version
    u32 flags
    u32 instruction count       number of line instructions in Code
    u32 entry count             number of line entries that follow
    u32 file name count
    entries                     compact terms
    file names                  u16 length + UTF-8 bytes, repeated

An ``i``-tagged entry is a location: its low 24 bits are the line
number and any higher bits a file index.  An ``a``-tagged item switches
the current file for the entries after it and does not take an index.

Building is all-or-nothing.  :func:`parse_line_chunk` raises
:class:`~beam_spy.errors.LineTableError`; :func:`build_line_table`
returns the empty table instead, in which every lookup falls back to
the index itself.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Mapping, Optional, Tuple

from beam_spy.compact_term import Tag, decode
from beam_spy.errors import DecodeError, LineTableError

_log = logging.getLogger(__name__)

HEADER = struct.Struct(">IIIII")
LINE_MASK = 0xFFFFFF
FILE_SHIFT = 24


@dataclass(frozen=True)
class LineHeader:
    version: int
    flags: int
    instruction_count: int
    entry_count: int
    file_name_count: int


@dataclass(frozen=True)
class LineTable:
    """Index → line map.  Empty means "use the index as the line"."""

    entries: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))
    file_indexes: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))
    file_names: Tuple[str, ...] = ()

    def line_for(self, index: int) -> int:
        return self.entries.get(index, index)

    def file_for(self, index: int) -> Optional[str]:
        """File name of entry *index*, or ``None`` for the module's own file."""
        file_index = self.file_indexes.get(index, 0)
        if 0 < file_index <= len(self.file_names):
            return self.file_names[file_index - 1]
        return None

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, index: object) -> bool:
        return index in self.entries


EMPTY_LINE_TABLE = LineTable()


def parse_line_header(data: bytes) -> LineHeader:
    if len(data) < HEADER.size:
        raise LineTableError(
            f"Line chunk header needs {HEADER.size} bytes, got {len(data)}",
            chunk="Line",
            offset=0,
        )
    return LineHeader(*HEADER.unpack_from(data, 0))


def _read_file_names(data: bytes, pos: int, count: int) -> Tuple[str, ...]:
    names = []
    for _ in range(count):
        if pos + 2 > len(data):
            raise LineTableError("truncated file name table", chunk="Line", offset=pos)
        (size,) = struct.unpack_from(">H", data, pos)
        pos += 2
        if pos + size > len(data):
            raise LineTableError("truncated file name", chunk="Line", offset=pos)
        names.append(data[pos:pos + size].decode("utf-8", errors="replace"))
        pos += size
    return tuple(names)


def parse_line_chunk(data: bytes) -> LineTable:
    """Decode a ``Line`` chunk, raising :class:`LineTableError` on any defect."""
    header = parse_line_header(data)
    pos = HEADER.size
    entries: Dict[int, int] = {}
    file_indexes: Dict[int, int] = {}
    current_file = 0

    try:
        while len(entries) < header.entry_count:
            tag, value, size = decode(data, pos, chunk="Line")
            if tag == Tag.A:
                if value > header.file_name_count:
                    raise LineTableError(
                        f"file index {value} exceeds {header.file_name_count} names",
                        chunk="Line",
                        offset=pos,
                    )
                current_file = value
            elif tag == Tag.I:
                index = len(entries)
                entries[index] = value & LINE_MASK
                file_indexes[index] = (value >> FILE_SHIFT) or current_file
            else:
                raise LineTableError(
                    f"unexpected {tag.name.lower()} tag in line entries",
                    chunk="Line",
                    offset=pos,
                )
            pos += size
    except LineTableError:
        raise
    except DecodeError as exc:
        raise LineTableError(exc.message, chunk="Line", offset=exc.offset) from exc

    file_names: Tuple[str, ...] = ()
    if pos < len(data) and header.file_name_count:
        file_names = _read_file_names(data, pos, header.file_name_count)

    return LineTable(
        entries=MappingProxyType(entries),
        file_indexes=MappingProxyType(file_indexes),
        file_names=file_names,
    )


def build_line_table(data: Optional[bytes]) -> LineTable:
    """Like :func:`parse_line_chunk` but degrade to the empty table."""
    if not data:
        return EMPTY_LINE_TABLE
    try:
        return parse_line_chunk(data)
    except LineTableError as exc:
        _log.debug("ignoring Line chunk: %s", exc)
        return EMPTY_LINE_TABLE
