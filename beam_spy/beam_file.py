"""
beam_spy.beam_file
==================

Reader for the BEAM container: an IFF file ``FOR1 <size> BEAM`` followed
by chunks of ``id(4) size(4) data`` padded to four bytes.

:class:`BeamFile` exposes the chunk directory and decodes the tables the
rest of the package needs on first access:

========  =================================================
AtU8      :attr:`BeamFile.atoms` (``Atom`` for Latin-1 files)
ImpT      :attr:`BeamFile.imports`
ExpT      :attr:`BeamFile.exports`
LocT      :attr:`BeamFile.locals`
FunT      :attr:`BeamFile.funs`
StrT      :attr:`BeamFile.string_table`
LitT      :attr:`BeamFile.literals`
Attr      :attr:`BeamFile.attributes`
CInf      :attr:`BeamFile.compile_info`
Dbgi      :attr:`BeamFile.debug_info` (``Abst`` for old files)
Line      :attr:`BeamFile.line_table`
Code      :attr:`BeamFile.code_header`, :attr:`BeamFile.code`
========  =================================================

Structural defects in the container raise
:class:`~beam_spy.errors.BeamFormatError`; defects inside a table raise
:class:`~beam_spy.errors.DecodeError` naming the chunk.  The metadata
chunks (``Attr``, ``CInf``, ``Dbgi``, ``Line``) degrade to empty values
instead.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from beam_spy.compact_term import Tag, decode_int
from beam_spy.errors import (
    BeamFormatError,
    ChunkNotFoundError,
    DecodeError,
    EtfDecodeError,
)
from beam_spy.etf import Atom, binary_to_term
from beam_spy.line_table import LineTable, build_line_table

_log = logging.getLogger(__name__)

CHUNK_DESCRIPTIONS: Dict[str, str] = {
    "AtU8": "Atom table (UTF-8)",
    "Atom": "Atom table (Latin-1)",
    "Code": "Bytecode",
    "StrT": "String table",
    "ImpT": "Import table",
    "ExpT": "Export table",
    "LitT": "Literal table (compressed)",
    "LocT": "Local function table",
    "FunT": "Lambda/fun table",
    "Attr": "Module attributes",
    "CInf": "Compile info",
    "Dbgi": "Debug info",
    "Docs": "Documentation chunk",
    "ExCk": "ExCheck chunk",
    "Line": "Line number table",
    "Type": "Type information",
    "Meta": "Metadata",
    "Abst": "Abstract code",
}

# Chunks hashed by beam_lib:md5/1, in order.  The atom chunk is whichever
# of AtU8/Atom is present.
MD5_CHUNKS = ("AtU8", "Code", "StrT", "ImpT", "ExpT", "FunT", "LitT", "Meta")

CODE_HEADER = struct.Struct(">IIIII")


def chunk_description(chunk_id: str) -> str:
    return CHUNK_DESCRIPTIONS.get(chunk_id, "Unknown chunk")


# ---------------------------------------------------------------------------
# Table entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Chunk:
    id: str
    offset: int
    size: int
    data: bytes

    @property
    def description(self) -> str:
        return chunk_description(self.id)


@dataclass(frozen=True)
class Import:
    module: Atom
    function: Atom
    arity: int


@dataclass(frozen=True)
class Export:
    """An ``ExpT`` or ``LocT`` entry."""

    function: Atom
    arity: int
    label: int


@dataclass(frozen=True)
class FunEntry:
    function: Atom
    arity: int
    label: int
    index: int
    num_free: int
    old_uniq: int


@dataclass(frozen=True)
class CodeHeader:
    sub_size: int
    instruction_set: int
    opcode_max: int
    label_count: int
    function_count: int


# ---------------------------------------------------------------------------
# Container parsing
# ---------------------------------------------------------------------------

def _align4(size: int) -> int:
    return (size + 3) & ~3


def parse_chunks(data: bytes) -> List[Chunk]:
    """Split a ``FOR1``/``BEAM`` container into its chunks."""
    if len(data) < 12 or data[:4] != b"FOR1" or data[8:12] != b"BEAM":
        raise BeamFormatError("not a BEAM file")
    (form_size,) = struct.unpack_from(">I", data, 4)
    end = min(len(data), 8 + form_size)
    if 8 + form_size > len(data):
        _log.debug("FOR1 size %d exceeds file length %d", form_size, len(data))

    chunks: List[Chunk] = []
    pos = 12
    while pos + 8 <= end:
        chunk_id = data[pos:pos + 4].decode("latin-1")
        (size,) = struct.unpack_from(">I", data, pos + 4)
        start = pos + 8
        if start + size > len(data):
            raise BeamFormatError(
                f"chunk {chunk_id!r} at offset {pos} overruns the file "
                f"({size} bytes declared)"
            )
        chunks.append(Chunk(chunk_id, start, size, data[start:start + size]))
        pos = start + _align4(size)
    return chunks


class _TableReader:
    """Big-endian cursor over one chunk's data."""

    def __init__(self, chunk_id: str, data: bytes) -> None:
        self.chunk_id = chunk_id
        self.data = data
        self.pos = 0

    def u32(self) -> int:
        return self.unpack(">I")[0]

    def i32(self) -> int:
        return self.unpack(">i")[0]

    def unpack(self, fmt: str):
        size = struct.calcsize(fmt)
        if self.pos + size > len(self.data):
            raise DecodeError(f"truncated {self.chunk_id} table",
                              chunk=self.chunk_id, offset=self.pos)
        values = struct.unpack_from(fmt, self.data, self.pos)
        self.pos += size
        return values

    def take(self, size: int) -> bytes:
        if self.pos + size > len(self.data):
            raise DecodeError(f"truncated {self.chunk_id} table",
                              chunk=self.chunk_id, offset=self.pos)
        raw = self.data[self.pos:self.pos + size]
        self.pos += size
        return raw

    def compact_u(self) -> int:
        value, size = decode_int(self.data, self.pos, expect=Tag.U, chunk=self.chunk_id)
        self.pos += size
        return value


def parse_atoms(data: bytes, *, chunk_id: str = "AtU8") -> List[Atom]:
    """Decode an atom table.

    A negative count marks the compact layout where each length is a
    compact ``u`` term rather than a single byte.
    """
    encoding = "utf-8" if chunk_id == "AtU8" else "latin-1"
    reader = _TableReader(chunk_id, data)
    count = reader.i32()
    compact = count < 0
    atoms = []
    for _ in range(abs(count)):
        size = reader.compact_u() if compact else reader.unpack(">B")[0]
        atoms.append(Atom(reader.take(size).decode(encoding, errors="replace")))
    return atoms


# ---------------------------------------------------------------------------
# BeamFile
# ---------------------------------------------------------------------------

class BeamFile:
    """A parsed BEAM file.

    Attributes
    ----------
    data : bytes
        The whole file.
    path : Path or None
        Where it was read from.
    chunks : list[Chunk]
        The chunk directory in file order.
    """

    def __init__(self, data: bytes, path: Optional[Union[str, Path]] = None) -> None:
        self.data = bytes(data)
        self.path = Path(path) if path is not None else None
        self.chunks: List[Chunk] = parse_chunks(self.data)
        self._by_id: Dict[str, Chunk] = {}
        for chunk in self.chunks:
            self._by_id.setdefault(chunk.id, chunk)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "BeamFile":
        path = Path(path)
        _log.debug("reading %s", path)
        return cls(path.read_bytes(), path)

    @classmethod
    def from_bytes(cls, data: bytes) -> "BeamFile":
        return cls(data)

    def __repr__(self) -> str:
        where = f" {self.path}" if self.path else ""
        return f"<BeamFile{where} chunks={[c.id for c in self.chunks]}>"

    # ----- chunks -----------------------------------------------------------

    @property
    def chunk_ids(self) -> List[str]:
        return [chunk.id for chunk in self.chunks]

    def has_chunk(self, chunk_id: str) -> bool:
        return chunk_id in self._by_id

    def chunk(self, chunk_id: str) -> Optional[bytes]:
        found = self._by_id.get(chunk_id)
        return found.data if found is not None else None

    def require_chunk(self, chunk_id: str) -> bytes:
        data = self.chunk(chunk_id)
        if data is None:
            raise ChunkNotFoundError(chunk_id)
        return data

    @property
    def size(self) -> int:
        return len(self.data)

    # ----- symbol tables ----------------------------------------------------

    @functools.cached_property
    def atoms(self) -> List[Atom]:
        for chunk_id in ("AtU8", "Atom"):
            data = self.chunk(chunk_id)
            if data is not None:
                return parse_atoms(data, chunk_id=chunk_id)
        raise ChunkNotFoundError("AtU8")

    def atom(self, index: int) -> Atom:
        """Atom by its 1-based index."""
        if not 1 <= index <= len(self.atoms):
            raise DecodeError(f"atom index {index} out of range (1..{len(self.atoms)})")
        return self.atoms[index - 1]

    @property
    def module(self) -> Atom:
        return self.atom(1)

    @functools.cached_property
    def imports(self) -> List[Import]:
        data = self.chunk("ImpT")
        if data is None:
            return []
        reader = _TableReader("ImpT", data)
        return [
            Import(self.atom(m), self.atom(f), a)
            for m, f, a in (reader.unpack(">III") for _ in range(reader.u32()))
        ]

    def _label_table(self, chunk_id: str) -> List[Export]:
        data = self.chunk(chunk_id)
        if data is None:
            return []
        reader = _TableReader(chunk_id, data)
        return [
            Export(self.atom(f), a, label)
            for f, a, label in (reader.unpack(">III") for _ in range(reader.u32()))
        ]

    @functools.cached_property
    def exports(self) -> List[Export]:
        return self._label_table("ExpT")

    @functools.cached_property
    def locals(self) -> List[Export]:
        return self._label_table("LocT")

    @functools.cached_property
    def funs(self) -> List[FunEntry]:
        data = self.chunk("FunT")
        if data is None:
            return []
        reader = _TableReader("FunT", data)
        entries = []
        for _ in range(reader.u32()):
            f, a, label, index, num_free, old_uniq = reader.unpack(">IIIIII")
            entries.append(FunEntry(self.atom(f), a, label, index, num_free, old_uniq))
        return entries

    @functools.cached_property
    def string_table(self) -> bytes:
        return self.chunk("StrT") or b""

    @functools.cached_property
    def literals(self) -> List[Any]:
        data = self.chunk("LitT")
        if data is None:
            return []
        if len(data) < 4:
            raise DecodeError("truncated literal table", chunk="LitT", offset=0)
        (uncompressed_size,) = struct.unpack_from(">I", data, 0)
        body = data[4:]
        if uncompressed_size:
            try:
                body = zlib.decompress(body)
            except zlib.error as exc:
                raise DecodeError(f"bad literal table: {exc}", chunk="LitT", offset=4) from exc
        reader = _TableReader("LitT", body)
        literals = []
        for _ in range(reader.u32()):
            size = reader.u32()
            literals.append(binary_to_term(reader.take(size), chunk="LitT"))
        return literals

    # ----- metadata ---------------------------------------------------------

    def _term_chunk(self, chunk_id: str, default: Any) -> Any:
        data = self.chunk(chunk_id)
        if not data:
            return default
        try:
            return binary_to_term(data, chunk=chunk_id)
        except EtfDecodeError as exc:
            _log.debug("ignoring %s chunk: %s", chunk_id, exc)
            return default

    @functools.cached_property
    def attributes(self) -> List[Any]:
        value = self._term_chunk("Attr", [])
        return value if isinstance(value, list) else []

    @functools.cached_property
    def compile_info(self) -> List[Any]:
        value = self._term_chunk("CInf", [])
        return value if isinstance(value, list) else []

    @functools.cached_property
    def debug_info(self) -> Optional[Any]:
        """Decoded ``Dbgi`` term, else ``Abst``, else ``None``."""
        for chunk_id in ("Dbgi", "Abst"):
            value = self._term_chunk(chunk_id, None)
            if value is not None:
                return value
        return None

    @functools.cached_property
    def line_table(self) -> LineTable:
        return build_line_table(self.chunk("Line"))

    # ----- code -------------------------------------------------------------

    @functools.cached_property
    def code_header(self) -> CodeHeader:
        data = self.require_chunk("Code")
        if len(data) < 4:
            raise DecodeError("truncated Code header", chunk="Code", offset=0)
        (sub_size,) = struct.unpack_from(">I", data, 0)
        if sub_size < CODE_HEADER.size - 4 or 4 + sub_size > len(data):
            raise DecodeError(f"bad Code header size {sub_size}", chunk="Code", offset=0)
        return CodeHeader(*CODE_HEADER.unpack_from(data, 0))

    @property
    def code(self) -> bytes:
        """The instruction stream, past the ``Code`` header."""
        return self.require_chunk("Code")[4 + self.code_header.sub_size:]

    @property
    def code_offset(self) -> int:
        """Offset of :attr:`code` within the ``Code`` chunk data."""
        return 4 + self.code_header.sub_size

    # ----- digest -----------------------------------------------------------

    @functools.cached_property
    def md5(self) -> bytes:
        """MD5 over the code-bearing chunks, as ``beam_lib:md5/1`` does.

        Hashed raw, so modules whose literal table was compressed
        differently can differ from the runtime's value.
        """
        digest = hashlib.md5()
        for chunk_id in MD5_CHUNKS:
            data = self.chunk(chunk_id)
            if data is None and chunk_id == "AtU8":
                data = self.chunk("Atom")
            if data is not None:
                digest.update(data)
        return digest.digest()


def open_beam(source: Union[str, Path, bytes, BeamFile]) -> BeamFile:
    """Coerce a path, raw bytes or an existing :class:`BeamFile`."""
    if isinstance(source, BeamFile):
        return source
    if isinstance(source, (bytes, bytearray)):
        return BeamFile.from_bytes(bytes(source))
    return BeamFile.from_path(source)


def exported_names(exports: Sequence[Export]) -> List[str]:
    """``name/arity`` strings sorted by name then arity."""
    return [f"{e.function}/{e.arity}"
            for e in sorted(exports, key=lambda e: (str(e.function), e.arity))]
