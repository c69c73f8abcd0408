# beam_spy/errors.py
"""
Error types for beam_spy.

Hierarchy::

    BeamSpyError (base)
    ├── DecodeError            - malformed bytes inside one chunk
    │   ├── CompactTermError   - compact term encoding
    │   ├── LineTableError     - Line chunk header / entries
    │   ├── EtfDecodeError     - external term format payloads
    │   └── DisasmError        - Code chunk tokenization
    ├── BeamFormatError        - not a FOR1/BEAM container
    ├── ChunkNotFoundError     - a required chunk is absent
    ├── OpcodeTableError       - genop.tab / category tables out of sync
    ├── SourceUnavailableError - no source text could be obtained
    ├── ResolveError           - module name did not resolve to a file
    └── FilterError            - malformed --filter pattern

Decode failures are scoped to a single chunk.  Callers are expected to
catch them and degrade (empty line table, no source) rather than abort
the whole analysis.  ``OpcodeTableError`` is the exception: it signals a
packaging defect and is never caught inside the library.
"""

from __future__ import annotations

import enum
from typing import Optional


@enum.unique
class ErrorCode(enum.Enum):
    """Stable codes surfaced by the CLI next to the message."""

    DECODE = "BSPY-1000"
    COMPACT_TERM = "BSPY-1001"
    LINE_TABLE = "BSPY-1002"
    ETF = "BSPY-1003"
    DISASM = "BSPY-1004"
    BEAM_FORMAT = "BSPY-2000"
    CHUNK_NOT_FOUND = "BSPY-2001"
    OPCODE_TABLE = "BSPY-3000"
    SOURCE_UNAVAILABLE = "BSPY-4000"
    RESOLVE = "BSPY-5000"
    FILTER = "BSPY-6000"


class BeamSpyError(Exception):
    """Base class for every error raised by beam_spy."""

    code: ErrorCode = ErrorCode.DECODE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class DecodeError(BeamSpyError):
    """Malformed or truncated bytes in a chunk payload.

    Attributes
    ----------
    chunk : str or None
        Chunk identifier (``"Line"``, ``"Code"``, ...) when known.
    offset : int or None
        Byte offset within the chunk payload where decoding stopped.
    """

    code = ErrorCode.DECODE

    def __init__(
        self,
        message: str,
        *,
        chunk: Optional[str] = None,
        offset: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.chunk = chunk
        self.offset = offset

    def __str__(self) -> str:
        where = []
        if self.chunk:
            where.append(f"chunk {self.chunk}")
        if self.offset is not None:
            where.append(f"offset {self.offset}")
        if where:
            return f"{self.message} ({', '.join(where)})"
        return self.message


class CompactTermError(DecodeError):
    code = ErrorCode.COMPACT_TERM


class LineTableError(DecodeError):
    code = ErrorCode.LINE_TABLE


class EtfDecodeError(DecodeError):
    code = ErrorCode.ETF


class DisasmError(DecodeError):
    code = ErrorCode.DISASM


class BeamFormatError(BeamSpyError):
    """The input is not a BEAM container."""

    code = ErrorCode.BEAM_FORMAT


class ChunkNotFoundError(BeamSpyError):
    code = ErrorCode.CHUNK_NOT_FOUND

    def __init__(self, chunk_id: str) -> None:
        super().__init__(f"chunk '{chunk_id}' not found")
        self.chunk_id = chunk_id


class OpcodeTableError(BeamSpyError):
    code = ErrorCode.OPCODE_TABLE


class SourceUnavailableError(BeamSpyError):
    code = ErrorCode.SOURCE_UNAVAILABLE


class ResolveError(BeamSpyError):
    """A module name could not be mapped to a ``.beam`` file."""

    code = ErrorCode.RESOLVE

    def __init__(self, target: str, searched: Optional[list] = None) -> None:
        super().__init__(f"could not find module or file: {target}")
        self.target = target
        self.searched = list(searched or [])


class FilterError(BeamSpyError):
    code = ErrorCode.FILTER
