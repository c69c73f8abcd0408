"""
beam_spy.source
===============

Source correlation: groups a function's instruction stream by the source
line each run of instructions came from, and attaches the source text.

Correlation
-----------
:func:`group_by_line` scans the stream once.  Each ``line`` marker is
resolved through the :class:`~beam_spy.line_table.LineTable` (the raw
index when the table has no entry), the run collected so far is flushed
under the previous line, and a new run starts.  Markers are not part of
any group.  Adjacent groups with the same line are merged
(:func:`merge_groups` is associative and order-preserving).

:func:`annotate_groups` attaches text and a :class:`RenderMode`:
``UNAVAILABLE`` for every group when no source was loaded, ``INLINE``
when the group's line has non-blank text, ``UNAVAILABLE`` otherwise.
Deciding that a line is ``DISTANT`` from the function is left to the
renderer.

Providers
---------
:func:`load_source` reads a file; :func:`source_for_beam` tries an
explicit path, then the ``source`` recorded in the compile info, then
reconstruction from debug info (:mod:`beam_spy.reconstruct`).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from beam_spy.config import DEFAULT_CONFIG, DisasmConfig
from beam_spy.errors import SourceUnavailableError
from beam_spy.etf import proplist_get, to_text
from beam_spy.formatter import Instruction, format_instruction
from beam_spy.line_table import EMPTY_LINE_TABLE, LineTable
from beam_spy.opcodes import OpcodeTable, opcode_table
from beam_spy.operands import IntOp, RawInstruction
from beam_spy.reconstruct import reconstruct_source

_log = logging.getLogger(__name__)

SourceLines = Mapping[int, str]


class RenderMode(enum.Enum):
    INLINE = "inline"
    DISTANT = "distant"
    UNAVAILABLE = "unavailable"


class SourceKind(enum.Enum):
    """Where a source map came from."""

    FILE = "file"
    RECONSTRUCTED = "reconstructed"


@dataclass(frozen=True)
class SourceGroup:
    """A run of instructions attributed to one source line.

    ``line`` is ``None`` for instructions before the first marker.
    """

    line: Optional[int]
    instructions: Tuple[Any, ...] = ()
    source: Optional[str] = None
    mode: RenderMode = RenderMode.UNAVAILABLE

    def extend(self, other: "SourceGroup") -> "SourceGroup":
        return replace(self, instructions=self.instructions + other.instructions)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def marker_index(item: Any) -> Optional[int]:
    """Line-table index carried by a ``line`` marker, else ``None``.

    Accepts raw tokens and formatted :class:`Instruction` values.
    """
    if isinstance(item, RawInstruction):
        if item.name != "line" or not item.operands:
            return None
        payload = item.operands[0]
        if isinstance(payload, IntOp):
            return payload.value
        if isinstance(payload, int) and not isinstance(payload, bool):
            return payload
        return None
    if isinstance(item, Instruction):
        if item.mnemonic == "line" and item.operands and item.operands[0].isdigit():
            return int(item.operands[0])
    return None


def merge_groups(*sequences: Iterable[SourceGroup]) -> List[SourceGroup]:
    """Concatenate *sequences* and merge adjacent groups with equal lines."""
    merged: List[SourceGroup] = []
    for sequence in sequences:
        for group in sequence:
            if merged and merged[-1].line == group.line:
                merged[-1] = merged[-1].extend(group)
            else:
                merged.append(group)
    return merged


def group_by_line(
    instructions: Iterable[Any],
    line_table: LineTable = EMPTY_LINE_TABLE,
) -> List[SourceGroup]:
    groups: List[SourceGroup] = []
    current_line: Optional[int] = None
    run: List[Any] = []

    for item in instructions:
        index = marker_index(item)
        if index is None:
            run.append(item)
            continue
        if run:
            groups.append(SourceGroup(current_line, tuple(run)))
            run = []
        current_line = line_table.line_for(index)

    if run:
        groups.append(SourceGroup(current_line, tuple(run)))
    return merge_groups(groups)


def annotate_groups(
    groups: Sequence[SourceGroup],
    source_lines: Optional[SourceLines],
) -> List[SourceGroup]:
    if not source_lines:
        return [replace(g, source=None, mode=RenderMode.UNAVAILABLE) for g in groups]
    annotated = []
    for group in groups:
        text = source_lines.get(group.line) if group.line is not None else None
        if text is not None and text.strip():
            annotated.append(replace(group, source=text, mode=RenderMode.INLINE))
        else:
            annotated.append(replace(group, source=None, mode=RenderMode.UNAVAILABLE))
    return annotated


def correlate(
    raw_instructions: Sequence[RawInstruction],
    line_table: LineTable = EMPTY_LINE_TABLE,
    source_lines: Optional[SourceLines] = None,
    *,
    table: Optional[OpcodeTable] = None,
    config: DisasmConfig = DEFAULT_CONFIG,
) -> List[SourceGroup]:
    """Group, format and annotate one function's raw instructions."""
    table = table or opcode_table()
    groups = [
        replace(g, instructions=tuple(
            format_instruction(raw, table=table, config=config) for raw in g.instructions
        ))
        for g in group_by_line(raw_instructions, line_table)
    ]
    return annotate_groups(groups, source_lines)


def first_line(groups: Sequence[SourceGroup]) -> Optional[int]:
    for group in groups:
        if group.line is not None:
            return group.line
    return None


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

def load_source(path: Union[str, Path]) -> Dict[int, str]:
    """``{line_number: text}`` of a file, 1-based."""
    try:
        content = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise SourceUnavailableError(f"cannot read source {path}: {exc.strerror}") from exc
    return {number: text for number, text in enumerate(content.split("\n"), start=1)}


def compile_source_path(beam: Any) -> Optional[Path]:
    """The ``source`` path recorded in the compile info, if any."""
    text = to_text(proplist_get(beam.compile_info, "source"))
    return Path(text) if text else None


def source_for_beam(
    beam: Any,
    explicit_path: Optional[Union[str, Path]] = None,
) -> Tuple[Dict[int, str], SourceKind, Optional[Path]]:
    """Find source for *beam*.

    Returns ``(lines, kind, path)``; *path* is ``None`` for reconstructed
    source.  Raises :class:`SourceUnavailableError` when nothing works,
    or when *explicit_path* cannot be read.
    """
    if explicit_path is not None:
        path = Path(explicit_path)
        return load_source(path), SourceKind.FILE, path

    recorded = compile_source_path(beam)
    if recorded is not None:
        try:
            return load_source(recorded), SourceKind.FILE, recorded
        except SourceUnavailableError as exc:
            _log.info("%s; trying debug info", exc)

    debug_info = beam.debug_info
    if debug_info is None:
        raise SourceUnavailableError("no source file and no debug info")
    lines = reconstruct_source(debug_info)
    _log.debug("reconstructed %d source lines from debug info", len(lines))
    return lines, SourceKind.RECONSTRUCTED, None
