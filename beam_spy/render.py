"""
beam_spy.render
===============

Presentation of analysis results as plain text and JSON.

Disassembly text layout::

    module: Foo
    exports: [bar/1, baz/0]

    function bar/1 (entry: 2)
    ────────────────────────────────────────────────────────
      label 1:
      func_info Foo, :bar, 1
      ...

With source interleaving every line group is rendered as either a
source block (line number, ``│``, dedented source text, then the
instructions) or, when its line lies more than ``home_range`` lines
from the function's first line, a ``→ name (line N)`` reference.  For
real source files small gaps between consecutive markers are filled in,
stopping at the next function definition.

Public API
----------
    render_disasm_text / disasm_json      - disassembly
    render_function_text                  - one function
    classify_distance                     - INLINE/UNAVAILABLE → DISTANT
    build_function_index                  - source line → enclosing function
    info_data / render_info               - ``info`` command
    chunks_data / render_chunks / render_raw_chunk
    render_atoms / render_exports / render_imports / exports_json / imports_json
"""

from __future__ import annotations

import datetime
import re
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from beam_spy import textfmt
from beam_spy.beam_file import BeamFile, Export, Import
from beam_spy.config import DEFAULT_CONFIG, DisasmConfig
from beam_spy.etf import inspect_atom, inspect_integer, module_display_name, proplist_get, to_text
from beam_spy.formatter import Instruction
from beam_spy.line_table import EMPTY_LINE_TABLE, LineTable
from beam_spy.source import (
    RenderMode,
    SourceGroup,
    SourceKind,
    SourceLines,
    annotate_groups,
    first_line,
    group_by_line,
)

FUNC_DEF_RE = re.compile(
    r"^\s*((def|defp|defmacro|defmacrop|defguard|defguardp|defdelegate)\s+(\w+)"
    r"|\s*(\w+)\/\d+:)"
)

BORDER = "│"
PADDING = " " * 5
RULE = "─" * 56


# ===========================================================================
# Instructions
# ===========================================================================

def instruction_text(instruction: Instruction) -> str:
    return "  " + instruction.to_text()


def bytecode_block(instructions: Sequence[Instruction]) -> str:
    lines = [f"{PADDING}{BORDER}    {instruction_text(i)}" for i in instructions]
    lines.append(f"{PADDING}{BORDER}")
    return "\n".join(lines)


# ===========================================================================
# Source helpers
# ===========================================================================

def function_name_at(text: str) -> Optional[str]:
    """Name defined on a source line (``def foo`` or ``foo/1:``)."""
    match = FUNC_DEF_RE.match(text)
    if match is None:
        return None
    return match.group(3) or match.group(4)


def build_function_index(source_lines: SourceLines) -> Dict[int, str]:
    """Map each source line to the function defined at or above it."""
    starts: Dict[int, str] = {}
    for line, text in source_lines.items():
        name = function_name_at(text)
        if name is not None:
            starts[line] = name
    if not starts:
        return {}
    index: Dict[int, str] = {}
    current: Optional[str] = None
    for line in range(1, max(source_lines) + 1):
        current = starts.get(line, current)
        if current is not None:
            index[line] = current
    return index


def _boundary_in(source_lines: SourceLines, first: int, last: int) -> Optional[int]:
    for line in range(first, last + 1):
        text = source_lines.get(line)
        if text is not None and FUNC_DEF_RE.match(text):
            return line
    return None


def group_end_line(
    start: int,
    following: Optional[int],
    source_lines: SourceLines,
    *,
    fill_gaps: bool,
    small_gap: int,
) -> int:
    """Last source line shown for a group starting at *start*."""
    if not fill_gaps or following is None:
        return start
    if following > start and following - start <= small_gap:
        boundary = _boundary_in(source_lines, start + 1, following - 1)
        if boundary is None:
            return following - 1
        return max(start, boundary - 1)
    return start


def _indent_width(text: str) -> int:
    width = 0
    for ch in text:
        if ch == " ":
            width += 1
        elif ch == "\t":
            width += 2
        else:
            break
    return width


def dedent(text: str, amount: int) -> str:
    while amount > 0 and text:
        if text[0] == " ":
            text, amount = text[1:], amount - 1
        elif text[0] == "\t":
            if amount == 1:
                return " " + text[1:]
            text, amount = text[1:], amount - 2
        else:
            break
    return text


def classify_distance(
    groups: Sequence[SourceGroup],
    home: Optional[int],
    home_range: int,
) -> List[SourceGroup]:
    """Mark groups whose line is beyond *home_range* of *home* as distant."""
    if home is None:
        return list(groups)
    return [
        replace(g, mode=RenderMode.DISTANT)
        if g.line is not None and abs(g.line - home) > home_range
        else g
        for g in groups
    ]


def source_block(
    start: int,
    end: int,
    source_lines: SourceLines,
    instructions: Sequence[Instruction],
) -> str:
    shown = [
        (line, source_lines[line])
        for line in range(start, end + 1)
        if source_lines.get(line) is not None and source_lines[line].strip()
    ]
    if not shown:
        header = f"{start:>4} {BORDER}"
    else:
        indent = min(_indent_width(text) for _, text in shown)
        header = "\n".join(
            f"{line:>4} {BORDER} {dedent(text, indent)}" for line, text in shown
        )
    return header + "\n" + bytecode_block(instructions)


def distant_block(
    line: int,
    function_index: Mapping[int, str],
    instructions: Sequence[Instruction],
) -> str:
    name = function_index.get(line)
    ref = f"{name} (line {line})" if name else f"line {line}"
    return f"→ {ref}\n" + bytecode_block(instructions)


def render_groups(
    groups: Sequence[SourceGroup],
    source_lines: SourceLines,
    *,
    fill_gaps: bool = False,
    home: Optional[int] = None,
    config: DisasmConfig = DEFAULT_CONFIG,
) -> str:
    if home is None:
        home = first_line(groups)
    groups = classify_distance(groups, home, config.home_range)
    function_index: Mapping[int, str] = {}
    if any(g.mode is RenderMode.DISTANT for g in groups):
        function_index = build_function_index(source_lines)

    blocks = []
    for position, group in enumerate(groups):
        if group.line is None:
            blocks.append(bytecode_block(group.instructions))
        elif group.mode is RenderMode.DISTANT:
            blocks.append(distant_block(group.line, function_index, group.instructions))
        else:
            following = groups[position + 1].line if position + 1 < len(groups) else None
            end = group_end_line(group.line, following, source_lines,
                                 fill_gaps=fill_gaps, small_gap=config.small_gap)
            blocks.append(source_block(group.line, end, source_lines, group.instructions))
    return "\n".join(blocks)


# ===========================================================================
# Disassembly
# ===========================================================================

def function_header(function: Any) -> str:
    entry = inspect_integer(function.entry) if function.entry is not None else "-"
    return f"function {function.name}/{function.arity} (entry: {entry})"


def render_function_text(
    function: Any,
    *,
    line_table: LineTable = EMPTY_LINE_TABLE,
    source_lines: Optional[SourceLines] = None,
    source_kind: Optional[SourceKind] = None,
    source_requested: bool = False,
    config: DisasmConfig = DEFAULT_CONFIG,
) -> str:
    head = f"\n{function_header(function)}\n{RULE}\n"
    if source_lines:
        groups = annotate_groups(group_by_line(function.instructions, line_table),
                                 source_lines)
        return head + render_groups(
            groups, source_lines,
            fill_gaps=source_kind is SourceKind.FILE,
            home=getattr(function, "first_line", None),
            config=config,
        )
    instructions = function.instructions
    if source_requested:
        instructions = [i for i in instructions if i.mnemonic != "line"]
    return head + "\n".join(instruction_text(i) for i in instructions)


def export_names(exports: Sequence[Export]) -> List[str]:
    return [f"{e.function}/{e.arity}" for e in exports]


def render_disasm_text(
    module: str,
    exports: Sequence[Export],
    functions: Sequence[Any],
    **options: Any,
) -> str:
    """Whole-module disassembly; *options* go to :func:`render_function_text`."""
    header = f"module: {inspect_atom(module)}\nexports: [{', '.join(export_names(exports))}]\n"
    body = "\n".join(render_function_text(f, **options) for f in functions)
    return header + "\n" + body


def disasm_json(module: str, exports: Sequence[Export], functions: Sequence[Any]) -> Dict[str, Any]:
    return {
        "module": str(module),
        "exports": export_names(exports),
        "functions": [
            {
                "name": str(f.name),
                "arity": f.arity,
                "entry": f.entry,
                "instructions": [
                    {"op": i.mnemonic, "args": list(i.operands)} for i in f.instructions
                ],
            }
            for f in functions
        ],
    }


# ===========================================================================
# info / chunks
# ===========================================================================

def format_compile_time(value: Any) -> Optional[str]:
    """``{{Y,M,D},{H,Mi,S}}`` → ISO-8601 with a ``Z`` suffix."""
    try:
        (year, month, day), (hour, minute, second) = value
        stamp = datetime.datetime(year, month, day, hour, minute, second)
    except (TypeError, ValueError):
        return None
    return stamp.isoformat() + "Z"


def info_data(beam: BeamFile) -> Dict[str, Any]:
    compile_info = beam.compile_info
    return {
        "module": str(beam.module),
        "file": to_text(proplist_get(compile_info, "source")),
        "compile_time": format_compile_time(proplist_get(compile_info, "time")),
        "otp_version": to_text(proplist_get(compile_info, "version")),
        "md5": beam.md5.hex(),
        "size_bytes": beam.size,
        "chunk_count": len(beam.chunks),
        "export_count": len(beam.exports),
        "import_count": len(beam.imports),
        "atom_count": len(beam.atoms),
    }


def render_info(data: Mapping[str, Any]) -> str:
    size = data.get("size_bytes")
    pairs: List[Tuple[str, Any]] = [
        ("Module", data["module"]),
        ("File", data.get("file")),
        ("Compile time", data.get("compile_time")),
        ("OTP version", data.get("otp_version")),
        ("MD5", data["md5"]),
        ("Size", f"{textfmt.format_value(size)} bytes" if size is not None else None),
        ("Chunks", data["chunk_count"]),
        ("Exports", data["export_count"]),
        ("Imports", data["import_count"]),
        ("Atoms", data["atom_count"]),
    ]
    return textfmt.key_value(pairs)


def chunks_data(beam: BeamFile) -> Dict[str, Any]:
    return {
        "chunks": [
            {"id": c.id, "description": c.description, "size": c.size}
            for c in beam.chunks
        ],
        "total_size": sum(c.size for c in beam.chunks),
    }


def render_chunks(data: Mapping[str, Any]) -> str:
    rows = [
        [c["id"], c["description"], textfmt.format_value(c["size"])]
        for c in data["chunks"]
    ]
    table = textfmt.table(rows, ["ID", "Description", "Size"])
    return f"{table}\nTotal: {textfmt.format_value(data['total_size'])}"


def render_raw_chunk(chunk_id: str, data: bytes) -> str:
    return f"Chunk: {chunk_id} ({len(data)} bytes)\n" + textfmt.hex_dump(data)


# ===========================================================================
# atoms / exports / imports
# ===========================================================================

def render_atoms(atoms: Sequence[str]) -> str:
    return "\n".join(str(a) for a in atoms)


def sorted_exports(exports: Sequence[Export]) -> List[Export]:
    return sorted(exports, key=lambda e: (str(e.function), e.arity))


def render_exports(exports: Sequence[Export], *, plain: bool = False) -> str:
    if plain:
        return "\n".join(f"{e.function}/{e.arity}" for e in exports)
    return textfmt.table(([str(e.function), e.arity] for e in exports),
                         ["Function", "Arity"])


def exports_json(exports: Sequence[Export]) -> List[Dict[str, Any]]:
    return [{"name": str(e.function), "arity": e.arity} for e in exports]


def sorted_imports(imports: Sequence[Import]) -> List[Import]:
    return sorted(imports, key=lambda i: (str(i.module), str(i.function), i.arity))


def render_imports(imports: Sequence[Import], *, group: bool = False) -> str:
    if group:
        by_module: Dict[str, List[Import]] = {}
        for entry in imports:
            by_module.setdefault(str(entry.module), []).append(entry)
        blocks = []
        for module in sorted(by_module):
            lines = "\n".join(f"  {i.function}/{i.arity}" for i in by_module[module])
            blocks.append(f"{module_display_name(module)}\n{lines}")
        return "\n\n".join(blocks)
    return textfmt.table(
        ([module_display_name(str(i.module)), str(i.function), i.arity] for i in imports),
        ["Module", "Function", "Arity"],
    )


def imports_json(imports: Sequence[Import]) -> List[Dict[str, Any]]:
    return [
        {"module": module_display_name(str(i.module)), "name": str(i.function), "arity": i.arity}
        for i in imports
    ]
