"""
beam_spy.formatter
==================

Canonical text for operands and instructions.

Operand rendering
-----------------
    x(0)  y(1)  fr(2)  f(12)          registers and labels
    :ok  Enum  nil  []                atoms (inspect form), empty list
    42  $a                            integers and characters
    erlang:+/2                        external functions
    alloc(w:2, fn:1)                  allocation lists, zeros omitted
    {string, "abc"}                   string-table slices
    [x(0), f(3)]                      operand lists

Literals go through :func:`beam_spy.etf.inspect_term`.  Lists, maps and
literal terms are cut at ``config.truncate_limit`` characters plus
``...``; long binaries show a byte preview and their full size.

``get_map_elements`` and ``put_map_assoc``/``put_map_exact`` get their
flat key/value list re-paired.  Formatting never raises: shapes that no
rule covers are rendered structurally.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from beam_spy.config import DEFAULT_CONFIG, DisasmConfig
from beam_spy.etf import (
    Atom,
    inspect_atom,
    inspect_binary,
    inspect_integer,
    inspect_term,
    module_display_name,
)
from beam_spy.opcodes import Category, OpcodeTable, opcode_table
from beam_spy.operands import (
    Alloc,
    AtomOp,
    CharOp,
    ExtFunc,
    FReg,
    IntOp,
    Label,
    Literal,
    Nil,
    OperandList,
    RawInstruction,
    RawOperand,
    StringRef,
    TypedReg,
    XReg,
    YReg,
    as_items,
)

ELLIPSIS = "..."

_ALLOC_KEYS = {"words": "w", "floats": "fl", "funs": "fn"}

MAP_GET_OPS = frozenset({"get_map_elements"})
MAP_PUT_OPS = frozenset({"put_map_assoc", "put_map_exact"})


@dataclass(frozen=True)
class Instruction:
    """A formatted instruction."""

    category: Category
    mnemonic: str
    operands: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "op": self.mnemonic,
            "category": self.category.value,
            "args": list(self.operands),
        }

    def to_text(self) -> str:
        if self.mnemonic == "label" and len(self.operands) == 1:
            return f"label {self.operands[0]}:"
        if not self.operands:
            return self.mnemonic
        return f"{self.mnemonic} {', '.join(self.operands)}"


def truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


# ---------------------------------------------------------------------------
# Literals
# ---------------------------------------------------------------------------

def format_literal(value: Any, config: DisasmConfig = DEFAULT_CONFIG) -> str:
    if isinstance(value, (bytes, bytearray)):
        data = bytes(value)
        if len(data) > config.binary_inline_max:
            preview = ", ".join(str(b) for b in data[:config.binary_preview])
            head = truncate(f"<<{preview}", config.truncate_limit)
            return f"{head}...>> ({len(data)} bytes)"
        return truncate(inspect_binary(data), config.truncate_limit)
    if isinstance(value, Atom):
        return inspect_atom(value)
    if isinstance(value, dict):
        return truncate(inspect_term(value, limit=4), config.truncate_limit)
    return truncate(inspect_term(value, limit=8), config.truncate_limit)


def _format_string_ref(data: bytes, config: DisasmConfig) -> str:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = None
    if text is not None and text.isprintable():
        if len(text) > config.string_limit:
            text = text[:config.string_limit - len(ELLIPSIS)] + ELLIPSIS
        return "{string, " + inspect_term(text) + "}"
    return f"{{string, <<{len(data)} bytes>>}}"


def _format_alloc(alloc: Alloc) -> str:
    parts = [
        f"{_ALLOC_KEYS.get(key, key)}:{inspect_integer(count)}"
        for key, count in alloc.items
        if count != 0
    ]
    return f"alloc({', '.join(parts)})"


# ---------------------------------------------------------------------------
# Operands
# ---------------------------------------------------------------------------

def format_operand(operand: Any, config: DisasmConfig = DEFAULT_CONFIG) -> str:
    """Render one operand.  Total over every input."""
    if isinstance(operand, XReg):
        return f"x({inspect_integer(operand.index)})"
    if isinstance(operand, YReg):
        return f"y({inspect_integer(operand.index)})"
    if isinstance(operand, FReg):
        return f"fr({inspect_integer(operand.index)})"
    if isinstance(operand, Label):
        return f"f({inspect_integer(operand.index)})"
    if isinstance(operand, AtomOp):
        return inspect_atom(operand.value)
    if isinstance(operand, Nil) or operand is None:
        return "[]"
    if isinstance(operand, IntOp):
        return inspect_integer(operand.value)
    if isinstance(operand, CharOp):
        return _format_char(operand.value)
    if isinstance(operand, Literal):
        return format_literal(operand.value, config)
    if isinstance(operand, ExtFunc):
        module = module_display_name(str(operand.module))
        return f"{module}:{operand.function}/{inspect_integer(operand.arity)}"
    if isinstance(operand, TypedReg):
        return format_operand(operand.reg, config)
    if isinstance(operand, Alloc):
        return _format_alloc(operand)
    if isinstance(operand, StringRef):
        return _format_string_ref(operand.data, config)
    items = as_items(operand)
    if items is not None:
        return _format_list(items, config)
    if isinstance(operand, tuple):
        return _format_tuple(operand, config)
    if isinstance(operand, RawOperand):
        return f"{{{operand.tag}, {format_operand(operand.value, config)}}}"
    if isinstance(operand, bool):
        return "true" if operand else "false"
    if isinstance(operand, int):
        return inspect_integer(operand)
    if isinstance(operand, Atom):
        return inspect_atom(operand)
    return _format_generic(operand, config)


def _format_char(value: int) -> str:
    try:
        ch = chr(value)
    except (ValueError, OverflowError):
        return inspect_integer(value)
    if ch.isprintable() and not ch.isspace():
        return "$" + ch
    return inspect_integer(value)


def _format_list(items: Sequence[Any], config: DisasmConfig) -> str:
    text = "[" + ", ".join(format_operand(item, config) for item in items) + "]"
    return truncate(text, config.truncate_limit)


def _format_tuple(items: Sequence[Any], config: DisasmConfig) -> str:
    text = "{" + ", ".join(format_operand(item, config) for item in items) + "}"
    return truncate(text, config.truncate_limit)


def _format_generic(operand: Any, config: DisasmConfig) -> str:
    try:
        text = inspect_term(operand, limit=8)
    except (TypeError, ValueError, RecursionError):
        text = object.__repr__(operand)
    return truncate(text, config.truncate_limit)


# ---------------------------------------------------------------------------
# Map instructions
# ---------------------------------------------------------------------------

def format_map_key(operand: Any, config: DisasmConfig = DEFAULT_CONFIG) -> str:
    """Map keys: atoms lose their sigil."""
    if isinstance(operand, AtomOp):
        return str(operand.value)
    if isinstance(operand, Literal) and isinstance(operand.value, Atom):
        return str(operand.value)
    return format_operand(operand, config)


def _pair_up(items: Sequence[Any], sep: str, config: DisasmConfig) -> List[str]:
    rendered = []
    for start in range(0, len(items), 2):
        chunk = items[start:start + 2]
        if len(chunk) == 2:
            key, value = chunk
            rendered.append(f"{format_map_key(key, config)}{sep}{format_operand(value, config)}")
        else:
            rendered.append(", ".join(format_operand(item, config) for item in chunk))
    return rendered


def format_map_get_pairs(items: Sequence[Any], config: DisasmConfig = DEFAULT_CONFIG) -> str:
    """``[key => dest, ...]``"""
    text = "[" + ", ".join(_pair_up(items, " => ", config)) + "]"
    return truncate(text, config.truncate_limit)


def format_map_put_pairs(items: Sequence[Any], config: DisasmConfig = DEFAULT_CONFIG) -> str:
    """``%{key: val, ...}``"""
    text = "%{" + ", ".join(_pair_up(items, ": ", config)) + "}"
    return truncate(text, config.truncate_limit)


def format_operands(
    name: str, operands: Sequence[Any], config: DisasmConfig = DEFAULT_CONFIG
) -> Tuple[str, ...]:
    """Render the operand list of instruction *name*."""
    operands = list(operands)
    if name in MAP_GET_OPS and len(operands) == 3:
        pairs = as_items(operands[2])
        if pairs is not None:
            head = [format_operand(op, config) for op in operands[:2]]
            return tuple(head + [format_map_get_pairs(pairs, config)])
    if name in MAP_PUT_OPS and len(operands) == 5:
        pairs = as_items(operands[4])
        if pairs is not None:
            head = [format_operand(op, config) for op in operands[:4]]
            return tuple(head + [format_map_put_pairs(pairs, config)])
    return tuple(format_operand(op, config) for op in operands)


def format_instruction(
    raw: RawInstruction,
    *,
    table: Optional[OpcodeTable] = None,
    config: DisasmConfig = DEFAULT_CONFIG,
) -> Instruction:
    table = table or opcode_table()
    return Instruction(
        category=table.category(raw.name),
        mnemonic=raw.name,
        operands=format_operands(raw.name, raw.operands, config),
    )


def format_instructions(
    raws: Sequence[RawInstruction],
    *,
    table: Optional[OpcodeTable] = None,
    config: DisasmConfig = DEFAULT_CONFIG,
) -> List[Instruction]:
    table = table or opcode_table()
    return [format_instruction(raw, table=table, config=config) for raw in raws]
