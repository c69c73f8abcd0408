"""
beam_spy.disasm
===============

Tokenizer for the ``Code`` chunk: bytes → :class:`Function` objects of
:class:`~beam_spy.operands.RawInstruction` tokens.

Each instruction is an opcode byte followed by ``arity`` compact terms
(the arity comes from the opcode table).  Operands are resolved against
the module's tables as they are decoded:

* ``a`` terms become atoms (index 0 is ``[]``);
* ``z`` terms become float registers, operand lists, allocation lists,
  literal-table entries or typed registers;
* import indices of ``call_ext*``, ``bif*`` and ``gc_bif*`` become
  :class:`~beam_spy.operands.ExtFunc`;
* ``bs_match_string``/``bs_put_string`` offsets become string-table
  slices;
* ``line`` locations (1-based, 0 = none) become 0-based line-table
  indices, and markers without a location are dropped.

The stream is split into functions at ``func_info``: the ``label`` and
``line`` instructions just before it belong to the new function, and
the label right after it is the entry.  Decoding stops at
``int_code_end``.  An opcode id missing from the table aborts with
:class:`~beam_spy.errors.DisasmError`, since its operand count is
unknown.

Public API
----------
    CodeContext          - tables used to resolve operands
    Function             - one disassembled function
    decode_instructions  - raw instruction tokens of a code stream
    split_functions      - group tokens into functions
    tokenize             - BeamFile → list[Function]
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from beam_spy.beam_file import BeamFile, Import
from beam_spy.compact_term import ExtTag, Tag, decode, decode_int
from beam_spy.config import DEFAULT_CONFIG, DisasmConfig
from beam_spy.errors import CompactTermError, DisasmError
from beam_spy.etf import Atom
from beam_spy.formatter import Instruction, format_instructions
from beam_spy.line_table import LineTable
from beam_spy.opcodes import OpcodeTable, opcode_table
from beam_spy.operands import (
    NIL,
    Alloc,
    AtomOp,
    CharOp,
    ExtFunc,
    FReg,
    IntOp,
    Label,
    Literal,
    OperandList,
    RawInstruction,
    RawOperand,
    StringRef,
    TypedReg,
    XReg,
    YReg,
)

_log = logging.getLogger(__name__)

# opcode name -> operand position holding an import-table index
IMPORT_OPERANDS: Mapping[str, int] = MappingProxyType({
    "call_ext": 1,
    "call_ext_last": 1,
    "call_ext_only": 1,
    "bif0": 0,
    "bif1": 1,
    "bif2": 1,
    "gc_bif1": 2,
    "gc_bif2": 2,
    "gc_bif3": 2,
})

_ALLOC_KINDS = {0: "words", 1: "floats", 2: "funs"}

CODE_CHUNK = "Code"


@dataclass(frozen=True)
class CodeContext:
    """Module tables consulted while decoding operands."""

    atoms: Sequence[Atom] = ()
    imports: Sequence[Import] = ()
    literals: Sequence[Any] = ()
    string_table: bytes = b""

    @classmethod
    def from_beam(cls, beam: BeamFile) -> "CodeContext":
        return cls(
            atoms=tuple(beam.atoms),
            imports=tuple(beam.imports),
            literals=tuple(beam.literals),
            string_table=beam.string_table,
        )


@dataclass(frozen=True)
class Function:
    """One disassembled function.

    ``line_mapping`` maps an instruction index to the source line of the
    nearest preceding ``line`` marker, resolved through the Line table.
    """

    name: Atom
    arity: int
    entry: Optional[int]
    raw_instructions: Tuple[RawInstruction, ...] = ()
    instructions: Tuple[Instruction, ...] = ()
    line_mapping: Mapping[int, int] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def first_line(self) -> Optional[int]:
        """Source line of the first marker, or None without markers."""
        return next(iter(self.line_mapping.values()), None)


# ---------------------------------------------------------------------------
# Operand decoding
# ---------------------------------------------------------------------------

class _OperandDecoder:
    """Decodes one compact-term operand (recursively for lists)."""

    def __init__(self, code: bytes, context: CodeContext, base: int) -> None:
        self.code = code
        self.context = context
        self.base = base  # offset of ``code`` in the chunk, for errors

    def fail(self, message: str, pos: int) -> DisasmError:
        return DisasmError(message, chunk=CODE_CHUNK, offset=self.base + pos)

    def uint(self, pos: int) -> Tuple[int, int]:
        try:
            return decode_int(self.code, pos, expect=Tag.U, chunk=CODE_CHUNK)
        except CompactTermError as exc:
            raise self.fail(exc.message, pos) from exc

    def operand(self, pos: int) -> Tuple[Any, int]:
        try:
            tag, value, size = decode(self.code, pos, chunk=CODE_CHUNK)
        except CompactTermError as exc:
            raise self.fail(exc.message, pos) from exc

        if tag == Tag.U or tag == Tag.I:
            return IntOp(value), size
        if tag == Tag.A:
            return self.atom(value, pos), size
        if tag == Tag.X:
            return XReg(value), size
        if tag == Tag.Y:
            return YReg(value), size
        if tag == Tag.F:
            return Label(value), size
        if tag == Tag.H:
            return CharOp(value), size
        return self.extended(value, pos)

    def atom(self, index: int, pos: int) -> Any:
        if index == 0:
            return NIL
        if index > len(self.context.atoms):
            raise self.fail(f"atom index {index} out of range", pos)
        return AtomOp(self.context.atoms[index - 1])

    def extended(self, ext: int, pos: int) -> Tuple[Any, int]:
        cursor = pos + 1
        if ext == ExtTag.FLOAT:
            if cursor + 8 > len(self.code):
                raise self.fail("truncated float operand", pos)
            (value,) = struct.unpack_from(">d", self.code, cursor)
            return Literal(value), 9
        if ext == ExtTag.LIST:
            count, used = self.uint(cursor)
            cursor += used
            items = []
            for _ in range(count):
                item, used = self.operand(cursor)
                items.append(item)
                cursor += used
            return OperandList(tuple(items)), cursor - pos
        if ext == ExtTag.FLOAT_REG:
            index, used = self.uint(cursor)
            return FReg(index), 1 + used
        if ext == ExtTag.ALLOC_LIST:
            count, used = self.uint(cursor)
            cursor += used
            items = []
            for _ in range(count):
                kind, used = self.uint(cursor)
                cursor += used
                amount, used = self.uint(cursor)
                cursor += used
                items.append((_ALLOC_KINDS.get(kind, f"type{kind}"), amount))
            return Alloc(tuple(items)), cursor - pos
        if ext == ExtTag.LITERAL:
            index, used = self.uint(cursor)
            if index >= len(self.context.literals):
                raise self.fail(f"literal index {index} out of range", pos)
            return Literal(self.context.literals[index], index), 1 + used
        if ext == ExtTag.TYPED_REG:
            reg, used = self.operand(cursor)
            cursor += used
            if not isinstance(reg, (XReg, YReg)):
                raise self.fail("typed register does not wrap a register", pos)
            type_index, used = self.uint(cursor)
            cursor += used
            return TypedReg(reg, type_index), cursor - pos
        _log.debug("unknown extended tag %d at %d", ext, self.base + pos)
        return RawOperand(f"z{ext}", None), 1


# ---------------------------------------------------------------------------
# Per-opcode resolution
# ---------------------------------------------------------------------------

def _resolve_import(operand: Any, context: CodeContext, name: str) -> Any:
    if not isinstance(operand, IntOp):
        return operand
    if not 0 <= operand.value < len(context.imports):
        raise DisasmError(f"{name}: import index {operand.value} out of range",
                          chunk=CODE_CHUNK)
    entry = context.imports[operand.value]
    return ExtFunc(entry.module, entry.function, entry.arity)


def _string_ref(length: Any, offset: Any, context: CodeContext) -> Any:
    if not isinstance(length, IntOp) or not isinstance(offset, IntOp):
        return offset
    start = offset.value
    return StringRef(context.string_table[start:start + length.value])


def _resolve(name: str, operands: List[Any], context: CodeContext) -> List[Any]:
    position = IMPORT_OPERANDS.get(name)
    if position is not None and position < len(operands):
        operands[position] = _resolve_import(operands[position], context, name)
    elif name == "bs_match_string" and len(operands) == 4:
        bits = operands[2]
        if isinstance(bits, IntOp):
            operands[3] = _string_ref(IntOp((bits.value + 7) // 8), operands[3], context)
    elif name == "bs_put_string" and len(operands) == 2:
        operands[1] = _string_ref(operands[0], operands[1], context)
    return operands


# ---------------------------------------------------------------------------
# Stream decoding
# ---------------------------------------------------------------------------

def decode_instructions(
    code: bytes,
    context: CodeContext = CodeContext(),
    *,
    table: Optional[OpcodeTable] = None,
    base: int = 0,
) -> Iterator[RawInstruction]:
    """Yield the instructions of *code* up to ``int_code_end``.

    ``line`` tokens carry a 0-based line-table index; location-less
    markers are not yielded.
    """
    table = table or opcode_table()
    decoder = _OperandDecoder(code, context, base)
    pos = 0
    while pos < len(code):
        start = pos
        descriptor = table.lookup_by_id(code[pos])
        if not descriptor.known:
            raise DisasmError(f"unknown opcode {code[pos]}", chunk=CODE_CHUNK,
                              offset=base + pos)
        pos += 1
        if descriptor.name == "int_code_end":
            return
        operands = []
        for _ in range(descriptor.arity):
            operand, size = decoder.operand(pos)
            operands.append(operand)
            pos += size
        operands = _resolve(descriptor.name, operands, context)

        if descriptor.name == "line":
            location = operands[0] if operands else None
            if isinstance(location, IntOp):
                if location.value == 0:
                    continue
                operands[0] = IntOp(location.value - 1)
        yield RawInstruction(descriptor.name, tuple(operands), base + start)
    _log.debug("code stream ended without int_code_end")


def _line_mapping(raws: Sequence[RawInstruction], line_table: LineTable) -> Dict[int, int]:
    mapping: Dict[int, int] = {}
    current: Optional[int] = None
    for position, raw in enumerate(raws):
        if raw.name == "line" and raw.operands and isinstance(raw.operands[0], IntOp):
            current = line_table.line_for(raw.operands[0].value)
        if current is not None:
            mapping[position] = current
    return mapping


def _func_info_name(raw: RawInstruction) -> Tuple[Atom, int]:
    operands = raw.operands
    name = operands[1].value if len(operands) > 1 and isinstance(operands[1], AtomOp) else Atom("")
    arity = operands[2].value if len(operands) > 2 and isinstance(operands[2], IntOp) else 0
    return name, arity


def split_functions(
    raws: Sequence[RawInstruction],
) -> List[Tuple[Atom, int, Optional[int], List[RawInstruction]]]:
    """Group a flat stream into ``(name, arity, entry, instructions)``."""
    groups: List[Tuple[Atom, int, Optional[int], List[RawInstruction]]] = []
    current: List[RawInstruction] = []
    for raw in raws:
        if raw.name == "func_info":
            # Leading label/line tokens belong to the new function.
            head: List[RawInstruction] = []
            while current and current[-1].name in ("label", "line"):
                head.insert(0, current.pop())
            name, arity = _func_info_name(raw)
            current = head + [raw]
            groups.append((name, arity, None, current))
            continue
        if groups and groups[-1][2] is None and raw.name == "label" \
                and current and current[-1].name == "func_info":
            name, arity, _, instructions = groups[-1]
            entry = raw.operands[0].value if raw.operands and isinstance(raw.operands[0], IntOp) else None
            groups[-1] = (name, arity, entry, instructions)
        current.append(raw)
    if not groups and current:
        _log.debug("%d instructions outside any function", len(current))
    return groups


def tokenize(
    beam: BeamFile,
    *,
    table: Optional[OpcodeTable] = None,
    config: DisasmConfig = DEFAULT_CONFIG,
) -> List[Function]:
    """Disassemble the ``Code`` chunk of *beam* into functions."""
    table = table or opcode_table()
    context = CodeContext.from_beam(beam)
    raws = list(decode_instructions(beam.code, context, table=table,
                                    base=beam.code_offset))
    functions = []
    for name, arity, entry, instructions in split_functions(raws):
        functions.append(Function(
            name=name,
            arity=arity,
            entry=entry,
            raw_instructions=tuple(instructions),
            instructions=tuple(format_instructions(instructions, table=table, config=config)),
            line_mapping=MappingProxyType(_line_mapping(instructions, beam.line_table)),
        ))
    _log.debug("%s: %d functions", beam.module, len(functions))
    return functions
