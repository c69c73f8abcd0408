"""
beam_spy.operands
=================

Decoded instruction operands.  Every kind is a small frozen dataclass;
:data:`Operand` is their union.  :class:`RawOperand` is the fallback arm
for tag/value pairs the tokenizer could not give a meaning to, so new
encodings still flow through formatting and analysis.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from beam_spy.etf import Atom


@dataclass(frozen=True)
class XReg:
    index: int


@dataclass(frozen=True)
class YReg:
    index: int


@dataclass(frozen=True)
class FReg:
    index: int


@dataclass(frozen=True)
class Label:
    index: int


@dataclass(frozen=True)
class AtomOp:
    value: Atom


@dataclass(frozen=True)
class Nil:
    """The empty list (atom index 0)."""


@dataclass(frozen=True)
class IntOp:
    value: int


@dataclass(frozen=True)
class CharOp:
    value: int


@dataclass(frozen=True)
class Literal:
    """An entry of the literal table (or an inline float)."""

    value: Any
    index: Optional[int] = None


@dataclass(frozen=True)
class ExtFunc:
    module: Atom
    function: Atom
    arity: int


@dataclass(frozen=True)
class TypedReg:
    """A register annotated with a type-table index (OTP 25+)."""

    reg: Union[XReg, YReg]
    type_index: int


@dataclass(frozen=True)
class Alloc:
    """Allocation list: ``(("words", n), ("floats", n), ("funs", n))``."""

    items: Tuple[Tuple[str, int], ...]

    def get(self, key: str) -> int:
        return sum(n for k, n in self.items if k == key)


@dataclass(frozen=True)
class OperandList:
    items: Tuple["Operand", ...]


@dataclass(frozen=True)
class StringRef:
    """A slice of the string table (``bs_match_string``)."""

    data: bytes


@dataclass(frozen=True)
class RawOperand:
    tag: str
    value: Any


Operand = Union[
    XReg, YReg, FReg, Label, AtomOp, Nil, IntOp, CharOp, Literal, ExtFunc,
    TypedReg, Alloc, OperandList, StringRef, RawOperand,
]

NIL = Nil()


@dataclass(frozen=True)
class RawInstruction:
    """One tokenized instruction: opcode name plus decoded operands."""

    name: str
    operands: Tuple[Any, ...] = ()
    offset: Optional[int] = None

    def __repr__(self) -> str:
        return f"RawInstruction({self.name!r}, {list(self.operands)!r})"


def as_items(operand: Any) -> Optional[Tuple[Any, ...]]:
    """Items of an operand list in either accepted shape, else ``None``."""
    if isinstance(operand, OperandList):
        return operand.items
    if isinstance(operand, list):
        return tuple(operand)
    return None
