"""
beam_spy.genop
==============

Parser for ``genop.tab``, the OTP file that declares every generic BEAM
instruction.

Recognised lines::

    BEAM_FORMAT_NUMBER=0          ignored
    ## @spec move Source Dest     operand names for the next opcode
    ## @doc Move the source ...   starts a doc block for the next opcode
    ##      ... continued         continues the current doc block
    # free comment                ignored
    64: move/2                    opcode definition
    54: -is_constant/2            deprecated opcode definition

Anything else is skipped.  Doc and spec annotations attach to the next
opcode definition and are then reset.

Depends on:
    - parsimonious (PEG parser)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from importlib import resources
from typing import List, Optional, Tuple, Union

from parsimonious.exceptions import ParseError as GrammarParseError
from parsimonious.exceptions import VisitationError
from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from beam_spy.errors import OpcodeTableError

logger = logging.getLogger(__name__)

GENOP_RESOURCE = "genop.tab"

GENOP_GRAMMAR = Grammar(r'''
    table        = line*
    line         = entry? newline
    entry        = format_line / spec_line / doc_line / doc_cont / comment
                 / opcode_def / junk

    format_line  = "BEAM_FORMAT_NUMBER" hspace? "=" hspace? number hspace? &newline
    spec_line    = "## @spec" rest
    doc_line     = "## @doc" rest
    doc_cont     = "##" rest
    comment      = "#" rest
    opcode_def   = number ":" hspace? deprecated? name "/" number hspace? &newline

    deprecated   = "-"
    name         = ~"[a-z_][a-zA-Z0-9_]*"
    number       = ~"[0-9]+"
    rest         = ~"[^\n]*"
    junk         = ~"[^\n]+"
    hspace       = ~"[ \t]+"
    newline      = ~"\r?\n"
''')


# ---------------------------------------------------------------------------
# Line-level entries produced by the visitor
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SpecLine:
    name: str
    args: Tuple[str, ...]


@dataclass(frozen=True)
class DocLine:
    text: str


@dataclass(frozen=True)
class DocContinuation:
    text: str


@dataclass(frozen=True)
class OpcodeLine:
    id: int
    name: str
    arity: int
    deprecated: bool


GenopEntry = Union[SpecLine, DocLine, DocContinuation, OpcodeLine]


@dataclass(frozen=True)
class GenopOpcode:
    """One opcode definition with its attached annotations."""

    id: int
    name: str
    arity: int
    deprecated: bool = False
    doc: Optional[str] = None
    args: Tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Visitor
# ---------------------------------------------------------------------------

class GenopVisitor(NodeVisitor):
    """Turns the parse tree into a flat list of :data:`GenopEntry`."""

    unwrapped_exceptions = (OpcodeTableError,)

    def generic_visit(self, node, visited_children):
        return visited_children or None

    def visit_table(self, node, visited_children):
        return [entry for entry in visited_children if entry is not None]

    def visit_line(self, node, visited_children):
        entry, _ = visited_children
        if not entry:
            return None
        return entry[0]

    def visit_entry(self, node, visited_children):
        return visited_children[0]

    def visit_format_line(self, node, visited_children):
        return None

    def visit_comment(self, node, visited_children):
        return None

    def visit_junk(self, node, visited_children):
        logger.debug("genop.tab: skipping unrecognised line %r", node.text)
        return None

    def visit_spec_line(self, node, visited_children):
        _, rest = visited_children
        parts = rest.split()
        if not parts:
            return None
        return SpecLine(name=parts[0], args=tuple(parts[1:]))

    def visit_doc_line(self, node, visited_children):
        _, rest = visited_children
        return DocLine(rest.strip())

    def visit_doc_cont(self, node, visited_children):
        _, rest = visited_children
        return DocContinuation(rest.strip())

    def visit_opcode_def(self, node, visited_children):
        number, _, _, deprecated, name, _, arity, _, _ = visited_children
        return OpcodeLine(
            id=number,
            name=name,
            arity=arity,
            deprecated=bool(deprecated),
        )

    def visit_deprecated(self, node, visited_children):
        return True

    def visit_name(self, node, visited_children):
        return node.text

    def visit_number(self, node, visited_children):
        return int(node.text)

    def visit_rest(self, node, visited_children):
        return node.text


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_entries(text: str) -> List[GenopEntry]:
    """Parse genop.tab *text* into line entries."""
    if text and not text.endswith("\n"):
        text += "\n"
    try:
        tree = GENOP_GRAMMAR.parse(text)
        return GenopVisitor().visit(tree)
    except (GrammarParseError, VisitationError) as exc:
        raise OpcodeTableError(f"malformed genop.tab: {exc}") from exc


def fold_entries(entries: List[GenopEntry]) -> List[GenopOpcode]:
    """Attach pending ``@doc``/``@spec`` annotations to opcode definitions."""
    opcodes: List[GenopOpcode] = []
    doc_lines: List[str] = []
    spec: Optional[SpecLine] = None

    for entry in entries:
        if isinstance(entry, SpecLine):
            spec = entry
        elif isinstance(entry, DocLine):
            doc_lines = [entry.text]
        elif isinstance(entry, DocContinuation):
            # A bare "##" line only means something inside a doc block.
            if doc_lines:
                doc_lines.append(entry.text)
        elif isinstance(entry, OpcodeLine):
            args: Tuple[str, ...] = ()
            if spec is not None and spec.name == entry.name:
                args = spec.args
            doc = "\n".join(doc_lines).strip() or None
            opcodes.append(GenopOpcode(
                id=entry.id,
                name=entry.name,
                arity=entry.arity,
                deprecated=entry.deprecated,
                doc=doc,
                args=args,
            ))
            doc_lines = []
            spec = None
    return opcodes


def parse_genop(text: str) -> List[GenopOpcode]:
    """Parse genop.tab *text* into opcode definitions, in file order."""
    return fold_entries(parse_entries(text))


def read_genop_text() -> str:
    """Return the genop.tab shipped with the package."""
    source = resources.files("beam_spy") / "data" / GENOP_RESOURCE
    return source.read_text(encoding="utf-8")
