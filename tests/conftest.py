# tests/conftest.py
"""
Shared fixtures: an in-memory BEAM file builder and a small sample
module.

The sample module ``math_demo`` is what the compiler would emit for::

    1  -module(math_demo).
    2  -export([fact/1, double/1]).
    3  fact(0) ->
    4      1;
    5  fact(N) ->
    6      N * fact(N - 1).
    7
    8  double(L) -> lists:reverse(L).
"""

import struct
import zlib

import pytest

from beam_spy.compact_term import ExtTag, Tag, encode, encode_ext
from beam_spy.etf import Atom, term_to_binary
from beam_spy.opcodes import opcode_table


# ---------------------------------------------------------------------------
# Operand encoders
# ---------------------------------------------------------------------------

def u(value):
    return encode(Tag.U, value)


def i(value):
    return encode(Tag.I, value)


def a(index):
    return encode(Tag.A, index)


def x(index):
    return encode(Tag.X, index)


def y(index):
    return encode(Tag.Y, index)


def f(label):
    return encode(Tag.F, label)


def lit(index):
    return encode_ext(ExtTag.LITERAL) + u(index)


def op_list(*items):
    return encode_ext(ExtTag.LIST) + u(len(items)) + b"".join(items)


def alloc_list(*pairs):
    body = b"".join(u(kind) + u(count) for kind, count in pairs)
    return encode_ext(ExtTag.ALLOC_LIST) + u(len(pairs)) + body


# ---------------------------------------------------------------------------
# Chunk assembly
# ---------------------------------------------------------------------------

def chunk(chunk_id, data):
    padding = b"\x00" * (-len(data) % 4)
    return chunk_id.encode("latin-1") + struct.pack(">I", len(data)) + data + padding


def container(chunks):
    body = b"BEAM" + b"".join(chunks)
    return b"FOR1" + struct.pack(">I", len(body)) + body


def line_chunk(lines, file_names=()):
    header = struct.pack(">IIIII", 0, 0, len(lines), len(lines), len(file_names))
    entries = b"".join(encode(Tag.I, n) for n in lines)
    names = b"".join(struct.pack(">H", len(n)) + n.encode() for n in file_names)
    return header + entries + names


class BeamBuilder:
    """Assembles a BEAM file from symbolic pieces.

    Atoms are 1-based and the module name is always atom 1.  Imports and
    literals are 0-based.  ``op`` checks operand counts against the
    opcode table.
    """

    def __init__(self, module):
        self.atoms = [module]
        self.imports = []
        self.exports = []
        self.locals = []
        self.literals = []
        self.lines = []
        self.string_table = b""
        self.code = bytearray()
        self.labels = 0
        self.functions = 0
        self.extra = []

    def atom(self, name):
        if name not in self.atoms:
            self.atoms.append(name)
        return self.atoms.index(name) + 1

    def import_(self, module, name, arity):
        entry = (self.atom(module), self.atom(name), arity)
        if entry not in self.imports:
            self.imports.append(entry)
        return self.imports.index(entry)

    def export(self, name, arity, label):
        self.exports.append((self.atom(name), arity, label))

    def literal(self, term):
        self.literals.append(term)
        return len(self.literals) - 1

    def line(self, number):
        """Register a line entry; returns the location for ``line``."""
        self.lines.append(number)
        return len(self.lines)

    def op(self, name, *operands):
        desc = opcode_table().lookup_by_name(name)
        assert desc is not None, name
        assert len(operands) == desc.arity, (name, len(operands), desc.arity)
        if name == "label":
            self.labels += 1
        if name == "func_info":
            self.functions += 1
        self.code.append(desc.id)
        for operand in operands:
            self.code.extend(operand)
        return self

    def add_chunk(self, chunk_id, data):
        self.extra.append((chunk_id, data))
        return self

    # ----- serialisation ----------------------------------------------------

    def _atom_chunk(self):
        body = struct.pack(">i", len(self.atoms))
        for name in self.atoms:
            raw = name.encode("utf-8")
            body += bytes([len(raw)]) + raw
        return body

    def _triples(self, rows):
        return struct.pack(">I", len(rows)) + b"".join(struct.pack(">III", *r) for r in rows)

    def _code_chunk(self):
        max_op = max(opcode_table().by_id)
        header = struct.pack(">IIIII", 16, 0, max_op, self.labels + 1, self.functions)
        return header + bytes(self.code)

    def _literal_chunk(self):
        body = struct.pack(">I", len(self.literals))
        for term in self.literals:
            raw = term_to_binary(term)
            body += struct.pack(">I", len(raw)) + raw
        return struct.pack(">I", len(body)) + zlib.compress(body)

    def build(self):
        chunks = [
            chunk("AtU8", self._atom_chunk()),
            chunk("Code", self._code_chunk()),
            chunk("StrT", self.string_table),
            chunk("ImpT", self._triples(self.imports)),
            chunk("ExpT", self._triples(self.exports)),
            chunk("LocT", self._triples(self.locals)),
        ]
        if self.literals:
            chunks.append(chunk("LitT", self._literal_chunk()))
        if self.lines:
            chunks.append(chunk("Line", line_chunk(self.lines)))
        for chunk_id, data in self.extra:
            chunks.append(chunk(chunk_id, data))
        return container(chunks)


# ---------------------------------------------------------------------------
# Sample module
# ---------------------------------------------------------------------------

SAMPLE_SOURCE = """\
-module(math_demo).
-export([fact/1, double/1]).
fact(0) ->
    1;
fact(N) ->
    N * fact(N - 1).

double(L) -> lists:reverse(L).
"""


def build_math_demo(source_path=None):
    """The ``math_demo`` module described at the top of this file."""
    b = BeamBuilder("math_demo")
    fact = b.atom("fact")
    double = b.atom("double")
    minus = b.import_("erlang", "-", 2)
    times = b.import_("erlang", "*", 2)
    reverse = b.import_("lists", "reverse", 1)
    l_fact, l_clause, l_rec, l_double = b.line(3), b.line(4), b.line(6), b.line(8)

    # fact/1
    b.op("label", u(1))
    b.op("line", u(l_fact))
    b.op("func_info", a(1), a(fact), u(1))
    b.op("label", u(2))
    b.op("is_eq_exact", f(3), x(0), i(0))
    b.op("line", u(l_clause))
    b.op("move", i(1), x(0))
    b.op("return")
    b.op("label", u(3))
    b.op("line", u(l_rec))
    b.op("allocate", u(1), u(1))
    b.op("gc_bif2", f(0), u(1), u(minus), x(0), i(1), x(1))
    b.op("move", x(0), y(0))
    b.op("move", x(1), x(0))
    b.op("call", u(1), f(2))
    b.op("gc_bif2", f(0), u(1), u(times), y(0), x(0), x(0))
    b.op("deallocate", u(1))
    b.op("return")

    # double/1
    b.op("label", u(4))
    b.op("line", u(l_double))
    b.op("func_info", a(1), a(double), u(1))
    b.op("label", u(5))
    b.op("call_ext_only", u(1), u(reverse))
    b.op("int_code_end")

    b.export("fact", 1, 2)
    b.export("double", 1, 5)

    compile_info = [
        (Atom("version"), [ord(c) for c in "8.4.1"]),
        (Atom("options"), []),
    ]
    if source_path is not None:
        compile_info.append((Atom("source"), [ord(c) for c in str(source_path)]))
    b.add_chunk("CInf", term_to_binary(compile_info))
    return b.build()


@pytest.fixture(scope="module")
def math_demo_bytes():
    return build_math_demo()


@pytest.fixture
def math_demo_file(tmp_path):
    """``math_demo.beam`` on disk, with its source file next to it."""
    source = tmp_path / "math_demo.erl"
    source.write_text(SAMPLE_SOURCE, encoding="utf-8")
    beam = tmp_path / "math_demo.beam"
    beam.write_bytes(build_math_demo(source))
    return beam
