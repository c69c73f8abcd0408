"""
beam_spy.etf
============

Erlang external term format (ETF): decoding of the ``LitT``, ``Attr``,
``CInf`` and ``Dbgi`` payloads, an encoder used to assemble BEAM files
in memory, and an Elixir-flavoured term printer (:func:`inspect_term`).

Term mapping
------------
==================  ======================================
Erlang              Python
==================  ======================================
integer             ``int``
float               ``float``
atom                :class:`Atom` (a ``str`` subclass)
binary              ``bytes``
bitstring           :class:`BitString`
tuple               ``tuple``
proper list / nil   ``list``
string (charlist)   ``list`` of ``int``
improper list       :class:`ImproperList`
map                 ``dict`` (unhashable keys frozen)
pid / port / ref    :class:`Pid`, :class:`Port`, :class:`Reference`
fun M:F/A           :class:`ExportFun`
closure             :class:`Fun`
==================  ======================================
"""

from __future__ import annotations

import re
import struct
import zlib
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from beam_spy.errors import EtfDecodeError

VERSION = 131

NEW_FLOAT_EXT = 70
BIT_BINARY_EXT = 77
COMPRESSED = 80
NEW_PID_EXT = 88
NEW_PORT_EXT = 89
NEWER_REFERENCE_EXT = 90
SMALL_INTEGER_EXT = 97
INTEGER_EXT = 98
FLOAT_EXT = 99
ATOM_EXT = 100
PORT_EXT = 102
PID_EXT = 103
SMALL_TUPLE_EXT = 104
LARGE_TUPLE_EXT = 105
NIL_EXT = 106
STRING_EXT = 107
LIST_EXT = 108
BINARY_EXT = 109
SMALL_BIG_EXT = 110
LARGE_BIG_EXT = 111
NEW_FUN_EXT = 112
EXPORT_EXT = 113
NEW_REFERENCE_EXT = 114
SMALL_ATOM_EXT = 115
MAP_EXT = 116
ATOM_UTF8_EXT = 118
SMALL_ATOM_UTF8_EXT = 119
V4_PORT_EXT = 120


# ---------------------------------------------------------------------------
# Term types
# ---------------------------------------------------------------------------

class Atom(str):
    """An Erlang atom.  Compares equal to its name."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"Atom({str(self)!r})"


class FrozenList(tuple):
    """A list used as a map key."""

    __slots__ = ()


class FrozenMap(tuple):
    """A map used as a map key, stored as key/value pairs."""

    __slots__ = ()


@dataclass(frozen=True)
class ImproperList:
    items: Tuple[Any, ...]
    tail: Any


@dataclass(frozen=True)
class BitString:
    data: bytes
    bits: int  # significant bits in the last byte

    @property
    def bit_size(self) -> int:
        if not self.data:
            return 0
        return (len(self.data) - 1) * 8 + self.bits


@dataclass(frozen=True)
class Pid:
    node: Atom
    id: int
    serial: int
    creation: int


@dataclass(frozen=True)
class Port:
    node: Atom
    id: int
    creation: int


@dataclass(frozen=True)
class Reference:
    node: Atom
    creation: int
    ids: Tuple[int, ...]


@dataclass(frozen=True)
class ExportFun:
    module: Atom
    function: Atom
    arity: int


@dataclass(frozen=True)
class Fun:
    module: Atom
    index: int
    arity: int
    uniq: bytes
    free_vars: Tuple[Any, ...] = ()


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

def _freeze(term: Any) -> Any:
    if isinstance(term, list):
        return FrozenList(_freeze(t) for t in term)
    if isinstance(term, dict):
        return FrozenMap((_freeze(k), _freeze(v)) for k, v in term.items())
    if isinstance(term, tuple) and not isinstance(term, (FrozenList, FrozenMap)):
        return tuple(_freeze(t) for t in term)
    return term


class _Reader:
    """Cursor over an ETF byte string."""

    def __init__(self, data: bytes, chunk: Optional[str]) -> None:
        self.data = data
        self.pos = 0
        self.chunk = chunk

    def fail(self, message: str) -> EtfDecodeError:
        return EtfDecodeError(message, chunk=self.chunk, offset=self.pos)

    def take(self, count: int) -> bytes:
        end = self.pos + count
        if count < 0 or end > len(self.data):
            raise self.fail("truncated term")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def unpack(self, fmt: str) -> Tuple[Any, ...]:
        size = struct.calcsize(fmt)
        return struct.unpack(fmt, self.take(size))

    def u8(self) -> int:
        return self.unpack(">B")[0]

    def u16(self) -> int:
        return self.unpack(">H")[0]

    def u32(self) -> int:
        return self.unpack(">I")[0]

    # ----- terms -----------------------------------------------------------

    def term(self) -> Any:
        tag = self.u8()
        if tag == SMALL_INTEGER_EXT:
            return self.u8()
        if tag == INTEGER_EXT:
            return self.unpack(">i")[0]
        if tag == NEW_FLOAT_EXT:
            return self.unpack(">d")[0]
        if tag == FLOAT_EXT:
            text = self.take(31).rstrip(b"\x00").decode("ascii", errors="replace")
            try:
                return float(text)
            except ValueError:
                raise self.fail(f"bad float text {text!r}") from None
        if tag in (ATOM_EXT, ATOM_UTF8_EXT):
            return self._atom(self.u16(), tag == ATOM_UTF8_EXT)
        if tag in (SMALL_ATOM_EXT, SMALL_ATOM_UTF8_EXT):
            return self._atom(self.u8(), tag == SMALL_ATOM_UTF8_EXT)
        if tag == SMALL_TUPLE_EXT:
            return tuple(self.term() for _ in range(self.u8()))
        if tag == LARGE_TUPLE_EXT:
            return tuple(self.term() for _ in range(self.u32()))
        if tag == NIL_EXT:
            return []
        if tag == STRING_EXT:
            return list(self.take(self.u16()))
        if tag == LIST_EXT:
            count = self.u32()
            items = [self.term() for _ in range(count)]
            tail = self.term()
            if tail == []:
                return items
            return ImproperList(tuple(items), tail)
        if tag == BINARY_EXT:
            return self.take(self.u32())
        if tag == BIT_BINARY_EXT:
            size = self.u32()
            bits = self.u8()
            return BitString(self.take(size), bits)
        if tag == SMALL_BIG_EXT:
            return self._big(self.u8())
        if tag == LARGE_BIG_EXT:
            return self._big(self.u32())
        if tag == MAP_EXT:
            arity = self.u32()
            result = {}
            for _ in range(arity):
                key = _freeze(self.term())
                result[key] = self.term()
            return result
        if tag == EXPORT_EXT:
            module = self.term()
            function = self.term()
            arity = self.term()
            return ExportFun(module, function, arity)
        if tag == NEW_FUN_EXT:
            return self._new_fun()
        if tag == PID_EXT:
            node = self.term()
            ident, serial, creation = self.unpack(">IIB")
            return Pid(node, ident, serial, creation)
        if tag == NEW_PID_EXT:
            node = self.term()
            ident, serial, creation = self.unpack(">III")
            return Pid(node, ident, serial, creation)
        if tag == PORT_EXT:
            node = self.term()
            ident, creation = self.unpack(">IB")
            return Port(node, ident, creation)
        if tag == NEW_PORT_EXT:
            node = self.term()
            ident, creation = self.unpack(">II")
            return Port(node, ident, creation)
        if tag == V4_PORT_EXT:
            node = self.term()
            ident, creation = self.unpack(">QI")
            return Port(node, ident, creation)
        if tag in (NEW_REFERENCE_EXT, NEWER_REFERENCE_EXT):
            count = self.u16()
            node = self.term()
            creation = self.u8() if tag == NEW_REFERENCE_EXT else self.u32()
            ids = tuple(self.u32() for _ in range(count))
            return Reference(node, creation, ids)
        raise EtfDecodeError(
            f"unsupported term tag {tag}", chunk=self.chunk, offset=self.pos - 1
        )

    def _atom(self, size: int, utf8: bool) -> Atom:
        raw = self.take(size)
        return Atom(raw.decode("utf-8" if utf8 else "latin-1", errors="replace"))

    def _big(self, count: int) -> int:
        sign = self.u8()
        value = int.from_bytes(self.take(count), "little")
        return -value if sign else value

    def _new_fun(self) -> Fun:
        start = self.pos
        size = self.u32()
        arity = self.u8()
        uniq = self.take(16)
        index, num_free = self.unpack(">II")
        module = self.term()
        self.term()  # old index
        self.term()  # old uniq
        self.term()  # creator pid
        free_vars = tuple(self.term() for _ in range(num_free))
        if self.pos - start != size:
            raise self.fail("fun size mismatch")
        return Fun(module, index, arity, uniq, free_vars)


def decode_term(data: bytes, *, chunk: Optional[str] = None) -> Any:
    """Decode a bare term (no version byte)."""
    reader = _Reader(data, chunk)
    return reader.term()


def binary_to_term(data: bytes, *, chunk: Optional[str] = None) -> Any:
    """Decode ``term_to_binary`` output, compressed or not."""
    reader = _Reader(data, chunk)
    if reader.u8() != VERSION:
        raise EtfDecodeError("bad external term version", chunk=chunk, offset=0)
    if data[1:2] == bytes([COMPRESSED]):
        reader.u8()
        expected = reader.u32()
        try:
            body = zlib.decompress(data[reader.pos:])
        except zlib.error as exc:
            raise EtfDecodeError(f"bad compressed term: {exc}", chunk=chunk,
                                 offset=reader.pos) from exc
        if len(body) != expected:
            raise EtfDecodeError("compressed size mismatch", chunk=chunk, offset=2)
        return decode_term(body, chunk=chunk)
    return reader.term()


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _encode_atom(name: str) -> bytes:
    raw = name.encode("utf-8")
    if len(raw) < 256:
        return bytes([SMALL_ATOM_UTF8_EXT, len(raw)]) + raw
    return struct.pack(">BH", ATOM_UTF8_EXT, len(raw)) + raw


def _encode_int(value: int) -> bytes:
    if 0 <= value < 256:
        return bytes([SMALL_INTEGER_EXT, value])
    if -(1 << 31) <= value < (1 << 31):
        return struct.pack(">Bi", INTEGER_EXT, value)
    magnitude = abs(value)
    raw = magnitude.to_bytes((magnitude.bit_length() + 7) // 8, "little")
    sign = 1 if value < 0 else 0
    if len(raw) < 256:
        return bytes([SMALL_BIG_EXT, len(raw), sign]) + raw
    return struct.pack(">BIB", LARGE_BIG_EXT, len(raw), sign) + raw


def encode_term(term: Any) -> bytes:
    """Encode *term* without the version byte.

    ``str`` values that are not :class:`Atom` encode as binaries; Python
    booleans and ``None`` encode as ``true``/``false``/``nil`` atoms.
    """
    if isinstance(term, bool):
        return _encode_atom("true" if term else "false")
    if term is None:
        return _encode_atom("nil")
    if isinstance(term, Atom):
        return _encode_atom(term)
    if isinstance(term, int):
        return _encode_int(term)
    if isinstance(term, float):
        return struct.pack(">Bd", NEW_FLOAT_EXT, term)
    if isinstance(term, str):
        term = term.encode("utf-8")
    if isinstance(term, (bytes, bytearray)):
        return struct.pack(">BI", BINARY_EXT, len(term)) + bytes(term)
    if isinstance(term, BitString):
        return struct.pack(">BIB", BIT_BINARY_EXT, len(term.data), term.bits) + term.data
    if isinstance(term, (FrozenList, list)):
        if not term:
            return bytes([NIL_EXT])
        if (len(term) < 65536
                and all(isinstance(t, int) and not isinstance(t, bool) and 0 <= t < 256
                        for t in term)):
            return struct.pack(">BH", STRING_EXT, len(term)) + bytes(term)
        body = b"".join(encode_term(t) for t in term)
        return struct.pack(">BI", LIST_EXT, len(term)) + body + bytes([NIL_EXT])
    if isinstance(term, ImproperList):
        body = b"".join(encode_term(t) for t in term.items)
        return struct.pack(">BI", LIST_EXT, len(term.items)) + body + encode_term(term.tail)
    if isinstance(term, FrozenMap):
        term = dict(term)
    if isinstance(term, tuple):
        body = b"".join(encode_term(t) for t in term)
        if len(term) < 256:
            return bytes([SMALL_TUPLE_EXT, len(term)]) + body
        return struct.pack(">BI", LARGE_TUPLE_EXT, len(term)) + body
    if isinstance(term, dict):
        body = b"".join(encode_term(k) + encode_term(v) for k, v in term.items())
        return struct.pack(">BI", MAP_EXT, len(term)) + body
    if isinstance(term, ExportFun):
        return (bytes([EXPORT_EXT]) + _encode_atom(term.module)
                + _encode_atom(term.function) + _encode_int(term.arity))
    raise TypeError(f"cannot encode {type(term).__name__} as an external term")


def term_to_binary(term: Any, *, compressed: bool = False) -> bytes:
    body = encode_term(term)
    if compressed:
        packed = zlib.compress(body)
        return struct.pack(">BBI", VERSION, COMPRESSED, len(body)) + packed
    return bytes([VERSION]) + body


# ---------------------------------------------------------------------------
# Printing
# ---------------------------------------------------------------------------

_IDENT_RE = re.compile(r"^[a-z_][A-Za-z0-9_@]*[?!]?$")
_ALIAS_RE = re.compile(r"^[A-Z][A-Za-z0-9_]*(\.[A-Z][A-Za-z0-9_]*)*$")
_OPERATORS = frozenset({
    "+", "-", "*", "/", "==", "!=", "===", "!==", "<", ">", "<=", ">=",
    "=~", "&&", "||", "!", "<>", "++", "--", "..", "|>", "<<<", ">>>",
    "&&&", "|||", "^^^", "~~~", "<-", "\\\\", "::", "=", "&", "@", "^",
    "|", "<~", "~>", "<~>", "<<~", "~>>", "<|>", "->", "=>", "when",
    "not", "and", "or", "in", "%", "%{}", "{}", "<<>>", "...",
})
_BARE_ATOMS = frozenset({"nil", "true", "false"})
_ESCAPES = {
    "\\": "\\\\", '"': '\\"', "\n": "\\n", "\t": "\\t", "\r": "\\r",
    "\x1b": "\\e", "\x00": "\\0", "\b": "\\b", "\f": "\\f", "\v": "\\v",
    "\x07": "\\a",
}


def _escape(text: str) -> str:
    out = []
    for ch in text:
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ch.isprintable():
            out.append(ch)
        else:
            out.append(f"\\x{{{ord(ch):X}}}")
    return "".join(out)


# stays below the interpreter's default int-to-str cap of 4300 digits
_DECIMAL_BITS_LIMIT = 12000


def inspect_integer(value: int) -> str:
    """Decimal text, or ``#Integer<N bits>`` when too large to print."""
    bits = value.bit_length()
    if bits > _DECIMAL_BITS_LIMIT:
        sign = "-" if value < 0 else ""
        return f"{sign}#Integer<{bits} bits>"
    return str(value)


def module_display_name(name: str) -> str:
    """``Elixir.Foo.Bar`` → ``Foo.Bar``; Erlang modules unchanged."""
    if name.startswith("Elixir.") and _ALIAS_RE.match(name[7:]):
        return name[7:]
    return name


def inspect_atom(name: str) -> str:
    """Render an atom the way ``Kernel.inspect/1`` does."""
    if name in _BARE_ATOMS:
        return name
    if name == "Elixir":
        return "Elixir"
    if name.startswith("Elixir.") and _ALIAS_RE.match(name[7:]):
        return name[7:]
    if _IDENT_RE.match(name) or name in _OPERATORS:
        return ":" + name
    return ':"' + _escape(name) + '"'


def _printable_chars(values: Sequence[Any]) -> bool:
    return bool(values) and all(
        isinstance(v, int) and not isinstance(v, bool)
        and (32 <= v < 127 or v in (9, 10, 13, 27))
        for v in values
    )


def _is_keyword_list(values: Sequence[Any]) -> bool:
    return bool(values) and all(
        isinstance(v, tuple) and len(v) == 2 and isinstance(v[0], Atom)
        for v in values
    )


def _keyword_key(name: str) -> str:
    if _IDENT_RE.match(name):
        return name + ":"
    return '"' + _escape(name) + '":'


def _limited(items: Iterable[str], total: int, limit: Optional[int]) -> List[str]:
    parts = list(items)
    if limit is not None and total > limit:
        parts = parts[:limit] + ["..."]
    return parts


def inspect_binary(data: bytes, limit: Optional[int] = None) -> str:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = None
    if text is not None and all(ch.isprintable() or ch in "\n\t\r\x1b" for ch in text):
        return '"' + _escape(text) + '"'
    shown = data if limit is None else data[:limit]
    parts = [str(b) for b in shown]
    if limit is not None and len(data) > limit:
        parts.append("...")
    return "<<" + ", ".join(parts) + ">>"


def inspect_term(term: Any, limit: Optional[int] = None) -> str:
    """Render *term* in Elixir ``inspect`` notation.

    *limit* caps the number of elements shown per collection.
    """
    if isinstance(term, bool):
        return "true" if term else "false"
    if term is None:
        return "nil"
    if isinstance(term, Atom):
        return inspect_atom(term)
    if isinstance(term, int):
        return inspect_integer(term)
    if isinstance(term, float):
        return repr(term)
    if isinstance(term, str):
        return '"' + _escape(term) + '"'
    if isinstance(term, (bytes, bytearray)):
        return inspect_binary(bytes(term), limit)
    if isinstance(term, BitString):
        if not term.data:
            return "<<>>"
        head = [str(b) for b in term.data[:-1]]
        last = term.data[-1] >> (8 - term.bits) if term.bits else 0
        head.append(f"{last}::size({term.bits})")
        return "<<" + ", ".join(head) + ">>"
    if isinstance(term, FrozenMap):
        return inspect_term(dict(term), limit)
    if isinstance(term, (list, FrozenList)):
        values = list(term)
        if _printable_chars(values):
            return '~c"' + _escape("".join(chr(v) for v in values)) + '"'
        if _is_keyword_list(values):
            items = (f"{_keyword_key(k)} {inspect_term(v, limit)}" for k, v in values)
        else:
            items = (inspect_term(v, limit) for v in values)
        return "[" + ", ".join(_limited(items, len(values), limit)) + "]"
    if isinstance(term, ImproperList):
        items = [inspect_term(v, limit) for v in term.items]
        return "[" + ", ".join(items) + " | " + inspect_term(term.tail, limit) + "]"
    if isinstance(term, tuple):
        items = (inspect_term(v, limit) for v in term)
        return "{" + ", ".join(_limited(items, len(term), limit)) + "}"
    if isinstance(term, dict):
        return _inspect_map(term, limit)
    if isinstance(term, ExportFun):
        return f"&{inspect_atom(term.module)}.{term.function}/{inspect_term(term.arity)}"
    if isinstance(term, Fun):
        return f"#Function<{term.index}/{term.arity} in {inspect_atom(term.module)}>"
    if isinstance(term, Pid):
        return f"#PID<0.{term.id}.{term.serial}>"
    if isinstance(term, Port):
        return f"#Port<0.{term.id}>"
    if isinstance(term, Reference):
        return "#Reference<0." + ".".join(inspect_integer(i) for i in term.ids) + ">"
    return repr(term)


def _inspect_map(term: dict, limit: Optional[int]) -> str:
    struct_name = term.get(Atom("__struct__"))
    pairs = [(k, v) for k, v in term.items() if k != "__struct__" or struct_name is None]
    if all(isinstance(k, Atom) for k, _ in pairs):
        items = (f"{_keyword_key(k)} {inspect_term(v, limit)}" for k, v in pairs)
    else:
        items = (f"{inspect_term(k, limit)} => {inspect_term(v, limit)}" for k, v in pairs)
    body = ", ".join(_limited(items, len(pairs), limit))
    if isinstance(struct_name, Atom):
        return "%" + inspect_atom(struct_name) + "{" + body + "}"
    return "%{" + body + "}"


def to_text(term: Any) -> Optional[str]:
    """Charlist, binary or atom → ``str``; anything else → ``None``."""
    if isinstance(term, str):
        return str(term)
    if isinstance(term, (bytes, bytearray)):
        return bytes(term).decode("utf-8", errors="replace")
    if isinstance(term, list) and all(isinstance(v, int) for v in term):
        try:
            return "".join(chr(v) for v in term)
        except (ValueError, OverflowError):
            return None
    return None


def proplist_get(proplist: Any, key: str, default: Any = None) -> Any:
    """Value of *key* in an Erlang property list of 2-tuples."""
    if not isinstance(proplist, list):
        return default
    for item in proplist:
        if isinstance(item, tuple) and len(item) == 2 and item[0] == key:
            return item[1]
    return default
