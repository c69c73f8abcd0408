"""
beam_spy.opcodes
================

The opcode table: numeric and symbolic opcode identity mapped to arity,
deprecation, documentation and semantic :class:`Category`.

The table is generated from the packaged ``genop.tab`` the first time it
is requested and shared read-only afterwards.  Categories are assigned
from explicit name lists; any active opcode that none of the lists
claims makes the build fail with :class:`~beam_spy.errors.OpcodeTableError`,
so a newer ``genop.tab`` cannot slip in unclassified instructions.

Public API
----------
    Category            - semantic instruction category
    OpcodeDescriptor    - one opcode
    OpcodeTable         - id/name indexed collection
    build_opcode_table  - build (and validate) from genop.tab text
    opcode_table        - the process-wide table
    category            - shortcut: category of an opcode name
"""

from __future__ import annotations

import enum
import functools
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional, Tuple

from beam_spy.errors import OpcodeTableError
from beam_spy.genop import GenopOpcode, parse_genop, read_genop_text

_log = logging.getLogger(__name__)


class Category(enum.Enum):
    CALL = "call"
    STACK = "stack"
    DATA = "data"
    CONTROL = "control"
    RETURN = "return"
    EXCEPTION = "exception"
    ERROR = "error"
    MESSAGE = "message"
    BINARY = "binary"
    FLOAT = "float"
    META = "meta"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Category tables
# ---------------------------------------------------------------------------

CATEGORY_TABLES: Mapping[Category, FrozenSet[str]] = MappingProxyType({
    Category.CALL: frozenset({
        "call", "call_last", "call_only",
        "call_ext", "call_ext_last", "call_ext_only",
        "call_fun", "call_fun2", "apply", "apply_last",
        "bif0", "bif1", "bif2",
        "gc_bif1", "gc_bif2", "gc_bif3",
    }),
    Category.STACK: frozenset({
        "allocate", "allocate_heap", "deallocate", "trim",
        "test_heap", "init_yregs",
    }),
    Category.DATA: frozenset({
        "move", "swap",
        "get_list", "get_hd", "get_tl",
        "get_tuple_element", "set_tuple_element", "get_map_elements",
        "put_list", "put_tuple2", "put_map_assoc", "put_map_exact",
        "make_fun3", "update_record",
    }),
    Category.CONTROL: frozenset({
        "label", "jump", "select_val", "select_tuple_arity",
        "is_lt", "is_ge", "is_eq", "is_ne", "is_eq_exact", "is_ne_exact",
        "is_integer", "is_float", "is_number", "is_atom", "is_pid",
        "is_reference", "is_port", "is_nil", "is_binary", "is_list",
        "is_nonempty_list", "is_tuple", "is_function", "is_function2",
        "is_boolean", "is_bitstr", "is_map", "is_tagged_tuple",
        "test_arity", "has_map_fields",
    }),
    Category.RETURN: frozenset({"return"}),
    Category.EXCEPTION: frozenset({
        "try", "try_end", "try_case", "try_case_end",
        "catch", "catch_end", "raise", "build_stacktrace", "raw_raise",
    }),
    Category.ERROR: frozenset({
        "badmatch", "if_end", "case_end", "badrecord", "func_info",
    }),
    Category.MESSAGE: frozenset({
        "send", "remove_message", "timeout",
        "loop_rec", "loop_rec_end", "wait", "wait_timeout",
        "recv_marker_bind", "recv_marker_clear",
        "recv_marker_reserve", "recv_marker_use",
    }),
    Category.BINARY: frozenset({
        "bs_get_integer2", "bs_get_float2", "bs_get_binary2",
        "bs_skip_bits2", "bs_test_tail2", "bs_test_unit",
        "bs_match_string", "bs_init_writable",
        "bs_get_utf8", "bs_skip_utf8", "bs_get_utf16", "bs_skip_utf16",
        "bs_get_utf32", "bs_skip_utf32",
        "bs_get_tail", "bs_start_match3", "bs_start_match4",
        "bs_get_position", "bs_set_position",
        "bs_create_bin", "bs_match",
    }),
    Category.FLOAT: frozenset({
        "fadd", "fconv", "fdiv", "fmove", "fmul", "fnegate", "fsub",
    }),
    Category.META: frozenset({
        "line", "executable_line", "debug_line",
        "int_code_end", "on_load", "nif_start",
    }),
})


def _name_index(tables: Mapping[Category, FrozenSet[str]]) -> Dict[str, Category]:
    index: Dict[str, Category] = {}
    for cat, names in tables.items():
        for name in names:
            if name in index:
                raise OpcodeTableError(
                    f"opcode {name!r} listed under both "
                    f"{index[name].value} and {cat.value}"
                )
            index[name] = cat
    return index


_CATEGORY_BY_NAME: Mapping[str, Category] = MappingProxyType(_name_index(CATEGORY_TABLES))


# ---------------------------------------------------------------------------
# Descriptor and table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OpcodeDescriptor:
    """A generic BEAM instruction."""

    id: int
    name: str
    arity: int
    deprecated: bool = False
    category: Category = Category.UNKNOWN
    doc: Optional[str] = None
    args: Tuple[str, ...] = ()
    known: bool = True

    @classmethod
    def placeholder(cls, opcode_id: int) -> "OpcodeDescriptor":
        """Stand-in for an id the table does not define."""
        return cls(id=opcode_id, name=f"unknown_{opcode_id}", arity=0, known=False)


class OpcodeTable:
    """Immutable opcode collection indexed by id and by name."""

    def __init__(self, descriptors: List[OpcodeDescriptor]) -> None:
        by_id: Dict[int, OpcodeDescriptor] = {}
        by_name: Dict[str, OpcodeDescriptor] = {}
        for desc in descriptors:
            if desc.id in by_id:
                raise OpcodeTableError(f"duplicate opcode id {desc.id}")
            if desc.name in by_name:
                raise OpcodeTableError(f"duplicate opcode name {desc.name!r}")
            by_id[desc.id] = desc
            by_name[desc.name] = desc
        self._by_id: Mapping[int, OpcodeDescriptor] = MappingProxyType(by_id)
        self._by_name: Mapping[str, OpcodeDescriptor] = MappingProxyType(by_name)
        self.max_id: int = max(by_id, default=0)

    @property
    def by_id(self) -> Mapping[int, OpcodeDescriptor]:
        return self._by_id

    @property
    def by_name(self) -> Mapping[str, OpcodeDescriptor]:
        return self._by_name

    def lookup_by_id(self, opcode_id: int) -> OpcodeDescriptor:
        """Return the descriptor for *opcode_id*, or a placeholder."""
        desc = self._by_id.get(opcode_id)
        if desc is None:
            return OpcodeDescriptor.placeholder(opcode_id)
        return desc

    def lookup_by_name(self, name: str) -> Optional[OpcodeDescriptor]:
        return self._by_name.get(name)

    def category(self, name: str) -> Category:
        desc = self._by_name.get(name)
        if desc is None:
            return _CATEGORY_BY_NAME.get(name, Category.UNKNOWN)
        return desc.category

    def active(self) -> List[OpcodeDescriptor]:
        """Non-deprecated descriptors in id order."""
        return [d for d in self if not d.deprecated]

    def __iter__(self) -> Iterator[OpcodeDescriptor]:
        return iter(sorted(self._by_id.values(), key=lambda d: d.id))

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __repr__(self) -> str:
        return f"OpcodeTable(opcodes={len(self)}, max_id={self.max_id})"


def _describe(opcode: GenopOpcode) -> OpcodeDescriptor:
    return OpcodeDescriptor(
        id=opcode.id,
        name=opcode.name,
        arity=opcode.arity,
        deprecated=opcode.deprecated,
        category=_CATEGORY_BY_NAME.get(opcode.name, Category.UNKNOWN),
        doc=opcode.doc,
        args=opcode.args,
    )


def build_opcode_table(text: Optional[str] = None) -> OpcodeTable:
    """Build an :class:`OpcodeTable` from genop.tab *text*.

    Uses the packaged genop.tab when *text* is ``None``.  Raises
    :class:`OpcodeTableError` if an active opcode has no category.
    """
    if text is None:
        text = read_genop_text()
    descriptors = [_describe(op) for op in parse_genop(text)]
    unclassified = sorted(
        d.name for d in descriptors
        if not d.deprecated and d.category is Category.UNKNOWN
    )
    if unclassified:
        raise OpcodeTableError(
            "opcodes without a category: " + ", ".join(unclassified)
        )
    table = OpcodeTable(descriptors)
    _log.debug("built %r", table)
    return table


@functools.lru_cache(maxsize=None)
def opcode_table() -> OpcodeTable:
    """The shared table built from the packaged genop.tab."""
    return build_opcode_table()


def category(name: str) -> Category:
    return opcode_table().category(name)
