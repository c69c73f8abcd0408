"""
beam_spy: BEAM object file analyzer
===================================

Reads compiled ``.beam`` files and renders their contents: chunk
directory, symbol tables, disassembly (optionally interleaved with
source), and the static call graph.

Core modules
------------
compact_term
    Decoder for BEAM's tagged variable-length integer encoding.
line_table
    ``Line`` chunk → 0-based index to source line map.
opcodes
    Opcode descriptors built from ``genop.tab`` with a category per opcode.
formatter
    Canonical text for operands and instructions.
source
    Groups instructions by source line and attaches source text.
callgraph
    Static call graph from call-site instructions.

Supporting modules
------------------
beam_file, etf, disasm, reconstruct, render, textfmt, filter, resolver,
config, errors, main (the ``beam-spy`` command).

Quick start
-----------
>>> from beam_spy import BeamFile, tokenize, build_callgraph
>>> beam = BeamFile.from_path("Elixir.Foo.beam")           # doctest: +SKIP
>>> print(build_callgraph(beam.module, tokenize(beam)).to_dot())  # doctest: +SKIP

Package layout
--------------
::

    beam_spy/
    ├── __init__.py            ← this file
    ├── compact_term.py
    ├── line_table.py
    ├── genop.py / opcodes.py  (+ data/genop.tab)
    ├── operands.py / formatter.py
    ├── etf.py / beam_file.py / disasm.py
    ├── source.py / reconstruct.py
    ├── callgraph.py
    ├── render.py / textfmt.py
    ├── filter.py / resolver.py / config.py / errors.py
    └── main.py
"""

from __future__ import annotations

import logging
from typing import List

__version__ = "0.1.0"

from beam_spy.beam_file import BeamFile, Chunk, Export, Import, open_beam
from beam_spy.callgraph import CallGraph, build_callgraph
from beam_spy.compact_term import Tag, decode
from beam_spy.config import DEFAULT_CONFIG, DisasmConfig
from beam_spy.disasm import Function, tokenize
from beam_spy.errors import BeamSpyError, DecodeError
from beam_spy.formatter import Instruction, format_instruction, format_operand
from beam_spy.line_table import LineTable, build_line_table
from beam_spy.opcodes import Category, OpcodeDescriptor, OpcodeTable, opcode_table
from beam_spy.source import RenderMode, SourceGroup, group_by_line, merge_groups

__all__: List[str] = [
    "__version__",
    "BeamFile",
    "Chunk",
    "Export",
    "Import",
    "open_beam",
    "CallGraph",
    "build_callgraph",
    "Tag",
    "decode",
    "DEFAULT_CONFIG",
    "DisasmConfig",
    "Function",
    "tokenize",
    "BeamSpyError",
    "DecodeError",
    "Instruction",
    "format_instruction",
    "format_operand",
    "LineTable",
    "build_line_table",
    "Category",
    "OpcodeDescriptor",
    "OpcodeTable",
    "opcode_table",
    "RenderMode",
    "SourceGroup",
    "group_by_line",
    "merge_groups",
]

logging.getLogger(__name__).addHandler(logging.NullHandler())
