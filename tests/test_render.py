# tests/test_render.py
"""
Tests for the text and JSON presentation layer.
"""

from types import MappingProxyType

import pytest

from beam_spy.beam_file import BeamFile, Export, Import
from beam_spy.config import DisasmConfig
from beam_spy.disasm import Function, tokenize
from beam_spy.etf import Atom
from beam_spy.formatter import Instruction
from beam_spy.opcodes import Category
from beam_spy.render import (
    RULE,
    build_function_index,
    bytecode_block,
    chunks_data,
    classify_distance,
    dedent,
    disasm_json,
    exports_json,
    format_compile_time,
    function_name_at,
    group_end_line,
    imports_json,
    info_data,
    render_chunks,
    render_disasm_text,
    render_exports,
    render_function_text,
    render_imports,
    render_info,
    render_raw_chunk,
    sorted_exports,
    sorted_imports,
    source_block,
)
from beam_spy.source import RenderMode, SourceGroup, SourceKind
from tests.conftest import SAMPLE_SOURCE


def _ins(mnemonic, *operands):
    return Instruction(Category.DATA, mnemonic, operands)


def _line(index):
    return Instruction(Category.META, "line", (str(index),))


SOURCE_LINES = dict(enumerate(SAMPLE_SOURCE.split("\n"), start=1))


@pytest.fixture(scope="module")
def module(math_demo_bytes):
    beam = BeamFile.from_bytes(math_demo_bytes)
    return beam, tokenize(beam)


class TestHelpers:

    def test_bytecode_block(self):
        assert bytecode_block([_ins("return")]) == "     │      return\n     │"

    @pytest.mark.parametrize("text, expected", [
        ("  def run(x) do", "run"),
        ("defp helper(a), do: a", "helper"),
        ("fact/1: fact(0) ->", "fact"),
        ("    N * fact(N - 1).", None),
        ("fact(0) ->", None),
    ])
    def test_function_name_at(self, text, expected):
        assert function_name_at(text) == expected

    def test_function_index(self):
        index = build_function_index({1: "defmodule M do", 2: "  def a, do: 1", 3: "",
                                      4: "  def b(x) do", 5: "    x"})
        assert index == {2: "a", 3: "a", 4: "b", 5: "b"}

    def test_function_index_without_definitions(self):
        assert build_function_index({1: "x"}) == {}

    def test_dedent(self):
        assert dedent("    x", 2) == "  x"
        assert dedent("\tx", 2) == "x"
        assert dedent("\tx", 1) == " x"
        assert dedent("x", 4) == "x"

    def test_classify_distance(self):
        groups = [SourceGroup(10), SourceGroup(110), SourceGroup(111), SourceGroup(None)]
        modes = [g.mode for g in classify_distance(groups, 10, 100)]
        assert modes == [RenderMode.UNAVAILABLE, RenderMode.UNAVAILABLE,
                         RenderMode.DISTANT, RenderMode.UNAVAILABLE]

    def test_classify_without_home(self):
        groups = [SourceGroup(500)]
        assert classify_distance(groups, None, 100) == groups


class TestGapFill:

    def test_fills_up_to_next_marker(self):
        lines = {5: "a", 6: "b", 7: "c", 8: "d"}
        assert group_end_line(5, 8, lines, fill_gaps=True, small_gap=10) == 7

    def test_stops_at_function_definition(self):
        lines = {5: "a", 6: "def other do", 7: "c", 8: "d"}
        assert group_end_line(5, 8, lines, fill_gaps=True, small_gap=10) == 5

    def test_large_gap_not_filled(self):
        assert group_end_line(5, 30, {}, fill_gaps=True, small_gap=10) == 5

    def test_backwards_or_disabled(self):
        assert group_end_line(9, 3, {}, fill_gaps=True, small_gap=10) == 9
        assert group_end_line(5, 8, {}, fill_gaps=False, small_gap=10) == 5
        assert group_end_line(5, None, {}, fill_gaps=True, small_gap=10) == 5

    def test_source_block_dedents_and_skips_blank(self):
        lines = {4: "    1;", 5: "", 6: "    x."}
        text = source_block(4, 6, lines, [_ins("return")])
        assert text.split("\n")[:2] == ["   4 │ 1;", "   6 │ x."]

    def test_source_block_without_text(self):
        assert source_block(9, 9, {}, []).startswith("   9 │\n")


class TestFunctionText:

    def test_plain(self, module):
        _, functions = module
        text = render_function_text(functions[1])
        assert text == (
            f"\nfunction double/1 (entry: 5)\n{RULE}\n"
            "  label 4:\n"
            "  line 3\n"
            "  func_info :math_demo, :double, 1\n"
            "  label 5:\n"
            "  call_ext_only 1, lists:reverse/1"
        )

    def test_source_requested_but_missing_hides_line_markers(self, module):
        _, functions = module
        text = render_function_text(functions[1], source_requested=True)
        assert "line 3" not in text
        assert "call_ext_only" in text

    def test_interleaved_source(self, module):
        beam, functions = module
        text = render_function_text(functions[0], line_table=beam.line_table,
                                    source_lines=SOURCE_LINES,
                                    source_kind=SourceKind.FILE)
        lines = text.split("\n")
        assert lines[1] == "function fact/1 (entry: 2)"
        assert lines[3:6] == ["     │      label 1:", "     │", "   3 │ fact(0) ->"]
        assert "     │      func_info :math_demo, :fact, 1" in lines
        assert "   4 │     1;" in lines
        assert "   5 │ fact(N) ->" in lines
        assert "   6 │ N * fact(N - 1)." in lines
        assert not any("line 0" in line for line in lines)

    def test_reconstructed_source_has_no_gap_fill(self, module):
        beam, functions = module
        text = render_function_text(functions[0], line_table=beam.line_table,
                                    source_lines=SOURCE_LINES,
                                    source_kind=SourceKind.RECONSTRUCTED)
        assert "   5 │" not in text

    def test_distant_reference(self):
        function = Function(Atom("foo"), 1, 2, (), (
            _line(10), _ins("move", "x(0)", "x(1)"),
            _line(200), _ins("return"),
        ))
        source = {10: "foo/1: foo(X) ->", 200: "bar/0: bar() ->"}
        text = render_function_text(function, source_lines=source,
                                    source_kind=SourceKind.RECONSTRUCTED)
        assert "→ bar (line 200)\n     │      return\n     │" in text
        assert "  10 │ foo/1: foo(X) ->" in text

    def test_distant_without_enclosing_function(self):
        function = Function(Atom("foo"), 1, 2, (), (
            _line(10), _ins("move", "x(0)", "x(1)"),
            _line(300), _ins("return"),
        ))
        text = render_function_text(function, source_lines={10: "start", 300: "x"},
                                    config=DisasmConfig(home_range=50))
        assert "→ line 300" in text

    def test_line_mapping_anchors_distance(self):
        instructions = (_line(200), _ins("return"))
        source = {10: "foo/1: foo(X) ->", 200: "bar/0: bar() ->"}
        anchored = Function(Atom("foo"), 1, 2, (), instructions,
                            MappingProxyType({0: 10, 1: 10}))
        text = render_function_text(anchored, source_lines=source)
        assert "→ bar (line 200)" in text
        unanchored = Function(Atom("foo"), 1, 2, (), instructions)
        assert " 200 │ bar/0: bar() ->" in render_function_text(unanchored, source_lines=source)


class TestDisasm:

    def test_module_header(self, module):
        beam, functions = module
        text = render_disasm_text(beam.module, beam.exports, functions)
        assert text.startswith("module: :math_demo\nexports: [fact/1, double/1]\n\n\nfunction fact/1")
        assert "\n\nfunction double/1 (entry: 5)" in text

    def test_options_are_forwarded(self, module):
        beam, functions = module
        text = render_disasm_text(beam.module, beam.exports, functions,
                                  line_table=beam.line_table, source_lines=SOURCE_LINES,
                                  source_kind=SourceKind.FILE)
        assert "   8 │ double(L) -> lists:reverse(L)." in text

    def test_json(self, module):
        beam, functions = module
        data = disasm_json(beam.module, beam.exports, functions)
        assert data["module"] == "math_demo"
        assert data["exports"] == ["fact/1", "double/1"]
        double = data["functions"][1]
        assert (double["name"], double["arity"], double["entry"]) == ("double", 1, 5)
        assert double["instructions"][-1] == {"op": "call_ext_only",
                                              "args": ["1", "lists:reverse/1"]}


class TestInfo:

    def test_compile_time(self):
        assert format_compile_time(((2024, 1, 2), (3, 4, 5))) == "2024-01-02T03:04:05Z"
        assert format_compile_time(None) is None
        assert format_compile_time(((2024, 13, 1), (0, 0, 0))) is None

    def test_info_data(self, module):
        beam, _ = module
        data = info_data(beam)
        assert data["module"] == "math_demo"
        assert data["file"] is None
        assert data["otp_version"] == "8.4.1"
        assert data["compile_time"] is None
        assert data["md5"] == beam.md5.hex()
        assert data["export_count"] == 2
        assert data["import_count"] == 3
        assert data["chunk_count"] == len(beam.chunks)

    def test_render_info(self, module):
        beam, _ = module
        text = render_info(info_data(beam))
        lines = text.split("\n")
        assert lines[0] == "Module       : math_demo"
        assert lines[1] == "File         : -"
        assert f"Size         : {beam.size:,} bytes" in lines


class TestChunks:

    def test_chunks(self, module):
        beam, _ = module
        data = chunks_data(beam)
        assert data["chunks"][0] == {"id": "AtU8", "description": "Atom table (UTF-8)",
                                     "size": beam.chunks[0].size}
        text = render_chunks(data)
        assert text.split("\n")[0].startswith("AtU8\tAtom table (UTF-8)\t")
        assert text.endswith(f"\nTotal: {data['total_size']:,}")

    def test_raw_chunk(self):
        text = render_raw_chunk("StrT", b"AB")
        assert text == "Chunk: StrT (2 bytes)\n00000000: 41 42" + " " * 42 + " |AB|"


class TestSymbols:

    def test_exports(self):
        exports = sorted_exports([Export(Atom("fact"), 1, 2), Export(Atom("double"), 1, 5)])
        assert render_exports(exports, plain=True) == "double/1\nfact/1"
        assert render_exports(exports) == "double\t1\nfact\t1"
        assert exports_json(exports) == [{"name": "double", "arity": 1},
                                         {"name": "fact", "arity": 1}]

    def test_imports(self):
        imports = sorted_imports([
            Import(Atom("lists"), Atom("reverse"), 1),
            Import(Atom("erlang"), Atom("-"), 2),
            Import(Atom("Elixir.Enum"), Atom("map"), 2),
        ])
        assert render_imports(imports) == "Enum\tmap\t2\nerlang\t-\t2\nlists\treverse\t1"
        assert render_imports(imports, group=True) == (
            "Enum\n  map/2\n\nerlang\n  -/2\n\nlists\n  reverse/1"
        )
        assert imports_json(imports)[0] == {"module": "Enum", "name": "map", "arity": 2}
