# tests/test_source.py
"""
Tests for line grouping, source annotation and source providers.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from beam_spy.beam_file import BeamFile
from beam_spy.disasm import tokenize
from beam_spy.errors import SourceUnavailableError
from beam_spy.etf import Atom, term_to_binary
from beam_spy.formatter import Instruction
from beam_spy.line_table import parse_line_chunk
from beam_spy.opcodes import Category
from beam_spy.operands import IntOp, RawInstruction
from beam_spy.source import (
    RenderMode,
    SourceGroup,
    SourceKind,
    annotate_groups,
    compile_source_path,
    correlate,
    first_line,
    group_by_line,
    load_source,
    marker_index,
    merge_groups,
    source_for_beam,
)
from tests.conftest import SAMPLE_SOURCE, BeamBuilder, build_math_demo, line_chunk


def _line(index):
    return RawInstruction("line", (IntOp(index),))


def _op(name):
    return RawInstruction(name)


@pytest.fixture(scope="module")
def math_demo(math_demo_bytes):
    beam = BeamFile.from_bytes(math_demo_bytes)
    return beam, tokenize(beam)


class TestMarkers:

    def test_raw_marker(self):
        assert marker_index(_line(3)) == 3
        assert marker_index(_op("return")) is None

    def test_formatted_marker(self):
        assert marker_index(Instruction(Category.META, "line", ("2",))) == 2
        assert marker_index(Instruction(Category.META, "line", ("x(0)",))) is None


class TestGrouping:

    def test_empty_stream(self):
        assert group_by_line([]) == []

    def test_instructions_before_first_marker(self):
        groups = group_by_line([_op("label"), _line(0), _op("return")])
        assert [g.line for g in groups] == [None, 0]

    def test_markers_are_not_grouped(self):
        groups = group_by_line([_line(0), _op("move"), _line(1), _op("return")])
        names = [r.name for g in groups for r in g.instructions]
        assert names == ["move", "return"]

    def test_line_table_resolution(self):
        table = parse_line_chunk(line_chunk([10, 20]))
        groups = group_by_line([_line(0), _op("move"), _line(1), _op("return")], table)
        assert [g.line for g in groups] == [10, 20]

    def test_same_line_markers_merge(self):
        table = parse_line_chunk(line_chunk([7, 7]))
        groups = group_by_line([_line(0), _op("move"), _line(1), _op("return")], table)
        assert len(groups) == 1
        assert [r.name for r in groups[0].instructions] == ["move", "return"]

    def test_consecutive_markers_leave_no_empty_group(self):
        groups = group_by_line([_line(0), _line(1), _op("return")])
        assert groups == [SourceGroup(1, (_op("return"),))]

    def test_math_demo_fact(self, math_demo):
        beam, functions = math_demo
        groups = group_by_line(functions[0].raw_instructions, beam.line_table)
        assert [g.line for g in groups] == [None, 3, 4, 6]
        assert [r.name for r in groups[1].instructions] == ["func_info", "label", "is_eq_exact"]
        assert [r.name for r in groups[2].instructions] == ["move", "return", "label"]
        assert first_line(groups) == 3


class TestMerge:

    def test_associative(self):
        a = [SourceGroup(1, (_op("a"),))]
        b = [SourceGroup(1, (_op("b"),)), SourceGroup(2, (_op("c"),))]
        c = [SourceGroup(2, (_op("d"),))]
        left = merge_groups(merge_groups(a, b), c)
        right = merge_groups(a, merge_groups(b, c))
        assert left == right
        assert [len(g.instructions) for g in left] == [2, 2]

    def test_keeps_distinct_lines(self):
        groups = [SourceGroup(1), SourceGroup(2), SourceGroup(1)]
        assert [g.line for g in merge_groups(groups)] == [1, 2, 1]


class TestAnnotate:

    def test_without_source(self):
        groups = annotate_groups([SourceGroup(3, (_op("move"),))], None)
        assert groups[0].mode is RenderMode.UNAVAILABLE
        assert groups[0].source is None

    def test_inline(self):
        groups = annotate_groups([SourceGroup(3)], {3: "fact(0) ->"})
        assert groups[0].mode is RenderMode.INLINE
        assert groups[0].source == "fact(0) ->"

    def test_blank_or_missing_line(self):
        groups = annotate_groups([SourceGroup(3), SourceGroup(9), SourceGroup(None)],
                                 {3: "   ", 4: "x"})
        assert all(g.mode is RenderMode.UNAVAILABLE for g in groups)

    def test_correlate_formats(self, math_demo):
        beam, functions = math_demo
        groups = correlate(functions[0].raw_instructions, beam.line_table,
                           load_source_lines())
        assert groups[1].source == "fact(0) ->"
        assert groups[1].instructions[0].to_text() == "func_info :math_demo, :fact, 1"


def load_source_lines():
    return dict(enumerate(SAMPLE_SOURCE.split("\n"), start=1))


class TestProviders:

    def test_load_source(self, tmp_path):
        path = tmp_path / "a.erl"
        path.write_text("one\ntwo\n", encoding="utf-8")
        assert load_source(path) == {1: "one", 2: "two", 3: ""}

    def test_load_source_missing(self, tmp_path):
        with pytest.raises(SourceUnavailableError, match="cannot read source"):
            load_source(tmp_path / "missing.erl")

    def test_recorded_source(self, math_demo_file):
        beam = BeamFile.from_path(math_demo_file)
        assert compile_source_path(beam) == math_demo_file.with_suffix(".erl")
        lines, kind, path = source_for_beam(beam)
        assert kind is SourceKind.FILE
        assert path == math_demo_file.with_suffix(".erl")
        assert lines[3] == "fact(0) ->"

    def test_explicit_path_wins(self, math_demo_file, tmp_path):
        other = tmp_path / "other.erl"
        other.write_text("x\n", encoding="utf-8")
        beam = BeamFile.from_path(math_demo_file)
        lines, _, path = source_for_beam(beam, other)
        assert path == other
        assert lines[1] == "x"

    def test_explicit_path_missing(self, math_demo_file, tmp_path):
        beam = BeamFile.from_path(math_demo_file)
        with pytest.raises(SourceUnavailableError):
            source_for_beam(beam, tmp_path / "nope.erl")

    def test_nothing_available(self, math_demo_bytes):
        beam = BeamFile.from_bytes(math_demo_bytes)
        with pytest.raises(SourceUnavailableError, match="no source file"):
            source_for_beam(beam)

    def test_stale_recorded_path_falls_back_to_debug_info(self, tmp_path):
        forms = [(Atom("attribute"), 1, Atom("module"), Atom("m"))]
        dbgi = (Atom("debug_info_v1"), Atom("erl_abstract_code"), (forms, []))
        compile_info = [(Atom("source"), [ord(c) for c in str(tmp_path / "gone.erl")])]
        data = (BeamBuilder("m")
                .add_chunk("CInf", term_to_binary(compile_info))
                .add_chunk("Dbgi", term_to_binary(dbgi))
                .build())
        lines, kind, path = source_for_beam(BeamFile.from_bytes(data))
        assert kind is SourceKind.RECONSTRUCTED
        assert path is None
        assert lines == {1: "-module(m)."}

    def test_source_path_in_compile_info(self):
        beam = BeamFile.from_bytes(build_math_demo("/tmp/x/math_demo.erl"))
        assert str(compile_source_path(beam)) == "/tmp/x/math_demo.erl"


# ---------------------------------------------------------------------------
# Property tests
# ---------------------------------------------------------------------------

_streams = st.lists(
    st.one_of(
        st.integers(0, 5).map(_line),
        st.sampled_from(["move", "return", "label", "call"]).map(_op),
    ),
    max_size=40,
)

_groups = st.lists(
    st.builds(SourceGroup, st.one_of(st.none(), st.integers(1, 4)),
              st.lists(st.sampled_from(["a", "b"]).map(_op), max_size=3).map(tuple)),
    max_size=6,
)


class TestCorrelationProperties:

    @given(_streams)
    def test_at_most_one_group_per_marker(self, stream):
        markers = sum(1 for item in stream if marker_index(item) is not None)
        groups = group_by_line(stream)
        assert len([g for g in groups if g.line is not None]) <= markers
        assert all(g.instructions for g in groups)

    @given(_streams)
    def test_deterministic(self, stream):
        assert group_by_line(stream) == group_by_line(list(stream))

    @given(_groups, _groups, _groups)
    def test_merge_is_associative(self, a, b, c):
        assert merge_groups(merge_groups(a, b), c) == merge_groups(a, merge_groups(b, c))

    @given(_streams)
    def test_no_instruction_lost(self, stream):
        kept = [r for g in group_by_line(stream) for r in g.instructions]
        assert kept == [item for item in stream if marker_index(item) is None]
