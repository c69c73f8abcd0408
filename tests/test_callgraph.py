# tests/test_callgraph.py
"""
Tests for call-graph extraction, queries and serialisation.
"""

import json

import pytest

from beam_spy.beam_file import BeamFile
from beam_spy.callgraph import (
    CallGraph,
    CallKind,
    NodeKind,
    build_callgraph,
    extract_calls,
    format_mfa,
)
from beam_spy.disasm import Function, tokenize
from beam_spy.etf import Atom
from beam_spy.operands import ExtFunc, IntOp, Label, RawInstruction, XReg


def _fn(name, arity, entry, *raws):
    return Function(Atom(name), arity, entry, tuple(raws))


def _call(label):
    return RawInstruction("call", (IntOp(1), Label(label)))


def _call_ext(module, name, arity):
    return RawInstruction("call_ext", (IntOp(arity), ExtFunc(Atom(module), Atom(name), arity)))


@pytest.fixture(scope="module")
def graph(math_demo_bytes):
    beam = BeamFile.from_bytes(math_demo_bytes)
    return build_callgraph(beam.module, tokenize(beam))


class TestExtraction:

    def test_call_shapes(self):
        raws = [
            _call(4),
            _call_ext("lists", "map", 2),
            RawInstruction("gc_bif2", (Label(0), IntOp(1), ExtFunc("erlang", "+", 2),
                                       XReg(0), XReg(1), XReg(0))),
            RawInstruction("call_fun", (IntOp(1),)),
            RawInstruction("move", (XReg(0), XReg(1))),
        ]
        kinds = [kind for kind, _ in extract_calls(raws)]
        assert kinds == [CallKind.LOCAL, CallKind.EXTERNAL, CallKind.BIF]

    def test_unexpected_target_shape_skipped(self):
        raws = [RawInstruction("call_ext", (IntOp(1), IntOp(7))),
                RawInstruction("call", (IntOp(1),))]
        assert list(extract_calls(raws)) == []

    def test_format_mfa(self):
        assert format_mfa("lists", "map", 2) == "lists.map/2"


class TestMathDemo:

    def test_nodes(self, graph):
        assert list(graph.nodes) == [
            "math_demo.fact/1",
            "math_demo.double/1",
            "erlang.-/2",
            "erlang.*/2",
            "lists.reverse/1",
        ]

    def test_edges(self, graph):
        assert graph.edge_pairs == [
            ("math_demo.fact/1", "erlang.-/2"),
            ("math_demo.fact/1", "math_demo.fact/1"),
            ("math_demo.fact/1", "erlang.*/2"),
            ("math_demo.double/1", "lists.reverse/1"),
        ]
        assert [e.kind for e in graph.edges] == [
            CallKind.BIF, CallKind.LOCAL, CallKind.BIF, CallKind.EXTERNAL,
        ]

    def test_edge_endpoints_are_nodes(self, graph):
        for caller, callee in graph.edge_pairs:
            assert caller in graph
            assert callee in graph

    def test_node_kinds(self, graph):
        assert graph.nodes["math_demo.fact/1"].kind is NodeKind.FUNCTION
        assert graph.nodes["lists.reverse/1"].kind is NodeKind.EXTERNAL

    def test_queries(self, graph):
        assert graph.callees("math_demo.double/1") == ["lists.reverse/1"]
        assert graph.callers("erlang.*/2") == ["math_demo.fact/1"]
        assert graph.callees("nope/0") == []
        assert graph.has_edge("math_demo.fact/1", "math_demo.fact/1")

    def test_roots_and_leaves(self, graph):
        assert [n.id for n in graph.roots] == ["math_demo.double/1"]
        assert [n.id for n in graph.leaves] == ["erlang.-/2", "erlang.*/2", "lists.reverse/1"]

    def test_recursion(self, graph):
        fact = graph.nodes["math_demo.fact/1"]
        assert fact.is_recursive
        assert graph.is_recursive(fact)
        assert not graph.is_recursive(graph.nodes["math_demo.double/1"])

    def test_statistics(self, graph):
        stats = graph.statistics()
        assert stats["functions"] == 2
        assert stats["external_functions"] == 3
        assert stats["local_calls"] == 1
        assert stats["bif_calls"] == 2
        assert stats["external_calls"] == 1
        assert stats["self_recursive_functions"] == 1
        assert stats["recursive_sccs"] == 0

    def test_deterministic(self, math_demo_bytes, graph):
        beam = BeamFile.from_bytes(math_demo_bytes)
        again = build_callgraph(beam.module, tokenize(beam))
        assert again.to_dict() == graph.to_dict()


class TestConstruction:

    def test_duplicate_calls_give_one_edge(self):
        fn = _fn("f", 0, 2, _call_ext("lists", "map", 2), _call_ext("lists", "map", 2))
        graph = build_callgraph("m", [fn])
        assert graph.edge_pairs == [("m.f/0", "lists.map/2")]

    def test_dynamic_only_module(self):
        fn = _fn("f", 1, 2,
                 RawInstruction("call_fun", (IntOp(1),)),
                 RawInstruction("apply", (IntOp(2),)))
        graph = build_callgraph("m", [fn])
        assert graph.edges == []
        assert list(graph.nodes) == ["m.f/1"]

    def test_unknown_label_skipped(self):
        graph = build_callgraph("m", [_fn("f", 0, 2, _call(99))])
        assert graph.edges == []

    def test_mutual_recursion_scc(self):
        graph = build_callgraph("m", [
            _fn("even", 1, 2, _call(4)),
            _fn("odd", 1, 4, _call(2)),
            _fn("main", 0, 6, _call(2)),
        ])
        sccs = [sorted(n.id for n in scc) for scc in graph.strongly_connected_components()]
        assert ["m.even/1", "m.odd/1"] in sccs
        assert ["m.main/0"] in sccs
        assert graph.is_recursive(graph.nodes["m.even/1"])
        assert graph.statistics()["recursive_sccs"] == 1

    def test_transitive_callees(self):
        graph = build_callgraph("m", [
            _fn("a", 0, 2, _call(4)),
            _fn("b", 0, 4, _call_ext("c", "d", 0)),
        ])
        reached = {n.id for n in graph.transitive_callees(graph.nodes["m.a/0"])}
        assert reached == {"m.b/0", "c.d/0"}

    def test_add_edge_returns_none_for_duplicate(self):
        graph = CallGraph("m")
        a = graph.get_or_create_node("m.a/0", NodeKind.FUNCTION)
        b = graph.get_or_create_node("m.b/0", NodeKind.FUNCTION)
        assert graph.add_edge(a, b) is not None
        assert graph.add_edge(a, b) is None
        assert len(a.out_edges) == 1


class TestSerialisation:

    def test_to_dict(self, graph):
        data = graph.to_dict()
        assert data["nodes"][0] == "math_demo.fact/1"
        assert {"from": "math_demo.double/1", "to": "lists.reverse/1"} in data["edges"]
        json.dumps(data)

    def test_to_text(self, graph):
        text = graph.to_text()
        assert text.startswith("math_demo.fact/1\n  → erlang.-/2\n  → math_demo.fact/1\n")
        assert "lists.reverse/1\n  (no calls)" in text

    def test_to_dot(self, graph):
        dot = graph.to_dot()
        assert dot.startswith("digraph callgraph {\n  rankdir=LR;\n")
        assert '  "math_demo.fact/1" -> "math_demo.fact/1";' in dot
        assert '  "lists.reverse/1";' in dot
        assert dot.endswith("}\n")

    def test_dot_escapes_quotes(self):
        graph = CallGraph("m")
        graph.get_or_create_node('m.\'"q"\'/0', NodeKind.FUNCTION)
        assert '\\"q\\"' in graph.to_dot()
