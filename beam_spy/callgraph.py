"""
beam_spy.callgraph
==================

Static call graph of a single module, built from its tokenized functions.

Every function defined in the module becomes a node named
``module.name/arity``; so does every external target the code reaches.
Edges are ``(caller, callee)`` pairs kept once each, in the order the
call sites are first met.

Call kinds
----------
``EXTERNAL``
    ``call_ext``, ``call_ext_last`` and ``call_ext_only``: the target is
    an import-table entry.
``BIF``
    ``bif0``..``bif2`` and ``gc_bif1``..``gc_bif3``: built-in function
    invocations, also import-table entries.
``LOCAL``
    ``call``, ``call_last`` and ``call_only`` to a label.  Only resolved
    when the label is the entry of a function in the list passed to
    :func:`build_callgraph`; other labels are skipped.

``call_fun``, ``call_fun2``, ``apply`` and ``apply_last`` dispatch
dynamically and never produce edges.  Self-calls and cycles are kept as
plain edges.

Exports: ``CallGraph``, ``CallGraphNode``, ``CallGraphEdge``,
``CallKind``, ``NodeKind``, ``extract_calls``, ``build_callgraph``.

Example::

    beam = BeamFile.from_path("Elixir.Foo.beam")
    graph = build_callgraph(beam.module, tokenize(beam))
    sys.stdout.write(graph.to_dot())
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from beam_spy.operands import ExtFunc, Label

_log = logging.getLogger(__name__)


class CallKind(enum.Enum):
    """How a call site names its target."""

    LOCAL    = "local"
    EXTERNAL = "external"
    BIF      = "bif"


class NodeKind(enum.Enum):
    FUNCTION = "function"      # defined in the analysed module
    EXTERNAL = "external"      # only seen as a call target


# opcode name -> (kind, operand position of the target)
CALL_SHAPES: Mapping[str, Tuple[CallKind, int]] = {
    "call":          (CallKind.LOCAL, 1),
    "call_last":     (CallKind.LOCAL, 1),
    "call_only":     (CallKind.LOCAL, 1),
    "call_ext":      (CallKind.EXTERNAL, 1),
    "call_ext_last": (CallKind.EXTERNAL, 1),
    "call_ext_only": (CallKind.EXTERNAL, 1),
    "bif0":          (CallKind.BIF, 0),
    "bif1":          (CallKind.BIF, 1),
    "bif2":          (CallKind.BIF, 1),
    "gc_bif1":       (CallKind.BIF, 2),
    "gc_bif2":       (CallKind.BIF, 2),
    "gc_bif3":       (CallKind.BIF, 2),
}

DYNAMIC_CALLS = frozenset({"call_fun", "call_fun2", "apply", "apply_last"})


def format_mfa(module: str, name: str, arity: int) -> str:
    return f"{module}.{name}/{arity}"


# ---------------------------------------------------------------------------
# Graph elements
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class CallGraphNode:
    """One function, identified by its ``module.name/arity`` string.

    ``out_edges`` hold the calls this function makes, ``in_edges`` the
    calls made to it.  Identity and hashing go by ``id`` alone.
    """

    id: str
    kind: NodeKind = NodeKind.FUNCTION
    out_edges: List["CallGraphEdge"] = field(default_factory=list, repr=False)
    in_edges: List["CallGraphEdge"] = field(default_factory=list, repr=False)

    @property
    def callees(self) -> List[CallGraphNode]:
        return [edge.callee for edge in self.out_edges]

    @property
    def callers(self) -> List[CallGraphNode]:
        return [edge.caller for edge in self.in_edges]

    @property
    def is_leaf(self) -> bool:
        return not self.out_edges

    @property
    def is_root(self) -> bool:
        return not self.in_edges

    @property
    def is_recursive(self) -> bool:
        """True when one of the outgoing edges points back at this node."""
        for edge in self.out_edges:
            if edge.callee is self:
                return True
        return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CallGraphNode):
            return NotImplemented
        return other.id == self.id

    def __hash__(self) -> int:
        return hash(("node", self.id))


@dataclass(eq=False)
class CallGraphEdge:
    """``caller -> callee``; ``kind`` comes from the first site seen."""

    caller: CallGraphNode
    callee: CallGraphNode
    kind: CallKind = CallKind.EXTERNAL

    @property
    def key(self) -> Tuple[str, str]:
        return self.caller.id, self.callee.id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CallGraphEdge):
            return NotImplemented
        return other.key == self.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"CallGraphEdge({self.caller.id} -> {self.callee.id}, {self.kind.value})"


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Call graph of one module.

    ``nodes`` maps ids to nodes, local functions first and external
    targets after them in discovery order.  ``edges`` lists every
    distinct pair once.
    """

    def __init__(self, module: str) -> None:
        self.module = module
        self.nodes: "OrderedDict[str, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self._edge_keys: Set[Tuple[str, str]] = set()

    def get_or_create_node(self, node_id: str,
                           kind: NodeKind = NodeKind.EXTERNAL) -> CallGraphNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            created = self.nodes[node_id] = CallGraphNode(node_id, kind)
            return created

    def add_edge(self, caller: CallGraphNode, callee: CallGraphNode,
                 kind: CallKind = CallKind.EXTERNAL) -> Optional[CallGraphEdge]:
        """Connect *caller* to *callee*; returns None if already connected."""
        key = (caller.id, callee.id)
        if key in self._edge_keys:
            return None
        self._edge_keys.add(key)
        edge = CallGraphEdge(caller, callee, kind)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def has_edge(self, caller: str, callee: str) -> bool:
        return (caller, callee) in self._edge_keys

    def callees(self, node_id: str) -> List[str]:
        if node_id not in self.nodes:
            return []
        return [node.id for node in self.nodes[node_id].callees]

    def callers(self, node_id: str) -> List[str]:
        if node_id not in self.nodes:
            return []
        return [node.id for node in self.nodes[node_id].callers]

    @property
    def edge_pairs(self) -> List[Tuple[str, str]]:
        return [edge.key for edge in self.edges]

    @property
    def roots(self) -> List[CallGraphNode]:
        """Local functions with no caller inside the module."""
        return [node for node in self.nodes.values()
                if node.kind is NodeKind.FUNCTION and node.is_root]

    @property
    def leaves(self) -> List[CallGraphNode]:
        return [node for node in self.nodes.values() if node.is_leaf]

    # -- reachability --------------------------------------------------------

    def transitive_callees(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Every node reachable from *node* through one or more calls."""
        seen: Set[CallGraphNode] = set()
        pending = list(node.callees)
        while pending:
            current = pending.pop()
            if current not in seen:
                seen.add(current)
                pending.extend(current.callees)
        seen.discard(node)
        return seen

    def is_recursive(self, node: CallGraphNode) -> bool:
        """True for direct self-calls and for membership in a call cycle."""
        if node.is_recursive:
            return True
        return any(node in self.transitive_callees(callee) for callee in node.callees)

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Tarjan's SCC algorithm, run without Python recursion.

        Components come out callees first.  Any component holding more
        than one node is a set of mutually recursive functions.
        """
        order: Dict[str, int] = {}
        low: Dict[str, int] = {}
        path: List[CallGraphNode] = []
        on_path: Set[str] = set()
        components: List[List[CallGraphNode]] = []

        for start in self.nodes.values():
            if start.id in order:
                continue
            # each frame: (node, index of the next out-edge to look at)
            frames: List[List[Any]] = [[start, 0]]
            order[start.id] = low[start.id] = len(order)
            path.append(start)
            on_path.add(start.id)
            while frames:
                frame = frames[-1]
                node, position = frame
                if position < len(node.out_edges):
                    frame[1] += 1
                    succ = node.out_edges[position].callee
                    if succ.id not in order:
                        order[succ.id] = low[succ.id] = len(order)
                        path.append(succ)
                        on_path.add(succ.id)
                        frames.append([succ, 0])
                    elif succ.id in on_path:
                        low[node.id] = min(low[node.id], order[succ.id])
                    continue
                frames.pop()
                if frames:
                    parent = frames[-1][0]
                    low[parent.id] = min(low[parent.id], low[node.id])
                if low[node.id] != order[node.id]:
                    continue
                component: List[CallGraphNode] = []
                member = None
                while member is not node:
                    member = path.pop()
                    on_path.discard(member.id)
                    component.append(member)
                components.append(component)
        return components

    # -- reporting -----------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Counts of nodes, edges and recursion, keyed by name."""
        local = [node for node in self.nodes.values() if node.kind is NodeKind.FUNCTION]
        per_kind = dict.fromkeys(CallKind, 0)
        for edge in self.edges:
            per_kind[edge.kind] += 1
        mutual = [c for c in self.strongly_connected_components() if len(c) > 1]
        return {
            "functions": len(local),
            "external_functions": len(self.nodes) - len(local),
            "total_nodes": len(self.nodes),
            "total_edges": len(self.edges),
            "local_calls": per_kind[CallKind.LOCAL],
            "external_calls": per_kind[CallKind.EXTERNAL],
            "bif_calls": per_kind[CallKind.BIF],
            "recursive_sccs": len(mutual),
            "self_recursive_functions": len(
                [node for node in self.nodes.values() if node.is_recursive]
            ),
            "root_functions": len(self.roots),
            "leaf_functions": len(self.leaves),
        }

    def to_dict(self) -> Dict[str, Any]:
        edges = [{"from": caller, "to": callee} for caller, callee in self.edge_pairs]
        return {"nodes": list(self.nodes), "edges": edges}

    def to_text(self) -> str:
        """Each node followed by its ``→ callee`` lines, blank-line separated."""
        blocks = []
        for node in self.nodes.values():
            body = [f"  → {callee.id}" for callee in node.callees] or ["  (no calls)"]
            blocks.append("\n".join([node.id] + body))
        return "\n\n".join(blocks)

    def to_dot(self) -> str:
        """Graphviz source.  Nodes that call nothing get their own
        statement so functions without edges still show up."""
        out = [
            "digraph callgraph {",
            "  rankdir=LR;",
            '  node [shape=box, fontname="monospace"];',
            "",
        ]
        out.extend(f'  "{_escape_dot(node.id)}";'
                   for node in self.nodes.values() if node.is_leaf)
        out.extend(f'  "{_escape_dot(caller)}" -> "{_escape_dot(callee)}";'
                   for caller, callee in self.edge_pairs)
        out.append("}")
        return "\n".join(out) + "\n"

    def __repr__(self) -> str:
        return f"<CallGraph {self.module}: {len(self.nodes)} nodes, {len(self.edges)} edges>"


def _escape_dot(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------
def _operand(instruction: Any, position: int) -> Any:
    operands = getattr(instruction, "operands", ())
    if position < len(operands):
        return operands[position]
    return None


def extract_calls(
    instructions: Iterable[Any],
) -> Iterator[Tuple[CallKind, Any]]:
    """Yield ``(kind, target)`` for each recognised call site.

    *target* is an :class:`ExtFunc` for external and BIF calls and a
    :class:`Label` for local calls.  Sites whose target operand has an
    unexpected shape are skipped.
    """
    for instruction in instructions:
        name = getattr(instruction, "name", None)
        if name in DYNAMIC_CALLS:
            continue
        shape = CALL_SHAPES.get(name)
        if shape is None:
            continue
        kind, position = shape
        target = _operand(instruction, position)
        if kind is CallKind.LOCAL:
            if isinstance(target, Label):
                yield kind, target
        elif isinstance(target, ExtFunc):
            yield kind, target


def build_callgraph(module: str, functions: Sequence[Any]) -> CallGraph:
    """Build the call graph of *module*.

    *functions* are objects with ``name``, ``arity``, ``entry`` and
    ``raw_instructions`` attributes (see :class:`beam_spy.disasm.Function`).
    Their entry labels double as the label table for local calls.
    """
    graph = CallGraph(str(module))
    by_entry: Dict[int, CallGraphNode] = {}

    for function in functions:
        node = graph.get_or_create_node(
            format_mfa(graph.module, function.name, function.arity),
            NodeKind.FUNCTION,
        )
        node.kind = NodeKind.FUNCTION
        entry = getattr(function, "entry", None)
        if entry is not None:
            by_entry[entry] = node

    for function in functions:
        caller = graph.nodes[format_mfa(graph.module, function.name, function.arity)]
        for kind, target in extract_calls(function.raw_instructions):
            if kind is CallKind.LOCAL:
                callee = by_entry.get(target.index)
                if callee is None:
                    _log.debug("%s: no function at label %d", caller.id, target.index)
                    continue
            else:
                callee = graph.get_or_create_node(
                    format_mfa(target.module, target.function, target.arity)
                )
            graph.add_edge(caller, callee, kind)

    _log.debug("call graph for %s: %r", graph.module, graph)
    return graph
