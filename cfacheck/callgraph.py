"""
cfacheck.callgraph
==================

Builds the whole-program call graph from the analyzed function bodies.

The call graph is a directed graph where:
- **Nodes** are program symbols (with or without a body) plus synthetic
  nodes for external primitives and unresolved names.
- **Edges** represent live call sites, annotated with the call-site
  location and the per-call :class:`~cfacheck.ctrlflow_graph.GuardMarker`.

Only unguarded edges into program symbols carry the abnormal-exit fact;
guarded edges are kept in the graph so statistics and DOT output show
where a guard region absorbs a callee.

Public API
----------
    NodeKind            - classification of a node
    CallResolutionKind  - how a call edge was resolved
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    build_callgraph     - build from a Program

Typical usage::

    from cfacheck.callgraph import build_callgraph

    cg = build_callgraph(program, inferencer)
    for node in cg.function_nodes():
        print(f"{node.name}: calls {[c.name for c in cg.unguarded_callees(node)]}")
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
import logging
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Set

from cfacheck.behavior import BehaviorInferencer, CallClass
from cfacheck.ctrlflow_graph import CallOp, GuardMarker
from cfacheck.diagnostics import SourceLocation
from cfacheck.symbols import FunctionSymbol, Program

__all__ = [
    "NodeKind",
    "CallResolutionKind",
    "CallGraphNode",
    "CallGraphEdge",
    "CallGraph",
    "build_callgraph",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Kinds
# ---------------------------------------------------------------------------

class CallResolutionKind(enum.Enum):
    """How a call edge was resolved."""

    DIRECT     = "direct"       # names a program symbol
    PRIMITIVE  = "primitive"    # names a configured external primitive
    UNRESOLVED = "unresolved"   # names something nobody knows about


class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION    = "function"     # program symbol with a body
    DECLARATION = "declaration"  # program symbol without a body
    EXTERNAL    = "external"     # primitive or unresolved name


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    id : str
        Unique identifier (the symbol identifier, or ``"ext:<name>"``).
    name : str
        Function or primitive name.
    kind : NodeKind
    symbol : FunctionSymbol or None
        ``None`` for external nodes.
    out_edges : list[CallGraphEdge]
        Outgoing call edges (this function calls …).
    in_edges : list[CallGraphEdge]
        Incoming call edges (… calls this function).
    """

    __slots__ = ("id", "name", "kind", "symbol", "out_edges", "in_edges")

    def __init__(
        self,
        node_id: str,
        name: str,
        kind: NodeKind = NodeKind.FUNCTION,
        symbol: Optional[FunctionSymbol] = None,
    ) -> None:
        self.id: str = node_id
        self.name: str = name
        self.kind: NodeKind = kind
        self.symbol = symbol
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    @property
    def is_program_symbol(self) -> bool:
        return self.kind is not NodeKind.EXTERNAL

    @property
    def callees(self) -> List[CallGraphNode]:
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List[CallGraphNode]:
        return [e.caller for e in self.in_edges]

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.id == other.id
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A directed edge in the call graph representing a call site."""

    __slots__ = ("caller", "callee", "guard", "resolution", "location")

    def __init__(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        guard: GuardMarker = GuardMarker.UNGUARDED,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
        location: Optional[SourceLocation] = None,
    ) -> None:
        self.caller = caller
        self.callee = callee
        self.guard = guard
        self.resolution = resolution
        self.location = location

    @property
    def is_guarded(self) -> bool:
        return self.guard is GuardMarker.GUARDED

    def __repr__(self) -> str:
        loc = f" @ {self.location}" if self.location and self.location.line else ""
        return (
            f"CallGraphEdge({self.caller.name} -> {self.callee.name}, "
            f"{self.resolution.value}, {self.guard.value}{loc})"
        )


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-program call graph.

    Attributes
    ----------
    nodes : OrderedDict[str, CallGraphNode]
        All nodes, keyed by node id, program symbols first in program order.
    edges : list[CallGraphEdge]
        All edges.
    """

    def __init__(self) -> None:
        self.nodes: "OrderedDict[str, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []

    # ----- node management --------------------------------------------------

    def add_symbol(self, symbol: FunctionSymbol) -> CallGraphNode:
        node = self.nodes.get(symbol.identifier)
        if node is None:
            kind = NodeKind.FUNCTION if symbol.body is not None else NodeKind.DECLARATION
            node = CallGraphNode(symbol.identifier, symbol.identifier, kind, symbol)
            self.nodes[node.id] = node
        return node

    def external(self, name: str) -> CallGraphNode:
        node_id = f"ext:{name}"
        node = self.nodes.get(node_id)
        if node is None:
            node = CallGraphNode(node_id, name, NodeKind.EXTERNAL)
            self.nodes[node_id] = node
        return node

    def add_edge(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        guard: GuardMarker = GuardMarker.UNGUARDED,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
        location: Optional[SourceLocation] = None,
    ) -> CallGraphEdge:
        """Create a call edge and wire it up."""
        edge = CallGraphEdge(caller, callee, guard, resolution, location)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    # ----- lookups ----------------------------------------------------------

    def node(self, identifier: str) -> Optional[CallGraphNode]:
        return self.nodes.get(identifier)

    def function_nodes(self) -> List[CallGraphNode]:
        """Program-symbol nodes in program order."""
        return [n for n in self.nodes.values() if n.is_program_symbol]

    def unguarded_callees(self, node: CallGraphNode) -> List[CallGraphNode]:
        """Distinct program symbols called from unguarded sites of *node*."""
        seen: "OrderedDict[str, CallGraphNode]" = OrderedDict()
        for e in node.out_edges:
            if not e.is_guarded and e.callee.is_program_symbol:
                seen.setdefault(e.callee.id, e.callee)
        return list(seen.values())

    def unguarded_edge_to(
        self, caller: CallGraphNode, callee: CallGraphNode,
    ) -> Optional[CallGraphEdge]:
        for e in caller.out_edges:
            if e.callee is callee and not e.is_guarded:
                return e
        return None

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(
        self, node: CallGraphNode, unguarded_only: bool = False,
    ) -> Set[CallGraphNode]:
        """Return all nodes transitively reachable from *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque([node])
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            for e in n.out_edges:
                if unguarded_only and e.is_guarded:
                    continue
                worklist.append(e.callee)
        visited.discard(node)
        return visited

    def transitive_callers(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all nodes that transitively call *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque([node])
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            for e in n.in_edges:
                worklist.append(e.caller)
        visited.discard(node)
        return visited

    def is_recursive(self, node: CallGraphNode) -> bool:
        """Is *node* part of a (possibly indirect) recursive cycle?"""
        return node in self.transitive_callees(node)

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).  Each SCC with more than one node represents mutual
        recursion.  Iterative, so deep call chains cannot exhaust the
        interpreter stack.
        """
        index_counter = 0
        stack: List[CallGraphNode] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Set[str] = set()
        result: List[List[CallGraphNode]] = []

        for root in self.nodes.values():
            if root.id in index:
                continue
            work = [(root, 0)]
            while work:
                v, edge_pos = work.pop()
                if edge_pos == 0:
                    index[v.id] = lowlink[v.id] = index_counter
                    index_counter += 1
                    stack.append(v)
                    on_stack.add(v.id)
                recurse = False
                for pos in range(edge_pos, len(v.out_edges)):
                    w = v.out_edges[pos].callee
                    if w.id not in index:
                        work.append((v, pos + 1))
                        work.append((w, 0))
                        recurse = True
                        break
                    if w.id in on_stack:
                        lowlink[v.id] = min(lowlink[v.id], index[w.id])
                if recurse:
                    continue
                if lowlink[v.id] == index[v.id]:
                    scc: List[CallGraphNode] = []
                    while True:
                        w = stack.pop()
                        on_stack.discard(w.id)
                        scc.append(w)
                        if w.id == v.id:
                            break
                    result.append(scc)
                if work:
                    parent = work[-1][0]
                    lowlink[parent.id] = min(lowlink[parent.id], lowlink[v.id])

        return result

    def recursive_components(self) -> List[List[CallGraphNode]]:
        """SCCs that contain a cycle (mutual or direct recursion)."""
        return [
            scc for scc in self.strongly_connected_components()
            if len(scc) > 1 or scc[0].is_recursive
        ]

    def longest_cycle_length(self) -> int:
        """Upper bound on the longest simple cycle: the largest recursive SCC."""
        return max((len(scc) for scc in self.recursive_components()), default=0)

    def bottom_up_order(self) -> List[CallGraphNode]:
        """Callees before callers."""
        return [node for scc in self.strongly_connected_components() for node in scc]

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        by_kind = {kind: 0 for kind in NodeKind}
        for n in self.nodes.values():
            by_kind[n.kind] += 1
        return {
            "functions": by_kind[NodeKind.FUNCTION],
            "declarations": by_kind[NodeKind.DECLARATION],
            "external": by_kind[NodeKind.EXTERNAL],
            "total_edges": len(self.edges),
            "guarded_calls": sum(1 for e in self.edges if e.is_guarded),
            "unresolved_calls": sum(
                1 for e in self.edges
                if e.resolution is CallResolutionKind.UNRESOLVED
            ),
            "recursive_sccs": len(self.recursive_components()),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.DECLARATION: 'style=filled, fillcolor="#eeeeee"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
        }
        for n in self.nodes.values():
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{n.id}" [label="{escaped}", {kind_attrs[n.kind]}];')

        for e in self.edges:
            attrs = ", style=dashed, color=gray" if e.is_guarded else ""
            elabel = e.resolution.value
            if e.location and e.location.line:
                elabel += f":{e.location.line}"
            lines.append(
                f'  "{e.caller.id}" -> "{e.callee.id}" '
                f'[label="{elabel}"{attrs}];'
            )
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ===========================================================================
# BUILDER
# ===========================================================================

def build_callgraph(
    program: Program,
    inferencer: BehaviorInferencer,
) -> CallGraph:
    """Build the call graph from the live call sites of every body.

    *inferencer* supplies call classification and liveness, so the graph
    never contains a call that follows a non-returning primitive.
    """
    cg = CallGraph()
    for symbol in program:
        cg.add_symbol(symbol)

    for symbol in program:
        if symbol.body is None:
            continue
        caller = cg.nodes[symbol.identifier]
        for _, op in inferencer.iter_live(symbol.body):
            if not isinstance(op, CallOp):
                continue
            kind = inferencer.classify(op)
            if kind is CallClass.SYMBOL:
                callee = cg.nodes[op.target]
                resolution = CallResolutionKind.DIRECT
            elif kind is CallClass.OPAQUE:
                callee = cg.external(op.target)
                resolution = CallResolutionKind.UNRESOLVED
            else:
                callee = cg.external(op.target)
                resolution = CallResolutionKind.PRIMITIVE
            cg.add_edge(caller, callee, op.guard, resolution, op.location)

    logger.debug("built %r", cg)
    return cg
