"""
cfacheck.ctrlflow_graph
=======================

The body model handed over by the external front end: one intraprocedural
control-flow graph per function.

A CFG is a directed graph whose nodes are *basic blocks* (straight-line
sequences of operations) and whose edges are either ``NORMAL`` transfers or
``ABNORMAL`` ones (an exception unwinding, a non-local jump, ...).  Every
CFG owns a synthetic *entry* and *exit* block; an abnormal edge into the
exit block is an abnormal exit from the function.

Only three kinds of operation matter to the analyzer:

``CallOp``
    A call naming either a callee symbol or an external primitive tag.
    Carries the per-call-site :class:`GuardMarker`.
``WriteOp``
    A store, classified by what it writes through (a parameter, a local,
    a global, or something the front end could not resolve).
``ReturnOp``
    A return, optionally naming the returned value.

Public API
----------
    EdgeKind, GuardMarker, WriteKind
    CallOp, WriteOp, ReturnOp
    BasicBlock       - a single basic block
    CFGEdge          - a directed edge between two blocks
    CFG              - the control flow graph for one function
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple, Union

from cfacheck.diagnostics import SourceLocation

__all__ = [
    "EdgeKind",
    "GuardMarker",
    "WriteKind",
    "CallOp",
    "WriteOp",
    "ReturnOp",
    "Operation",
    "BasicBlock",
    "CFGEdge",
    "CFG",
]


# ---------------------------------------------------------------------------
# Edge / marker kinds
# ---------------------------------------------------------------------------

class EdgeKind(enum.Enum):
    """Classification of a CFG edge."""

    NORMAL = "normal"
    ABNORMAL = "abnormal"


class GuardMarker(enum.Enum):
    """Whether a call site sits inside an exception-absorbing region."""

    UNGUARDED = "unguarded"
    GUARDED = "guarded"


class WriteKind(enum.Enum):
    PARAM = "param"
    LOCAL = "local"
    GLOBAL = "global"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallOp:
    """A call site.

    Attributes
    ----------
    target : str
        Callee symbol identifier, or the primitive tag when *is_primitive*.
    is_primitive : bool
        The call names an external primitive rather than a program symbol.
    guard : GuardMarker
    args : tuple[str, ...]
        Names of the values passed (used for resource tracking).
    result : str or None
        Name the call's result is stored into.
    """

    target: str
    is_primitive: bool = False
    guard: GuardMarker = GuardMarker.UNGUARDED
    args: Tuple[str, ...] = ()
    result: Optional[str] = None
    location: Optional[SourceLocation] = None

    @property
    def is_guarded(self) -> bool:
        return self.guard is GuardMarker.GUARDED


@dataclass(frozen=True)
class WriteOp:
    """A store through *base* into the field path *path*.

    An empty *path* on a ``PARAM`` write means the whole pointee is written.
    """

    kind: WriteKind
    base: str = ""
    path: Tuple[str, ...] = ()
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class ReturnOp:
    value: Optional[str] = None
    location: Optional[SourceLocation] = None


Operation = Union[CallOp, WriteOp, ReturnOp]


# ---------------------------------------------------------------------------
# BasicBlock
# ---------------------------------------------------------------------------

class BasicBlock:
    """A basic block in the CFG.

    Attributes
    ----------
    id : int
        Numeric identifier, unique within its CFG.
    label : str
        Front-end label (``"entry"``, ``"exit"``, ``"b3"``, ...).
    ops : list[Operation]
        Ordered operations.  Empty for the synthetic entry/exit blocks.
    successors : list[CFGEdge]
        Outgoing edges.
    predecessors : list[CFGEdge]
        Incoming edges.
    """

    __slots__ = ("id", "label", "ops", "successors", "predecessors")

    def __init__(
        self,
        block_id: int,
        label: str,
        ops: Optional[List[Operation]] = None,
    ) -> None:
        self.id: int = block_id
        self.label: str = label
        self.ops: List[Operation] = ops if ops is not None else []
        self.successors: List[CFGEdge] = []
        self.predecessors: List[CFGEdge] = []

    @property
    def calls(self) -> List[CallOp]:
        return [op for op in self.ops if isinstance(op, CallOp)]

    @property
    def writes(self) -> List[WriteOp]:
        return [op for op in self.ops if isinstance(op, WriteOp)]

    def normal_successors(self) -> List["BasicBlock"]:
        return [e.dst for e in self.successors if e.kind is EdgeKind.NORMAL]

    def __repr__(self) -> str:
        return f"BasicBlock(id={self.id}, label={self.label!r}, nops={len(self.ops)})"

    def __hash__(self) -> int:
        return self.id

    def __eq__(self, other) -> bool:
        if isinstance(other, BasicBlock):
            return self.id == other.id
        return NotImplemented


# ---------------------------------------------------------------------------
# CFGEdge
# ---------------------------------------------------------------------------

class CFGEdge:
    """A directed edge in the CFG."""

    __slots__ = ("src", "dst", "kind")

    def __init__(
        self,
        src: BasicBlock,
        dst: BasicBlock,
        kind: EdgeKind = EdgeKind.NORMAL,
    ) -> None:
        self.src = src
        self.dst = dst
        self.kind = kind

    @property
    def is_abnormal(self) -> bool:
        return self.kind is EdgeKind.ABNORMAL

    def __repr__(self) -> str:
        return (
            f"CFGEdge(BB{self.src.id} -> BB{self.dst.id}, "
            f"kind={self.kind.value!r})"
        )

    def __hash__(self) -> int:
        return hash((self.src.id, self.dst.id, self.kind))

    def __eq__(self, other) -> bool:
        if isinstance(other, CFGEdge):
            return (
                self.src.id == other.src.id
                and self.dst.id == other.dst.id
                and self.kind == other.kind
            )
        return NotImplemented


# ---------------------------------------------------------------------------
# CFG
# ---------------------------------------------------------------------------

class CFG:
    """Intraprocedural control flow graph for a single function.

    Attributes
    ----------
    entry : BasicBlock
        Synthetic entry block (no operations).
    exit : BasicBlock
        Synthetic exit block (no operations).
    blocks : list[BasicBlock]
        All basic blocks (including entry and exit), in creation order.
    edges : list[CFGEdge]
        All edges.
    """

    def __init__(self) -> None:
        self._next_id = 0
        self.blocks: List[BasicBlock] = []
        self.edges: List[CFGEdge] = []
        self._by_label: Dict[str, BasicBlock] = {}
        self.entry = self.add_block("entry")
        self.exit = self.add_block("exit")

    # ----- graph mutation ---------------------------------------------------

    def add_block(
        self,
        label: Optional[str] = None,
        ops: Optional[List[Operation]] = None,
    ) -> BasicBlock:
        """Create a block, register it and return it."""
        block = BasicBlock(self._next_id, label or f"b{self._next_id}", ops)
        self._next_id += 1
        self.blocks.append(block)
        self._by_label.setdefault(block.label, block)
        return block

    def add_edge(
        self,
        src: BasicBlock,
        dst: BasicBlock,
        kind: EdgeKind = EdgeKind.NORMAL,
    ) -> CFGEdge:
        """Create an edge, register it, and wire up predecessor/successor lists."""
        e = CFGEdge(src, dst, kind=kind)
        self.edges.append(e)
        src.successors.append(e)
        dst.predecessors.append(e)
        return e

    # ----- queries ----------------------------------------------------------

    def block(self, label: str) -> Optional[BasicBlock]:
        return self._by_label.get(label)

    def reachable_from(self, start: BasicBlock) -> Set[BasicBlock]:
        """Return the set of blocks reachable from *start* (any edge kind)."""
        visited: Set[BasicBlock] = set()
        worklist = [start]
        while worklist:
            n = worklist.pop()
            if n in visited:
                continue
            visited.add(n)
            for e in n.successors:
                if e.dst not in visited:
                    worklist.append(e.dst)
        return visited

    def reachable_blocks(self) -> List[BasicBlock]:
        """Blocks reachable from the entry, in creation order."""
        reachable = self.reachable_from(self.entry)
        return [b for b in self.blocks if b in reachable]

    def reverse_postorder(self) -> List[BasicBlock]:
        """Reachable blocks in reverse post-order (forward analyses)."""
        visited: Set[int] = set()
        order: List[BasicBlock] = []
        stack: List[Tuple[BasicBlock, Iterator[CFGEdge]]] = [
            (self.entry, iter(self.entry.successors))
        ]
        visited.add(self.entry.id)
        while stack:
            node, it = stack[-1]
            for e in it:
                if e.dst.id not in visited:
                    visited.add(e.dst.id)
                    stack.append((e.dst, iter(e.dst.successors)))
                    break
            else:
                stack.pop()
                order.append(node)
        order.reverse()
        return order

    def iter_ops(self, reachable_only: bool = True) -> Iterator[Tuple[BasicBlock, Operation]]:
        blocks = self.reachable_blocks() if reachable_only else self.blocks
        for block in blocks:
            for op in block.ops:
                yield block, op

    def abnormal_exit_edges(self) -> List[CFGEdge]:
        """Reachable abnormal edges that leave the function."""
        reachable = self.reachable_from(self.entry)
        return [
            e for e in self.edges
            if e.is_abnormal and e.dst is self.exit and e.src in reachable
        ]

    def __repr__(self) -> str:
        return f"CFG(blocks={len(self.blocks)}, edges={len(self.edges)})"
