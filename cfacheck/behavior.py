"""
cfacheck.behavior
=================

Per-function behavior inference.

For every function body the inferencer computes, independently of every
other function, the three facts a CFA suffix makes claims about:

``mayAbnormallyExit`` (local part)
    Proven true when a live, unguarded call invokes a configured
    abnormal-transfer primitive, or when a live abnormal edge leaves the
    function.  Otherwise the callees of live unguarded call sites decide
    the question (resolved later by :mod:`cfacheck.propagation`), and
    opaque calls make the answer unverifiable.

``mutablyConst``
    Every write must target a hidden field of the first parameter's
    pointee; writes to locals do not count, writes through any other
    parameter or to globals are observable.

``registersResource``
    A forward may-analysis of "allocated but not yet registered" handles.
    The fact holds when every tracked allocation is registered on every
    path that reaches the normal exit.

"Live" blocks and operations are those reachable from the entry without
passing an unguarded abnormal-transfer primitive, which never returns.

Public API
----------
    CallClass           - classification of a call site
    LocalFacts          - per-function inference result
    BehaviorInferencer  - the per-function analysis
    infer_all           - run the inferencer over a program on a worker pool
"""

from __future__ import annotations

import enum
import heapq
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from cfacheck.attributes import AttributeBit, BitFact, FactState
from cfacheck.ctrlflow_graph import (
    CFG,
    BasicBlock,
    CallOp,
    CFGEdge,
    Operation,
    ReturnOp,
    WriteKind,
    WriteOp,
)
from cfacheck.policy import AnalysisPolicy
from cfacheck.scheduling import Deadline, WorkerPool
from cfacheck.symbols import FunctionSymbol, Program

__all__ = [
    "CallClass",
    "LocalFacts",
    "BehaviorInferencer",
    "infer_all",
]

logger = logging.getLogger(__name__)


class CallClass(enum.Enum):
    """What a call site means to the analysis."""

    ABNORMAL = "abnormal"      # configured abnormal-transfer primitive
    SYMBOL = "symbol"          # call into a program symbol
    RETURNING = "returning"    # external primitive known to return
    OPAQUE = "opaque"          # unknown primitive or unresolved callee


# ---------------------------------------------------------------------------
# LocalFacts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LocalFacts:
    """Facts inferred from one function body alone.

    Attributes
    ----------
    identifier : str
    local_exit : BitFact
        Local part of ``mayAbnormallyExit``: ``PROVEN_TRUE`` when the body
        alone proves an abnormal exit, ``UNVERIFIABLE`` when an opaque call
        could exit, ``PROVEN_FALSE`` otherwise.
    exit_witness : str or None
        The primitive or edge that proves ``local_exit``.
    opaque_calls : tuple[str, ...]
        Unguarded calls whose behavior is unknown.
    mutably_const : BitFact
    registers_resource : BitFact
    analyzed : bool
        ``False`` when the function has no body or its analysis did not
        run (deadline, worker failure).
    """

    identifier: str
    local_exit: BitFact
    exit_witness: Optional[str] = None
    opaque_calls: Tuple[str, ...] = ()
    mutably_const: BitFact = BitFact.unverifiable("not analyzed")
    registers_resource: BitFact = BitFact.unverifiable("not analyzed")
    analyzed: bool = True

    @classmethod
    def not_analyzed(cls, identifier: str, reason: str) -> "LocalFacts":
        bit = BitFact.unverifiable(reason)
        return cls(identifier, bit, mutably_const=bit, registers_resource=bit,
                   analyzed=False)

    def bit(self, bit: AttributeBit) -> BitFact:
        if bit is AttributeBit.MAY_ABNORMALLY_EXIT:
            return self.local_exit
        if bit is AttributeBit.MUTABLY_CONST:
            return self.mutably_const
        return self.registers_resource


# ---------------------------------------------------------------------------
# Resource-tracking lattice
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Pending:
    """Handles allocated but not registered yet.

    ``uncertain`` handles were passed to an opaque call that might have
    registered them.
    """

    pending: FrozenSet[str] = frozenset()
    uncertain: FrozenSet[str] = frozenset()

    def join(self, other: "_Pending") -> "_Pending":
        return _Pending(self.pending | other.pending, self.uncertain | other.uncertain)


_EMPTY = _Pending()


# ---------------------------------------------------------------------------
# BehaviorInferencer
# ---------------------------------------------------------------------------

class BehaviorInferencer:
    """Computes :class:`LocalFacts` for one function at a time.

    Instances hold only read-only references (program, policy) and are
    safe to share between worker threads.
    """

    def __init__(self, program: Program, policy: AnalysisPolicy) -> None:
        self.program = program
        self.policy = policy

    # ----- call classification ---------------------------------------------

    def classify(self, op: CallOp) -> CallClass:
        if not op.is_primitive and op.target in self.program:
            return CallClass.SYMBOL
        if self.policy.is_abnormal_transfer(op.target):
            return CallClass.ABNORMAL
        if self.policy.is_known_primitive(op.target):
            return CallClass.RETURNING
        return CallClass.OPAQUE

    def _terminates(self, op: Operation) -> bool:
        return (
            isinstance(op, CallOp)
            and not op.is_guarded
            and self.classify(op) is CallClass.ABNORMAL
        )

    # ----- liveness ---------------------------------------------------------

    def live_ops(self, block: BasicBlock) -> List[Operation]:
        """Operations of *block* up to and including the first terminating call."""
        ops: List[Operation] = []
        for op in block.ops:
            ops.append(op)
            if self._terminates(op):
                break
        return ops

    def block_terminates(self, block: BasicBlock) -> bool:
        return any(self._terminates(op) for op in block.ops)

    def live_blocks(self, cfg: CFG) -> List[BasicBlock]:
        """Blocks reachable from the entry along transfers that can happen."""
        seen: Set[BasicBlock] = set()
        worklist = [cfg.entry]
        while worklist:
            block = worklist.pop()
            if block in seen:
                continue
            seen.add(block)
            if self.block_terminates(block):
                continue
            for e in block.successors:
                if e.dst not in seen:
                    worklist.append(e.dst)
        return [b for b in cfg.blocks if b in seen]

    def iter_live(self, cfg: CFG) -> Iterator[Tuple[BasicBlock, Operation]]:
        for block in self.live_blocks(cfg):
            for op in self.live_ops(block):
                yield block, op

    # ----- entry point ------------------------------------------------------

    def infer(self, symbol: FunctionSymbol) -> LocalFacts:
        cfg = symbol.body
        if cfg is None:
            return self._declaration_facts(symbol)

        exit_fact, witness, opaque = self._infer_local_exit(cfg)
        facts = LocalFacts(
            identifier=symbol.identifier,
            local_exit=exit_fact,
            exit_witness=witness,
            opaque_calls=opaque,
            mutably_const=self._infer_mutably_const(symbol, cfg),
            registers_resource=self._infer_registers_resource(symbol, cfg),
        )
        logger.debug(
            "%s: exit=%s const=%s resource=%s",
            symbol.identifier,
            facts.local_exit.state.value,
            facts.mutably_const.state.value,
            facts.registers_resource.state.value,
        )
        return facts

    def unguarded_calls(self, cfg: CFG) -> List[CallOp]:
        """Live call sites outside any exception-absorbing region."""
        return [
            op for _, op in self.iter_live(cfg)
            if isinstance(op, CallOp) and not op.is_guarded
        ]

    def _declaration_facts(self, symbol: FunctionSymbol) -> LocalFacts:
        """A body-less symbol is trusted for what its suffix declares."""
        declared = symbol.declared
        base = LocalFacts.not_analyzed(symbol.identifier, "no body available")
        if declared is None:
            return base
        if declared.may_abnormally_exit:
            exit_fact = BitFact(FactState.PROVEN_TRUE, "declared by its suffix")
            witness: Optional[str] = symbol.identifier
        else:
            exit_fact = BitFact(FactState.PROVEN_FALSE, "declared by its suffix")
            witness = None
        return LocalFacts(
            symbol.identifier,
            exit_fact,
            exit_witness=witness,
            mutably_const=base.mutably_const,
            registers_resource=base.registers_resource,
            analyzed=False,
        )

    # ----- mayAbnormallyExit ------------------------------------------------

    def _infer_local_exit(
        self, cfg: CFG,
    ) -> Tuple[BitFact, Optional[str], Tuple[str, ...]]:
        witness: Optional[str] = None
        opaque: List[str] = []

        for op in self.unguarded_calls(cfg):
            kind = self.classify(op)
            if kind is CallClass.ABNORMAL:
                witness = witness or op.target
            elif kind is CallClass.OPAQUE and op.target not in opaque:
                opaque.append(op.target)

        live_set = set(self.live_blocks(cfg))
        for e in cfg.edges:
            if e.is_abnormal and e.dst is cfg.exit and e.src in live_set:
                witness = witness or f"abnormal edge from block {e.src.label!r}"
                break

        if witness is not None:
            fact = BitFact(FactState.PROVEN_TRUE, f"reaches {witness}")
        elif opaque:
            fact = BitFact(
                FactState.UNVERIFIABLE,
                f"unguarded call to opaque {', '.join(sorted(opaque))}",
            )
        else:
            fact = BitFact(FactState.PROVEN_FALSE, "no unguarded abnormal transfer")
        return fact, witness, tuple(opaque)

    # ----- mutablyConst -----------------------------------------------------

    def _infer_mutably_const(self, symbol: FunctionSymbol, cfg: CFG) -> BitFact:
        first = symbol.first_parameter
        if first is not None and first.is_read_only_pointer:
            return BitFact(
                FactState.PROVEN_TRUE,
                f"first parameter {first.name!r} is already read-only",
                redundant=True,
            )

        hidden_writes = 0
        unknown: Optional[WriteOp] = None
        for _, op in self.iter_live(cfg):
            if not isinstance(op, WriteOp) or op.kind is WriteKind.LOCAL:
                continue
            if op.kind is WriteKind.GLOBAL:
                return BitFact(FactState.PROVEN_FALSE, f"writes global {op.base!r}")
            if op.kind is WriteKind.UNKNOWN:
                unknown = unknown or op
                continue

            param = symbol.parameter(op.base)
            if param is None:
                unknown = unknown or op
                continue
            if not param.is_pointer:
                # a by-value parameter is a local copy
                continue
            if param is not first:
                return BitFact(
                    FactState.PROVEN_FALSE,
                    f"writes through parameter {param.name!r}",
                )
            if not op.path:
                return BitFact(
                    FactState.PROVEN_FALSE,
                    f"overwrites the whole pointee of {param.name!r}",
                )
            if not self.policy.is_hidden_field(param.pointee_type, op.path[0]):
                return BitFact(
                    FactState.PROVEN_FALSE,
                    f"writes observable field {'.'.join(op.path)!r} of {param.name!r}",
                )
            hidden_writes += 1

        if unknown is not None:
            return BitFact(FactState.UNVERIFIABLE, "write through an unresolved target")
        if hidden_writes:
            return BitFact(
                FactState.PROVEN_TRUE,
                f"only hidden state of {first.name!r} is written",
            )
        return BitFact(
            FactState.PROVEN_TRUE, "no hidden state is mutated", redundant=True
        )

    # ----- registersResource -----------------------------------------------

    def _allocations(self, cfg: CFG) -> List[CallOp]:
        return [
            op for _, op in self.iter_live(cfg)
            if isinstance(op, CallOp)
            and self.policy.is_allocation(op.target)
        ]

    def owned_handle(self, symbol: FunctionSymbol, cfg: CFG) -> Optional[str]:
        """The value that is "the" registered resource of *symbol*.

        The per-function annotation wins.  Otherwise the primary return
        value, then the first out-argument, provided an allocation
        actually produces it.  ``None`` means every allocation is tracked.
        """
        if symbol.registered_resource:
            return symbol.registered_resource
        produced = {op.result for op in self._allocations(cfg) if op.result}
        for _, op in self.iter_live(cfg):
            if isinstance(op, ReturnOp) and op.value in produced:
                return op.value
        for param in symbol.parameters:
            if param.is_out_argument and param.name in produced:
                return param.name
        return None

    def _infer_registers_resource(self, symbol: FunctionSymbol, cfg: CFG) -> BitFact:
        handle = self.owned_handle(symbol, cfg)
        tracked = [
            op for op in self._allocations(cfg)
            if handle is None or op.result == handle
        ]
        if not tracked:
            what = f"resource {handle!r}" if handle else "any resource"
            return BitFact(FactState.PROVEN_FALSE, f"does not allocate {what}")

        at_exit = self._solve_pending(cfg, handle)
        if at_exit.pending:
            return BitFact(
                FactState.PROVEN_FALSE,
                f"{', '.join(sorted(at_exit.pending))} may reach the exit unregistered",
            )
        if at_exit.uncertain:
            return BitFact(
                FactState.UNVERIFIABLE,
                f"{', '.join(sorted(at_exit.uncertain))} may be held across an opaque call",
            )
        return BitFact(
            FactState.PROVEN_TRUE, "every allocation is registered before returning"
        )

    def _transfer(self, block: BasicBlock, state: _Pending, handle: Optional[str]) -> Optional[_Pending]:
        """Apply *block* to *state*; ``None`` when the block never falls out."""
        pending, uncertain = set(state.pending), set(state.uncertain)
        for index, op in enumerate(block.ops):
            if not isinstance(op, CallOp):
                continue
            kind = self.classify(op)
            if kind is CallClass.ABNORMAL and not op.is_guarded:
                return None
            if self.policy.is_registration(op.target):
                if op.args:
                    pending.difference_update(op.args)
                    uncertain.difference_update(op.args)
                else:
                    pending.clear()
                    uncertain.clear()
            elif self.policy.is_allocation(op.target):
                if handle is None or op.result == handle:
                    name = op.result or f"<allocation {block.label}:{index}>"
                    pending.add(name)
                    uncertain.discard(name)
            elif kind is CallClass.OPAQUE and not op.is_guarded:
                # the call may never come back
                uncertain.update(pending)
                pending.clear()
            elif kind in (CallClass.OPAQUE, CallClass.SYMBOL):
                handed = pending.intersection(op.args)
                pending.difference_update(handed)
                uncertain.update(handed)
        return _Pending(frozenset(pending), frozenset(uncertain))

    def _solve_pending(self, cfg: CFG, handle: Optional[str]) -> _Pending:
        """Forward worklist (reverse post-order) to fixpoint; state at exit."""
        order = cfg.reverse_postorder()
        rank = {block.id: i for i, block in enumerate(order)}
        outs: Dict[int, Optional[_Pending]] = {}

        def carries(edge: CFGEdge) -> bool:
            # abnormal edges out of the function end the path
            return not (edge.is_abnormal and edge.dst is cfg.exit)

        def state_in(block: BasicBlock) -> Optional[_Pending]:
            merged: Optional[_Pending] = _EMPTY if block is cfg.entry else None
            for e in block.predecessors:
                out = outs.get(e.src.id)
                if out is None or not carries(e):
                    continue
                merged = out if merged is None else merged.join(out)
            return merged

        worklist: List[int] = [rank[cfg.entry.id]]
        queued: Set[int] = set(worklist)
        while worklist:
            index = heapq.heappop(worklist)
            queued.discard(index)
            block = order[index]
            incoming = state_in(block)
            if incoming is None or block is cfg.exit:
                continue
            out = self._transfer(block, incoming, handle)
            if out == outs.get(block.id) and block.id in outs:
                continue
            outs[block.id] = out
            if out is None:
                continue
            for e in block.successors:
                succ = rank.get(e.dst.id)
                if succ is not None and succ not in queued:
                    queued.add(succ)
                    heapq.heappush(worklist, succ)

        return state_in(cfg.exit) or _EMPTY


# ---------------------------------------------------------------------------
# Whole-program driver
# ---------------------------------------------------------------------------

def infer_all(
    program: Program,
    policy: AnalysisPolicy,
    pool: WorkerPool,
    deadline: Optional[Deadline] = None,
) -> Dict[str, LocalFacts]:
    """Infer local facts for every symbol of *program* on *pool*.

    Each symbol's result lands in its own slot.  Symbols whose slot stays
    empty (deadline expired, worker failure) get all-unverifiable facts.
    """
    inferencer = BehaviorInferencer(program, policy)
    symbols = program.symbols
    results = pool.map_slots(inferencer.infer, symbols, deadline)

    facts: Dict[str, LocalFacts] = {}
    for index, symbol in enumerate(symbols):
        value = results.values[index]
        if value is None:
            if index in results.failures:
                reason = f"analysis failed: {results.failures[index]}"
            else:
                reason = "deadline expired before analysis"
            value = LocalFacts.not_analyzed(symbol.identifier, reason)
        facts[symbol.identifier] = value

    logger.info(
        "inferred local facts for %d functions (%d skipped, %d failed)",
        len(symbols), len(results.skipped), len(results.failures),
    )
    return facts
