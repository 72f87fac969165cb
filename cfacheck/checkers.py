"""
cfacheck/checkers.py
════════════════════

The consistency checker: top-level driver of the analysis pipeline.

  ┌───────────────────────────────────────────────────────────┐
  │                   ConsistencyChecker                      │
  │                                                           │
  │   Program ──► Suffix Decoder (per symbol, at load time)   │
  │           ──► Behavior Inferencer (worker pool)           │
  │           ──► Call Graph + Fixpoint Propagator (rounds)   │
  │           ──► declared vs. inferred comparison            │
  │           ──► sorted Diagnostic sequence                  │
  └───────────────────────────────────────────────────────────┘

Comparison rules, per declared bit of a suffixed function:

  declared true,  inferred proven-false  → ContractViolation (error)
  declared true,  inferred unverifiable  → UnverifiableAttribute (warning)
  declared false, inferred proven-true   → ContractViolation (error)
  declared false, inferred unverifiable  → UnverifiableAttribute (warning),
                                            mayAbnormallyExit only
  mutablyConst holding vacuously         → RedundantAttribute (info)

Whole-program invariant: a function that declares no abnormal exit must
not reach, through unguarded calls, any function whose body performs an
abnormal transfer.  This is always an error, even when the fixed point
was cut short by the deadline.

Unsuffixed functions produce no diagnostics; a malformed suffix produces
exactly one MalformedSuffix diagnostic and no contract checking.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Tuple

from cfacheck.attributes import (
    AttributeBit,
    AttributeSet,
    BitFact,
    ControlFlowFact,
    FactState,
)
from cfacheck.behavior import BehaviorInferencer, LocalFacts, infer_all
from cfacheck.callgraph import CallGraph, build_callgraph
from cfacheck.diagnostics import (
    Diagnostic,
    DiagnosticKind,
    DiagnosticSink,
    Severity,
    sort_diagnostics,
)
from cfacheck.policy import AnalysisPolicy
from cfacheck.propagation import FixpointPropagator
from cfacheck.scheduling import Deadline, WorkerPool
from cfacheck.symbols import FunctionSymbol, Program

__all__ = [
    "FunctionStatus",
    "CheckResult",
    "ConsistencyChecker",
    "check_program",
]

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — RESULT MODEL
# ═════════════════════════════════════════════════════════════════════════

class FunctionStatus(Enum):
    """Per-function outcome labels of a run."""

    CLEAN = "clean"               # checked, no issues found
    ISSUES = "issues"             # checked, at least one diagnostic
    MALFORMED = "malformed"       # malformed suffix, not contract-checked
    NOT_CHECKED = "not-checked"   # unsuffixed or body-less


@dataclass(frozen=True)
class CheckResult:
    """
    Everything one run produced.

    Attributes
    ----------
    diagnostics : tuple[Diagnostic, ...]
        Sorted by source file, then source line.
    statuses    : function identifier → FunctionStatus label
    facts       : function identifier → ControlFlowFact (after propagation)
    rounds      : number of propagation rounds
    converged   : whether the fixed point was reached
    stats       : timing / counting statistics
    """
    diagnostics: Tuple[Diagnostic, ...]
    statuses: Dict[str, FunctionStatus] = field(default_factory=dict)
    facts: Dict[str, ControlFlowFact] = field(default_factory=dict)
    rounds: int = 0
    converged: bool = True
    stats: Dict[str, Any] = field(default_factory=dict)

    def by_function(self, identifier: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.function_identifier == identifier]

    def status(self, identifier: str) -> FunctionStatus:
        return self.statuses[identifier]

    @property
    def checked(self) -> FrozenSet[str]:
        return frozenset(
            ident for ident, status in self.statuses.items()
            if status in (FunctionStatus.CLEAN, FunctionStatus.ISSUES)
        )

    @property
    def not_checked(self) -> FrozenSet[str]:
        return frozenset(
            ident for ident, status in self.statuses.items()
            if status is FunctionStatus.NOT_CHECKED
        )

    @property
    def has_errors(self) -> bool:
        return any(d.severity is Severity.ERROR for d in self.diagnostics)

    def emit(self, sink: DiagnosticSink) -> None:
        """Hand the ordered sequence to a sink."""
        for diagnostic in self.diagnostics:
            sink.emit(diagnostic)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — CONSISTENCY CHECKER
# ═════════════════════════════════════════════════════════════════════════

class ConsistencyChecker:
    """
    Drives decode → infer → propagate → compare for a whole program.

    Usage
    -----
    >>> checker = ConsistencyChecker(policy)
    >>> result = checker.check(program)
    >>> for d in result.diagnostics:
    ...     print(d.to_gcc_format())
    """

    def __init__(
        self,
        policy: Optional[AnalysisPolicy] = None,
        workers: Optional[int] = None,
    ) -> None:
        self.policy = policy or AnalysisPolicy()
        self.workers = workers or self.policy.workers

    def check(self, program: Program) -> CheckResult:
        t0 = time.monotonic()
        deadline = Deadline(self.policy.deadline_seconds)
        inferencer = BehaviorInferencer(program, self.policy)

        with WorkerPool(self.workers) as pool:
            local = infer_all(program, self.policy, pool, deadline)
            t_infer = time.monotonic()
            graph = build_callgraph(program, inferencer)
            propagation = FixpointPropagator(graph, local, pool, deadline).run()
        t_prop = time.monotonic()

        facts = {
            ident: ControlFlowFact(
                may_abnormally_exit=propagation.facts[ident],
                mutably_const=lf.mutably_const,
                registers_resource=lf.registers_resource,
            )
            for ident, lf in local.items()
        }

        diagnostics: List[Diagnostic] = []
        statuses: Dict[str, FunctionStatus] = {}
        for symbol in program:
            found, status = self._check_symbol(
                symbol, local, facts, graph,
            )
            diagnostics.extend(found)
            statuses[symbol.identifier] = status

        ordered = tuple(sort_diagnostics(diagnostics))
        stats = {
            "functions": len(program),
            "infer_seconds": t_infer - t0,
            "propagate_seconds": t_prop - t_infer,
            "workers": self.workers,
            "callgraph": graph.statistics(),
        }
        logger.info(
            "checked %d functions: %d diagnostics (%d errors)",
            len(program), len(ordered),
            sum(1 for d in ordered if d.severity is Severity.ERROR),
        )
        return CheckResult(
            diagnostics=ordered,
            statuses=statuses,
            facts=facts,
            rounds=propagation.rounds,
            converged=propagation.converged,
            stats=stats,
        )

    # ----- per function -----------------------------------------------------

    def _check_symbol(
        self,
        symbol: FunctionSymbol,
        local: Dict[str, LocalFacts],
        facts: Dict[str, ControlFlowFact],
        graph: CallGraph,
    ) -> Tuple[List[Diagnostic], FunctionStatus]:
        decoded = symbol.decoded
        if decoded.is_malformed:
            return [self._malformed(symbol)], FunctionStatus.MALFORMED
        declared = decoded.attributes
        if declared is None or symbol.body is None:
            return [], FunctionStatus.NOT_CHECKED

        fact = facts[symbol.identifier]
        found: List[Diagnostic] = []
        for bit, value in declared:
            diagnostic = self._compare(symbol, declared, bit, value, fact.get(bit))
            if diagnostic is not None:
                found.append(diagnostic)

        if not declared.may_abnormally_exit:
            # holds even when the fixed point was cut short
            path = abnormal_exit_path(graph, local, symbol.identifier)
            if path is not None:
                found = [
                    d for d in found
                    if d.attribute_bit is not AttributeBit.MAY_ABNORMALLY_EXIT
                ]
                found.append(self._totality_violation(symbol, path))

        return found, FunctionStatus.ISSUES if found else FunctionStatus.CLEAN

    def _compare(
        self,
        symbol: FunctionSymbol,
        declared: AttributeSet,
        bit: AttributeBit,
        value: bool,
        inferred: BitFact,
    ) -> Optional[Diagnostic]:
        name = bit.display_name
        if bit is AttributeBit.MUTABLY_CONST and inferred.redundant:
            if not value:
                return None
            return _make(
                symbol, bit, value, inferred.state,
                Severity.INFO, DiagnosticKind.REDUNDANT_ATTRIBUTE,
                f"{symbol.identifier}: {name} is redundant: {inferred.reason}",
            )

        if value and inferred.state is FactState.PROVEN_FALSE:
            return _make(
                symbol, bit, value, inferred.state,
                Severity.ERROR, DiagnosticKind.CONTRACT_VIOLATION,
                f"{symbol.identifier} declares {name} ({declared.suffix}) "
                f"but {inferred.reason}",
            )
        if value and inferred.state is FactState.UNVERIFIABLE:
            return _make(
                symbol, bit, value, inferred.state,
                Severity.WARNING, DiagnosticKind.UNVERIFIABLE_ATTRIBUTE,
                f"{symbol.identifier}: cannot confirm {name}: {inferred.reason}",
            )
        if not value and inferred.state is FactState.PROVEN_TRUE:
            return _make(
                symbol, bit, value, inferred.state,
                Severity.ERROR, DiagnosticKind.CONTRACT_VIOLATION,
                f"{symbol.identifier} does not declare {name} ({declared.suffix}) "
                f"but {inferred.reason}",
            )
        if (
            not value
            and bit is AttributeBit.MAY_ABNORMALLY_EXIT
            and inferred.state is FactState.UNVERIFIABLE
        ):
            return _make(
                symbol, bit, value, inferred.state,
                Severity.WARNING, DiagnosticKind.UNVERIFIABLE_ATTRIBUTE,
                f"{symbol.identifier}: cannot confirm it never exits "
                f"abnormally: {inferred.reason}",
            )
        return None

    def _totality_violation(self, symbol: FunctionSymbol, path: List[str]) -> Diagnostic:
        bit = AttributeBit.MAY_ABNORMALLY_EXIT
        return _make(
            symbol, bit, False, FactState.PROVEN_TRUE,
            Severity.ERROR, DiagnosticKind.CONTRACT_VIOLATION,
            f"{symbol.identifier} promises no abnormal exit but reaches one "
            f"through {' -> '.join(path)}",
        )

    def _malformed(self, symbol: FunctionSymbol) -> Diagnostic:
        return Diagnostic(
            location=symbol.location,
            function_identifier=symbol.identifier,
            attribute_bit=None,
            declared_value=None,
            inferred_fact=None,
            severity=Severity.WARNING,
            kind=DiagnosticKind.MALFORMED_SUFFIX,
            message=(
                f"{symbol.identifier}: malformed CFA suffix "
                f"{symbol.decoded.raw_suffix!r} (expected _c0 .. _c7)"
            ),
        )


def _make(
    symbol: FunctionSymbol,
    bit: AttributeBit,
    declared: bool,
    inferred: FactState,
    severity: Severity,
    kind: DiagnosticKind,
    message: str,
) -> Diagnostic:
    return Diagnostic(
        location=symbol.location,
        function_identifier=symbol.identifier,
        attribute_bit=bit,
        declared_value=declared,
        inferred_fact=inferred,
        severity=severity,
        kind=kind,
        message=message,
    )


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — WHOLE-PROGRAM INVARIANT
# ═════════════════════════════════════════════════════════════════════════

def abnormal_exit_path(
    graph: CallGraph,
    local: Dict[str, LocalFacts],
    identifier: str,
) -> Optional[List[str]]:
    """Shortest unguarded call path from *identifier* to an abnormal transfer.

    Returns the chain of function identifiers followed by the witness
    (primitive or edge) of the function that performs the transfer, or
    ``None`` if no such path exists.
    """
    start = graph.node(identifier)
    if start is None:
        return None
    parents: Dict[str, Optional[str]] = {start.id: None}
    queue: Deque[str] = deque([start.id])
    while queue:
        current = queue.popleft()
        facts = local.get(current)
        if facts is not None and facts.local_exit.state is FactState.PROVEN_TRUE:
            chain: List[str] = []
            step: Optional[str] = current
            while step is not None:
                chain.append(step)
                step = parents[step]
            chain.reverse()
            if facts.exit_witness and facts.exit_witness != current:
                chain.append(facts.exit_witness)
            return chain
        node = graph.nodes[current]
        for callee in graph.unguarded_callees(node):
            if callee.id not in parents:
                parents[callee.id] = current
                queue.append(callee.id)
    return None


def check_program(
    program: Program,
    policy: Optional[AnalysisPolicy] = None,
    workers: Optional[int] = None,
) -> List[Diagnostic]:
    """Convenience entry point: the ordered diagnostic sequence for *program*."""
    return list(ConsistencyChecker(policy, workers).check(program).diagnostics)
