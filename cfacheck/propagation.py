"""
cfacheck.propagation
====================

Whole-program fixed point for ``mayAbnormallyExit``.

``mayAbnormallyExit`` is the only fact that crosses function boundaries:
a function may exit abnormally if its own body does, or if it calls, from
an unguarded site, a function that may.  The other two facts are local to
one function's own writes and allocations.

Algorithm
---------
Facts live in the three-point chain ``PROVEN_FALSE < UNVERIFIABLE <
PROVEN_TRUE``.  Every function starts at its local fact when that is
``PROVEN_TRUE``, and at ``PROVEN_FALSE`` otherwise.  Each *round*
recomputes every function from its local fact and the facts its
unguarded callees had at the end of the previous round::

    f' = TRUE          if local(f) is TRUE or some callee is TRUE
         UNVERIFIABLE  if local(f) is UNVERIFIABLE or some callee is
         FALSE         otherwise

Rounds are parallel across functions and separated by a barrier; nothing
computed in round *k* is visible before round *k+1*.  Starting from the
bottom gives the *least* fixed point, so a cycle of functions that only
call each other settles at ``PROVEN_FALSE`` instead of assuming the worst.

When the deadline expires (or the safety cap on rounds is hit) every
function whose value could still change becomes ``UNVERIFIABLE``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from cfacheck.attributes import BitFact, FactState
from cfacheck.behavior import LocalFacts
from cfacheck.callgraph import CallGraph, CallGraphNode
from cfacheck.scheduling import Deadline, WorkerPool

__all__ = ["PropagationResult", "FixpointPropagator"]

logger = logging.getLogger(__name__)

# (state, witness, reason)
_Value = Tuple[FactState, Optional[str], str]


@dataclass(frozen=True)
class PropagationResult:
    """Outcome of the fixed-point iteration.

    Attributes
    ----------
    facts : dict[str, BitFact]
        Final ``mayAbnormallyExit`` fact per function identifier.
    witnesses : dict[str, str]
        For functions that may exit abnormally: the callee identifier or
        primitive that makes them do so.
    rounds : int
        Number of completed rounds.
    converged : bool
        ``False`` when the run was cut short.
    unconverged : frozenset[str]
        Functions forced to ``UNVERIFIABLE`` because they had not settled.
    """

    facts: Dict[str, BitFact]
    witnesses: Dict[str, str] = field(default_factory=dict)
    rounds: int = 0
    converged: bool = True
    unconverged: FrozenSet[str] = frozenset()

    def state(self, identifier: str) -> FactState:
        return self.facts[identifier].state

    def witness_chain(self, identifier: str) -> List[str]:
        """Follow witnesses from *identifier* down to the abnormal transfer."""
        chain = [identifier]
        seen = {identifier}
        current = self.witnesses.get(identifier)
        while current is not None and current not in seen:
            chain.append(current)
            seen.add(current)
            current = self.witnesses.get(current)
        return chain


class FixpointPropagator:
    """Round-based parallel fixed point over the call graph."""

    def __init__(
        self,
        graph: CallGraph,
        local_facts: Dict[str, LocalFacts],
        pool: WorkerPool,
        deadline: Optional[Deadline] = None,
        max_rounds: Optional[int] = None,
    ) -> None:
        self.graph = graph
        self.local_facts = local_facts
        self.pool = pool
        self.deadline = deadline or Deadline.never()
        self.nodes: List[CallGraphNode] = [
            n for n in graph.function_nodes() if n.id in local_facts
        ]
        self.max_rounds = (
            max_rounds if max_rounds is not None else 2 * len(self.nodes) + 2
        )
        self._callees: Dict[str, List[str]] = {
            n.id: [c.id for c in graph.unguarded_callees(n) if c.id in local_facts]
            for n in self.nodes
        }

    # ----- one function, one round ------------------------------------------

    def _recompute(self, node: CallGraphNode, previous: Dict[str, _Value]) -> _Value:
        local = self.local_facts[node.id]
        if local.local_exit.state is FactState.PROVEN_TRUE:
            return FactState.PROVEN_TRUE, local.exit_witness, local.local_exit.reason

        state = local.local_exit.state
        reason = local.local_exit.reason
        for callee in self._callees[node.id]:
            callee_state = previous[callee][0]
            if callee_state is FactState.PROVEN_TRUE:
                return (
                    FactState.PROVEN_TRUE,
                    callee,
                    f"unguarded call to {callee}, which may exit abnormally",
                )
            if callee_state is FactState.UNVERIFIABLE and state is FactState.PROVEN_FALSE:
                state = FactState.UNVERIFIABLE
                reason = f"unguarded call to {callee}, which is unverifiable"
        return state, None, reason

    def _initial(self) -> Dict[str, _Value]:
        values: Dict[str, _Value] = {}
        for node in self.nodes:
            local = self.local_facts[node.id]
            if local.local_exit.state is FactState.PROVEN_TRUE:
                values[node.id] = (
                    FactState.PROVEN_TRUE, local.exit_witness, local.local_exit.reason,
                )
            else:
                values[node.id] = (FactState.PROVEN_FALSE, None, "not yet computed")
        return values

    # ----- driver -----------------------------------------------------------

    def run(self) -> PropagationResult:
        current = self._initial()
        changed_last: Set[str] = {n.id for n in self.nodes}
        rounds = 0
        converged = False

        while rounds < self.max_rounds:
            if self.deadline.expired():
                logger.warning("deadline expired after %d propagation rounds", rounds)
                break
            snapshot = dict(current)
            results = self.pool.map_slots(
                lambda node: self._recompute(node, snapshot), self.nodes, self.deadline
            )
            if results.skipped:
                logger.warning(
                    "deadline expired during propagation round %d", rounds + 1
                )
                break

            # barrier passed: commit the whole round at once
            changed: Set[str] = set()
            for index, node in enumerate(self.nodes):
                value = results.values[index]
                if value is None:
                    value = (
                        FactState.UNVERIFIABLE.join(snapshot[node.id][0]),
                        snapshot[node.id][1],
                        "propagation failed for this function",
                    )
                if value[0] is not snapshot[node.id][0]:
                    changed.add(node.id)
                current[node.id] = value
            rounds += 1
            logger.debug("propagation round %d: %d changed", rounds, len(changed))
            if not changed:
                converged = True
                break
            changed_last = changed
        else:
            logger.warning(
                "propagation did not converge within %d rounds", self.max_rounds
            )

        unconverged: FrozenSet[str] = frozenset()
        if not converged:
            unconverged = self._unstable(current, changed_last)
            for identifier in unconverged:
                current[identifier] = (
                    FactState.UNVERIFIABLE, None, "fixed point not reached before the deadline",
                )

        facts = {ident: BitFact(state, reason) for ident, (state, _, reason) in current.items()}
        witnesses = {
            ident: witness
            for ident, (state, witness, _) in current.items()
            if state is FactState.PROVEN_TRUE and witness is not None
        }
        logger.info(
            "propagation: %d functions, %d rounds, converged=%s",
            len(self.nodes), rounds, converged,
        )
        return PropagationResult(facts, witnesses, rounds, converged, unconverged)

    def _unstable(self, current: Dict[str, _Value], changed_last: Set[str]) -> FrozenSet[str]:
        """Functions whose value could still change.

        A ``PROVEN_TRUE`` value is final.  Any other value is stable only if
        neither the function nor anything in its unguarded callee closure
        changed in the last completed round.
        """
        unstable: Set[str] = set()
        for node in self.nodes:
            if current[node.id][0] is FactState.PROVEN_TRUE:
                continue
            closure = {
                c.id for c in self.graph.transitive_callees(node, unguarded_only=True)
            }
            closure.add(node.id)
            if closure & changed_last:
                unstable.add(node.id)
        return frozenset(unstable)
