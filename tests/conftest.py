# tests/conftest.py
"""
Shared fixtures and builders for the cfacheck test-suite.

Programs are written in the S-expression description format understood
by :func:`cfacheck.sexp_loader.load_program`, which keeps each scenario
close to the C-like code it stands for.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pytest

from cfacheck.behavior import BehaviorInferencer, LocalFacts
from cfacheck.callgraph import CallGraph, build_callgraph
from cfacheck.checkers import CheckResult, ConsistencyChecker
from cfacheck.policy import AnalysisPolicy, load_policy
from cfacheck.sexp_loader import load_program
from cfacheck.symbols import Program


POLICY_TEXT = """
(policy
  (abnormal-transfer-primitives abort longjmp throw)
  (resource-registration-primitives registry_add)
  (resource-allocation-primitives malloc)
  (returning-primitives strlen memcpy)
  (hidden-fields (cache stamp refcount)))
"""


@pytest.fixture
def policy() -> AnalysisPolicy:
    return load_policy(POLICY_TEXT)


def run_check(text: str, policy: AnalysisPolicy, workers: Optional[int] = None) -> CheckResult:
    """Load *text* and run the consistency checker over it."""
    return ConsistencyChecker(policy, workers).check(load_program(text))


def kinds(result: CheckResult, identifier: str) -> List[Tuple[Optional[str], str]]:
    """``(attribute, errorId)`` pairs reported for *identifier*."""
    return [
        (
            d.attribute_bit.display_name if d.attribute_bit else None,
            d.kind.error_id,
        )
        for d in result.by_function(identifier)
    ]


def analyse(
    text: str, policy: AnalysisPolicy,
) -> Tuple[Program, BehaviorInferencer, Dict[str, LocalFacts], CallGraph]:
    """Load *text*, infer local facts serially and build the call graph."""
    program = load_program(text)
    inferencer = BehaviorInferencer(program, policy)
    local = {symbol.identifier: inferencer.infer(symbol) for symbol in program}
    return program, inferencer, local, build_callgraph(program, inferencer)
