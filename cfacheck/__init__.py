"""
cfacheck — Static checker for CFA suffix contracts
==================================================

Functions whose identifier ends in ``_c<digit>`` declare a three-bit
control-flow contract in their name:

====  =====================  ==============================================
bit   attribute              meaning when set
====  =====================  ==============================================
1     mayAbnormallyExit      may leave through a non-local transfer
2     mutablyConst           only mutates hidden state of its first param
4     registersResource      registers what it allocates before returning
====  =====================  ==============================================

The package infers each fact from the function bodies, propagates
``mayAbnormallyExit`` over the whole call graph and reports where the
declared contract and the inferred facts disagree.

Core modules
------------
attributes
    Attribute bits, declared sets and the proven/unverifiable fact lattice.
suffix
    Decoding and encoding of the ``_c<digit>`` identifier suffix.
ctrlflow_graph
    Per-function control-flow graph with normal and abnormal edges.
symbols
    Function symbols and the program symbol table.
policy
    Policy configuration naming the relevant primitives.
sexp_loader
    S-expression front end for program descriptions.
behavior
    Per-function inference of the three local facts.
callgraph
    Whole-program call graph, Tarjan SCC.
propagation
    Round-based parallel fixed point of ``mayAbnormallyExit``.
checkers
    The consistency checker driving the full pipeline.

Quick start
-----------
>>> from cfacheck import load_policy, load_program, ConsistencyChecker
>>> policy = load_policy("(policy (abnormal-transfer-primitives abort))")
>>> program = load_program('''
...   (function die_c1 (at "a.c" 3) (block b0 (primitive abort)))
... ''')
>>> ConsistencyChecker(policy).check(program).diagnostics
()
"""

from __future__ import annotations

import importlib
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__all__: List[str] = []          # populated below


# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "CfaError",
        "PolicyError",
        "ProgramLoadError",
    ],
    "attributes": [
        "AttributeBit",
        "AttributeSet",
        "FactState",
        "BitFact",
        "ControlFlowFact",
    ],
    "suffix": [
        "SuffixStatus",
        "DecodedSuffix",
        "decode_identifier",
        "encode_identifier",
    ],
    "diagnostics": [
        "Severity",
        "DiagnosticKind",
        "SourceLocation",
        "Diagnostic",
        "sort_diagnostics",
        "CollectingSink",
    ],
    "ctrlflow_graph": [
        "EdgeKind",
        "GuardMarker",
        "WriteKind",
        "CallOp",
        "WriteOp",
        "ReturnOp",
        "BasicBlock",
        "CFGEdge",
        "CFG",
    ],
    "symbols": [
        "ParameterDescriptor",
        "FunctionSymbol",
        "Program",
    ],
    "sexp_loader": [
        "load_program",
        "load_program_file",
    ],
    "policy": [
        "AnalysisPolicy",
        "policy_from_mapping",
        "load_policy",
        "load_policy_file",
    ],
    "scheduling": [
        "Deadline",
        "WorkerPool",
    ],
    "behavior": [
        "CallClass",
        "LocalFacts",
        "BehaviorInferencer",
        "infer_all",
    ],
    "callgraph": [
        "CallGraph",
        "CallGraphNode",
        "CallGraphEdge",
        "build_callgraph",
    ],
    "propagation": [
        "PropagationResult",
        "FixpointPropagator",
    ],
    "checkers": [
        "FunctionStatus",
        "CheckResult",
        "ConsistencyChecker",
        "check_program",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"cfacheck: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(f"cfacheck.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, obj)
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all submodules in the package."""
    return sorted(_CORE_MODULES)


__all__ += ["list_submodules", "__version__"]

# ---------------------------------------------------------------------------
# TYPE_CHECKING block
# ---------------------------------------------------------------------------

if TYPE_CHECKING:
    from .errors import (
        CfaError as CfaError,
        PolicyError as PolicyError,
        ProgramLoadError as ProgramLoadError,
    )
    from .attributes import (
        AttributeBit as AttributeBit,
        AttributeSet as AttributeSet,
        FactState as FactState,
        BitFact as BitFact,
        ControlFlowFact as ControlFlowFact,
    )
    from .suffix import (
        SuffixStatus as SuffixStatus,
        DecodedSuffix as DecodedSuffix,
        decode_identifier as decode_identifier,
        encode_identifier as encode_identifier,
    )
    from .diagnostics import (
        Severity as Severity,
        DiagnosticKind as DiagnosticKind,
        SourceLocation as SourceLocation,
        Diagnostic as Diagnostic,
        sort_diagnostics as sort_diagnostics,
        CollectingSink as CollectingSink,
    )
    from .ctrlflow_graph import (
        EdgeKind as EdgeKind,
        GuardMarker as GuardMarker,
        WriteKind as WriteKind,
        CallOp as CallOp,
        WriteOp as WriteOp,
        ReturnOp as ReturnOp,
        BasicBlock as BasicBlock,
        CFGEdge as CFGEdge,
        CFG as CFG,
    )
    from .symbols import (
        ParameterDescriptor as ParameterDescriptor,
        FunctionSymbol as FunctionSymbol,
        Program as Program,
    )
    from .sexp_loader import (
        load_program as load_program,
        load_program_file as load_program_file,
    )
    from .policy import (
        AnalysisPolicy as AnalysisPolicy,
        policy_from_mapping as policy_from_mapping,
        load_policy as load_policy,
        load_policy_file as load_policy_file,
    )
    from .scheduling import (
        Deadline as Deadline,
        WorkerPool as WorkerPool,
    )
    from .behavior import (
        CallClass as CallClass,
        LocalFacts as LocalFacts,
        BehaviorInferencer as BehaviorInferencer,
        infer_all as infer_all,
    )
    from .callgraph import (
        CallGraph as CallGraph,
        CallGraphNode as CallGraphNode,
        CallGraphEdge as CallGraphEdge,
        build_callgraph as build_callgraph,
    )
    from .propagation import (
        PropagationResult as PropagationResult,
        FixpointPropagator as FixpointPropagator,
    )
    from .checkers import (
        FunctionStatus as FunctionStatus,
        CheckResult as CheckResult,
        ConsistencyChecker as ConsistencyChecker,
        check_program as check_program,
    )
