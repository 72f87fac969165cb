# tests/test_checkers.py
"""
End-to-end tests for cfacheck.checkers: declared contracts compared with
the inferred facts over whole programs.
"""

import pytest

from cfacheck.attributes import AttributeBit, FactState
from cfacheck.checkers import ConsistencyChecker, FunctionStatus, abnormal_exit_path, check_program
from cfacheck.diagnostics import CollectingSink, DiagnosticKind, Severity
from cfacheck.policy import AnalysisPolicy
from cfacheck.sexp_loader import load_program

from tests.conftest import analyse, kinds, run_check


VIOLATION = ("mayAbnormallyExit", "contractViolation")


class TestAbnormalExit:

    def test_total_function_calling_a_thrower(self, policy):
        result = run_check(
            '(function helper_c1 (at "a.c" 10) (block b0 (primitive abort)))'
            '(function safe_c0 (at "a.c" 20) (block b0 (call helper_c1)))',
            policy,
        )
        assert kinds(result, "safe_c0") == [VIOLATION]
        assert kinds(result, "helper_c1") == []
        (diag,) = result.diagnostics
        assert diag.severity is Severity.ERROR
        assert diag.declared_value is False
        assert diag.inferred_fact is FactState.PROVEN_TRUE
        assert "helper_c1" in diag.message
        assert diag.location.line == 20

    def test_guarded_call_is_fine(self, policy):
        result = run_check(
            "(function helper_c1 (block b0 (primitive abort)))"
            "(function safe_c0 (block b0 (call helper_c1 (guarded))))",
            policy,
        )
        assert result.diagnostics == ()
        assert result.status("safe_c0") is FunctionStatus.CLEAN

    def test_violation_names_the_whole_path(self, policy):
        result = run_check(
            "(function a_c0 (block b0 (call b)))"
            "(function b (block b0 (call c)))"
            "(function c (block b0 (primitive longjmp)))",
            policy,
        )
        (diag,) = result.by_function("a_c0")
        assert "a_c0 -> b -> c -> longjmp" in diag.message

    def test_unguarded_primitive_in_own_body(self, policy):
        result = run_check("(function f_c0 (block b0 (primitive abort)))", policy)
        assert kinds(result, "f_c0") == [VIOLATION]
        (diag,) = result.diagnostics
        assert diag.severity is Severity.ERROR
        assert "abort" in diag.message

    def test_unguarded_abnormal_edge(self, policy):
        result = run_check("(function f_c0 (block b0 (call strlen) (abnormal exit)))", policy)
        assert kinds(result, "f_c0") == [VIOLATION]

    def test_declared_but_never_exits(self, policy):
        result = run_check("(function f_c1 (block b0 (call strlen)))", policy)
        assert kinds(result, "f_c1") == [VIOLATION]
        assert result.diagnostics[0].declared_value is True
        assert result.diagnostics[0].inferred_fact is FactState.PROVEN_FALSE

    def test_opaque_callee_is_a_warning(self, policy):
        result = run_check("(function f_c0 (block b0 (call mystery)))", policy)
        assert kinds(result, "f_c0") == [("mayAbnormallyExit", "unverifiableAttribute")]
        assert result.diagnostics[0].severity is Severity.WARNING

    def test_opaque_callee_with_declared_exit_is_a_warning(self, policy):
        result = run_check("(function f_c1 (block b0 (call mystery)))", policy)
        assert kinds(result, "f_c1") == [("mayAbnormallyExit", "unverifiableAttribute")]

    def test_body_less_callee_trusted_by_suffix(self, policy):
        result = run_check(
            '(function ext_c1 (at "ext.h" 1))'
            '(function safe_c0 (at "a.c" 5) (block b0 (call ext_c1)))',
            policy,
        )
        assert kinds(result, "safe_c0") == [VIOLATION]
        assert kinds(result, "ext_c1") == []
        assert "ext_c1" in result.not_checked

    def test_mutual_recursion_without_transfer(self, policy):
        result = run_check(
            "(function even_c0 (block b0 (call odd_c0)))"
            "(function odd_c0 (block b0 (call even_c0)))",
            policy,
        )
        assert result.diagnostics == ()
        assert result.converged


class TestMutablyConst:

    def test_read_only_first_parameter_is_redundant(self, policy):
        result = run_check(
            '(function get_c3 (at "a.c" 5) (param self (pointer) (const))'
            " (block b0 (primitive abort)))",
            policy,
        )
        assert kinds(result, "get_c3") == [("mutablyConst", "redundantAttribute")]
        assert result.diagnostics[0].severity is Severity.INFO

    def test_vacuous_is_redundant(self, policy):
        result = run_check("(function f_c2 (param c (pointer)) (block b0))", policy)
        assert kinds(result, "f_c2") == [("mutablyConst", "redundantAttribute")]

    def test_hidden_only(self, policy):
        result = run_check(
            "(function touch_c2 (param c (pointer) (type cache))"
            " (block b0 (write c stamp) (write c refcount)))",
            policy,
        )
        assert result.diagnostics == ()

    def test_observable_write(self, policy):
        result = run_check(
            "(function touch_c2 (param c (pointer) (type cache))"
            " (block b0 (write c stamp) (write c size)))",
            policy,
        )
        assert kinds(result, "touch_c2") == [("mutablyConst", "contractViolation")]
        assert "size" in result.diagnostics[0].message

    def test_undeclared_hidden_mutation(self, policy):
        result = run_check(
            "(function touch_c0 (param c (pointer) (type cache)) (block b0 (write c stamp)))",
            policy,
        )
        assert kinds(result, "touch_c0") == [("mutablyConst", "contractViolation")]

    def test_unresolved_write(self, policy):
        result = run_check(
            "(function touch_c2 (param c (pointer)) (block b0 (write-unknown)))",
            policy,
        )
        assert kinds(result, "touch_c2") == [("mutablyConst", "unverifiableAttribute")]

    def test_undeclared_unresolved_write_is_silent(self, policy):
        result = run_check(
            "(function touch_c0 (param c (pointer)) (block b0 (write-unknown)))",
            policy,
        )
        assert result.diagnostics == ()


class TestRegistersResource:

    def test_registered(self, policy):
        result = run_check(
            "(function make_c4 (block b0 (call malloc (result p))"
            " (call registry_add (args p)) (return p)))",
            policy,
        )
        assert result.diagnostics == ()

    def test_leak_on_one_path(self, policy):
        result = run_check(
            "(function make_c4"
            " (block b0 (call malloc (result p)) (goto b1 b2))"
            " (block b1 (call registry_add (args p)) (return p))"
            " (block b2 (return p)))",
            policy,
        )
        assert kinds(result, "make_c4") == [("registersResource", "contractViolation")]

    def test_no_allocation(self, policy):
        result = run_check("(function make_c4 (block b0 (call strlen)))", policy)
        assert kinds(result, "make_c4") == [("registersResource", "contractViolation")]

    def test_opaque_hand_off(self, policy):
        result = run_check(
            "(function make_c4 (block b0 (call malloc (result p))"
            " (call stash (args p) (guarded)) (return p)))",
            policy,
        )
        assert kinds(result, "make_c4") == [("registersResource", "unverifiableAttribute")]

    def test_opaque_call_on_an_unregistered_path(self, policy):
        result = run_check(
            "(function make_c4"
            " (block b0 (call malloc (result h)) (goto b1 b2))"
            " (block b1 (call mystery_fail) (return h))"
            " (block b2 (call registry_add (args h)) (return h)))",
            policy,
        )
        reported = kinds(result, "make_c4")
        assert ("registersResource", "contractViolation") not in reported
        assert ("registersResource", "unverifiableAttribute") in reported

    def test_program_symbol_as_allocation_primitive(self):
        policy = AnalysisPolicy(
            resource_registration_primitives={"registry_add"},
            resource_allocation_primitives={"malloc", "pool_alloc"},
        )
        result = run_check(
            "(function pool_alloc (block b0 (call malloc (result r)) (return r)))"
            "(function make_c4 (block b0 (call pool_alloc (result h))"
            " (call registry_add (args h)) (return h)))",
            policy,
        )
        assert kinds(result, "make_c4") == []

    def test_undeclared_registration(self, policy):
        result = run_check(
            "(function make_c0 (block b0 (call malloc (result p))"
            " (call registry_add (args p)) (return p)))",
            policy,
        )
        assert kinds(result, "make_c0") == [("registersResource", "contractViolation")]


class TestSuffixHandling:

    def test_unsuffixed_functions_produce_nothing(self, policy):
        result = run_check(
            "(function plain (param c (pointer)) (block b0 (write-global g) (primitive abort)))",
            policy,
        )
        assert result.diagnostics == ()
        assert result.status("plain") is FunctionStatus.NOT_CHECKED
        assert "plain" not in result.checked

    @pytest.mark.parametrize("name", ["foo_c8", "foo_c", "foo_cA", "foo_c12"])
    def test_malformed_suffix(self, policy, name):
        result = run_check(f"(function {name} (block b0 (primitive abort)))", policy)
        assert kinds(result, name) == [(None, "malformedSuffix")]
        assert result.diagnostics[0].severity is Severity.WARNING
        assert result.status(name) is FunctionStatus.MALFORMED

    def test_ordinary_name_parts(self, policy):
        result = run_check(
            "(function foo_count (block b0)) (function foo_cfg (block b0))", policy
        )
        assert result.diagnostics == ()


class TestResult:

    PROGRAM = """
    (function zeta_c0 (at "b.c" 3) (block b0 (call mystery)))
    (function alpha_c0 (at "a.c" 9) (block b0 (call thrower_c1)))
    (function thrower_c1 (at "a.c" 2) (block b0 (primitive throw)))
    (function beta_c9 (at "a.c" 9) (block b0))
    (function gamma_c6 (at "a.c" 5) (param p (pointer)) (block b0 (write p)))
    """

    def test_sorted_by_file_then_line(self, policy):
        result = run_check(self.PROGRAM, policy)
        keys = [(d.location.file, d.location.line) for d in result.diagnostics]
        assert keys == sorted(keys)
        assert result.diagnostics[0].function_identifier == "gamma_c6"
        assert result.diagnostics[-1].function_identifier == "zeta_c0"

    def test_by_function_and_status(self, policy):
        result = run_check(self.PROGRAM, policy)
        assert result.status("thrower_c1") is FunctionStatus.CLEAN
        assert result.status("alpha_c0") is FunctionStatus.ISSUES
        assert {"thrower_c1", "alpha_c0", "gamma_c6", "zeta_c0"} == result.checked
        assert result.has_errors

    def test_status_labels(self, policy):
        result = run_check(self.PROGRAM, policy)
        assert all(isinstance(s, FunctionStatus) for s in result.statuses.values())
        assert FunctionStatus("not-checked") is FunctionStatus.NOT_CHECKED
        assert FunctionStatus.ISSUES.value == "issues"

    def test_facts_are_exposed(self, policy):
        result = run_check(self.PROGRAM, policy)
        fact = result.facts["alpha_c0"]
        assert fact.get(AttributeBit.MAY_ABNORMALLY_EXIT).state is FactState.PROVEN_TRUE

    @pytest.mark.parametrize("workers", [1, 4, 16])
    def test_independent_of_worker_count(self, policy, workers):
        baseline = run_check(self.PROGRAM, policy, workers=1).diagnostics
        assert run_check(self.PROGRAM, policy, workers=workers).diagnostics == baseline

    def test_independent_of_declaration_order(self, policy):
        forward = run_check(self.PROGRAM, policy).diagnostics
        lines = self.PROGRAM.strip().splitlines()
        backward = run_check("\n".join(reversed(lines)), policy).diagnostics
        assert forward == backward

    def test_emit_to_sink(self, policy):
        result = run_check(self.PROGRAM, policy)
        sink = CollectingSink()
        result.emit(sink)
        assert sink.diagnostics == list(result.diagnostics)

    def test_check_program_helper(self, policy):
        program = load_program(self.PROGRAM)
        assert check_program(program, policy) == list(
            ConsistencyChecker(policy).check(program).diagnostics
        )


class TestDeadline:

    def test_everything_unverifiable_when_out_of_time(self, policy, monkeypatch):
        monkeypatch.setattr(
            "cfacheck.checkers.Deadline", lambda seconds: _Expired()
        )
        result = run_check(
            "(function f_c1 (block b0 (primitive abort)))"
            "(function g_c0 (block b0 (call strlen)))",
            policy,
        )
        assert not result.converged
        assert kinds(result, "f_c1") == [("mayAbnormallyExit", "unverifiableAttribute")]
        assert kinds(result, "g_c0") == [("mayAbnormallyExit", "unverifiableAttribute")]

    def test_totality_violation_survives_cut_short_propagation(self, policy):
        text = (
            "(function top_c0 (block b0 (call middle)))"
            "(function middle (block b0 (call bottom)))"
            "(function bottom (block b0 (primitive abort)))"
        )
        _, _, local, graph = analyse(text, policy)
        assert abnormal_exit_path(graph, local, "top_c0") == [
            "top_c0", "middle", "bottom", "abort",
        ]
        assert abnormal_exit_path(graph, local, "bottom") == ["bottom", "abort"]
        assert abnormal_exit_path(graph, local, "nowhere") is None


class _Expired:
    """A deadline that has always already passed."""

    def expired(self):
        return True

    def remaining(self):
        return 0.0


def test_default_policy_knows_no_primitives():
    result = ConsistencyChecker(AnalysisPolicy(workers=1)).check(
        load_program("(function f_c0 (block b0 (call abort)))")
    )
    assert result.diagnostics[0].kind is DiagnosticKind.UNVERIFIABLE_ATTRIBUTE
