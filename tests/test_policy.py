# tests/test_policy.py
"""
Tests for cfacheck.policy: building, validating and parsing the analysis
policy.
"""

import pytest

from cfacheck.errors import PolicyError
from cfacheck.policy import AnalysisPolicy, load_policy, load_policy_file, policy_from_mapping


class TestAnalysisPolicy:

    def test_defaults(self):
        policy = AnalysisPolicy()
        assert policy.workers == 4
        assert policy.deadline_seconds is None
        assert not policy.is_abnormal_transfer("abort")

    def test_lists_become_frozensets(self):
        policy = AnalysisPolicy(abnormal_transfer_primitives=["abort", "abort"])
        assert policy.abnormal_transfer_primitives == frozenset({"abort"})

    def test_known_primitive_covers_every_set(self):
        policy = AnalysisPolicy(
            abnormal_transfer_primitives=["abort"],
            resource_registration_primitives=["reg"],
            resource_allocation_primitives=["alloc"],
            returning_primitives=["strlen"],
        )
        for name in ("abort", "reg", "alloc", "strlen"):
            assert policy.is_known_primitive(name)
        assert not policy.is_known_primitive("mystery")

    def test_hidden_field_lookup(self):
        policy = AnalysisPolicy(hidden_field_annotations={"cache": ["stamp"]})
        assert policy.is_hidden_field("cache", "stamp")
        assert not policy.is_hidden_field("cache", "size")
        assert not policy.is_hidden_field(None, "stamp")

    # ── Validation ──

    @pytest.mark.parametrize("workers", [0, -2, True, "4"])
    def test_bad_workers(self, workers):
        with pytest.raises(PolicyError):
            AnalysisPolicy(workers=workers)

    def test_bad_deadline(self):
        with pytest.raises(PolicyError):
            AnalysisPolicy(deadline_seconds=0)

    def test_bare_string_is_not_a_name_set(self):
        with pytest.raises(PolicyError):
            AnalysisPolicy(abnormal_transfer_primitives="abort")


class TestPolicyFromMapping:

    def test_camel_case_keys(self):
        policy = policy_from_mapping({
            "abnormalTransferPrimitives": ["longjmp"],
            "hiddenFieldAnnotations": {"cache": ["stamp"]},
            "deadline": 1.5,
        })
        assert policy.is_abnormal_transfer("longjmp")
        assert policy.deadline_seconds == 1.5

    def test_snake_case_keys(self):
        policy = policy_from_mapping({"returning_primitives": ["strlen"], "workers": 2})
        assert policy.returning_primitives == frozenset({"strlen"})
        assert policy.workers == 2

    def test_unknown_option_rejected(self):
        with pytest.raises(PolicyError) as info:
            policy_from_mapping({"abnormalPrimitives": ["abort"]})
        assert info.value.option == "abnormalPrimitives"


class TestLoadPolicy:

    def test_full_form(self, policy):
        assert policy.is_abnormal_transfer("throw")
        assert policy.is_registration("registry_add")
        assert policy.is_allocation("malloc")
        assert "memcpy" in policy.returning_primitives
        assert policy.is_hidden_field("cache", "refcount")

    def test_scalars(self):
        policy = load_policy("(policy (workers 16) (deadline 3))")
        assert policy.workers == 16
        assert policy.deadline_seconds == 3.0

    def test_repeated_clauses_accumulate(self):
        policy = load_policy(
            "(policy (abnormal-transfer-primitives abort) "
            "(abnormal-transfer-primitives exit))"
        )
        assert policy.abnormal_transfer_primitives == frozenset({"abort", "exit"})

    @pytest.mark.parametrize("text", [
        "(policy (frobnicate x))",
        "(policy (workers many))",
        "(policy) (policy)",
        "(settings)",
        "(policy (workers 2)",
    ])
    def test_rejects_bad_text(self, text):
        with pytest.raises(PolicyError):
            load_policy(text)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "policy.sexp"
        path.write_text("(policy (abnormal-transfer-primitives abort))", encoding="utf-8")
        assert load_policy_file(path).is_abnormal_transfer("abort")
