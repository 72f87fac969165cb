# tests/test_diagnostics.py
"""
Tests for cfacheck.diagnostics: the diagnostic model, ordering and rendering.
"""

import json

from cfacheck.attributes import AttributeBit, FactState
from cfacheck.diagnostics import (
    CollectingSink,
    Diagnostic,
    DiagnosticKind,
    Severity,
    SourceLocation,
    sort_diagnostics,
)


def make_diag(file="a.c", line=1, function="f_c0", bit=AttributeBit.MAY_ABNORMALLY_EXIT,
              kind=DiagnosticKind.CONTRACT_VIOLATION):
    return Diagnostic(
        location=SourceLocation(file, line),
        function_identifier=function,
        attribute_bit=bit,
        declared_value=False,
        inferred_fact=FactState.PROVEN_TRUE,
        severity=Severity.ERROR,
        kind=kind,
        message="f_c0 reaches abort",
    )


class TestDiagnostic:

    def test_to_dict(self):
        d = make_diag().to_dict()
        assert d["file"] == "a.c"
        assert d["linenr"] == 1
        assert d["attribute"] == "mayAbnormallyExit"
        assert d["inferred"] == "proven-true"
        assert d["errorId"] == "contractViolation"
        assert d["severity"] == "error"

    def test_json_round_trips_through_dict(self):
        diag = make_diag()
        assert json.loads(diag.to_json_str()) == diag.to_dict()

    def test_gcc_format(self):
        text = make_diag(line=12).to_gcc_format()
        assert text == "a.c:12: error: f_c0 reaches abort [contractViolation]"

    def test_location_with_column(self):
        assert str(SourceLocation("x.c", 3, 7)) == "x.c:3:7"

    def test_malformed_has_no_bit(self):
        diag = make_diag(bit=None, kind=DiagnosticKind.MALFORMED_SUFFIX)
        assert diag.to_dict()["attribute"] is None


class TestSorting:

    def test_file_then_line_then_tiebreaks(self):
        diags = [
            make_diag("b.c", 1),
            make_diag("a.c", 9, bit=AttributeBit.REGISTERS_RESOURCE),
            make_diag("a.c", 9, bit=AttributeBit.MAY_ABNORMALLY_EXIT),
            make_diag("a.c", 2, function="z"),
            make_diag("a.c", 2, function="y"),
        ]
        ordered = sort_diagnostics(diags)
        assert [(d.location.file, d.location.line, d.function_identifier) for d in ordered] == [
            ("a.c", 2, "y"),
            ("a.c", 2, "z"),
            ("a.c", 9, "f_c0"),
            ("a.c", 9, "f_c0"),
            ("b.c", 1, "f_c0"),
        ]
        assert ordered[2].attribute_bit is AttributeBit.MAY_ABNORMALLY_EXIT

    def test_collecting_sink(self):
        sink = CollectingSink()
        sink.emit(make_diag())
        assert len(sink) == 1
