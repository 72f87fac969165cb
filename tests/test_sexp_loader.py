# tests/test_sexp_loader.py
"""
Tests for cfacheck.sexp_loader: building function symbols and CFG bodies
from S-expression program descriptions.
"""

import pytest

from cfacheck.ctrlflow_graph import CallOp, EdgeKind, GuardMarker, ReturnOp, WriteKind, WriteOp
from cfacheck.errors import ProgramLoadError
from cfacheck.sexp_loader import load_program, load_program_file, parse_forms
from cfacheck.suffix import SuffixStatus


PROGRAM = """
; two functions and a declaration
(function parse_header_c1 (at "parser.c" 40 5)
  (param self (pointer) (type parser))
  (param out (pointer))
  (block b0
    (call strlen (args self))
    (primitive throw (guarded) (at "parser.c" 44))
    (goto b1 b2)
    (abnormal b2))
  (block b1 (write self pos) (goto exit))
  (block b2 (write-local tmp) (return out)))

(function helper (at "parser.c" 10))
"""


class TestParseForms:

    def test_symbols_become_strings(self):
        forms = parse_forms("(a b-c 3 \"x.c\")")
        assert forms == [["a", "b-c", 3, "x.c"]]

    def test_several_top_level_forms(self):
        assert len(parse_forms("(a) (b) (c)")) == 3

    def test_unbalanced_text_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_forms("(a (b)")


class TestLoadProgram:

    def test_symbols_and_locations(self):
        program = load_program(PROGRAM)
        assert len(program) == 2
        symbol = program["parse_header_c1"]
        assert symbol.location.file == "parser.c"
        assert symbol.location.line == 40
        assert symbol.location.column == 5
        assert symbol.suffix_status is SuffixStatus.CONTRACT
        assert symbol.declared.may_abnormally_exit

    def test_iteration_is_by_location(self):
        program = load_program(PROGRAM)
        assert [s.identifier for s in program] == ["helper", "parse_header_c1"]

    def test_parameters(self):
        symbol = load_program(PROGRAM)["parse_header_c1"]
        self_param, out = symbol.parameters
        assert self_param.is_pointer and not self_param.is_const
        assert self_param.pointee_type == "parser"
        assert symbol.first_parameter is self_param
        assert out.is_out_argument

    def test_declaration_has_no_body(self):
        assert load_program(PROGRAM)["helper"].body is None

    # ── CFG shape ──

    def test_entry_falls_into_first_block(self):
        cfg = load_program(PROGRAM)["parse_header_c1"].body
        assert [e.dst.label for e in cfg.entry.successors] == ["b0"]

    def test_edges(self):
        cfg = load_program(PROGRAM)["parse_header_c1"].body
        b0 = cfg.block("b0")
        assert [(e.dst.label, e.kind) for e in b0.successors] == [
            ("b1", EdgeKind.NORMAL),
            ("b2", EdgeKind.NORMAL),
            ("b2", EdgeKind.ABNORMAL),
        ]
        assert [e.dst for e in cfg.block("b1").successors] == [cfg.exit]
        # no goto: falls through to the exit
        assert [e.dst for e in cfg.block("b2").successors] == [cfg.exit]

    def test_operations(self):
        cfg = load_program(PROGRAM)["parse_header_c1"].body
        strlen, throw = cfg.block("b0").ops
        assert isinstance(strlen, CallOp) and not strlen.is_primitive
        assert strlen.args == ("self",)
        assert strlen.location.line == 40
        assert throw.is_primitive and throw.guard is GuardMarker.GUARDED
        assert throw.location.line == 44

        (write,) = cfg.block("b1").ops
        assert write == WriteOp(WriteKind.PARAM, "self", ("pos",))
        local, ret = cfg.block("b2").ops
        assert local.kind is WriteKind.LOCAL
        assert isinstance(ret, ReturnOp) and ret.value == "out"

    def test_owns_annotation(self):
        program = load_program("(function f (owns h) (block b0))")
        assert program["f"].registered_resource == "h"

    # ── Errors ──

    @pytest.mark.parametrize("text", [
        "(procedure f)",
        "(function)",
        "(function f (block b0 (goto nowhere)))",
        "(function f (block b0 (goto)))",
        "(function f (block b0) (block b0))",
        "(function f (block exit))",
        "(function f (block b0 (jump)))",
        "(function f (param p (volatile)))",
        "(function f (at \"a.c\" x))",
        "(function f) (function f)",
        "(function f (block b0 (call g (sometimes))))",
        "(function f",
    ])
    def test_rejects_bad_descriptions(self, text):
        with pytest.raises(ProgramLoadError):
            load_program(text)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "prog.sexp"
        path.write_text(PROGRAM, encoding="utf-8")
        assert "helper" in load_program_file(path)
