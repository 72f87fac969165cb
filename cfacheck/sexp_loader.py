"""
cfacheck.sexp_loader — S-expression program descriptions
=========================================================

Front-end adapter: builds a :class:`~cfacheck.symbols.Program` from a
textual description of function symbols and their CFG bodies.  Any
external front end (a compiler plugin, a cppcheck dump walker, ...) can
emit this format; the analyzer itself never parses host-language source.

Grammar (informal)::

    program  := function*
    function := (function NAME
                   (at FILE LINE)?
                   (param NAME (pointer)? (const)? (type TYPE)?)*
                   (owns VALUE)?
                   block*)
    block    := (block LABEL op* (goto LABEL+)? (abnormal LABEL*)?)
    op       := (call TARGET call-opt*)
              | (primitive TAG call-opt*)
              | (write BASE FIELD*)        ; through a parameter
              | (write-local NAME) | (write-global NAME) | (write-unknown)
              | (return VALUE?)
    call-opt := (guarded) | (args NAME*) | (result NAME) | (at FILE LINE)

The first block is the entry block.  A block without ``goto`` falls
through to the synthetic exit; the label ``exit`` names that exit block.
An empty ``(goto)`` is rejected.

Depends on:
    - sexpdata          (S-expression parsing)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import sexpdata

from cfacheck.ctrlflow_graph import (
    CFG,
    BasicBlock,
    CallOp,
    EdgeKind,
    GuardMarker,
    Operation,
    ReturnOp,
    WriteKind,
    WriteOp,
)
from cfacheck.diagnostics import SourceLocation
from cfacheck.errors import ProgramLoadError
from cfacheck.symbols import FunctionSymbol, ParameterDescriptor, Program

__all__ = [
    "parse_forms",
    "load_program",
    "load_program_file",
]

logger = logging.getLogger(__name__)


# ===================================================================
#  PART 1 — S-EXPRESSION PARSING LAYER
# ===================================================================

def parse_forms(text: str) -> List[Any]:
    """Parse a string containing any number of top-level S-expressions.

    Symbols are normalised to ``str``; numbers and strings are kept.

    Raises
    ------
    ValueError
        If the text is not a well-formed S-expression stream.
    """
    # sexpdata parses a single form; wrap and strip the outer layer.
    try:
        parsed = sexpdata.loads(f"({text}\n)", nil=None, true=None, false=None)
    except Exception as exc:
        raise ValueError(f"failed to parse S-expression stream: {exc}") from exc
    return [_normalise(item) for item in parsed]


def _normalise(obj: Any) -> Any:
    """Recursively normalise sexpdata output to plain Python types."""
    if isinstance(obj, list):
        return [_normalise(x) for x in obj]
    if isinstance(obj, sexpdata.Symbol):
        value = getattr(obj, "value", None)
        return str(value()) if callable(value) else str(obj)
    if isinstance(obj, (bool, int, float, str)):
        return obj
    # Quoted / Bracket wrappers
    inner = getattr(obj, "_val", None)
    if inner is not None:
        return _normalise(inner)
    return str(obj)


def form_head(form: Any) -> Optional[str]:
    if isinstance(form, list) and form and isinstance(form[0], str):
        return form[0]
    return None


# ===================================================================
#  PART 2 — PROGRAM BUILDER
# ===================================================================

def load_program(text: str) -> Program:
    """Build a :class:`Program` from an S-expression description."""
    try:
        forms = parse_forms(text)
    except ValueError as exc:
        raise ProgramLoadError(str(exc)) from exc
    program = Program()
    for form in forms:
        if form_head(form) != "function":
            raise ProgramLoadError("expected a (function ...) form", form)
        program.add(_build_function(form))
    logger.debug("loaded %d function symbols", len(program))
    return program


def load_program_file(path: Union[str, Path]) -> Program:
    path = Path(path)
    return load_program(path.read_text(encoding="utf-8"))


def _build_function(form: List[Any]) -> FunctionSymbol:
    if len(form) < 2 or not isinstance(form[1], str):
        raise ProgramLoadError("function form needs a name", form)
    name = form[1]
    location = SourceLocation()
    params: List[ParameterDescriptor] = []
    owns: Optional[str] = None
    block_forms: List[List[Any]] = []

    for clause in form[2:]:
        head = form_head(clause)
        if head == "at":
            location = _location(clause)
        elif head == "param":
            params.append(_parameter(clause))
        elif head == "owns":
            owns = _single_name(clause)
        elif head == "block":
            block_forms.append(clause)
        else:
            raise ProgramLoadError(f"unknown clause in function {name!r}", clause)

    body = _build_cfg(name, block_forms, location) if block_forms else None
    return FunctionSymbol(
        identifier=name,
        location=location,
        parameters=tuple(params),
        body=body,
        registered_resource=owns,
    )


def _location(clause: List[Any]) -> SourceLocation:
    if len(clause) < 3 or not isinstance(clause[2], int):
        raise ProgramLoadError("(at FILE LINE) expected", clause)
    column = clause[3] if len(clause) > 3 and isinstance(clause[3], int) else 0
    return SourceLocation(str(clause[1]), clause[2], column)


def _single_name(clause: List[Any]) -> str:
    if len(clause) != 2 or not isinstance(clause[1], str):
        raise ProgramLoadError(f"({clause[0]} NAME) expected", clause)
    return clause[1]


def _parameter(clause: List[Any]) -> ParameterDescriptor:
    if len(clause) < 2 or not isinstance(clause[1], str):
        raise ProgramLoadError("(param NAME ...) expected", clause)
    is_pointer = is_const = False
    pointee_type: Optional[str] = None
    for flag in clause[2:]:
        head = form_head(flag)
        if head == "pointer":
            is_pointer = True
        elif head == "const":
            is_const = True
        elif head == "type":
            pointee_type = _single_name(flag)
        else:
            raise ProgramLoadError("unknown parameter qualifier", flag)
    return ParameterDescriptor(clause[1], is_pointer, is_const, pointee_type)


def _build_cfg(
    name: str,
    block_forms: Sequence[List[Any]],
    default_location: SourceLocation,
) -> CFG:
    cfg = CFG()
    blocks: List[Tuple[BasicBlock, List[Any]]] = []
    for bform in block_forms:
        label = _block_label(bform)
        if label in ("entry", "exit") or cfg.block(label) is not None:
            raise ProgramLoadError(
                f"duplicate or reserved block label {label!r} in {name!r}", bform
            )
        blocks.append((cfg.add_block(label), bform))

    cfg.add_edge(cfg.entry, blocks[0][0])
    for block, bform in blocks:
        normal: Optional[List[str]] = None
        abnormal: List[str] = []
        for item in bform[2:]:
            head = form_head(item)
            if head == "goto":
                if len(item) < 2:
                    raise ProgramLoadError(
                        f"(goto LABEL ...) needs at least one label in {name!r}", item
                    )
                normal = [str(t) for t in item[1:]]
            elif head == "abnormal":
                abnormal.extend(str(t) for t in item[1:])
            else:
                block.ops.append(_operation(item, default_location))
        for label in normal if normal is not None else ["exit"]:
            cfg.add_edge(block, _resolve(cfg, name, label, bform), EdgeKind.NORMAL)
        for label in abnormal:
            cfg.add_edge(block, _resolve(cfg, name, label, bform), EdgeKind.ABNORMAL)
    return cfg


def _block_label(bform: List[Any]) -> str:
    if len(bform) < 2 or not isinstance(bform[1], str):
        raise ProgramLoadError("(block LABEL ...) expected", bform)
    return bform[1]


def _resolve(cfg: CFG, name: str, label: str, bform: Any) -> BasicBlock:
    target = cfg.block(label)
    if target is None or target is cfg.entry:
        raise ProgramLoadError(f"unknown block {label!r} in {name!r}", bform)
    return target


def _operation(item: Any, default_location: SourceLocation) -> Operation:
    head = form_head(item)
    if head in ("call", "primitive"):
        return _call(item, head == "primitive", default_location)
    if head == "write":
        if len(item) < 2 or not isinstance(item[1], str):
            raise ProgramLoadError("(write BASE FIELD*) expected", item)
        return WriteOp(WriteKind.PARAM, item[1], tuple(str(f) for f in item[2:]))
    if head == "write-local":
        return WriteOp(WriteKind.LOCAL, _single_name(item))
    if head == "write-global":
        return WriteOp(WriteKind.GLOBAL, _single_name(item))
    if head == "write-unknown":
        return WriteOp(WriteKind.UNKNOWN)
    if head == "return":
        value = str(item[1]) if len(item) > 1 else None
        return ReturnOp(value)
    raise ProgramLoadError("unknown operation", item)


def _call(item: List[Any], is_primitive: bool, default_location: SourceLocation) -> CallOp:
    if len(item) < 2 or not isinstance(item[1], str):
        raise ProgramLoadError(f"({item[0]} TARGET ...) expected", item)
    options: Dict[str, Any] = {
        "guard": GuardMarker.UNGUARDED,
        "args": (),
        "result": None,
        "location": default_location,
    }
    for opt in item[2:]:
        head = form_head(opt)
        if head == "guarded":
            options["guard"] = GuardMarker.GUARDED
        elif head == "args":
            options["args"] = tuple(str(a) for a in opt[1:])
        elif head == "result":
            options["result"] = _single_name(opt)
        elif head == "at":
            options["location"] = _location(opt)
        else:
            raise ProgramLoadError("unknown call option", opt)
    return CallOp(target=item[1], is_primitive=is_primitive, **options)
