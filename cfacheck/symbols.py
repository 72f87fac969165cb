"""
cfacheck.symbols
================

Function symbols and the whole-program snapshot the analyzer works on.

Symbols are created once per run from the front end's output and are never
mutated afterwards; workers share them read-only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from cfacheck.attributes import AttributeSet
from cfacheck.ctrlflow_graph import CFG
from cfacheck.diagnostics import SourceLocation
from cfacheck.errors import ProgramLoadError
from cfacheck.suffix import DecodedSuffix, SuffixStatus, decode_identifier

__all__ = ["ParameterDescriptor", "FunctionSymbol", "Program"]


@dataclass(frozen=True)
class ParameterDescriptor:
    """One formal parameter.

    ``is_const`` qualifies the *pointee* for pointer parameters
    (``const T *p``), so a read-only pointer is ``is_pointer and is_const``.
    """

    name: str
    is_pointer: bool = False
    is_const: bool = False
    pointee_type: Optional[str] = None

    @property
    def is_read_only_pointer(self) -> bool:
        return self.is_pointer and self.is_const

    @property
    def is_out_argument(self) -> bool:
        return self.is_pointer and not self.is_const


@dataclass(frozen=True)
class FunctionSymbol:
    """A function known to the analysis session.

    Attributes
    ----------
    identifier : str
        Full identifier, suffix included.
    location : SourceLocation
        Definition site.
    parameters : tuple[ParameterDescriptor, ...]
    body : CFG or None
        ``None`` for a declaration without a body (opaque to inference).
    registered_resource : str or None
        Per-function ownership annotation naming the value that is the
        registered resource.  When absent, the primary return value or the
        first out-argument is assumed.
    """

    identifier: str
    location: SourceLocation = field(default_factory=SourceLocation)
    parameters: Tuple[ParameterDescriptor, ...] = ()
    body: Optional[CFG] = field(default=None, compare=False)
    registered_resource: Optional[str] = None
    decoded: DecodedSuffix = field(init=False, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", tuple(self.parameters))
        object.__setattr__(self, "decoded", decode_identifier(self.identifier))

    @property
    def base_name(self) -> str:
        return self.decoded.base_name

    @property
    def declared(self) -> Optional[AttributeSet]:
        return self.decoded.attributes

    @property
    def suffix_status(self) -> SuffixStatus:
        return self.decoded.status

    @property
    def first_parameter(self) -> Optional[ParameterDescriptor]:
        return self.parameters[0] if self.parameters else None

    def parameter(self, name: str) -> Optional[ParameterDescriptor]:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    @property
    def sort_key(self) -> Tuple[str, int, str]:
        return (self.location.file, self.location.line, self.identifier)


class Program:
    """An ordered, name-indexed collection of :class:`FunctionSymbol`.

    Iteration order is (file, line, identifier), independent of the order
    the front end supplied the symbols in.
    """

    def __init__(self, symbols: Sequence[FunctionSymbol] = ()) -> None:
        self._by_name: Dict[str, FunctionSymbol] = {}
        for symbol in symbols:
            self.add(symbol)

    def add(self, symbol: FunctionSymbol) -> FunctionSymbol:
        if symbol.identifier in self._by_name:
            raise ProgramLoadError(
                f"duplicate function symbol {symbol.identifier!r}"
            )
        self._by_name[symbol.identifier] = symbol
        return symbol

    def get(self, identifier: str) -> Optional[FunctionSymbol]:
        return self._by_name.get(identifier)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._by_name

    def __getitem__(self, identifier: str) -> FunctionSymbol:
        return self._by_name[identifier]

    @property
    def symbols(self) -> List[FunctionSymbol]:
        return sorted(self._by_name.values(), key=lambda s: s.sort_key)

    def __iter__(self) -> Iterator[FunctionSymbol]:
        return iter(self.symbols)

    def __len__(self) -> int:
        return len(self._by_name)

    def __repr__(self) -> str:
        return f"Program(functions={len(self)})"
