"""
cfacheck.diagnostics
====================

The diagnostic model: the only artifact the analyzer produces.

Each :class:`Diagnostic` is created once per mismatch or notable finding,
is immutable, and is collected into an output sequence ordered by
:func:`sort_diagnostics` (source file, then source line).  Rendering,
exit-code mapping and CLI flags belong to the consumer; the
``to_json_str`` / ``to_gcc_format`` helpers only give it a stable,
cppcheck-addon-compatible starting point.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from cfacheck.attributes import AttributeBit, FactState

__all__ = [
    "Severity",
    "DiagnosticKind",
    "SourceLocation",
    "Diagnostic",
    "DiagnosticSink",
    "CollectingSink",
    "sort_diagnostics",
]


# ═════════════════════════════════════════════════════════════════════════
#  SEVERITY / KIND
# ═════════════════════════════════════════════════════════════════════════

class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class DiagnosticKind(Enum):
    """Diagnostic taxonomy.

    MALFORMED_SUFFIX      : decode-time; the name ends in a broken ``_c`` suffix
    CONTRACT_VIOLATION    : an inferred fact contradicts a declared bit
    UNVERIFIABLE_ATTRIBUTE: conservative inference could not decide a bit
    REDUNDANT_ATTRIBUTE   : a declared bit is logically unnecessary
    """

    MALFORMED_SUFFIX = "malformedSuffix"
    CONTRACT_VIOLATION = "contractViolation"
    UNVERIFIABLE_ATTRIBUTE = "unverifiableAttribute"
    REDUNDANT_ATTRIBUTE = "redundantAttribute"

    @property
    def error_id(self) -> str:
        return self.value


_KIND_ORDER: Dict[DiagnosticKind, int] = {
    kind: index for index, kind in enumerate(DiagnosticKind)
}


@dataclass(frozen=True)
class SourceLocation:
    """A specific point in source code."""
    file: str = ""
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


# ═════════════════════════════════════════════════════════════════════════
#  DIAGNOSTIC
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Diagnostic:
    """
    A single finding about one function.

    Attributes
    ----------
    location            : where the function is defined
    function_identifier : the full (suffixed) identifier
    attribute_bit       : the bit concerned, ``None`` for MalformedSuffix
    declared_value      : the declared value of that bit, if any
    inferred_fact       : the inferred confidence state, if any
    severity            : Severity
    kind                : DiagnosticKind
    message             : human-readable description
    """
    location: SourceLocation
    function_identifier: str
    attribute_bit: Optional[AttributeBit]
    declared_value: Optional[bool]
    inferred_fact: Optional[FactState]
    severity: Severity
    kind: DiagnosticKind
    message: str = ""

    @property
    def sort_key(self) -> Tuple[str, int, int, str, int, int]:
        bit_weight = self.attribute_bit.weight if self.attribute_bit else 0
        return (
            self.location.file,
            self.location.line,
            self.location.column,
            self.function_identifier,
            bit_weight,
            _KIND_ORDER[self.kind],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.location.file,
            "linenr": self.location.line,
            "column": self.location.column,
            "function": self.function_identifier,
            "attribute": (
                self.attribute_bit.display_name if self.attribute_bit else None
            ),
            "declared": self.declared_value,
            "inferred": self.inferred_fact.value if self.inferred_fact else None,
            "severity": self.severity.value,
            "errorId": self.kind.error_id,
            "message": self.message,
        }

    def to_json_str(self) -> str:
        """Single-line JSON with a stable key order."""
        return json.dumps(self.to_dict(), sort_keys=True)

    def to_gcc_format(self) -> str:
        """GCC-style diagnostic string: file:line: severity: message."""
        return (
            f"{self.location}: {self.severity.value}: {self.message} "
            f"[{self.kind.error_id}]"
        )


def sort_diagnostics(diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
    """Order diagnostics by source file, then source line.

    Ties are broken by function identifier, bit weight and kind so the
    sequence never depends on the order in which workers produced it.
    """
    return sorted(diagnostics, key=lambda d: d.sort_key)


# ═════════════════════════════════════════════════════════════════════════
#  SINK
# ═════════════════════════════════════════════════════════════════════════

class DiagnosticSink(Protocol):
    """Consumer of the ordered diagnostic sequence."""

    def emit(self, diagnostic: Diagnostic) -> None:
        ...


class CollectingSink:
    """A sink that simply keeps everything it is given."""

    def __init__(self) -> None:
        self.diagnostics: List[Diagnostic] = []

    def emit(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def __len__(self) -> int:
        return len(self.diagnostics)
