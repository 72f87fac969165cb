"""
cfacheck.errors
===============

Exception types raised for invalid *inputs* to the analyzer.

Analysis findings are never exceptions: they are :class:`Diagnostic`
records (see :mod:`cfacheck.diagnostics`).  The classes below only fire
when a caller hands the analyzer something it cannot interpret at all,
such as a broken policy file or two symbols with the same identifier.

Hierarchy
---------
::

    CfaError
    ├── PolicyError        - bad policy configuration
    └── ProgramLoadError   - bad program description / symbol table
"""

from __future__ import annotations

from typing import Any, Optional


class CfaError(Exception):
    """Base class for all cfacheck errors."""


class PolicyError(CfaError):
    """The policy configuration is malformed or names an unknown option."""

    def __init__(self, message: str, option: Optional[str] = None) -> None:
        self.option = option
        if option:
            message = f"{message} (option {option!r})"
        super().__init__(message)


class ProgramLoadError(CfaError):
    """A program description or symbol table could not be loaded.

    Attributes
    ----------
    form : Any
        The offending S-expression form (normalised), when known.
    """

    def __init__(self, message: str, form: Any = None) -> None:
        self.form = form
        if form is not None:
            message = f"{message}: {form!r}"
        super().__init__(message)
