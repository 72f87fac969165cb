"""
cfacheck.suffix
===============

Splits an identifier into its base name and declared CFA contract.

Only the *final* underscore-delimited segment is inspected:

* ``c`` followed by exactly one digit ``0..7`` is a contract suffix;
* ``c`` alone, ``c`` followed by a run that starts with a digit
  (``c8``, ``c12``, ``c1x``) or by a single letter (``cA``) is malformed;
* anything else (``_count``, ``_cfg``, ``_c`` inside the name) is an
  ordinary name part and carries no contract.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Optional

from cfacheck.attributes import AttributeSet

__all__ = [
    "SuffixStatus",
    "DecodedSuffix",
    "decode_identifier",
    "encode_identifier",
]

# One final "_c" segment, captured with whatever follows it.
_TRAILING_C = re.compile(r"^(?P<base>.*)_c(?P<tail>[A-Za-z0-9]*)$", re.DOTALL)
_MALFORMED_TAIL = re.compile(r"^(?:|[0-9][A-Za-z0-9]*|[A-Za-z])$")


class SuffixStatus(enum.Enum):
    CONTRACT = "contract"
    NONE = "none"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class DecodedSuffix:
    """Result of :func:`decode_identifier`.

    ``attributes`` is set only when ``status`` is ``CONTRACT``.
    """

    identifier: str
    status: SuffixStatus
    base_name: str
    attributes: Optional[AttributeSet] = None
    raw_suffix: str = ""

    @property
    def has_contract(self) -> bool:
        return self.status is SuffixStatus.CONTRACT

    @property
    def is_malformed(self) -> bool:
        return self.status is SuffixStatus.MALFORMED


def decode_identifier(identifier: str) -> DecodedSuffix:
    """Decode the trailing ``_c<digit>`` suffix of *identifier*."""
    match = _TRAILING_C.match(identifier)
    if match is None:
        return DecodedSuffix(identifier, SuffixStatus.NONE, identifier)

    base, tail = match.group("base"), match.group("tail")
    raw = "_c" + tail
    if len(tail) == 1 and tail in "01234567":
        if not base:
            return DecodedSuffix(identifier, SuffixStatus.MALFORMED, base, raw_suffix=raw)
        return DecodedSuffix(
            identifier,
            SuffixStatus.CONTRACT,
            base,
            AttributeSet.from_digit(int(tail)),
            raw,
        )
    if _MALFORMED_TAIL.match(tail):
        return DecodedSuffix(identifier, SuffixStatus.MALFORMED, base, raw_suffix=raw)
    return DecodedSuffix(identifier, SuffixStatus.NONE, identifier)


def encode_identifier(base_name: str, attributes: AttributeSet) -> str:
    return base_name + attributes.suffix
