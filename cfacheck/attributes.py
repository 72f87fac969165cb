"""
cfacheck.attributes
===================

The attribute model shared by every stage of the analyzer.

A CFA suffix digit ``d`` in ``0..7`` packs three independent contracts::

    d = mayAbnormallyExit * 1 + mutablyConst * 2 + registersResource * 4

:class:`AttributeSet` is the *declared* side (decoded from the name);
:class:`ControlFlowFact` is the *inferred* side, one :class:`BitFact` per
bit, each carrying a :class:`FactState` confidence tag.

Public API
----------
    AttributeBit     - the three contract bits, with their weights
    AttributeSet     - declared contract, immutable
    FactState        - proven-false / unverifiable / proven-true
    BitFact          - inferred state of one bit (+ reason, redundancy)
    ControlFlowFact  - inferred counterpart of AttributeSet
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Iterator, Tuple


# ---------------------------------------------------------------------------
# Bits
# ---------------------------------------------------------------------------

class AttributeBit(enum.Enum):
    """One contract bit of a CFA suffix."""

    MAY_ABNORMALLY_EXIT = 1
    MUTABLY_CONST = 2
    REGISTERS_RESOURCE = 4

    @property
    def weight(self) -> int:
        return self.value

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @classmethod
    def ordered(cls) -> Tuple["AttributeBit", ...]:
        """All bits, lowest weight first."""
        return (cls.MAY_ABNORMALLY_EXIT, cls.MUTABLY_CONST, cls.REGISTERS_RESOURCE)


_DISPLAY_NAMES: Dict[AttributeBit, str] = {
    AttributeBit.MAY_ABNORMALLY_EXIT: "mayAbnormallyExit",
    AttributeBit.MUTABLY_CONST: "mutablyConst",
    AttributeBit.REGISTERS_RESOURCE: "registersResource",
}


# ---------------------------------------------------------------------------
# AttributeSet  –  declared side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AttributeSet:
    """Declared contract of a ``_cN`` suffixed function."""

    may_abnormally_exit: bool = False
    mutably_const: bool = False
    registers_resource: bool = False

    @classmethod
    def from_digit(cls, digit: int) -> "AttributeSet":
        """Decode a suffix digit.

        Raises
        ------
        ValueError
            If *digit* is outside ``0..7``.
        """
        if isinstance(digit, bool) or not isinstance(digit, int):
            raise ValueError(f"suffix digit must be an int, got {digit!r}")
        if not 0 <= digit <= 7:
            raise ValueError(f"suffix digit {digit} is outside 0..7")
        return cls(
            may_abnormally_exit=bool(digit & AttributeBit.MAY_ABNORMALLY_EXIT.weight),
            mutably_const=bool(digit & AttributeBit.MUTABLY_CONST.weight),
            registers_resource=bool(digit & AttributeBit.REGISTERS_RESOURCE.weight),
        )

    def to_digit(self) -> int:
        return sum(bit.weight for bit in AttributeBit.ordered() if self.get(bit))

    def get(self, bit: AttributeBit) -> bool:
        if bit is AttributeBit.MAY_ABNORMALLY_EXIT:
            return self.may_abnormally_exit
        if bit is AttributeBit.MUTABLY_CONST:
            return self.mutably_const
        return self.registers_resource

    @property
    def suffix(self) -> str:
        return f"_c{self.to_digit()}"

    def __iter__(self) -> Iterator[Tuple[AttributeBit, bool]]:
        for bit in AttributeBit.ordered():
            yield bit, self.get(bit)

    def __str__(self) -> str:
        on = [bit.display_name for bit, value in self if value]
        return f"{self.suffix}({', '.join(on) or 'none'})"


# ---------------------------------------------------------------------------
# FactState  –  confidence lattice
# ---------------------------------------------------------------------------

class FactState(enum.Enum):
    """Confidence tag of an inferred fact.

    Ordered ``PROVEN_FALSE < UNVERIFIABLE < PROVEN_TRUE`` so that the
    abnormal-exit propagation can take a plain maximum over callees.
    """

    PROVEN_FALSE = "proven-false"
    UNVERIFIABLE = "unverifiable"
    PROVEN_TRUE = "proven-true"

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def join(self, other: "FactState") -> "FactState":
        return self if self.rank >= other.rank else other

    @classmethod
    def join_all(cls, states: Iterable["FactState"]) -> "FactState":
        result = cls.PROVEN_FALSE
        for state in states:
            result = result.join(state)
        return result

    def __lt__(self, other: "FactState") -> bool:
        if not isinstance(other, FactState):
            return NotImplemented
        return self.rank < other.rank


_RANKS: Dict[FactState, int] = {
    FactState.PROVEN_FALSE: 0,
    FactState.UNVERIFIABLE: 1,
    FactState.PROVEN_TRUE: 2,
}


# ---------------------------------------------------------------------------
# Inferred facts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BitFact:
    """Inferred state of a single contract bit.

    Attributes
    ----------
    state : FactState
    reason : str
        Short human-readable justification, used in diagnostic messages.
    redundant : bool
        The guarantee holds but is logically unnecessary (e.g. a read-only
        first parameter already makes ``mutablyConst`` moot).
    """

    state: FactState
    reason: str = ""
    redundant: bool = False

    @classmethod
    def unverifiable(cls, reason: str) -> "BitFact":
        return cls(FactState.UNVERIFIABLE, reason)


def _unknown_bit() -> BitFact:
    return BitFact(FactState.UNVERIFIABLE, "not analyzed")


@dataclass(frozen=True)
class ControlFlowFact:
    """Per-function inferred counterpart of :class:`AttributeSet`."""

    may_abnormally_exit: BitFact = field(default_factory=_unknown_bit)
    mutably_const: BitFact = field(default_factory=_unknown_bit)
    registers_resource: BitFact = field(default_factory=_unknown_bit)

    @classmethod
    def unverifiable(cls, reason: str) -> "ControlFlowFact":
        bit = BitFact.unverifiable(reason)
        return cls(bit, bit, bit)

    def get(self, bit: AttributeBit) -> BitFact:
        if bit is AttributeBit.MAY_ABNORMALLY_EXIT:
            return self.may_abnormally_exit
        if bit is AttributeBit.MUTABLY_CONST:
            return self.mutably_const
        return self.registers_resource

    def with_bit(self, bit: AttributeBit, fact: BitFact) -> "ControlFlowFact":
        name = {
            AttributeBit.MAY_ABNORMALLY_EXIT: "may_abnormally_exit",
            AttributeBit.MUTABLY_CONST: "mutably_const",
            AttributeBit.REGISTERS_RESOURCE: "registers_resource",
        }[bit]
        return replace(self, **{name: fact})
