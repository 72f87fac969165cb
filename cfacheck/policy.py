"""
cfacheck.policy
===============

Policy configuration: which primitive calls mean what.

The CFA convention is deliberately mechanism-agnostic: an abnormal exit
may be a raised exception, a ``longjmp`` or process termination, so the
analyzer never hard-wires a control construct.  Everything it needs to
recognise is named here.

Recognised options
------------------
===================================  ======================================
option                               meaning
===================================  ======================================
``abnormalTransferPrimitives``       calls that never return normally
``resourceRegistrationPrimitives``   calls that register a resource
``resourceAllocationPrimitives``     calls that allocate a resource
``returningPrimitives``              external calls known to always return
``hiddenFieldAnnotations``           type -> non-observable field names
``workers``                          worker-pool size (default 4)
``deadline``                         optional global deadline in seconds
===================================  ======================================

A policy can be built directly, from a mapping (:func:`policy_from_mapping`,
camelCase or snake_case keys) or from an S-expression file
(:func:`load_policy`)::

    (policy
      (abnormal-transfer-primitives abort longjmp)
      (resource-registration-primitives registry_add)
      (resource-allocation-primitives malloc)
      (returning-primitives strlen)
      (hidden-fields (cache lru_stamp refcount))
      (workers 4)
      (deadline 2.5))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from cfacheck.errors import PolicyError
from cfacheck.sexp_loader import form_head, parse_forms

__all__ = [
    "AnalysisPolicy",
    "policy_from_mapping",
    "load_policy",
    "load_policy_file",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisPolicy:
    """Immutable analysis configuration shared by all workers."""

    abnormal_transfer_primitives: FrozenSet[str] = frozenset()
    resource_registration_primitives: FrozenSet[str] = frozenset()
    resource_allocation_primitives: FrozenSet[str] = frozenset()
    returning_primitives: FrozenSet[str] = frozenset()
    hidden_field_annotations: Mapping[str, FrozenSet[str]] = field(
        default_factory=dict, hash=False
    )
    workers: int = 4
    deadline_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        for name in (
            "abnormal_transfer_primitives",
            "resource_registration_primitives",
            "resource_allocation_primitives",
            "returning_primitives",
        ):
            object.__setattr__(self, name, _name_set(getattr(self, name), name))
        hidden = {
            str(type_name): _name_set(fields, "hidden_field_annotations")
            for type_name, fields in dict(self.hidden_field_annotations).items()
        }
        object.__setattr__(self, "hidden_field_annotations", hidden)
        if isinstance(self.workers, bool) or not isinstance(self.workers, int) or self.workers < 1:
            raise PolicyError(f"workers must be a positive integer, got {self.workers!r}", "workers")
        if self.deadline_seconds is not None and not self.deadline_seconds > 0:
            raise PolicyError(
                f"deadline must be positive, got {self.deadline_seconds!r}", "deadline"
            )

    # ----- queries ----------------------------------------------------------

    def is_abnormal_transfer(self, name: str) -> bool:
        return name in self.abnormal_transfer_primitives

    def is_registration(self, name: str) -> bool:
        return name in self.resource_registration_primitives

    def is_allocation(self, name: str) -> bool:
        return name in self.resource_allocation_primitives

    def is_known_primitive(self, name: str) -> bool:
        """Does the policy say anything about how *name* returns?"""
        return (
            name in self.abnormal_transfer_primitives
            or name in self.resource_registration_primitives
            or name in self.resource_allocation_primitives
            or name in self.returning_primitives
        )

    def is_hidden_field(self, type_name: Optional[str], field_name: str) -> bool:
        if type_name is None:
            return False
        return field_name in self.hidden_field_annotations.get(type_name, frozenset())


def _name_set(values: Any, option: str) -> FrozenSet[str]:
    if isinstance(values, str):
        raise PolicyError("expected a collection of names, got a string", option)
    try:
        return frozenset(str(v) for v in values)
    except TypeError as exc:
        raise PolicyError(f"expected a collection of names: {exc}", option) from exc


# ---------------------------------------------------------------------------
# Mapping front end
# ---------------------------------------------------------------------------

_OPTION_NAMES: Dict[str, str] = {
    "abnormalTransferPrimitives": "abnormal_transfer_primitives",
    "resourceRegistrationPrimitives": "resource_registration_primitives",
    "resourceAllocationPrimitives": "resource_allocation_primitives",
    "returningPrimitives": "returning_primitives",
    "hiddenFieldAnnotations": "hidden_field_annotations",
    "workers": "workers",
    "deadline": "deadline_seconds",
}
_OPTION_NAMES.update({v: v for v in list(_OPTION_NAMES.values())})


def policy_from_mapping(mapping: Mapping[str, Any]) -> AnalysisPolicy:
    """Build a policy from a mapping such as a decoded JSON object."""
    kwargs: Dict[str, Any] = {}
    for key, value in mapping.items():
        attr = _OPTION_NAMES.get(key)
        if attr is None:
            raise PolicyError("unknown policy option", key)
        kwargs[attr] = value
    return AnalysisPolicy(**kwargs)


# ---------------------------------------------------------------------------
# S-expression front end
# ---------------------------------------------------------------------------

_SEXP_SETS: Dict[str, str] = {
    "abnormal-transfer-primitives": "abnormal_transfer_primitives",
    "resource-registration-primitives": "resource_registration_primitives",
    "resource-allocation-primitives": "resource_allocation_primitives",
    "returning-primitives": "returning_primitives",
}


def load_policy(text: str) -> AnalysisPolicy:
    """Parse a ``(policy ...)`` S-expression."""
    try:
        forms = parse_forms(text)
    except ValueError as exc:
        raise PolicyError(str(exc)) from exc
    if len(forms) != 1 or form_head(forms[0]) != "policy":
        raise PolicyError("expected exactly one (policy ...) form")

    kwargs: Dict[str, Any] = {}
    hidden: Dict[str, List[str]] = {}
    for clause in forms[0][1:]:
        head = form_head(clause)
        if head in _SEXP_SETS:
            names = kwargs.setdefault(_SEXP_SETS[head], [])
            names.extend(str(v) for v in clause[1:])
        elif head == "hidden-fields":
            for entry in clause[1:]:
                if form_head(entry) is None:
                    raise PolicyError("(TYPE FIELD*) expected", "hidden-fields")
                hidden.setdefault(entry[0], []).extend(str(f) for f in entry[1:])
        elif head == "workers":
            kwargs["workers"] = _scalar(clause, int)
        elif head == "deadline":
            kwargs["deadline_seconds"] = float(_scalar(clause, (int, float)))
        else:
            raise PolicyError("unknown policy clause", str(head))
    kwargs["hidden_field_annotations"] = hidden
    policy = AnalysisPolicy(**kwargs)
    logger.debug(
        "policy: %d abnormal, %d registration, %d allocation primitives, "
        "%d annotated types",
        len(policy.abnormal_transfer_primitives),
        len(policy.resource_registration_primitives),
        len(policy.resource_allocation_primitives),
        len(policy.hidden_field_annotations),
    )
    return policy


def load_policy_file(path: Union[str, Path]) -> AnalysisPolicy:
    return load_policy(Path(path).read_text(encoding="utf-8"))


def _scalar(clause: List[Any], kind: Union[type, tuple]) -> Any:
    if len(clause) != 2 or isinstance(clause[1], bool) or not isinstance(clause[1], kind):
        raise PolicyError(f"({clause[0]} VALUE) expected", str(clause[0]))
    return clause[1]
