"""Ordered first-match rule evaluation.

Both the depth composite signal and the directive fusion are expressed as an
ordered list of :class:`Rule` objects.  :func:`evaluate` walks the list and
returns the outcome of the first rule whose predicate holds, along with the
rule name so callers can log and test which rule fired.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

C = TypeVar("C")
T = TypeVar("T")


@dataclass(frozen=True)
class Rule(Generic[C, T]):
    name: str
    predicate: Callable[[C], bool]
    outcome: T


@dataclass(frozen=True)
class RuleMatch(Generic[T]):
    outcome: T
    rule: Optional[str]

    @property
    def is_default(self) -> bool:
        return self.rule is None


def evaluate(rules: Sequence[Rule[C, T]], context: C, default: T) -> RuleMatch[T]:
    """Return the first matching rule's outcome, or ``default`` with ``rule=None``."""

    for rule in rules:
        if rule.predicate(context):
            return RuleMatch(rule.outcome, rule.name)
    return RuleMatch(default, None)


__all__ = ["Rule", "RuleMatch", "evaluate"]
