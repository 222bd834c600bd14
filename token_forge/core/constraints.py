"""Exclude/require relations evaluated from either endpoint."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Dict, Iterable, List, Mapping, Sequence

from .assets import TraitOption
from .rules import Rule, Selector

LOGGER = logging.getLogger("token_forge.constraints")

EXCLUDE = "exclude"
REQUIRE = "require"


@dataclass(frozen=True)
class RuleViolation:
    rule: Rule
    kind: str
    offender: TraitOption | None = None

    def as_dict(self) -> Dict[str, str]:
        return {
            "rule": self.rule.describe(),
            "kind": self.kind,
            "offender": self.offender.label if self.offender else "",
        }

    def __str__(self) -> str:
        return f"{self.kind} violation of '{self.rule.describe()}'"


def _matching(selectors: Iterable[Selector], option: TraitOption, active: Collection[str]) -> Selector | None:
    for selector in selectors:
        if selector.matches(option, active):
            return selector
    return None


class RuleSet:
    """Rules indexed by every category they mention.

    Exclusion is symmetric: ``A excludes B`` rejects B after A and A after B.
    Requirement stays one-way (``A`` needs one of its targets) but is checked
    from whichever side is selected second. A target category that has no
    selection does not take part in the check.
    """

    def __init__(self, rules: Sequence[Rule]) -> None:
        self.rules = tuple(rules)
        self._by_category: Dict[str, List[Rule]] = {}
        for rule in self.rules:
            for category in rule.categories():
                self._by_category.setdefault(category, []).append(rule)

    def __len__(self) -> int:
        return len(self.rules)

    def rules_for(self, category: str) -> tuple[Rule, ...]:
        return tuple(self._by_category.get(category, ()))

    # ------------------------------------------------------------------
    def conflict(
        self,
        candidate: TraitOption,
        chosen: Mapping[str, TraitOption],
        active: Collection[str] = (),
    ) -> RuleViolation | None:
        """First rule that rejects *candidate* given the options accepted so far."""

        active = set(active)
        for rule in self.rules_for(candidate.category):
            if rule.primary.matches(candidate, active):
                violation = self._check_primary(rule, candidate, chosen, active)
                if violation is not None:
                    return violation
                continue
            primary_option = chosen.get(rule.primary.category)
            if primary_option is None or not rule.primary.matches(primary_option, active):
                continue
            if _matching(rule.exclude_with, candidate, active):
                return RuleViolation(rule, EXCLUDE, candidate)
            if any(sel.category == candidate.category for sel in rule.require_with):
                selection = dict(chosen)
                selection[candidate.category] = candidate
                if not self._requirement_met(rule, selection, active):
                    return RuleViolation(rule, REQUIRE, candidate)
        return None

    def permits(
        self,
        candidate: TraitOption,
        chosen: Mapping[str, TraitOption],
        active: Collection[str] = (),
    ) -> bool:
        return self.conflict(candidate, chosen, active) is None

    def violations(
        self,
        chosen: Mapping[str, TraitOption],
        active: Collection[str] = (),
    ) -> List[RuleViolation]:
        """Re-validate a complete selection against every rule."""

        active = set(active)
        found: List[RuleViolation] = []
        for rule in self.rules:
            primary_option = chosen.get(rule.primary.category)
            if primary_option is None or not rule.primary.matches(primary_option, active):
                continue
            violation = self._check_primary(rule, primary_option, chosen, active)
            if violation is not None:
                found.append(violation)
        return found

    # ------------------------------------------------------------------
    def _check_primary(
        self,
        rule: Rule,
        primary_option: TraitOption,
        chosen: Mapping[str, TraitOption],
        active: Collection[str],
    ) -> RuleViolation | None:
        for selector in rule.exclude_with:
            other = chosen.get(selector.category)
            if other is not None and other != primary_option and selector.matches(other, active):
                return RuleViolation(rule, EXCLUDE, other)
        if not self._requirement_met(rule, chosen, active):
            return RuleViolation(rule, REQUIRE, primary_option)
        return None

    @staticmethod
    def _requirement_met(
        rule: Rule,
        chosen: Mapping[str, TraitOption],
        active: Collection[str],
    ) -> bool:
        evaluable = [sel for sel in rule.require_with if sel.category in chosen]
        if not evaluable:
            return True
        return any(sel.matches(chosen[sel.category], active) for sel in evaluable)


__all__ = ["EXCLUDE", "REQUIRE", "RuleSet", "RuleViolation"]
