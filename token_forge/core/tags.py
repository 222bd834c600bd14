"""Tag-group index and group-exclusivity locking."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, MutableMapping, Sequence, Tuple

from .assets import AssetIndex, TraitOption
from .rules import RuleStore, TagGroup

LOGGER = logging.getLogger("token_forge.tags")

TagLocks = MutableMapping[str, str]


@dataclass(frozen=True)
class TagMembership:
    group: str
    subtag: str


@dataclass
class CategoryCoverage:
    category: str
    total: int
    covered: int
    missing: List[str] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return self.total > 0 and not self.missing

    def as_dict(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "covered": self.covered,
            "missing": list(self.missing),
            "is_complete": self.is_complete,
        }


@dataclass(frozen=True)
class TagViolation:
    group: str
    subtags: Tuple[str, ...]

    def __str__(self) -> str:
        return f"tag group {self.group} mixes subtags {', '.join(self.subtags)}"


class TagIndex:
    """Derived once per batch from the rule store and the asset index."""

    def __init__(
        self,
        groups: Sequence[TagGroup],
        memberships: Mapping[Tuple[str, str], Sequence[TagMembership]],
        complete: Mapping[str, frozenset[str]],
        coverage: Mapping[str, Mapping[str, CategoryCoverage]],
    ) -> None:
        self.groups = tuple(groups)
        self._memberships = {key: tuple(items) for key, items in memberships.items()}
        self._complete = dict(complete)
        self._coverage = {group: dict(per_category) for group, per_category in coverage.items()}
        self._governing = frozenset(name for names in self._complete.values() for name in names)

    @classmethod
    def build(cls, store: RuleStore, index: AssetIndex) -> "TagIndex":
        memberships: Dict[Tuple[str, str], List[TagMembership]] = {}
        complete: Dict[str, set[str]] = {}
        coverage: Dict[str, Dict[str, CategoryCoverage]] = {}
        for group in store.tag_groups:
            covered_by_category: Dict[str, set[str]] = {}
            for subtag, members in group.subtags.items():
                for category, value in sorted(members):
                    memberships.setdefault((category, value), []).append(TagMembership(group.name, subtag))
                    if index.contains(category, value):
                        covered_by_category.setdefault(category, set()).add(value)
            per_category: Dict[str, CategoryCoverage] = {}
            for category in index.categories:
                all_values = index.values(category)
                if not all_values:
                    continue
                covered = covered_by_category.get(category, set())
                per_category[category] = CategoryCoverage(
                    category=category,
                    total=len(all_values),
                    covered=len(covered),
                    missing=sorted(all_values - covered),
                )
                if covered == set(all_values):
                    complete.setdefault(category, set()).add(group.name)
            coverage[group.name] = per_category
        for category, names in complete.items():
            LOGGER.debug("category %s is fully covered by tag group(s) %s", category, sorted(names))
        return cls(
            store.tag_groups,
            memberships,
            {category: frozenset(names) for category, names in complete.items()},
            coverage,
        )

    # ------------------------------------------------------------------
    def memberships_of(self, category: str, value: str) -> tuple[TagMembership, ...]:
        return self._memberships.get((category, value), ())

    def complete_groups(self, category: str) -> frozenset[str]:
        return self._complete.get(category, frozenset())

    def is_governed(self, category: str) -> bool:
        return bool(self._complete.get(category))

    def is_exclusive(self, group: str) -> bool:
        """True when *group* fully covers at least one category of the index."""

        return group in self._governing

    def allows(self, option: TraitOption, locks: Mapping[str, str]) -> bool:
        for membership in self.memberships_of(option.category, option.value):
            forced = locks.get(membership.group)
            if forced is not None and forced != membership.subtag:
                return False
        return True

    def filter(
        self,
        category: str,
        options: Iterable[TraitOption],
        locks: Mapping[str, str],
    ) -> List[TraitOption]:
        """Keep options compatible with the subtags already locked in.

        Untagged values of a partially covered category always survive, so
        such a category is never left without candidates by a lock.
        """

        if not locks:
            return list(options)
        return [option for option in options if self.allows(option, locks)]

    def lock(self, option: TraitOption, locks: TagLocks) -> None:
        for membership in self.memberships_of(option.category, option.value):
            if self.is_exclusive(membership.group) and membership.group not in locks:
                locks[membership.group] = membership.subtag

    def violations(self, options: Iterable[TraitOption]) -> List[TagViolation]:
        """Groups complete for a chosen category whose chosen options disagree on the subtag."""

        options = list(options)
        active: set[str] = set()
        for option in options:
            active |= self.complete_groups(option.category)
        seen: Dict[str, List[str]] = {}
        for option in options:
            for membership in self.memberships_of(option.category, option.value):
                if membership.group not in active:
                    continue
                subtags = seen.setdefault(membership.group, [])
                if membership.subtag not in subtags:
                    subtags.append(membership.subtag)
        return [
            TagViolation(group, tuple(subtags))
            for group, subtags in seen.items()
            if len(subtags) > 1
        ]

    def resolve(self, options: Iterable[TraitOption]) -> Dict[str, List[str]]:
        """``{group: [subtags]}`` hit by *options*, in configuration order."""

        pairs = {(option.category, option.value) for option in options}
        result: Dict[str, List[str]] = {}
        for group in self.groups:
            for subtag, members in group.subtags.items():
                if members & pairs:
                    result.setdefault(group.name, []).append(subtag)
        return result

    def coverage(self) -> Dict[str, Dict[str, object]]:
        report: Dict[str, Dict[str, object]] = {}
        for group in self.groups:
            per_category = self._coverage.get(group.name, {})
            complete = sum(1 for item in per_category.values() if item.is_complete)
            report[group.name] = {
                "per_category": {name: item.as_dict() for name, item in per_category.items()},
                "total_categories": len(per_category),
                "complete_categories": complete,
                "is_group_complete": bool(per_category) and complete == len(per_category),
            }
        return report


__all__ = ["CategoryCoverage", "TagIndex", "TagLocks", "TagMembership", "TagViolation"]
