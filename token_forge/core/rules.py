"""Immutable rule configuration consumed by the generation core."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .assets import DEFAULT_WEIGHT, AssetIndex, TraitOption
from .naming import Context, has_prefix, join_context, sanitize, split_context

LOGGER = logging.getLogger("token_forge.rules")

WEIGHT_KEY_SEPARATOR = "__"

WeightBucket = Tuple[str, Context]


@dataclass(frozen=True)
class ConfigurationWarning:
    """Rule data that references something the asset index does not contain."""

    rule: str
    message: str
    severity: str = "warning"

    def as_dict(self) -> Dict[str, str]:
        return {"rule": self.rule, "message": self.message, "severity": self.severity}


def context_matches(scope: Context, item_context: Context, active: Iterable[str] = ()) -> bool:
    """Return True if a selector scoped to *scope* applies to an item.

    An empty scope matches everything. Otherwise the scope must be a prefix of
    the item's own context, or every scope segment must be present in the
    item context together with the currently active context tags.
    """

    if not scope:
        return True
    if has_prefix(item_context, scope):
        return True
    available = set(item_context)
    available.update(active)
    return set(scope) <= available


@dataclass(frozen=True)
class Selector:
    category: str
    value: str
    context: Context = ()

    def matches(self, option: TraitOption, active: Iterable[str] = ()) -> bool:
        return (
            option.category == self.category
            and option.value == self.value
            and context_matches(self.context, option.context, active)
        )

    def __str__(self) -> str:
        if self.context:
            return f"{self.category}={join_context(self.context)} - {self.value}"
        return f"{self.category}={self.value}"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "Selector | None":
        category = sanitize(raw.get("trait") or raw.get("trait_type") or "")
        value = sanitize(raw.get("value") or "")
        if not category or not value:
            return None
        return cls(category, value, split_context(raw.get("context")))


@dataclass(frozen=True)
class Rule:
    """Exclude/require relation declared on a primary selector."""

    primary: Selector
    exclude_with: tuple[Selector, ...] = ()
    require_with: tuple[Selector, ...] = ()

    def selectors(self) -> tuple[Selector, ...]:
        return (self.primary, *self.exclude_with, *self.require_with)

    def categories(self) -> frozenset[str]:
        return frozenset(selector.category for selector in self.selectors())

    def describe(self) -> str:
        parts = [str(self.primary)]
        if self.exclude_with:
            parts.append("excludes " + ", ".join(str(sel) for sel in self.exclude_with))
        if self.require_with:
            parts.append("requires one of " + ", ".join(str(sel) for sel in self.require_with))
        return " ".join(parts)


@dataclass(frozen=True)
class TagGroup:
    name: str
    subtags: Mapping[str, frozenset[Tuple[str, str]]] = field(default_factory=dict)

    def items(self) -> frozenset[Tuple[str, str]]:
        covered: set[Tuple[str, str]] = set()
        for members in self.subtags.values():
            covered |= members
        return frozenset(covered)


@dataclass(frozen=True)
class ContextOverride:
    """Full-body replacement: a context that suppresses other categories."""

    prefix: Context
    skip: tuple[str, ...] = ()
    parent: str | None = None

    def matches(self, context: Context) -> bool:
        return bool(self.prefix) and has_prefix(context, self.prefix)


@dataclass(frozen=True)
class RuleStore:
    weights: Mapping[WeightBucket, Mapping[str, float]] = field(default_factory=dict)
    show_to_map: Mapping[Tuple[str, str], tuple[str, ...]] = field(default_factory=dict)
    rules: tuple[Rule, ...] = ()
    tag_groups: tuple[TagGroup, ...] = ()
    dynamic_context: bool = False
    overrides: tuple[ContextOverride, ...] = ()
    load_warnings: tuple[ConfigurationWarning, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "RuleStore":
        raw = raw or {}
        warnings: List[ConfigurationWarning] = []
        global_block = raw.get("global") if isinstance(raw.get("global"), Mapping) else {}
        return cls(
            weights=_parse_weights(raw.get("weights"), warnings),
            show_to_map=_parse_show_to(raw.get("showTo")),
            rules=_parse_rules(raw.get("specific"), warnings),
            tag_groups=_parse_tags(raw.get("tags")),
            dynamic_context=bool(global_block.get("enableDynamicContext", False)),
            overrides=_parse_overrides(raw.get("contextOverrides")),
            load_warnings=tuple(warnings),
        )

    # ------------------------------------------------------------------
    def weight_for(self, category: str, context: Context, value: str) -> float:
        bucket = self.weights.get((category, context))
        if not bucket or value not in bucket:
            return DEFAULT_WEIGHT
        return float(bucket[value])

    def show_to(self, category: str, value: str) -> tuple[str, ...]:
        return self.show_to_map.get((category, value), ())

    def overrides_for(self, context: Context) -> tuple[ContextOverride, ...]:
        if not context:
            return ()
        return tuple(override for override in self.overrides if override.matches(context))

    # ------------------------------------------------------------------
    def validate_against(self, index: AssetIndex) -> List[ConfigurationWarning]:
        """Report rule data naming categories or values the index lacks."""

        warnings: List[ConfigurationWarning] = list(self.load_warnings)
        for rule in self.rules:
            for selector in rule.selectors():
                if not index.contains(selector.category, selector.value):
                    warnings.append(
                        ConfigurationWarning(
                            rule="specific.unknown_item",
                            message=f"rule '{rule.describe()}' references unknown asset {selector}; rule ignored",
                        )
                    )
                    break
        for group in self.tag_groups:
            for subtag, members in group.subtags.items():
                for category, value in sorted(members):
                    if not index.contains(category, value):
                        warnings.append(
                            ConfigurationWarning(
                                rule="tags.unknown_item",
                                message=f"tag {group.name}/{subtag} lists unknown asset {category}={value}",
                            )
                        )
        for (category, context), values in self.weights.items():
            if not index.contains(category):
                warnings.append(
                    ConfigurationWarning(
                        rule="weights.unknown_category",
                        message=f"weights bucket {category}{WEIGHT_KEY_SEPARATOR}{join_context(context)} has no category",
                    )
                )
                continue
            if resolve_context(index, category, context, exact=True) is None:
                warnings.append(
                    ConfigurationWarning(
                        rule="weights.unknown_context",
                        message=f"weights bucket {weight_key(category, context)} matches no context of {category}",
                    )
                )
            for value in values:
                if not index.contains(category, value):
                    warnings.append(
                        ConfigurationWarning(
                            rule="weights.unknown_value",
                            message=f"weight for unknown asset {category}={value}",
                        )
                    )
        for category, value in self.show_to_map:
            if not index.contains(category, value):
                warnings.append(
                    ConfigurationWarning(
                        rule="showTo.unknown_item",
                        message=f"showTo entry for unknown asset {category}={value}",
                    )
                )
        for override in self.overrides:
            named = list(override.skip) + ([override.parent] if override.parent else [])
            for category in named:
                if not index.contains(category):
                    warnings.append(
                        ConfigurationWarning(
                            rule="contextOverrides.unknown_category",
                            message=f"context override {join_context(override.prefix)} names unknown category {category}",
                        )
                    )
        return warnings

    def restricted_to(self, index: AssetIndex) -> "RuleStore":
        """Copy of the store fitted to *index*.

        Rules that can never match are dropped, and flattened contexts in
        weight buckets and rule selectors are mapped onto the index's own.
        """

        kept = tuple(
            _fit_rule(rule, index)
            for rule in self.rules
            if all(index.contains(sel.category, sel.value) for sel in rule.selectors())
        )
        if len(kept) != len(self.rules):
            LOGGER.warning("dropped %d rule(s) referencing unknown assets", len(self.rules) - len(kept))
        weights: Dict[WeightBucket, Dict[str, float]] = {}
        for (category, context), values in self.weights.items():
            resolved = resolve_context(index, category, context, exact=True)
            bucket = weights.setdefault((category, resolved if resolved is not None else context), {})
            for value, weight in values.items():
                if resolved == context or value not in bucket:
                    bucket[value] = weight
        return replace(self, rules=kept, weights=weights)


# ----------------------------------------------------------------------
# Parsing helpers


def parse_weight_key(key: str) -> WeightBucket:
    category, _, context = str(key).partition(WEIGHT_KEY_SEPARATOR)
    return sanitize(category), split_context(context)


def weight_key(category: str, context: Context) -> str:
    return f"{category}{WEIGHT_KEY_SEPARATOR}{join_context(context)}"


def resolve_context(index: AssetIndex, category: str, context: Context, *, exact: bool = False) -> Context | None:
    """Map a rule context onto a context *category* offers in *index*.

    Sanitised editor keys lose their ``/`` separators, so ``male/noir`` may
    arrive as ``malenoir``; such a key resolves to the index context whose
    segments join to the same text. With *exact* only full asset contexts
    qualify, otherwise any leading part of one does. ``None`` when nothing
    matches.
    """

    if not context:
        return context
    known: set[Context] = set()
    for item in index.contexts(category):
        if exact:
            known.add(item)
        else:
            known.update(item[:depth] for depth in range(1, len(item) + 1))
    if context in known:
        return context
    flat = "".join(context)
    for candidate in sorted(known):
        if "".join(candidate) == flat:
            return candidate
    return None


def _fit_selector(selector: Selector, index: AssetIndex) -> Selector:
    resolved = resolve_context(index, selector.category, selector.context)
    if resolved is None or resolved == selector.context:
        return selector
    LOGGER.debug("selector %s resolved to context %s", selector, join_context(resolved))
    return replace(selector, context=resolved)


def _fit_rule(rule: Rule, index: AssetIndex) -> Rule:
    return replace(
        rule,
        primary=_fit_selector(rule.primary, index),
        exclude_with=tuple(_fit_selector(sel, index) for sel in rule.exclude_with),
        require_with=tuple(_fit_selector(sel, index) for sel in rule.require_with),
    )


def _parse_weights(raw: Any, warnings: List[ConfigurationWarning]) -> Dict[WeightBucket, Dict[str, float]]:
    result: Dict[WeightBucket, Dict[str, float]] = {}
    if not isinstance(raw, Mapping):
        return result
    for key, values in raw.items():
        if not isinstance(values, Mapping):
            continue
        bucket = result.setdefault(parse_weight_key(key), {})
        for value, weight in values.items():
            try:
                bucket[sanitize(value)] = float(weight)
            except (TypeError, ValueError):
                warnings.append(
                    ConfigurationWarning(
                        rule="weights.not_a_number",
                        message=f"weight {key}/{value}={weight!r} is not a number; default used",
                    )
                )
    return result


def _parse_show_to(raw: Any) -> Dict[Tuple[str, str], tuple[str, ...]]:
    result: Dict[Tuple[str, str], tuple[str, ...]] = {}
    if not isinstance(raw, Mapping):
        return result
    for category, values in raw.items():
        if not isinstance(values, Mapping):
            continue
        for value, tags in values.items():
            if not isinstance(tags, Sequence) or isinstance(tags, str):
                continue
            cleaned = tuple(tag for tag in (sanitize(t) for t in tags) if tag)
            if cleaned:
                result[(sanitize(category), sanitize(value))] = cleaned
    return result


def _selectors(raw: Any) -> tuple[Selector, ...]:
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        return ()
    parsed = (Selector.from_mapping(item) for item in raw if isinstance(item, Mapping))
    return tuple(selector for selector in parsed if selector is not None)


def _parse_rules(raw: Any, warnings: List[ConfigurationWarning]) -> tuple[Rule, ...]:
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        return ()
    rules: List[Rule] = []
    for position, entry in enumerate(raw):
        if not isinstance(entry, Mapping):
            continue
        primary = Selector.from_mapping(entry)
        if primary is None:
            warnings.append(
                ConfigurationWarning(
                    rule="specific.malformed",
                    message=f"rule #{position} has no trait/value; ignored",
                )
            )
            continue
        rule = Rule(
            primary=primary,
            exclude_with=_selectors(entry.get("exclude_with")),
            require_with=_selectors(entry.get("require_with")),
        )
        if rule.exclude_with or rule.require_with:
            rules.append(rule)
    return tuple(rules)


def _parse_tags(raw: Any) -> tuple[TagGroup, ...]:
    if not isinstance(raw, Mapping):
        return ()
    groups: List[TagGroup] = []
    for name, node in raw.items():
        subtags_raw = node.get("subtags") if isinstance(node, Mapping) else None
        subtags: Dict[str, frozenset[Tuple[str, str]]] = {}
        if isinstance(subtags_raw, Mapping):
            for subtag, items in subtags_raw.items():
                members = set()
                for item in items or []:
                    if not isinstance(item, Mapping):
                        continue
                    category = sanitize(item.get("trait_type") or item.get("trait") or "")
                    value = sanitize(item.get("value") or "")
                    if category and value:
                        members.add((category, value))
                subtags[str(subtag)] = frozenset(members)
        groups.append(TagGroup(name=str(name), subtags=subtags))
    return tuple(groups)


def _parse_overrides(raw: Any) -> tuple[ContextOverride, ...]:
    if not isinstance(raw, Mapping):
        return ()
    overrides: List[ContextOverride] = []
    for prefix_raw, node in raw.items():
        prefix = split_context(prefix_raw)
        if not prefix:
            continue
        if isinstance(node, Mapping):
            skip_raw = node.get("skip") or []
            parent_raw = node.get("parent")
        else:
            skip_raw = node or []
            parent_raw = None
        if isinstance(skip_raw, str):
            skip_raw = [skip_raw]
        skip = tuple(category for category in (sanitize(s) for s in skip_raw) if category)
        parent = sanitize(parent_raw) if parent_raw else (skip[0] if skip else None)
        overrides.append(ContextOverride(prefix=prefix, skip=skip, parent=parent or None))
    return tuple(overrides)


__all__ = [
    "ConfigurationWarning",
    "ContextOverride",
    "Rule",
    "RuleStore",
    "Selector",
    "TagGroup",
    "context_matches",
    "parse_weight_key",
    "resolve_context",
    "weight_key",
]
