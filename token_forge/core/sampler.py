"""Weighted option sampling with visibility filtering."""
from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import Collection, List, Sequence

from .assets import AssetIndex, TraitOption
from .rules import RuleStore


@dataclass(frozen=True)
class Distribution:
    """Candidate options of one category with their effective weights."""

    category: str
    options: tuple[TraitOption, ...]
    weights: tuple[float, ...]

    @classmethod
    def of(cls, category: str, options: Sequence[TraitOption]) -> "Distribution":
        weights = [max(float(option.weight), 0.0) for option in options]
        if weights and sum(weights) <= 0:
            weights = [1.0 for _ in options]
        return cls(category, tuple(options), tuple(weights))

    @property
    def total(self) -> float:
        return float(sum(self.weights))

    def __bool__(self) -> bool:
        return self.total > 0

    def __len__(self) -> int:
        return len(self.options)

    def probabilities(self) -> List[float]:
        total = self.total
        if total <= 0:
            return [0.0 for _ in self.options]
        return [weight / total for weight in self.weights]

    def probability_of(self, option: TraitOption) -> float:
        for candidate, probability in zip(self.options, self.probabilities()):
            if candidate == option:
                return probability
        return 0.0

    def draw(self, rng: random.Random) -> TraitOption:
        """Cumulative weighted choice."""

        total = self.total
        if total <= 0:
            raise ValueError(f"cannot draw from empty distribution for '{self.category}'")
        threshold = rng.random() * total
        cumulative = 0.0
        last = None
        for option, weight in zip(self.options, self.weights):
            if weight <= 0:
                continue
            cumulative += weight
            last = option
            if threshold < cumulative:
                return option
        return last  # type: ignore[return-value]

    def without(self, rejected: TraitOption) -> "Distribution":
        """Distribution with *rejected* removed; zero remaining mass stays empty."""

        pairs = [(option, weight) for option, weight in zip(self.options, self.weights) if option != rejected]
        return Distribution(
            self.category,
            tuple(option for option, _ in pairs),
            tuple(weight for _, weight in pairs),
        )


class WeightedSampler:
    """Build per-category candidate distributions for the current context."""

    def __init__(self, index: AssetIndex, store: RuleStore) -> None:
        self.index = index
        self.store = store

    def weighted_options(self, category: str) -> List[TraitOption]:
        return [
            replace(option, weight=self.store.weight_for(category, option.context, option.value))
            for option in self.index.options(category)
        ]

    def is_visible(
        self,
        option: TraitOption,
        active: Collection[str],
        *,
        context_source: bool = False,
    ) -> bool:
        allowed = self.store.show_to(option.category, option.value)
        if allowed:
            return any(tag in active for tag in allowed)
        if not self.store.dynamic_context or not option.context:
            return True
        if context_source and not active:
            return True
        return all(segment in active for segment in option.context)

    def candidates(
        self,
        category: str,
        active: Collection[str],
        *,
        context_source: bool = False,
    ) -> List[TraitOption]:
        active_set = set(active)
        return [
            option
            for option in self.weighted_options(category)
            if self.is_visible(option, active_set, context_source=context_source)
        ]

    def distribution(
        self,
        category: str,
        active: Collection[str],
        *,
        context_source: bool = False,
    ) -> Distribution:
        return Distribution.of(category, self.candidates(category, active, context_source=context_source))


__all__ = ["Distribution", "WeightedSampler"]
