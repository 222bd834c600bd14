"""Per-token trait assignment: selection, global validation and uniqueness."""
from __future__ import annotations

import enum
import logging
import random
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Sequence

from .assets import AssetIndex, TraitOption
from .constraints import RuleSet, RuleViolation
from .context import SelectionPlan, propagate
from .dedupe import combo_key
from .rules import RuleStore
from .sampler import Distribution, WeightedSampler
from .session import GenerationSession
from .tags import TagIndex, TagViolation

LOGGER = logging.getLogger("token_forge.assembly")


class TokenState(str, enum.Enum):
    SELECTING = "selecting"
    GLOBALLY_VALIDATING = "globally_validating"
    DUPLICATE_CHECKING = "duplicate_checking"
    COMPOSING = "composing"
    PERSISTED = "persisted"
    FAILED = "failed"


class UniqueExhausted(RuntimeError):
    """No unique valid combination was found within the reroll budget."""

    code = "UNIQUE_EXHAUSTED"

    def __init__(self, attempts: int, token_id: int | None = None) -> None:
        target = f"token {token_id}" if token_id is not None else "token"
        super().__init__(f"{self.code}: no unique combination for {target} after {attempts} attempt(s)")
        self.attempts = attempts
        self.token_id = token_id


@dataclass
class Assignment:
    """Worker-local state of one selection attempt."""

    active_context: List[str] = field(default_factory=list)
    chosen: Dict[str, TraitOption] = field(default_factory=dict)
    locks: Dict[str, str] = field(default_factory=dict)
    skipped: set[str] = field(default_factory=set)
    combo_key: str = ""
    attempts: int = 0
    base_context: List[str] = field(default_factory=list)
    sources: List[str] = field(default_factory=list)

    @classmethod
    def starting_from(cls, base_context: Iterable[str]) -> "Assignment":
        base = list(dict.fromkeys(base_context))
        return cls(active_context=list(base), base_context=base)

    def accept(
        self,
        option: TraitOption,
        store: RuleStore,
        tags: TagIndex,
        *,
        context_source: bool = False,
    ) -> None:
        self.chosen[option.category] = option
        if store.dynamic_context and context_source:
            self.sources.append(option.category)
            propagate(self.active_context, option)
        tags.lock(option, self.locks)
        dropped = False
        for override in store.overrides_for(option.context):
            for category in override.skip:
                if category == option.category:
                    continue
                self.skipped.add(category)
                if self.chosen.pop(category, None) is not None:
                    dropped = True
                    LOGGER.debug("dropped %s selected before override %s", category, "/".join(override.prefix))
        if dropped:
            self._rebuild(tags)

    def _rebuild(self, tags: TagIndex) -> None:
        # context and locks contributed by dropped options no longer apply
        self.sources = [category for category in self.sources if category in self.chosen]
        self.active_context = list(self.base_context)
        for category in self.sources:
            propagate(self.active_context, self.chosen[category])
        self.locks.clear()
        for option in self.chosen.values():
            tags.lock(option, self.locks)

    def options(self) -> List[TraitOption]:
        return list(self.chosen.values())


class TokenAssembler:
    """Run the selection state machine for one token until a unique valid combination is claimed."""

    def __init__(
        self,
        index: AssetIndex,
        store: RuleStore,
        plan: SelectionPlan,
        tags: TagIndex | None = None,
        rules: RuleSet | None = None,
    ) -> None:
        self.index = index
        self.store = store
        self.plan = plan
        self.tags = tags if tags is not None else TagIndex.build(store, index)
        self.rules = rules if rules is not None else RuleSet(store.rules)
        self.sampler = WeightedSampler(index, store)

    def select(
        self,
        rng: random.Random,
        session: GenerationSession,
        base_context: Sequence[str] = (),
    ) -> Assignment:
        assignment = Assignment.starting_from(base_context)
        for category in self.plan.selection_order:
            session.checkpoint(f"select {category}")
            if category in assignment.skipped:
                continue
            option = self._select_category(category, assignment, rng, session.candidate_retries)
            if option is None:
                LOGGER.debug("category %s unresolved", category)
                continue
            assignment.accept(
                option,
                self.store,
                self.tags,
                context_source=self.plan.is_source(category),
            )
        return assignment

    def _select_category(
        self,
        category: str,
        assignment: Assignment,
        rng: random.Random,
        retries: int,
    ) -> TraitOption | None:
        candidates = self.sampler.candidates(
            category,
            assignment.active_context,
            context_source=self.plan.is_source(category),
        )
        candidates = self.tags.filter(category, candidates, assignment.locks)
        distribution = Distribution.of(category, candidates)
        for _ in range(retries):
            if not distribution:
                return None
            candidate = distribution.draw(rng)
            if self.rules.permits(candidate, assignment.chosen, assignment.active_context):
                return candidate
            distribution = distribution.without(candidate)
        return None

    def validate(self, assignment: Assignment) -> List[RuleViolation | TagViolation]:
        problems: List[RuleViolation | TagViolation] = []
        problems.extend(self.rules.violations(assignment.chosen, assignment.active_context))
        problems.extend(self.tags.violations(assignment.options()))
        return problems

    def key_of(self, assignment: Assignment) -> str:
        return combo_key(assignment.chosen, self.plan.paint_order, assignment.skipped)

    def assemble(
        self,
        rng: random.Random,
        session: GenerationSession,
        base_context: Sequence[str] = (),
        *,
        token_id: int | None = None,
        on_state: Callable[[TokenState], None] | None = None,
    ) -> Assignment:
        notify = on_state or (lambda state: None)
        for attempt in range(1, session.max_rerolls + 1):
            notify(TokenState.SELECTING)
            assignment = self.select(rng, session, base_context)
            assignment.attempts = attempt

            notify(TokenState.GLOBALLY_VALIDATING)
            problems = self.validate(assignment)
            if problems:
                LOGGER.debug("attempt %d rejected: %s", attempt, "; ".join(str(p) for p in problems))
                continue

            notify(TokenState.DUPLICATE_CHECKING)
            key = self.key_of(assignment)
            if not session.seen.claim(key):
                LOGGER.debug("attempt %d duplicates %s", attempt, key)
                continue
            assignment.combo_key = key
            return assignment
        notify(TokenState.FAILED)
        raise UniqueExhausted(session.max_rerolls, token_id)


__all__ = ["Assignment", "TokenAssembler", "TokenState", "UniqueExhausted"]
