"""Selection ordering and active-context propagation."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Sequence

from .assets import AssetIndex, TraitCategory, TraitOption
from .naming import sanitize

LOGGER = logging.getLogger("token_forge.context")


@dataclass(frozen=True)
class SelectionPlan:
    """Paint order, selection order and the categories that establish context."""

    paint_order: tuple[str, ...]
    selection_order: tuple[str, ...]
    context_sources: frozenset[str]
    categories: tuple[TraitCategory, ...] = ()

    def is_source(self, category: str) -> bool:
        return category in self.context_sources

    def category(self, name: str) -> TraitCategory | None:
        for item in self.categories:
            if item.name == name:
                return item
        return None


def paint_order_from(listed_order: Iterable[str]) -> tuple[str, ...]:
    """Reverse the configured layer list; later entries paint underneath."""

    seen: List[str] = []
    for raw in listed_order:
        name = sanitize(raw)
        if name and name not in seen:
            seen.append(name)
    return tuple(reversed(seen))


def plan_selection(index: AssetIndex, listed_order: Sequence[str], dynamic: bool) -> SelectionPlan:
    paint_order = paint_order_from(listed_order)
    if dynamic:
        with_context = [
            (index.context_depth(name), position, name)
            for position, name in enumerate(paint_order)
            if index.has_context(name)
        ]
        with_context.sort()
        sources = [name for _, _, name in with_context]
        without_context = [name for name in paint_order if name not in sources]
        selection_order = tuple(sources + without_context)
        context_sources = frozenset(sources)
    else:
        selection_order = paint_order
        context_sources = frozenset()
    categories = tuple(
        TraitCategory(
            name=name,
            draw_priority=paint_order.index(name),
            selection_priority=selection_order.index(name),
        )
        for name in paint_order
    )
    LOGGER.debug("selection order: %s", ", ".join(selection_order))
    return SelectionPlan(paint_order, selection_order, context_sources, categories)


def propagate(active: List[str], option: TraitOption) -> List[str]:
    """Append the option's context segments to *active* in place, skipping known ones."""

    for segment in option.context:
        if segment not in active:
            active.append(segment)
    return active


__all__ = ["SelectionPlan", "paint_order_from", "plan_selection", "propagate"]
