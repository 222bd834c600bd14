from __future__ import annotations

import random
from pathlib import Path

from conftest import LAYER_ORDER, build_library
from token_forge.core.assembly import Assignment, TokenAssembler
from token_forge.core.assets import AssetIndex, TraitOption
from token_forge.core.context import paint_order_from, plan_selection, propagate
from token_forge.core.rules import RuleStore
from token_forge.core.session import GenerationSession
from token_forge.core.tags import TagIndex

DYNAMIC = {"global": {"enableDynamicContext": True}}


def test_paint_order_reverses_the_listed_order() -> None:
    assert paint_order_from(["Hat", "hair", "hat", "Background"]) == ("background", "hair", "hat")


def test_static_plan_selects_in_paint_order(asset_index: AssetIndex) -> None:
    plan = plan_selection(asset_index, LAYER_ORDER, dynamic=False)
    assert plan.selection_order == plan.paint_order == ("background", "skin", "outfit", "hair", "hat")
    assert plan.context_sources == frozenset()


def test_dynamic_plan_puts_shallow_context_sources_first(tmp_path: Path) -> None:
    root = build_library(
        tmp_path / "layers",
        [
            "background/red.png",
            "eyes/male/noir/sharp.png",
            "skin/male/light.png",
            "outfit/male/suit.png",
            "hat/cap.png",
        ],
    )
    order = ["hat", "outfit", "eyes", "skin", "background"]
    index = AssetIndex.build(root, order)
    plan = plan_selection(index, order, dynamic=True)
    assert plan.paint_order == ("background", "skin", "eyes", "outfit", "hat")
    assert plan.selection_order == ("skin", "outfit", "eyes", "background", "hat")
    assert plan.is_source("eyes") and not plan.is_source("hat")
    assert plan.category("eyes").draw_priority == 2
    assert plan.category("eyes").selection_priority == 2


def test_propagate_appends_new_segments_only() -> None:
    active = ["male"]
    propagate(active, TraitOption("skin", "dark", ("male", "noir")))
    assert active == ["male", "noir"]


def test_accept_propagates_context_and_applies_overrides(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict({**DYNAMIC, "contextOverrides": {"fullbody": {"skip": ["outfit", "hair"]}}})
    tags = TagIndex.build(store, asset_index)
    assignment = Assignment.starting_from(["base", "base"])
    assert assignment.active_context == ["base"]
    assignment.accept(TraitOption("hair", "long"), store, tags)
    assignment.accept(TraitOption("skin", "noir", ("fullbody",)), store, tags, context_source=True)
    assert assignment.active_context == ["base", "fullbody"]
    assert assignment.skipped == {"outfit", "hair"}
    assert "hair" not in assignment.chosen


def test_dynamic_assignments_stay_context_consistent(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict(DYNAMIC)
    plan = plan_selection(asset_index, LAYER_ORDER, store.dynamic_context)
    assembler = TokenAssembler(asset_index, store, plan)
    rng = random.Random(5)
    for _ in range(200):
        assignment = assembler.assemble(rng, GenerationSession())
        skin = assignment.chosen["skin"]
        outfit = assignment.chosen.get("outfit")
        if outfit is not None and outfit.context:
            assert outfit.context == skin.context
        assert assignment.active_context == list(skin.context)


def test_base_context_gates_the_first_mover(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict(DYNAMIC)
    plan = plan_selection(asset_index, LAYER_ORDER, store.dynamic_context)
    assembler = TokenAssembler(asset_index, store, plan)
    rng = random.Random(11)
    for _ in range(50):
        assignment = assembler.assemble(rng, GenerationSession(), ["female"])
        assert assignment.chosen["skin"].context == ("female",)
        assert assignment.chosen["outfit"].value in {"dress", "tshirt"}


def test_override_forgets_context_and_locks_of_dropped_options(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict(
        {
            **DYNAMIC,
            "contextOverrides": {"fullbody": {"skip": ["outfit", "hair"]}},
            "tags": {
                "Era": {
                    "subtags": {
                        "Modern": [{"trait_type": "hair", "value": "long"}],
                        "Classic": [{"trait_type": "hair", "value": "bald"}],
                    }
                }
            },
        }
    )
    tags = TagIndex.build(store, asset_index)
    assignment = Assignment.starting_from(["base"])
    assignment.accept(TraitOption("hair", "long"), store, tags)
    assignment.accept(TraitOption("outfit", "suit", ("male",)), store, tags, context_source=True)
    assert assignment.locks == {"Era": "Modern"}
    assert assignment.active_context == ["base", "male"]
    assignment.accept(TraitOption("skin", "noir", ("fullbody",)), store, tags, context_source=True)
    assert set(assignment.chosen) == {"skin"}
    assert assignment.active_context == ["base", "fullbody"]
    assert assignment.locks == {}
