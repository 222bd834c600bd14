from __future__ import annotations

from pathlib import Path

from conftest import build_library
from token_forge.core.assets import DEFAULT_WEIGHT, AssetIndex, TraitOption
from token_forge.core.rules import (
    RuleStore,
    Selector,
    context_matches,
    parse_weight_key,
    resolve_context,
    weight_key,
)


RAW_RULES = {
    "global": {"enableDynamicContext": True},
    "weights": {
        "background__": {"Red": 100, "blue": 0},
        "skin__male": {"light": 30, "dark": "70"},
        "hat__": {"crown": "lots"},
    },
    "showTo": {"hat": {"crown": ["Male"]}},
    "specific": [
        {"trait": "Hat", "value": "Crown", "exclude_with": [{"trait": "hair", "value": "bald"}]},
        {"trait": "outfit", "value": "suit", "context": "male", "require_with": [{"trait": "skin", "value": "dark"}]},
        {"trait": "hat", "value": "cap", "always_with": [{"trait": "hair", "value": "long"}]},
        {"value": "orphan", "exclude_with": [{"trait": "hair", "value": "bald"}]},
        {"trait": "hat", "value": "ghost", "exclude_with": [{"trait": "hair", "value": "bald"}]},
    ],
    "tags": {
        "Era": {"subtags": {"Modern": [{"trait_type": "Outfit", "value": "suit"}]}},
    },
    "contextOverrides": {
        "fullbody": {"skip": ["Outfit", "hair"], "parent": "outfit"},
        "ghost": ["hat"],
    },
}


def test_from_dict_sanitises_every_section() -> None:
    store = RuleStore.from_dict(RAW_RULES)
    assert store.dynamic_context is True
    assert store.weight_for("background", (), "red") == 100.0
    assert store.weight_for("background", (), "blue") == 0.0
    assert store.weight_for("skin", ("male",), "dark") == 70.0
    assert store.weight_for("skin", ("female",), "light") == DEFAULT_WEIGHT
    assert store.weight_for("hat", (), "crown") == DEFAULT_WEIGHT
    assert store.show_to("hat", "crown") == ("male",)
    assert [rule.primary for rule in store.rules] == [
        Selector("hat", "crown"),
        Selector("outfit", "suit", ("male",)),
        Selector("hat", "ghost"),
    ]
    assert store.tag_groups[0].subtags["Modern"] == frozenset({("outfit", "suit")})
    fullbody, ghost = store.overrides
    assert fullbody.skip == ("outfit", "hair")
    assert fullbody.parent == "outfit"
    assert ghost.parent == "hat"
    assert {warning.rule for warning in store.load_warnings} == {"weights.not_a_number", "specific.malformed"}


def test_weight_keys_round_trip() -> None:
    assert parse_weight_key("skin__male/noir") == ("skin", ("male", "noir"))
    assert parse_weight_key("background__") == ("background", ())
    assert weight_key("skin", ("male",)) == "skin__male"


def test_context_matching_uses_prefix_or_active_subset() -> None:
    assert context_matches((), ("male",))
    assert context_matches(("fullbody",), ("fullbody", "noir"))
    assert not context_matches(("fullbody",), ("male",))
    assert context_matches(("male",), (), active=["male"])
    assert context_matches(("male", "noir"), ("noir",), active=["male"])


def test_selector_matches_option() -> None:
    suit = TraitOption("outfit", "suit", ("male",))
    assert Selector("outfit", "suit").matches(suit)
    assert Selector("outfit", "suit", ("male",)).matches(suit)
    assert not Selector("outfit", "suit", ("female",)).matches(suit)
    assert str(Selector("outfit", "suit", ("male",))) == "outfit=male - suit"


def test_validation_reports_unknown_items_and_drops_rules(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict(RAW_RULES)
    warnings = store.validate_against(asset_index)
    rules = {warning.rule for warning in warnings}
    assert "specific.unknown_item" in rules
    assert "tags.unknown_item" not in rules
    assert any("ghost" in warning.message for warning in warnings)
    restricted = store.restricted_to(asset_index)
    assert [rule.primary.value for rule in restricted.rules] == ["crown", "suit"]
    assert restricted.weights == store.weights


def test_overrides_for_context() -> None:
    store = RuleStore.from_dict(RAW_RULES)
    assert [o.prefix for o in store.overrides_for(("fullbody", "noir"))] == [("fullbody",)]
    assert store.overrides_for(("male",)) == ()
    assert store.overrides_for(()) == ()


def test_flattened_contexts_resolve_against_the_index(tmp_path: Path) -> None:
    root = build_library(
        tmp_path / "layers",
        ["skin/male/noir/a.png", "skin/male/noir/b.png", "skin/fullbody/noir/x.png", "hat/cap.png"],
    )
    index = AssetIndex.build(root, ["hat", "skin"])
    store = RuleStore.from_dict(
        {
            "weights": {"skin__malenoir": {"a": 100, "b": 0}, "skin__ghost": {"a": 5}},
            "specific": [
                {
                    "trait": "skin",
                    "value": "x",
                    "context": "fullbodynoir",
                    "exclude_with": [{"trait": "hat", "value": "cap"}],
                }
            ],
        }
    )
    unknown = [w for w in store.validate_against(index) if w.rule == "weights.unknown_context"]
    assert len(unknown) == 1
    assert "skin__ghost" in unknown[0].message

    restricted = store.restricted_to(index)
    assert restricted.weight_for("skin", ("male", "noir"), "b") == 0
    assert restricted.weight_for("skin", ("male", "noir"), "a") == 100
    assert restricted.rules[0].primary.context == ("fullbody", "noir")
    assert restricted.rules[0].primary.matches(TraitOption("skin", "x", ("fullbody", "noir")))


def test_resolve_context_prefers_the_literal_context(asset_index: AssetIndex) -> None:
    assert resolve_context(asset_index, "skin", ("male",)) == ("male",)
    assert resolve_context(asset_index, "skin", ()) == ()
    assert resolve_context(asset_index, "skin", ("nobody",)) is None
