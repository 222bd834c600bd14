from __future__ import annotations

import random
from collections import Counter

import numpy as np

from token_forge.core.assets import AssetIndex, TraitOption
from token_forge.core.rules import RuleStore
from token_forge.core.sampler import Distribution, WeightedSampler

# chi-squared critical value for 3 degrees of freedom at p = 0.001
CHI2_CRITICAL_DF3 = 16.266


def test_draws_converge_to_weight_shares() -> None:
    options = [TraitOption("background", name, weight=weight) for name, weight in
               (("a", 10), ("b", 20), ("c", 30), ("d", 40))]
    distribution = Distribution.of("background", options)
    rng = random.Random(1234)
    draws = 20_000
    counts = Counter(distribution.draw(rng).value for _ in range(draws))
    observed = np.array([counts[name] for name in "abcd"], dtype=float)
    expected = np.array(distribution.probabilities()) * draws
    chi2 = float(np.sum((observed - expected) ** 2 / expected))
    assert chi2 < CHI2_CRITICAL_DF3
    assert distribution.probability_of(options[3]) == 0.4


def test_zero_weight_option_is_never_drawn(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict({"weights": {"background__": {"red": 100, "blue": 0}}})
    sampler = WeightedSampler(asset_index, store)
    distribution = sampler.distribution("background", [])
    rng = random.Random(7)
    assert {distribution.draw(rng).value for _ in range(1000)} == {"red"}


def test_all_zero_weights_fall_back_to_uniform() -> None:
    options = [TraitOption("hat", "cap", weight=0), TraitOption("hat", "crown", weight=-5)]
    distribution = Distribution.of("hat", options)
    assert distribution.probabilities() == [0.5, 0.5]


def test_without_removes_rejected_candidates() -> None:
    red = TraitOption("background", "red", weight=100)
    blue = TraitOption("background", "blue", weight=0)
    distribution = Distribution.of("background", [red, blue])
    remaining = distribution.without(red)
    assert not remaining
    assert len(remaining) == 1
    assert not Distribution.of("background", [])


def test_show_to_is_an_allow_list(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict({"showTo": {"hat": {"crown": ["male"]}}})
    sampler = WeightedSampler(asset_index, store)
    assert [o.value for o in sampler.candidates("hat", [])] == ["cap"]
    assert [o.value for o in sampler.candidates("hat", ["male"])] == ["cap", "crown"]


def test_dynamic_context_filters_by_active_segments(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict({"global": {"enableDynamicContext": True}})
    sampler = WeightedSampler(asset_index, store)
    assert [o.label for o in sampler.candidates("outfit", ["male"])] == ["tshirt", "male - suit"]
    assert [o.label for o in sampler.candidates("outfit", [])] == ["tshirt"]
    first_mover = sampler.candidates("outfit", [], context_source=True)
    assert len(first_mover) == 3
    assert [o.label for o in sampler.candidates("outfit", ["male"], context_source=True)] == [
        "tshirt",
        "male - suit",
    ]


def test_static_context_keeps_everything(asset_index: AssetIndex) -> None:
    sampler = WeightedSampler(asset_index, RuleStore())
    assert len(sampler.candidates("skin", [])) == 4


def test_weights_come_from_the_option_context_bucket(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict({"weights": {"skin__male": {"dark": 5}}})
    sampler = WeightedSampler(asset_index, store)
    weights = {o.label: o.weight for o in sampler.weighted_options("skin")}
    assert weights["male - dark"] == 5
    assert weights["male - light"] == 100
    assert weights["fullbody - noir"] == 100
