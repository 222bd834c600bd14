from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from token_forge.core.assets import TraitOption
from token_forge.core.dedupe import SeenCombos, combo_key

PAINT_ORDER = ("background", "skin", "outfit", "hair", "hat")


def test_combo_key_follows_paint_order_and_marks_unresolved() -> None:
    chosen = {
        "hat": TraitOption("hat", "crown"),
        "skin": TraitOption("skin", "light", ("male",)),
        "background": TraitOption("background", "red"),
    }
    assert combo_key(chosen, PAINT_ORDER) == "background=red|skin=male - light|outfit=|hair=|hat=crown"


def test_combo_key_omits_skipped_categories() -> None:
    chosen = {"skin": TraitOption("skin", "noir", ("fullbody", "noir"))}
    key = combo_key(chosen, PAINT_ORDER, skipped={"outfit", "hair"})
    assert key == "background=|skin=fullbody/noir - noir|hat="


def test_claim_is_atomic_across_threads() -> None:
    seen = SeenCombos()
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: seen.claim("same"), range(64)))
    assert results.count(True) == 1
    assert len(seen) == 1
    assert "same" in seen
    assert seen.claim("other")
