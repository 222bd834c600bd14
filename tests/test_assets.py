from __future__ import annotations

from pathlib import Path

import pytest

from conftest import LAYER_ORDER, build_library
from token_forge.core.assets import DEFAULT_WEIGHT, AssetIndex, AssetIndexError, TraitKey
from token_forge.core.naming import beautify, has_prefix, join_context, sanitize, split_context


def test_sanitize_normalises_names() -> None:
    assert sanitize("Red Sky") == "red_sky"
    assert sanitize("  Don’t   Panic!! ") == "_don't_panic_"
    assert sanitize("a__b") == "a_b"
    assert sanitize(None) == ""


def test_beautify_capitalises_words() -> None:
    assert beautify("red_sky") == "Red Sky"
    assert beautify("Gold Crown") == "Gold Crown"


def test_context_helpers() -> None:
    assert split_context("Male/Noir") == ("male", "noir")
    assert split_context("fullbody\\noir/") == ("fullbody", "noir")
    assert split_context(["Full Body", ""]) == ("full_body",)
    assert join_context(("male", "noir")) == "male/noir"
    assert has_prefix(("fullbody", "noir"), ("fullbody",))
    assert not has_prefix(("fullbody",), ("fullbody", "noir"))


def test_index_reads_context_from_subdirectories(asset_index: AssetIndex) -> None:
    assert asset_index.categories == tuple(LAYER_ORDER)
    skin = {option.key for option in asset_index.options("skin")}
    assert TraitKey("skin", "noir", ("fullbody",)) in skin
    assert TraitKey("skin", "light", ("male",)) in skin
    assert TraitKey("skin", "light", ("female",)) in skin
    assert asset_index.values("skin") == frozenset({"light", "dark", "noir"})
    assert asset_index.has_context("outfit")
    assert not asset_index.has_context("hat")
    assert asset_index.context_depth("skin") == 1
    assert asset_index.context_depth("hat") == 0
    assert all(option.weight == DEFAULT_WEIGHT for option in asset_index.options("hat"))


def test_index_orders_options_reproducibly(asset_index: AssetIndex) -> None:
    labels = [option.label for option in asset_index.options("outfit")]
    assert labels == ["tshirt", "female - dress", "male - suit"]


def test_index_handles_deep_trees_and_other_files(tmp_path: Path) -> None:
    deep = "/".join(f"level{i}" for i in range(40))
    root = build_library(tmp_path / "layers", [f"hat/{deep}/tall.png", "hat/cap.png"])
    (root / "hat" / "notes.txt").write_text("ignored", encoding="utf-8")
    index = AssetIndex.build(root, ["hat", "missing"])
    assert len(index.options("hat")) == 2
    assert index.context_depth("hat") == 40
    assert index.options("missing") == ()
    assert index.contains("missing")
    assert not index.contains("missing", "anything")


def test_index_keeps_first_of_colliding_names(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    root = build_library(tmp_path / "layers", ["hat/Gold Crown.png", "hat/gold_crown.png"])
    with caplog.at_level("WARNING", logger="token_forge.assets"):
        index = AssetIndex.build(root, ["hat"])
    assert [option.value for option in index.options("hat")] == ["gold_crown"]
    assert "duplicates" in caplog.text


def test_missing_root_raises(tmp_path: Path) -> None:
    with pytest.raises(AssetIndexError) as exc:
        AssetIndex.build(tmp_path / "nowhere", ["hat"])
    assert "nowhere" in str(exc.value)


def test_index_does_not_follow_directory_cycles(tmp_path: Path) -> None:
    root = build_library(tmp_path / "layers", ["hat/cap.png", "hat/royal/crown.png"])
    try:
        (root / "hat" / "loop").symlink_to(root / "hat", target_is_directory=True)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks are not available")
    index = AssetIndex.build(root, ["hat"])
    assert [(option.context, option.value) for option in index.options("hat")] == [
        ((), "cap"),
        (("royal",), "crown"),
    ]
