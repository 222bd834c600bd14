from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

from conftest import build_library
from token_forge.core.assets import AssetIndex
from token_forge.core.rules import RuleStore
from token_forge.reports import (
    coverage_report,
    distribution_report,
    duplicates_report,
    load_records,
    rarity_ranking,
    usage_report,
    write_report,
    write_usage_csv,
)


def token(token_id: int, **attributes: str) -> dict:
    return {
        "token_id": token_id,
        "attributes": [{"trait_type": trait, "value": value} for trait, value in attributes.items()],
    }


def test_load_records_orders_numerically_and_skips_non_records(tmp_path: Path) -> None:
    (tmp_path / "10.json").write_text(json.dumps(token(10, Hat="Cap")), encoding="utf-8")
    (tmp_path / "2.json").write_text(json.dumps(token(2, Hat="Crown")), encoding="utf-8")
    (tmp_path / "notes.json").write_text("[1, 2]", encoding="utf-8")
    assert [record["token_id"] for record in load_records(tmp_path)] == [2, 10]


def test_usage_counts_and_unused_assets(asset_index: AssetIndex, tmp_path: Path) -> None:
    records = [
        token(1, Background="Red", Hat="Crown", Era="Classic"),
        token(2, Background="Red", Hat="Cap"),
        token(3, Background="Blue"),
    ]
    report = usage_report(records, asset_index)
    assert report["total_tokens"] == 3
    background = [row for row in report["usage"] if row["trait_type"] == "background"]
    assert background == [
        {"trait_type": "background", "value": "red", "count": 2, "percent": 66.67},
        {"trait_type": "background", "value": "blue", "count": 1, "percent": 33.33},
    ]
    unused = {(item["trait_type"], item["value"]) for item in report["unused"]}
    assert ("hair", "bald") in unused
    assert ("hat", "cap") not in unused
    assert not any(trait == "era" for trait, _ in unused)

    path = write_usage_csv(report, tmp_path / "reports" / "usage.csv")
    with path.open(encoding="utf-8", newline="") as fh:
        rows = list(csv.DictReader(fh))
    assert rows[0]["trait_type"] == "background"
    assert len(rows) == len(report["usage"])


def test_distribution_compares_against_configured_weights(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict({"weights": {"background": {"red": 300, "blue": 100}}})
    on_target = [token(i, Background="Red") for i in range(3)] + [token(3, Background="Blue")]
    report = distribution_report(on_target, asset_index, store)
    background = report["background"]
    assert background.tokens == 4
    assert background.chi_squared == pytest.approx(0.0)
    assert background.degrees_of_freedom == 1

    skewed = [token(i, Background="Red") for i in range(2)] + [token(i, Background="Blue") for i in (2, 3)]
    background = distribution_report(skewed, asset_index, store)["background"]
    assert background.chi_squared == pytest.approx(1 / 3 + 1)
    rows = {row.value: row for row in background.rows}
    assert rows["red"].expected == pytest.approx(3.0)
    assert rows["blue"].error_percent == pytest.approx(100.0)

    # the same value under several contexts pools its weight
    skin = {row.value: row.expected_share for row in report["skin"].rows}
    assert skin == pytest.approx({"dark": 0.25, "light": 0.5, "noir": 0.25})
    assert report["skin"].as_dict()["tokens"] == 0


def test_duplicates_ignore_attribute_order() -> None:
    first = token(1, Background="Red", Hat="Cap")
    second = {"token_id": 2, "attributes": list(reversed(first["attributes"]))}
    records = [first, token(3, Background="Blue"), second, {"token_id": 4}]
    duplicates = duplicates_report(records)
    assert duplicates == [{"token_id": 2, "duplicate_of": 1, "key": "Background=Red|Hat=Cap"}]


def test_rarity_ranks_rarest_first() -> None:
    records = [token(1, Background="Red"), token(2, Background="Red"), token(3, Background="Blue")]
    ranking = rarity_ranking(records)
    assert [(rank.token_id, rank.rank) for rank in ranking] == [(3, 1), (1, 2), (2, 3)]
    assert ranking[0].score == pytest.approx(3.0)
    assert ranking[1].as_dict()["breakdown"] == [{"trait_type": "Background", "value": "Red", "score": 1.5}]


def test_coverage_lists_untagged_values(asset_index: AssetIndex) -> None:
    store = RuleStore.from_dict(
        {"tags": {"era": {"subtags": {"classic": [{"trait_type": "hat", "value": "crown"}]}}}}
    )
    report = coverage_report(store, asset_index)["era"]
    assert report["per_category"]["hat"] == {"total": 2, "covered": 1, "missing": ["cap"], "is_complete": False}
    assert report["complete_categories"] == 0
    assert report["is_group_complete"] is False


def test_write_report_wraps_lists(tmp_path: Path) -> None:
    path = write_report(tmp_path / "reports", "duplicates", [{"token_id": 2}])
    assert path.name.startswith("duplicates-")
    assert json.loads(path.read_text(encoding="utf-8")) == {"items": [{"token_id": 2}]}


def test_distribution_applies_flattened_weight_keys(tmp_path: Path) -> None:
    root = build_library(tmp_path / "layers", ["skin/male/noir/a.png", "skin/male/noir/b.png"])
    index = AssetIndex.build(root, ["skin"])
    store = RuleStore.from_dict({"weights": {"skin__malenoir": {"a": 3, "b": 1}}})
    skin = {row.value: row.expected_share for row in distribution_report([], index, store)["skin"].rows}
    assert skin == pytest.approx({"a": 0.75, "b": 0.25})
