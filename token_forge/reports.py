"""Post-generation audits over the asset library, the rule record and written metadata."""
from __future__ import annotations

import csv
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

from .core.assets import AssetIndex
from .core.naming import sanitize
from .core.rules import RuleStore
from .core.tags import TagIndex
from .io_utils import iter_metadata, write_json

LOGGER = logging.getLogger("token_forge.reports")

NONE_VALUE = "None"

Record = Mapping[str, Any]


def load_records(metadata_dir: Path) -> List[Dict[str, Any]]:
    records = []
    for path, record in iter_metadata(metadata_dir):
        if not isinstance(record, dict):
            LOGGER.warning("skipping %s: not a metadata record", path.as_posix())
            continue
        records.append(record)
    return records


def _attributes(record: Record) -> List[Tuple[str, str]]:
    pairs = []
    for item in record.get("attributes") or []:
        if not isinstance(item, Mapping):
            continue
        trait = str(item.get("trait_type") or "Untyped")
        value = item.get("value")
        pairs.append((trait, NONE_VALUE if value in (None, "") else str(value)))
    return pairs


# ----------------------------------------------------------------------
# Tag coverage


def coverage_report(store: RuleStore, index: AssetIndex) -> Dict[str, Dict[str, object]]:
    """Per tag group and category: how many values carry a subtag and which do not."""

    return TagIndex.build(store, index).coverage()


# ----------------------------------------------------------------------
# Usage


def usage_report(records: Sequence[Record], index: AssetIndex | None = None) -> Dict[str, Any]:
    """Attribute usage counts plus assets of *index* that never appear."""

    usage: Dict[str, Counter] = {}
    for record in records:
        for trait, value in _attributes(record):
            usage.setdefault(sanitize(trait), Counter())[sanitize(value)] += 1
    total = len(records)
    rows = [
        {
            "trait_type": trait,
            "value": value,
            "count": count,
            "percent": round(100.0 * count / total, 2) if total else 0.0,
        }
        for trait in sorted(usage)
        for value, count in sorted(usage[trait].items(), key=lambda item: (-item[1], item[0]))
    ]
    unused: List[Dict[str, str]] = []
    if index is not None:
        for category in index.categories:
            seen = usage.get(category, Counter())
            for value in sorted(index.values(category)):
                if seen[value] == 0:
                    unused.append({"trait_type": category, "value": value})
    return {"total_tokens": total, "usage": rows, "unused": unused}


def write_usage_csv(report: Mapping[str, Any], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as fh:
        writer = csv.DictWriter(fh, fieldnames=["trait_type", "value", "count", "percent"])
        writer.writeheader()
        for row in report.get("usage", []):
            writer.writerow(row)
    return path


# ----------------------------------------------------------------------
# Distribution


@dataclass
class DistributionRow:
    value: str
    weight: float
    expected_share: float
    expected: float
    actual: int

    @property
    def error_percent(self) -> float | None:
        if self.expected <= 0:
            return None
        return abs(self.actual - self.expected) / self.expected * 100.0

    def as_dict(self) -> Dict[str, Any]:
        error = self.error_percent
        return {
            "value": self.value,
            "weight": self.weight,
            "expected_share": round(self.expected_share, 6),
            "expected": round(self.expected, 2),
            "actual": self.actual,
            "error_percent": round(error, 2) if error is not None else None,
        }


@dataclass
class CategoryDistribution:
    category: str
    tokens: int
    rows: List[DistributionRow] = field(default_factory=list)

    @property
    def chi_squared(self) -> float:
        expected = np.array([row.expected for row in self.rows], dtype=float)
        actual = np.array([row.actual for row in self.rows], dtype=float)
        mask = expected > 0
        if not mask.any():
            return 0.0
        return float(np.sum((actual[mask] - expected[mask]) ** 2 / expected[mask]))

    @property
    def degrees_of_freedom(self) -> int:
        return max(0, sum(1 for row in self.rows if row.expected > 0) - 1)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "tokens": self.tokens,
            "chi_squared": round(self.chi_squared, 4),
            "degrees_of_freedom": self.degrees_of_freedom,
            "values": [row.as_dict() for row in self.rows],
        }


def distribution_report(
    records: Sequence[Record],
    index: AssetIndex,
    store: RuleStore,
) -> Dict[str, CategoryDistribution]:
    """Observed value counts against the share implied by the configured weights.

    Expected shares ignore context gating and rules, so categories whose
    options are filtered by context drift from their raw weights.
    """

    store = store.restricted_to(index)
    observed: Dict[str, Counter] = {}
    for record in records:
        for trait, value in _attributes(record):
            observed.setdefault(sanitize(trait), Counter())[sanitize(value)] += 1

    report: Dict[str, CategoryDistribution] = {}
    for category in index.categories:
        options = index.options(category)
        if not options:
            continue
        weights: Dict[str, float] = {}
        for option in options:
            weight = max(store.weight_for(category, option.context, option.value), 0.0)
            weights[option.value] = weights.get(option.value, 0.0) + weight
        counts = observed.get(category, Counter())
        tokens = sum(counts[value] for value in weights)
        values = sorted(weights)
        raw = np.array([weights[value] for value in values], dtype=float)
        shares = raw / raw.sum() if raw.sum() > 0 else np.full(len(values), 1.0 / len(values))
        rows = [
            DistributionRow(
                value=value,
                weight=weights[value],
                expected_share=float(share),
                expected=float(share) * tokens,
                actual=int(counts[value]),
            )
            for value, share in zip(values, shares)
        ]
        report[category] = CategoryDistribution(category, tokens, rows)
    return report


# ----------------------------------------------------------------------
# Duplicates


def attribute_signature(record: Record) -> str:
    return "|".join(sorted(f"{trait}={value}" for trait, value in _attributes(record)))


def duplicates_report(records: Sequence[Record]) -> List[Dict[str, Any]]:
    """Tokens whose sorted attribute signature repeats an earlier token."""

    seen: Dict[str, Any] = {}
    duplicates: List[Dict[str, Any]] = []
    for record in records:
        if not record.get("attributes"):
            continue
        key = attribute_signature(record)
        token_id = record.get("token_id")
        if key in seen:
            duplicates.append({"token_id": token_id, "duplicate_of": seen[key], "key": key})
        else:
            seen[key] = token_id
    return duplicates


# ----------------------------------------------------------------------
# Rarity


@dataclass(frozen=True)
class RarityRank:
    token_id: Any
    rank: int
    score: float
    breakdown: Tuple[Tuple[str, str, float], ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "rank": self.rank,
            "score": round(self.score, 4),
            "breakdown": [
                {"trait_type": trait, "value": value, "score": round(score, 4)}
                for trait, value, score in self.breakdown
            ],
        }


def trait_scores(records: Sequence[Record]) -> Dict[Tuple[str, str], float]:
    counts = Counter(pair for record in records for pair in _attributes(record))
    total = len(records)
    return {pair: (total / count if count else 0.0) for pair, count in counts.items()}


def rarity_ranking(records: Sequence[Record]) -> List[RarityRank]:
    """Rank tokens by the sum of inverse attribute frequencies, rarest first."""

    scores = trait_scores(records)
    scored = []
    for position, record in enumerate(records):
        breakdown = tuple((trait, value, scores.get((trait, value), 0.0)) for trait, value in _attributes(record))
        scored.append((sum(item[2] for item in breakdown), position, record.get("token_id"), breakdown))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [
        RarityRank(token_id=token_id, rank=rank, score=score, breakdown=breakdown)
        for rank, (score, _, token_id, breakdown) in enumerate(scored, start=1)
    ]


# ----------------------------------------------------------------------


def write_report(out_dir: Path, name: str, payload: Mapping[str, Any] | Iterable[Any]) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = out_dir / f"{name}-{stamp}.json"
    data = payload if isinstance(payload, Mapping) else {"items": list(payload)}
    write_json(path, data)
    return path


__all__ = [
    "CategoryDistribution",
    "DistributionRow",
    "RarityRank",
    "attribute_signature",
    "coverage_report",
    "distribution_report",
    "duplicates_report",
    "load_records",
    "rarity_ranking",
    "trait_scores",
    "usage_report",
    "write_report",
    "write_usage_csv",
]
