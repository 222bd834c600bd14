"""Combination keys and the session-wide seen set."""
from __future__ import annotations

import threading
from typing import Collection, Iterable, Mapping

from .assets import TraitOption

KEY_SEPARATOR = "|"


def combo_key(
    chosen: Mapping[str, TraitOption],
    paint_order: Iterable[str],
    skipped: Collection[str] = (),
) -> str:
    """Canonical ``cat=ctx - value|cat=value|cat=`` signature over the paint order."""

    parts = []
    for category in paint_order:
        if category in skipped:
            continue
        option = chosen.get(category)
        parts.append(f"{category}={option.label if option else ''}")
    return KEY_SEPARATOR.join(parts)


class SeenCombos:
    """Thread-safe set of claimed combination keys."""

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._keys = set(initial)
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        """Insert *key* unless present; the check and insert happen under one lock."""

        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._keys)


__all__ = ["KEY_SEPARATOR", "SeenCombos", "combo_key"]
