"""Layer compositing with nearest-neighbour upscaling."""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Callable, List, Mapping, Sequence, Tuple

from PIL import Image

from .assets import TraitOption
from .rules import RuleStore

LOGGER = logging.getLogger("token_forge.compositor")

DEFAULT_CANVAS_SIZE: Tuple[int, int] = (36, 36)
DEFAULT_OUTPUT_SIZE: Tuple[int, int] = (1080, 1080)
MAX_OUTPUT_EDGE = 8192
DEFAULT_CACHE_SIZE = 200


def clamp_size(size: Sequence[int] | int | None, default: Tuple[int, int] = DEFAULT_OUTPUT_SIZE) -> Tuple[int, int]:
    if size is None:
        return default
    if isinstance(size, int):
        size = (size, size)
    width, height = (int(value) for value in size)
    return (
        max(1, min(MAX_OUTPUT_EDGE, width)),
        max(1, min(MAX_OUTPUT_EDGE, height)),
    )


class ImageCache:
    """Bounded LRU of decoded RGBA layers shared across workers."""

    def __init__(self, max_entries: int = DEFAULT_CACHE_SIZE) -> None:
        self.max_entries = max(1, int(max_entries))
        self._items: "OrderedDict[Path, Image.Image]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, path: Path) -> Image.Image:
        with self._lock:
            cached = self._items.get(path)
            if cached is not None:
                self._items.move_to_end(path)
                self.hits += 1
                return cached
        with Image.open(path) as handle:
            image = handle.convert("RGBA")
        with self._lock:
            self.misses += 1
            self._items[path] = image
            self._items.move_to_end(path)
            while len(self._items) > self.max_entries:
                self._items.popitem(last=False)
        return image

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


def paint_sequence(
    chosen: Mapping[str, TraitOption],
    paint_order: Sequence[str],
    store: RuleStore,
) -> List[str]:
    """Categories to draw, bottom first, with context overrides applied.

    A category whose chosen context matches an override is moved to directly
    after the override's parent slot; skipped categories are dropped.
    """

    sequence = list(paint_order)
    skipped: set[str] = set()
    moves: List[Tuple[str, str]] = []
    for category in paint_order:
        option = chosen.get(category)
        if option is None:
            continue
        for override in store.overrides_for(option.context):
            skipped.update(name for name in override.skip if name != category)
            if override.parent and override.parent != category and override.parent in sequence:
                moves.append((category, override.parent))
    for category, parent in moves:
        sequence.remove(category)
        sequence.insert(sequence.index(parent) + 1, category)
    return [name for name in sequence if name not in skipped and name in chosen]


class Compositor:
    def __init__(
        self,
        canvas_size: Tuple[int, int] = DEFAULT_CANVAS_SIZE,
        cache: ImageCache | None = None,
    ) -> None:
        self.canvas_size = (int(canvas_size[0]), int(canvas_size[1]))
        self.cache = cache if cache is not None else ImageCache()

    def render(
        self,
        layers: Sequence[TraitOption],
        output_size: Sequence[int] | int | None = None,
        *,
        checkpoint: Callable[[str], None] | None = None,
    ) -> Image.Image:
        canvas = Image.new("RGBA", self.canvas_size, (0, 0, 0, 0))
        for option in layers:
            if checkpoint is not None:
                checkpoint(f"load {option.category}")
            if option.path is None:
                LOGGER.warning("option %s has no image path; skipped", option.key)
                continue
            layer = self.cache.get(option.path)
            if layer.size != self.canvas_size:
                layer = layer.resize(self.canvas_size, Image.Resampling.NEAREST)
            canvas = Image.alpha_composite(canvas, layer)
        target = clamp_size(output_size)
        if target != self.canvas_size:
            canvas = canvas.resize(target, Image.Resampling.NEAREST)
        return canvas


__all__ = [
    "DEFAULT_CACHE_SIZE",
    "DEFAULT_CANVAS_SIZE",
    "DEFAULT_OUTPUT_SIZE",
    "MAX_OUTPUT_EDGE",
    "Compositor",
    "ImageCache",
    "clamp_size",
    "paint_sequence",
]
