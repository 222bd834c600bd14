"""Asset index built from the layered image library."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence

from .naming import Context, join_context, sanitize, split_context

LOGGER = logging.getLogger("token_forge.assets")

DEFAULT_WEIGHT = 100.0
IMAGE_EXTENSIONS: tuple[str, ...] = (".png",)


class AssetIndexError(RuntimeError):
    """Raised when the asset library root cannot be indexed."""

    def __init__(self, root: Path, reason: str) -> None:
        super().__init__(f"Cannot index asset library {root.as_posix()}: {reason}")
        self.root = root
        self.reason = reason


@dataclass(frozen=True)
class TraitKey:
    """Typed ``(category, value, context)`` key identifying one asset."""

    category: str
    value: str
    context: Context = ()

    def __str__(self) -> str:
        if self.context:
            return f"{self.category}:{join_context(self.context)}/{self.value}"
        return f"{self.category}:{self.value}"


@dataclass(frozen=True)
class TraitCategory:
    name: str
    draw_priority: int
    selection_priority: int


@dataclass(frozen=True)
class TraitOption:
    """One selectable asset of a category."""

    category: str
    value: str
    context: Context = ()
    path: Path | None = field(default=None, compare=False)
    weight: float = field(default=DEFAULT_WEIGHT, compare=False)

    @property
    def key(self) -> TraitKey:
        return TraitKey(self.category, self.value, self.context)

    @property
    def context_path(self) -> str:
        return join_context(self.context)

    @property
    def label(self) -> str:
        """``context - value`` form used in combo keys and attribute audits."""

        if self.context:
            return f"{self.context_path} - {self.value}"
        return self.value


class AssetIndex:
    """Per-category option lists, built once per batch and read-only afterwards."""

    def __init__(self, root: Path, options: Mapping[str, Sequence[TraitOption]]) -> None:
        self.root = root
        self._options: Dict[str, tuple[TraitOption, ...]] = {
            category: tuple(items) for category, items in options.items()
        }
        self._values: Dict[str, frozenset[str]] = {
            category: frozenset(option.value for option in items)
            for category, items in self._options.items()
        }

    @classmethod
    def build(
        cls,
        root: Path | str,
        categories: Iterable[str],
        *,
        extensions: Iterable[str] = IMAGE_EXTENSIONS,
    ) -> "AssetIndex":
        root = Path(root)
        if not root.is_dir():
            raise AssetIndexError(root, "directory does not exist")
        suffixes = {ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions}
        options: Dict[str, List[TraitOption]] = {}
        for raw_category in categories:
            category = sanitize(raw_category)
            category_dir = root / raw_category
            if not category_dir.is_dir():
                LOGGER.info("category %s has no directory under %s", category, root.as_posix())
                options[category] = []
                continue
            options[category] = _index_category(category, category_dir, suffixes)
        LOGGER.info(
            "indexed %d assets across %d categories",
            sum(len(items) for items in options.values()),
            len(options),
        )
        return cls(root, options)

    # ------------------------------------------------------------------
    @property
    def categories(self) -> tuple[str, ...]:
        return tuple(self._options)

    def options(self, category: str) -> tuple[TraitOption, ...]:
        return self._options.get(category, ())

    def values(self, category: str) -> frozenset[str]:
        return self._values.get(category, frozenset())

    def contains(self, category: str, value: str | None = None) -> bool:
        if category not in self._options:
            return False
        return value is None or value in self._values[category]

    def has_context(self, category: str) -> bool:
        return any(option.context for option in self.options(category))

    def context_depth(self, category: str) -> int:
        """Shallowest context depth offered by *category*, ``0`` when it has none."""

        depths = [len(option.context) for option in self.options(category) if option.context]
        return min(depths) if depths else 0

    def contexts(self, category: str) -> frozenset[Context]:
        return frozenset(option.context for option in self.options(category) if option.context)

    def __len__(self) -> int:
        return sum(len(items) for items in self._options.values())


def _index_category(category: str, category_dir: Path, suffixes: set[str]) -> List[TraitOption]:
    found: Dict[TraitKey, TraitOption] = {}
    stack: List[Path] = [category_dir]
    visited = {category_dir.resolve()}
    while stack:
        directory = stack.pop()
        try:
            entries = sorted(directory.iterdir())
        except OSError as exc:
            LOGGER.warning("skipping unreadable directory %s: %s", directory.as_posix(), exc)
            continue
        for entry in entries:
            if entry.is_dir():
                real = entry.resolve()
                if real in visited:
                    LOGGER.warning("skipping %s: directory already indexed", entry.as_posix())
                    continue
                visited.add(real)
                stack.append(entry)
                continue
            if entry.suffix.lower() not in suffixes:
                continue
            relative = entry.relative_to(category_dir)
            option = TraitOption(
                category=category,
                value=sanitize(entry.stem),
                context=split_context(relative.parent.parts),
                path=entry,
            )
            if not option.value:
                LOGGER.warning("asset %s has no usable name; ignored", entry.as_posix())
                continue
            existing = found.get(option.key)
            if existing is not None:
                LOGGER.warning(
                    "asset %s duplicates %s as %s; keeping the first",
                    entry.as_posix(),
                    existing.path.as_posix() if existing.path else "?",
                    option.key,
                )
                continue
            found[option.key] = option
    return sorted(found.values(), key=lambda opt: (opt.context, opt.value))


__all__ = [
    "DEFAULT_WEIGHT",
    "IMAGE_EXTENSIONS",
    "AssetIndex",
    "AssetIndexError",
    "TraitCategory",
    "TraitKey",
    "TraitOption",
]
