from __future__ import annotations

from pathlib import Path
import sys
from typing import Dict, Iterable, Tuple

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from token_forge.core.assets import AssetIndex
from token_forge.core.rules import RuleStore

# Topmost layer first; the engine paints the reversed list.
LAYER_ORDER = ["hat", "hair", "outfit", "skin", "background"]

Color = Tuple[int, int, int, int]

LIBRARY: Dict[str, Color] = {
    "background/red.png": (255, 0, 0, 255),
    "background/blue.png": (0, 0, 255, 255),
    "skin/male/light.png": (240, 200, 170, 255),
    "skin/male/dark.png": (120, 80, 50, 255),
    "skin/female/light.png": (250, 210, 180, 255),
    "skin/fullbody/noir.png": (10, 10, 10, 255),
    "outfit/male/suit.png": (30, 30, 90, 255),
    "outfit/female/dress.png": (200, 30, 120, 255),
    "outfit/tshirt.png": (250, 250, 250, 255),
    "hair/bald.png": (0, 0, 0, 0),
    "hair/long.png": (90, 60, 20, 255),
    "hat/crown.png": (255, 215, 0, 255),
    "hat/cap.png": (0, 128, 0, 255),
}


def make_png(path: Path, color: Color, size: Tuple[int, int] = (36, 36)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGBA", size, color).save(path, format="PNG")
    return path


def build_library(root: Path, files: Dict[str, Color] | Iterable[str]) -> Path:
    if not isinstance(files, dict):
        files = {name: (128, 128, 128, 255) for name in files}
    for relative, color in files.items():
        make_png(root / relative, color)
    return root


@pytest.fixture()
def layers_dir(tmp_path: Path) -> Path:
    return build_library(tmp_path / "layers", LIBRARY)


@pytest.fixture()
def asset_index(layers_dir: Path) -> AssetIndex:
    return AssetIndex.build(layers_dir, LAYER_ORDER)


@pytest.fixture()
def empty_store() -> RuleStore:
    return RuleStore()
