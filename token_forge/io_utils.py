from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Tuple

from PIL import Image


@dataclass(slots=True)
class OutputPaths:
    root: Path
    images: Path
    metadata: Path


@dataclass(slots=True)
class TokenArtifact:
    token_id: int
    image_path: Path
    json_path: Path


def output_paths(out_dir: Path) -> OutputPaths:
    out_dir = Path(out_dir)
    return OutputPaths(root=out_dir, images=out_dir / "images", metadata=out_dir / "metadata")


def prepare_output(out_dir: Path, *, clean: bool = False) -> OutputPaths:
    """Create ``images/`` and ``metadata/`` under *out_dir*, emptying them when *clean*."""

    paths = output_paths(out_dir)
    for directory in (paths.images, paths.metadata):
        if clean and directory.exists():
            for entry in directory.iterdir():
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
        directory.mkdir(parents=True, exist_ok=True)
    return paths


def write_json(path: Path, payload: Mapping[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2)


def save_token(
    paths: OutputPaths,
    token_id: int,
    image: Image.Image,
    metadata: Mapping[str, Any],
) -> TokenArtifact:
    image_path = paths.images / f"{token_id}.png"
    json_path = paths.metadata / f"{token_id}.json"
    image.save(image_path, format="PNG")
    write_json(json_path, metadata)
    return TokenArtifact(token_id, image_path, json_path)


def iter_metadata(metadata_dir: Path) -> Iterator[Tuple[Path, Dict[str, Any]]]:
    """Yield ``(path, record)`` for every JSON record, numeric stems first."""

    files = [path for path in Path(metadata_dir).glob("*.json") if path.is_file()]
    files.sort(key=lambda path: (not path.stem.isdigit(), int(path.stem) if path.stem.isdigit() else 0, path.name))
    for path in files:
        with path.open("r", encoding="utf-8") as fh:
            yield path, json.load(fh)


__all__ = [
    "OutputPaths",
    "TokenArtifact",
    "iter_metadata",
    "output_paths",
    "prepare_output",
    "save_token",
    "write_json",
]
