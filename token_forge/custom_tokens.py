"""Hand-made 1/1 tokens emitted ahead of the generated ones."""
from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

from .io_utils import OutputPaths, TokenArtifact, write_json

LOGGER = logging.getLogger("token_forge.custom_tokens")

ANIMATED_EXTENSIONS = (".gif",)


class CustomTokenError(ValueError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Custom token {path.as_posix()}: {reason}")
        self.path = path
        self.reason = reason


@dataclass(frozen=True)
class CustomToken:
    file: Path
    name: str | None = None
    description: str | None = None
    attributes: tuple[Dict[str, str], ...] = ()
    include: bool = True

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], base_dir: Path) -> "CustomToken":
        file_raw = str(raw.get("file") or "").lstrip("/\\")
        if not file_raw:
            raise CustomTokenError(base_dir, "entry without 'file'")
        attributes = tuple(
            {"trait_type": str(item.get("trait_type")), "value": str(item.get("value"))}
            for item in raw.get("attributes") or []
            if isinstance(item, Mapping)
        )
        return cls(
            file=base_dir / file_raw,
            name=str(raw["name"]) if raw.get("name") else None,
            description=str(raw["description"]) if raw.get("description") else None,
            attributes=attributes,
            include=bool(raw.get("include", False)),
        )

    @property
    def suffix(self) -> str:
        return self.file.suffix.lower() or ".png"


def load_custom_tokens(path: Path | None) -> List[CustomToken]:
    """Included entries of a ``{"items": [...]}`` document; a missing file means none."""

    if path is None:
        return []
    path = Path(path)
    if not path.exists():
        LOGGER.debug("no custom token file at %s", path.as_posix())
        return []
    try:
        with path.open("r", encoding="utf-8") as fh:
            document = json.load(fh)
    except json.JSONDecodeError as exc:
        raise CustomTokenError(path, f"cannot parse: {exc}") from exc
    items = document.get("items") if isinstance(document, Mapping) else None
    tokens = [
        CustomToken.from_mapping(item, path.parent)
        for item in items or []
        if isinstance(item, Mapping)
    ]
    included = [token for token in tokens if token.include]
    LOGGER.info("loaded %d custom token(s), %d included", len(tokens), len(included))
    return included


@dataclass
class CustomTokenWriter:
    paths: OutputPaths
    image_uri: Callable[[str], str]
    name_prefix: str = "Token"

    def record(self, token: CustomToken, token_id: int, filename: str) -> Dict[str, Any]:
        uri = self.image_uri(filename)
        record: Dict[str, Any] = {
            "name": token.name or f"{self.name_prefix} #{token_id}",
            "token_id": token_id,
            "image": uri,
        }
        if token.suffix in ANIMATED_EXTENSIONS:
            record["animation_url"] = uri
        if token.description:
            record["description"] = token.description
        if token.attributes:
            record["attributes"] = [dict(item) for item in token.attributes]
        return record

    def write(self, token: CustomToken, token_id: int) -> TokenArtifact:
        if not token.file.is_file():
            raise CustomTokenError(token.file, "file does not exist")
        filename = f"{token_id}{token.suffix}"
        image_path = self.paths.images / filename
        json_path = self.paths.metadata / f"{token_id}.json"
        shutil.copyfile(token.file, image_path)
        write_json(json_path, self.record(token, token_id, filename))
        return TokenArtifact(token_id, image_path, json_path)


__all__ = ["CustomToken", "CustomTokenError", "CustomTokenWriter", "load_custom_tokens"]
