from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence

import yaml

from .core.batch import BatchSettings
from .core.compositor import DEFAULT_CACHE_SIZE, DEFAULT_CANVAS_SIZE, DEFAULT_OUTPUT_SIZE, clamp_size
from .core.metadata import DEFAULT_CONTEXT_FACET, DEFAULT_IMAGE_BASE_URI, DEFAULT_NAME_PREFIX
from .core.naming import sanitize
from .core.rules import RuleStore
from .core.session import DEFAULT_CANDIDATE_RETRIES, DEFAULT_CONCURRENCY, DEFAULT_MAX_REROLLS

LOGGER = logging.getLogger("token_forge.config")


class ConfigError(ValueError):
    def __init__(self, path: Path | None, reason: str) -> None:
        where = path.as_posix() if path is not None else "<inline>"
        super().__init__(f"Invalid configuration {where}: {reason}")
        self.path = path
        self.reason = reason


@dataclass
class PathsConfig:
    layers: Path = Path("layers")
    rules: Path | None = Path("traitrules.json")
    layer_order: Path | None = Path("layerorder.json")
    output_dir: Path = Path("output")
    custom_tokens: Path | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "PathsConfig":
        raw = raw or {}
        return cls(
            layers=Path(str(raw.get("layers", "layers"))),
            rules=_optional_path(raw.get("rules", "traitrules.json")),
            layer_order=_optional_path(raw.get("layer_order", "layerorder.json")),
            output_dir=Path(str(raw.get("output_dir", "output"))),
            custom_tokens=_optional_path(raw.get("custom_tokens")),
        )

    def resolved(self, base: Path) -> "PathsConfig":
        return PathsConfig(
            layers=_resolve(base, self.layers),
            rules=_resolve(base, self.rules) if self.rules else None,
            layer_order=_resolve(base, self.layer_order) if self.layer_order else None,
            output_dir=_resolve(base, self.output_dir),
            custom_tokens=_resolve(base, self.custom_tokens) if self.custom_tokens else None,
        )


@dataclass
class GenerationConfig:
    concurrency: int = DEFAULT_CONCURRENCY
    max_rerolls: int = DEFAULT_MAX_REROLLS
    candidate_retries: int = DEFAULT_CANDIDATE_RETRIES
    seed: int | str | None = None
    clean_output: bool = True
    stop_on_failure: bool = False
    base_context: List[str] = field(default_factory=list)
    layer_order: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.concurrency = max(1, int(self.concurrency))
        self.max_rerolls = max(1, int(self.max_rerolls))
        self.candidate_retries = max(1, int(self.candidate_retries))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "GenerationConfig":
        raw = raw or {}
        return cls(
            concurrency=int(raw.get("concurrency", DEFAULT_CONCURRENCY)),
            max_rerolls=int(raw.get("max_rerolls", DEFAULT_MAX_REROLLS)),
            candidate_retries=int(raw.get("candidate_retries", DEFAULT_CANDIDATE_RETRIES)),
            seed=raw.get("seed"),
            clean_output=bool(raw.get("clean_output", True)),
            stop_on_failure=bool(raw.get("stop_on_failure", False)),
            base_context=_string_list(raw.get("base_context")),
            layer_order=_string_list(raw.get("layer_order")),
        )


@dataclass
class RenderConfig:
    canvas_width: int = DEFAULT_CANVAS_SIZE[0]
    canvas_height: int = DEFAULT_CANVAS_SIZE[1]
    output_width: int = DEFAULT_OUTPUT_SIZE[0]
    output_height: int = DEFAULT_OUTPUT_SIZE[1]
    image_cache_max: int = DEFAULT_CACHE_SIZE
    extensions: List[str] = field(default_factory=lambda: [".png"])

    def __post_init__(self) -> None:
        self.output_width, self.output_height = clamp_size((self.output_width, self.output_height))
        self.canvas_width = max(1, int(self.canvas_width))
        self.canvas_height = max(1, int(self.canvas_height))
        self.image_cache_max = max(1, int(self.image_cache_max))

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "RenderConfig":
        raw = raw or {}
        output = raw.get("output_size")
        width = raw.get("output_width", output if isinstance(output, int) else DEFAULT_OUTPUT_SIZE[0])
        height = raw.get("output_height", output if isinstance(output, int) else DEFAULT_OUTPUT_SIZE[1])
        return cls(
            canvas_width=int(raw.get("canvas_width", DEFAULT_CANVAS_SIZE[0])),
            canvas_height=int(raw.get("canvas_height", DEFAULT_CANVAS_SIZE[1])),
            output_width=int(width),
            output_height=int(height),
            image_cache_max=int(raw.get("image_cache_max", DEFAULT_CACHE_SIZE)),
            extensions=_string_list(raw.get("extensions")) or [".png"],
        )

    @property
    def canvas_size(self) -> tuple[int, int]:
        return (self.canvas_width, self.canvas_height)

    @property
    def output_size(self) -> tuple[int, int]:
        return (self.output_width, self.output_height)


@dataclass
class MetadataConfig:
    name_prefix: str = DEFAULT_NAME_PREFIX
    description: str = ""
    image_base_uri: str = DEFAULT_IMAGE_BASE_URI
    context_facet: str = DEFAULT_CONTEXT_FACET
    context_facets: Dict[str, str] = field(default_factory=dict)
    primary_only_contexts: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "MetadataConfig":
        raw = raw or {}
        facets = raw.get("context_facets") or {}
        return cls(
            name_prefix=str(raw.get("name_prefix", DEFAULT_NAME_PREFIX)),
            description=str(raw.get("description", "")),
            image_base_uri=str(raw.get("image_base_uri", DEFAULT_IMAGE_BASE_URI)),
            context_facet=str(raw.get("context_facet", DEFAULT_CONTEXT_FACET)),
            context_facets={sanitize(key): str(value) for key, value in dict(facets).items()},
            primary_only_contexts=_string_list(raw.get("primary_only_contexts")),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    to_file: Path | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> "LoggingConfig":
        raw = raw or {}
        return cls(level=str(raw.get("level", "INFO")).upper(), to_file=_optional_path(raw.get("to_file")))


@dataclass
class GeneratorConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    render: RenderConfig = field(default_factory=RenderConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> "GeneratorConfig":
        raw = raw or {}
        return cls(
            paths=PathsConfig.from_mapping(raw.get("paths")),
            generation=GenerationConfig.from_mapping(raw.get("generation")),
            render=RenderConfig.from_mapping(raw.get("render")),
            metadata=MetadataConfig.from_mapping(raw.get("metadata")),
            logging=LoggingConfig.from_mapping(raw.get("logging")),
        )

    def apply_env(self, env: Mapping[str, str]) -> "GeneratorConfig":
        """Apply ``GEN_CONCURRENCY``, ``MAX_REROLLS``, ``IMG_CACHE_MAX`` and ``IPFS_IMAGE_CID``."""

        concurrency = _env_int(env, "GEN_CONCURRENCY")
        if concurrency is not None:
            self.generation.concurrency = max(1, concurrency)
        rerolls = _env_int(env, "MAX_REROLLS")
        if rerolls is not None:
            self.generation.max_rerolls = max(1, rerolls)
        cache_max = _env_int(env, "IMG_CACHE_MAX")
        if cache_max is not None:
            self.render.image_cache_max = max(1, cache_max)
        cid = (env.get("IPFS_IMAGE_CID") or "").strip()
        if cid:
            self.metadata.image_base_uri = f"ipfs://{cid}"
        return self

    def apply_overrides(
        self,
        *,
        concurrency: int | None = None,
        max_rerolls: int | None = None,
        seed: int | str | None = None,
        output_dir: Path | None = None,
        output_size: int | None = None,
        clean_output: bool | None = None,
        log_level: str | None = None,
    ) -> "GeneratorConfig":
        if concurrency is not None:
            self.generation.concurrency = max(1, int(concurrency))
        if max_rerolls is not None:
            self.generation.max_rerolls = max(1, int(max_rerolls))
        if seed is not None:
            self.generation.seed = seed
        if output_dir is not None:
            self.paths.output_dir = Path(output_dir)
        if output_size is not None:
            self.render.output_width, self.render.output_height = clamp_size(output_size)
        if clean_output is not None:
            self.generation.clean_output = bool(clean_output)
        if log_level:
            self.logging.level = log_level.upper()
        return self

    def layer_order(self) -> List[str]:
        if self.generation.layer_order:
            return list(self.generation.layer_order)
        return load_layer_order(self.paths.layer_order)

    def rule_store(self) -> RuleStore:
        return load_rule_store(self.paths.rules)

    def batch_settings(self) -> BatchSettings:
        return BatchSettings(
            layers_dir=self.paths.layers,
            layer_order=self.layer_order(),
            output_dir=self.paths.output_dir,
            concurrency=self.generation.concurrency,
            max_rerolls=self.generation.max_rerolls,
            candidate_retries=self.generation.candidate_retries,
            seed=self.generation.seed,
            clean_output=self.generation.clean_output,
            stop_on_failure=self.generation.stop_on_failure,
            extensions=tuple(self.render.extensions),
            canvas_size=self.render.canvas_size,
            output_size=self.render.output_size,
            image_cache_max=self.render.image_cache_max,
            name_prefix=self.metadata.name_prefix,
            description=self.metadata.description,
            image_base_uri=self.metadata.image_base_uri,
            context_facet=self.metadata.context_facet,
            context_facets=dict(self.metadata.context_facets),
            primary_only_contexts=tuple(self.metadata.primary_only_contexts),
        )


# ----------------------------------------------------------------------
# Loading


def load_document(path: Path) -> Any:
    """Parse a JSON, JSONC or YAML document."""

    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(path, str(exc)) from exc
    try:
        if path.suffix.lower() in {".json", ".jsonc"}:
            return json.loads(_strip_jsonc(text))
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(path, f"cannot parse: {exc}") from exc


def load_config(path: Path) -> GeneratorConfig:
    path = Path(path)
    data = load_document(path)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(path, "configuration file must contain a mapping at the top level")
    config = GeneratorConfig.from_dict(data)
    config.paths = config.paths.resolved(path.parent)
    return config


def load_rule_store(path: Path | None) -> RuleStore:
    """Rule record from *path*; a missing file yields an empty store."""

    if path is None or not Path(path).exists():
        LOGGER.info("no rule file at %s; using defaults", path)
        return RuleStore()
    data = load_document(Path(path))
    if data is None:
        return RuleStore()
    if not isinstance(data, dict):
        raise ConfigError(Path(path), "rule file must contain a mapping at the top level")
    return RuleStore.from_dict(data)


def load_layer_order(source: Path | Sequence[str] | None) -> List[str]:
    """Layer list as listed (topmost last); accepts a list or a file holding one."""

    if source is None:
        return []
    if isinstance(source, (list, tuple)):
        return _string_list(source)
    path = Path(source)
    if not path.exists():
        LOGGER.warning("layer order file %s not found", path.as_posix())
        return []
    data = load_document(path)
    if isinstance(data, Mapping):
        data = data.get("order") or data.get("layers")
    if not isinstance(data, list):
        raise ConfigError(path, "layer order must be a list of category names")
    return _string_list(data)


def _strip_jsonc(payload: str) -> str:
    result: list[str] = []
    length = len(payload)
    i = 0
    in_string = False
    escape = False
    while i < length:
        ch = payload[i]
        if in_string:
            result.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            result.append(ch)
            i += 1
            continue
        if ch == "/" and i + 1 < length:
            nxt = payload[i + 1]
            if nxt == "/":
                i += 2
                while i < length and payload[i] not in "\r\n":
                    i += 1
                continue
            if nxt == "*":
                i += 2
                while i < length - 1:
                    if payload[i] == "*" and payload[i + 1] == "/":
                        i += 2
                        break
                    i += 1
                continue
        result.append(ch)
        i += 1
    return "".join(result)


def _optional_path(value: Any) -> Path | None:
    if value in (None, "", False):
        return None
    return Path(str(value))


def _resolve(base: Path, value: Path) -> Path:
    return value if value.is_absolute() else base / value


def _string_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return [str(item).strip() for item in value if str(item).strip()]


def _env_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw in (None, ""):
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        LOGGER.warning("ignoring non-integer %s=%r", name, raw)
        return None


__all__ = [
    "ConfigError",
    "GenerationConfig",
    "GeneratorConfig",
    "LoggingConfig",
    "MetadataConfig",
    "PathsConfig",
    "RenderConfig",
    "load_config",
    "load_document",
    "load_layer_order",
    "load_rule_store",
]
