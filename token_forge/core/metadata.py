"""Attribute lists and per-token metadata records."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from .assets import TraitOption
from .naming import Context, beautify, has_prefix, split_context
from .rules import RuleStore
from .tags import TagIndex

DEFAULT_NAME_PREFIX = "Token"
DEFAULT_CONTEXT_FACET = "Type"
DEFAULT_IMAGE_BASE_URI = "ipfs://CID"

Attribute = Dict[str, str]


def context_label(context: Context) -> str:
    return " / ".join(beautify(segment) for segment in context)


@dataclass
class MetadataBuilder:
    store: RuleStore
    tags: TagIndex
    name_prefix: str = DEFAULT_NAME_PREFIX
    description: str = ""
    image_base_uri: str = DEFAULT_IMAGE_BASE_URI
    context_facet: str = DEFAULT_CONTEXT_FACET
    context_facets: Mapping[str, str] = field(default_factory=dict)
    primary_only_contexts: Sequence[str] = ()

    def __post_init__(self) -> None:
        self._primary_only = tuple(
            context for context in (split_context(raw) for raw in self.primary_only_contexts) if context
        )

    def shows_context(self, context: Context) -> bool:
        if not context:
            return False
        if self.store.overrides_for(context):
            return False
        return not any(has_prefix(context, prefix) for prefix in self._primary_only)

    def attributes(self, layers: Iterable[TraitOption]) -> List[Attribute]:
        """Ordered facets: trait values, one context facet per distinct context, then tag facets."""

        layers = list(layers)
        result: List[Attribute] = []
        seen_contexts: set[tuple[str, str]] = set()
        for option in layers:
            result.append({"trait_type": beautify(option.category), "value": beautify(option.value)})
            if not self.shows_context(option.context):
                continue
            facet = self.context_facets.get(option.category, self.context_facet)
            label = context_label(option.context)
            if (facet, label) in seen_contexts:
                continue
            seen_contexts.add((facet, label))
            result.append({"trait_type": facet, "value": label})
        for group, subtags in self.tags.resolve(layers).items():
            for subtag in subtags:
                result.append({"trait_type": beautify(group), "value": beautify(subtag)})
        return result

    def image_uri(self, filename: str) -> str:
        base = self.image_base_uri.rstrip("/")
        return f"{base}/{filename}" if base else filename

    def record(
        self,
        token_id: int,
        filename: str,
        attributes: Sequence[Attribute],
        **extra: Any,
    ) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "name": f"{self.name_prefix} #{token_id}",
            "description": self.description,
            "image": self.image_uri(filename),
            "token_id": token_id,
            "attributes": [dict(item) for item in attributes],
        }
        record.update(extra)
        return record


__all__ = ["Attribute", "MetadataBuilder", "context_label"]
