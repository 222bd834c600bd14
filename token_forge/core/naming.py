"""Identifier normalisation shared by the asset index, rules and metadata."""
from __future__ import annotations

import re
from typing import Iterable, Tuple

_SMART_QUOTES = re.compile(r"[‘’“”]")
_DISALLOWED = re.compile(r"[^a-z0-9 _'-]")
_WHITESPACE = re.compile(r"\s+")
_UNDERSCORES = re.compile(r"_+")
_WORD_START = re.compile(r"\b\w")

Context = Tuple[str, ...]


def sanitize(name: object) -> str:
    """Return the canonical identifier used for categories, values and tags."""

    text = str(name if name is not None else "").lower()
    text = _SMART_QUOTES.sub("'", text)
    text = _DISALLOWED.sub("", text)
    text = _WHITESPACE.sub("_", text)
    return _UNDERSCORES.sub("_", text)


def beautify(name: object) -> str:
    text = sanitize(name).replace("_", " ")
    return _WORD_START.sub(lambda match: match.group(0).upper(), text)


def split_context(raw: object) -> Context:
    """Split a ``a/b`` context path into sanitised, non-empty segments."""

    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        parts: Iterable[object] = raw
    else:
        parts = str(raw).replace("\\", "/").split("/")
    segments = (sanitize(part) for part in parts)
    return tuple(segment for segment in segments if segment)


def join_context(context: Context) -> str:
    return "/".join(context)


def has_prefix(context: Context, prefix: Context) -> bool:
    return len(prefix) <= len(context) and context[: len(prefix)] == prefix


__all__ = ["Context", "beautify", "has_prefix", "join_context", "sanitize", "split_context"]
