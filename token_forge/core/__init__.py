"""Generation engine: indexing, selection, validation, compositing."""

__all__ = [
    "assembly",
    "assets",
    "batch",
    "compositor",
    "constraints",
    "context",
    "dedupe",
    "metadata",
    "naming",
    "rules",
    "sampler",
    "session",
    "tags",
]
