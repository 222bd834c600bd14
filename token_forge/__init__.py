"""Layered trait selection and token compositing."""
from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - type checking helper
    from .config import GeneratorConfig, load_config
    from .core.batch import BatchOrchestrator, BatchSettings
    from .core.rules import RuleStore

__all__ = ["BatchOrchestrator", "BatchSettings", "GeneratorConfig", "RuleStore", "load_config"]

_EXPORTS = {
    "GeneratorConfig": ".config",
    "load_config": ".config",
    "BatchOrchestrator": ".core.batch",
    "BatchSettings": ".core.batch",
    "RuleStore": ".core.rules",
}


def __getattr__(name: str) -> Any:  # pragma: no cover - dispatch helper
    if name not in _EXPORTS:
        raise AttributeError(name)
    value = getattr(import_module(_EXPORTS[name], __name__), name)
    globals()[name] = value
    return value
