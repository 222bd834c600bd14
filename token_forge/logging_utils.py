from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TextIO, Union

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "WARNING": 30, "ERROR": 40}
_STYLES = {
    "DEBUG": "dim",
    "INFO": "white",
    "WARN": "yellow",
    "ERROR": "red",
}


def _normalize_level(level: str) -> str:
    level = level.upper().strip()
    return "WARN" if level == "WARNING" else level


def _should_emit(configured: str, requested: str) -> bool:
    return _LOG_LEVELS.get(requested, 100) >= _LOG_LEVELS.get(configured, 20)


@dataclass(slots=True)
class RunLogger:
    """Step-oriented console log for batch runs, mirrored to a plain file when given."""

    console: Console
    level: str = "INFO"
    logfile: Optional[Path] = None
    _plain_file: Optional[TextIO] = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        self.level = _normalize_level(self.level)
        if self.logfile:
            self.logfile.parent.mkdir(parents=True, exist_ok=True)
            self._plain_file = self.logfile.open("a", encoding="utf-8")

    def close(self) -> None:
        if self._plain_file:
            self._plain_file.close()
            self._plain_file = None

    def log(
        self,
        step: str,
        message: str,
        level: str = "INFO",
        elapsed_ms: Optional[float] = None,
    ) -> None:
        level = _normalize_level(level)
        if not _should_emit(self.level, level):
            return
        now = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        suffix = f" (ms={elapsed_ms:.0f})" if elapsed_ms is not None else ""
        line = f"[{now}] [{level.ljust(5)}] [{step.upper().ljust(8)}] {message}{suffix}"
        self.console.print(line, style=_STYLES.get(level, "white"), highlight=False, soft_wrap=True)
        if self._plain_file:
            self._plain_file.write(line + "\n")
            self._plain_file.flush()

    def timed(
        self,
        step: str,
        message: Union[str, Callable[[object], str]],
        func: Callable[..., object],
        *args,
        level: str = "INFO",
        **kwargs,
    ) -> object:
        start = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000.0
            self.log(step, f"error: {exc}", level="ERROR", elapsed_ms=elapsed)
            raise
        elapsed = (time.perf_counter() - start) * 1000.0
        msg = message(result) if callable(message) else message
        self.log(step, msg, level=level, elapsed_ms=elapsed)
        return result


def _console() -> Console:
    return Console(theme=Theme({"repr.number": "cyan"}), stderr=True)


def create_logger(level: str, logfile: Optional[Path]) -> RunLogger:
    return RunLogger(console=_console(), level=level, logfile=logfile)


def configure_logging(level: str = "INFO") -> None:
    """Route ``token_forge.*`` library loggers through rich."""

    numeric = _LOG_LEVELS.get(_normalize_level(level), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_console(), show_path=False, rich_tracebacks=True)],
        force=True,
    )


__all__ = ["RunLogger", "configure_logging", "create_logger"]
