"""Per-batch session handle: seen combinations, budgets, cancellation, progress."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

from .dedupe import SeenCombos

DEFAULT_CONCURRENCY = 5
DEFAULT_MAX_REROLLS = 200
DEFAULT_CANDIDATE_RETRIES = 10


class GenerationCancelled(RuntimeError):
    """Cooperative abort raised at a checkpoint once cancellation was requested."""

    def __init__(self, where: str = "") -> None:
        message = "generation cancelled"
        if where:
            message = f"{message} ({where})"
        super().__init__(message)
        self.where = where


@dataclass
class BatchProgress:
    total: int = 0
    done: int = 0
    failed: int = 0
    is_generating: bool = False
    state: str = "idle"
    last_error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "done": self.done,
            "failed": self.failed,
            "is_generating": self.is_generating,
            "state": self.state,
            "last_error": self.last_error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "warnings": list(self.warnings),
        }


class GenerationSession:
    """State shared by every worker of one batch, passed explicitly."""

    def __init__(
        self,
        *,
        max_rerolls: int = DEFAULT_MAX_REROLLS,
        concurrency: int = DEFAULT_CONCURRENCY,
        candidate_retries: int = DEFAULT_CANDIDATE_RETRIES,
        seen: SeenCombos | None = None,
    ) -> None:
        self.max_rerolls = max(1, int(max_rerolls))
        self.concurrency = max(1, int(concurrency))
        self.candidate_retries = max(1, int(candidate_retries))
        self.seen = seen if seen is not None else SeenCombos()
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._progress = BatchProgress()

    # ------------------------------------------------------------------
    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def checkpoint(self, where: str = "") -> None:
        if self._cancel.is_set():
            raise GenerationCancelled(where)

    # ------------------------------------------------------------------
    def begin(self, total: int, warnings: List[str] | None = None) -> None:
        with self._lock:
            self._progress = BatchProgress(
                total=total,
                is_generating=True,
                state="running",
                started_at=time.time(),
                warnings=list(warnings or []),
            )

    def mark_done(self) -> None:
        with self._lock:
            self._progress.done += 1

    def mark_failed(self, error: str) -> None:
        with self._lock:
            self._progress.failed += 1
            self._progress.last_error = error

    def finish(self, state: str, error: str | None = None) -> None:
        with self._lock:
            self._progress.is_generating = False
            self._progress.state = state
            self._progress.finished_at = time.time()
            if error is not None:
                self._progress.last_error = error

    def add_warnings(self, warnings: List[str]) -> None:
        with self._lock:
            self._progress.warnings.extend(warnings)

    def progress(self) -> BatchProgress:
        with self._lock:
            current = self._progress
            return replace(current, warnings=list(current.warnings))


__all__ = [
    "DEFAULT_CANDIDATE_RETRIES",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_MAX_REROLLS",
    "BatchProgress",
    "GenerationCancelled",
    "GenerationSession",
]
