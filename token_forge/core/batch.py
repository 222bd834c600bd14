"""Batch orchestration: bounded worker pool over the per-token state machine."""
from __future__ import annotations

import enum
import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from ..custom_tokens import CustomToken, CustomTokenError, CustomTokenWriter
from ..io_utils import OutputPaths, prepare_output, save_token
from .assembly import TokenAssembler, TokenState, UniqueExhausted
from .assets import IMAGE_EXTENSIONS, AssetIndex, AssetIndexError
from .compositor import (
    DEFAULT_CACHE_SIZE,
    DEFAULT_CANVAS_SIZE,
    DEFAULT_OUTPUT_SIZE,
    Compositor,
    ImageCache,
    clamp_size,
    paint_sequence,
)
from .constraints import RuleSet
from .context import SelectionPlan, plan_selection
from .metadata import DEFAULT_CONTEXT_FACET, DEFAULT_IMAGE_BASE_URI, DEFAULT_NAME_PREFIX, MetadataBuilder
from .naming import split_context
from .rules import ConfigurationWarning, RuleStore
from .session import (
    DEFAULT_CANDIDATE_RETRIES,
    DEFAULT_CONCURRENCY,
    DEFAULT_MAX_REROLLS,
    BatchProgress,
    GenerationCancelled,
    GenerationSession,
)
from .tags import TagIndex

LOGGER = logging.getLogger("token_forge.batch")


class BatchState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BatchAlreadyRunning(RuntimeError):
    def __init__(self) -> None:
        super().__init__("a generation batch is already running")


@dataclass
class BatchSettings:
    layers_dir: Path
    layer_order: Sequence[str]
    output_dir: Path
    concurrency: int = DEFAULT_CONCURRENCY
    max_rerolls: int = DEFAULT_MAX_REROLLS
    candidate_retries: int = DEFAULT_CANDIDATE_RETRIES
    seed: int | str | None = None
    clean_output: bool = True
    stop_on_failure: bool = False
    extensions: Sequence[str] = IMAGE_EXTENSIONS
    canvas_size: Tuple[int, int] = DEFAULT_CANVAS_SIZE
    output_size: Tuple[int, int] = DEFAULT_OUTPUT_SIZE
    image_cache_max: int = DEFAULT_CACHE_SIZE
    name_prefix: str = DEFAULT_NAME_PREFIX
    description: str = ""
    image_base_uri: str = DEFAULT_IMAGE_BASE_URI
    context_facet: str = DEFAULT_CONTEXT_FACET
    context_facets: Mapping[str, str] = field(default_factory=dict)
    primary_only_contexts: Sequence[str] = ()


@dataclass
class TokenResult:
    token_id: int
    state: TokenState
    combo_key: str = ""
    attempts: int = 0
    attributes: List[Dict[str, str]] = field(default_factory=list)
    image_path: Path | None = None
    metadata_path: Path | None = None
    error: str | None = None
    error_code: str | None = None
    custom: bool = False
    cancelled: bool = False

    @property
    def persisted(self) -> bool:
        return self.state is TokenState.PERSISTED

    def as_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "state": self.state.value,
            "combo_key": self.combo_key,
            "attempts": self.attempts,
            "image": self.image_path.as_posix() if self.image_path else None,
            "metadata": self.metadata_path.as_posix() if self.metadata_path else None,
            "error": self.error,
            "error_code": self.error_code,
            "custom": self.custom,
            "cancelled": self.cancelled,
        }


@dataclass
class BatchResult:
    state: BatchState
    tokens: List[TokenResult] = field(default_factory=list)
    error: str | None = None
    warnings: List[ConfigurationWarning] = field(default_factory=list)

    @property
    def persisted(self) -> List[TokenResult]:
        return [token for token in self.tokens if token.persisted]

    @property
    def failed(self) -> List[TokenResult]:
        return [token for token in self.tokens if token.state is TokenState.FAILED and not token.cancelled]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "error": self.error,
            "persisted": len(self.persisted),
            "failed": len(self.failed),
            "warnings": [warning.as_dict() for warning in self.warnings],
            "tokens": [token.as_dict() for token in sorted(self.tokens, key=lambda t: t.token_id)],
        }


@dataclass
class _Prepared:
    index: AssetIndex
    store: RuleStore
    plan: SelectionPlan
    assembler: TokenAssembler
    compositor: Compositor
    metadata: MetadataBuilder
    paths: OutputPaths
    warnings: List[ConfigurationWarning]


class BatchOrchestrator:
    """Owns one generation session at a time and exposes the batch control surface."""

    def __init__(
        self,
        settings: BatchSettings,
        store: RuleStore,
        *,
        custom_tokens: Sequence[CustomToken] = (),
    ) -> None:
        self.settings = settings
        self.store = store
        self.custom_tokens = tuple(custom_tokens)
        self.cache = ImageCache(settings.image_cache_max)
        self._lock = threading.Lock()
        self._running = False
        self._state = BatchState.IDLE
        self._session: GenerationSession | None = None
        self._thread: threading.Thread | None = None
        self._result: BatchResult | None = None

    # ------------------------------------------------------------------
    # control surface
    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def result(self) -> BatchResult | None:
        return self._result

    @property
    def running(self) -> bool:
        return self._running

    def start(
        self,
        count: int,
        start_id: int = 1,
        base_context: Sequence[str] = (),
        output_size: Sequence[int] | int | None = None,
    ) -> threading.Thread:
        """Run a batch on a background thread; poll :meth:`progress` or :meth:`wait`."""

        session = self._claim()
        thread = threading.Thread(
            target=self._execute_in_background,
            args=(session, count, start_id, base_context, output_size),
            name="token-forge-batch",
            daemon=True,
        )
        self._thread = thread
        thread.start()
        return thread

    def run(
        self,
        count: int,
        start_id: int = 1,
        base_context: Sequence[str] = (),
        output_size: Sequence[int] | int | None = None,
    ) -> BatchResult:
        session = self._claim()
        try:
            return self._execute(session, count, start_id, base_context, output_size)
        except Exception as exc:
            self._finish(session, BatchResult(state=BatchState.FAILED, error=str(exc)))
            raise

    def wait(self, timeout: float | None = None) -> BatchResult | None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self._result

    def cancel(self) -> None:
        session = self._session
        if session is not None and self._running:
            LOGGER.info("cancellation requested")
            session.cancel()

    def progress(self) -> Dict[str, Any]:
        session = self._session
        if session is None:
            return BatchProgress(state=self._state.value).as_dict()
        return session.progress().as_dict()

    # ------------------------------------------------------------------
    def _claim(self) -> GenerationSession:
        with self._lock:
            if self._running:
                raise BatchAlreadyRunning()
            self._running = True
            self._state = BatchState.RUNNING
            self._result = None
            self._session = GenerationSession(
                max_rerolls=self.settings.max_rerolls,
                concurrency=self.settings.concurrency,
                candidate_retries=self.settings.candidate_retries,
            )
            return self._session

    def _finish(self, session: GenerationSession, result: BatchResult) -> BatchResult:
        session.finish(result.state.value, result.error)
        with self._lock:
            self._state = result.state
            self._result = result
            self._running = False
        LOGGER.info(
            "batch %s: %d persisted, %d failed",
            result.state.value,
            len(result.persisted),
            len(result.failed),
        )
        return result

    def _prepare(self) -> _Prepared:
        settings = self.settings
        index = AssetIndex.build(settings.layers_dir, settings.layer_order, extensions=settings.extensions)
        warnings = self.store.validate_against(index)
        for warning in warnings:
            LOGGER.warning("%s: %s", warning.rule, warning.message)
        store = self.store.restricted_to(index)
        plan = plan_selection(index, settings.layer_order, store.dynamic_context)
        tags = TagIndex.build(store, index)
        assembler = TokenAssembler(index, store, plan, tags=tags, rules=RuleSet(store.rules))
        metadata = MetadataBuilder(
            store=store,
            tags=tags,
            name_prefix=settings.name_prefix,
            description=settings.description,
            image_base_uri=settings.image_base_uri,
            context_facet=settings.context_facet,
            context_facets=dict(settings.context_facets),
            primary_only_contexts=tuple(settings.primary_only_contexts),
        )
        paths = prepare_output(settings.output_dir, clean=settings.clean_output)
        return _Prepared(
            index=index,
            store=store,
            plan=plan,
            assembler=assembler,
            compositor=Compositor(settings.canvas_size, self.cache),
            metadata=metadata,
            paths=paths,
            warnings=warnings,
        )

    def _execute_in_background(self, session: GenerationSession, *args: Any) -> None:
        try:
            self._execute(session, *args)
        except Exception as exc:  # surfaced through progress and result
            LOGGER.exception("batch crashed")
            self._finish(session, BatchResult(state=BatchState.FAILED, error=str(exc)))

    def _execute(
        self,
        session: GenerationSession,
        count: int,
        start_id: int,
        base_context: Sequence[str],
        output_size: Sequence[int] | int | None,
    ) -> BatchResult:
        count = max(0, int(count))
        session.begin(count)
        try:
            prepared = self._prepare()
        except (AssetIndexError, OSError) as exc:
            LOGGER.error("batch aborted before start: %s", exc)
            session.mark_failed(str(exc))
            return self._finish(session, BatchResult(state=BatchState.FAILED, error=str(exc)))

        session.add_warnings([warning.message for warning in prepared.warnings])
        result = BatchResult(state=BatchState.RUNNING, warnings=list(prepared.warnings))
        base = split_context(list(base_context))
        size = clamp_size(output_size, self.settings.output_size)

        try:
            used = self._emit_custom(session, prepared, count, start_id, result)
            token_ids = range(start_id + used, start_id + count)
            with ThreadPoolExecutor(max_workers=session.concurrency, thread_name_prefix="token-forge") as pool:
                futures = [
                    pool.submit(self._generate_token, session, prepared, token_id, base, size)
                    for token_id in token_ids
                ]
                for future in as_completed(futures):
                    token = future.result()
                    result.tokens.append(token)
                    if token.state is TokenState.FAILED and not token.cancelled and self.settings.stop_on_failure:
                        result.error = token.error
                        session.cancel()
        except GenerationCancelled:
            LOGGER.info("batch cancelled while emitting custom tokens")

        if result.error is not None and self.settings.stop_on_failure:
            result.state = BatchState.FAILED
        elif session.cancelled:
            result.state = BatchState.CANCELLED
        else:
            result.state = BatchState.COMPLETED
        result.tokens.sort(key=lambda token: token.token_id)
        return self._finish(session, result)

    def _emit_custom(
        self,
        session: GenerationSession,
        prepared: _Prepared,
        count: int,
        start_id: int,
        result: BatchResult,
    ) -> int:
        selected = self.custom_tokens[:count]
        writer = CustomTokenWriter(
            paths=prepared.paths,
            image_uri=prepared.metadata.image_uri,
            name_prefix=self.settings.name_prefix,
        )
        for offset, token in enumerate(selected):
            session.checkpoint("custom token")
            token_id = start_id + offset
            try:
                artifact = writer.write(token, token_id)
            except (CustomTokenError, OSError) as exc:
                LOGGER.error("custom token %d failed: %s", token_id, exc)
                session.mark_failed(str(exc))
                result.tokens.append(TokenResult(token_id, TokenState.FAILED, error=str(exc), custom=True))
                continue
            session.mark_done()
            result.tokens.append(
                TokenResult(
                    token_id,
                    TokenState.PERSISTED,
                    attributes=[dict(item) for item in token.attributes],
                    image_path=artifact.image_path,
                    metadata_path=artifact.json_path,
                    custom=True,
                )
            )
        return len(selected)

    def _rng_for(self, token_id: int) -> random.Random:
        if self.settings.seed is None:
            return random.Random()
        return random.Random(f"{self.settings.seed}:{token_id}")

    def _generate_token(
        self,
        session: GenerationSession,
        prepared: _Prepared,
        token_id: int,
        base_context: Sequence[str],
        output_size: Tuple[int, int],
    ) -> TokenResult:
        token = TokenResult(token_id, TokenState.SELECTING)

        def track(state: TokenState) -> None:
            token.state = state

        try:
            session.checkpoint("token start")
            assignment = prepared.assembler.assemble(
                self._rng_for(token_id),
                session,
                base_context,
                token_id=token_id,
                on_state=track,
            )
            token.combo_key = assignment.combo_key
            token.attempts = assignment.attempts

            track(TokenState.COMPOSING)
            order = paint_sequence(assignment.chosen, prepared.plan.paint_order, prepared.store)
            layers = [assignment.chosen[category] for category in order]
            image = prepared.compositor.render(layers, output_size, checkpoint=session.checkpoint)
            token.attributes = prepared.metadata.attributes(layers)
            record = prepared.metadata.record(token_id, f"{token_id}.png", token.attributes)

            session.checkpoint("write")
            artifact = save_token(prepared.paths, token_id, image, record)
        except GenerationCancelled:
            token.cancelled = True
            return token
        except UniqueExhausted as exc:
            LOGGER.warning("token %d failed: %s", token_id, exc)
            session.mark_failed(str(exc))
            token.state = TokenState.FAILED
            token.error = str(exc)
            token.error_code = exc.code
            return token
        except (OSError, ValueError) as exc:
            LOGGER.exception("token %d failed", token_id)
            session.mark_failed(str(exc))
            token.state = TokenState.FAILED
            token.error = str(exc)
            return token

        token.state = TokenState.PERSISTED
        token.image_path = artifact.image_path
        token.metadata_path = artifact.json_path
        session.mark_done()
        LOGGER.debug("token %d persisted after %d attempt(s)", token_id, token.attempts)
        return token


__all__ = [
    "BatchAlreadyRunning",
    "BatchOrchestrator",
    "BatchResult",
    "BatchSettings",
    "BatchState",
    "TokenResult",
    "UniqueExhausted",
]
