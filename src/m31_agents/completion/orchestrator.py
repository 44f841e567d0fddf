"""Inline completion orchestration.

Every editor trigger flows through :meth:`CompletionOrchestrator.request_completion`,
which decides between three outcomes: suppress the request, answer it from
the :class:`~m31_agents.completion.result_cache.ResultCache`, or issue a single
network call. Identical keys that arrive while a call is outstanding join the
outstanding call instead of issuing another one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Protocol

from ..ai.ai_types import CompletionRequest, CompletionResponse, Result
from ..services.editor import DocumentSnapshot
from ..services.settings import ConfigService, Settings
from ..services.telemetry import TelemetryBatcher, TelemetryEventType
from .context_window import ContextWindow, ContextWindowBuilder
from .result_cache import CacheKeyPolicy, ResultCache, key_policy_for

if TYPE_CHECKING:
    from ..ai.client import ApiError

__all__ = ["CompletionClient", "CompletionOrchestrator", "CompletionTrigger"]

LOGGER = logging.getLogger(__name__)
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


class CompletionClient(Protocol):
    """The slice of the request client used by the completion path."""

    async def get_completion(self, request: CompletionRequest) -> Result[CompletionResponse, "ApiError"]:
        ...


@dataclass(slots=True, frozen=True)
class CompletionTrigger:
    """Editor event asking for a suggestion at ``(line, column)``.

    Attributes:
        document: Snapshot of the document when the trigger fired.
        line: Zero-based cursor line.
        column: Zero-based cursor column.
        context: Optional free-text header (symbol or file-type hints).
    """

    document: DocumentSnapshot
    line: int
    column: int
    context: str | None = None

    @classmethod
    def at_cursor(cls, document: DocumentSnapshot, *, context: str | None = None) -> "CompletionTrigger":
        return cls(document=document, line=document.cursor_line, column=document.cursor_column, context=context)

    @property
    def language_id(self) -> str:
        return self.document.language_id


@dataclass(slots=True, frozen=True)
class _Attempt:
    """Per-trigger data shared by the telemetry helpers."""

    trigger: CompletionTrigger
    window: ContextWindow
    started: float


@dataclass(slots=True, frozen=True)
class _Outcome:
    """What an in-flight call resolved to; shared with joined callers."""

    text: str | None
    error_code: str = ""
    status: int = 0


class CompletionOrchestrator:
    """Single entry point for inline completion triggers.

    Args:
        client: Request client exposing ``get_completion``.
        cache: Shared result cache.
        telemetry: Batcher receiving ``CODE_COMPLETED`` events.
        config: Live configuration; read on every trigger.
        key_policy: Cache key policy. When omitted the policy named by
            ``advanced.cache_key_policy`` is used and follows later changes.
        clock: Monotonic clock used for duration measurements.
    """

    def __init__(
        self,
        client: CompletionClient,
        cache: ResultCache,
        telemetry: TelemetryBatcher,
        config: ConfigService,
        *,
        key_policy: CacheKeyPolicy | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._client = client
        self._cache = cache
        self._telemetry = telemetry
        self._config = config
        self._clock = clock
        self._in_flight: Dict[str, asyncio.Task[_Outcome]] = {}
        if key_policy is None:
            self._key_policy = key_policy_for(config.settings.advanced.cache_key_policy)
            self._unsubscribe: Callable[[], None] | None = config.subscribe("advanced", self._on_advanced_changed)
        else:
            self._key_policy = key_policy
            self._unsubscribe = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def cache(self) -> ResultCache:
        return self._cache

    @property
    def key_policy(self) -> CacheKeyPolicy:
        return self._key_policy

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def request_completion(self, trigger: CompletionTrigger) -> str | None:
        """Return a suggestion for ``trigger`` or ``None``.

        Disabled configuration and blank line prefixes return ``None`` without
        telemetry. Failures also return ``None``; they are reported through
        telemetry only so typing is never interrupted.
        """

        settings = self._config.settings
        if not self._is_enabled(settings, trigger.language_id):
            return None

        completion = settings.code_completion
        builder = ContextWindowBuilder(lines_before=completion.lines_before, lines_after=completion.lines_after)
        window = builder.build(trigger.document.lines, trigger.line, trigger.column, header=trigger.context)
        if window.is_empty:
            return None

        attempt = _Attempt(trigger=trigger, window=window, started=self._clock())
        key = self._key_policy.key_for(trigger.language_id, window.line_prefix, trigger.context or "")
        use_cache = settings.advanced.use_cache

        cached = self._cache.get(key) if use_cache else None
        if cached is not None:
            LOGGER.debug("Completion cache hit for %s", trigger.language_id)
            self._track_success(attempt, cached, model_id=settings.model, tokens=0, from_cache=True, network_ms=0.0)
            return cached

        task = self._in_flight.get(key)
        if task is not None:
            LOGGER.debug("Joining in-flight completion for %s", trigger.language_id)
            outcome = await asyncio.shield(task)
            if outcome.text is None:
                self._track_failure(attempt, settings.model, code=outcome.error_code, status=outcome.status, joined=True)
            else:
                self._track_success(
                    attempt, outcome.text, model_id=settings.model, tokens=0, from_cache=True, network_ms=0.0, joined=True
                )
            return outcome.text

        request = self._build_request(window, settings)
        task = asyncio.get_running_loop().create_task(self._fetch(key, request, attempt, use_cache))
        self._in_flight[key] = task
        return (await asyncio.shield(task)).text

    async def aclose(self) -> None:
        """Wait for outstanding calls so their telemetry is recorded."""

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _fetch(self, key: str, request: CompletionRequest, attempt: _Attempt, use_cache: bool) -> _Outcome:
        network_started = self._clock()
        try:
            result = await self._client.get_completion(request)
        except Exception as exc:
            LOGGER.error("Unexpected error in code completion: %s", exc, exc_info=True)
            self._track_failure(attempt, request.model_id, code=UNEXPECTED_ERROR, status=0)
            return _Outcome(None, UNEXPECTED_ERROR)
        finally:
            self._in_flight.pop(key, None)
        network_ms = (self._clock() - network_started) * 1000.0

        if not result.success or result.value is None:
            error = result.error
            code = getattr(error, "code", UNEXPECTED_ERROR)
            status = getattr(error, "status", 0)
            LOGGER.error(
                "Error getting completion (document=%s position=%s:%s): %s",
                attempt.trigger.document.uri,
                attempt.trigger.line,
                attempt.trigger.column,
                getattr(error, "message", error),
            )
            self._track_failure(
                attempt,
                request.model_id,
                code=code,
                status=status,
                network_ms=network_ms,
            )
            return _Outcome(None, code, status)

        response = result.value
        if use_cache:
            self._cache.put(key, response.text)
        self._track_success(
            attempt,
            response.text,
            model_id=request.model_id,
            tokens=response.tokens,
            from_cache=False,
            network_ms=network_ms,
        )
        return _Outcome(response.text)

    @staticmethod
    def _is_enabled(settings: Settings, language_id: str) -> bool:
        completion = settings.code_completion
        return settings.auto_complete and completion.enabled and completion.language_enabled(language_id)

    @staticmethod
    def _build_request(window: ContextWindow, settings: Settings) -> CompletionRequest:
        return CompletionRequest(
            prompt=window.prompt,
            model_id=settings.model,
            max_tokens=settings.code_generation.max_tokens,
            temperature=settings.code_generation.temperature,
            stop_sequences=tuple(settings.code_completion.stop_sequences),
        )

    def _on_advanced_changed(self, previous: Settings, current: Settings) -> None:
        if previous.advanced.cache_key_policy == current.advanced.cache_key_policy:
            return
        self._key_policy = key_policy_for(current.advanced.cache_key_policy)
        self._cache.clear()
        LOGGER.info("Completion cache key policy set to %s", self._key_policy.name)

    def _base_properties(self, attempt: _Attempt, model_id: str) -> dict[str, Any]:
        return {
            "language": attempt.trigger.language_id,
            "promptLength": len(attempt.window.line_prefix),
            "position": {"line": attempt.trigger.line, "character": attempt.trigger.column},
            "modelId": model_id,
        }

    def _track_success(
        self,
        attempt: _Attempt,
        text: str,
        *,
        model_id: str,
        tokens: int,
        from_cache: bool,
        network_ms: float,
        joined: bool = False,
    ) -> None:
        properties = self._base_properties(attempt, model_id)
        properties.update(completionLength=len(text), success=True, fromCache=from_cache)
        if joined:
            properties["joinedInFlight"] = True
        self._telemetry.track_event(
            TelemetryEventType.CODE_COMPLETED,
            properties=properties,
            measurements={
                "duration": self._elapsed_ms(attempt),
                "networkDuration": network_ms,
                "promptLength": len(attempt.window.line_prefix),
                "completionLength": len(text),
                "tokensUsed": tokens,
            },
        )

    def _track_failure(
        self,
        attempt: _Attempt,
        model_id: str,
        *,
        code: str,
        status: int,
        network_ms: float = 0.0,
        joined: bool = False,
    ) -> None:
        properties = self._base_properties(attempt, model_id)
        properties.update(completionLength=0, success=False, fromCache=False, errorCode=code, statusCode=status)
        if joined:
            properties["joinedInFlight"] = True
        self._telemetry.track_event(
            TelemetryEventType.CODE_COMPLETED,
            properties=properties,
            measurements={
                "duration": self._elapsed_ms(attempt),
                "networkDuration": network_ms,
                "promptLength": len(attempt.window.line_prefix),
                "completionLength": 0,
                "tokensUsed": 0,
            },
        )

    def _elapsed_ms(self, attempt: _Attempt) -> float:
        return round(max(0.0, (self._clock() - attempt.started) * 1000.0), 3)
