"""One-shot AI operations and model selection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Mapping, Sequence

from .ai_types import (
    AICapability,
    AIModelType,
    AgentError,
    ChatMessage,
    CodeExplanationParams,
    CodeGenerationParams,
    CommitMessageParams,
    LogGenerationParams,
    ModelInfo,
    Result,
)
from .client import ApiClient, ApiError
from ..services.session import SessionTracker
from ..services.settings import ConfigService, Settings
from ..services.telemetry import TelemetryBatcher, TelemetryEventType

if TYPE_CHECKING:
    from ..completion.orchestrator import CompletionOrchestrator, CompletionTrigger

__all__ = ["AgentService", "SYSTEM_PROMPT", "build_chat_messages"]

LOGGER = logging.getLogger(__name__)
SYSTEM_PROMPT = "You are M31-Agent, an AI assistant for developers."
UNEXPECTED_ERROR = "UNEXPECTED_ERROR"

_SUCCESS_EVENTS: Mapping[AICapability, TelemetryEventType] = {
    AICapability.CODE_GENERATION: TelemetryEventType.CODE_GENERATED,
    AICapability.CODE_EXPLANATION: TelemetryEventType.CODE_EXPLAINED,
    AICapability.COMMIT_GENERATION: TelemetryEventType.COMMIT_GENERATED,
    AICapability.LOG_GENERATION: TelemetryEventType.LOGS_ADDED,
    AICapability.CHAT: TelemetryEventType.CHAT_MESSAGE_RECEIVED,
}


def build_chat_messages(message: str, conversation: Sequence[str] = ()) -> list[ChatMessage]:
    """Return the system prompt, prior turns (alternating user/assistant) and ``message``."""

    messages = [ChatMessage(role="system", content=SYSTEM_PROMPT)]
    for index, content in enumerate(conversation):
        messages.append(ChatMessage(role="user" if index % 2 == 0 else "assistant", content=content))
    messages.append(ChatMessage(role="user", content=message))
    return messages


class AgentService:
    """Runs user-initiated operations inside the session envelope.

    Every operation opens a :class:`SessionTracker` operation, performs one
    request, and closes the operation with its success flag so that a
    ``FEATURE_USED`` event is recorded. Failures come back as
    :class:`AgentError` values; nothing is raised to the command layer.
    """

    def __init__(
        self,
        client: ApiClient,
        config: ConfigService,
        telemetry: TelemetryBatcher,
        sessions: SessionTracker,
        completions: "CompletionOrchestrator | None" = None,
    ) -> None:
        self._client = client
        self._config = config
        self._telemetry = telemetry
        self._sessions = sessions
        self._completions = completions
        self._selected_model = config.settings.model
        self._unsubscribe = config.subscribe("model", self._on_model_changed)

    @property
    def model(self) -> str:
        return self._selected_model

    async def set_model(self, model: AIModelType | str) -> None:
        """Select ``model`` for requests built from now on."""

        value = AIModelType.coerce(model).value
        if value == self._selected_model:
            return
        LOGGER.info("Setting model to %s", value)
        self._config.update({"model": value})

    async def list_models(self, capability: AICapability | None = None) -> Result[List[ModelInfo], AgentError]:
        response = await self._client.list_models(capability=capability.value if capability else None)
        if not response.success:
            return Result.fail(_agent_error("list models", response.error))
        return Result.ok(list(response.value or []))

    async def get_code_completion(self, trigger: "CompletionTrigger") -> str | None:
        if self._completions is None:
            return None
        return await self._completions.request_completion(trigger)

    # ------------------------------------------------------------------
    # One-shot operations
    # ------------------------------------------------------------------
    async def generate_code(self, params: CodeGenerationParams) -> Result[str, AgentError]:
        LOGGER.info("Generating code (prompt=%r)", params.prompt[:100])
        payload = params.to_payload(self._selected_model)
        return await self._run(
            AICapability.CODE_GENERATION,
            "generate code",
            lambda: self._client.generate_code(payload),
            {"language": params.language or ""},
        )

    async def explain_code(self, params: CodeExplanationParams) -> Result[str, AgentError]:
        LOGGER.info("Explaining code (length=%s language=%s)", len(params.code), params.language)
        payload = params.to_payload(self._selected_model)
        return await self._run(
            AICapability.CODE_EXPLANATION,
            "explain code",
            lambda: self._client.explain_code(payload),
            {"language": params.language or ""},
        )

    async def generate_commit_message(self, params: CommitMessageParams) -> Result[str, AgentError]:
        LOGGER.info("Generating commit message (diff size=%s)", len(params.diff))
        payload = params.to_payload(self._selected_model)
        return await self._run(
            AICapability.COMMIT_GENERATION,
            "generate commit message",
            lambda: self._client.generate_commit_message(payload),
        )

    async def add_logging(self, params: LogGenerationParams) -> Result[str, AgentError]:
        LOGGER.info("Adding logs to code (length=%s language=%s)", len(params.code), params.language)
        payload = params.to_payload(self._selected_model)
        return await self._run(
            AICapability.LOG_GENERATION,
            "add logging",
            lambda: self._client.add_logging(payload),
            {"language": params.language},
        )

    async def chat(self, message: str, conversation: Sequence[str] = ()) -> Result[str, AgentError]:
        LOGGER.info("Sending chat message (length=%s history=%s)", len(message), len(conversation))
        messages = build_chat_messages(message, conversation)
        model = self._selected_model
        self._telemetry.track_event(
            TelemetryEventType.CHAT_MESSAGE_SENT,
            properties={"modelId": model, "conversationLength": len(conversation)},
            measurements={"messageLength": len(message)},
        )
        return await self._run(
            AICapability.CHAT,
            "get chat response",
            lambda: self._client.get_chat_completion(messages, model=model),
        )

    def dispose(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run(
        self,
        capability: AICapability,
        action: str,
        call: Callable[[], Awaitable[Result[str, ApiError]]],
        properties: Mapping[str, Any] | None = None,
    ) -> Result[str, AgentError]:
        async with self._sessions.operation(capability) as handle:
            try:
                response = await call()
            except Exception as exc:
                LOGGER.error("Error while trying to %s", action, exc_info=True)
                self._telemetry.track_exception(exc, "AgentService")
                return Result.fail(AgentError(message=f"Failed to {action}: {exc}", code=UNEXPECTED_ERROR))
            if not response.success or response.value is None:
                error = _agent_error(action, response.error)
                LOGGER.warning("Failed to %s: %s (%s)", action, error.message, error.code)
                return Result.fail(error)
            handle.success = True
            self._track_success(capability, response.value, properties)
            return Result.ok(response.value)

    def _track_success(self, capability: AICapability, text: str, properties: Mapping[str, Any] | None) -> None:
        event_type = _SUCCESS_EVENTS.get(capability)
        if event_type is None:
            return
        merged = {"modelId": self._selected_model, **(properties or {})}
        self._telemetry.track_event(event_type, properties=merged, measurements={"resultLength": len(text)})

    def _on_model_changed(self, previous: Settings, current: Settings) -> None:
        previous_model = self._selected_model
        self._selected_model = current.model
        LOGGER.info("Model changed from %s to %s", previous_model, current.model)
        self._telemetry.track_event(
            TelemetryEventType.MODEL_CHANGED,
            properties={"previousModel": previous_model, "newModel": current.model},
        )


def _agent_error(action: str, error: ApiError | None) -> AgentError:
    if error is None:
        return AgentError(message=f"Failed to {action}: empty response", code=UNEXPECTED_ERROR)
    details: dict[str, Any] = {}
    if error.details is not None:
        details["response"] = error.details
    return AgentError(
        message=f"Failed to {action}: {error.message}",
        code=error.code,
        status=error.status,
        details=details,
    )
