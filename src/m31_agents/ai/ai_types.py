"""Shared typing contracts for AI infrastructure."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Mapping, Protocol, Sequence, TypeVar

TValue = TypeVar("TValue")
TError = TypeVar("TError")


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class AIModelType(str, Enum):
    """Model tiers exposed by the serving API."""

    STANDARD = "standard"
    ADVANCED = "advanced"
    EXPERT = "expert"

    @classmethod
    def coerce(cls, value: Any, *, default: AIModelType | None = None) -> AIModelType:
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        if default is not None:
            return default
        raise ValueError(f"Unknown model type: {value!r}")


class AICapability(str, Enum):
    CODE_COMPLETION = "code_completion"
    CODE_GENERATION = "code_generation"
    CODE_EXPLANATION = "code_explanation"
    COMMIT_GENERATION = "commit_generation"
    LOG_GENERATION = "log_generation"
    CHAT = "chat"


@dataclass(slots=True, frozen=True)
class Result(Generic[TValue, TError]):
    """Success-or-error value returned across the request and command layers."""

    value: TValue | None = None
    error: TError | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, value: TValue) -> "Result[TValue, TError]":
        return cls(value=value)

    @classmethod
    def fail(cls, error: TError) -> "Result[TValue, TError]":
        return cls(error=error)


@dataclass(slots=True, frozen=True)
class CompletionRequest:
    """Immutable inline-completion request built once per trigger."""

    prompt: str
    model_id: str
    max_tokens: int
    temperature: float
    stop_sequences: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "model": self.model_id,
            "maxTokens": self.max_tokens,
            "temperature": self.temperature,
            "stop": list(self.stop_sequences),
        }


@dataclass(slots=True, frozen=True)
class CompletionResponse:
    """Completion payload returned by ``/completions``."""

    text: str
    tokens: int = 0
    model: str | None = None
    finish_reason: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CompletionResponse":
        text = payload.get("text")
        if not isinstance(text, str):
            raise ValueError("Completion payload is missing 'text'")
        return cls(
            text=text,
            tokens=_coerce_int(payload.get("tokens")),
            model=payload.get("model"),
            finish_reason=payload.get("finishReason"),
        )


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class CodeGenerationParams:
    prompt: str
    language: str | None = None
    model_id: str | None = None
    include_comments: bool = True
    max_tokens: int | None = None

    def to_payload(self, model_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": self.prompt,
            "modelId": self.model_id or model_id,
            "includeComments": self.include_comments,
        }
        if self.language:
            payload["language"] = self.language
        if self.max_tokens is not None:
            payload["maxTokens"] = self.max_tokens
        return payload


@dataclass(slots=True)
class CodeExplanationParams:
    code: str
    language: str | None = None
    model_id: str | None = None
    level: str = "intermediate"
    include_examples: bool = False

    def to_payload(self, model_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "modelId": self.model_id or model_id,
            "level": self.level,
            "includeExamples": self.include_examples,
        }
        if self.language:
            payload["language"] = self.language
        return payload


@dataclass(slots=True)
class CommitMessageParams:
    diff: str
    conventional: bool = True
    scope: str | None = None
    model_id: str | None = None

    def to_payload(self, model_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "diff": self.diff,
            "conventional": self.conventional,
            "modelId": self.model_id or model_id,
        }
        if self.scope:
            payload["scope"] = self.scope
        return payload


@dataclass(slots=True)
class LogGenerationParams:
    code: str
    language: str
    level: str = "basic"
    log_format: str | None = None
    log_library: str | None = None
    model_id: str | None = None

    def to_payload(self, model_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "language": self.language,
            "level": self.level,
            "modelId": self.model_id or model_id,
        }
        if self.log_format:
            payload["logFormat"] = self.log_format
        if self.log_library:
            payload["logLibrary"] = self.log_library
        return payload


@dataclass(slots=True, frozen=True)
class ModelInfo:
    """Entry returned by the ``/models`` listing."""

    id: str
    name: str
    capabilities: tuple[str, ...] = ()
    context_size: int = 0
    provider: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ModelInfo":
        capabilities: Sequence[Any] = payload.get("capabilities") or ()
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name") or payload.get("id", "")),
            capabilities=tuple(str(item) for item in capabilities),
            context_size=_coerce_int(payload.get("contextSize")),
            provider=payload.get("provider"),
        )


@dataclass(slots=True, frozen=True)
class AgentError:
    """User-presentable failure produced by a one-shot operation."""

    message: str
    code: str = "AGENT_ERROR"
    status: int = 0
    details: Mapping[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.message


def _coerce_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


__all__ = [
    "AICapability",
    "AIModelType",
    "AgentError",
    "ChatMessage",
    "CodeExplanationParams",
    "CodeGenerationParams",
    "CommitMessageParams",
    "CompletionRequest",
    "CompletionResponse",
    "LogGenerationParams",
    "ModelInfo",
    "Result",
    "TokenCounterProtocol",
]
