"""Tests for the one-shot agent operations."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from m31_agents.ai.agent import SYSTEM_PROMPT, AgentService, build_chat_messages
from m31_agents.ai.ai_types import (
    AICapability,
    AIModelType,
    CodeExplanationParams,
    CodeGenerationParams,
    CommitMessageParams,
    LogGenerationParams,
)
from m31_agents.ai.client import ApiClient, ClientSettings
from m31_agents.services.session import SessionTracker
from m31_agents.services.settings import ConfigService, Settings
from m31_agents.services.telemetry import InMemoryTelemetrySink, TelemetryBatcher, TelemetryEventType

Handler = Callable[[httpx.Request], httpx.Response]


class _Recorder:
    def __init__(self, responses: dict[str, Any]) -> None:
        self.responses = responses
        self.requests: list[tuple[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.url.path, body))
        value = self.responses.get(request.url.path)
        if isinstance(value, httpx.Response):
            return value
        return httpx.Response(200, json={"success": True, "value": value})


def _make_agent(handler: Handler, telemetry: TelemetryBatcher, config: ConfigService | None = None) -> AgentService:
    config = config or ConfigService(Settings())
    client = ApiClient(
        ClientSettings(base_url="https://api.test/v1", max_retries=1, retry_min_seconds=0.0, retry_max_seconds=0.0),
        transport=httpx.MockTransport(handler),
    )
    sessions = SessionTracker(telemetry, model_provider=lambda: config.settings.model)
    return AgentService(client, config, telemetry, sessions)


def _feature_events(sink: InMemoryTelemetrySink) -> list:
    return sink.events_by_type(TelemetryEventType.FEATURE_USED)


@pytest.mark.asyncio
async def test_generate_code_uses_selected_model_and_reports_feature(
    telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink
) -> None:
    recorder = _Recorder({"/v1/code/generate": {"code": "def add(a, b):\n    return a + b"}})
    agent = _make_agent(recorder, telemetry)

    result = await agent.generate_code(CodeGenerationParams(prompt="add two numbers", language="python"))
    await telemetry.flush()

    assert result.success
    assert result.value == "def add(a, b):\n    return a + b"
    path, body = recorder.requests[0]
    assert path == "/v1/code/generate"
    assert body["modelId"] == "standard"
    assert body["language"] == "python"
    (feature,) = _feature_events(sink)
    assert feature.properties == {"feature": "code_generation", "modelId": "standard", "success": True}
    assert "duration" in feature.measurements
    assert sink.events_by_type(TelemetryEventType.CODE_GENERATED)


@pytest.mark.asyncio
async def test_failed_operation_returns_agent_error(telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink) -> None:
    recorder = _Recorder({"/v1/code/explain": httpx.Response(500, json={"detail": "down"})})
    agent = _make_agent(recorder, telemetry)

    result = await agent.explain_code(CodeExplanationParams(code="x = 1", language="python"))
    await telemetry.flush()

    assert not result.success
    assert result.error is not None
    assert result.error.code == "API_ERROR"
    assert result.error.status == 500
    assert str(result.error).startswith("Failed to explain code:")
    (feature,) = _feature_events(sink)
    assert feature.properties["success"] is False
    assert not sink.events_by_type(TelemetryEventType.CODE_EXPLAINED)


@pytest.mark.asyncio
async def test_missing_field_in_payload_is_an_error(telemetry: TelemetryBatcher) -> None:
    agent = _make_agent(_Recorder({"/v1/code/commit-message": {"unexpected": "shape"}}), telemetry)

    result = await agent.generate_commit_message(CommitMessageParams(diff="+ line"))

    assert result.error is not None
    assert result.error.code == "INVALID_RESPONSE"


@pytest.mark.asyncio
async def test_commit_and_logging_operations_extract_expected_fields(telemetry: TelemetryBatcher) -> None:
    recorder = _Recorder(
        {
            "/v1/code/commit-message": {"message": "feat: add parser"},
            "/v1/code/add-logging": {"code": "logger.info('x')"},
        }
    )
    agent = _make_agent(recorder, telemetry)

    commit = await agent.generate_commit_message(CommitMessageParams(diff="+ parser", scope="core"))
    logged = await agent.add_logging(LogGenerationParams(code="x()", language="python", log_library="logging"))

    assert commit.value == "feat: add parser"
    assert logged.value == "logger.info('x')"
    assert recorder.requests[0][1] == {"diff": "+ parser", "conventional": True, "modelId": "standard", "scope": "core"}
    assert recorder.requests[1][1]["logLibrary"] == "logging"


@pytest.mark.asyncio
async def test_chat_builds_alternating_history(telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink) -> None:
    recorder = _Recorder({"/v1/chat/completions": {"message": {"role": "assistant", "content": "Sure."}}})
    agent = _make_agent(recorder, telemetry)

    result = await agent.chat("And now?", ["Hi", "Hello!"])
    await telemetry.flush()

    assert result.value == "Sure."
    _, body = recorder.requests[0]
    assert body["model"] == "standard"
    assert body["messages"] == [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "Hi"},
        {"role": "assistant", "content": "Hello!"},
        {"role": "user", "content": "And now?"},
    ]
    assert sink.events_by_type(TelemetryEventType.CHAT_MESSAGE_SENT)
    assert sink.events_by_type(TelemetryEventType.CHAT_MESSAGE_RECEIVED)


def test_build_chat_messages_without_history() -> None:
    messages = build_chat_messages("hello")

    assert [message.role for message in messages] == ["system", "user"]


@pytest.mark.asyncio
async def test_set_model_updates_config_and_emits_model_changed(
    telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink
) -> None:
    config = ConfigService(Settings())
    recorder = _Recorder({"/v1/code/generate": {"code": "ok"}})
    agent = _make_agent(recorder, telemetry, config)

    await agent.set_model(AIModelType.EXPERT)
    await agent.set_model("expert")
    await agent.generate_code(CodeGenerationParams(prompt="x"))
    await telemetry.flush()

    assert agent.model == "expert"
    assert config.settings.model == "expert"
    (changed,) = sink.events_by_type(TelemetryEventType.MODEL_CHANGED)
    assert changed.properties == {"previousModel": "standard", "newModel": "expert"}
    assert recorder.requests[0][1]["modelId"] == "expert"


@pytest.mark.asyncio
async def test_set_model_accepts_only_known_tiers(telemetry: TelemetryBatcher) -> None:
    agent = _make_agent(_Recorder({}), telemetry)

    with pytest.raises(ValueError):
        await agent.set_model("  ")
    with pytest.raises(ValueError):
        await agent.set_model("gpt-9")

    await agent.set_model(" Advanced ")
    assert agent.model == "advanced"


@pytest.mark.asyncio
async def test_list_models_forwards_capability(telemetry: TelemetryBatcher) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "value": {"models": [{"id": "expert", "name": "Expert"}]}})

    agent = _make_agent(handler, telemetry)

    result = await agent.list_models(AICapability.CHAT)

    assert seen[0].url.params["capability"] == "chat"
    assert [model.id for model in result.value or []] == ["expert"]


@pytest.mark.asyncio
async def test_code_completion_without_orchestrator_returns_none(telemetry: TelemetryBatcher) -> None:
    agent = _make_agent(_Recorder({}), telemetry)

    assert await agent.get_code_completion(object()) is None  # type: ignore[arg-type]
