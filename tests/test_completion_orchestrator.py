"""Tests for the inline completion orchestrator."""

from __future__ import annotations

import asyncio

import pytest

from m31_agents.completion.orchestrator import CompletionOrchestrator, CompletionTrigger
from m31_agents.completion.result_cache import ResultCache, TrimmedTailKeyPolicy
from m31_agents.services.editor import DocumentSnapshot
from m31_agents.services.settings import ConfigService, Settings
from m31_agents.services.telemetry import InMemoryTelemetrySink, TelemetryBatcher, TelemetryEventType

from tests.helpers import FakeClock, FakeCompletionClient, failing_responder


def _trigger(text: str = "console.", *, language: str = "javascript", column: int | None = None, context: str | None = None) -> CompletionTrigger:
    lines = text.split("\n")
    line = len(lines) - 1
    snapshot = DocumentSnapshot.from_text(text, language_id=language, uri="file:///app.js")
    return CompletionTrigger(
        document=snapshot,
        line=line,
        column=len(lines[line]) if column is None else column,
        context=context,
    )


def _make_orchestrator(
    client: FakeCompletionClient,
    telemetry: TelemetryBatcher,
    config: ConfigService | None = None,
    *,
    clock: FakeClock | None = None,
    **kwargs: object,
) -> CompletionOrchestrator:
    cache = ResultCache(clock=clock or FakeClock())
    return CompletionOrchestrator(client, cache, telemetry, config or ConfigService(Settings()), **kwargs)  # type: ignore[arg-type]


def _completed(sink: InMemoryTelemetrySink) -> list:
    return sink.events_by_type(TelemetryEventType.CODE_COMPLETED)


@pytest.mark.asyncio
async def test_blank_prefix_makes_no_call_and_no_event(telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink) -> None:
    client = FakeCompletionClient()
    orchestrator = _make_orchestrator(client, telemetry)

    assert await orchestrator.request_completion(_trigger("    ")) is None
    assert await orchestrator.request_completion(_trigger("")) is None
    assert await orchestrator.request_completion(_trigger("foo()", column=0)) is None
    await telemetry.flush()

    assert client.calls == 0
    assert len(sink) == 0


@pytest.mark.asyncio
async def test_disabled_configuration_is_silent(telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink) -> None:
    client = FakeCompletionClient()
    config = ConfigService(Settings())
    orchestrator = _make_orchestrator(client, telemetry, config)

    config.update({"auto_complete": False}, persist=False)
    assert await orchestrator.request_completion(_trigger()) is None

    config.update({"auto_complete": True, "code_completion.enabled": False}, persist=False)
    assert await orchestrator.request_completion(_trigger()) is None

    languages = dict(config.settings.code_completion.languages, javascript=False)
    config.update({"code_completion.enabled": True, "code_completion.languages": languages}, persist=False)
    assert await orchestrator.request_completion(_trigger()) is None
    assert await orchestrator.request_completion(_trigger(language="python")) == "log('hello');"

    await telemetry.flush()
    assert client.calls == 1
    assert len(_completed(sink)) == 1


@pytest.mark.asyncio
async def test_miss_then_hit_issues_single_call(telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink) -> None:
    client = FakeCompletionClient("log('hello');", tokens=5)
    orchestrator = _make_orchestrator(client, telemetry)

    first = await orchestrator.request_completion(_trigger())
    second = await orchestrator.request_completion(_trigger())
    await telemetry.flush()

    assert first == second == "log('hello');"
    assert client.calls == 1
    miss, hit = _completed(sink)
    assert miss.properties["fromCache"] is False
    assert miss.properties["success"] is True
    assert miss.measurements["tokensUsed"] == 5
    assert hit.properties["fromCache"] is True
    assert hit.measurements["networkDuration"] == 0.0
    assert hit.properties["language"] == "javascript"
    assert hit.properties["promptLength"] == len("console.")


@pytest.mark.asyncio
async def test_console_dot_scenario_returns_cached_suggestion(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient("log(value);")
    clock = FakeClock()
    orchestrator = _make_orchestrator(client, telemetry, clock=clock)
    assert orchestrator.cache.ttl_seconds == 60.0
    await orchestrator.request_completion(_trigger("console."))

    clock.advance(30)
    result = await orchestrator.request_completion(_trigger("console."))

    assert result == "log(value);"
    assert client.calls == 1
    assert client.requests[0].model_id == "standard"


@pytest.mark.asyncio
async def test_expired_entry_triggers_new_call(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient()
    clock = FakeClock()
    orchestrator = _make_orchestrator(client, telemetry, clock=clock)
    await orchestrator.request_completion(_trigger())

    clock.advance(60)
    await orchestrator.request_completion(_trigger())

    assert client.calls == 2


@pytest.mark.asyncio
async def test_concurrent_identical_misses_share_one_call(
    telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink
) -> None:
    client = FakeCompletionClient("log('x');")
    client.gate = asyncio.Event()
    orchestrator = _make_orchestrator(client, telemetry)

    first = asyncio.create_task(orchestrator.request_completion(_trigger()))
    second = asyncio.create_task(orchestrator.request_completion(_trigger()))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert orchestrator.in_flight_count == 1
    client.gate.set()

    assert await first == "log('x');"
    assert await second == "log('x');"
    assert client.calls == 1
    assert orchestrator.in_flight_count == 0

    await telemetry.flush()
    events = _completed(sink)
    assert len(events) == 2
    leader = [event for event in events if not event.properties["fromCache"]]
    follower = [event for event in events if event.properties.get("joinedInFlight")]
    assert len(leader) == 1
    assert len(follower) == 1


@pytest.mark.asyncio
async def test_different_keys_run_independently(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient()
    client.gate = asyncio.Event()
    orchestrator = _make_orchestrator(client, telemetry)

    tasks = [
        asyncio.create_task(orchestrator.request_completion(_trigger("console."))),
        asyncio.create_task(orchestrator.request_completion(_trigger("window."))),
    ]
    await asyncio.sleep(0)
    client.gate.set()
    await asyncio.gather(*tasks)

    assert client.calls == 2


@pytest.mark.asyncio
async def test_failure_returns_none_and_records_event(
    telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink
) -> None:
    client = FakeCompletionClient(responder=failing_responder("API_ERROR", 500))
    orchestrator = _make_orchestrator(client, telemetry)

    result = await orchestrator.request_completion(_trigger())
    await telemetry.flush()

    assert result is None
    assert len(orchestrator.cache) == 0
    (event,) = _completed(sink)
    assert event.properties["success"] is False
    assert event.properties["errorCode"] == "API_ERROR"
    assert event.properties["statusCode"] == 500


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained(telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink) -> None:
    def _explode(_request: object) -> object:
        raise RuntimeError("parser crashed")

    client = FakeCompletionClient(responder=_explode)  # type: ignore[arg-type]
    orchestrator = _make_orchestrator(client, telemetry)

    assert await orchestrator.request_completion(_trigger()) is None
    await telemetry.flush()

    (event,) = _completed(sink)
    assert event.properties["errorCode"] == "UNEXPECTED_ERROR"
    assert orchestrator.in_flight_count == 0


@pytest.mark.asyncio
async def test_cancelled_caller_still_caches_and_reports(
    telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink
) -> None:
    client = FakeCompletionClient("late();")
    client.gate = asyncio.Event()
    orchestrator = _make_orchestrator(client, telemetry)

    caller = asyncio.create_task(orchestrator.request_completion(_trigger()))
    await asyncio.sleep(0)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    client.gate.set()
    await orchestrator.aclose()
    await telemetry.flush()

    assert len(orchestrator.cache) == 1
    assert len(_completed(sink)) == 1


@pytest.mark.asyncio
async def test_model_change_applies_to_later_requests_only(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient()
    client.gate = asyncio.Event()
    config = ConfigService(Settings())
    orchestrator = _make_orchestrator(client, telemetry, config)

    pending = asyncio.create_task(orchestrator.request_completion(_trigger("console.")))
    await asyncio.sleep(0)
    config.update({"model": "expert"}, persist=False)
    client.gate.set()
    await pending
    await orchestrator.request_completion(_trigger("window."))

    assert [request.model_id for request in client.requests] == ["standard", "expert"]


@pytest.mark.asyncio
async def test_request_carries_configured_generation_parameters(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient()
    orchestrator = _make_orchestrator(client, telemetry)

    await orchestrator.request_completion(_trigger("const a = 1;\nconsole.", context="// app.js"))

    request = client.requests[0]
    assert request.prompt == "// app.js\n\nconst a = 1;\nconsole."
    assert request.max_tokens == 2048
    assert request.temperature == 0.7
    assert request.stop_sequences == ("\n\n", "```")


@pytest.mark.asyncio
async def test_key_policy_follows_configuration(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient()
    config = ConfigService(Settings())
    orchestrator = _make_orchestrator(client, telemetry, config)
    await orchestrator.request_completion(_trigger("console."))
    assert len(orchestrator.cache) == 1

    config.update({"advanced.cache_key_policy": "tail"}, persist=False)

    assert isinstance(orchestrator.key_policy, TrimmedTailKeyPolicy)
    assert len(orchestrator.cache) == 0
    await orchestrator.request_completion(_trigger("    console."))
    await orchestrator.request_completion(_trigger("console."))
    assert client.calls == 2


@pytest.mark.asyncio
async def test_cache_can_be_disabled(telemetry: TelemetryBatcher) -> None:
    client = FakeCompletionClient()
    config = ConfigService(Settings())
    config.update({"advanced.use_cache": False}, persist=False)
    orchestrator = _make_orchestrator(client, telemetry, config)

    await orchestrator.request_completion(_trigger())
    await orchestrator.request_completion(_trigger())

    assert client.calls == 2
    assert len(orchestrator.cache) == 0


@pytest.mark.asyncio
async def test_joined_caller_of_failed_call_gets_none_and_one_network_failure(
    telemetry: TelemetryBatcher, sink: InMemoryTelemetrySink
) -> None:
    client = FakeCompletionClient(responder=failing_responder("API_ERROR", 503))
    client.gate = asyncio.Event()
    orchestrator = _make_orchestrator(client, telemetry)

    first = asyncio.create_task(orchestrator.request_completion(_trigger()))
    second = asyncio.create_task(orchestrator.request_completion(_trigger()))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert orchestrator.in_flight_count == 1
    client.gate.set()

    assert await first is None
    assert await second is None
    assert client.calls == 1
    assert orchestrator.in_flight_count == 0
    assert len(orchestrator.cache) == 0

    await telemetry.flush()
    events = _completed(sink)
    assert all(event.properties["success"] is False for event in events)
    network = [event for event in events if not event.properties.get("joinedInFlight")]
    joined = [event for event in events if event.properties.get("joinedInFlight")]
    assert len(network) == 1
    assert len(joined) == 1
    assert joined[0].properties["errorCode"] == "API_ERROR"
    assert joined[0].properties["statusCode"] == 503
    assert joined[0].measurements["networkDuration"] == 0.0
