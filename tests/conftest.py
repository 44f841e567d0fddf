"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from m31_agents.services.settings import ConfigService, Settings
from m31_agents.services.telemetry import InMemoryTelemetrySink, TelemetryBatcher


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    for name in (
        "M31_API_KEY",
        "M31_BASE_URL",
        "M31_MODEL",
        "M31_AUTO_COMPLETE",
        "M31_DEBUG_LOGGING",
        "M31_REQUEST_TIMEOUT",
        "M31_TELEMETRY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("M31_TELEMETRY_DIR", str(tmp_path_factory.mktemp("telemetry")))
    monkeypatch.setenv("M31_LOG_DIR", str(tmp_path_factory.mktemp("logs")))


@pytest.fixture
def config() -> ConfigService:
    return ConfigService(Settings())


@pytest.fixture
def sink() -> InMemoryTelemetrySink:
    return InMemoryTelemetrySink()


@pytest.fixture
def telemetry(sink: InMemoryTelemetrySink) -> TelemetryBatcher:
    return TelemetryBatcher(sink, session_id="session-test", batch_size=1_000)
