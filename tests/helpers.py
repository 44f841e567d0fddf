"""Shared test helpers and stub classes."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from m31_agents.ai.ai_types import CompletionRequest, CompletionResponse, Result
from m31_agents.ai.client import ApiError
from m31_agents.services.editor import DocumentSnapshot


class FakeClock:
    """Manually advanced clock for TTL and timestamp tests."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletionClient:
    """Records completion requests and answers them from ``responder``.

    When ``gate`` is set, every call waits on it before answering so tests can
    hold requests in flight.
    """

    def __init__(
        self,
        text: str = "log('hello');",
        *,
        tokens: int = 7,
        responder: Callable[[CompletionRequest], Result[CompletionResponse, ApiError]] | None = None,
    ) -> None:
        self.requests: list[CompletionRequest] = []
        self.gate: asyncio.Event | None = None
        self._responder = responder or (lambda _request: Result.ok(CompletionResponse(text=text, tokens=tokens)))

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def get_completion(self, request: CompletionRequest) -> Result[CompletionResponse, ApiError]:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        return self._responder(request)


def failing_responder(code: str = "NETWORK_ERROR", status: int = 0) -> Callable[[CompletionRequest], Any]:
    def _respond(_request: CompletionRequest) -> Result[CompletionResponse, ApiError]:
        return Result.fail(ApiError(status=status, code=code, message="boom"))

    return _respond


class RecordingEditor:
    """Editor stub capturing replacements and notifications."""

    def __init__(self, snapshot: DocumentSnapshot) -> None:
        self._snapshot = snapshot
        self.replacements: list[str] = []
        self.infos: list[str] = []
        self.errors: list[str] = []

    def snapshot(self) -> DocumentSnapshot:
        return self._snapshot

    def replace_selection(self, text: str) -> None:
        self.replacements.append(text)

    def show_info(self, message: str) -> None:
        self.infos.append(message)

    def show_error(self, message: str) -> None:
        self.errors.append(message)
