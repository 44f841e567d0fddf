"""Editor commands built on the one-shot agent operations."""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict

from .ai.agent import AgentService
from .ai.ai_types import (
    AgentError,
    CodeExplanationParams,
    CodeGenerationParams,
    CommitMessageParams,
    LogGenerationParams,
    Result,
)
from .services.editor import EditorAdapter
from .services.telemetry import TelemetryBatcher

__all__ = ["COMMANDS", "CommandService"]

LOGGER = logging.getLogger(__name__)

COMMANDS = (
    "m31-agents.generateCode",
    "m31-agents.explainCode",
    "m31-agents.generateCommit",
    "m31-agents.addLogs",
)


class CommandService:
    """Turns agent results into editor edits and notifications.

    Each command returns ``True`` when it completed, records a
    ``COMMAND_EXECUTED`` event, and reports failures through
    :meth:`EditorAdapter.show_error`.
    """

    def __init__(self, agent: AgentService, editor: EditorAdapter, telemetry: TelemetryBatcher) -> None:
        self._agent = agent
        self._editor = editor
        self._telemetry = telemetry
        self._handlers: Dict[str, Callable[..., Awaitable[bool]]] = {
            "m31-agents.generateCode": self.generate_code,
            "m31-agents.explainCode": self.explain_selection,
            "m31-agents.generateCommit": self.generate_commit_message,
            "m31-agents.addLogs": self.add_logging,
        }

    async def execute(self, command: str, *args: str) -> bool:
        handler = self._handlers.get(command)
        if handler is None:
            raise KeyError(f"Unknown command: {command}")
        return await handler(*args)

    async def generate_code(self, prompt: str) -> bool:
        if not prompt.strip():
            return self._finish("m31-agents.generateCode", time.perf_counter(), "No prompt provided")
        snapshot = self._editor.snapshot()
        return await self._run(
            "m31-agents.generateCode",
            self._agent.generate_code(CodeGenerationParams(prompt=prompt, language=snapshot.language_id)),
            on_success=self._editor.replace_selection,
            failure_prefix="Code generation failed",
        )

    async def explain_selection(self) -> bool:
        snapshot = self._editor.snapshot()
        code = snapshot.selected_text()
        if not code.strip():
            return self._finish("m31-agents.explainCode", time.perf_counter(), "No code selected")
        return await self._run(
            "m31-agents.explainCode",
            self._agent.explain_code(CodeExplanationParams(code=code, language=snapshot.language_id)),
            on_success=self._editor.show_info,
            failure_prefix="Code explanation failed",
        )

    async def generate_commit_message(self, diff: str) -> bool:
        if not diff.strip():
            return self._finish("m31-agents.generateCommit", time.perf_counter(), "No changes to describe")
        return await self._run(
            "m31-agents.generateCommit",
            self._agent.generate_commit_message(CommitMessageParams(diff=diff)),
            on_success=lambda message: self._editor.show_info(f"Commit message: {message}"),
            failure_prefix="Commit message generation failed",
        )

    async def add_logging(self) -> bool:
        snapshot = self._editor.snapshot()
        code = snapshot.selected_text()
        if not code.strip():
            return self._finish("m31-agents.addLogs", time.perf_counter(), "No code selected")
        return await self._run(
            "m31-agents.addLogs",
            self._agent.add_logging(LogGenerationParams(code=code, language=snapshot.language_id)),
            on_success=self._editor.replace_selection,
            failure_prefix="Adding logs failed",
        )

    async def _run(
        self,
        command: str,
        operation: Awaitable[Result[str, AgentError]],
        *,
        on_success: Callable[[str], None],
        failure_prefix: str,
    ) -> bool:
        started = time.perf_counter()
        LOGGER.info("Executing command %s", command)
        result = await operation
        if not result.success or result.value is None:
            return self._finish(command, started, f"{failure_prefix}: {result.error}")
        on_success(result.value)
        return self._finish(command, started, None)

    def _finish(self, command: str, started: float, error_message: str | None) -> bool:
        duration_ms = (time.perf_counter() - started) * 1000.0
        if error_message:
            LOGGER.warning("Command %s failed: %s", command, error_message)
            self._editor.show_error(error_message)
        self._telemetry.track_command(command, duration_ms, error_message is None, error_message)
        return error_message is None
