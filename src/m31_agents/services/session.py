"""Tracks active user-initiated operations and reports feature usage."""

from __future__ import annotations

import contextlib
import logging
import time
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict

from ..ai.ai_types import AICapability
from .telemetry import TelemetryBatcher, TelemetryEventType

__all__ = ["ActiveOperation", "OperationHandle", "SessionTracker"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ActiveOperation:
    capability: AICapability
    start_time: float


@dataclass(slots=True)
class OperationHandle:
    """Mutable handle yielded by :meth:`SessionTracker.operation`."""

    operation_id: str
    capability: AICapability
    success: bool = False


class SessionTracker:
    """Owns the process session id and the table of in-progress operations."""

    def __init__(
        self,
        telemetry: TelemetryBatcher,
        *,
        model_provider: Callable[[], str],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._telemetry = telemetry
        self._model_provider = model_provider
        self._clock = clock
        self._active: Dict[str, ActiveOperation] = {}

    @property
    def session_id(self) -> str:
        return self._telemetry.session_id

    @property
    def active_operations(self) -> dict[str, ActiveOperation]:
        return dict(self._active)

    def start(self, capability: AICapability) -> str:
        operation_id = f"{capability.value}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"
        self._active[operation_id] = ActiveOperation(capability=capability, start_time=self._clock())
        return operation_id

    def end(self, operation_id: str, success: bool) -> None:
        """Close ``operation_id`` and emit ``FEATURE_USED``; unknown ids are ignored."""

        operation = self._active.pop(operation_id, None)
        if operation is None:
            LOGGER.debug("Ignoring end of unknown operation %s", operation_id)
            return
        duration_ms = max(0.0, (self._clock() - operation.start_time) * 1000.0)
        self._telemetry.track_event(
            TelemetryEventType.FEATURE_USED,
            properties={
                "feature": operation.capability.value,
                "modelId": self._model_provider(),
                "success": success,
            },
            measurements={"duration": round(duration_ms, 3)},
        )

    @contextlib.asynccontextmanager
    async def operation(self, capability: AICapability) -> AsyncIterator[OperationHandle]:
        """Wrap a one-shot operation; the handle's ``success`` flag is reported on exit."""

        handle = OperationHandle(operation_id=self.start(capability), capability=capability)
        try:
            yield handle
        except BaseException:
            handle.success = False
            raise
        finally:
            self.end(handle.operation_id, handle.success)
