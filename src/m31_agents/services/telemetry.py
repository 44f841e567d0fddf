"""Batched telemetry pipeline.

Events are enriched with session/process properties, buffered in memory,
and flushed to a :class:`TelemetrySink` either when the buffer reaches the
batch size or when the periodic timer fires. Delivery failures put the
events back into the buffer; size-triggered flushes then wait for the timer
or an explicit flush to succeed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import platform
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Protocol, Sequence

if TYPE_CHECKING:
    from ..ai.client import ApiClient

__all__ = [
    "EventEnricher",
    "HttpTelemetrySink",
    "InMemoryTelemetrySink",
    "JsonlTelemetrySink",
    "TelemetryBatcher",
    "TelemetryDeliveryError",
    "TelemetryEvent",
    "TelemetryEventType",
    "TelemetrySink",
    "platform_enricher",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_TELEMETRY_DIR = Path.home() / ".m31-agents" / "telemetry"
EVENTS_BATCH_SIZE = 20
FLUSH_INTERVAL_SECONDS = 60.0


class TelemetryEventType(str, Enum):
    EXTENSION_ACTIVATED = "extension_activated"
    EXTENSION_DEACTIVATED = "extension_deactivated"
    COMMAND_EXECUTED = "command_executed"
    FEATURE_USED = "feature_used"
    CODE_GENERATED = "code_generated"
    CODE_EXPLAINED = "code_explained"
    COMMIT_GENERATED = "commit_generated"
    LOGS_ADDED = "logs_added"
    CODE_COMPLETED = "code_completed"
    CHAT_MESSAGE_SENT = "chat_message_sent"
    CHAT_MESSAGE_RECEIVED = "chat_message_received"
    ERROR_OCCURRED = "error_occurred"
    MODEL_CHANGED = "model_changed"
    SETTINGS_CHANGED = "settings_changed"
    API_REQUEST = "api_request"
    API_RESPONSE = "api_response"
    SUGGESTION_ACCEPTED = "suggestion_accepted"
    SUGGESTION_REJECTED = "suggestion_rejected"
    FEEDBACK_SUBMITTED = "feedback_submitted"
    PERFORMANCE_METRIC = "performance_metric"


@dataclass(slots=True)
class TelemetryEvent:
    """A structured telemetry event.

    Attributes:
        type: Event category.
        timestamp: Epoch seconds; filled in by the batcher when omitted.
        session_id: Process-wide session identifier, injected on ``track``.
        properties: Free-form dimensions.
        measurements: Numeric measurements (durations, sizes, counts).
    """

    type: TelemetryEventType
    timestamp: float | None = None
    session_id: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    measurements: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire schema."""
        return {
            "type": self.type.value,
            "timestamp": int(round((self.timestamp or 0.0) * 1000)),
            "sessionId": self.session_id,
            "properties": _sanitize(self.properties),
            "measurements": dict(self.measurements),
        }


class TelemetrySink(Protocol):
    """Destination for flushed batches. Raises on delivery failure."""

    async def deliver(self, events: Sequence[TelemetryEvent]) -> None:
        ...


class TelemetryDeliveryError(RuntimeError):
    """Raised by sinks when a batch could not be delivered."""


EventEnricher = Callable[[TelemetryEvent], TelemetryEvent]


def platform_enricher(client_version: str) -> EventEnricher:
    """Return an enricher adding client version and host details to every event."""

    host = {
        "clientVersion": client_version,
        "os": f"{platform.system().lower()}-{platform.release()}",
        "pythonVersion": platform.python_version(),
    }

    def _enrich(event: TelemetryEvent) -> TelemetryEvent:
        properties = dict(event.properties)
        for key, value in host.items():
            properties.setdefault(key, value)
        return replace(event, properties=properties)

    return _enrich


class InMemoryTelemetrySink:
    """Ring-buffer sink for local inspection and tests."""

    def __init__(self, capacity: int = 500) -> None:
        self._capacity = max(10, capacity)
        self._events: deque[TelemetryEvent] = deque(maxlen=self._capacity)
        self.batches = 0

    async def deliver(self, events: Sequence[TelemetryEvent]) -> None:
        self._events.extend(events)
        self.batches += 1

    def events(self) -> list[TelemetryEvent]:
        return list(self._events)

    def events_by_type(self, event_type: TelemetryEventType) -> list[TelemetryEvent]:
        return [event for event in self._events if event.type is event_type]

    def __len__(self) -> int:
        return len(self._events)


class JsonlTelemetrySink:
    """Appends each batch to ``telemetry.jsonl`` under a storage directory."""

    def __init__(self, storage_dir: Path | str | None = None) -> None:
        self._storage_dir = storage_dir

    @property
    def path(self) -> Path:
        return _resolve_storage_dir(self._storage_dir) / "telemetry.jsonl"

    async def deliver(self, events: Sequence[TelemetryEvent]) -> None:
        lines = [json.dumps(event.to_dict(), default=_json_default, ensure_ascii=False) for event in events]
        try:
            await asyncio.to_thread(self._append, lines)
        except OSError as exc:
            raise TelemetryDeliveryError(f"Unable to write telemetry to {self.path}: {exc}") from exc

    def _append(self, lines: Iterable[str]) -> None:
        target = self.path
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as handle:
            for line in lines:
                handle.write(line)
                handle.write("\n")


class HttpTelemetrySink:
    """Posts batches to the telemetry endpoint through the API client."""

    def __init__(self, client: "ApiClient", *, endpoint: str = "/telemetry/events") -> None:
        self._client = client
        self._endpoint = endpoint

    async def deliver(self, events: Sequence[TelemetryEvent]) -> None:
        payload = {"events": [event.to_dict() for event in events]}
        result = await self._client.post(self._endpoint, payload)
        if not result.success:
            error = result.error
            raise TelemetryDeliveryError(
                f"Telemetry endpoint rejected batch: {getattr(error, 'code', '?')} {getattr(error, 'message', '')}"
            )


class TelemetryBatcher:
    """Buffers telemetry events and flushes them in batches.

    ``track`` is synchronous and never awaits, so a buffer append cannot be
    interleaved with another coroutine. Flushes are serialized so batches
    reach the sink in enqueue order.
    """

    def __init__(
        self,
        sink: TelemetrySink,
        *,
        session_id: str | None = None,
        enabled: bool = True,
        batch_size: int = EVENTS_BATCH_SIZE,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
        enrichers: Sequence[EventEnricher] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sink = sink
        self._session_id = session_id or uuid.uuid4().hex
        self._enabled = enabled
        self._batch_size = max(1, int(batch_size))
        self._flush_interval = max(0.01, float(flush_interval))
        self._enrichers: list[EventEnricher] = [self._inject_session, *enrichers]
        self._clock = clock
        self._pending: list[TelemetryEvent] = []
        self._last_timestamp = 0.0
        self._flush_lock = asyncio.Lock()
        self._scheduled: asyncio.Task[int] | None = None
        self._timer_task: asyncio.Task[None] | None = None
        self._closing = False
        # Set after a failed delivery; size-triggered flushes wait for the timer.
        self._backing_off = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def pending_events(self) -> list[TelemetryEvent]:
        """Return a copy of the events waiting to be flushed."""

        return list(self._pending)

    def enable(self) -> None:
        self._enabled = True
        LOGGER.info("Telemetry is now enabled")

    def disable(self) -> None:
        self._enabled = False
        LOGGER.info("Telemetry is now disabled")

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------
    def track(self, event: TelemetryEvent) -> None:
        """Enqueue ``event``; schedules a flush once the batch size is reached."""

        if not self._enabled:
            return
        try:
            for enricher in self._enrichers:
                event = enricher(event)
        except Exception:
            LOGGER.warning("Telemetry enricher failed; event dropped", exc_info=True)
            return
        event.timestamp = self._next_timestamp(event.timestamp)
        LOGGER.debug("Tracking telemetry event %s", event.type.value)
        self._pending.append(event)
        if len(self._pending) >= self._batch_size:
            self._schedule_flush()

    def track_event(
        self,
        event_type: TelemetryEventType,
        *,
        properties: Mapping[str, Any] | None = None,
        measurements: Mapping[str, float] | None = None,
    ) -> None:
        self.track(
            TelemetryEvent(
                type=event_type,
                properties=dict(properties or {}),
                measurements={key: float(value) for key, value in (measurements or {}).items()},
            )
        )

    def track_exception(self, error: BaseException, component: str, severity: str = "medium") -> None:
        self.track_event(
            TelemetryEventType.ERROR_OCCURRED,
            properties={
                "errorName": type(error).__name__,
                "errorMessage": str(error),
                "componentName": component,
                "severity": severity,
            },
        )

    def track_metric(self, name: str, value: float) -> None:
        self.track_event(TelemetryEventType.PERFORMANCE_METRIC, measurements={name: value})

    def track_command(self, command: str, duration_ms: float, success: bool, error_message: str | None = None) -> None:
        properties: dict[str, Any] = {"command": command, "success": success}
        if error_message:
            properties["errorMessage"] = error_message
        self.track_event(
            TelemetryEventType.COMMAND_EXECUTED,
            properties=properties,
            measurements={"duration": duration_ms},
        )

    def track_api_event(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        duration_ms: float,
        success: bool,
        *,
        request_size: int = 0,
        response_size: int = 0,
    ) -> None:
        self.track_event(
            TelemetryEventType.API_REQUEST,
            properties={"endpoint": endpoint, "method": method, "statusCode": status_code, "success": success},
            measurements={"duration": duration_ms, "requestSize": request_size, "responseSize": response_size},
        )

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------
    async def flush(self) -> int:
        """Deliver pending events. Returns how many events the sink accepted."""

        async with self._flush_lock:
            if not self._enabled or not self._pending:
                return 0
            batch = self._pending
            self._pending = []
            LOGGER.debug("Flushing %s telemetry events", len(batch))
            try:
                await self._sink.deliver(batch)
            except asyncio.CancelledError:
                self._pending = batch + self._pending
                raise
            except Exception as exc:
                self._pending = batch + self._pending
                self._backing_off = True
                LOGGER.warning(
                    "Telemetry flush failed; %s events re-queued: %s", len(batch), exc
                )
                return 0
            self._backing_off = False
            return len(batch)

    def start(self) -> None:
        """Start the periodic flush timer on the running loop."""

        if self._timer_task is not None and not self._timer_task.done():
            return
        self._closing = False
        self._timer_task = asyncio.get_running_loop().create_task(self._flush_periodically())

    async def aclose(self) -> None:
        """Stop the timer, cancel any scheduled flush and attempt one final flush.

        The final flush is the only delivery attempt made after shutdown
        begins; events a cancelled flush was carrying go back to the buffer.
        """

        if self._closing:
            return
        self._closing = True
        for task in (self._timer_task, self._scheduled):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._timer_task = None
        self._scheduled = None
        try:
            await self.flush()
        except Exception:
            LOGGER.warning("Final telemetry flush failed", exc_info=True)

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self.flush()
            except Exception:
                LOGGER.error("Error flushing telemetry events", exc_info=True)

    def _schedule_flush(self) -> None:
        if self._closing or self._backing_off:
            return
        if self._scheduled is not None and not self._scheduled.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("No running event loop; deferring telemetry flush to the next cycle")
            return
        self._scheduled = loop.create_task(self.flush())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _inject_session(self, event: TelemetryEvent) -> TelemetryEvent:
        return replace(event, session_id=self._session_id)

    def _next_timestamp(self, requested: float | None) -> float:
        stamp = self._clock() if requested is None else float(requested)
        stamp = max(stamp, self._last_timestamp)
        self._last_timestamp = stamp
        return stamp


def _sanitize(props: Mapping[str, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in props.items():
        if isinstance(value, Path):
            sanitized[key] = str(value)
        elif isinstance(value, datetime):
            sanitized[key] = value.isoformat()
        elif isinstance(value, Enum):
            sanitized[key] = value.value
        else:
            sanitized[key] = value
    return sanitized


def _json_default(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value)!r} is not JSON serializable")


def _resolve_storage_dir(storage_dir: Path | str | None) -> Path:
    env_override = os.environ.get("M31_TELEMETRY_DIR")
    return Path(storage_dir or env_override or _DEFAULT_TELEMETRY_DIR).expanduser()
