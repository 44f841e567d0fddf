"""Service layer helpers (settings, telemetry, sessions, editor contracts)."""

from .editor import DocumentSnapshot, EditorAdapter
from .settings import ConfigService, Settings, SettingsStore
from .telemetry import TelemetryBatcher, TelemetryEvent, TelemetryEventType

__all__ = [
    "ConfigService",
    "DocumentSnapshot",
    "EditorAdapter",
    "Settings",
    "SettingsStore",
    "TelemetryBatcher",
    "TelemetryEvent",
    "TelemetryEventType",
]
