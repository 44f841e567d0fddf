"""Settings dataclasses, persistence helpers, and change notifications."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "AdvancedSettings",
    "CodeCompletionSettings",
    "CodeGenerationSettings",
    "ConfigService",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "TelemetrySettings",
    "apply_overrides",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".m31-agents"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "M31_API_KEY": "api_key",
    "M31_BASE_URL": "base_url",
    "M31_MODEL": "model",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "M31_AUTO_COMPLETE": "auto_complete",
    "M31_DEBUG_LOGGING": "debug_logging",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_API_KEY_FIELD = "api_key_ciphertext"


def _default_languages() -> dict[str, bool]:
    names = (
        "javascript",
        "typescript",
        "python",
        "java",
        "csharp",
        "cpp",
        "go",
        "ruby",
        "php",
        "html",
        "css",
        "markdown",
    )
    return {name: True for name in names}


@dataclass(slots=True)
class AdvancedSettings:
    """Transport and cache tuning."""

    log_level: str = "info"
    request_timeout: float = 30.0
    retries: int = 3
    use_cache: bool = True
    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 100
    cache_evict_batch: int = 20
    cache_key_policy: str = "exact"


@dataclass(slots=True)
class CodeGenerationSettings:
    include_comments: bool = True
    max_tokens: int = 2048
    temperature: float = 0.7


@dataclass(slots=True)
class CodeCompletionSettings:
    """Inline completion behaviour."""

    enabled: bool = True
    lines_before: int = 10
    lines_after: int = 5
    stop_sequences: list[str] = field(default_factory=lambda: ["\n\n", "```"])
    languages: dict[str, bool] = field(default_factory=_default_languages)

    def language_enabled(self, language_id: str) -> bool:
        return bool(self.languages.get((language_id or "").lower(), True))


@dataclass(slots=True)
class TelemetrySettings:
    """Telemetry opt-in and batching thresholds."""

    enabled: bool = True
    batch_size: int = 20
    flush_interval_seconds: float = 60.0
    sink: str = "http"
    storage_dir: str | None = None


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = "https://api.m31-agents.io/v1"
    api_key: str = ""
    model: str = "standard"
    auto_complete: bool = True
    use_chat: bool = True
    debug_logging: bool = False
    advanced: AdvancedSettings = field(default_factory=AdvancedSettings)
    code_generation: CodeGenerationSettings = field(default_factory=CodeGenerationSettings)
    code_completion: CodeCompletionSettings = field(default_factory=CodeCompletionSettings)
    telemetry: TelemetrySettings = field(default_factory=TelemetrySettings)


_SECTION_TYPES: Mapping[str, type] = {
    "advanced": AdvancedSettings,
    "code_generation": CodeGenerationSettings,
    "code_completion": CodeCompletionSettings,
    "telemetry": TelemetrySettings,
}


class SecretVault:
    """Encrypts the API key at rest with a Fernet key stored beside the settings file."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.name}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.name or not payload:
            raise ValueError(f"Unknown secret token prefix {prefix!r}")
        try:
            return self._get_fernet().decrypt(payload.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            api_key = self._decrypt_api_key(payload.pop(_API_KEY_FIELD, None), payload.pop("api_key", None))
            data = _filter_fields(payload)
            for name, section_type in _SECTION_TYPES.items():
                if name in data:
                    data[name] = _build_section(section_type, data[name])
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if api_key:
                settings = replace(settings, api_key=api_key)

        if overrides:
            settings = apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        data = asdict(settings)
        api_key = data.pop("api_key", "") or ""
        if api_key:
            data[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        data["version"] = _SETTINGS_VERSION
        body = json.dumps(data, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _decrypt_api_key(self, ciphertext: str | None, legacy_plaintext: str | None) -> str:
        if ciphertext:
            try:
                return self._vault.decrypt(ciphertext)
            except ValueError as exc:
                LOGGER.warning("Unable to decrypt API key: %s", exc)
                return ""
        if legacy_plaintext:
            LOGGER.info("Detected plaintext API key; it will be encrypted on next save.")
            return str(legacy_plaintext)
        return ""

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        timeout = os.environ.get("M31_REQUEST_TIMEOUT")
        if timeout is not None:
            try:
                overrides["advanced"] = replace(settings.advanced, request_timeout=float(timeout))
            except ValueError:
                LOGGER.warning("Environment override M31_REQUEST_TIMEOUT=%s is not a valid float", timeout)
        telemetry = os.environ.get("M31_TELEMETRY")
        if telemetry is not None:
            enabled = telemetry.strip().lower() in _TRUE_VALUES
            overrides["telemetry"] = replace(settings.telemetry, enabled=enabled)
        if overrides:
            settings = apply_overrides(settings, overrides, source="environment")
        return settings


def apply_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str = "runtime") -> Settings:
    """Return a copy of ``settings`` with known top-level or dotted-section keys replaced."""

    allowed = {item.name for item in fields(Settings)}
    top_level: Dict[str, Any] = {}
    sections: Dict[str, Dict[str, Any]] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        section, _, attribute = key.partition(".")
        if attribute and section in _SECTION_TYPES:
            sections.setdefault(section, {})[attribute] = value
        elif key in allowed:
            top_level[key] = value
    for section, values in sections.items():
        current = top_level.get(section, getattr(settings, section))
        known = {item.name for item in fields(current)}
        filtered = {name: value for name, value in values.items() if name in known}
        top_level[section] = replace(current, **filtered)
    if top_level:
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(top_level))
        settings = replace(settings, **top_level)
    return settings


SettingsListener = Callable[[Settings, Settings], None]


class ConfigService:
    """Holds the live settings and notifies listeners keyed by section name."""

    def __init__(self, settings: Settings | None = None, *, store: SettingsStore | None = None) -> None:
        self._settings = settings or Settings()
        self._store = store
        self._listeners: Dict[str, list[SettingsListener]] = {}

    @property
    def settings(self) -> Settings:
        return self._settings

    def subscribe(self, section: str, listener: SettingsListener) -> Callable[[], None]:
        """Register ``listener(previous, current)`` for changes to ``section``."""

        bucket = self._listeners.setdefault(section, [])
        bucket.append(listener)

        def _unsubscribe() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return _unsubscribe

    def update(self, overrides: Mapping[str, Any], *, persist: bool = True) -> Settings:
        """Apply ``overrides`` and notify listeners of every section that changed."""

        previous = self._settings
        current = apply_overrides(previous, overrides)
        if current == previous:
            return current
        self._settings = current
        if persist and self._store is not None:
            try:
                self._store.save(current)
            except OSError as exc:
                LOGGER.warning("Failed to persist settings to %s: %s", self._store.path, exc)
        for item in fields(Settings):
            if getattr(previous, item.name) != getattr(current, item.name):
                self._notify(item.name, previous, current)
        return current

    def _notify(self, section: str, previous: Settings, current: Settings) -> None:
        for listener in list(self._listeners.get(section, ())):
            try:
                listener(previous, current)
            except Exception:
                LOGGER.exception("Settings listener for %s failed", section)


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - {"api_key"}
    return {key: value for key, value in payload.items() if key in allowed}


def _build_section(section_type: type, payload: Any) -> Any:
    if not isinstance(payload, Mapping):
        return section_type()
    known = {item.name for item in fields(section_type)}
    try:
        return section_type(**{key: value for key, value in payload.items() if key in known})
    except TypeError:
        return section_type()
