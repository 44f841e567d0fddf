"""Composition root and command-line entry point for M31 Agents."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from dataclasses import asdict, dataclass, fields, is_dataclass
from importlib import metadata
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

import httpx

from .ai.agent import AgentService
from .ai.ai_types import AICapability, CodeGenerationParams
from .ai.client import ApiClient, ClientSettings
from .commands import CommandService
from .completion.orchestrator import CompletionOrchestrator, CompletionTrigger
from .completion.result_cache import ResultCache
from .services.editor import DocumentSnapshot
from .services.session import SessionTracker
from .services.settings import ConfigService, Settings, SettingsStore, TelemetrySettings, redact_secret
from .services.telemetry import (
    HttpTelemetrySink,
    InMemoryTelemetrySink,
    JsonlTelemetrySink,
    TelemetryBatcher,
    TelemetryEventType,
    TelemetrySink,
    platform_enricher,
)
from .utils import logging as logging_utils

__all__ = [
    "AppRuntime",
    "build_runtime",
    "client_version",
    "configure_logging",
    "load_settings",
    "main",
]

_LOGGER = logging.getLogger(__name__)
_DISTRIBUTION = "m31-agents"
_FALLBACK_VERSION = "0.1.0"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_SETTINGS_SECTIONS_REPORTED = ("auto_complete", "use_chat", "code_completion", "code_generation", "advanced")
_LANGUAGE_BY_SUFFIX: Mapping[str, str] = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".h": "cpp",
    ".go": "go",
    ".rb": "ruby",
    ".php": "php",
    ".html": "html",
    ".css": "css",
    ".md": "markdown",
}


def client_version() -> str:
    try:
        return metadata.version(_DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return _FALLBACK_VERSION


@dataclass(slots=True)
class AppRuntime:
    """Every long-lived service, constructed once and shared by reference."""

    config: ConfigService
    client: ApiClient
    telemetry: TelemetryBatcher
    sessions: SessionTracker
    cache: ResultCache
    completions: CompletionOrchestrator
    agent: AgentService

    @property
    def session_id(self) -> str:
        return self.telemetry.session_id

    def commands(self, editor: Any) -> CommandService:
        return CommandService(self.agent, editor, self.telemetry)

    async def start(self) -> None:
        self.telemetry.start()
        self.telemetry.track_event(
            TelemetryEventType.EXTENSION_ACTIVATED,
            properties={"modelId": self.config.settings.model},
        )
        _LOGGER.info("M31 Agents started (session=%s)", self.session_id)

    async def aclose(self) -> None:
        """Record deactivation, drain completions, flush telemetry and close the client."""

        self.telemetry.track_event(TelemetryEventType.EXTENSION_DEACTIVATED)
        await self.completions.aclose()
        self.agent.dispose()
        await self.telemetry.aclose()
        await self.client.aclose()
        _LOGGER.info("M31 Agents stopped (session=%s)", self.session_id)

    async def __aenter__(self) -> "AppRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def build_runtime(
    settings: Settings,
    *,
    store: SettingsStore | None = None,
    sink: TelemetrySink | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    session_id: str | None = None,
) -> AppRuntime:
    """Wire the services for ``settings``.

    ``sink`` and ``transport`` replace the telemetry destination and HTTP
    transport, which is how tests and embedding hosts avoid real I/O.
    """

    session_id = session_id or uuid.uuid4().hex
    logging_utils.bind_session(session_id)
    version = client_version()
    config = ConfigService(settings, store=store)
    advanced = settings.advanced

    client = ApiClient(
        ClientSettings(
            base_url=settings.base_url,
            api_key=settings.api_key,
            session_id=session_id,
            client_version=version,
            request_timeout=advanced.request_timeout,
            max_retries=advanced.retries,
            debug_logging=settings.debug_logging,
        ),
        transport=transport,
    )
    telemetry_settings = settings.telemetry
    telemetry = TelemetryBatcher(
        sink or _build_sink(telemetry_settings, client),
        session_id=session_id,
        enabled=telemetry_settings.enabled,
        batch_size=telemetry_settings.batch_size,
        flush_interval=telemetry_settings.flush_interval_seconds,
        enrichers=[platform_enricher(version)],
    )
    sessions = SessionTracker(telemetry, model_provider=lambda: config.settings.model)
    cache = ResultCache(
        ttl_seconds=advanced.cache_ttl_seconds,
        max_entries=advanced.cache_max_entries,
        evict_batch=advanced.cache_evict_batch,
    )
    completions = CompletionOrchestrator(client, cache, telemetry, config)
    agent = AgentService(client, config, telemetry, sessions, completions)

    _connect_listeners(config, client, telemetry, cache)
    return AppRuntime(
        config=config,
        client=client,
        telemetry=telemetry,
        sessions=sessions,
        cache=cache,
        completions=completions,
        agent=agent,
    )


def _build_sink(settings: TelemetrySettings, client: ApiClient) -> TelemetrySink:
    kind = (settings.sink or "http").strip().lower()
    if kind == "jsonl":
        return JsonlTelemetrySink(settings.storage_dir)
    if kind == "memory":
        return InMemoryTelemetrySink()
    if kind != "http":
        _LOGGER.warning("Unknown telemetry sink %r; using http", settings.sink)
    return HttpTelemetrySink(client)


def _connect_listeners(
    config: ConfigService,
    client: ApiClient,
    telemetry: TelemetryBatcher,
    cache: ResultCache,
) -> None:
    def _on_credentials(previous: Settings, current: Settings) -> None:
        client.update_credentials(api_key=current.api_key, base_url=current.base_url)

    def _on_telemetry(previous: Settings, current: Settings) -> None:
        if current.telemetry.enabled and not telemetry.enabled:
            telemetry.enable()
        elif not current.telemetry.enabled and telemetry.enabled:
            telemetry.disable()

    def _on_advanced(previous: Settings, current: Settings) -> None:
        before, after = previous.advanced, current.advanced
        if (before.request_timeout, before.retries) != (after.request_timeout, after.retries):
            client.reconfigure(request_timeout=after.request_timeout, max_retries=after.retries)
        if (before.cache_ttl_seconds, before.cache_max_entries, before.cache_evict_batch) != (
            after.cache_ttl_seconds,
            after.cache_max_entries,
            after.cache_evict_batch,
        ):
            cache.reconfigure(
                ttl_seconds=after.cache_ttl_seconds,
                max_entries=after.cache_max_entries,
                evict_batch=after.cache_evict_batch,
            )

    def _report(section: str) -> Callable[[Settings, Settings], None]:
        def _listener(previous: Settings, current: Settings) -> None:
            telemetry.track_event(TelemetryEventType.SETTINGS_CHANGED, properties={"section": section})

        return _listener

    config.subscribe("api_key", _on_credentials)
    config.subscribe("base_url", _on_credentials)
    config.subscribe("telemetry", _on_telemetry)
    config.subscribe("advanced", _on_advanced)
    for section in _SETTINGS_SECTIONS_REPORTED:
        config.subscribe(section, _report(section))


# ----------------------------------------------------------------------
# Bootstrap helpers
# ----------------------------------------------------------------------
def configure_logging(debug: bool = False, *, level_name: str | None = None, force: bool = False) -> None:
    level = logging.DEBUG if debug else logging_utils.level_from_name(level_name)
    logging_utils.setup_logging(level, console=debug, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


class ConsoleEditor:
    """Editor surface backed by a file snapshot; results go to the given streams."""

    def __init__(self, snapshot: DocumentSnapshot, *, out: TextIO | None = None, err: TextIO | None = None) -> None:
        self._snapshot = snapshot
        self._out = out or sys.stdout
        self._err = err or sys.stderr
        self.replacements: list[str] = []

    def snapshot(self) -> DocumentSnapshot:
        return self._snapshot

    def replace_selection(self, text: str) -> None:
        self.replacements.append(text)
        self._out.write(text.rstrip("\n") + "\n")

    def show_info(self, message: str) -> None:
        self._out.write(message.rstrip("\n") + "\n")

    def show_error(self, message: str) -> None:
        self._err.write(f"error: {message}\n")


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``m31-agents`` console script."""

    args = _parse_cli_args(argv)
    debug = _env_flag("M31_DEBUG", default=False) or args.debug
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("M31_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return 2

    settings = load_settings(resolved_path, store=store, overrides=cli_overrides or None)
    if args.dump_settings:
        _dump_settings(settings, store, overrides=cli_overrides)
        return 0
    if args.command is None:
        print("No command given; see --help.", file=sys.stderr)
        return 2
    if settings.debug_logging and not debug:
        configure_logging(True, force=True)
    else:
        configure_logging(debug, level_name=settings.advanced.log_level, force=True)

    try:
        return asyncio.run(_run_command(args, settings, store))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
        return 130


async def _run_command(args: argparse.Namespace, settings: Settings, store: SettingsStore) -> int:
    async with build_runtime(settings, store=store) as runtime:
        command = args.command
        if command == "complete":
            snapshot = _snapshot_from_file(args.file, args.language, cursor=(args.line, args.column))
            trigger = CompletionTrigger.at_cursor(snapshot, context=args.context)
            suggestion = await runtime.agent.get_code_completion(trigger)
            if suggestion is None:
                print("No suggestion.", file=sys.stderr)
                return 1
            print(suggestion)
            return 0
        if command == "models":
            capability = AICapability(args.capability) if args.capability else None
            result = await runtime.agent.list_models(capability)
            if not result.success:
                print(f"error: {result.error}", file=sys.stderr)
                return 1
            for model in result.value or []:
                print(f"{model.id}\t{model.name}\t{','.join(model.capabilities)}")
            return 0
        if command == "chat":
            result = await runtime.agent.chat(args.message, args.history or [])
            if not result.success:
                print(f"error: {result.error}", file=sys.stderr)
                return 1
            print(result.value)
            return 0
        if command == "generate":
            language = args.language
            result = await runtime.agent.generate_code(CodeGenerationParams(prompt=args.prompt, language=language))
            if not result.success:
                print(f"error: {result.error}", file=sys.stderr)
                return 1
            print(result.value)
            return 0

        if command == "commit-message":
            editor = ConsoleEditor(DocumentSnapshot.from_text(""))
            diff = _read_text(args.diff)
            ok = await runtime.commands(editor).generate_commit_message(diff)
            return 0 if ok else 1

        snapshot = _snapshot_from_file(args.file, args.language, selection=True)
        editor = ConsoleEditor(snapshot)
        commands = runtime.commands(editor)
        if command == "explain":
            ok = await commands.explain_selection()
        else:
            ok = await commands.add_logging()
        return 0 if ok else 1


def _snapshot_from_file(
    path: str,
    language: str | None,
    *,
    cursor: tuple[int, int] = (0, 0),
    selection: bool = False,
) -> DocumentSnapshot:
    text = _read_text(path)
    language_id = language or _LANGUAGE_BY_SUFFIX.get(Path(path).suffix.lower(), "plaintext")
    return DocumentSnapshot.from_text(
        text,
        language_id=language_id,
        uri=None if path == "-" else str(Path(path).resolve()),
        cursor=cursor,
        selection=(0, len(text)) if selection else None,
    )


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).expanduser().read_text(encoding="utf-8")


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="m31-agents",
        description="Send code completion, generation and explanation requests to the M31 model API.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.m31-agents/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run; dotted keys address sections (repeatable).",
    )
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level to the console as well.")

    subparsers = parser.add_subparsers(dest="command")

    complete = subparsers.add_parser("complete", help="Request an inline completion at a file position.")
    complete.add_argument("file", help="Source file, or '-' for stdin.")
    complete.add_argument("--line", type=int, required=True, help="Zero-based cursor line.")
    complete.add_argument("--column", type=int, required=True, help="Zero-based cursor column.")
    complete.add_argument("--language", help="Language id; inferred from the file suffix when omitted.")
    complete.add_argument("--context", help="Optional header prepended to the prompt.")

    for name, help_text in (
        ("explain", "Explain the code in a file."),
        ("add-logging", "Return the code in a file with logging statements added."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("file", help="Source file, or '-' for stdin.")
        sub.add_argument("--language", help="Language id; inferred from the file suffix when omitted.")

    generate = subparsers.add_parser("generate", help="Generate code from a prompt.")
    generate.add_argument("prompt")
    generate.add_argument("--language")

    commit = subparsers.add_parser("commit-message", help="Generate a commit message for a diff.")
    commit.add_argument("diff", nargs="?", default="-", help="Diff file, or '-' (default) for stdin.")

    chat = subparsers.add_parser("chat", help="Send one chat message.")
    chat.add_argument("message")
    chat.add_argument(
        "--history",
        action="append",
        metavar="TEXT",
        help="Earlier turns, oldest first, alternating user and assistant (repeatable).",
    )

    models = subparsers.add_parser("models", help="List models available to this account.")
    models.add_argument("--capability", choices=[item.value for item in AICapability])
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        owner, attribute = _resolve_override_target(key)
        annotation = get_type_hints(owner).get(attribute)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _resolve_override_target(key: str) -> tuple[type, str]:
    section, _, attribute = key.partition(".")
    top_level = {item.name: item for item in fields(Settings)}
    if not attribute:
        if key not in top_level:
            raise ValueError(f"Unknown setting '{key}'.")
        return Settings, key
    section_type = get_type_hints(Settings).get(section)
    if section not in top_level or not is_dataclass(section_type):
        raise ValueError(f"Unknown settings section '{section}'.")
    if attribute not in {item.name for item in fields(section_type)}:
        raise ValueError(f"Unknown setting '{key}'.")
    return section_type, attribute


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()
    nullable = type(None) in get_args(annotation)

    if normalized.lower() in {"none", "null"} and (nullable or target is not str):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if is_dataclass(target) and isinstance(target, type):
        try:
            payload = json.loads(normalized or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError("Section overrides must be valid JSON objects") from exc
        return target(**payload)
    if target in (list, dict):
        try:
            return json.loads(normalized)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{target.__name__} overrides must be valid JSON") from exc
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(settings.api_key)
    meta = {
        "path": str(store.path),
        "secret_backend": store.vault.name,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("M31_")),
        "client_version": client_version(),
    }
    json.dump({"settings": payload, "meta": meta}, destination, indent=2)
    destination.write("\n")
