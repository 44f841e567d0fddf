"""Logging setup shared by the CLI and embedding hosts.

Every record written through the configured handlers carries the M31 session
id (the value sent as ``X-M31-Session-ID``), so client logs can be matched to
server-side traces. API keys and bearer tokens are masked before a record is
formatted.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = [
    "SecretRedactingFilter",
    "SessionContextFilter",
    "bind_session",
    "get_log_path",
    "level_from_name",
    "redact",
    "setup_logging",
]

_DEFAULT_LOG_DIR = Path.home() / ".m31-agents" / "logs"
_LOG_FILE_NAME = "m31-agents.log"
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore")
_NO_SESSION = "-"
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"),
    re.compile(r"(\"?api_?key\"?\s*[:=]\s*\"?)[^\s\",}]+", re.IGNORECASE),
    re.compile(r"()\bsk-[A-Za-z0-9_\-]{4,}"),
)

_session_id = _NO_SESSION
_LOG_PATH: Path | None = None


class SessionContextFilter(logging.Filter):
    """Stamps ``record.session`` with the session bound via :func:`bind_session`."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session"):
            record.session = _session_id
        return True


class SecretRedactingFilter(logging.Filter):
    """Masks API keys and bearer tokens in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda match: f"{match.group(1)}***", text)
    return text


def bind_session(session_id: str | None) -> None:
    """Attach ``session_id`` to every subsequent log record."""

    global _session_id
    _session_id = session_id or _NO_SESSION


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating file handler (and a console handler when asked).

    Calling again without ``force`` keeps the existing configuration and
    returns its log path.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(SessionContextFilter())
        handler.addFilter(SecretRedactingFilter())

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_transport_loggers(level)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def level_from_name(name: str | None, *, default: int = logging.INFO) -> int:
    """Map ``advanced.log_level`` values such as ``"debug"`` or ``"warn"`` to a level."""

    normalized = (name or "").strip().upper()
    if normalized == "WARN":
        normalized = "WARNING"
    level = logging.getLevelName(normalized)
    return level if isinstance(level, int) else default


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("M31_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _quiet_transport_loggers(root_level: int) -> None:
    # httpx logs every request at INFO; keep it at WARNING unless the root is stricter.
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
