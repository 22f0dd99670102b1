"""Centralized logging configuration for Concierge.

All entry points (CLI, embedding applications) should call configure_logging()
once at startup.

Logging Levels:
- DEBUG: Prompts, LLM fallbacks, slot extraction details
- INFO: Capability selection and execution summaries, sweeps
- WARNING: Rejected model output, retries, evictions
- ERROR: Handler failures that affect the user

Guidelines:
- Executions: Log at INFO only in skills/executor.py
- Turn-scoped fields (session id, capability) come from log_context(),
  not from repeating them in every extra dict
"""

import json
import logging
import os
import re
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TextIO

DEFAULT_LOG_RETENTION_DAYS = 7

DEFAULT_REDACT_PATTERNS: list[str] = [
    # Anthropic / OpenAI style keys
    r"\b(sk-[A-Za-z0-9_-]{20,})\b",
    # ENV-style assignments: API_KEY=secret or API_KEY: secret
    r"\b[A-Z0-9_]+(?:KEY|TOKEN|SECRET|PASSWORD)\s*[=:]\s*([^\s\"']{8,})",
    r"\bBearer\s+([A-Za-z0-9._\-+=]{20,})\b",
]

# Attributes every LogRecord carries; anything else came from extra={...}
_RESERVED_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()
) | {"message", "asctime", "component", "context"}

_log_context: ContextVar[dict[str, Any] | None] = ContextVar(
    "concierge_log_context", default=None
)


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every log record emitted inside the block.

    Nested blocks merge with the outer fields; None values are dropped.
    """
    current = _log_context.get() or {}
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the fields bound by log_context()."""
    return dict(_log_context.get() or {})


class ContextFilter(logging.Filter):
    """Copies log_context() fields onto the record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = get_log_context()
        return True


@dataclass
class SecretRedactor:
    """Masks API keys and tokens, keeping the first and last 4 characters."""

    patterns: list[re.Pattern[str]] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.patterns:
            self.patterns = [
                re.compile(p, re.IGNORECASE) for p in DEFAULT_REDACT_PATTERNS
            ]

    def redact(self, text: str) -> str:
        if not self.enabled or not text:
            return text
        for pattern in self.patterns:
            text = pattern.sub(self._mask_match, text)
        return text

    def _mask_match(self, match: re.Match[str]) -> str:
        full = match.group(0)
        token = match.group(1) if match.lastindex else full
        if "..." in token:
            return full
        masked = "***" if len(token) < 12 else f"{token[:4]}...{token[-4:]}"
        return full.replace(token, masked) if token != full else masked


_redactor = SecretRedactor()


def _component(logger_name: str) -> str:
    """concierge.skills.executor -> skills"""
    parts = logger_name.split(".")
    if len(parts) >= 2 and parts[0] == "concierge":
        return parts[1]
    return parts[0]


def _record_extra(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_RECORD_ATTRS and not key.startswith("_")
    }


def prune_old_logs(
    logs_dir: Path,
    retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    suffix: str = ".jsonl",
) -> int:
    """Delete log files older than the retention period.

    Returns:
        Number of files deleted.
    """
    if not logs_dir.exists():
        return 0

    cutoff = datetime.now(UTC) - timedelta(days=retention_days)
    deleted = 0
    for entry in logs_dir.iterdir():
        if not entry.is_file() or not entry.name.endswith(suffix):
            continue
        try:
            if datetime.fromtimestamp(entry.stat().st_mtime, UTC) < cutoff:
                entry.unlink()
                deleted += 1
        except OSError:
            continue
    return deleted


class JSONLHandler(logging.Handler):
    """Writes one redacted JSON object per record to logs/YYYY-MM-DD.jsonl.

    Rotates daily and prunes files past the retention window on rotation.
    """

    def __init__(
        self,
        logs_dir: Path,
        retention_days: int = DEFAULT_LOG_RETENTION_DAYS,
    ):
        super().__init__()
        self._logs_dir = logs_dir
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._retention_days = retention_days
        self._current_date: str | None = None
        self._file: TextIO | None = None

    def _get_log_file(self) -> TextIO:
        today = datetime.now(UTC).strftime("%Y-%m-%d")
        if self._current_date != today or self._file is None:
            if self._file:
                self._file.close()
            self._current_date = today
            self._file = (self._logs_dir / f"{today}.jsonl").open("a", encoding="utf-8")
            prune_old_logs(self._logs_dir, self._retention_days)
        return self._file

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry: dict[str, Any] = {
                "ts": datetime.now(UTC).isoformat(),
                "level": record.levelname,
                "component": _component(record.name),
                "logger": record.name,
                "message": _redactor.redact(record.getMessage()),
            }
            context = getattr(record, "context", None) or get_log_context()
            if context:
                entry["context"] = context
            if extra := _record_extra(record):
                redacted = _redactor.redact(json.dumps(extra, default=str))
                try:
                    entry["extra"] = json.loads(redacted)
                except json.JSONDecodeError:
                    entry["extra"] = {"_redacted_raw": redacted}
            if record.exc_info:
                formatter = self.formatter or logging.Formatter()
                entry["exception"] = _redactor.redact(
                    formatter.formatException(record.exc_info)
                )

            log_file = self._get_log_file()
            log_file.write(json.dumps(entry, default=str) + "\n")
            log_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None
        super().close()


class ComponentFormatter(logging.Formatter):
    """Adds ``%(component)s`` and appends bound context as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        record.component = _component(record.name)
        text = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            text = f"{text} [{pairs}]"
        return text


NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "anthropic",
    "openai",
]


def configure_logging(
    level: str | None = None,
    use_rich: bool = False,
    log_to_file: bool = False,
    logs_dir: Path | None = None,
) -> None:
    """Configure logging for Concierge.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
            If None, uses CONCIERGE_LOG_LEVEL env var or INFO.
        use_rich: Use Rich handler for colorful console output.
        log_to_file: Also write logs to JSONL files.
        logs_dir: Override for the JSONL directory (defaults to ~/.concierge/logs).
    """
    from concierge.config.paths import get_logs_path

    if level is None:
        level = os.environ.get("CONCIERGE_LOG_LEVEL", "INFO").upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        level = "INFO"
    log_level = getattr(logging, level)

    context_filter = ContextFilter()
    handlers: list[logging.Handler] = []

    if use_rich:
        from rich.logging import RichHandler

        console_handler: logging.Handler = RichHandler(
            rich_tracebacks=False,
            show_path=False,
            show_time=True,
            markup=False,
        )
        console_handler.setFormatter(ComponentFormatter("%(component)s | %(message)s"))
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            ComponentFormatter(
                "%(asctime)s | %(levelname)-8s | %(component)s | %(message)s",
                datefmt="%H:%M:%S",
            )
        )
    console_handler.addFilter(context_filter)
    handlers.append(console_handler)

    if log_to_file:
        file_handler = JSONLHandler(logs_dir or get_logs_path())
        file_handler.setLevel(log_level)
        file_handler.addFilter(context_filter)
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
