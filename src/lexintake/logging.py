"""Structured logging for lexintake.

Wraps structlog with:
- env-driven level/format selection (LEXINTAKE_LOG_LEVEL, LEXINTAKE_LOG_FORMAT)
- optional file output (LEXINTAKE_LOG_FILE)
- redaction of API keys and bearer tokens in every event
- contextvar binding so per-bot fields follow async tasks
"""

from __future__ import annotations

import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TextIO

import structlog

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

_API_KEY_RE = re.compile(r"\b(?:gsk|sk)[-_][A-Za-z0-9_\-]{8,}")
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-~+/]+=*", re.IGNORECASE)

_min_level = logging.INFO


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _level_value(value: str | None, default: str = "info") -> int:
    if not value:
        return _LEVELS[default]
    return _LEVELS.get(value.strip().lower(), _LEVELS[default])


def _redact_text(text: str) -> str:
    text = _BEARER_RE.sub(r"\1[REDACTED]", text)
    return _API_KEY_RE.sub("[REDACTED_KEY]", text)


def _redact_value(value: Any, memo: dict[int, Any]) -> Any:
    if isinstance(value, str):
        return _redact_text(value)
    if isinstance(value, bytes):
        return _redact_text(value.decode("utf-8", errors="replace"))
    obj_id = id(value)
    if obj_id in memo:
        return memo[obj_id]
    if isinstance(value, dict):
        result: dict[Any, Any] = {}
        memo[obj_id] = result
        for key, item in value.items():
            result[key] = _redact_value(item, memo)
        return result
    if isinstance(value, list):
        items: list[Any] = []
        memo[obj_id] = items
        items.extend(_redact_value(item, memo) for item in value)
        return items
    if isinstance(value, tuple):
        return tuple(_redact_value(item, memo) for item in value)
    if isinstance(value, set):
        return {_redact_value(item, memo) for item in value}
    return value


def _redact_event(
    _logger: Any, _method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    return _redact_value(event_dict, {})


def _drop_below_level(
    _logger: Any, method: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    if _LEVELS.get(method, logging.INFO) < _min_level:
        raise structlog.DropEvent
    return event_dict


class SafeWriter:
    """File-like wrapper that ignores writes after the stream is closed.

    Background tasks can still log while the interpreter is shutting down;
    without this guard those writes raise ValueError on a closed stream.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._closed = False

    def write(self, data: str) -> int:
        if self._closed:
            return 0
        try:
            return self._stream.write(data)
        except ValueError:
            self._closed = True
            return 0

    def flush(self) -> None:
        if self._closed:
            return
        try:
            self._stream.flush()
        except ValueError:
            self._closed = True

    def isatty(self) -> bool:
        isatty = getattr(self._stream, "isatty", None)
        return bool(isatty and isatty())


def setup_logging(*, debug: bool = False) -> None:
    """Configure structlog for the process.

    Args:
        debug: Force DEBUG level regardless of LEXINTAKE_LOG_LEVEL
    """
    global _min_level
    _min_level = (
        logging.DEBUG
        if debug
        else _level_value(os.environ.get("LEXINTAKE_LOG_LEVEL"))
    )

    log_file = os.environ.get("LEXINTAKE_LOG_FILE")
    if log_file:
        stream: TextIO = open(log_file, "a", encoding="utf-8")  # noqa: SIM115
    else:
        stream = sys.stderr
    writer = SafeWriter(stream)

    fmt = (os.environ.get("LEXINTAKE_LOG_FORMAT") or "").strip().lower()
    as_json = fmt == "json" or (fmt == "" and not writer.isatty())
    if _truthy(os.environ.get("LEXINTAKE_LOG_PRETTY")):
        as_json = False

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if as_json
        else structlog.dev.ConsoleRenderer(colors=writer.isatty())
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _drop_below_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _redact_event,
            renderer,
        ],
        logger_factory=structlog.PrintLoggerFactory(file=writer),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def suppress_logs(level: str = "warning") -> Iterator[None]:
    """Temporarily raise the minimum log level (used by the CLI)."""
    global _min_level
    previous = _min_level
    _min_level = max(previous, _level_value(level, default="warning"))
    try:
        yield
    finally:
        _min_level = previous
