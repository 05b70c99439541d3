from __future__ import annotations

import contextvars
import json
import logging
import time
from typing import Any

from crawldb_core.redaction import redact_string, redact_structure

_CONFIGURED = False

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_log_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "log_context", default=None
)


def get_log_context() -> dict[str, Any]:
    ctx = _log_context.get()
    return ctx.copy() if ctx else {}


def clear_log_context() -> None:
    _log_context.set({})


class LogContext:
    """Context manager for temporary log context, e.g. the job name of a merge."""

    def __init__(self, **kwargs: Any):
        self.kwargs = kwargs
        self.token: contextvars.Token | None = None

    def __enter__(self) -> LogContext:
        current = get_log_context()
        current.update(self.kwargs)
        self.token = _log_context.set(current)
        return self

    def __exit__(self, *args: Any) -> None:
        if self.token is not None:
            _log_context.reset(self.token)


def _render_message(record: logging.LogRecord) -> str:
    msg = redact_structure(record.msg)
    args = redact_structure(record.args)
    if args:
        try:
            return redact_string(str(msg) % args)
        except (TypeError, ValueError):
            return redact_string(str(msg))
    return redact_string(str(msg))


class TextFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        self.converter = time.gmtime

    def formatMessage(self, record: logging.LogRecord) -> str:
        record.message = _render_message(record)
        line = super().formatMessage(record)
        context = get_log_context()
        if context:
            line = f"{line} | {json.dumps(redact_structure(context), sort_keys=True, default=str)}"
        return line

    def format(self, record: logging.LogRecord) -> str:
        return redact_string(super().format(record))


class JsonFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__()
        self.converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": _render_message(record),
        }

        context = get_log_context()
        if context:
            payload["context"] = redact_structure(context)

        if record.exc_info:
            payload["exc_info"] = redact_string(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level is None:
        return logging.INFO
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(*, level: str | int | None = None, fmt: str = "text") -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    root = logging.getLogger()
    root.setLevel(_resolve_level(level))

    if not root.handlers:
        handler = logging.StreamHandler()
        if fmt.lower() == "json":
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(TextFormatter())
        root.addHandler(handler)

    _CONFIGURED = True


def add_logging_args(parser: Any) -> None:
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        default="text",
        choices=["text", "json"],
        help="Logging format (default: text)",
    )
