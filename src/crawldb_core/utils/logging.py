from __future__ import annotations

import json
import logging
import time
from typing import Any


def utc_now() -> str:
    """Return current UTC time in ISO 8601 format."""
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def format_utc(epoch_seconds: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(epoch_seconds))


def elapsed_time(start: float, end: float) -> str:
    """Format the span between two epoch-second timestamps as HH:MM:SS."""
    total = max(int(end - start), 0)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def log_event(logger: logging.Logger, message: str, **fields: Any) -> None:
    """Log a structured message with JSON fields."""
    if fields:
        payload = json.dumps(fields, sort_keys=True, ensure_ascii=False, default=str)
        logger.info("%s | %s", message, payload)
    else:
        logger.info("%s", message)
