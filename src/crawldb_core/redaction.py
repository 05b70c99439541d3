"""Credential redaction for crawl URLs and structured log payloads.

Crawl stores hold URLs exactly as they were discovered, which occasionally
includes ``user:password@`` userinfo or session/auth tokens in the query
string. Log formatters pass every message through :func:`redact_structure`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "<REDACTED>"

_SENSITIVE_KEY_NORMALIZED = {
    "authorization",
    "apikey",
    "accesstoken",
    "token",
    "password",
    "sessionid",
    "sid",
}

_URL_USERINFO_RE = re.compile(r"(?i)\b([a-z][a-z0-9+.-]*://)([^/\s@:]+):[^/\s@]*@")
_QUERY_TOKEN_RE = re.compile(
    r"(?i)([?&;](?:api[-_]?key|access[-_]?token|token|password|passwd|session[-_]?id|sid|jsessionid)=)"
    r"([^&;#\s\"']+)"
)
_BEARER_RE = re.compile(r"(?i)Bearer\s+[^\s,\"']+")


def _normalize_key(key: str) -> str:
    return re.sub(r"[^a-z0-9]", "", key.lower())


def is_sensitive_key(key: str) -> bool:
    return _normalize_key(key) in _SENSITIVE_KEY_NORMALIZED


def redact_url(url: str) -> str:
    """Strip credentials from a single URL, keeping the username visible."""
    redacted = _URL_USERINFO_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}:{REDACTED}@", url)
    return _QUERY_TOKEN_RE.sub(lambda m: f"{m.group(1)}{REDACTED}", redacted)


def redact_string(text: str) -> str:
    return _BEARER_RE.sub(f"Bearer {REDACTED}", redact_url(text))


def redact_structure(value: Any) -> Any:
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, Mapping):
        return {
            key: REDACTED if is_sensitive_key(str(key)) else redact_structure(val)
            for key, val in value.items()
        }
    if isinstance(value, tuple):
        return tuple(redact_structure(item) for item in value)
    if isinstance(value, list):
        return [redact_structure(item) for item in value]
    return value
