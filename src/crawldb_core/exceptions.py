from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass
class CrawlDbError(Exception):
    message: str
    code: str = "crawldb_error"
    context: dict[str, Any] = field(default_factory=dict)

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.context = dict(context or {})

    def __str__(self) -> str:
        return self.message

    def as_log_fields(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "error_message": self.message,
            "error_context": self.context,
        }


class StoreLockedError(CrawlDbError):
    """Another job holds the store's lock sentinel."""

    code = "already_locked"

    def __init__(self, message: str, *, lock_path: str, holder: Mapping[str, Any] | None = None) -> None:
        context: dict[str, Any] = {"lock_path": lock_path}
        if holder:
            context["holder"] = dict(holder)
        super().__init__(message, context=context)


class EngineFailureError(CrawlDbError):
    code = "engine_failure"

    def __init__(self, message: str, *, state: str, reason: str | None = None) -> None:
        super().__init__(message, context={"state": state, "reason": reason})


class InstallError(CrawlDbError):
    code = "install_failure"


class InvalidInputError(CrawlDbError):
    code = "invalid_input"


class ConfigValidationError(CrawlDbError):
    code = "config_validation_error"


class YamlParseError(CrawlDbError):
    code = "yaml_parse_error"
