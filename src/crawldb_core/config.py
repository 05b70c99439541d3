from __future__ import annotations

import dataclasses
import json
import logging
import os
from functools import cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft7Validator, FormatChecker

from crawldb_core.exceptions import ConfigValidationError, YamlParseError

logger = logging.getLogger(__name__)

CONFIG_ENV = "CRAWLDB_CONFIG"
SCHEMA_NAME = "crawldb_config"


@dataclasses.dataclass(frozen=True)
class MergeSettings:
    workers: int = 4
    reduce_partitions: int = 1
    compression: str = "none"
    preserve_backup: bool = True


@dataclasses.dataclass(frozen=True)
class CrawlDbConfig:
    merge: MergeSettings = dataclasses.field(default_factory=MergeSettings)
    schedule: str = "default"
    purge_gone: bool = False
    purge_orphans: bool = False
    urlfilters: dict[str, Any] = dataclasses.field(default_factory=dict)
    urlnormalizers: dict[str, Any] = dataclasses.field(default_factory=dict)
    source: Path | None = None

    def with_overrides(
        self,
        *,
        workers: int | None = None,
        reduce_partitions: int | None = None,
        compression: str | None = None,
    ) -> CrawlDbConfig:
        """Return a copy with CLI-supplied values taking precedence."""
        changes = {
            key: value
            for key, value in (
                ("workers", workers),
                ("reduce_partitions", reduce_partitions),
                ("compression", compression),
            )
            if value is not None
        }
        if not changes:
            return self
        return dataclasses.replace(self, merge=dataclasses.replace(self.merge, **changes))


@cache
def load_schema(schema_name: str) -> dict[str, Any]:
    schema_path = resources.files("crawldb_core").joinpath("schemas", f"{schema_name}.schema.json")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_config(config: Any, schema_name: str, *, config_path: Path | None = None) -> None:
    schema = load_schema(schema_name)
    validator = Draft7Validator(schema, format_checker=FormatChecker())
    errors = sorted(validator.iter_errors(config), key=lambda exc: list(exc.path))
    if not errors:
        return
    location = str(config_path) if config_path else "<config>"
    lines = [f"Schema validation failed for {location} ({schema_name})."]
    error_details: list[dict[str, str]] = []
    for error in errors[:10]:
        path = ".".join(str(p) for p in error.path) if error.path else "<root>"
        lines.append(f"- {path}: {error.message}")
        error_details.append({"path": path, "message": error.message})
    if len(errors) > 10:
        lines.append(f"... and {len(errors) - 10} more errors.")
    raise ConfigValidationError(
        "\n".join(lines),
        context={
            "path": location,
            "schema": schema_name,
            "errors": error_details,
            "truncated": len(errors) > 10,
        },
    )


def read_yaml(path: Path, schema_name: str | None = None) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise YamlParseError(
            f"YAML parse error in {path}: {exc}",
            context={"path": str(path), "error": str(exc)},
        ) from exc
    if data is None:
        data = {}
    if schema_name:
        validate_config(data, schema_name, config_path=path)
    return data


def resolve_config_path(path: str | Path | None = None) -> Path | None:
    value = path or os.environ.get(CONFIG_ENV)
    if not value:
        return None
    return Path(value).expanduser()


def config_from_dict(data: dict[str, Any], *, source: Path | None = None) -> CrawlDbConfig:
    validate_config(data, SCHEMA_NAME, config_path=source)
    merge_cfg = data.get("merge") or {}
    transform = data.get("transform") or {}
    return CrawlDbConfig(
        merge=MergeSettings(
            workers=int(merge_cfg.get("workers", MergeSettings.workers)),
            reduce_partitions=int(merge_cfg.get("reduce_partitions", MergeSettings.reduce_partitions)),
            compression=str(merge_cfg.get("compression", MergeSettings.compression)),
            preserve_backup=bool(merge_cfg.get("preserve_backup", MergeSettings.preserve_backup)),
        ),
        schedule=str((data.get("schedule") or {}).get("name", "default")),
        purge_gone=bool(transform.get("purge_gone", False)),
        purge_orphans=bool(transform.get("purge_orphans", False)),
        urlfilters=dict(data.get("urlfilters") or {}),
        urlnormalizers=dict(data.get("urlnormalizers") or {}),
        source=source,
    )


def load_config(path: str | Path | None = None) -> CrawlDbConfig:
    """Load configuration from ``path`` or ``$CRAWLDB_CONFIG``; defaults when neither is set."""
    config_path = resolve_config_path(path)
    if config_path is None:
        return CrawlDbConfig()
    if not config_path.is_file():
        raise ConfigValidationError(
            f"Config file not found: {config_path}", context={"path": str(config_path)}
        )
    data = read_yaml(config_path)
    logger.debug("Loaded config from %s", config_path)
    return config_from_dict(data, source=config_path)
