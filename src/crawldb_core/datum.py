"""Crawl record model and its JSON line codec.

A partition line carries one key and its datum::

    {"url": "http://example.com/", "datum": {"status": 2, "fetch_time": ..., ...}}

Byte values (the content signature and metadata values) are stored as
standard base64 strings.
"""

from __future__ import annotations

import base64
import dataclasses
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

STATUS_DB_UNFETCHED = 1
STATUS_DB_FETCHED = 2
STATUS_DB_GONE = 3
STATUS_DB_REDIR_TEMP = 4
STATUS_DB_REDIR_PERM = 5
STATUS_DB_NOTMODIFIED = 6
STATUS_DB_DUPLICATE = 7
STATUS_DB_ORPHAN = 8

STATUS_NAMES: dict[int, str] = {
    STATUS_DB_UNFETCHED: "db_unfetched",
    STATUS_DB_FETCHED: "db_fetched",
    STATUS_DB_GONE: "db_gone",
    STATUS_DB_REDIR_TEMP: "db_redir_temp",
    STATUS_DB_REDIR_PERM: "db_redir_perm",
    STATUS_DB_NOTMODIFIED: "db_notmodified",
    STATUS_DB_DUPLICATE: "db_duplicate",
    STATUS_DB_ORPHAN: "db_orphan",
}


def status_name(status: int) -> str:
    return STATUS_NAMES.get(status, f"unknown({status})")


def _encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _decode_bytes(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


@dataclasses.dataclass(frozen=True)
class CrawlDatum:
    """One crawl record.

    Attributes:
        status: Crawl status code (``STATUS_DB_*``).
        fetch_time: Next (or last) fetch time in epoch milliseconds.
        fetch_interval: Re-fetch interval in seconds.
        retries: Number of failed fetch attempts since the last success.
        score: Link score.
        modified_time: Last content modification time in epoch milliseconds.
        signature: Content signature, if the page was fetched and parsed.
        metadata: Named byte attributes, exposed read-only.
    """

    status: int = STATUS_DB_UNFETCHED
    fetch_time: int = 0
    fetch_interval: int = 0
    retries: int = 0
    score: float = 0.0
    modified_time: int = 0
    signature: bytes | None = None
    metadata: Mapping[str, bytes] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def status_name(self) -> str:
        return status_name(self.status)

    def with_metadata(self, metadata: Mapping[str, bytes]) -> CrawlDatum:
        return dataclasses.replace(self, metadata=dict(metadata))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "fetch_time": self.fetch_time,
            "fetch_interval": self.fetch_interval,
            "retries": self.retries,
            "score": self.score,
            "modified_time": self.modified_time,
            "signature": _encode_bytes(self.signature) if self.signature is not None else None,
            "metadata": {key: _encode_bytes(value) for key, value in sorted(self.metadata.items())},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CrawlDatum:
        signature = data.get("signature")
        return cls(
            status=int(data.get("status", STATUS_DB_UNFETCHED)),
            fetch_time=int(data.get("fetch_time", 0)),
            fetch_interval=int(data.get("fetch_interval", 0)),
            retries=int(data.get("retries", 0)),
            score=float(data.get("score", 0.0)),
            modified_time=int(data.get("modified_time", 0)),
            signature=_decode_bytes(signature) if signature is not None else None,
            metadata={key: _decode_bytes(value) for key, value in (data.get("metadata") or {}).items()},
        )


def encode_record(url: str, datum: CrawlDatum) -> dict[str, Any]:
    return {"url": url, "datum": datum.to_dict()}


def decode_record(row: Mapping[str, Any]) -> tuple[str, CrawlDatum]:
    try:
        url = row["url"]
        datum = row["datum"]
    except KeyError as exc:
        raise ValueError(f"Partition record is missing field {exc.args[0]!r}") from exc
    if not isinstance(url, str):
        raise ValueError(f"Partition record url must be a string, got {type(url).__name__}")
    return url, CrawlDatum.from_dict(datum)
