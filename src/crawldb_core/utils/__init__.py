"""Shared utility functions for the crawl db tools."""

from crawldb_core.utils.hash import partition_for, stable_hash_int
from crawldb_core.utils.io import (
    open_text,
    read_json,
    read_jsonl,
    write_json,
    write_jsonl,
)
from crawldb_core.utils.logging import (
    elapsed_time,
    format_utc,
    log_event,
    utc_now,
)
from crawldb_core.utils.paths import ensure_dir, remove_tree

__all__ = [
    "utc_now",
    "format_utc",
    "elapsed_time",
    "log_event",
    "ensure_dir",
    "remove_tree",
    "stable_hash_int",
    "partition_for",
    "open_text",
    "read_json",
    "write_json",
    "read_jsonl",
    "write_jsonl",
]
