"""Crawl db merge and maintenance tools."""

from crawldb_core.__version__ import __version__
from crawldb_core.datum import CrawlDatum
from crawldb_core.utils import (
    ensure_dir,
    read_json,
    read_jsonl,
    utc_now,
    write_json,
    write_jsonl,
)

__all__ = [
    "__version__",
    "CrawlDatum",
    "utc_now",
    "ensure_dir",
    "read_json",
    "write_json",
    "read_jsonl",
    "write_jsonl",
]
