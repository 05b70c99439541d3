"""
Shared pytest fixtures for crawl db tool tests.

Provides:
- Committed crawl stores built under tmp_path
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

import pytest

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if SRC_ROOT.is_dir():
    sys.path.insert(0, str(SRC_ROOT))

from crawldb_core import logging_config  # noqa: E402
from crawldb_core.datum import CrawlDatum  # noqa: E402
from crawldb_core.store import write_store  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_logging_config(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(logging_config, "_CONFIGURED", False)
    logging_config.clear_log_context()
    yield
    root.setLevel(level)


@pytest.fixture
def make_store(tmp_path: Path) -> Callable[..., Path]:
    """Build a committed crawl store named ``name`` under tmp_path."""

    def _make(
        name: str,
        records: Iterable[tuple[str, CrawlDatum]],
        *,
        num_partitions: int = 1,
        compression: str = "none",
    ) -> Path:
        db = tmp_path / name
        write_store(db, records, num_partitions=num_partitions, compression=compression)
        return db

    return _make
