"""Partition files of a crawl store generation.

A generation directory holds ``part-r-NNNNN.jsonl`` files (optionally
``.gz`` or ``.zst`` compressed), each sorted by URL with unique keys, plus a
``_SUCCESS`` marker written once every partition is complete.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import zstandard as zstd

from crawldb_core.datum import CrawlDatum, decode_record, encode_record
from crawldb_core.utils.hash import partition_for
from crawldb_core.utils.io import read_jsonl
from crawldb_core.utils.logging import utc_now
from crawldb_core.utils.paths import ensure_dir

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "_SUCCESS"
TMP_SUFFIX = ".tmp"
COMPRESSIONS = ("none", "gzip", "zstd")

_PARTITION_RE = re.compile(r"^part-(?:r-)?(\d+)\.jsonl(?:\.gz|\.zst)?$")

__all__ = [
    "SUCCESS_MARKER",
    "COMPRESSIONS",
    "AtomicPartitionWriter",
    "get_partition_filename",
    "list_partitions",
    "partition_for",
    "read_partition",
    "is_generation_complete",
    "mark_generation_complete",
]


def get_partition_filename(index: int, compression: str = "none", *, prefix: str = "part-r") -> str:
    if compression == "gzip":
        suffix = "jsonl.gz"
    elif compression in ("zstd", "zst"):
        suffix = "jsonl.zst"
    elif compression == "none":
        suffix = "jsonl"
    else:
        raise ValueError(f"Unsupported compression: {compression!r}")
    return f"{prefix}-{index:05d}.{suffix}"


def list_partitions(directory: Path) -> list[Path]:
    """Return the partition files of ``directory`` ordered by partition number."""
    found: list[tuple[int, Path]] = []
    for path in directory.iterdir():
        match = _PARTITION_RE.match(path.name)
        if match and path.is_file():
            found.append((int(match.group(1)), path))
    return [path for _, path in sorted(found)]


def read_partition(path: Path) -> Iterator[tuple[str, CrawlDatum]]:
    for row in read_jsonl(path):
        yield decode_record(row)


def is_generation_complete(directory: Path) -> bool:
    return directory.is_dir() and (directory / SUCCESS_MARKER).is_file()


def mark_generation_complete(directory: Path, metadata: dict[str, Any] | None = None) -> Path:
    marker_path = directory / SUCCESS_MARKER
    marker_data: dict[str, Any] = {"completed_at": utc_now()}
    if metadata:
        marker_data["metadata"] = metadata
    tmp_marker = marker_path.with_name(marker_path.name + TMP_SUFFIX)
    tmp_marker.write_text(json.dumps(marker_data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp_marker.replace(marker_path)
    logger.debug("Marked generation complete: %s", directory)
    return marker_path


class AtomicPartitionWriter:
    """Context manager writing one partition file through a temporary path.

    The file only appears under its final name when the block exits without
    an exception; on failure the temporary file is removed.

    Example:
        with AtomicPartitionWriter(out_dir / "part-r-00000.jsonl") as writer:
            for url, datum in records:
                writer.write(url, datum)
    """

    def __init__(self, path: Path, compression: str = "none") -> None:
        if compression not in COMPRESSIONS and compression != "zst":
            raise ValueError(f"Unsupported compression: {compression!r}")
        self.path = path
        self.tmp_path = path.with_name(path.name + TMP_SUFFIX)
        self.compression = compression
        self._file: Any = None
        self._wrapper: Any = None
        self._record_count = 0
        self._last_key: str | None = None

    def __enter__(self) -> AtomicPartitionWriter:
        ensure_dir(self.path.parent)
        if self.tmp_path.exists():
            self.tmp_path.unlink()

        if self.compression == "gzip":
            import gzip

            self._file = gzip.open(self.tmp_path, "wt", encoding="utf-8")
        elif self.compression in ("zstd", "zst"):
            self._file = self.tmp_path.open("wb")
            self._wrapper = zstd.ZstdCompressor().stream_writer(self._file)
        else:
            self._file = self.tmp_path.open("w", encoding="utf-8")
        return self

    def write_line(self, line: str) -> None:
        content = line + "\n"
        if self._wrapper is not None:
            self._wrapper.write(content.encode("utf-8"))
        else:
            self._file.write(content)
        self._record_count += 1

    def write_row(self, row: dict[str, Any]) -> None:
        self.write_line(json.dumps(row, ensure_ascii=False, sort_keys=True))

    def write(self, url: str, datum: CrawlDatum) -> None:
        """Append a record; keys must arrive in strictly increasing order."""
        if self._last_key is not None and url <= self._last_key:
            raise ValueError(f"Partition keys out of order: {url!r} after {self._last_key!r}")
        self._last_key = url
        self.write_row(encode_record(url, datum))

    def write_all(self, records: Iterable[tuple[str, CrawlDatum]]) -> int:
        for url, datum in records:
            self.write(url, datum)
        return self._record_count

    @property
    def record_count(self) -> int:
        return self._record_count

    def _close(self) -> None:
        if self._wrapper is not None:
            self._wrapper.close()
            self._wrapper = None
            self._file = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None:
            self._close()
            self.tmp_path.replace(self.path)
            logger.debug("Wrote partition %s (%d records)", self.path, self._record_count)
            return
        try:
            self._close()
        except OSError:
            logger.debug("Closing failed partition %s raised", self.tmp_path, exc_info=True)
        if self.tmp_path.exists():
            self.tmp_path.unlink()
        logger.warning("Partition write failed, removed temp file: %s", self.tmp_path)
