from __future__ import annotations

import gzip
import io
import json
import os
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import zstandard as zstd

from crawldb_core.utils.paths import ensure_dir


def read_json(path: Path) -> dict[str, Any]:
    """Read JSON file and return as dict."""
    return json.loads(path.read_text(encoding="utf-8"))


def write_json(path: Path, obj: dict[str, Any], *, indent: int = 2) -> None:
    """Write dict to JSON file atomically."""
    ensure_dir(path.parent)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        f.write(json.dumps(obj, indent=indent, ensure_ascii=False) + "\n")
        f.flush()
        os.fsync(f.fileno())
    tmp_path.replace(path)


def open_text(path: Path, mode: str, *, suffix: str | None = None) -> io.TextIOBase:
    """Open a text stream, compressing/decompressing by suffix (.gz/.zst).

    ``suffix`` overrides the suffix of ``path``, for temporary files that are
    renamed into place afterwards.
    """
    suffix = suffix or path.suffix
    if suffix == ".gz":
        return gzip.open(path, mode, encoding="utf-8")
    if suffix == ".zst":
        try:
            if "r" in mode:
                stream = zstd.ZstdDecompressor().stream_reader(path.open("rb"))
                return io.TextIOWrapper(stream, encoding="utf-8")
            stream = zstd.ZstdCompressor().stream_writer(path.open("wb"))
            return io.TextIOWrapper(stream, encoding="utf-8")
        except zstd.ZstdError as e:
            raise OSError(f"Failed to open zstd file {path}: {e}") from e
    return open(path, mode, encoding="utf-8")


def read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    """Read JSONL file (supports .gz/.zst) and yield records.

    Partition files are written by this package, so a malformed line means
    the partition is corrupt and the error propagates.
    """
    with open_text(path, "rt") as f:
        for line in f:
            line = line.strip()
            if line:
                yield json.loads(line)


def write_jsonl(path: Path, rows: Iterable[dict[str, Any]]) -> int:
    """Write records to JSONL file (supports .gz/.zst) atomically."""
    ensure_dir(path.parent)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    count = 0
    with open_text(tmp_path, "wt", suffix=path.suffix) as f:
        for row in rows:
            f.write(json.dumps(row, ensure_ascii=False, sort_keys=True) + "\n")
            count += 1
    tmp_path.replace(path)
    return count
