"""On-disk crawl store layout, lock sentinel and atomic install.

Layout of a store directory::

    <db>/current  -> merge-1234567   symlink to the committed generation
    <db>/old      -> merge-7654321   previous generation (when backups are kept)
    <db>/.locked                     lock sentinel of the running mutating job
    <db>/merge-<n>/part-r-00000.jsonl ... _SUCCESS

A new generation is published by pointing a fresh symlink at it and renaming
that symlink over ``current``; readers see either the old or the new
generation, never a mix.
"""

from __future__ import annotations

import json
import logging
import os
import random
import socket
from collections import defaultdict
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from crawldb_core.datum import CrawlDatum
from crawldb_core.exceptions import InstallError, InvalidInputError, StoreLockedError
from crawldb_core.partitions import (
    AtomicPartitionWriter,
    get_partition_filename,
    is_generation_complete,
    list_partitions,
    mark_generation_complete,
    partition_for,
    read_partition,
)
from crawldb_core.utils.io import read_json
from crawldb_core.utils.logging import utc_now
from crawldb_core.utils.paths import ensure_dir, remove_tree

logger = logging.getLogger(__name__)

LOCK_NAME = ".locked"
CURRENT_NAME = "current"
OLD_NAME = "old"
GENERATION_PREFIX = "merge-"
_MAX_GENERATION_ID = 2**31 - 1


def lock_path(db: Path) -> Path:
    return Path(db) / LOCK_NAME


def read_lock_holder(db: Path) -> dict[str, Any] | None:
    """Return the sentinel contents, or None when absent or unreadable."""
    path = lock_path(db)
    if not path.is_file():
        return None
    try:
        return read_json(path)
    except (OSError, ValueError):
        return None


def lock_store(db: Path, *, force: bool = False, job_name: str | None = None) -> Path:
    """Create the lock sentinel of ``db``, creating the store directory if needed.

    Raises:
        StoreLockedError: The sentinel already exists (and ``force`` is off) or
            ``.locked`` is a directory.
    """
    db = ensure_dir(Path(db))
    path = lock_path(db)
    holder = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "created_at_utc": utc_now(),
        "job": job_name,
    }
    payload = (json.dumps(holder, indent=2, sort_keys=True) + "\n").encode("utf-8")

    if path.is_dir():
        raise StoreLockedError(f"Lock path {path} is a directory", lock_path=str(path))

    flags = os.O_CREAT | os.O_WRONLY
    flags |= os.O_TRUNC if force else os.O_EXCL
    try:
        fd = os.open(str(path), flags, 0o644)
    except FileExistsError as exc:
        raise StoreLockedError(
            f"Store {db} is already locked ({path})",
            lock_path=str(path),
            holder=read_lock_holder(db),
        ) from exc
    try:
        os.write(fd, payload)
    finally:
        os.close(fd)
    logger.debug("Locked store %s", db)
    return path


def release_lock(db: Path) -> bool:
    path = lock_path(db)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug("Released lock on %s", db)
    return True


def _random_generation_name() -> str:
    return f"{GENERATION_PREFIX}{random.randrange(_MAX_GENERATION_ID)}"


def new_output_dir(db: Path) -> Path:
    """Create a fresh, uniquely named generation directory inside ``db``."""
    db = ensure_dir(Path(db))
    while True:
        candidate = db / _random_generation_name()
        try:
            candidate.mkdir()
        except FileExistsError:
            continue
        return candidate


def current_dir(db: Path) -> Path | None:
    """Resolve the committed generation directory of ``db``."""
    current = Path(db) / CURRENT_NAME
    if not current.is_dir():
        return None
    return current.resolve()


def _link_target(link: Path) -> Path | None:
    if not link.is_symlink():
        return None
    return (link.parent / os.readlink(link)).resolve()


def _replace_symlink(link: Path, target: Path) -> None:
    tmp_link = link.with_name(f".{link.name}-{random.randrange(_MAX_GENERATION_ID)}.tmp")
    os.symlink(os.path.relpath(target, link.parent), tmp_link)
    try:
        os.replace(tmp_link, link)
    except OSError:
        tmp_link.unlink()
        raise


def install(db: Path, generation: Path, *, preserve_backup: bool = True) -> None:
    """Publish ``generation`` as the current snapshot of ``db``.

    Raises:
        InstallError: The generation is incomplete or the swap failed; the
            store is left as it was.
    """
    db = Path(db).resolve()
    generation = Path(generation).resolve()
    if not is_generation_complete(generation):
        raise InstallError(
            f"Refusing to install incomplete generation {generation}",
            context={"db": str(db), "generation": str(generation)},
        )
    if generation.parent != db:
        raise InstallError(
            f"Generation {generation} is not inside store {db}",
            context={"db": str(db), "generation": str(generation)},
        )

    current = db / CURRENT_NAME
    previous = _link_target(current)
    legacy: Path | None = None
    try:
        if previous is None and current.is_dir():
            legacy = db / _random_generation_name()
            while legacy.exists():
                legacy = db / _random_generation_name()
            logger.warning(
                "Migrating plain current directory of %s to %s; %s is missing until the swap",
                db,
                legacy.name,
                current,
            )
            os.rename(current, legacy)
            previous = legacy
        elif previous is None and current.exists():
            raise InstallError(
                f"{current} is neither a directory nor a symlink",
                context={"db": str(db), "generation": str(generation)},
            )
        _replace_symlink(current, generation)
    except OSError as exc:
        if legacy is not None and legacy.exists() and not current.exists():
            os.rename(legacy, current)
        raise InstallError(
            f"Failed to install {generation.name} as {current}: {exc}",
            context={"db": str(db), "generation": str(generation), "error": str(exc)},
        ) from exc
    logger.info("Installed %s as current generation of %s", generation.name, db)

    try:
        _rotate_backup(db, generation, previous, preserve_backup=preserve_backup)
    except OSError:
        logger.warning("Backup housekeeping failed for %s", db, exc_info=True)


def _rotate_backup(
    db: Path, generation: Path, previous: Path | None, *, preserve_backup: bool
) -> None:
    old = db / OLD_NAME
    previous_old = _link_target(old)
    if previous == generation:
        previous = None

    stale: list[Path | None] = []
    if preserve_backup:
        if previous is None:
            return
        if old.exists() and not old.is_symlink():
            remove_tree(old)
        _replace_symlink(old, previous)
        stale.append(previous_old)
    else:
        if old.is_symlink():
            old.unlink()
        stale.extend([previous_old, previous])

    keep = {generation, previous} if preserve_backup else {generation}
    for path in stale:
        if path is not None and path not in keep and remove_tree(path):
            logger.debug("Removed stale generation %s", path)


def discard(path: Path | None) -> bool:
    """Remove a temporary output tree; a missing path is not an error."""
    if path is None:
        return False
    try:
        removed = remove_tree(Path(path))
    except OSError:
        logger.warning("Failed to discard %s", path, exc_info=True)
        return False
    if removed:
        logger.info("Discarded temporary output %s", path)
    return removed


def cleanup_after_failure(tmp: Path | None, db: Path) -> None:
    discard(tmp)
    release_lock(db)


@contextmanager
def commit_scope(
    db: Path,
    *,
    force: bool = False,
    job_name: str | None = None,
    preserve_backup: bool = True,
) -> Iterator[Path]:
    """Lock ``db`` and yield a fresh generation directory to write into.

    On normal exit the generation is installed; on any exception it is
    discarded. The lock is released on every path.
    """
    db = Path(db)
    lock_store(db, force=force, job_name=job_name)
    output: Path | None = None
    try:
        output = new_output_dir(db)
        yield output
        install(db, output, preserve_backup=preserve_backup)
    except BaseException:
        cleanup_after_failure(output, db)
        raise
    release_lock(db)


def read_store(db: Path) -> Iterator[tuple[str, CrawlDatum]]:
    """Yield every record of the committed generation in partition order."""
    directory = current_dir(db)
    if directory is None:
        raise InvalidInputError(
            f"Store {db} has no {CURRENT_NAME} generation", context={"db": str(db)}
        )
    for partition in list_partitions(directory):
        yield from read_partition(partition)


def write_store(
    db: Path,
    records: Iterable[tuple[str, CrawlDatum]],
    *,
    num_partitions: int = 1,
    compression: str = "none",
    preserve_backup: bool = True,
) -> Path:
    """Commit ``records`` as a new generation of ``db`` and return its path.

    Keys must be unique; records are hash-partitioned and sorted by key.
    """
    buckets: dict[int, list[tuple[str, CrawlDatum]]] = defaultdict(list)
    for url, datum in records:
        buckets[partition_for(url, num_partitions)].append((url, datum))

    with commit_scope(db, job_name="write_store", preserve_backup=preserve_backup) as output:
        total = 0
        for index in range(num_partitions):
            rows = sorted(buckets.get(index, []), key=lambda item: item[0])
            path = output / get_partition_filename(index, compression)
            with AtomicPartitionWriter(path, compression) as writer:
                total += writer.write_all(rows)
        mark_generation_complete(output, {"records": total, "partitions": num_partitions})
    return output
