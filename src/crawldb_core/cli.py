#!/usr/bin/env python3
"""Command line entry point for the crawl db tools."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from pathlib import Path

from crawldb_core import merge
from crawldb_core.__version__ import __version__ as VERSION
from crawldb_core.datum import encode_record
from crawldb_core.exceptions import CrawlDbError
from crawldb_core.logging_config import add_logging_args, configure_logging
from crawldb_core.store import lock_path, read_lock_holder, read_store, release_lock

COMMAND_MERGE = "merge"
COMMAND_UNLOCK = "unlock"
COMMAND_DUMP = "dump"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crawldb", description=f"CrawlDb tools v{VERSION}.")
    parser.add_argument("--version", action="version", version=VERSION)
    sub = parser.add_subparsers(dest="command")
    sub.add_parser(
        COMMAND_MERGE,
        add_help=False,
        help="Merge crawl dbs (see 'crawldb merge --help').",
    )
    unlock = sub.add_parser(COMMAND_UNLOCK, help="Remove a stale lock left by a crashed job.")
    unlock.add_argument("crawldb", help="Crawl db to unlock")
    add_logging_args(unlock)
    dump = sub.add_parser(COMMAND_DUMP, help="Write the current records as JSON lines.")
    dump.add_argument("crawldb", help="Crawl db to dump")
    add_logging_args(dump)
    return parser


def _run_unlock(db: Path) -> int:
    holder = read_lock_holder(db)
    if not release_lock(db):
        print(f"No lock found at {lock_path(db)}", file=sys.stderr)
        return 0
    detail = f" (held by {json.dumps(holder, sort_keys=True)})" if holder else ""
    print(f"Removed lock {lock_path(db)}{detail}")
    return 0


def _run_dump(db: Path) -> int:
    out = sys.stdout
    for url, datum in read_store(db):
        row = encode_record(url, datum)
        row["status_name"] = datum.status_name
        out.write(json.dumps(row, ensure_ascii=False, sort_keys=True) + "\n")
    out.flush()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # merge owns its argument parsing
    if argv[:1] == [COMMAND_MERGE]:
        return merge.main(argv[1:])

    parser = _build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help(sys.stderr)
        return 1

    configure_logging(level=args.log_level, fmt=args.log_format)
    try:
        if args.command == COMMAND_UNLOCK:
            return _run_unlock(Path(args.crawldb))
        if args.command == COMMAND_DUMP:
            return _run_dump(Path(args.crawldb))
    except (CrawlDbError, OSError) as exc:
        print(f"CrawlDb {args.command}: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
