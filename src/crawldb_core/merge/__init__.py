"""Merge several crawl dbs into one.

For every URL the freshest record survives and the metadata of all versions
is folded into it (see :func:`crawldb_core.merge.reducer.merge_datums`). With
a single input and ``filter``/``normalize`` enabled the same job serves as a
filtering pass over one crawl db.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
import time
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from crawldb_core.__version__ import __version__ as VERSION
from crawldb_core.config import CrawlDbConfig, load_config
from crawldb_core.engine import GroupedReduceEngine, JobCounters, JobSpec, LocalJobRunner
from crawldb_core.exceptions import CrawlDbError, EngineFailureError, InvalidInputError
from crawldb_core.logging_config import LogContext, add_logging_args, configure_logging
from crawldb_core.merge.mapper import CrawlDbFilter
from crawldb_core.merge.reducer import MergeReducer, merge_datums
from crawldb_core.schedule import get_fetch_schedule
from crawldb_core.store import CURRENT_NAME, commit_scope
from crawldb_core.urlfilters import build_url_filters, build_url_normalizers
from crawldb_core.utils.io import write_json
from crawldb_core.utils.logging import elapsed_time, format_utc, log_event

logger = logging.getLogger(__name__)

__all__ = ["CrawlDbMerger", "MergeResult", "merge_datums", "main"]


@dataclasses.dataclass
class MergeResult:
    output: Path
    generation: Path
    inputs: list[Path]
    normalize: bool
    filter: bool
    counters: dict[str, int]
    started_at: float
    finished_at: float

    @property
    def elapsed_seconds(self) -> float:
        return self.finished_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "output": str(self.output),
            "generation": self.generation.name,
            "inputs": [str(path) for path in self.inputs],
            "normalize": self.normalize,
            "filter": self.filter,
            "counters": dict(self.counters),
            "started_at": format_utc(self.started_at),
            "finished_at": format_utc(self.finished_at),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "version": VERSION,
        }


class CrawlDbMerger:
    def __init__(
        self,
        config: CrawlDbConfig | None = None,
        *,
        engine: GroupedReduceEngine | None = None,
    ) -> None:
        self.config = config or CrawlDbConfig()
        self.engine = engine or LocalJobRunner(workers=self.config.merge.workers)
        self.schedule = get_fetch_schedule(self.config.schedule)

    def create_merge_job(
        self,
        output: Path,
        normalize: bool,
        filter: bool,
        *,
        name: str | None = None,
        counters: JobCounters | None = None,
    ) -> JobSpec:
        """Describe the grouped-reduce job writing merged partitions into ``output``."""
        counters = counters or JobCounters()
        mapper = CrawlDbFilter(
            build_url_filters(self.config.urlfilters) if filter else None,
            build_url_normalizers(self.config.urlnormalizers) if normalize else None,
            filtering=filter,
            normalizing=normalize,
            purge_gone=self.config.purge_gone,
            purge_orphans=self.config.purge_orphans,
            counters=counters,
        )
        return JobSpec(
            name=name or f"crawldb merge {output}",
            mapper=mapper,
            reducer=MergeReducer(self.schedule, counters),
            output_dir=Path(output),
            num_partitions=self.config.merge.reduce_partitions,
            compression=self.config.merge.compression,
        )

    def merge(
        self,
        output: Path,
        dbs: Sequence[Path],
        normalize: bool = False,
        filter: bool = False,
    ) -> MergeResult:
        """Merge ``dbs`` into ``output`` and install the result as its current generation.

        Raises:
            InvalidInputError: No input dbs were given.
            StoreLockedError: ``output`` is locked by another job.
            EngineFailureError: The merge job did not succeed.
        """
        output = Path(output)
        inputs = [Path(db) for db in dbs]
        if not inputs:
            raise InvalidInputError("No input crawl dbs to merge", context={"output": str(output)})

        started = time.time()
        logger.info("CrawlDb merge: starting at %s", format_utc(started))
        job_name = f"crawldb merge {output}"
        counters = JobCounters()

        with LogContext(job=job_name), commit_scope(
            output,
            job_name=job_name,
            preserve_backup=self.config.merge.preserve_backup,
        ) as generation:
            spec = self.create_merge_job(
                generation, normalize, filter, name=job_name, counters=counters
            )
            for db in inputs:
                logger.info("Adding %s", db)
                spec.add_input_path(db / CURRENT_NAME)

            job = self.engine.submit(spec)
            try:
                succeeded = job.wait_for_completion()
            except BaseException:
                job.kill()
                job.wait_for_completion()
                raise
            if not succeeded:
                status = job.status
                message = (
                    "CrawlDb merge job did not succeed, job status: "
                    f"{status.state}, reason: {status.failure_info}"
                )
                logger.error(message)
                raise EngineFailureError(message, state=status.state, reason=status.failure_info)
            job_counters = job.counters.snapshot()

        finished = time.time()
        result = MergeResult(
            output=output,
            generation=generation,
            inputs=inputs,
            normalize=normalize,
            filter=filter,
            counters={**job_counters, **counters.snapshot()},
            started_at=started,
            finished_at=finished,
        )
        logger.info(
            "CrawlDb merge: finished at %s, elapsed: %s",
            format_utc(finished),
            elapsed_time(started, finished),
        )
        log_event(logger, "crawldb_merge_summary", **result.to_dict())
        return result


def add_merge_args(ap: argparse.ArgumentParser) -> None:
    ap.add_argument("output_crawldb", help="Output crawl db")
    ap.add_argument("crawldbs", nargs="+", help="Input crawl dbs")
    ap.add_argument(
        "-normalize",
        "--normalize",
        dest="normalize",
        action="store_true",
        help="Normalize URLs before merging",
    )
    ap.add_argument(
        "-filter",
        "--filter",
        dest="filter",
        action="store_true",
        help="Filter URLs before merging",
    )
    ap.add_argument("--config", default=None, help="YAML config (default: $CRAWLDB_CONFIG)")
    ap.add_argument("--workers", type=int, default=None, help="Map/reduce worker threads")
    ap.add_argument(
        "--partitions", type=int, default=None, help="Number of output partitions"
    )
    ap.add_argument("--summary", default=None, help="Write a JSON summary to this path")
    add_logging_args(ap)


def main(argv: Sequence[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        prog="crawldb merge",
        description=f"CrawlDb merge v{VERSION}: merge crawl dbs, keeping the freshest record per URL.",
    )
    add_merge_args(ap)
    args = ap.parse_args(argv)
    if args.workers is not None and args.workers < 1:
        ap.error("--workers must be at least 1")
    if args.partitions is not None and args.partitions < 1:
        ap.error("--partitions must be at least 1")
    configure_logging(level=args.log_level, fmt=args.log_format)

    dbs: list[Path] = []
    for db in args.crawldbs:
        path = Path(db)
        if not path.exists():
            logger.warning("Input dir %s doesn't exist, skipping.", db)
            continue
        dbs.append(path)
    if not dbs:
        print("CrawlDb merge: no existing input crawl dbs", file=sys.stderr)
        return 1

    try:
        config = load_config(args.config).with_overrides(
            workers=args.workers, reduce_partitions=args.partitions
        )
        result = CrawlDbMerger(config).merge(
            Path(args.output_crawldb), dbs, normalize=args.normalize, filter=args.filter
        )
    except CrawlDbError as exc:
        log_event(logger, "crawldb_merge_failed", **exc.as_log_fields())
        print(f"CrawlDb merge: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        logger.error("CrawlDb merge failed", exc_info=True)
        print(f"CrawlDb merge: {exc}", file=sys.stderr)
        return 1

    if args.summary:
        write_json(Path(args.summary), result.to_dict())
    return 0
