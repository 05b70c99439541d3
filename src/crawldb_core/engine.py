"""Grouped-reduce job contract and an in-process job runner.

A job maps every record of its input directories to zero or more
``(key, datum)`` pairs, groups the pairs by key and reduces each group to one
datum. The local runner executes map tasks (one per input partition file) on
a thread pool, spills hash-partitioned, key-sorted map output under
``<output>/_temporary`` and then runs one reduce task per output partition
that k-way merges the spills of that partition.

Usage:
    spec = JobSpec(name="crawldb merge", mapper=..., reducer=..., output_dir=out)
    spec.add_input_path(db / "current")
    job = LocalJobRunner(workers=4).submit(spec)
    if not job.wait_for_completion():
        print(job.status.state, job.status.failure_info)
"""

from __future__ import annotations

import dataclasses
import heapq
import itertools
import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from operator import itemgetter
from pathlib import Path
from typing import Protocol

from crawldb_core.datum import CrawlDatum
from crawldb_core.partitions import (
    AtomicPartitionWriter,
    get_partition_filename,
    list_partitions,
    mark_generation_complete,
    partition_for,
    read_partition,
)
from crawldb_core.utils.io import write_jsonl
from crawldb_core.utils.paths import ensure_dir, remove_tree

logger = logging.getLogger(__name__)

TEMPORARY_DIR = "_temporary"
DEFAULT_WORKERS = 4

Mapper = Callable[[str, CrawlDatum], Iterable[tuple[str, CrawlDatum]]]
Reducer = Callable[[str, Iterable[CrawlDatum]], CrawlDatum]


class JobState:
    PREP = "PREP"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    KILLED = "KILLED"

    TERMINAL = frozenset({SUCCEEDED, FAILED, KILLED})


@dataclasses.dataclass(frozen=True)
class JobStatus:
    state: str
    failure_info: str | None = None


class JobCounters:
    """Thread-safe named counters shared by the tasks of one job."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[name] += amount

    def get(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counts.items()))


@dataclasses.dataclass
class JobSpec:
    name: str
    mapper: Mapper
    reducer: Reducer
    output_dir: Path
    inputs: list[Path] = dataclasses.field(default_factory=list)
    num_partitions: int = 1
    compression: str = "none"

    def add_input_path(self, path: Path) -> None:
        self.inputs.append(Path(path))


class RunningJob(Protocol):
    @property
    def status(self) -> JobStatus: ...

    @property
    def counters(self) -> JobCounters: ...

    def wait_for_completion(self, timeout: float | None = None) -> bool: ...

    def kill(self) -> None: ...


class GroupedReduceEngine(Protocol):
    def submit(self, spec: JobSpec) -> RunningJob: ...


class JobKilledError(Exception):
    pass


class LocalRunningJob:
    """Handle of a job executing on a background thread."""

    def __init__(self, spec: JobSpec, workers: int) -> None:
        self.spec = spec
        self.workers = workers
        self._counters = JobCounters()
        self._status = JobStatus(JobState.PREP)
        self._status_lock = threading.Lock()
        self._killed = threading.Event()
        self._aborted = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"job:{spec.name}", daemon=True)

    @property
    def status(self) -> JobStatus:
        with self._status_lock:
            return self._status

    @property
    def counters(self) -> JobCounters:
        return self._counters

    def _set_status(self, state: str, failure_info: str | None = None) -> None:
        with self._status_lock:
            self._status = JobStatus(state, failure_info)

    def start(self) -> None:
        self._thread.start()

    def kill(self) -> None:
        logger.info("Killing job %s", self.spec.name)
        self._killed.set()

    def is_complete(self) -> bool:
        return self.status.state in JobState.TERMINAL

    def wait_for_completion(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return self.status.state == JobState.SUCCEEDED

    def _check_running(self) -> None:
        if self._killed.is_set():
            raise JobKilledError(f"Job {self.spec.name} was killed")
        if self._aborted.is_set():
            raise JobKilledError(f"Job {self.spec.name} aborted after a task failure")

    def _run(self) -> None:
        self._set_status(JobState.RUNNING)
        temp_root = Path(self.spec.output_dir) / TEMPORARY_DIR
        try:
            self._execute(temp_root)
        except JobKilledError as exc:
            self._set_status(JobState.KILLED, str(exc))
        except Exception as exc:
            logger.error("Job %s failed", self.spec.name, exc_info=True)
            self._set_status(JobState.FAILED, f"{type(exc).__name__}: {exc}")
        else:
            self._set_status(JobState.SUCCEEDED)
        finally:
            try:
                remove_tree(temp_root)
            except OSError:
                logger.warning("Failed to remove %s", temp_root, exc_info=True)

    def _run_tasks(self, executor: ThreadPoolExecutor, tasks: list[Callable[[], object]]) -> list[object]:
        futures = [executor.submit(task) for task in tasks]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = next((f for f in futures if f in done and f.exception() is not None), None)
        if failed is not None:
            self._aborted.set()
            for future in pending:
                future.cancel()
            wait(pending)
            raise failed.exception()  # type: ignore[misc]
        return [future.result() for future in futures]

    def _execute(self, temp_root: Path) -> None:
        spec = self.spec
        missing = [path for path in spec.inputs if not path.is_dir()]
        if missing:
            raise FileNotFoundError(f"Input path does not exist: {missing[0]}")

        splits = [split for path in spec.inputs for split in list_partitions(path)]
        logger.info(
            "Running job %s: %d input dirs, %d splits, %d reduce partitions",
            spec.name,
            len(spec.inputs),
            len(splits),
            spec.num_partitions,
        )
        ensure_dir(temp_root)
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            map_tasks = [
                (lambda idx=idx, split=split: self._map_task(idx, split, temp_root))
                for idx, split in enumerate(splits)
            ]
            spills: list[dict[int, Path]] = self._run_tasks(executor, map_tasks)  # type: ignore[assignment]
            self._check_running()

            reduce_tasks = [
                (lambda partition=partition: self._reduce_task(partition, spills))
                for partition in range(spec.num_partitions)
            ]
            self._run_tasks(executor, reduce_tasks)
        self._check_running()

        remove_tree(temp_root)
        counters = self._counters.snapshot()
        mark_generation_complete(
            Path(spec.output_dir),
            {
                "job": spec.name,
                "partitions": spec.num_partitions,
                "records": counters.get("reduce_output_records", 0),
            },
        )

    def _map_task(self, index: int, split: Path, temp_root: Path) -> dict[int, Path]:
        buckets: dict[int, list[tuple[str, CrawlDatum]]] = {}
        for url, datum in read_partition(split):
            self._check_running()
            self._counters.increment("map_input_records")
            for key, value in self.spec.mapper(url, datum):
                buckets.setdefault(partition_for(key, self.spec.num_partitions), []).append((key, value))
                self._counters.increment("map_output_records")

        task_dir = temp_root / f"map-{index:05d}"
        spills: dict[int, Path] = {}
        for partition, pairs in buckets.items():
            pairs.sort(key=itemgetter(0))
            path = task_dir / f"part-{partition:05d}.jsonl"
            write_jsonl(path, ({"url": key, "datum": value.to_dict()} for key, value in pairs))
            spills[partition] = path
        logger.debug("Map task %d over %s spilled %d partitions", index, split, len(spills))
        return spills

    def _grouped(self, streams: list[Iterator[tuple[str, CrawlDatum]]]) -> Iterator[tuple[str, Iterator[CrawlDatum]]]:
        merged = heapq.merge(*streams, key=itemgetter(0))
        for key, group in itertools.groupby(merged, key=itemgetter(0)):
            yield key, (datum for _, datum in group)

    def _counted(self, values: Iterator[CrawlDatum]) -> Iterator[CrawlDatum]:
        for value in values:
            self._counters.increment("reduce_input_records")
            yield value

    def _reduce_task(self, partition: int, spills: list[dict[int, Path]]) -> int:
        streams = [read_partition(task[partition]) for task in spills if partition in task]
        path = Path(self.spec.output_dir) / get_partition_filename(partition, self.spec.compression)
        with AtomicPartitionWriter(path, self.spec.compression) as writer:
            for key, values in self._grouped(streams):
                self._check_running()
                self._counters.increment("reduce_input_groups")
                writer.write(key, self.spec.reducer(key, self._counted(values)))
                self._counters.increment("reduce_output_records")
        return writer.record_count


class LocalJobRunner:
    """Runs jobs in-process; each submitted job gets its own thread pool."""

    def __init__(self, workers: int = DEFAULT_WORKERS) -> None:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers

    def submit(self, spec: JobSpec) -> LocalRunningJob:
        if spec.num_partitions < 1:
            raise ValueError("num_partitions must be at least 1")
        job = LocalRunningJob(spec, self.workers)
        logger.debug("Submitting job %s", spec.name)
        job.start()
        return job
