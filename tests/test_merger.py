from __future__ import annotations

import threading
from pathlib import Path

import pytest

from crawldb_core.config import CrawlDbConfig, MergeSettings
from crawldb_core.datum import STATUS_DB_FETCHED, STATUS_DB_GONE, CrawlDatum
from crawldb_core.engine import JobCounters, JobSpec, JobStatus, LocalJobRunner
from crawldb_core.exceptions import EngineFailureError, InvalidInputError, StoreLockedError
from crawldb_core.merge import CrawlDbMerger, MergeResult
from crawldb_core.store import CURRENT_NAME, LOCK_NAME, OLD_NAME, current_dir, lock_store, read_store


def fetched(freshness: int, metadata: dict[str, bytes] | None = None, **fields) -> CrawlDatum:
    fields.setdefault("status", STATUS_DB_FETCHED)
    return CrawlDatum(fetch_time=freshness, fetch_interval=0, metadata=metadata or {}, **fields)


def _records(db: Path) -> dict[str, CrawlDatum]:
    return dict(read_store(db))


class FailingJob:
    def __init__(self) -> None:
        self.counters = JobCounters()
        self.status = JobStatus("FAILED", "disk full")

    def wait_for_completion(self, timeout: float | None = None) -> bool:
        return False

    def kill(self) -> None:
        pass


class FailingEngine:
    def __init__(self) -> None:
        self.submitted: list[JobSpec] = []

    def submit(self, spec: JobSpec) -> FailingJob:
        self.submitted.append(spec)
        (spec.output_dir / "part-r-00000.jsonl").write_text("partial\n", encoding="utf-8")
        return FailingJob()


class InterruptedJob:
    def __init__(self) -> None:
        self.counters = JobCounters()
        self.status = JobStatus("RUNNING")
        self.killed = False
        self.waits = 0

    def wait_for_completion(self, timeout: float | None = None) -> bool:
        self.waits += 1
        if self.waits == 1:
            raise KeyboardInterrupt
        return False

    def kill(self) -> None:
        self.killed = True
        self.status = JobStatus("KILLED", "killed by user")


class InterruptedEngine:
    def __init__(self) -> None:
        self.submitted: list[JobSpec] = []
        self.job = InterruptedJob()

    def submit(self, spec: JobSpec) -> InterruptedJob:
        self.submitted.append(spec)
        (spec.output_dir / "part-r-00000.jsonl").write_text("partial\n", encoding="utf-8")
        return self.job


def test_merge_keeps_freshest_record_and_all_metadata(make_store, tmp_path: Path) -> None:
    a = make_store("a", [("http://x/", fetched(10, {"a": b"1"}, score=1.0)), ("http://only-a/", fetched(1))])
    b = make_store("b", [("http://x/", fetched(20, {"b": b"2"}, score=2.0))], num_partitions=2)
    output = tmp_path / "merged"

    result = CrawlDbMerger().merge(output, [a, b])

    records = _records(output)
    assert set(records) == {"http://x/", "http://only-a/"}
    assert records["http://x/"].score == 2.0
    assert dict(records["http://x/"].metadata) == {"a": b"1", "b": b"2"}
    assert result.generation.resolve() == current_dir(output)
    assert result.counters["merge_contended_keys"] == 1
    assert result.counters["reduce_output_records"] == 2
    assert not (output / LOCK_NAME).exists()
    assert result.to_dict()["inputs"] == [str(a), str(b)]


def test_merge_is_idempotent(make_store, tmp_path: Path) -> None:
    a = make_store("a", [(f"http://x/{i}", fetched(i, {"i": str(i).encode()})) for i in range(25)])
    b = make_store("b", [(f"http://x/{i}", fetched(50 - i)) for i in range(10, 40)])
    once = tmp_path / "once"
    twice = tmp_path / "twice"

    CrawlDbMerger().merge(once, [a, b])
    CrawlDbMerger().merge(twice, [once])

    assert _records(twice) == _records(once)


def test_single_input_without_filtering_is_a_copy(make_store, tmp_path: Path) -> None:
    source = {f"http://x/{i}": fetched(i, signature=bytes([i])) for i in range(10)}
    a = make_store("a", source.items(), num_partitions=3)
    output = tmp_path / "copy"

    CrawlDbMerger().merge(output, [a])

    assert _records(output) == source


def test_merge_into_existing_store_keeps_backup(make_store) -> None:
    a = make_store("a", [("http://x/", fetched(1))])
    b = make_store("b", [("http://y/", fetched(2))])

    CrawlDbMerger().merge(a, [a, b])

    assert set(_records(a)) == {"http://x/", "http://y/"}
    assert (a / OLD_NAME).is_symlink()
    assert len([p for p in a.iterdir() if p.name.startswith("merge-")]) == 2


def test_filter_and_normalize(make_store, tmp_path: Path) -> None:
    a = make_store(
        "a",
        [
            ("HTTP://Keep.example/", fetched(5, {"a": b"1"})),
            ("http://drop.example/", fetched(5)),
            ("http://gone.example/", fetched(5, status=STATUS_DB_GONE)),
        ],
    )
    b = make_store("b", [("http://keep.example/", fetched(9, {"b": b"2"}))])
    config = CrawlDbConfig(
        urlfilters={"regex": ["-drop\\.example", "+."]},
        purge_gone=True,
    )
    output = tmp_path / "filtered"

    result = CrawlDbMerger(config).merge(output, [a, b], normalize=True, filter=True)

    records = _records(output)
    assert set(records) == {"http://keep.example/"}
    assert dict(records["http://keep.example/"].metadata) == {"a": b"1", "b": b"2"}
    assert result.counters["transform_records_purged"] == 1
    assert result.counters["transform_records_filtered"] == 1


def test_filter_with_accept_all_chain_passes_everything_through(make_store, tmp_path: Path) -> None:
    a = make_store(
        "a",
        [(f"http://x/{i}", fetched(i, {"i": str(i).encode()})) for i in range(20)],
        num_partitions=2,
    )
    plain = tmp_path / "plain"
    filtered = tmp_path / "filtered"

    CrawlDbMerger().merge(plain, [a])
    result = CrawlDbMerger().merge(filtered, [a], filter=True)

    assert _records(filtered) == _records(plain)
    assert result.counters.get("transform_records_filtered", 0) == 0
    assert result.counters["transform_records_emitted"] == 20


def test_empty_input_list_is_rejected_before_locking(tmp_path: Path) -> None:
    output = tmp_path / "out"
    with pytest.raises(InvalidInputError):
        CrawlDbMerger().merge(output, [])
    assert not output.exists()


def test_engine_failure_discards_output_and_releases_lock(make_store, tmp_path: Path) -> None:
    a = make_store("a", [("http://x/", fetched(1))])
    output = tmp_path / "out"
    engine = FailingEngine()

    with pytest.raises(EngineFailureError) as excinfo:
        CrawlDbMerger(engine=engine).merge(output, [a])

    assert str(excinfo.value) == (
        "CrawlDb merge job did not succeed, job status: FAILED, reason: disk full"
    )
    assert excinfo.value.context == {"state": "FAILED", "reason": "disk full"}
    assert not engine.submitted[0].output_dir.exists()
    assert list(output.iterdir()) == []


def test_failed_merge_leaves_previous_snapshot(make_store) -> None:
    a = make_store("a", [("http://x/", fetched(1))])
    before = current_dir(a)

    with pytest.raises(EngineFailureError):
        CrawlDbMerger(engine=FailingEngine()).merge(a, [a])

    assert current_dir(a) == before
    assert set(_records(a)) == {"http://x/"}
    assert not (a / LOCK_NAME).exists()


def test_interrupted_wait_kills_job_and_keeps_previous_snapshot(make_store) -> None:
    a = make_store("a", [("http://x/", fetched(1))])
    before = current_dir(a)
    engine = InterruptedEngine()

    with pytest.raises(KeyboardInterrupt):
        CrawlDbMerger(engine=engine).merge(a, [a])

    assert engine.job.killed
    assert engine.job.waits == 2
    assert not engine.submitted[0].output_dir.exists()
    assert not (a / LOCK_NAME).exists()
    assert current_dir(a) == before
    assert set(_records(a)) == {"http://x/"}


def test_missing_current_in_input_fails_the_job(tmp_path: Path) -> None:
    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(EngineFailureError) as excinfo:
        CrawlDbMerger().merge(tmp_path / "out", [empty])

    assert excinfo.value.context["state"] == "FAILED"
    assert not (tmp_path / "out" / CURRENT_NAME).exists()


def test_locked_output_is_rejected(make_store, tmp_path: Path) -> None:
    a = make_store("a", [("http://x/", fetched(1))])
    output = tmp_path / "out"
    lock_store(output, job_name="other merge")

    with pytest.raises(StoreLockedError):
        CrawlDbMerger().merge(output, [a])

    assert [p.name for p in output.iterdir()] == [LOCK_NAME]


def test_concurrent_merges_into_one_store(make_store, tmp_path: Path) -> None:
    a = make_store("a", [(f"http://x/{i}", fetched(i)) for i in range(50)])
    output = tmp_path / "out"
    barrier = threading.Barrier(2)
    outcomes: list[object] = []

    def run() -> None:
        barrier.wait()
        try:
            outcomes.append(CrawlDbMerger().merge(output, [a]))
        except StoreLockedError as exc:
            outcomes.append(exc)

    threads = [threading.Thread(target=run) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(outcomes) == 2
    assert any(isinstance(o, MergeResult) for o in outcomes)
    assert all(isinstance(o, (MergeResult, StoreLockedError)) for o in outcomes)
    assert len(_records(output)) == 50
    assert not (output / LOCK_NAME).exists()


def test_partition_count_comes_from_config(make_store, tmp_path: Path) -> None:
    a = make_store("a", [(f"http://x/{i}", fetched(i)) for i in range(10)])
    config = CrawlDbConfig(merge=MergeSettings(reduce_partitions=3, compression="gzip"))
    merger = CrawlDbMerger(config, engine=LocalJobRunner(workers=2))

    result = merger.merge(tmp_path / "out", [a])

    names = sorted(p.name for p in result.generation.iterdir() if p.name.startswith("part-"))
    assert names == [f"part-r-0000{i}.jsonl.gz" for i in range(3)]
