from __future__ import annotations

import pytest

from crawldb_core.datum import STATUS_DB_FETCHED, STATUS_DB_GONE, STATUS_DB_UNFETCHED, CrawlDatum
from crawldb_core.exceptions import ConfigValidationError
from crawldb_core.schedule import (
    AdaptiveFetchSchedule,
    FetchSchedule,
    FetchTimeSchedule,
    available_schedules,
    get_fetch_schedule,
)


def test_unfetched_records_rank_lowest() -> None:
    datum = CrawlDatum(status=STATUS_DB_UNFETCHED, fetch_time=5_000_000, fetch_interval=60)
    assert FetchSchedule().calculate_last_fetch_time(datum) == 0


@pytest.mark.parametrize("status", [STATUS_DB_FETCHED, STATUS_DB_GONE])
def test_last_fetch_time_is_one_interval_before_next_fetch(status: int) -> None:
    datum = CrawlDatum(status=status, fetch_time=5_000_000, fetch_interval=60)
    assert FetchSchedule().calculate_last_fetch_time(datum) == 5_000_000 - 60_000


def test_fetch_time_schedule_uses_raw_fetch_time() -> None:
    datum = CrawlDatum(status=STATUS_DB_UNFETCHED, fetch_time=123, fetch_interval=60)
    assert FetchTimeSchedule().calculate_last_fetch_time(datum) == 123


def test_get_fetch_schedule_by_name() -> None:
    assert type(get_fetch_schedule()) is FetchSchedule
    assert isinstance(get_fetch_schedule("Adaptive"), AdaptiveFetchSchedule)
    assert isinstance(get_fetch_schedule("fetch_time"), FetchTimeSchedule)
    assert available_schedules() == ["adaptive", "default", "fetch_time"]


def test_unknown_schedule_is_a_config_error() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        get_fetch_schedule("nope")
    assert excinfo.value.context["schedule"] == "nope"
