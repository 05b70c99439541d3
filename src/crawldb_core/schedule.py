"""Freshness policies used to rank competing versions of a crawl record."""

from __future__ import annotations

from crawldb_core.datum import STATUS_DB_UNFETCHED, CrawlDatum
from crawldb_core.exceptions import ConfigValidationError


class FetchSchedule:
    """Default schedule: freshness is the time the record was last fetched.

    An unfetched record was never fetched and ranks at 0. Otherwise the last
    fetch happened one interval before the scheduled next fetch.
    """

    name = "default"

    def calculate_last_fetch_time(self, datum: CrawlDatum) -> int:
        if datum.status == STATUS_DB_UNFETCHED:
            return 0
        return datum.fetch_time - datum.fetch_interval * 1000


class AdaptiveFetchSchedule(FetchSchedule):
    name = "adaptive"


class FetchTimeSchedule(FetchSchedule):
    """Ranks by the raw fetch time, for stores without reliable intervals."""

    name = "fetch_time"

    def calculate_last_fetch_time(self, datum: CrawlDatum) -> int:
        return datum.fetch_time


_SCHEDULES: dict[str, type[FetchSchedule]] = {
    FetchSchedule.name: FetchSchedule,
    AdaptiveFetchSchedule.name: AdaptiveFetchSchedule,
    FetchTimeSchedule.name: FetchTimeSchedule,
}


def available_schedules() -> list[str]:
    return sorted(_SCHEDULES)


def get_fetch_schedule(name: str | None = None) -> FetchSchedule:
    key = (name or FetchSchedule.name).strip().lower()
    schedule_cls = _SCHEDULES.get(key)
    if schedule_cls is None:
        raise ConfigValidationError(
            f"Unknown fetch schedule {name!r}; expected one of {', '.join(available_schedules())}",
            context={"schedule": name, "available": available_schedules()},
        )
    return schedule_cls()
