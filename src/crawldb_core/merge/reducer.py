"""Per-key conflict resolution for crawl store merges."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from crawldb_core.datum import CrawlDatum
from crawldb_core.engine import JobCounters
from crawldb_core.schedule import FetchSchedule

logger = logging.getLogger(__name__)


def merge_datums(datums: Iterable[CrawlDatum], schedule: FetchSchedule) -> CrawlDatum:
    """Reduce every version of one key to a single record.

    The record with the greatest last-fetch time wins and its core fields are
    copied unchanged; on equal times the first one seen stays the winner.
    For each metadata name the value kept is the one from the freshest record
    defining that name, again keeping the first one seen on equal times.

    Raises:
        ValueError: ``datums`` is empty.
    """
    iterator = iter(datums)
    try:
        winner = next(iterator)
    except StopIteration:
        raise ValueError("Cannot merge an empty group of records") from None

    winner_time = schedule.calculate_last_fetch_time(winner)
    # name -> (value, last fetch time of the record that supplied it)
    accumulated: dict[str, tuple[bytes, int]] = {
        name: (value, winner_time) for name, value in winner.metadata.items()
    }
    for datum in iterator:
        datum_time = schedule.calculate_last_fetch_time(datum)
        for name, value in datum.metadata.items():
            held = accumulated.get(name)
            if held is None or datum_time > held[1]:
                accumulated[name] = (value, datum_time)
        if datum_time > winner_time:
            winner, winner_time = datum, datum_time

    metadata = {name: value for name, (value, _) in accumulated.items()}
    if metadata == dict(winner.metadata):
        return winner
    return winner.with_metadata(metadata)


class MergeReducer:
    """Reduce callable for the merge job; counts keys and contended keys."""

    def __init__(self, schedule: FetchSchedule, counters: JobCounters | None = None) -> None:
        self.schedule = schedule
        self.counters = counters or JobCounters()

    def __call__(self, key: str, datums: Iterable[CrawlDatum]) -> CrawlDatum:
        group = list(datums)
        self.counters.increment("merge_keys")
        if len(group) > 1:
            self.counters.increment("merge_contended_keys")
            self.counters.increment("merge_dropped_versions", len(group) - 1)
            logger.debug("Resolving %d versions of %s", len(group), key)
        return merge_datums(group, self.schedule)
