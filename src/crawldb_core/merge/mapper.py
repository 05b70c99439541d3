"""Key transform stage: optional purge, normalization and filtering of keys."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from crawldb_core.datum import STATUS_DB_GONE, STATUS_DB_ORPHAN, CrawlDatum
from crawldb_core.engine import JobCounters
from crawldb_core.redaction import redact_url
from crawldb_core.urlfilters import URLFilters, URLNormalizers

logger = logging.getLogger(__name__)


class CrawlDbFilter:
    """Map callable of the merge job.

    Emits ``(key, datum)`` with the key normalized and/or filtered, or nothing
    when the record is purged, rejected by a filter, or a policy raised.
    """

    def __init__(
        self,
        url_filters: URLFilters | None = None,
        url_normalizers: URLNormalizers | None = None,
        *,
        filtering: bool = False,
        normalizing: bool = False,
        purge_gone: bool = False,
        purge_orphans: bool = False,
        counters: JobCounters | None = None,
    ) -> None:
        self.url_filters = url_filters or URLFilters()
        self.url_normalizers = url_normalizers or URLNormalizers()
        self.filtering = filtering
        self.normalizing = normalizing
        self.purge_gone = purge_gone
        self.purge_orphans = purge_orphans
        self.counters = counters or JobCounters()

    def __call__(self, url: str, datum: CrawlDatum) -> Iterator[tuple[str, CrawlDatum]]:
        self.counters.increment("transform_records_read")
        if (self.purge_gone and datum.status == STATUS_DB_GONE) or (
            self.purge_orphans and datum.status == STATUS_DB_ORPHAN
        ):
            self.counters.increment("transform_records_purged")
            return

        key: str | None = url
        if self.normalizing:
            try:
                key = self.url_normalizers.normalize(url)
            except Exception as exc:
                logger.warning("Skipping %s: normalizer failed: %s", redact_url(url), exc)
                self.counters.increment("transform_normalize_errors")
                return
            if key != url:
                self.counters.increment("transform_keys_normalized")

        if self.filtering and key is not None:
            try:
                key = self.url_filters.filter(key)
            except Exception as exc:
                logger.warning("Skipping %s: filter failed: %s", redact_url(url), exc)
                self.counters.increment("transform_filter_errors")
                return

        if not key:
            self.counters.increment("transform_records_filtered")
            return
        self.counters.increment("transform_records_emitted")
        yield key, datum
