from __future__ import annotations

import logging

from pub_archive.shared.errors import StorageError
from pub_archive.storage.repositories import ScrapeRunStats
from pub_archive.storage.sqlite import SQLiteStore

logger = logging.getLogger(__name__)


class ScrapeRunRecorder:
    """Reads and appends scrape-run bookkeeping.

    ``record_run`` never raises: losing a bookkeeping row must not turn an
    otherwise successful reconciliation pass into a failure.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def get_last_scrape_date(self) -> str | None:
        return self.store.get_last_scrape_date()

    def record_run(self, stats: ScrapeRunStats, *, scrape_date: str | None = None) -> bool:
        try:
            self.store.record_scrape_run(stats, scrape_date=scrape_date)
        except StorageError as exc:
            logger.error("Failed to record scrape run: %s", exc)
            return False
        return True
