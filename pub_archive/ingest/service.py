from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from pub_archive.ingest.normalize import RecordNormalizer
from pub_archive.ingest.pubpub_client import FetchReport, PubPage, StopReason
from pub_archive.shared.clock import utc_now_iso
from pub_archive.shared.errors import StorageError, ValidationError
from pub_archive.storage.repositories import ScrapeRunStats
from pub_archive.storage.scrape_runs import ScrapeRunRecorder
from pub_archive.storage.sqlite import SQLiteStore

logger = logging.getLogger(__name__)


class PubSource(Protocol):
    report: FetchReport

    def iter_pub_pages(self, since: str | None = None) -> Iterator[PubPage]: ...

    def get_pub_text(self, pub_id: str) -> dict[str, Any] | None: ...


@dataclass(slots=True)
class ScrapeSummary:
    """Counters for one reconciliation pass.

    ``errors`` counts every record that was not stored; ``skipped`` is the
    subset rejected for missing identity fields.
    """

    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    skipped: int = 0
    stop_reason: StopReason = "completed"
    last_error: str | None = None
    limit_reached: bool = False
    run_recorded: bool = False
    duration_seconds: float = 0.0

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.unchanged

    @property
    def exit_code(self) -> int:
        return 1 if self.processed == 0 and self.errors > 0 else 0


def _record_label(raw: Mapping[str, Any]) -> str:
    return str(raw.get("slug") or raw.get("id") or "<unidentified>")


class ScrapeService:
    def __init__(
        self,
        *,
        store: SQLiteStore,
        source: PubSource,
        normalizer: RecordNormalizer,
        recorder: ScrapeRunRecorder,
        fetch_full_text: bool = True,
        clock: Callable[[], float] = time.monotonic,
        now_fn: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.store = store
        self.source = source
        self.normalizer = normalizer
        self.recorder = recorder
        self.fetch_full_text = fetch_full_text
        self.clock = clock
        self.now_fn = now_fn

    def _process(self, raw: Mapping[str, Any], summary: ScrapeSummary) -> None:
        pub_id = raw.get("id")
        prosemirror_doc = None
        text_missing = False
        if self.fetch_full_text and isinstance(pub_id, str) and pub_id and raw.get("slug"):
            prosemirror_doc = self.source.get_pub_text(pub_id)
            text_missing = prosemirror_doc is None

        try:
            record = self.normalizer.normalize(raw, prosemirror_doc=prosemirror_doc)
            result = self.store.upsert_article(record, keep_full_text=text_missing)
        except ValidationError as exc:
            summary.errors += 1
            summary.skipped += 1
            logger.warning("Skipping record %s: %s", _record_label(raw), exc.reason)
            return
        except StorageError as exc:
            summary.errors += 1
            summary.last_error = str(exc)
            logger.error("Failed to store %s: %s", _record_label(raw), exc)
            return

        if result.action == "inserted":
            summary.inserted += 1
        elif result.action == "updated":
            summary.updated += 1
            logger.info("%s changed; stored as version %d", record.slug, result.version_number)
        else:
            summary.unchanged += 1

    def run(self, *, limit: int | None = None, incremental: bool = False) -> ScrapeSummary:
        """Fetch, normalize and reconcile every record the source yields.

        A pass that stopped early (retry exhaustion, aborted fetch or the
        record limit) is not recorded as a scrape run, so the next incremental
        pass still covers the window this one did not finish.
        """
        started = self.clock()
        started_at = self.now_fn()
        summary = ScrapeSummary()

        since = self.recorder.get_last_scrape_date() if incremental else None
        if incremental:
            logger.info("Incremental scrape since %s", since or "the beginning")

        for page in self.source.iter_pub_pages(since=since):
            for raw in page.records:
                if limit is not None and summary.fetched >= limit:
                    summary.limit_reached = True
                    break
                summary.fetched += 1
                self._process(raw, summary)
            if summary.limit_reached:
                break

        report = self.source.report
        if not summary.limit_reached:
            summary.stop_reason = report.stop_reason
            if report.last_error:
                summary.last_error = report.last_error
        summary.duration_seconds = round(self.clock() - started, 3)

        if summary.stop_reason == "completed" and not summary.limit_reached:
            summary.run_recorded = self.recorder.record_run(
                ScrapeRunStats(
                    total_articles=summary.fetched,
                    new_articles=summary.inserted,
                    updated_articles=summary.updated,
                    duration_seconds=summary.duration_seconds,
                ),
                scrape_date=started_at,
            )
        else:
            reason = "record limit reached" if summary.limit_reached else summary.stop_reason
            logger.warning("Scrape stopped early (%s); run not recorded", reason)

        logger.info(
            "Scrape finished: fetched=%d inserted=%d updated=%d unchanged=%d errors=%d",
            summary.fetched,
            summary.inserted,
            summary.updated,
            summary.unchanged,
            summary.errors,
        )
        return summary
