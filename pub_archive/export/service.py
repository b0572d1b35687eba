from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pub_archive.export.parquet import ParquetExporter
from pub_archive.export.tracker import ExportTracker
from pub_archive.shared.clock import utc_now_iso
from pub_archive.shared.errors import BatchExistsError, StorageError
from pub_archive.storage.repositories import BatchInfo

logger = logging.getLogger(__name__)


def default_batch_name(now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return f"batch-{moment.strftime('%Y%m%dT%H%M%SZ')}"


@dataclass(slots=True, frozen=True)
class ExportSummary:
    batch_name: str | None
    article_count: int
    marked_count: int
    file_path: Path | None
    file_size_bytes: int | None


class ExportService:
    def __init__(
        self,
        *,
        tracker: ExportTracker,
        exporter: ParquetExporter,
        now_fn: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.tracker = tracker
        self.exporter = exporter
        self.now_fn = now_fn

    def run(self, limit: int, batch_name: str | None = None) -> ExportSummary:
        """Select, write, then record and mark in one step. An empty selection produces no file and no batch."""
        articles = self.tracker.select_batch(limit)
        if not articles:
            logger.info("No unexported latest articles to export")
            return ExportSummary(
                batch_name=None,
                article_count=0,
                marked_count=0,
                file_path=None,
                file_size_bytes=None,
            )

        name = batch_name or default_batch_name()
        if self.tracker.get_batch(name) is not None:
            raise BatchExistsError(f"Export batch {name} already exists")

        result = self.exporter.write(name, articles)
        info = BatchInfo(
            batch_name=name,
            export_date=self.now_fn(),
            article_count=result.row_count,
            file_path=str(result.path),
            file_size_bytes=result.file_size_bytes,
        )
        try:
            marked = self.tracker.commit_batch(info, [article.version_id for article in articles])
        except StorageError:
            result.path.unlink(missing_ok=True)
            raise
        if marked != len(articles):
            logger.warning("Batch %s: marked %d of %d selected articles", name, marked, len(articles))

        return ExportSummary(
            batch_name=name,
            article_count=result.row_count,
            marked_count=marked,
            file_path=result.path,
            file_size_bytes=result.file_size_bytes,
        )
