from __future__ import annotations

from pub_archive.storage.repositories import ArticleVersion, BatchInfo, ExportBatch
from pub_archive.storage.sqlite import SQLiteStore


class ExportTracker:
    """Selection and provenance bookkeeping around one export batch.

    Selection never mutates state; marking is a separate explicit call made
    only after the downstream artifact exists.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def select_batch(self, limit: int) -> list[ArticleVersion]:
        return self.store.get_unexported_latest(limit)

    def get_batch(self, batch_name: str) -> ExportBatch | None:
        return self.store.get_export_batch(batch_name)

    def mark_exported(self, version_ids: list[str], batch_name: str) -> int:
        return self.store.mark_exported(version_ids, batch_name)

    def record_batch(self, info: BatchInfo) -> None:
        self.store.record_export_batch(info)

    def commit_batch(self, info: BatchInfo, version_ids: list[str]) -> int:
        """``record_batch`` and ``mark_exported`` as one all-or-nothing step."""
        return self.store.commit_export_batch(info, version_ids)

    def confirm_publish(self, batch_name: str, tx_id: str, alias: str | None = None) -> bool:
        return self.store.confirm_publish(batch_name, tx_id, alias)
