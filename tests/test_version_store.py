from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from pub_archive.ingest.models import ArticleRecord
from pub_archive.shared.errors import StorageError, ValidationError
from pub_archive.storage.repositories import BatchInfo, ScrapeRunStats
from pub_archive.storage.sqlite import SQLiteStore


def _record(
    article_id: str = "a1",
    slug: str = "s1",
    updated_at: str = "2024-01-01",
    **overrides: object,
) -> ArticleRecord:
    values: dict[str, object] = {
        "article_id": article_id,
        "slug": slug,
        "title": f"Title {article_id}",
        "description": "Short description",
        "abstract": "Short description",
        "created_at": "2024-01-01",
        "updated_at": updated_at,
        "published_at": "2024-01-01",
        "content_text": "Short description",
    }
    values.update(overrides)
    return ArticleRecord(**values)


def _rows(store: SQLiteStore, article_id: str) -> list[tuple[int, int]]:
    rows = store.conn.execute(
        "SELECT version_number, is_latest_version FROM articles WHERE article_id = ? ORDER BY version_number",
        (article_id,),
    ).fetchall()
    return [(int(row["version_number"]), int(row["is_latest_version"])) for row in rows]


def test_upsert_inserts_then_versions_then_detects_unchanged(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()

        first = store.upsert_article(_record(updated_at="2024-01-01"))
        assert first.action == "inserted"
        assert first.version_number == 1
        assert first.version_id == "a1_v1"

        second = store.upsert_article(_record(updated_at="2024-02-01"))
        assert second.action == "updated"
        assert second.version_number == 2
        assert _rows(store, "a1") == [(1, 0), (2, 1)]

        third = store.upsert_article(_record(updated_at="2024-02-01"))
        assert third.action == "unchanged"
        assert third.version_number == 2
        assert _rows(store, "a1") == [(1, 0), (2, 1)]
    finally:
        store.close()


def test_full_text_change_creates_new_version_with_same_timestamp(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(content_text_full="original body"))

        result = store.upsert_article(_record(content_text_full="revised body"))

        assert result.action == "updated"
        assert [v.content_text_full for v in store.list_versions("a1")] == ["original body", "revised body"]
    finally:
        store.close()


def test_version_numbers_have_no_gaps_and_one_latest(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        for month in range(1, 6):
            store.upsert_article(_record(updated_at=f"2024-0{month}-01"))
            store.upsert_article(_record(updated_at=f"2024-0{month}-01"))
        store.upsert_article(_record(article_id="b1", slug="s2"))

        assert [number for number, _ in _rows(store, "a1")] == [1, 2, 3, 4, 5]
        assert [latest for _, latest in _rows(store, "a1")] == [0, 0, 0, 0, 1]
        assert store.find_latest_anomalies() == []
        assert {(v.article_id, v.version_number) for v in store.get_latest()} == {("a1", 5), ("b1", 1)}
    finally:
        store.close()


def test_upsert_rejects_missing_identity_fields(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()

        with pytest.raises(ValidationError) as excinfo:
            store.upsert_article(_record(article_id="  "))
        assert excinfo.value.field == "article_id"

        with pytest.raises(ValidationError):
            store.upsert_article(_record(slug=""))

        assert store.conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0] == 0
    finally:
        store.close()


def test_unchanged_upsert_refreshes_last_checked_only(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(), now="2024-01-01T00:00:00.000Z")
        store.upsert_article(_record(), now="2024-03-01T00:00:00.000Z")

        versions = store.list_versions("a1")
        assert len(versions) == 1
        assert versions[0].scraped_at == "2024-01-01T00:00:00.000Z"
        assert versions[0].last_checked == "2024-03-01T00:00:00.000Z"
    finally:
        store.close()


def test_new_version_leaves_superseded_row_untouched(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(), now="2024-01-01T00:00:00.000Z")
        store.upsert_article(_record(updated_at="2024-02-01"), now="2024-03-01T00:00:00.000Z")

        first, second = store.list_versions("a1")
        assert first.is_latest_version is False
        assert first.last_checked == "2024-01-01T00:00:00.000Z"
        assert second.last_checked == "2024-03-01T00:00:00.000Z"
    finally:
        store.close()


def test_inferred_timestamp_is_not_compared(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(updated_at="2024-05-01T00:00:00.000Z", updated_at_inferred=True))

        again = store.upsert_article(_record(updated_at="2024-05-02T00:00:00.000Z", updated_at_inferred=True))
        edited = store.upsert_article(
            _record(updated_at="2024-05-03T00:00:00.000Z", updated_at_inferred=True, content_text="Edited")
        )

        assert again.action == "unchanged"
        assert edited.action == "updated"
        assert edited.version_number == 2
    finally:
        store.close()


def test_keep_full_text_carries_stored_body_forward(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(
            _record(
                abstract="Full body",
                content_text_full="Full body",
                word_count=2,
                attachments_json='[{"url": "https://cdn.example.org/a1.pdf"}]',
                attachment_count=1,
                pdf_url="https://cdn.example.org/a1.pdf",
            )
        )

        unchanged = store.upsert_article(_record(), keep_full_text=True)
        updated = store.upsert_article(_record(updated_at="2024-02-01"), keep_full_text=True)

        assert unchanged.action == "unchanged"
        assert updated.action == "updated"
        latest = store.list_versions("a1")[-1]
        assert latest.version_number == 2
        assert latest.content_text_full == "Full body"
        assert latest.abstract == "Full body"
        assert latest.word_count == 2
        assert latest.attachment_count == 1
        assert latest.pdf_url == "https://cdn.example.org/a1.pdf"
    finally:
        store.close()


def test_change_detector_is_pluggable(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3", change_detector=lambda existing, record: False)
    try:
        store.create_schema()
        store.upsert_article(_record(updated_at="2024-01-01"))

        result = store.upsert_article(_record(updated_at="2024-09-09"))

        assert result.action == "unchanged"
        assert result.version_number == 1
    finally:
        store.close()


def test_storage_failures_are_wrapped(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    store.create_schema()
    store.close()

    with pytest.raises(StorageError) as excinfo:
        store.upsert_article(_record())
    assert isinstance(excinfo.value.__cause__, sqlite3.Error)


def test_unexported_latest_excludes_marked_rows(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(updated_at="2024-01-01"))
        store.upsert_article(_record(updated_at="2024-02-01"))

        selected = store.get_unexported_latest(10)
        assert [v.version_id for v in selected] == ["a1_v2"]

        assert store.mark_exported(["a1_v2"], "batch-1") == 1
        assert store.get_unexported_latest(10) == []
    finally:
        store.close()


def test_unexported_latest_orders_by_published_desc_with_nulls_last(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(article_id="old", slug="old", published_at="2023-01-01"))
        store.upsert_article(_record(article_id="undated", slug="undated", published_at=None))
        store.upsert_article(_record(article_id="new", slug="new", published_at="2024-06-01"))

        assert [v.article_id for v in store.get_unexported_latest(10)] == ["new", "old", "undated"]
        assert [v.article_id for v in store.get_unexported_latest(2)] == ["new", "old"]
        assert [v.article_id for v in store.get_latest()] == ["new", "old", "undated"]
    finally:
        store.close()


def test_mark_exported_keeps_first_batch_and_ignores_unknown_ids(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record())

        assert store.mark_exported(["a1_v1"], "batch-1", now="2024-03-01T00:00:00.000Z") == 1
        assert store.mark_exported(["a1_v1"], "batch-2", now="2024-04-01T00:00:00.000Z") == 0
        assert store.mark_exported(["missing_v1"], "batch-3") == 0
        assert store.mark_exported([], "batch-4") == 0

        version = store.list_versions("a1")[0]
        assert version.exported is True
        assert version.export_batch == "batch-1"
        assert version.export_date == "2024-03-01T00:00:00.000Z"
    finally:
        store.close()


def test_repair_resolves_two_latest_rows_to_highest_version(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(updated_at="2024-01-01"))
        store.upsert_article(_record(updated_at="2024-02-01"))
        store.conn.execute("UPDATE articles SET is_latest_version = 1 WHERE id = 'a1_v1'")

        anomalies = store.find_latest_anomalies()
        assert [(a.article_id, a.latest_rows, a.max_version_number) for a in anomalies] == [("a1", 2, 2)]

        assert store.repair_latest_flags() == ["a1"]
        assert _rows(store, "a1") == [(1, 0), (2, 1)]
        assert store.repair_latest_flags() == []
    finally:
        store.close()


def test_repair_resolves_zero_latest_rows_and_wrong_latest(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(updated_at="2024-01-01"))
        store.upsert_article(_record(updated_at="2024-02-01"))
        store.upsert_article(_record(article_id="b1", slug="b1", updated_at="2024-01-01"))
        store.upsert_article(_record(article_id="b1", slug="b1", updated_at="2024-02-01"))
        store.conn.execute("UPDATE articles SET is_latest_version = 0 WHERE article_id = 'a1'")
        store.conn.execute(
            """
            UPDATE articles
            SET is_latest_version = CASE WHEN version_number = 1 THEN 1 ELSE 0 END
            WHERE article_id = 'b1'
            """
        )

        assert store.repair_latest_flags() == ["a1", "b1"]
        assert _rows(store, "a1") == [(1, 0), (2, 1)]
        assert _rows(store, "b1") == [(1, 0), (2, 1)]
    finally:
        store.close()


def test_slug_lookup_and_version_listing(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record(updated_at="2024-01-01", title="First title"))
        store.upsert_article(_record(updated_at="2024-02-01", title="Second title"))

        latest = store.get_article_by_slug("s1")
        assert latest is not None
        assert latest.version_id == "a1_v2"
        assert latest.title == "Second title"
        assert store.get_article_by_slug("missing") is None
        assert [v.version_number for v in store.list_versions("a1")] == [1, 2]
    finally:
        store.close()


def test_export_batches_and_publish_confirmation(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record())
        store.mark_exported(["a1_v1"], "batch-1")
        store.record_export_batch(
            BatchInfo(
                batch_name="batch-1",
                export_date="2024-03-01T00:00:00.000Z",
                article_count=1,
                file_path="data/export/batch-1.parquet",
                file_size_bytes=3 * 1024 * 1024,
            )
        )

        with pytest.raises(StorageError):
            store.record_export_batch(
                BatchInfo(
                    batch_name="batch-1",
                    export_date="2024-03-02T00:00:00.000Z",
                    article_count=0,
                    file_path=None,
                    file_size_bytes=None,
                )
            )

        assert store.confirm_publish("batch-1", "tx-123", "data", now="2024-03-03T00:00:00.000Z") is True
        assert store.confirm_publish("batch-unknown", "tx-999", "data") is False

        batch = store.get_export_batch("batch-1")
        assert batch is not None
        assert batch.file_size_mb == 3.0
        assert batch.publish_tx_id == "tx-123"
        assert batch.publish_alias == "data"
        assert batch.uploaded_at == "2024-03-03T00:00:00.000Z"
        assert store.list_versions("a1")[0].publish_tx_id == "tx-123"
    finally:
        store.close()


def test_commit_export_batch_is_all_or_nothing(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        store.upsert_article(_record("a1", "s1"))
        store.upsert_article(_record("b2", "s2"))

        def info(name: str) -> BatchInfo:
            return BatchInfo(
                batch_name=name,
                export_date="2024-03-01T00:00:00.000Z",
                article_count=1,
                file_path=f"data/export/{name}.parquet",
                file_size_bytes=1024,
            )

        assert store.commit_export_batch(info("batch-1"), ["a1_v1"]) == 1
        with pytest.raises(StorageError):
            store.commit_export_batch(info("batch-1"), ["b2_v1"])

        b2 = store.list_versions("b2")[0]
        assert b2.exported is False
        assert b2.export_batch is None
        a1 = store.list_versions("a1")[0]
        assert a1.export_batch == "batch-1"
        assert a1.export_date == "2024-03-01T00:00:00.000Z"
        assert [batch.batch_name for batch in store.list_export_batches()] == ["batch-1"]
    finally:
        store.close()


def test_scrape_runs_and_stats(tmp_path: Path) -> None:
    store = SQLiteStore(tmp_path / "test.sqlite3")
    try:
        store.create_schema()
        assert store.get_last_scrape_date() is None

        store.upsert_article(_record(updated_at="2024-01-01"))
        store.upsert_article(_record(updated_at="2024-02-01"))
        store.upsert_article(_record(article_id="b1", slug="b1"))
        store.record_scrape_run(ScrapeRunStats(3, 2, 1, 1.5), scrape_date="2024-02-01T00:00:00.000Z")
        store.record_scrape_run(ScrapeRunStats(0, 0, 0, 0.2), scrape_date="2024-03-01T00:00:00.000Z")

        assert store.get_last_scrape_date() == "2024-03-01T00:00:00.000Z"

        stats = store.get_stats()
        assert stats["total_versions"] == 3
        assert stats["unique_articles"] == 2
        assert stats["latest_articles"] == 2
        assert stats["unexported_latest"] == 2
        assert stats["batch_count"] == 0
        assert stats["scrape_runs"] == 2
    finally:
        store.close()


def test_create_schema_backfills_older_database(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE articles (
            id TEXT PRIMARY KEY,
            article_id TEXT NOT NULL,
            slug TEXT NOT NULL,
            version_number INTEGER NOT NULL DEFAULT 1,
            version_timestamp TEXT NOT NULL,
            is_latest_version INTEGER NOT NULL DEFAULT 1,
            title TEXT NOT NULL,
            description TEXT,
            abstract TEXT,
            doi TEXT,
            license TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            published_at TEXT,
            content_text TEXT,
            content_json TEXT,
            authors_json TEXT,
            author_count INTEGER DEFAULT 0,
            collections_json TEXT,
            collection_count INTEGER DEFAULT 0,
            keywords_json TEXT,
            url TEXT,
            pdf_url TEXT,
            exported INTEGER NOT NULL DEFAULT 0,
            export_batch TEXT,
            export_date TEXT,
            scraped_at TEXT,
            last_checked TEXT
        );
        INSERT INTO articles (id, article_id, slug, version_number, version_timestamp, is_latest_version,
                              title, created_at, updated_at, content_text)
        VALUES ('a1_v1', 'a1', 's1', 1, '2024-01-01', 1, 'Legacy', '2024-01-01', '2024-01-01', 'Short description');
        """
    )
    conn.commit()
    conn.close()

    store = SQLiteStore(db_path)
    try:
        store.create_schema()
        store.create_schema()

        assert store.list_versions("a1")[0].word_count == 0
        result = store.upsert_article(_record(updated_at="2024-05-01"))
        assert result.action == "updated"
        assert result.version_id == "a1_v2"
    finally:
        store.close()
