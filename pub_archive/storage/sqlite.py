from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pub_archive.ingest.models import ArticleRecord
from pub_archive.shared.clock import utc_now_iso
from pub_archive.shared.errors import StorageError, ValidationError
from pub_archive.storage.repositories import (
    ArticleVersion,
    BatchInfo,
    ChangeDetector,
    ExportBatch,
    LatestAnomaly,
    ScrapeRunStats,
    UpsertResult,
    build_version_id,
    carry_full_text,
    default_change_detector,
)

logger = logging.getLogger(__name__)

LATEST_ORDER_BY = "ORDER BY published_at IS NULL, published_at DESC, id ASC"

ARTICLE_INSERT_COLUMNS: tuple[str, ...] = (
    "id",
    "article_id",
    "slug",
    "version_number",
    "version_timestamp",
    "is_latest_version",
    "title",
    "description",
    "abstract",
    "doi",
    "license",
    "avatar",
    "created_at",
    "updated_at",
    "published_at",
    "content_text",
    "content_json",
    "content_prosemirror",
    "content_text_full",
    "word_count",
    "authors_json",
    "author_count",
    "collections_json",
    "collection_count",
    "keywords_json",
    "attachments_json",
    "attachment_count",
    "url",
    "pdf_url",
    "scraped_at",
    "last_checked",
)


class SQLiteStore:
    """Append-only article version history plus export and scrape bookkeeping.

    Each ``upsert_article`` call is a single ``BEGIN IMMEDIATE`` transaction,
    so flipping the previous latest row and inserting the new one are never
    observed separately. ``repair_latest_flags`` restores the one-latest-row
    invariant for files written by anything that did not honour that.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        check_same_thread: bool = True,
        change_detector: ChangeDetector = default_change_detector,
    ) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self.change_detector = change_detector

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def _table_columns(self, table: str) -> set[str]:
        rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
        return {str(row["name"]) for row in rows}

    def _has_column(self, table: str, column: str) -> bool:
        return column in self._table_columns(table)

    def _ensure_column(self, table: str, column: str, column_def: str) -> None:
        if self._has_column(table, column):
            return
        self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column_def}")

    def create_schema(self) -> None:
        self.conn.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS articles (
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
                avatar TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                published_at TEXT,
                content_text TEXT,
                content_json TEXT,
                content_prosemirror TEXT,
                content_text_full TEXT,
                word_count INTEGER DEFAULT 0,
                authors_json TEXT,
                author_count INTEGER DEFAULT 0,
                collections_json TEXT,
                collection_count INTEGER DEFAULT 0,
                keywords_json TEXT,
                attachments_json TEXT,
                attachment_count INTEGER DEFAULT 0,
                url TEXT,
                pdf_url TEXT,
                exported INTEGER NOT NULL DEFAULT 0,
                export_batch TEXT,
                export_date TEXT,
                publish_tx_id TEXT,
                publish_alias TEXT,
                scraped_at TEXT,
                last_checked TEXT
            );

            CREATE TABLE IF NOT EXISTS export_batches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                batch_name TEXT UNIQUE NOT NULL,
                export_date TEXT NOT NULL,
                article_count INTEGER NOT NULL DEFAULT 0,
                file_path TEXT,
                file_size_bytes INTEGER,
                file_size_mb REAL,
                publish_tx_id TEXT,
                publish_alias TEXT,
                uploaded_at TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS scrape_metadata (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                scrape_date TEXT NOT NULL,
                total_articles INTEGER NOT NULL DEFAULT 0,
                new_articles INTEGER NOT NULL DEFAULT 0,
                updated_articles INTEGER NOT NULL DEFAULT 0,
                duration_seconds REAL,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );
            """
        )

        # Best-effort compatibility with older local DB files.
        self._ensure_column("articles", "avatar", "avatar TEXT")
        self._ensure_column("articles", "content_prosemirror", "content_prosemirror TEXT")
        self._ensure_column("articles", "content_text_full", "content_text_full TEXT")
        self._ensure_column("articles", "word_count", "word_count INTEGER DEFAULT 0")
        self._ensure_column("articles", "attachments_json", "attachments_json TEXT")
        self._ensure_column("articles", "attachment_count", "attachment_count INTEGER DEFAULT 0")
        self._ensure_column("articles", "publish_tx_id", "publish_tx_id TEXT")
        self._ensure_column("articles", "publish_alias", "publish_alias TEXT")
        self._ensure_column("export_batches", "publish_tx_id", "publish_tx_id TEXT")
        self._ensure_column("export_batches", "publish_alias", "publish_alias TEXT")

        self.conn.executescript(
            """
            CREATE INDEX IF NOT EXISTS idx_articles_article_id ON articles(article_id);
            CREATE INDEX IF NOT EXISTS idx_articles_slug ON articles(slug);
            CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_version ON articles(article_id, version_number);
            CREATE INDEX IF NOT EXISTS idx_articles_latest ON articles(is_latest_version);
            CREATE INDEX IF NOT EXISTS idx_articles_exported ON articles(exported);
            CREATE INDEX IF NOT EXISTS idx_articles_export_batch ON articles(export_batch);
            CREATE INDEX IF NOT EXISTS idx_articles_published ON articles(published_at);
            """
        )

    def _latest_row(self, article_id: str) -> sqlite3.Row | None:
        return self.conn.execute(
            """
            SELECT *
            FROM articles
            WHERE article_id = ?
            ORDER BY version_number DESC
            LIMIT 1
            """,
            (article_id,),
        ).fetchone()

    def _insert_version(self, record: ArticleRecord, *, version_number: int, now: str) -> str:
        version_id = build_version_id(record.article_id, version_number)
        values: dict[str, Any] = record.model_dump()
        values.update(
            {
                "id": version_id,
                "version_number": version_number,
                "version_timestamp": record.updated_at,
                "is_latest_version": 1,
                "scraped_at": now,
                "last_checked": now,
            }
        )
        placeholders = ", ".join(f":{column}" for column in ARTICLE_INSERT_COLUMNS)
        self.conn.execute(
            f"INSERT INTO articles ({', '.join(ARTICLE_INSERT_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        return version_id

    def upsert_article(
        self,
        record: ArticleRecord,
        *,
        now: str | None = None,
        keep_full_text: bool = False,
    ) -> UpsertResult:
        """Reconcile ``record`` against the stored history for its article id.

        With ``keep_full_text`` the stored body of the latest version stands in
        for the record's, for callers whose body fetch failed.
        """
        if not record.article_id.strip():
            raise ValidationError("Record is missing required field 'article_id'", field="article_id")
        if not record.slug.strip():
            raise ValidationError("Record is missing required field 'slug'", field="slug")

        timestamp = now or utc_now_iso()
        try:
            with self._transaction() as conn:
                existing = self._latest_row(record.article_id)

                if existing is None:
                    version_id = self._insert_version(record, version_number=1, now=timestamp)
                    return UpsertResult(action="inserted", version_number=1, version_id=version_id)

                current_version = int(existing["version_number"])
                if keep_full_text:
                    record = carry_full_text(existing, record)
                if not self.change_detector(existing, record):
                    conn.execute(
                        "UPDATE articles SET last_checked = ? WHERE id = ?",
                        (timestamp, existing["id"]),
                    )
                    return UpsertResult(
                        action="unchanged",
                        version_number=current_version,
                        version_id=str(existing["id"]),
                    )

                conn.execute(
                    "UPDATE articles SET is_latest_version = 0 WHERE article_id = ? AND is_latest_version = 1",
                    (record.article_id,),
                )
                next_version = current_version + 1
                version_id = self._insert_version(record, version_number=next_version, now=timestamp)
                return UpsertResult(action="updated", version_number=next_version, version_id=version_id)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to upsert article {record.article_id}: {exc}") from exc

    def find_latest_anomalies(self) -> list[LatestAnomaly]:
        rows = self.conn.execute(
            """
            SELECT
                article_id,
                SUM(CASE WHEN is_latest_version = 1 THEN 1 ELSE 0 END) AS latest_rows,
                MAX(version_number) AS max_version,
                MAX(CASE WHEN is_latest_version = 1 THEN version_number END) AS max_latest_version
            FROM articles
            GROUP BY article_id
            HAVING latest_rows != 1 OR max_latest_version != max_version
            ORDER BY article_id ASC
            """
        ).fetchall()
        return [
            LatestAnomaly(
                article_id=str(row["article_id"]),
                latest_rows=int(row["latest_rows"]),
                max_version_number=int(row["max_version"]),
            )
            for row in rows
        ]

    def repair_latest_flags(self) -> list[str]:
        """Make the highest version the sole latest row for every broken article id."""
        anomalies = self.find_latest_anomalies()
        if not anomalies:
            return []
        try:
            with self._transaction() as conn:
                for anomaly in anomalies:
                    conn.execute(
                        """
                        UPDATE articles
                        SET is_latest_version = CASE WHEN version_number = ? THEN 1 ELSE 0 END
                        WHERE article_id = ?
                        """,
                        (anomaly.max_version_number, anomaly.article_id),
                    )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to repair latest-version flags: {exc}") from exc

        repaired = [anomaly.article_id for anomaly in anomalies]
        logger.warning("Repaired latest-version flags for %d article(s): %s", len(repaired), ", ".join(repaired))
        return repaired

    def get_unexported_latest(self, limit: int) -> list[ArticleVersion]:
        rows = self.conn.execute(
            f"""
            SELECT *
            FROM articles
            WHERE is_latest_version = 1 AND exported = 0
            {LATEST_ORDER_BY}
            LIMIT ?
            """,
            (max(limit, 0),),
        ).fetchall()
        return [ArticleVersion.from_row(row) for row in rows]

    def get_latest(self) -> list[ArticleVersion]:
        rows = self.conn.execute(
            f"""
            SELECT *
            FROM articles
            WHERE is_latest_version = 1
            {LATEST_ORDER_BY}
            """
        ).fetchall()
        return [ArticleVersion.from_row(row) for row in rows]

    def get_article_by_slug(self, slug: str) -> ArticleVersion | None:
        row = self.conn.execute(
            """
            SELECT *
            FROM articles
            WHERE slug = ? AND is_latest_version = 1
            ORDER BY version_number DESC
            LIMIT 1
            """,
            (slug,),
        ).fetchone()
        return ArticleVersion.from_row(row) if row is not None else None

    def list_versions(self, article_id: str) -> list[ArticleVersion]:
        rows = self.conn.execute(
            """
            SELECT *
            FROM articles
            WHERE article_id = ?
            ORDER BY version_number ASC
            """,
            (article_id,),
        ).fetchall()
        return [ArticleVersion.from_row(row) for row in rows]

    @staticmethod
    def _mark_rows(conn: sqlite3.Connection, version_ids: list[str], batch_name: str, export_date: str) -> int:
        cursor = conn.executemany(
            """
            UPDATE articles
            SET exported = 1, export_batch = ?, export_date = ?
            WHERE id = ? AND exported = 0
            """,
            [(batch_name, export_date, version_id) for version_id in version_ids],
        )
        return max(cursor.rowcount, 0)

    @staticmethod
    def _insert_batch(conn: sqlite3.Connection, info: BatchInfo) -> None:
        conn.execute(
            """
            INSERT INTO export_batches (
                batch_name, export_date, article_count, file_path, file_size_bytes, file_size_mb
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                info.batch_name,
                info.export_date,
                info.article_count,
                info.file_path,
                info.file_size_bytes,
                info.file_size_mb,
            ),
        )

    def mark_exported(self, version_ids: list[str], batch_name: str, *, now: str | None = None) -> int:
        """Flag rows as exported; rows already exported or unknown ids are left alone."""
        if not version_ids:
            return 0
        try:
            with self._transaction() as conn:
                return self._mark_rows(conn, version_ids, batch_name, now or utc_now_iso())
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to mark batch {batch_name} as exported: {exc}") from exc

    def record_export_batch(self, info: BatchInfo) -> None:
        try:
            with self._transaction() as conn:
                self._insert_batch(conn, info)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to record export batch {info.batch_name}: {exc}") from exc

    def commit_export_batch(self, info: BatchInfo, version_ids: list[str]) -> int:
        """Record the batch row and mark its rows exported in one transaction.

        A batch name that already exists fails the whole call and marks nothing.
        """
        try:
            with self._transaction() as conn:
                self._insert_batch(conn, info)
                return self._mark_rows(conn, version_ids, info.batch_name, info.export_date)
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to commit export batch {info.batch_name}: {exc}") from exc

    def confirm_publish(self, batch_name: str, tx_id: str, alias: str | None, *, now: str | None = None) -> bool:
        uploaded_at = now or utc_now_iso()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE export_batches
                    SET publish_tx_id = ?, publish_alias = ?, uploaded_at = ?
                    WHERE batch_name = ?
                    """,
                    (tx_id, alias, uploaded_at, batch_name),
                )
                if cursor.rowcount == 0:
                    return False
                conn.execute(
                    """
                    UPDATE articles
                    SET publish_tx_id = ?, publish_alias = ?
                    WHERE export_batch = ?
                    """,
                    (tx_id, alias, batch_name),
                )
                return True
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to confirm publication of batch {batch_name}: {exc}") from exc

    def get_export_batch(self, batch_name: str) -> ExportBatch | None:
        row = self.conn.execute(
            "SELECT * FROM export_batches WHERE batch_name = ?",
            (batch_name,),
        ).fetchone()
        return ExportBatch.from_row(row) if row is not None else None

    def list_export_batches(self) -> list[ExportBatch]:
        rows = self.conn.execute("SELECT * FROM export_batches ORDER BY id ASC").fetchall()
        return [ExportBatch.from_row(row) for row in rows]

    def get_last_scrape_date(self) -> str | None:
        row = self.conn.execute(
            """
            SELECT scrape_date
            FROM scrape_metadata
            ORDER BY id DESC
            LIMIT 1
            """
        ).fetchone()
        return str(row["scrape_date"]) if row is not None else None

    def record_scrape_run(self, stats: ScrapeRunStats, *, scrape_date: str | None = None) -> None:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO scrape_metadata (
                        scrape_date, total_articles, new_articles, updated_articles, duration_seconds
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        scrape_date or utc_now_iso(),
                        stats.total_articles,
                        stats.new_articles,
                        stats.updated_articles,
                        stats.duration_seconds,
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to record scrape run: {exc}") from exc

    def get_stats(self) -> dict[str, Any]:
        article_row = self.conn.execute(
            """
            SELECT
                COUNT(*) AS total_versions,
                COALESCE(SUM(CASE WHEN is_latest_version = 1 THEN 1 ELSE 0 END), 0) AS latest_articles,
                COALESCE(SUM(CASE WHEN is_latest_version = 1 AND exported = 0 THEN 1 ELSE 0 END), 0)
                    AS unexported_latest,
                COUNT(DISTINCT article_id) AS unique_articles
            FROM articles
            """
        ).fetchone()
        batch_row = self.conn.execute(
            """
            SELECT
                COUNT(*) AS batch_count,
                COALESCE(SUM(article_count), 0) AS total_exported,
                COALESCE(SUM(file_size_mb), 0.0) AS total_size_mb,
                COUNT(CASE WHEN publish_tx_id IS NOT NULL THEN 1 END) AS published_batches
            FROM export_batches
            """
        ).fetchone()
        runs_row = self.conn.execute("SELECT COUNT(*) AS scrape_runs FROM scrape_metadata").fetchone()
        return {
            "total_versions": int(article_row["total_versions"]),
            "latest_articles": int(article_row["latest_articles"]),
            "unexported_latest": int(article_row["unexported_latest"]),
            "unique_articles": int(article_row["unique_articles"]),
            "batch_count": int(batch_row["batch_count"]),
            "total_exported": int(batch_row["total_exported"]),
            "total_size_mb": float(batch_row["total_size_mb"]),
            "published_batches": int(batch_row["published_batches"]),
            "scrape_runs": int(runs_row["scrape_runs"]),
            "last_scrape_date": self.get_last_scrape_date(),
        }
