from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pub_archive.ingest.models import ArticleRecord

UpsertAction = Literal["inserted", "updated", "unchanged"]

# Compared against the stored latest version; any difference is a new version.
CHANGE_FIELDS: tuple[str, ...] = ("updated_at", "content_text", "content_text_full")

# Derived from the separately fetched document body.
FULL_TEXT_FIELDS: tuple[str, ...] = (
    "content_text_full",
    "content_prosemirror",
    "word_count",
    "attachments_json",
    "attachment_count",
)

ChangeDetector = Callable[[Mapping[str, Any], ArticleRecord], bool]


def build_version_id(article_id: str, version_number: int) -> str:
    return f"{article_id.strip()}_v{version_number}"


def default_change_detector(existing: Mapping[str, Any], record: ArticleRecord) -> bool:
    """Timestamp-or-content equality check against the stored latest row.

    Deliberately coarse: a touched ``updatedAt`` on the remote side yields a
    new version even when nothing visible changed. An ``updated_at`` filled in
    from the capture clock is not a remote timestamp and is not compared.
    """
    for field in CHANGE_FIELDS:
        if field == "updated_at" and record.updated_at_inferred:
            continue
        if existing[field] != getattr(record, field):
            return True
    return False


def carry_full_text(existing: Mapping[str, Any], record: ArticleRecord) -> ArticleRecord:
    """Copy the stored full-text fields onto ``record``.

    Used when the body could not be fetched this time, so a missing body is
    not mistaken for a removed one.
    """
    carried = {field: existing[field] for field in FULL_TEXT_FIELDS}
    carried["abstract"] = existing["content_text_full"] or record.description
    if existing["attachment_count"]:
        carried["pdf_url"] = existing["pdf_url"]
    return record.model_copy(update=carried)


@dataclass(slots=True, frozen=True)
class UpsertResult:
    action: UpsertAction
    version_number: int
    version_id: str


@dataclass(slots=True, frozen=True)
class ArticleVersion:
    version_id: str
    article_id: str
    slug: str
    version_number: int
    version_timestamp: str
    is_latest_version: bool
    title: str
    description: str | None
    abstract: str | None
    doi: str | None
    license: str | None
    created_at: str
    updated_at: str
    published_at: str | None
    content_text: str | None
    content_text_full: str | None
    word_count: int
    authors_json: str
    author_count: int
    collections_json: str
    collection_count: int
    keywords_json: str
    attachments_json: str
    attachment_count: int
    url: str | None
    pdf_url: str | None
    exported: bool
    export_batch: str | None
    export_date: str | None
    publish_tx_id: str | None
    publish_alias: str | None
    scraped_at: str | None
    last_checked: str | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ArticleVersion:
        return cls(
            version_id=str(row["id"]),
            article_id=str(row["article_id"]),
            slug=str(row["slug"]),
            version_number=int(row["version_number"]),
            version_timestamp=str(row["version_timestamp"]),
            is_latest_version=bool(row["is_latest_version"]),
            title=str(row["title"]),
            description=row["description"],
            abstract=row["abstract"],
            doi=row["doi"],
            license=row["license"],
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
            published_at=row["published_at"],
            content_text=row["content_text"],
            content_text_full=row["content_text_full"],
            word_count=int(row["word_count"] or 0),
            authors_json=row["authors_json"] or "[]",
            author_count=int(row["author_count"] or 0),
            collections_json=row["collections_json"] or "[]",
            collection_count=int(row["collection_count"] or 0),
            keywords_json=row["keywords_json"] or "[]",
            attachments_json=row["attachments_json"] or "[]",
            attachment_count=int(row["attachment_count"] or 0),
            url=row["url"],
            pdf_url=row["pdf_url"],
            exported=bool(row["exported"]),
            export_batch=row["export_batch"],
            export_date=row["export_date"],
            publish_tx_id=row["publish_tx_id"],
            publish_alias=row["publish_alias"],
            scraped_at=row["scraped_at"],
            last_checked=row["last_checked"],
        )


@dataclass(slots=True, frozen=True)
class BatchInfo:
    batch_name: str
    export_date: str
    article_count: int
    file_path: str | None
    file_size_bytes: int | None

    @property
    def file_size_mb(self) -> float | None:
        if self.file_size_bytes is None:
            return None
        return round(self.file_size_bytes / 1024 / 1024, 2)


@dataclass(slots=True, frozen=True)
class ExportBatch:
    batch_name: str
    export_date: str
    article_count: int
    file_path: str | None
    file_size_bytes: int | None
    file_size_mb: float | None
    publish_tx_id: str | None
    publish_alias: str | None
    uploaded_at: str | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ExportBatch:
        return cls(
            batch_name=str(row["batch_name"]),
            export_date=str(row["export_date"]),
            article_count=int(row["article_count"] or 0),
            file_path=row["file_path"],
            file_size_bytes=int(row["file_size_bytes"]) if row["file_size_bytes"] is not None else None,
            file_size_mb=float(row["file_size_mb"]) if row["file_size_mb"] is not None else None,
            publish_tx_id=row["publish_tx_id"],
            publish_alias=row["publish_alias"],
            uploaded_at=row["uploaded_at"],
        )


@dataclass(slots=True, frozen=True)
class ScrapeRunStats:
    total_articles: int
    new_articles: int
    updated_articles: int
    duration_seconds: float


@dataclass(slots=True, frozen=True)
class LatestAnomaly:
    article_id: str
    latest_rows: int
    max_version_number: int
