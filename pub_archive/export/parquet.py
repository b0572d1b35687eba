from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pyarrow as pa
import pyarrow.parquet as pq

from pub_archive.storage.repositories import ArticleVersion

logger = logging.getLogger(__name__)

ABSTRACT_PREVIEW_CHARS = 500

ARTICLE_SCHEMA = pa.schema(
    [
        pa.field("article_id", pa.string(), nullable=False),
        pa.field("slug", pa.string(), nullable=False),
        pa.field("title", pa.string(), nullable=False),
        pa.field("description", pa.string()),
        pa.field("abstract", pa.string()),
        pa.field("abstract_preview", pa.string()),
        pa.field("authors_json", pa.string()),
        pa.field("author_count", pa.int32()),
        pa.field("keywords_json", pa.string()),
        pa.field("collections_json", pa.string()),
        pa.field("doi", pa.string()),
        pa.field("license", pa.string()),
        pa.field("created_at", pa.string()),
        pa.field("updated_at", pa.string()),
        pa.field("published_at", pa.string()),
        pa.field("url", pa.string()),
        pa.field("pdf_url", pa.string()),
        pa.field("version_number", pa.int32(), nullable=False),
        pa.field("version_timestamp", pa.string()),
        pa.field("has_multiple_versions", pa.bool_(), nullable=False),
        pa.field("word_count", pa.int32()),
        pa.field("attachment_count", pa.int32()),
    ]
)


@dataclass(slots=True, frozen=True)
class ParquetWriteResult:
    path: Path
    row_count: int
    file_size_bytes: int


def _article_row(article: ArticleVersion) -> dict[str, Any]:
    abstract = article.abstract or ""
    return {
        "article_id": article.article_id,
        "slug": article.slug,
        "title": article.title,
        "description": article.description,
        "abstract": article.abstract,
        "abstract_preview": abstract[:ABSTRACT_PREVIEW_CHARS],
        "authors_json": article.authors_json,
        "author_count": article.author_count,
        "keywords_json": article.keywords_json,
        "collections_json": article.collections_json,
        "doi": article.doi,
        "license": article.license,
        "created_at": article.created_at,
        "updated_at": article.updated_at,
        "published_at": article.published_at,
        "url": article.url,
        "pdf_url": article.pdf_url,
        "version_number": article.version_number,
        "version_timestamp": article.version_timestamp,
        "has_multiple_versions": article.version_number > 1,
        "word_count": article.word_count,
        "attachment_count": article.attachment_count,
    }


class ParquetExporter:
    """Writes a batch of latest-version articles to one Parquet file."""

    def __init__(self, export_dir: Path, *, compression: str = "zstd") -> None:
        self.export_dir = Path(export_dir)
        self.compression = compression

    def path_for(self, batch_name: str) -> Path:
        return self.export_dir / f"{batch_name}.parquet"

    def _atomic_write(self, table: pa.Table, output_path: Path) -> int:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = output_path.with_name(f"{output_path.name}.tmp.{uuid.uuid4().hex}")
        try:
            pq.write_table(table, str(tmp_path), compression=self.compression, write_statistics=True)
            with open(tmp_path, "rb") as handle:
                os.fsync(handle.fileno())
            tmp_path.replace(output_path)
            return output_path.stat().st_size
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

    def write(self, batch_name: str, articles: Sequence[ArticleVersion]) -> ParquetWriteResult:
        table = pa.Table.from_pylist([_article_row(article) for article in articles], schema=ARTICLE_SCHEMA)
        table = table.replace_schema_metadata({"pub_archive.batch_name": batch_name})
        output_path = self.path_for(batch_name)
        if output_path.exists():
            raise FileExistsError(f"Refusing to overwrite existing batch file {output_path}")
        file_size = self._atomic_write(table, output_path)
        logger.info("Wrote %d articles to %s (%d bytes)", table.num_rows, output_path, file_size)
        return ParquetWriteResult(path=output_path, row_count=table.num_rows, file_size_bytes=file_size)
