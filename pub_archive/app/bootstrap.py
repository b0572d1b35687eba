from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Literal

import httpx

from pub_archive.export.parquet import ParquetExporter
from pub_archive.export.service import ExportService
from pub_archive.export.tracker import ExportTracker
from pub_archive.ingest.html_client import HtmlSiteClient
from pub_archive.ingest.normalize import RecordNormalizer
from pub_archive.ingest.pubpub_client import PubPubClient
from pub_archive.ingest.service import ScrapeService
from pub_archive.shared.cache import CollectionDirectory
from pub_archive.shared.errors import StorageError
from pub_archive.shared.http import RetryPolicy
from pub_archive.shared.settings import Settings, get_settings
from pub_archive.storage.scrape_runs import ScrapeRunRecorder
from pub_archive.storage.sqlite import SQLiteStore

SourceName = Literal["api", "html"]


@dataclass(slots=True)
class AppRuntime:
    settings: Settings
    sqlite_store: SQLiteStore
    repaired_article_ids: list[str] = field(default_factory=list)

    def close(self) -> None:
        self.sqlite_store.close()


def build_runtime(*, settings: Settings | None = None, check_same_thread: bool = True) -> AppRuntime:
    """Open the store, create the schema and repair latest-version flags."""
    use_settings = settings or get_settings()
    try:
        use_settings.ensure_directories()
        sqlite_store = SQLiteStore(use_settings.sqlite_path, check_same_thread=check_same_thread)
    except (OSError, sqlite3.Error) as exc:
        raise StorageError(f"Cannot open storage at {use_settings.sqlite_path}: {exc}") from exc

    try:
        sqlite_store.create_schema()
        repaired = sqlite_store.repair_latest_flags()
    except (sqlite3.Error, StorageError) as exc:
        sqlite_store.close()
        raise StorageError(f"Cannot prepare storage at {use_settings.sqlite_path}: {exc}") from exc

    return AppRuntime(settings=use_settings, sqlite_store=sqlite_store, repaired_article_ids=repaired)


def build_retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.max_retries,
        backoff_start_seconds=settings.backoff_start_seconds,
        backoff_cap_seconds=settings.backoff_cap_seconds,
    )


def build_source(
    settings: Settings,
    source: SourceName = "api",
    *,
    transport: httpx.BaseTransport | None = None,
) -> PubPubClient | HtmlSiteClient:
    policy = build_retry_policy(settings)
    if source == "html":
        return HtmlSiteClient(
            community_url=settings.community_url,
            request_delay_seconds=settings.request_delay_seconds,
            timeout_seconds=settings.http_timeout_seconds,
            user_agent=settings.user_agent,
            policy=policy,
            transport=transport,
        )
    return PubPubClient(
        community_url=settings.community_url,
        email=settings.pubpub_email,
        password=settings.pubpub_password,
        page_size=settings.page_size,
        request_delay_seconds=settings.request_delay_seconds,
        max_consecutive_empty_pages=settings.max_consecutive_empty_pages,
        timeout_seconds=settings.http_timeout_seconds,
        user_agent=settings.user_agent,
        policy=policy,
        transport=transport,
    )


def build_scrape_service(runtime: AppRuntime, source: PubPubClient | HtmlSiteClient) -> ScrapeService:
    settings = runtime.settings
    collections = CollectionDirectory(source.get_collections, ttl_seconds=settings.collection_cache_ttl_seconds)
    normalizer = RecordNormalizer(site_base_url=settings.site_base_url, collections=collections)
    return ScrapeService(
        store=runtime.sqlite_store,
        source=source,
        normalizer=normalizer,
        recorder=ScrapeRunRecorder(runtime.sqlite_store),
        fetch_full_text=settings.fetch_full_text,
    )


def build_export_service(runtime: AppRuntime) -> ExportService:
    return ExportService(
        tracker=ExportTracker(runtime.sqlite_store),
        exporter=ParquetExporter(runtime.settings.export_dir, compression=runtime.settings.parquet_compression),
    )
