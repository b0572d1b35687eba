from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field


class Settings(BaseModel):
    community_url: str = "https://www.crimrxiv.com"
    site_base_url: str = "https://www.crimrxiv.com"
    pubpub_email: str | None = None
    pubpub_password: str | None = None
    data_dir: Path = Path("data")
    export_dir: Path = Path("data/export")
    sqlite_path: Path = Path("data/pub_archive.sqlite3")
    page_size: int = 100
    request_delay_seconds: float = 0.1
    max_consecutive_empty_pages: int = 1
    http_timeout_seconds: float = 60.0
    max_retries: int = 3
    backoff_start_seconds: float = 2.0
    backoff_cap_seconds: float = 30.0
    fetch_full_text: bool = True
    collection_cache_ttl_seconds: float = 3600.0
    export_batch_size: int = 1000
    parquet_compression: str = "zstd"
    publish_alias: str = "data"
    user_agent: str = Field(default="pub-archive/0.1 (+local)")

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.export_dir.mkdir(parents=True, exist_ok=True)
        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = Path(os.getenv("PUB_ARCHIVE_DATA_DIR", "data"))
    community_url = os.getenv("PUB_ARCHIVE_COMMUNITY_URL", "https://www.crimrxiv.com")

    settings = Settings(
        community_url=community_url,
        site_base_url=os.getenv("PUB_ARCHIVE_SITE_BASE_URL", community_url),
        pubpub_email=os.getenv("PUB_ARCHIVE_EMAIL") or None,
        pubpub_password=os.getenv("PUB_ARCHIVE_PASSWORD") or None,
        data_dir=data_dir,
        export_dir=Path(os.getenv("PUB_ARCHIVE_EXPORT_DIR", str(data_dir / "export"))),
        sqlite_path=Path(os.getenv("PUB_ARCHIVE_SQLITE_PATH", str(data_dir / "pub_archive.sqlite3"))),
        page_size=int(os.getenv("PUB_ARCHIVE_PAGE_SIZE", "100")),
        request_delay_seconds=float(os.getenv("PUB_ARCHIVE_REQUEST_DELAY", "0.1")),
        max_consecutive_empty_pages=int(os.getenv("PUB_ARCHIVE_MAX_EMPTY_PAGES", "1")),
        http_timeout_seconds=float(os.getenv("PUB_ARCHIVE_HTTP_TIMEOUT", "60")),
        max_retries=int(os.getenv("PUB_ARCHIVE_MAX_RETRIES", "3")),
        backoff_start_seconds=float(os.getenv("PUB_ARCHIVE_BACKOFF_START", "2")),
        backoff_cap_seconds=float(os.getenv("PUB_ARCHIVE_BACKOFF_CAP", "30")),
        fetch_full_text=os.getenv("PUB_ARCHIVE_FETCH_FULL_TEXT", "1").strip().lower() not in {"0", "false", "no"},
        collection_cache_ttl_seconds=float(os.getenv("PUB_ARCHIVE_COLLECTION_TTL", "3600")),
        export_batch_size=int(os.getenv("PUB_ARCHIVE_EXPORT_BATCH_SIZE", "1000")),
        parquet_compression=os.getenv("PUB_ARCHIVE_PARQUET_COMPRESSION", "zstd"),
        publish_alias=os.getenv("PUB_ARCHIVE_PUBLISH_ALIAS", "data"),
        user_agent=os.getenv("PUB_ARCHIVE_USER_AGENT", "pub-archive/0.1 (+local)"),
    )
    return settings
