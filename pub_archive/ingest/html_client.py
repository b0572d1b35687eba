from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from html.parser import HTMLParser
from typing import Any
from urllib.parse import urlparse

import httpx

from pub_archive.ingest.pubpub_client import FetchReport, PubPage, StopReason
from pub_archive.shared.clock import parse_iso
from pub_archive.shared.http import RetryPolicy, request_with_policy

logger = logging.getLogger(__name__)

LISTING_PAGE_SIZE = 50
SKIPPED_PATH_MARKERS: tuple[str, ...] = ("/release/", "/draft")
MODIFIED_META_NAMES: tuple[str, ...] = ("article:modified_time", "og:updated_time", "citation_date")


class _PubPageParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.hrefs: list[str] = []
        self.meta: dict[str, list[str]] = {}
        self.heading: str | None = None
        self._in_h1 = False
        self._h1_parts: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        name = tag.casefold()
        values = {key.casefold(): value for key, value in attrs if value is not None}
        if name == "a" and values.get("href"):
            self.hrefs.append(values["href"])
        elif name == "meta":
            key = values.get("name") or values.get("property")
            content = values.get("content")
            if key and content is not None:
                self.meta.setdefault(key.casefold(), []).append(content.strip())
        elif name == "h1" and self.heading is None:
            self._in_h1 = True

    def handle_endtag(self, tag: str) -> None:
        if tag.casefold() == "h1" and self._in_h1:
            self._in_h1 = False
            self.heading = " ".join("".join(self._h1_parts).split()) or None

    def handle_data(self, data: str) -> None:
        if self._in_h1:
            self._h1_parts.append(data)

    def first(self, *names: str) -> str | None:
        for name in names:
            for value in self.meta.get(name, []):
                if value:
                    return value
        return None

    def all(self, name: str) -> list[str]:
        return [value for value in self.meta.get(name, []) if value]


def extract_pub_slugs(html: str) -> list[str]:
    """Slugs of every ``/pub/<slug>`` link in document order, skipping releases and drafts."""
    parser = _PubPageParser()
    parser.feed(html)
    slugs: list[str] = []
    for href in parser.hrefs:
        path = urlparse(href).path
        if "/pub/" not in path or any(marker in path for marker in SKIPPED_PATH_MARKERS):
            continue
        slug = path.split("/pub/", 1)[1].split("/", 1)[0].strip()
        if slug and slug not in slugs:
            slugs.append(slug)
    return slugs


def parse_pub_html(slug: str, html: str) -> dict[str, Any]:
    """Map an article page's citation metadata onto the raw pub shape.

    The HTML exposes no pub UUID, so the slug doubles as the id.
    """
    parser = _PubPageParser()
    parser.feed(html)

    published = parser.first("citation_publication_date", "citation_online_date")
    modified = parser.first(*MODIFIED_META_NAMES)
    pdf_url = parser.first("citation_pdf_url")
    keywords: list[str] = []
    for value in parser.all("citation_keywords"):
        keywords.extend(part.strip() for part in value.split(";") if part.strip())

    return {
        "id": slug,
        "slug": slug,
        "title": parser.first("citation_title", "og:title") or parser.heading,
        "description": parser.first("citation_abstract", "description", "og:description"),
        "doi": parser.first("citation_doi"),
        "createdAt": published,
        "updatedAt": modified or published,
        "customPublishedAt": published,
        "attributions": [
            {"name": name, "order": index, "isAuthor": True}
            for index, name in enumerate(parser.all("citation_author"))
        ],
        "labels": keywords,
        "downloads": [{"url": pdf_url, "type": "formatted"}] if pdf_url else [],
    }


class HtmlSiteClient:
    """Fallback source that reads the public site instead of the JSON API."""

    def __init__(
        self,
        *,
        community_url: str,
        request_delay_seconds: float = 0.1,
        timeout_seconds: float = 60.0,
        user_agent: str = "pub-archive/0.1 (+local)",
        policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = community_url.rstrip("/")
        self.request_delay_seconds = max(request_delay_seconds, 0.0)
        self.policy = policy or RetryPolicy()
        self.report = FetchReport()
        self.client = httpx.Client(
            timeout=timeout_seconds,
            headers={"User-Agent": user_agent},
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> HtmlSiteClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _pause(self) -> None:
        if self.request_delay_seconds > 0:
            time.sleep(self.request_delay_seconds)

    def login(self) -> bool:
        return False

    def get_collections(self) -> list[tuple[str, str]]:
        return []

    def get_pub_text(self, pub_id: str) -> dict[str, Any] | None:
        return None

    def _fail(self, status: str, error: object) -> None:
        reason: StopReason = "exhausted" if status == "exhausted" else "aborted"
        self.report.stop(reason, str(error))

    def iter_pub_pages(self, since: str | None = None) -> Iterator[PubPage]:
        """Walk the listing with ``?offset=N`` until a page yields no new slugs."""
        self.report = FetchReport()
        since_dt = parse_iso(since)
        seen: set[str] = set()
        offset = 0

        while True:
            url = self.base_url if offset == 0 else f"{self.base_url}?offset={offset}"
            if offset:
                self._pause()
            outcome = request_with_policy(
                self.client, "GET", url, policy=self.policy, error_label=f"listing(offset={offset})"
            )
            if not outcome.ok or outcome.response is None:
                logger.warning("Stopping listing walk at offset %d: %s", offset, outcome.error)
                self._fail(outcome.status, outcome.error)
                return

            self.report.pages_fetched += 1
            new_slugs = [slug for slug in extract_pub_slugs(outcome.response.text) if slug not in seen]
            if not new_slugs:
                self.report.stop("completed")
                return
            seen.update(new_slugs)

            records: list[dict[str, Any]] = []
            for slug in new_slugs:
                self._pause()
                article = request_with_policy(
                    self.client,
                    "GET",
                    f"{self.base_url}/pub/{slug}",
                    policy=self.policy,
                    error_label=f"pub page {slug}",
                )
                if article.status == "exhausted":
                    logger.warning("Stopping listing walk at %s: %s", slug, article.error)
                    if records:
                        yield PubPage(offset=offset, records=records)
                    self._fail(article.status, article.error)
                    return
                if not article.ok or article.response is None:
                    logger.warning("Skipping %s: %s", slug, article.error)
                    self.report.errors.append(str(article.error))
                    continue

                record = parse_pub_html(slug, article.response.text)
                updated = parse_iso(record.get("updatedAt"))
                if since_dt is not None and updated is not None and updated < since_dt:
                    continue
                records.append(record)

            self.report.records_seen += len(records)
            if records:
                yield PubPage(offset=offset, records=records)
            offset += LISTING_PAGE_SIZE
