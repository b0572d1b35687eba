from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

import httpx

from pub_archive.shared.clock import parse_iso
from pub_archive.shared.errors import NonRetryableError
from pub_archive.shared.http import FetchOutcome, RetryPolicy, request_with_policy

logger = logging.getLogger(__name__)

StopReason = Literal["completed", "exhausted", "aborted"]

PUB_INCLUDES: tuple[str, ...] = ("collectionPubs", "attributions")
COLLECTION_PAGE_SIZE = 100


def hash_password(password: str) -> str:
    return hashlib.sha3_512(password.encode("utf-8")).hexdigest()


@dataclass(slots=True, frozen=True)
class PubPage:
    offset: int
    records: list[dict[str, Any]]


@dataclass(slots=True)
class FetchReport:
    """Why the last page iteration ended; ``exhausted`` and ``aborted`` are graceful stops."""

    stop_reason: StopReason = "completed"
    pages_fetched: int = 0
    records_seen: int = 0
    last_error: str | None = None
    errors: list[str] = field(default_factory=list)

    def stop(self, reason: StopReason, error: str | None = None) -> None:
        self.stop_reason = reason
        if error:
            self.last_error = error
            self.errors.append(error)


def _older_than(record: dict[str, Any], since: datetime) -> bool:
    updated = parse_iso(record.get("updatedAt") if isinstance(record.get("updatedAt"), str) else None)
    return updated is not None and updated < since


class PubPubClient:
    def __init__(
        self,
        *,
        community_url: str,
        email: str | None = None,
        password: str | None = None,
        page_size: int = 100,
        request_delay_seconds: float = 0.1,
        max_consecutive_empty_pages: int = 1,
        timeout_seconds: float = 60.0,
        user_agent: str = "pub-archive/0.1 (+local)",
        policy: RetryPolicy | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = community_url.rstrip("/")
        self.email = email
        self.password = password
        self.page_size = max(1, page_size)
        self.request_delay_seconds = max(request_delay_seconds, 0.0)
        self.max_consecutive_empty_pages = max(1, max_consecutive_empty_pages)
        self.policy = policy or RetryPolicy()
        self.report = FetchReport()
        self.client = httpx.Client(
            timeout=timeout_seconds,
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            follow_redirects=True,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> PubPubClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _pause(self) -> None:
        if self.request_delay_seconds > 0:
            time.sleep(self.request_delay_seconds)

    def _get(self, path: str, *, params: Any = None, error_label: str) -> FetchOutcome:
        return request_with_policy(
            self.client,
            "GET",
            f"{self.base_url}{path}",
            policy=self.policy,
            error_label=error_label,
            params=params,
        )

    def login(self) -> bool:
        """Authenticate and keep the session cookie; returns False when no credentials are configured.

        Raises ``NonRetryableError`` when the community rejects the credentials
        or cannot be reached.
        """
        if not self.email or not self.password:
            logger.info("No PubPub credentials configured; continuing anonymously")
            return False
        outcome = request_with_policy(
            self.client,
            "POST",
            f"{self.base_url}/api/login",
            policy=self.policy,
            error_label="PubPub login",
            json={"email": self.email, "password": hash_password(self.password)},
        )
        if not outcome.ok:
            raise NonRetryableError(str(outcome.error))
        logger.info("Logged in to %s as %s", self.base_url, self.email)
        return True

    def _pubs_params(self, offset: int) -> list[tuple[str, str | int]]:
        params: list[tuple[str, str | int]] = [
            ("limit", self.page_size),
            ("offset", offset),
            ("sortBy", "updatedAt"),
            ("orderBy", "DESC"),
        ]
        params.extend(("include", name) for name in PUB_INCLUDES)
        return params

    def iter_pub_pages(self, since: str | None = None) -> Iterator[PubPage]:
        """Yield pages of raw pub objects, newest ``updatedAt`` first.

        With ``since`` set, records updated before it are dropped and the walk
        ends at the first page that contains one. The outcome of the walk is
        left in ``self.report``.
        """
        self.report = FetchReport()
        since_dt = parse_iso(since)
        offset = 0
        consecutive_empty = 0
        first_request = True

        while True:
            if not first_request:
                self._pause()
            first_request = False

            outcome = self._get(
                "/api/pubs",
                params=self._pubs_params(offset),
                error_label=f"PubPub pubs(offset={offset})",
            )
            if not outcome.ok:
                reason: StopReason = "exhausted" if outcome.status == "exhausted" else "aborted"
                logger.warning("Stopping pub fetch at offset %d: %s", offset, outcome.error)
                self.report.stop(reason, str(outcome.error))
                return

            try:
                payload = outcome.response.json() if outcome.response is not None else None
            except ValueError:
                payload = None
            if not isinstance(payload, list):
                message = f"Malformed /api/pubs response at offset {offset}: expected a JSON array"
                logger.error(message)
                self.report.stop("aborted", message)
                return

            self.report.pages_fetched += 1
            records = [item for item in payload if isinstance(item, dict)]
            if not records:
                consecutive_empty += 1
                if consecutive_empty >= self.max_consecutive_empty_pages:
                    self.report.stop("completed")
                    return
                logger.info("Empty page at offset %d (%d consecutive); retrying", offset, consecutive_empty)
                continue
            consecutive_empty = 0

            kept = records if since_dt is None else [r for r in records if not _older_than(r, since_dt)]
            self.report.records_seen += len(kept)
            if kept:
                yield PubPage(offset=offset, records=kept)

            if len(kept) < len(records):
                logger.info("Reached records older than %s; incremental fetch complete", since)
                self.report.stop("completed")
                return
            if len(records) < self.page_size:
                self.report.stop("completed")
                return
            offset += self.page_size

    def get_collections(self) -> list[tuple[str, str]]:
        """All (collection id, title) pairs; failures are logged and yield what was collected."""
        collections: list[tuple[str, str]] = []
        offset = 0
        while True:
            outcome = self._get(
                "/api/collections",
                params={"limit": COLLECTION_PAGE_SIZE, "offset": offset},
                error_label=f"PubPub collections(offset={offset})",
            )
            if not outcome.ok or outcome.response is None:
                logger.warning("Failed to fetch collections: %s", outcome.error)
                return collections
            try:
                payload = outcome.response.json()
            except ValueError:
                logger.warning("Failed to fetch collections: response is not JSON")
                return collections
            if not isinstance(payload, list):
                logger.warning("Failed to fetch collections: expected a JSON array")
                return collections

            for item in payload:
                if isinstance(item, dict) and item.get("id") and item.get("title"):
                    collections.append((str(item["id"]), str(item["title"])))
            if len(payload) < COLLECTION_PAGE_SIZE:
                return collections
            offset += COLLECTION_PAGE_SIZE
            self._pause()

    def get_pub_text(self, pub_id: str) -> dict[str, Any] | None:
        self._pause()
        outcome = self._get(f"/api/pubs/{pub_id}/text", error_label=f"PubPub text({pub_id})")
        if not outcome.ok or outcome.response is None:
            logger.warning("Could not fetch full content for %s: %s", pub_id, outcome.error)
            return None
        try:
            doc = outcome.response.json()
        except ValueError:
            logger.warning("Could not fetch full content for %s: response is not JSON", pub_id)
            return None
        return doc if isinstance(doc, dict) else None
