from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from pub_archive.shared.errors import FetchError, NonRetryableError, TransientNetworkError

logger = logging.getLogger(__name__)

FetchStatus = Literal["ok", "exhausted", "failed"]


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _is_transport_error(exc: Exception) -> bool:
    return isinstance(exc, httpx.TransportError)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Exponential backoff shared by every remote call.

    ``backoff_start_seconds`` doubles after each failed attempt and is clamped
    to ``backoff_cap_seconds``. A ``Retry-After`` header on a retryable
    response overrides the computed delay for that attempt.
    """

    max_attempts: int = 3
    backoff_start_seconds: float = 2.0
    backoff_cap_seconds: float = 30.0
    retry_on_status: tuple[int, ...] = (429, 500, 502, 503, 504)
    is_retryable_exception: Callable[[Exception], bool] = _is_transport_error

    def attempts(self) -> int:
        return max(1, self.max_attempts)

    def first_delay(self) -> float:
        return max(self.backoff_start_seconds, 0.0)

    def next_delay(self, delay: float) -> float:
        return min(max(delay * 2, 1.0), self.backoff_cap_seconds)

    def sleep_for(self, delay: float) -> float:
        return min(delay, self.backoff_cap_seconds)


@dataclass(slots=True)
class FetchOutcome:
    status: FetchStatus
    response: httpx.Response | None = None
    error: FetchError | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def request_with_policy(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    policy: RetryPolicy,
    error_label: str = "HTTP request",
    **request_kwargs: Any,
) -> FetchOutcome:
    """Run one HTTP request under ``policy`` and report a tagged outcome.

    Never raises for network or HTTP failures: retryable failures that run out
    of attempts come back as ``exhausted``, everything else that is not a 2xx
    as ``failed``.
    """
    attempts = policy.attempts()
    delay = policy.first_delay()

    for attempt in range(1, attempts + 1):
        try:
            response = client.request(method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            if not policy.is_retryable_exception(exc):
                return FetchOutcome(
                    status="failed",
                    error=NonRetryableError(f"{error_label} failed ({exc.__class__.__name__}: {exc})"),
                    attempts=attempt,
                )
            if attempt >= attempts:
                logger.warning("%s gave up after %d attempts: %s", error_label, attempts, exc)
                return FetchOutcome(
                    status="exhausted",
                    error=TransientNetworkError(
                        f"{error_label} failed after {attempts} attempts ({exc.__class__.__name__})"
                    ),
                    attempts=attempt,
                )
            logger.info("%s attempt %d/%d failed: %s", error_label, attempt, attempts, exc)
            time.sleep(policy.sleep_for(delay))
            delay = policy.next_delay(delay)
            continue

        if response.status_code in policy.retry_on_status:
            if attempt >= attempts:
                logger.warning(
                    "%s gave up after %d attempts (HTTP %d)", error_label, attempts, response.status_code
                )
                return FetchOutcome(
                    status="exhausted",
                    response=response,
                    error=TransientNetworkError(
                        f"{error_label} failed after {attempts} attempts (HTTP {response.status_code})"
                    ),
                    attempts=attempt,
                )
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            sleep_seconds = retry_after if retry_after is not None else policy.sleep_for(delay)
            time.sleep(max(sleep_seconds, 0.0))
            delay = policy.next_delay(delay)
            continue

        if response.is_success:
            return FetchOutcome(status="ok", response=response, attempts=attempt)

        return FetchOutcome(
            status="failed",
            response=response,
            error=NonRetryableError(f"{error_label} rejected (HTTP {response.status_code})"),
            attempts=attempt,
        )

    return FetchOutcome(
        status="failed",
        error=NonRetryableError(f"{error_label} failed before receiving a response body"),
        attempts=attempts,
    )
