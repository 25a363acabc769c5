"""Remote listing API page fetcher.

Every request goes through the shared ``OutboundLimiter`` and the retry loop
in ``PageFetcher._fetch``. Callers never see exceptions for remote failures:
each call returns a ``FetchResult`` carrying either a parsed ``ListingPage``
or a ``FetchError`` classified by ``ErrorCategory``:

- ``FATAL``: credentials or configuration are wrong, abort the run
- ``PARTIAL``: transient failures outlived the retry budget, skip the page
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.core.config import get_settings
from app.core.rate_limit import OutboundLimiter
from app.core.retry import (
    RetryPolicy,
    classify_exception,
    classify_status,
    parse_retry_after,
)
from app.models.sync import ErrorCategory

logger = logging.getLogger(__name__)


@dataclass
class ListingPage:
    """One page of remote listings plus whatever pagination metadata it had."""

    page: int
    records: list[dict[str, Any]] = field(default_factory=list)
    total: int | None = None
    last_page: int | None = None
    per_page: int | None = None
    has_more: bool | None = None
    scroll_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.records

    @property
    def has_metadata(self) -> bool:
        return self.total is not None or self.last_page is not None


@dataclass
class FetchError:
    """Classified failure of a page request."""

    category: ErrorCategory
    message: str
    status_code: int | None = None
    retry_after: float | None = None


@dataclass
class FetchResult:
    """Result of fetching one page (after retries)."""

    page_number: int
    page: ListingPage | None = None
    error: FetchError | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.page is not None and self.error is None

    @property
    def is_fatal(self) -> bool:
        return self.error is not None and self.error.category == ErrorCategory.FATAL


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_listing_payload(payload: Any, page_number: int) -> ListingPage:
    """Turn a decoded JSON body into a ``ListingPage``.

    Accepts ``{data, total?, last_page?, per_page?, has_more?, scroll_id?,
    meta?}``; ``meta.total``/``meta.last_page`` are used when the top-level
    keys are missing. A bare JSON list is treated as the records.

    Raises:
        ValueError: If the body has no usable record list
    """
    if isinstance(payload, list):
        return ListingPage(page=page_number, records=[r for r in payload if isinstance(r, dict)])
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected response body type: {type(payload).__name__}")

    data = payload.get("data", [])
    if data is None:
        data = []
    if not isinstance(data, list):
        raise ValueError("Response 'data' is not a list")

    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}

    def lookup(key: str) -> Any:
        value = payload.get(key)
        return value if value is not None else meta.get(key)

    has_more = lookup("has_more")
    if has_more is None and isinstance(payload.get("links"), dict):
        has_more = payload["links"].get("next") is not None

    total = _as_int(lookup("total"))
    last_page = _as_int(lookup("last_page"))
    per_page = _as_int(lookup("per_page"))
    if last_page is None and total is not None and per_page:
        last_page = max(1, -(-total // per_page))

    return ListingPage(
        page=page_number,
        records=[r for r in data if isinstance(r, dict)],
        total=total,
        last_page=last_page,
        per_page=per_page,
        has_more=bool(has_more) if has_more is not None else None,
        scroll_id=lookup("scroll_id") or None,
    )


class PageFetcher:
    """Fetches listing pages from the remote API with retries and rate limits.

    Usage:
        async with PageFetcher.from_settings() as fetcher:
            result = await fetcher.fetch_page(1)
    """

    def __init__(
        self,
        base_url: str,
        listing_path: str = "/api/cars",
        api_key: str | None = None,
        api_key_header: str = "x-api-key",
        per_page: int = 25,
        timeout_seconds: float = 30.0,
        scroll_time_minutes: int = 10,
        limiter: OutboundLimiter | None = None,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.listing_path = listing_path if listing_path.startswith("/") else f"/{listing_path}"
        self.api_key = api_key
        self.api_key_header = api_key_header
        self.per_page = per_page
        self.timeout_seconds = timeout_seconds
        self.scroll_time_minutes = scroll_time_minutes
        self.limiter = limiter or OutboundLimiter(requests_per_second=5, max_in_flight=4)
        self.policy = policy or RetryPolicy()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        limiter: OutboundLimiter | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "PageFetcher":
        settings = get_settings()
        return cls(
            base_url=settings.remote_api_base_url,
            listing_path=settings.remote_api_listing_path,
            api_key=settings.remote_api_key,
            api_key_header=settings.remote_api_key_header,
            per_page=settings.remote_api_per_page,
            timeout_seconds=settings.remote_api_timeout_seconds,
            scroll_time_minutes=settings.remote_api_scroll_time_minutes,
            limiter=limiter or OutboundLimiter.from_settings(),
            policy=RetryPolicy.from_settings(),
            client=client,
        )

    async def __aenter__(self) -> "PageFetcher":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.listing_path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers[self.api_key_header] = self.api_key
        return headers

    def _configuration_error(self) -> str | None:
        if not self.base_url:
            return "Remote API base URL is not configured"
        if not self.api_key:
            return "Remote API key is not configured"
        return None

    async def fetch_page(self, page_number: int) -> FetchResult:
        """Fetch one numbered page."""
        params = {"page": page_number, "per_page": self.per_page}
        return await self._fetch(params, page_number)

    async def fetch_scroll(self, scroll_id: str | None, sequence: int) -> FetchResult:
        """Fetch the next batch of a scroll session (``scroll_id=None`` opens one)."""
        params: dict[str, Any] = {
            "limit": self.per_page,
            "scroll_time": self.scroll_time_minutes,
        }
        if scroll_id:
            params["scroll_id"] = scroll_id
        return await self._fetch(params, sequence)

    async def _fetch(self, params: dict[str, Any], page_number: int) -> FetchResult:
        config_error = self._configuration_error()
        if config_error:
            return FetchResult(
                page_number=page_number,
                error=FetchError(category=ErrorCategory.FATAL, message=config_error),
                attempts=0,
            )

        max_attempts = self.policy.max_retries + 1
        last_error: FetchError | None = None

        for attempt in range(max_attempts):
            async with self.limiter.slot():
                result = await self._request_once(params, page_number)
            result.attempts = attempt + 1

            if result.ok or result.error.category != ErrorCategory.TRANSIENT:
                return result

            last_error = result.error
            if attempt >= max_attempts - 1:
                break

            delay = self.policy.backoff(attempt, last_error.retry_after)
            logger.warning(
                f"Page {page_number} attempt {attempt + 1}/{max_attempts} failed "
                f"({last_error.message}), retrying in {delay:.1f}s"
            )
            if last_error.status_code == 429:
                await self.limiter.throttle(delay)
            else:
                await self._sleep(delay)

        logger.error(f"Page {page_number} failed after {max_attempts} attempts: {last_error.message}")
        return FetchResult(
            page_number=page_number,
            error=FetchError(
                category=ErrorCategory.PARTIAL,
                message=f"Gave up after {max_attempts} attempts: {last_error.message}",
                status_code=last_error.status_code,
            ),
            attempts=max_attempts,
        )

    async def _request_once(self, params: dict[str, Any], page_number: int) -> FetchResult:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True

        try:
            response = await self._client.get(
                self.url,
                params=params,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except httpx.HTTPError as e:
            return FetchResult(
                page_number=page_number,
                error=FetchError(
                    category=classify_exception(e),
                    message=f"{type(e).__name__}: {e}",
                ),
            )

        if response.status_code >= 400:
            return FetchResult(
                page_number=page_number,
                error=FetchError(
                    category=classify_status(response.status_code),
                    message=f"HTTP {response.status_code}",
                    status_code=response.status_code,
                    retry_after=parse_retry_after(response.headers.get("Retry-After")),
                ),
            )

        try:
            page = parse_listing_payload(response.json(), page_number)
        except ValueError as e:
            # Truncated or garbled bodies are usually a proxy hiccup
            return FetchResult(
                page_number=page_number,
                error=FetchError(
                    category=ErrorCategory.TRANSIENT,
                    message=f"Malformed response body: {e}",
                    status_code=response.status_code,
                ),
            )

        logger.debug(f"Fetched page {page_number}: {len(page.records)} records")
        return FetchResult(page_number=page_number, page=page)
