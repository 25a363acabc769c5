"""Retry policy and error classification for remote listing API calls."""

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from app.core.config import get_settings
from app.models.sync import ErrorCategory

logger = logging.getLogger(__name__)

# Retryable HTTP status codes (plus every other 5xx)
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

# Transport errors worth another attempt
RETRYABLE_EXCEPTIONS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_retries: int = 3
    backoff_factor: float = 1.0
    max_wait: float = 60.0
    jitter: float = 1.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_retries=settings.sync_max_retries,
            backoff_factor=settings.sync_backoff_factor,
            max_wait=settings.sync_max_backoff_seconds,
        )

    def backoff(self, attempt: int, retry_after: float | None = None) -> float:
        """Seconds to wait before retry number ``attempt + 1``.

        Exponential with jitter, capped at ``max_wait``. A server supplied
        ``Retry-After`` acts as a floor.
        """
        wait_time = self.backoff_factor * (2 ** attempt)
        if self.jitter:
            wait_time += random.uniform(0, self.jitter)
        if retry_after is not None:
            wait_time = max(wait_time, retry_after)
        return min(wait_time, self.max_wait)


def classify_status(status_code: int) -> ErrorCategory:
    """Map an HTTP error status onto the error taxonomy."""
    if status_code in RETRYABLE_STATUS_CODES or status_code >= 500:
        return ErrorCategory.TRANSIENT
    # Remaining 4xx: credentials or the request itself are wrong
    return ErrorCategory.FATAL


def classify_exception(error: Exception) -> ErrorCategory:
    """Determine whether a transport-level exception is retryable."""
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return ErrorCategory.TRANSIENT
    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)
    if isinstance(error, (httpx.UnsupportedProtocol, httpx.InvalidURL, ValueError, TypeError)):
        return ErrorCategory.FATAL
    # Default: retry unknown transport errors
    return ErrorCategory.TRANSIENT


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
