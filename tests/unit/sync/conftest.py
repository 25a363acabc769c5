"""Shared fixtures for sync tests: a fake remote listing API over httpx.MockTransport."""

from collections.abc import Callable

import httpx
import pytest

from app.core.rate_limit import OutboundLimiter, TokenBucket
from app.core.retry import RetryPolicy
from app.core.sync.fetcher import PageFetcher
from app.core.sync.status import SyncStatusStore
from fake_remote import SleepRecorder


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_fetcher(sleeper) -> Callable[..., PageFetcher]:
    """Build a PageFetcher wired to a handler, with sleeps recorded instead of awaited."""

    def build(handler, api_key: str | None = "test-key", max_retries: int = 2, **kwargs) -> PageFetcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        limiter = OutboundLimiter(
            requests_per_second=1000,
            max_in_flight=4,
            bucket=TokenBucket(1000, capacity=1000, sleep=sleeper),
        )
        return PageFetcher(
            base_url="https://remote.test",
            api_key=api_key,
            per_page=kwargs.pop("per_page", 25),
            limiter=limiter,
            policy=RetryPolicy(max_retries=max_retries, backoff_factor=0.5, max_wait=30, jitter=0),
            client=client,
            sleep=sleeper,
            **kwargs,
        )

    return build


@pytest.fixture
def store() -> SyncStatusStore:
    return SyncStatusStore()
