"""Rate limiting.

Two limiters live here:

- ``TokenBucket`` / ``OutboundLimiter`` bound the request rate and the number
  of in-flight requests the sync workers send to the remote listing API.
  All workers share one instance; acquisition is safe under concurrency.
- ``RateLimiter`` is the in-memory, fixed-window limiter applied to our own
  HTTP endpoints through the ``rate_limit()`` FastAPI dependency.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from app.core.config import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# Outbound limiting (sync workers -> remote API)
# =============================================================================


class TokenBucket:
    """Token bucket shared by all sync workers.

    Each ``acquire`` reserves one token. When the bucket is empty the caller
    is told how long to wait for its reserved token and sleeps outside the
    lock, so waiters are served in arrival order without busy looping.
    """

    def __init__(
        self,
        rate: float,
        capacity: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = float(capacity if capacity is not None else max(1.0, rate))
        self._tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    def _reserve(self) -> float:
        self._refill()
        self._tokens -= 1.0
        if self._tokens >= 0:
            return 0.0
        return -self._tokens / self.rate

    async def acquire(self) -> float:
        """Wait for a token. Returns the seconds spent waiting."""
        async with self._lock:
            delay = self._reserve()
        if delay > 0:
            await self._sleep(delay)
        return delay

    async def penalize(self, seconds: float) -> None:
        """Drain the bucket so every worker backs off (used on HTTP 429)."""
        async with self._lock:
            self._refill()
            self._tokens = min(self._tokens, 0.0) - seconds * self.rate

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens


class OutboundLimiter:
    """Token bucket plus an in-flight bound for remote API requests."""

    def __init__(
        self,
        requests_per_second: float,
        max_in_flight: int,
        bucket: TokenBucket | None = None,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be at least 1")
        self.bucket = bucket or TokenBucket(requests_per_second)
        self.max_in_flight = max_in_flight
        self._semaphore = asyncio.Semaphore(max_in_flight)
        self.in_flight = 0

    @classmethod
    def from_settings(cls) -> "OutboundLimiter":
        settings = get_settings()
        return cls(
            requests_per_second=settings.sync_requests_per_second,
            max_in_flight=settings.sync_concurrency,
        )

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold an in-flight slot and one rate token for a single request."""
        async with self._semaphore:
            await self.bucket.acquire()
            self.in_flight += 1
            try:
                yield
            finally:
                self.in_flight -= 1

    async def throttle(self, seconds: float) -> None:
        if seconds > 0:
            logger.warning(f"Remote API rate limited us, backing off all workers {seconds:.1f}s")
            await self.bucket.penalize(seconds)


# =============================================================================
# Inbound limiting (clients -> our API)
# =============================================================================


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    requests: int = 100
    window_seconds: int = 60


def _default_limits() -> dict[str, RateLimitConfig]:
    settings = get_settings()
    return {
        "default": RateLimitConfig(
            requests=settings.rate_limit_default_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        "sync": RateLimitConfig(
            requests=settings.rate_limit_sync_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
    }


class RateLimiter:
    """In-memory fixed-window rate limiter keyed by client and endpoint."""

    def __init__(self) -> None:
        self._memory_cache: dict[str, tuple[int, float]] = {}  # (count, reset_time)
        self._settings = get_settings()
        self._enabled = self._settings.rate_limit_enabled
        self.limits = _default_limits()

    def _get_key(self, identifier: str, endpoint: str) -> str:
        return f"rate_limit:{endpoint}:{identifier}"

    def _get_client_identifier(self, request: Request) -> str:
        """Extract client identifier, preferring X-Forwarded-For."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _check_memory_limit(
        self, key: str, config: RateLimitConfig
    ) -> tuple[bool, dict]:
        """Count the request in the current window.

        Returns:
            Tuple of (allowed, headers_dict)
        """
        now = time.time()
        window_start = int(now // config.window_seconds) * config.window_seconds
        window_key = f"{key}:{window_start}"

        # Clean old entries periodically
        if len(self._memory_cache) > 10000:
            self._memory_cache = {
                k: v for k, v in self._memory_cache.items() if v[1] > now
            }

        count, reset_time = self._memory_cache.get(
            window_key, (0, window_start + config.window_seconds)
        )
        count += 1
        self._memory_cache[window_key] = (count, reset_time)

        headers = {
            "X-RateLimit-Limit": str(config.requests),
            "X-RateLimit-Remaining": str(max(0, config.requests - count)),
            "X-RateLimit-Reset": str(int(reset_time)),
        }
        return count <= config.requests, headers

    async def check_rate_limit(self, request: Request, limit_type: str = "default") -> None:
        """Check rate limit and raise HTTPException if exceeded.

        Raises:
            HTTPException: 429 Too Many Requests if limit exceeded
        """
        if not self._enabled:
            return

        config = self.limits.get(limit_type, self.limits["default"])
        key = self._get_key(self._get_client_identifier(request), request.url.path)
        allowed, headers = self._check_memory_limit(key, config)

        if not allowed:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Rate limit exceeded. Please try again later.",
                headers={**headers, "Retry-After": str(config.window_seconds)},
            )

    def reset(self) -> None:
        self._memory_cache.clear()


# Global rate limiter instance
rate_limiter = RateLimiter()


def rate_limit(limit_type: str = "default") -> Callable:
    """FastAPI dependency for rate limiting.

    Usage:
        @router.post("/start", dependencies=[Depends(rate_limit("sync"))])
    """

    async def check_limit(request: Request) -> None:
        await rate_limiter.check_rate_limit(request, limit_type)

    return check_limit
