"""In-memory sliding window rate limiter."""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable

from fastapi import HTTPException, Request, status

from grounded_chat.observability.logger import get_logger

logger = get_logger("rate_limiter")


class SlidingWindowRateLimiter:
    """Tracks request timestamps per client key within a rolling window."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._clock = clock

    def check(self, key: str, max_requests: int, window_seconds: int = 60) -> bool:
        """Return True if request is allowed, False if rate-limited."""
        now = self._clock()
        cutoff = now - window_seconds

        self._requests[key] = [t for t in self._requests[key] if t > cutoff]

        if len(self._requests[key]) >= max_requests:
            return False

        self._requests[key].append(now)
        return True

    def retry_after(self, key: str, window_seconds: int = 60) -> int:
        timestamps = self._requests.get(key)
        if not timestamps:
            return 0
        return max(1, int(timestamps[0] + window_seconds - self._clock()) + 1)


def client_key(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "anonymous"


async def rate_limit(request: Request) -> str:
    """FastAPI dependency: enforce the per-client request budget.

    The limiter lives on ``app.state`` so each app instance keeps its own windows.
    """
    settings = request.app.state.settings
    limiter: SlidingWindowRateLimiter = request.app.state.rate_limiter
    key = client_key(request)

    if not limiter.check(key, settings.rate_limit_requests_per_minute):
        logger.warning("rate_limited", key=key)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded. Try again later.",
            headers={"Retry-After": str(limiter.retry_after(key))},
        )

    return key
