"""
In-memory sliding-window rate limiting.

Two users:
    - rate_limit(): FastAPI dependency guarding sensitive endpoints per
      client IP and route (e.g. payment verification)
    - job_worker: caps the notifications queue at 100 jobs per minute

State is per process. Running several API or worker processes multiplies
the effective limit by the process count.
"""
import time
import logging
from collections import defaultdict, deque
from typing import Callable

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window limiter keyed by an arbitrary string.

    clock is injectable so tests can move time without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # {key: deque of admission timestamps, oldest first}
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    def _expire(self, key: str, window_seconds: float) -> deque[float]:
        hits = self._hits[key]
        cutoff = self._clock() - window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def check(self, key: str, max_requests: int, window_seconds: float) -> bool:
        """Admit one hit if the window has room. Returns False when limited."""
        hits = self._expire(key, window_seconds)
        if len(hits) >= max_requests:
            return False
        hits.append(self._clock())
        return True

    def remaining(self, key: str, max_requests: int, window_seconds: float) -> int:
        return max(0, max_requests - len(self._expire(key, window_seconds)))

    def retry_after(self, key: str, window_seconds: float) -> float:
        """Seconds until the oldest hit leaves the window (0 if none)."""
        hits = self._expire(key, window_seconds)
        if not hits:
            return 0.0
        return max(0.0, hits[0] + window_seconds - self._clock())


_limiter = RateLimiter()


def rate_limit(max_requests: int = 10, window_seconds: int = 60):
    """
    FastAPI dependency factory.

    Usage:
        @router.post("/payments/verify")
        async def verify(..., _=Depends(rate_limit(20, 60))):
    """
    async def _check_rate_limit(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        route_path = request.url.path
        key = f"{client_ip}:{route_path}"

        if not _limiter.check(key, max_requests, window_seconds):
            retry_after = int(_limiter.retry_after(key, window_seconds)) + 1
            logger.warning(
                f"Rate limit exceeded: {client_ip} on {route_path} "
                f"({max_requests}/{window_seconds}s)"
            )
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded. Maximum {max_requests} requests "
                       f"per {window_seconds} seconds. Try again later.",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

    return _check_rate_limit
