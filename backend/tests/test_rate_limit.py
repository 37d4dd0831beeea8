"""
Tests for the in-memory sliding-window rate limiter.

Tests: RateLimiter window math (injected clock), rate_limit dependency.
"""
import pytest
from fastapi import HTTPException
from starlette.requests import Request

from middleware.rate_limit import RateLimiter, rate_limit


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestRateLimiter:
    """Tests for the RateLimiter class."""

    @pytest.mark.unit
    def test_allows_requests_under_limit(self):
        limiter = RateLimiter()
        for _ in range(5):
            assert limiter.check("testkey", max_requests=5, window_seconds=60) is True

    @pytest.mark.unit
    def test_blocks_requests_over_limit(self):
        limiter = RateLimiter()
        for _ in range(3):
            limiter.check("testkey", max_requests=3, window_seconds=60)
        assert limiter.check("testkey", max_requests=3, window_seconds=60) is False

    @pytest.mark.unit
    def test_different_keys_independent(self):
        limiter = RateLimiter()
        for _ in range(3):
            limiter.check("key1", max_requests=3, window_seconds=60)
        assert limiter.check("key1", max_requests=3, window_seconds=60) is False
        assert limiter.check("key2", max_requests=3, window_seconds=60) is True

    @pytest.mark.unit
    def test_window_slides(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.check("k", max_requests=2, window_seconds=10)
        clock.now += 5
        limiter.check("k", max_requests=2, window_seconds=10)
        assert limiter.check("k", max_requests=2, window_seconds=10) is False

        # First hit leaves the window, second one is still inside
        clock.now += 5
        assert limiter.check("k", max_requests=2, window_seconds=10) is True
        assert limiter.check("k", max_requests=2, window_seconds=10) is False

    @pytest.mark.unit
    def test_rejected_hits_are_not_counted(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        assert limiter.check("k", max_requests=1, window_seconds=10) is True
        for _ in range(5):
            assert limiter.check("k", max_requests=1, window_seconds=10) is False
        clock.now += 10
        assert limiter.check("k", max_requests=1, window_seconds=10) is True

    @pytest.mark.unit
    def test_remaining_never_negative(self):
        limiter = RateLimiter()
        assert limiter.remaining("testkey", max_requests=5, window_seconds=60) == 5
        for _ in range(5):
            limiter.check("testkey", max_requests=5, window_seconds=60)
        assert limiter.remaining("testkey", max_requests=5, window_seconds=60) == 0

    @pytest.mark.unit
    def test_retry_after(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        assert limiter.retry_after("k", 60) == 0.0
        limiter.check("k", max_requests=1, window_seconds=60)
        clock.now += 15
        assert limiter.retry_after("k", 60) == 45.0


class TestRateLimitDependency:

    def _request(self, path="/payments/verify", host="10.0.0.1") -> Request:
        return Request({
            "type": "http",
            "method": "POST",
            "path": path,
            "headers": [],
            "query_string": b"",
            "client": (host, 1234),
            "server": ("test", 80),
            "scheme": "http",
        })

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_raises_429_with_headers(self, monkeypatch):
        from middleware import rate_limit as rate_limit_module
        monkeypatch.setattr(rate_limit_module, "_limiter", RateLimiter())

        check = rate_limit(max_requests=2, window_seconds=60)
        await check(self._request())
        await check(self._request())
        with pytest.raises(HTTPException) as exc:
            await check(self._request())

        assert exc.value.status_code == 429
        assert exc.value.headers["X-RateLimit-Limit"] == "2"
        assert int(exc.value.headers["Retry-After"]) >= 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_limits_per_client(self, monkeypatch):
        from middleware import rate_limit as rate_limit_module
        monkeypatch.setattr(rate_limit_module, "_limiter", RateLimiter())

        check = rate_limit(max_requests=1, window_seconds=60)
        await check(self._request(host="10.0.0.1"))
        await check(self._request(host="10.0.0.2"))
