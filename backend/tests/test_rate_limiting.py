"""
Tests for vault rate limiting.

Verifies:
- The first RATE_LIMIT_MAX requests in a window pass, the next one is rejected
- The first request after the window expires opens a new window
- Callers are counted independently by source address
- Redis counter uses INCR + TTL and fails open when Redis is down
- Kill switch disables rate limiting
"""

import time

import pytest
from unittest.mock import Mock, MagicMock

import redis
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from src.middleware.rate_limit import (
    InMemoryRateLimitCounter,
    RateLimitBackendError,
    RateLimiter,
    RedisRateLimitCounter,
    build_rate_limiter,
    caller_identity,
    enforce_rate_limit,
)
from src.platform.errors import RateLimitError, register_error_handlers


class FakeClock:
    def __init__(self, now=None):
        self.now = time.time() if now is None else now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _request(headers=None, client=("203.0.113.9", 5000)):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/vault/activity",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


def _memory_limiter(limit=100, window_seconds=60, clock=None):
    counter = InMemoryRateLimitCounter(clock=clock or FakeClock())
    return RateLimiter(counter, limit=limit, window_seconds=window_seconds)


class TestInMemoryLimiter:

    def test_101st_request_rejected(self):
        limiter = _memory_limiter()

        results = [limiter.check("10.0.0.1") for _ in range(101)]

        assert all(r.allowed for r in results[:100])
        assert results[99].remaining == 0
        assert results[100].allowed is False
        assert results[100].retry_after >= 1

    def test_window_reset_starts_new_count(self):
        clock = FakeClock()
        limiter = _memory_limiter(limit=2, window_seconds=60, clock=clock)
        limiter.check("10.0.0.1")
        limiter.check("10.0.0.1")
        assert limiter.check("10.0.0.1").allowed is False

        clock.advance(61)
        result = limiter.check("10.0.0.1")

        assert result.allowed is True
        assert result.remaining == 1

    def test_callers_counted_separately(self):
        limiter = _memory_limiter(limit=1)

        assert limiter.check("10.0.0.1").allowed is True
        assert limiter.check("10.0.0.2").allowed is True
        assert limiter.check("10.0.0.1").allowed is False

    def test_scopes_counted_separately(self):
        limiter = _memory_limiter(limit=1)

        assert limiter.check("10.0.0.1", scope="vault").allowed is True
        assert limiter.check("10.0.0.1", scope="admin").allowed is True

    def test_kill_switch(self):
        limiter = _memory_limiter(limit=1)
        limiter.enabled = False

        assert all(limiter.check("10.0.0.1").allowed for _ in range(5))

    def test_expired_windows_pruned(self):
        clock = FakeClock()
        counter = InMemoryRateLimitCounter(clock=clock)
        counter.PRUNE_EVERY = 2
        counter.increment("a", 10)
        clock.advance(11)
        counter.increment("b", 10)

        assert "a" not in counter._windows


class TestRedisCounter:

    def _client(self, count, ttl):
        client = MagicMock()
        pipe = MagicMock()
        pipe.execute.return_value = [count, ttl]
        client.pipeline.return_value = pipe
        return client, pipe

    def test_first_hit_sets_expiry(self):
        client, pipe = self._client(count=1, ttl=-1)
        counter = RedisRateLimitCounter(client=client)

        count, _ = counter.increment("ratelimit:vault:10.0.0.1", 60)

        assert count == 1
        pipe.incr.assert_called_once_with("ratelimit:vault:10.0.0.1")
        client.expire.assert_called_once_with("ratelimit:vault:10.0.0.1", 60)

    def test_existing_window_keeps_ttl(self):
        client, _ = self._client(count=7, ttl=42)

        count, _ = RedisRateLimitCounter(client=client).increment("k", 60)

        assert count == 7
        client.expire.assert_not_called()

    def test_redis_error_wrapped(self):
        client = MagicMock()
        client.pipeline.side_effect = redis.ConnectionError("down")

        with pytest.raises(RateLimitBackendError):
            RedisRateLimitCounter(client=client).increment("k", 60)

    def test_limiter_fails_open(self):
        client = MagicMock()
        client.pipeline.side_effect = redis.ConnectionError("down")
        limiter = RateLimiter(RedisRateLimitCounter(client=client), limit=1)

        assert limiter.check("10.0.0.1").allowed is True
        assert limiter.check("10.0.0.1").allowed is True

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisRateLimitCounter()


class TestBuildRateLimiter:

    def test_memory_backend(self):
        limiter = build_rate_limiter(limit=5, window_seconds=30)

        assert isinstance(limiter.counter, InMemoryRateLimitCounter)
        assert (limiter.limit, limiter.window_seconds) == (5, 30)

    def test_redis_backend_is_lazy(self):
        limiter = build_rate_limiter(backend="redis", redis_url="redis://localhost:6379/0")

        assert isinstance(limiter.counter, RedisRateLimitCounter)
        assert limiter.counter._redis is None


class TestCallerIdentity:

    def test_first_forwarded_hop(self):
        request = _request({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})

        assert caller_identity(request) == "198.51.100.1"

    def test_cloudflare_header(self):
        assert caller_identity(_request({"CF-Connecting-IP": "198.51.100.7"})) == "198.51.100.7"

    def test_socket_peer(self):
        assert caller_identity(_request()) == "203.0.113.9"

    def test_unknown(self):
        assert caller_identity(_request(client=None)) == "unknown"


class TestEnforceRateLimit:

    def _app(self, limiter):
        app = FastAPI()
        register_error_handlers(app)

        @app.post("/limited")
        async def limited(request: Request):
            enforce_rate_limit(request, limiter)
            return {"ok": True}

        return app

    def test_429_with_retry_after(self):
        client = TestClient(self._app(_memory_limiter(limit=2)))

        assert client.post("/limited").status_code == 200
        assert client.post("/limited").status_code == 200
        response = client.post("/limited")

        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "data": None,
            "error": "Rate limit exceeded. Please try again later.",
        }
        assert int(response.headers["Retry-After"]) >= 1

    def test_raises_rate_limit_error(self):
        limiter = Mock()
        limiter.window_seconds = 60
        limiter.check.return_value = Mock(allowed=False, limit=1, retry_after=12)
        request = _request()

        with pytest.raises(RateLimitError) as exc_info:
            enforce_rate_limit(request, limiter)

        assert exc_info.value.retry_after == 12
