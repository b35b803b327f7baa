"""
Per-caller rate limiting for vault endpoints.

Fixed window counter: each caller identity gets RATE_LIMIT_MAX requests per
RATE_LIMIT_WINDOW_SECONDS. The first request after a window expires opens a
fresh window with count 1.

Counters:
- InMemoryRateLimitCounter: process-local; correct for a single long-lived
  process, under-counts when several instances serve traffic
- RedisRateLimitCounter: shared across instances via atomic INCR + EXPIRE;
  degrades gracefully if Redis is unavailable (allow request, log warning)

Configuration (environment variables):
- RATE_LIMIT_ENABLED:        Kill switch (default: "true")
- RATE_LIMIT_MAX:            Max requests per window (default: "100")
- RATE_LIMIT_WINDOW_SECONDS: Window duration in seconds (default: "60")
- RATE_LIMIT_BACKEND:        "memory" or "redis" (default: "memory")
- REDIS_URL:                 Redis connection URL (redis backend only)

Usage:
    limiter = build_rate_limiter(limit=100, window_seconds=60)
    enforce_rate_limit(request, limiter, scope="vault")
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis
from fastapi import Request

from src.platform.errors import RateLimitError

logger = logging.getLogger(__name__)

UNKNOWN_CALLER = "unknown"


# ---------------------------------------------------------------------------
# Rate limit result dataclass
# ---------------------------------------------------------------------------

@dataclass
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed:     Whether the request is allowed.
        remaining:   Number of requests remaining in the current window.
        limit:       Maximum number of requests allowed per window.
        reset_at:    Unix timestamp when the current window resets.
        retry_after: Seconds until the client should retry (0 if allowed).
    """

    allowed: bool
    remaining: int
    limit: int
    reset_at: float
    retry_after: int


class RateLimitBackendError(Exception):
    """The shared counter store could not be reached."""
    pass


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

class RateLimitCounter(ABC):
    """Counts hits per key within fixed windows."""

    @abstractmethod
    def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        """
        Record one hit.

        Returns:
            (hits in the current window including this one, window reset timestamp)

        Raises:
            RateLimitBackendError: If the counter store is unavailable
        """
        pass


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimitCounter(RateLimitCounter):
    """
    Process-local fixed window counter.

    Expired windows are pruned periodically so the table stays bounded by
    the number of callers seen within one window.
    """

    PRUNE_EVERY = 1000

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._hits_since_prune = 0

    def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + window_seconds)
                self._windows[key] = window
            else:
                window.count += 1

            self._hits_since_prune += 1
            if self._hits_since_prune >= self.PRUNE_EVERY:
                self._prune(now)

            return window.count, window.reset_at

    def _prune(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now > window.reset_at]
        for key in expired:
            del self._windows[key]
        self._hits_since_prune = 0

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


class RedisRateLimitCounter(RateLimitCounter):
    """
    Shared fixed window counter using INCR with a TTL.

    The TTL is set when a key is first created, so the window is anchored
    at the caller's first request exactly like the in-memory counter.
    """

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        if client is None and not redis_url:
            raise ValueError("redis_url or client is required")
        self.redis_url = redis_url
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        """
        Get or create a Redis connection.

        The connection is created lazily on first use so that the module
        can be imported even when Redis is not yet available.
        """
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
            )
        return self._redis

    def increment(self, key: str, window_seconds: int) -> Tuple[int, float]:
        now = time.time()
        try:
            r = self._get_redis()
            pipe = r.pipeline(transaction=True)
            pipe.incr(key)
            pipe.ttl(key)
            count, ttl = pipe.execute()

            # -1: key has no TTL yet (first hit, or a lost EXPIRE)
            if ttl is None or ttl < 0:
                r.expire(key, window_seconds)
                ttl = window_seconds

            return int(count), now + ttl
        except redis.RedisError as exc:
            raise RateLimitBackendError(str(exc)) from exc


# ---------------------------------------------------------------------------
# RateLimiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """Applies a per-identity request cap on top of a counter."""

    def __init__(
        self,
        counter: RateLimitCounter,
        limit: int = 100,
        window_seconds: int = 60,
        enabled: bool = True,
    ):
        self.counter = counter
        self.limit = limit
        self.window_seconds = window_seconds
        self.enabled = enabled

    def check(self, identity: str, scope: str = "vault") -> RateLimitResult:
        """
        Count a request and decide whether it is allowed.

        Args:
            identity: Caller identity (source address)
            scope:    Logical endpoint group sharing one quota

        Returns:
            :class:`RateLimitResult` describing the outcome.
        """
        now = time.time()
        if not self.enabled:
            return RateLimitResult(
                allowed=True,
                remaining=self.limit,
                limit=self.limit,
                reset_at=now + self.window_seconds,
                retry_after=0,
            )

        key = f"ratelimit:{scope}:{identity}"
        try:
            count, reset_at = self.counter.increment(key, self.window_seconds)
        except RateLimitBackendError as exc:
            logger.warning(
                "Rate limit backend unavailable - allowing request (fail-open)",
                extra={"error": str(exc), "scope": scope},
            )
            return RateLimitResult(
                allowed=True,
                remaining=self.limit,
                limit=self.limit,
                reset_at=now + self.window_seconds,
                retry_after=0,
            )

        if count > self.limit:
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=self.limit,
                reset_at=reset_at,
                retry_after=max(1, math.ceil(reset_at - now)),
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, self.limit - count),
            limit=self.limit,
            reset_at=reset_at,
            retry_after=0,
        )


def build_rate_limiter(
    backend: str = "memory",
    limit: int = 100,
    window_seconds: int = 60,
    enabled: bool = True,
    redis_url: Optional[str] = None,
) -> RateLimiter:
    """Create a limiter with the configured counter backend."""
    if backend == "redis":
        counter: RateLimitCounter = RedisRateLimitCounter(redis_url=redis_url)
    else:
        counter = InMemoryRateLimitCounter()
    logger.info(
        "Rate limiter configured",
        extra={"backend": backend, "limit": limit, "window_seconds": window_seconds},
    )
    return RateLimiter(counter, limit=limit, window_seconds=window_seconds, enabled=enabled)


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------

def caller_identity(request: Request) -> str:
    """
    Identify the caller by source address.

    Uses the first x-forwarded-for hop, then cf-connecting-ip, then the
    socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CALLER


# ---------------------------------------------------------------------------
# FastAPI integration
# ---------------------------------------------------------------------------

def enforce_rate_limit(request: Request, limiter: RateLimiter, scope: str = "vault") -> RateLimitResult:
    """
    Raises:
        RateLimitError: If the caller exceeded its window quota
    """
    identity = caller_identity(request)
    result = limiter.check(identity, scope=scope)

    if not result.allowed:
        logger.warning(
            "Rate limit triggered",
            extra={
                "action": "rate_limit.triggered",
                "caller": identity,
                "scope": scope,
                "limit": result.limit,
                "window_seconds": limiter.window_seconds,
                "retry_after": result.retry_after,
                "path": request.url.path,
                "method": request.method,
            },
        )
        raise RateLimitError(retry_after=result.retry_after)

    return result

