"""
Rate Limiter - Sliding-window request throttling.

Throttling is a transport-level decision: it never reads or writes the credit
ledger. Two backends share one protocol:

- InMemoryRateLimiter: per-process sliding window log
- RedisRateLimiter: sorted-set sliding window shared by all workers

NO DICTIONARIES - Decisions are typed dataclasses.
"""

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

import redis.asyncio as redis
from structlog import get_logger

from creditgate.config import settings
from creditgate.observability.metrics import metrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int | None = None  # Seconds until a retry can succeed

    @property
    def headers(self) -> dict[str, str]:
        """Rate limit headers for the HTTP response."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter(Protocol):
    """Rate limiter protocol. Implementations must tolerate concurrent calls."""

    async def allow(
        self, identity: str, limit: int, now: float | None = None
    ) -> RateLimitDecision:
        """Record one request for identity and decide whether it may proceed."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...


def _retry_after(oldest: float, window: float, now: float) -> int:
    return max(1, math.ceil(oldest + window - now))


class InMemoryRateLimiter:
    """
    Sliding window log kept in process memory.

    Each identity keeps the timestamps of its admitted requests inside the
    window. Identities idle for a full window are pruned.
    """

    def __init__(self, window_seconds: float | None = None, prune_every: int = 1000) -> None:
        self.window = float(window_seconds or settings.rate_limit_window_seconds)
        self._log: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._prune_every = prune_every
        self._calls = 0

    async def allow(
        self, identity: str, limit: int, now: float | None = None
    ) -> RateLimitDecision:
        now = time.monotonic() if now is None else now
        window_start = now - self.window

        with self._lock:
            self._calls += 1
            if self._calls % self._prune_every == 0:
                self._prune(window_start)

            entries = self._log.setdefault(identity, deque())
            while entries and entries[0] <= window_start:
                entries.popleft()

            if len(entries) >= limit:
                return RateLimitDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=_retry_after(entries[0], self.window, now),
                )

            entries.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit - len(entries),
            )

    def _prune(self, window_start: float) -> None:
        idle = [k for k, v in self._log.items() if not v or v[-1] <= window_start]
        for key in idle:
            del self._log[key]

    @property
    def tracked_identities(self) -> int:
        return len(self._log)

    async def close(self) -> None:
        with self._lock:
            self._log.clear()


class RedisRateLimiter:
    """
    Sliding window over a Redis sorted set per identity.

    Trim, count and insert run in one MULTI/EXEC pipeline. A denied request
    removes its own entry so rejected traffic does not extend the window.

    While Redis is unreachable, checks are answered by a per-process window
    so the limit still holds per worker.
    """

    KEY_PREFIX = "creditgate:ratelimit:"

    def __init__(self, redis_client: Any, window_seconds: float | None = None) -> None:
        self._redis = redis_client
        self.window = float(window_seconds or settings.rate_limit_window_seconds)
        self._fallback = InMemoryRateLimiter(window_seconds=self.window)

    @classmethod
    def from_url(cls, url: str, window_seconds: float | None = None) -> "RedisRateLimiter":
        return cls(redis.from_url(url, decode_responses=True), window_seconds)

    async def allow(
        self, identity: str, limit: int, now: float | None = None
    ) -> RateLimitDecision:
        now = time.time() if now is None else now
        try:
            return await self._allow_shared(identity, limit, now)
        except redis.RedisError as exc:
            logger.warning(
                "rate_limiter_backend_unavailable",
                backend="redis",
                error_type=type(exc).__name__,
            )
            metrics.rate_limit_backend_fallbacks_total.inc()
            return await self._fallback.allow(identity, limit, now)

    async def _allow_shared(self, identity: str, limit: int, now: float) -> RateLimitDecision:
        window_start = now - self.window
        key = f"{self.KEY_PREFIX}{identity}"
        member = f"{now:.6f}:{uuid4().hex}"

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            pipe.zadd(key, {member: now})
            pipe.expire(key, math.ceil(self.window) + 1)
            results = await pipe.execute()

        current_count = int(results[1])
        if current_count < limit:
            return RateLimitDecision(
                allowed=True,
                limit=limit,
                remaining=limit - current_count - 1,
            )

        await self._redis.zrem(key, member)
        oldest = await self._redis.zrange(key, 0, 0, withscores=True)
        retry_after = (
            _retry_after(float(oldest[0][1]), self.window, now)
            if oldest
            else math.ceil(self.window)
        )
        logger.debug("rate_limit_exceeded", key=key, current=current_count, limit=limit)
        return RateLimitDecision(allowed=False, limit=limit, remaining=0, retry_after=retry_after)

    async def close(self) -> None:
        await self._fallback.close()
        await self._redis.aclose()


def create_rate_limiter() -> RateLimiter:
    """Build the limiter selected by RATE_LIMIT_BACKEND."""
    if settings.rate_limit_backend == "redis":
        logger.info("rate_limiter_backend", backend="redis")
        return RedisRateLimiter.from_url(settings.redis_url)
    logger.info("rate_limiter_backend", backend="memory")
    return InMemoryRateLimiter()
