"""
Tests for the sliding-window rate limiters.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.asyncio as redis
from prometheus_client import REGISTRY

from creditgate.services.rate_limiter import (
    InMemoryRateLimiter,
    RateLimitDecision,
    RedisRateLimiter,
    create_rate_limiter,
)


class TestRateLimitDecision:
    def test_allowed_headers(self):
        decision = RateLimitDecision(allowed=True, limit=60, remaining=59)
        assert decision.headers == {"X-RateLimit-Limit": "60", "X-RateLimit-Remaining": "59"}

    def test_denied_headers_include_retry_after(self):
        decision = RateLimitDecision(allowed=False, limit=60, remaining=0, retry_after=12)
        assert decision.headers["Retry-After"] == "12"
        assert decision.headers["X-RateLimit-Remaining"] == "0"


class TestInMemoryRateLimiter:
    """Per-process sliding window."""

    async def test_allows_up_to_limit(self):
        limiter = InMemoryRateLimiter(window_seconds=60)

        decisions = [await limiter.allow("account:a", 3, now=100.0 + i) for i in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions[:3]] == [2, 1, 0]

    async def test_retry_after_points_at_oldest_entry(self):
        limiter = InMemoryRateLimiter(window_seconds=60)
        await limiter.allow("ip:1.2.3.4", 1, now=100.0)

        denied = await limiter.allow("ip:1.2.3.4", 1, now=130.0)

        assert not denied.allowed
        assert denied.retry_after == 30

    async def test_window_slides(self):
        limiter = InMemoryRateLimiter(window_seconds=60)
        await limiter.allow("account:a", 1, now=100.0)

        assert not (await limiter.allow("account:a", 1, now=159.0)).allowed
        assert (await limiter.allow("account:a", 1, now=160.5)).allowed

    async def test_denied_requests_do_not_extend_window(self):
        limiter = InMemoryRateLimiter(window_seconds=10)
        await limiter.allow("k", 1, now=0.0)
        for t in range(1, 10):
            await limiter.allow("k", 1, now=float(t))

        assert (await limiter.allow("k", 1, now=10.5)).allowed

    async def test_identities_are_independent(self):
        limiter = InMemoryRateLimiter(window_seconds=60)
        await limiter.allow("account:a", 1, now=1.0)

        assert not (await limiter.allow("account:a", 1, now=2.0)).allowed
        assert (await limiter.allow("account:b", 1, now=2.0)).allowed

    async def test_idle_identities_are_pruned(self):
        limiter = InMemoryRateLimiter(window_seconds=10, prune_every=5)
        for i in range(4):
            await limiter.allow(f"ip:{i}", 10, now=0.0)
        assert limiter.tracked_identities == 4

        await limiter.allow("ip:fresh", 10, now=100.0)

        assert limiter.tracked_identities == 1

    async def test_concurrent_calls_never_exceed_limit(self):
        limiter = InMemoryRateLimiter(window_seconds=60)

        decisions = await asyncio.gather(*(limiter.allow("k", 25, now=5.0) for _ in range(100)))

        assert sum(d.allowed for d in decisions) == 25

    async def test_close_clears_state(self):
        limiter = InMemoryRateLimiter(window_seconds=60)
        await limiter.allow("k", 1, now=1.0)
        await limiter.close()
        assert limiter.tracked_identities == 0


def _fallback_count() -> float:
    return REGISTRY.get_sample_value("creditgate_rate_limit_backend_fallbacks_total") or 0.0


def _redis_client(count: int, oldest_score: float | None = None) -> tuple[MagicMock, MagicMock]:
    """Redis client mock whose pipeline reports count existing entries."""
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, count, 1, True])

    pipeline_cm = MagicMock()
    pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
    pipeline_cm.__aexit__ = AsyncMock(return_value=False)

    client = MagicMock()
    client.pipeline = MagicMock(return_value=pipeline_cm)
    client.zrem = AsyncMock(return_value=1)
    client.zrange = AsyncMock(
        return_value=[("member", oldest_score)] if oldest_score is not None else []
    )
    client.aclose = AsyncMock()
    return client, pipe


class TestRedisRateLimiter:
    """Shared sorted-set window."""

    async def test_allowed_request(self):
        client, pipe = _redis_client(count=2)
        limiter = RedisRateLimiter(client, window_seconds=60)

        decision = await limiter.allow("account:a", 5, now=1000.0)

        assert decision.allowed
        assert decision.remaining == 2
        pipe.zremrangebyscore.assert_called_once_with("creditgate:ratelimit:account:a", 0, 940.0)
        pipe.zadd.assert_called_once()
        pipe.expire.assert_called_once_with("creditgate:ratelimit:account:a", 61)
        client.zrem.assert_not_awaited()

    async def test_denied_request_removes_its_entry(self):
        client, pipe = _redis_client(count=5, oldest_score=970.0)
        limiter = RedisRateLimiter(client, window_seconds=60)

        decision = await limiter.allow("account:a", 5, now=1000.0)

        assert not decision.allowed
        assert decision.retry_after == 30
        added_member = next(iter(pipe.zadd.call_args.args[1]))
        client.zrem.assert_awaited_once_with("creditgate:ratelimit:account:a", added_member)

    async def test_denied_without_oldest_waits_full_window(self):
        client, _ = _redis_client(count=5)
        limiter = RedisRateLimiter(client, window_seconds=60)

        decision = await limiter.allow("account:a", 5, now=1000.0)

        assert decision.retry_after == 60

    async def test_redis_outage_falls_back_to_local_window(self):
        client, pipe = _redis_client(count=0)
        pipe.execute = AsyncMock(side_effect=redis.ConnectionError("Connection refused"))
        limiter = RedisRateLimiter(client, window_seconds=60)
        before = _fallback_count()

        first = await limiter.allow("account:a", 2, now=1000.0)
        second = await limiter.allow("account:a", 2, now=1001.0)
        third = await limiter.allow("account:a", 2, now=1002.0)

        assert [first.allowed, second.allowed, third.allowed] == [True, True, False]
        assert third.retry_after == 58
        assert _fallback_count() - before == 3
        client.zrem.assert_not_awaited()

    async def test_redis_timeout_on_cleanup_falls_back(self):
        client, _ = _redis_client(count=5)
        client.zrem = AsyncMock(side_effect=redis.TimeoutError("Timeout reading from socket"))
        limiter = RedisRateLimiter(client, window_seconds=60)

        decision = await limiter.allow("account:a", 5, now=1000.0)

        assert decision.allowed
        assert decision.remaining == 4

    async def test_unreachable_server_still_serves(self):
        limiter = RedisRateLimiter.from_url("redis://127.0.0.1:1/0", window_seconds=60)
        try:
            decision = await limiter.allow("ip:203.0.113.9", 1)
        finally:
            await limiter.close()

        assert decision.allowed

    async def test_close(self):
        client, _ = _redis_client(count=0)
        await RedisRateLimiter(client, window_seconds=60).close()
        client.aclose.assert_awaited_once()


class TestCreateRateLimiter:
    def test_memory_backend_by_default(self):
        assert isinstance(create_rate_limiter(), InMemoryRateLimiter)

    def test_redis_backend(self):
        with patch("creditgate.services.rate_limiter.settings") as mock_settings:
            mock_settings.rate_limit_backend = "redis"
            mock_settings.redis_url = "redis://localhost:6379/1"
            mock_settings.rate_limit_window_seconds = 60
            limiter = create_rate_limiter()
        assert isinstance(limiter, RedisRateLimiter)


@pytest.mark.parametrize("limit", [1, 7, 60])
async def test_in_memory_remaining_counts_down(limit):
    limiter = InMemoryRateLimiter(window_seconds=60)
    last = None
    for i in range(limit):
        last = await limiter.allow("k", limit, now=float(i) / 100)
    assert last is not None and last.remaining == 0
