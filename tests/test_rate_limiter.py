"""Tests for per-user quotas and the IP throttle (in-memory and mocked Redis)."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import WatchError

from services.errors import RateLimited
from services.rate_limiter import IpThrottle, MemoryCounterStore, RateLimiter, RedisCounterStore

HOUR = 60 * 60 * 1000


def _limiter():
    return RateLimiter(
        MemoryCounterStore(),
        limits={"createRequest": {"max": 5, "windowMs": HOUR}},
        default_limit={"max": 2, "windowMs": 1000},
    )


@pytest.mark.asyncio
async def test_max_allowed_then_denied():
    limiter = _limiter()
    decisions = [await limiter.check_and_consume("u1", "createRequest", now_ms=1_000) for _ in range(6)]
    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert [d.remaining for d in decisions] == [4, 3, 2, 1, 0, 0]
    assert decisions[-1].reset_at_ms == 1_000 + HOUR


@pytest.mark.asyncio
async def test_window_elapsed_resets_counter():
    limiter = _limiter()
    for _ in range(5):
        await limiter.check_and_consume("u1", "createRequest", now_ms=0)
    assert (await limiter.check_and_consume("u1", "createRequest", now_ms=HOUR)).allowed is False
    fresh = await limiter.check_and_consume("u1", "createRequest", now_ms=HOUR + 1)
    assert fresh.allowed is True
    assert fresh.remaining == 4


@pytest.mark.asyncio
async def test_denial_does_not_extend_window():
    limiter = _limiter()
    await limiter.check_and_consume("u1", "other", now_ms=0)
    await limiter.check_and_consume("u1", "other", now_ms=0)
    denied = await limiter.check_and_consume("u1", "other", now_ms=500)
    assert denied.allowed is False
    assert denied.reset_at_ms == 1000


@pytest.mark.asyncio
async def test_counters_are_per_user_and_action():
    limiter = _limiter()
    for _ in range(5):
        await limiter.check_and_consume("u1", "createRequest", now_ms=0)
    assert (await limiter.check_and_consume("u2", "createRequest", now_ms=0)).allowed is True
    assert (await limiter.check_and_consume("u1", "sendMessage", now_ms=0)).allowed is True


@pytest.mark.asyncio
async def test_unknown_action_uses_default_limit():
    limiter = _limiter()
    assert limiter.limit_for("somethingElse") == {"max": 2, "windowMs": 1000}


@pytest.mark.asyncio
async def test_enforce_raises_with_reset_time():
    limiter = _limiter()
    for _ in range(5):
        await limiter.enforce("u1", "createRequest")
    with pytest.raises(RateLimited) as exc:
        await limiter.enforce("u1", "createRequest")
    assert exc.value.http_status == 429
    assert exc.value.remaining == 0
    assert exc.value.details["action"] == "createRequest"


@pytest.mark.asyncio
async def test_reset_user_limits():
    limiter = _limiter()
    for _ in range(5):
        await limiter.check_and_consume("u1", "createRequest", now_ms=0)
    await limiter.reset_user_limits("u1")
    assert (await limiter.check_and_consume("u1", "createRequest", now_ms=0)).allowed is True


@pytest.mark.asyncio
async def test_ip_throttle():
    throttle = IpThrottle(MemoryCounterStore(), max_requests=2, window_ms=60_000)
    assert (await throttle.check("1.2.3.4", "/api/users/", now_ms=0)).allowed is True
    assert (await throttle.check("1.2.3.4", "/api/users/", now_ms=0)).allowed is True
    assert (await throttle.check("1.2.3.4", "/api/users/", now_ms=0)).allowed is False
    assert (await throttle.check("5.6.7.8", "/api/users/", now_ms=0)).allowed is True


def _mock_redis(stored: dict):
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.watch = AsyncMock()
    pipe.unwatch = AsyncMock()
    pipe.hgetall = AsyncMock(return_value=stored)
    pipe.execute = AsyncMock(return_value=[2, True])
    redis = MagicMock()
    redis.pipeline.return_value = pipe
    return redis, pipe


@pytest.mark.asyncio
async def test_redis_store_first_hit_sets_window():
    redis, pipe = _mock_redis({})
    decision = await RedisCounterStore(redis).consume("ratelimit:u1:createRequest", 5, HOUR, 100)

    assert decision.allowed is True
    assert decision.remaining == 4
    pipe.watch.assert_awaited_once_with("ratelimit:u1:createRequest")
    pipe.multi.assert_called_once()
    pipe.hset.assert_called_once_with("ratelimit:u1:createRequest", mapping={"count": 1, "reset": 100 + HOUR})
    pipe.pexpireat.assert_called_once_with("ratelimit:u1:createRequest", 100 + HOUR)
    pipe.execute.assert_awaited_once()


@pytest.mark.asyncio
async def test_redis_store_denial_never_writes():
    redis, pipe = _mock_redis({"count": "5", "reset": str(HOUR)})
    decision = await RedisCounterStore(redis).consume("k", 5, HOUR, 100)

    assert decision.allowed is False
    pipe.unwatch.assert_awaited_once()
    pipe.hset.assert_not_called()
    pipe.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_store_retries_on_watch_error():
    redis, pipe = _mock_redis({"count": "1", "reset": str(HOUR)})
    pipe.execute.side_effect = [WatchError(), [2, True]]
    decision = await RedisCounterStore(redis).consume("k", 5, HOUR, 100)

    assert decision.allowed is True
    assert decision.remaining == 3
    assert pipe.watch.await_count == 2


@pytest.mark.asyncio
async def test_memory_store_drops_elapsed_windows():
    store = MemoryCounterStore()
    limiter = RateLimiter(store, limits={}, default_limit={"max": 2, "windowMs": 1000})
    for user in ("u1", "u2", "u3"):
        await limiter.check_and_consume(user, "ping", now_ms=0)
    assert len(store) == 3

    # u4 arrives after the other windows closed and the prune interval passed
    await limiter.check_and_consume("u4", "ping", now_ms=MemoryCounterStore.PRUNE_INTERVAL_MS + 1)
    assert len(store) == 1
