"""
Rate Limiter — per-user, per-action fixed-window quotas.

Contract for check_and_consume(user_id, action):
  - no counter or window elapsed → reset to count=1, allow
  - count < max → increment, allow
  - otherwise deny; a denial never writes

Counters live in a CounterStore: Redis for multi-process deployments,
an in-process dict for a single worker and for tests. The algorithm is the
same for both; only the storage differs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from config import settings
from services.errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at_ms: int

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at_ms / 1000, tz=timezone.utc).replace(tzinfo=None)

    @property
    def retry_after_seconds(self) -> int:
        return max(int((self.reset_at_ms - _now_ms()) / 1000), 1)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _decide(count: int | None, reset_at: int | None, max_requests: int, window_ms: int, now: int):
    """Return (decision, new_record) where new_record is None on denial."""
    if count is None or reset_at is None or now > reset_at:
        reset_at = now + window_ms
        return RateLimitDecision(True, max_requests - 1, reset_at), (1, reset_at)
    if count >= max_requests:
        return RateLimitDecision(False, 0, reset_at), None
    count += 1
    return RateLimitDecision(True, max_requests - count, reset_at), (count, reset_at)


class CounterStore:
    async def consume(self, key: str, max_requests: int, window_ms: int, now: int) -> RateLimitDecision:
        raise NotImplementedError

    async def reset(self, key_prefix: str) -> None:
        raise NotImplementedError


class MemoryCounterStore(CounterStore):
    """Process-local counters. Only correct with a single worker."""

    PRUNE_INTERVAL_MS = 60_000

    def __init__(self):
        self._records: dict[str, tuple[int, int]] = {}
        self._lock = asyncio.Lock()
        self._next_prune = 0

    def _prune(self, now: int) -> None:
        """Drop counters whose window has elapsed. Runs at most once a minute."""
        if now < self._next_prune:
            return
        for key in [k for k, (_, reset_at) in self._records.items() if now > reset_at]:
            del self._records[key]
        self._next_prune = now + self.PRUNE_INTERVAL_MS

    def __len__(self) -> int:
        return len(self._records)

    async def consume(self, key, max_requests, window_ms, now):
        async with self._lock:
            self._prune(now)
            count, reset_at = self._records.get(key, (None, None))
            decision, record = _decide(count, reset_at, max_requests, window_ms, now)
            if record is not None:
                self._records[key] = record
            return decision

    async def reset(self, key_prefix):
        async with self._lock:
            for key in [k for k in self._records if k.startswith(key_prefix)]:
                del self._records[key]


class RedisCounterStore(CounterStore):
    """Shared counters: one hash per key with `count` and `reset` fields."""

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def consume(self, key, max_requests, window_ms, now):
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    data = await pipe.hgetall(key)
                    count = int(data["count"]) if data and "count" in data else None
                    reset_at = int(data["reset"]) if data and "reset" in data else None

                    decision, record = _decide(count, reset_at, max_requests, window_ms, now)
                    if record is None:
                        await pipe.unwatch()
                        return decision

                    pipe.multi()
                    pipe.hset(key, mapping={"count": record[0], "reset": record[1]})
                    pipe.pexpireat(key, record[1])
                    await pipe.execute()
                    return decision
                except WatchError:
                    # Another worker touched the counter; re-read and retry
                    continue

    async def reset(self, key_prefix):
        async for key in self.redis.scan_iter(match=f"{key_prefix}*"):
            await self.redis.delete(key)


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        limits: dict[str, dict[str, int]] | None = None,
        default_limit: dict[str, int] | None = None,
    ):
        self.store = store
        self.limits = limits if limits is not None else settings.RATE_LIMITS
        self.default_limit = default_limit or settings.DEFAULT_RATE_LIMIT

    def limit_for(self, action: str) -> dict[str, int]:
        return self.limits.get(action, self.default_limit)

    async def check_and_consume(self, user_id: str, action: str, now_ms: int | None = None) -> RateLimitDecision:
        limit = self.limit_for(action)
        now = now_ms if now_ms is not None else _now_ms()
        decision = await self.store.consume(
            f"ratelimit:{user_id}:{action}", limit["max"], limit["windowMs"], now
        )
        if not decision.allowed:
            logger.warning("Rate limit exceeded: user=%s action=%s", user_id, action)
        return decision

    async def enforce(self, user_id: str, action: str) -> RateLimitDecision:
        """check_and_consume, raising RateLimited on denial."""
        decision = await self.check_and_consume(user_id, action)
        if not decision.allowed:
            raise RateLimited(action, decision.remaining, decision.reset_time)
        return decision

    async def reset_user_limits(self, user_id: str) -> None:
        await self.store.reset(f"ratelimit:{user_id}:")


class IpThrottle:
    """Coarse limiter keyed by network address for pre-auth routes."""

    def __init__(self, store: CounterStore, max_requests: int | None = None, window_ms: int | None = None):
        self.store = store
        self.max_requests = max_requests or settings.IP_THROTTLE_MAX
        self.window_ms = window_ms or settings.IP_THROTTLE_WINDOW_MS

    async def check(self, ip: str, route: str, now_ms: int | None = None) -> RateLimitDecision:
        now = now_ms if now_ms is not None else _now_ms()
        return await self.store.consume(f"ipthrottle:{ip}:{route}", self.max_requests, self.window_ms, now)

    async def enforce(self, ip: str, route: str) -> RateLimitDecision:
        decision = await self.check(ip, route)
        if not decision.allowed:
            logger.warning("IP throttle exceeded: ip=%s route=%s", ip, route)
            raise RateLimited(route, decision.remaining, decision.reset_time)
        return decision


_store: CounterStore | None = None


def get_counter_store() -> CounterStore:
    """Singleton counter store (Redis unless disabled in settings)."""
    global _store
    if _store is None:
        if settings.USE_REDIS_COUNTERS:
            _store = RedisCounterStore(aioredis.from_url(settings.REDIS_URL, decode_responses=True))
        else:
            _store = MemoryCounterStore()
    return _store


def get_rate_limiter() -> RateLimiter:
    return RateLimiter(get_counter_store())


def get_ip_throttle() -> IpThrottle:
    return IpThrottle(get_counter_store())
