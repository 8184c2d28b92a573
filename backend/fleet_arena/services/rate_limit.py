"""Sliding-window admission control for the streaming endpoint.

Classes:
    RateLimitDecision: Outcome of a check, never an exception.
    InMemoryRateLimiter: Per-process window; undercounts when several instances run.
    RedisRateLimiter: Shared window backed by a Redis sorted set.

Functions:
    build_rate_limiter(settings, redis_client): Pick the Redis limiter when a store is configured.
"""

from __future__ import annotations

import logging
import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Optional, Protocol
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from fleet_arena.core.config import Settings, get_settings

_LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class RateLimiter(Protocol):
    async def check(self, client_key: str) -> RateLimitDecision: ...


def _retry_after(oldest: float, window: float, now: float) -> int:
    return max(1, math.ceil(oldest + window - now))


class InMemoryRateLimiter:
    def __init__(
        self,
        *,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sweep_every: int = 1024,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._checks = 0
        self._hits: dict[str, deque[float]] = defaultdict(deque)

    async def check(self, client_key: str) -> RateLimitDecision:
        now = self._clock()
        self._checks += 1
        if self._checks % self._sweep_every == 0:
            self._evict_idle(now)
        hits = self._hits[f"stream:{client_key}"]
        while hits and now - hits[0] >= self._window:
            hits.popleft()
        if len(hits) >= self._limit:
            return RateLimitDecision(False, _retry_after(hits[0], self._window, now))
        hits.append(now)
        return RateLimitDecision(True)

    @property
    def tracked_keys(self) -> int:
        return len(self._hits)

    def _evict_idle(self, now: float) -> None:
        # A key whose newest hit left the window would be trimmed to empty anyway.
        idle = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self._window]
        for key in idle:
            del self._hits[key]


class RedisRateLimiter:
    """Sliding window over a sorted set of request timestamps.

    Trim, insert, count and expire run in one MULTI/EXEC transaction so concurrent
    requests from every instance see a consistent count. A request that lands over
    the quota removes its own entry again, which can only over-reject, never
    under-count.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        limit: int,
        window_seconds: float,
        prefix: str = "fleet-arena:rl",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        self._limit = limit
        self._window_ms = int(window_seconds * 1000)
        self._prefix = prefix
        self._clock = clock

    @property
    def client(self) -> aioredis.Redis:
        return self._redis

    async def check(self, client_key: str) -> RateLimitDecision:
        now_ms = int(self._clock() * 1000)
        key = f"{self._prefix}:stream:{client_key}"
        member = f"{now_ms}-{uuid4().hex}"
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, now_ms - self._window_ms)
                pipe.zadd(key, {member: now_ms})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.pexpire(key, self._window_ms)
                _, _, count, oldest, _ = await pipe.execute()
            if count <= self._limit:
                return RateLimitDecision(True)
            await self._redis.zrem(key, member)
        except RedisError as exc:
            _LOGGER.warning("[ratelimit] store unavailable, admitting key=%s err=%s", client_key, exc)
            return RateLimitDecision(True)

        oldest_ms = float(oldest[0][1]) if oldest else float(now_ms)
        retry_after = _retry_after(oldest_ms / 1000.0, self._window_ms / 1000.0, now_ms / 1000.0)
        return RateLimitDecision(False, retry_after)


def build_rate_limiter(
    settings: Optional[Settings] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> RateLimiter:
    settings = settings or get_settings()
    if redis_client is None and settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
    if redis_client is not None:
        return RedisRateLimiter(
            redis_client,
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            prefix=settings.rate_limit_prefix,
        )
    _LOGGER.warning("[ratelimit] REDIS_URL not set; using per-process limiter, quotas undercount across instances")
    return InMemoryRateLimiter(
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
