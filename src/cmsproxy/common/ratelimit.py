"""Fixed-window rate limiting keyed by client address."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from redis.asyncio import Redis
import structlog

LOGGER = structlog.get_logger("cmsproxy.ratelimit")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    reset_seconds: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current)


class RateLimiter:
    """Redis-backed limiter shared by every proxy replica."""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def check_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count one request against ``key`` and report whether it may proceed.

        Args:
            key: Unique key for the limit (e.g. "ip:203.0.113.7")
            limit: Maximum requests allowed in the window
            window_seconds: Window length in seconds

        Returns:
            RateLimitResult describing the decision and the window state
        """
        rate_key = f"ratelimit:{key}"
        try:
            current = int(await self._redis.incr(rate_key))
            if current == 1:
                await self._redis.expire(rate_key, window_seconds)
            ttl = await self._redis.ttl(rate_key)
        except Exception as exc:  # noqa: BLE001
            # Fail open on Redis errors to avoid cascading failures
            LOGGER.error("rate_limiter_unavailable", key=key, error=str(exc))
            return RateLimitResult(allowed=True, current=0, limit=limit, reset_seconds=window_seconds)

        reset = int(ttl) if ttl is not None and int(ttl) >= 0 else window_seconds
        allowed = current <= limit
        if not allowed:
            LOGGER.warning("rate_limit_exceeded", key=key, current=current, limit=limit, window=window_seconds)
        return RateLimitResult(allowed=allowed, current=current, limit=limit, reset_seconds=reset)

    async def reset(self, key: str) -> None:
        await self._redis.delete(f"ratelimit:{key}")

    async def aclose(self) -> None:
        await self._redis.aclose()


class InMemoryRateLimiter:
    """Per-process limiter used when no Redis URL is configured."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_every: int = 1024):
        self._clock = clock
        self._counters: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._calls = 0

    async def check_limit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(now)
            count, expires_at = self._counters.get(key, (0, 0.0))
            if now >= expires_at:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)

        allowed = count <= limit
        if not allowed:
            LOGGER.warning("rate_limit_exceeded", key=key, current=count, limit=limit, window=window_seconds)
        reset = max(0, math.ceil(expires_at - now))
        return RateLimitResult(allowed=allowed, current=count, limit=limit, reset_seconds=reset)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._counters.pop(key, None)

    async def aclose(self) -> None:
        return None

    def _sweep(self, now: float) -> None:
        expired = [key for key, (_, expires_at) in self._counters.items() if expires_at <= now]
        for key in expired:
            del self._counters[key]


def build_rate_limiter(redis_url: Optional[str]) -> RateLimiter | InMemoryRateLimiter:
    if redis_url:
        return RateLimiter(Redis.from_url(redis_url, decode_responses=True))
    return InMemoryRateLimiter()
