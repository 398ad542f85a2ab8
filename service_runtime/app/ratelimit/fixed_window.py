"""
Fixed-window rate limiter for dynamic routes and admin login.
"""

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from shared.logging import get_logger
from shared.metrics import MetricsCollector


@dataclass
class RateLimitEntry:
    """Counter for one (route, identifier) window."""

    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single rate limit check."""

    allowed: bool
    remaining: int
    reset_at: float
    limit: int
    window: int
    retry_after: Optional[int] = None

    def headers(self) -> Dict[str, str]:
        """Standard rate limit headers for this decision."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _decide(count: int, reset_at: float, now: float, limit: int, window: int) -> RateLimitDecision:
    allowed = count <= limit
    return RateLimitDecision(
        allowed=allowed,
        remaining=max(0, limit - count),
        reset_at=reset_at,
        limit=limit,
        window=window,
        retry_after=None if allowed else max(0, math.ceil(reset_at - now)),
    )


class FixedWindowRateLimiter:
    """In-process fixed-window counter keyed by ``route_id:identifier``.

    Entries live in a dict guarded by a lock that is only held for the
    counter update itself. Counters are not persisted: a restart starts every
    window from zero.
    """

    def __init__(
        self,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.sweep_interval = sweep_interval
        self.logger = get_logger("runtime.rate_limiter")
        self.metrics = metrics
        self._clock = clock
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def _make_key(self, identifier: str, route_id: str) -> str:
        """Generate rate limit key."""
        return f"{route_id}:{identifier}"

    def consume(self, identifier: str, route_id: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Count one request against the window and report whether it fits."""
        key = self._make_key(identifier, route_id)

        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is None or entry.reset_at < now:
                entry = RateLimitEntry(count=0, reset_at=now + window_seconds)
                self._entries[key] = entry
            entry.count += 1
            decision = _decide(entry.count, entry.reset_at, now, limit, window_seconds)

        if not decision.allowed:
            self.logger.warning(
                "Rate limit exceeded",
                identifier=identifier,
                route_id=route_id,
                limit=limit,
                retry_after=decision.retry_after,
            )
        return decision

    async def check(self, identifier: str, route_id: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Async entry point shared with the Redis backend."""
        return self.consume(identifier, route_id, limit, window_seconds)

    async def reset(self, identifier: str, route_id: str) -> bool:
        """Delete the window for identifier and route."""
        with self._lock:
            removed = self._entries.pop(self._make_key(identifier, route_id), None) is not None
        self.logger.info("Rate limit reset", identifier=identifier, route_id=route_id)
        return removed

    def get_entry(self, identifier: str, route_id: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(self._make_key(identifier, route_id))
            return RateLimitEntry(entry.count, entry.reset_at) if entry else None

    def sweep(self) -> int:
        """Remove expired entries; returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.reset_at < now]
            for key in expired:
                del self._entries[key]
            size = len(self._entries)
        if self.metrics is not None:
            self.metrics.set_gauge("rate_limit_entries", size)
        return len(expired)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                self.logger.debug("Expired rate limit entries removed", removed=removed)

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Cancel the sweep task."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    def get_global_stats(self) -> Dict[str, Any]:
        """Get global rate limiting statistics."""
        with self._lock:
            total_keys = len(self._entries)
            total_requests = sum(entry.count for entry in self._entries.values())
        return {
            "backend": "memory",
            "total_keys": total_keys,
            "total_requests": total_requests,
        }


class RedisFixedWindowRateLimiter:
    """Fixed-window counter stored in Redis for multi-process deployments."""

    def __init__(self, redis_url: str, clock: Callable[[], float] = time.time):
        self.redis_url = redis_url
        self.logger = get_logger("runtime.rate_limiter.redis")
        self._clock = clock
        self._redis: Optional[redis.Redis] = None

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis

    def _make_key(self, identifier: str, route_id: str) -> str:
        """Generate rate limit key."""
        return f"rate_limit:{route_id}:{identifier}"

    async def check(self, identifier: str, route_id: str, limit: int, window_seconds: int) -> RateLimitDecision:
        """Count one request; SET NX + INCR + PTTL run as one MULTI transaction."""
        now = self._clock()
        key = self._make_key(identifier, route_id)

        try:
            redis_client = await self._get_redis()
            async with redis_client.pipeline(transaction=True) as pipeline:
                pipeline.set(key, 0, px=window_seconds * 1000, nx=True)
                pipeline.incr(key)
                pipeline.pttl(key)
                _, count, ttl_ms = await pipeline.execute()
        except Exception as e:
            self.logger.error("Rate limit check error", error=str(e))
            return RateLimitDecision(
                allowed=True,
                remaining=limit,
                reset_at=now + window_seconds,
                limit=limit,
                window=window_seconds,
            )

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_seconds * 1000
        decision = _decide(int(count), now + ttl_ms / 1000.0, now, limit, window_seconds)
        if not decision.allowed:
            self.logger.warning("Rate limit exceeded", identifier=identifier, route_id=route_id, limit=limit)
        return decision

    async def reset(self, identifier: str, route_id: str) -> bool:
        """Reset rate limit for identifier and route."""
        try:
            redis_client = await self._get_redis()
            removed = await redis_client.delete(self._make_key(identifier, route_id))
            self.logger.info("Rate limit reset", identifier=identifier, route_id=route_id)
            return bool(removed)
        except Exception as e:
            self.logger.error("Rate limit reset error", error=str(e))
            return False

    def sweep(self) -> int:
        """Redis expires keys on its own."""
        return 0

    async def start(self) -> None:
        await self._get_redis()

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def get_global_stats(self) -> Dict[str, Any]:
        return {"backend": "redis", "url": self.redis_url}
