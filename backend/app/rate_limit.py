from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Protocol

from fastapi import Request

from core.config import RATE_LIMIT_ENABLED, REDIS_URL, USE_REDIS_RATE_LIMIT

logger = logging.getLogger("app.rate_limit")

RATE_LIMIT_WINDOW_SEC = 60

# Requests per window, per route.
ROUTE_LIMITS: dict[str, int] = {
    "events": 90,
    "stream": 180,
    "summarize": 20,
    "start": 20,
    "stop": 30,
    "heartbeat": 240,
    "get": 120,
    "delete": 120,
    "report": 120,
    "transcript": 120,
    "history": 60,
    "export": 30,
    "purge": 10,
}

# Per-user budgets that differ from twice the per-IP limit.
USER_ROUTE_LIMITS: dict[str, int] = {
    "export": 20,
    "purge": 5,
}


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiterBackend(Protocol):
    async def hit(self, key: str, limit: int, window_sec: int, now_ts: float | None = None) -> RateLimitDecision:
        ...


class RateLimiter:
    """Fixed-window counters held in-process."""

    def __init__(self, max_buckets: int = 10000):
        self._lock = asyncio.Lock()
        self._buckets: dict[str, dict[str, float]] = {}
        self._max_buckets = max(100, int(max_buckets))

    async def hit(self, key: str, limit: int, window_sec: int, now_ts: float | None = None) -> RateLimitDecision:
        now_value = float(now_ts if now_ts is not None else time.time())
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                self._buckets[key] = {"window_start": now_value, "count": 1}
                self._prune(now_value, window_sec)
                return RateLimitDecision(allowed=True)

            window_start = float(bucket.get("window_start") or now_value)
            elapsed = now_value - window_start
            if elapsed >= window_sec:
                bucket["window_start"] = now_value
                bucket["count"] = 1
                return RateLimitDecision(allowed=True)

            count = int(bucket.get("count") or 0)
            if count >= limit:
                retry_after = max(1, int(window_sec - elapsed))
                return RateLimitDecision(allowed=False, retry_after=retry_after)

            bucket["count"] = count + 1
            return RateLimitDecision(allowed=True)

    def _prune(self, now_value: float, window_sec: int) -> None:
        if len(self._buckets) <= self._max_buckets:
            return
        stale_keys = [
            key
            for key, value in self._buckets.items()
            if now_value - float((value or {}).get("window_start") or now_value) > (window_sec * 2)
        ]
        for key in stale_keys[:3000]:
            self._buckets.pop(key, None)


class RedisRateLimiter:
    """INCR/EXPIRE counters shared across workers; falls back to memory when Redis is down."""

    def __init__(self, redis_url: str, fallback: RateLimiter | None = None):
        try:
            import redis.asyncio as redis_async  # type: ignore
        except Exception as exc:
            raise RuntimeError("redis package not installed; install 'redis' to enable distributed rate limiting") from exc

        self._redis = redis_async.from_url(redis_url, decode_responses=True)
        self._fallback = fallback or RateLimiter()

    async def hit(self, key: str, limit: int, window_sec: int, now_ts: float | None = None) -> RateLimitDecision:
        now_value = float(now_ts if now_ts is not None else time.time())
        window_id = int(now_value // window_sec)
        redis_key = f"ratelimit:{key}:{window_id}"
        try:
            count = int(await self._redis.incr(redis_key))
            if count == 1:
                await self._redis.expire(redis_key, int(window_sec) + 1)
        except Exception as exc:
            logger.warning("redis rate limit unavailable; using memory | err=%s", exc)
            return await self._fallback.hit(key, limit, window_sec, now_value)

        if count > limit:
            retry_after = max(1, int((window_id + 1) * window_sec - now_value))
            return RateLimitDecision(allowed=False, retry_after=retry_after)
        return RateLimitDecision(allowed=True)


class DisabledRateLimiter:
    async def hit(self, key: str, limit: int, window_sec: int, now_ts: float | None = None) -> RateLimitDecision:
        return RateLimitDecision(allowed=True)


def build_rate_limiter() -> RateLimiterBackend:
    if not RATE_LIMIT_ENABLED:
        return DisabledRateLimiter()
    if USE_REDIS_RATE_LIMIT and REDIS_URL:
        try:
            return RedisRateLimiter(REDIS_URL)
        except RuntimeError as exc:
            logger.warning("redis rate limiter unavailable; using memory | err=%s", exc)
    return RateLimiter()


def request_identity(request: Request) -> str:
    forwarded_for = str(request.headers.get("x-forwarded-for") or "").strip()
    if forwarded_for:
        return forwarded_for.split(",")[0].strip() or "unknown"
    if request.client and request.client.host:
        return str(request.client.host)
    return "unknown"
