"""Per-site sliding-window rate limiter backed by a Redis sorted set.

Each site owns one sorted set of scan-start timestamps. ``admit`` only reads
the window; ``record`` prunes expired entries and appends new ones, so a
denied request never consumes a slot. Callers serialize admit and record
per site (see :mod:`src.scans.site_lock`); ``release`` hands back slots
recorded for a scan that was never created.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

import redis.asyncio as redis

from src.cache.redis import rate_limit_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_time: datetime
    limit: int

    @property
    def reset_time_iso(self) -> str:
        return self.reset_time.isoformat()


class RateLimiter:
    """Sliding window of ``window_seconds`` holding at most ``limit`` scan starts."""

    def __init__(
        self,
        client: redis.Redis,
        limit: int,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._limit = limit
        self._window = window_seconds
        self._clock = clock

    @property
    def limit(self) -> int:
        return self._limit

    def _reset_at(self, epoch: float) -> datetime:
        return datetime.fromtimestamp(epoch + self._window, tz=timezone.utc)

    async def admit(self, site_id: int, cost: int = 1) -> RateLimitDecision:
        """Decide whether *cost* more scans fit in the site's current window."""
        now = self._clock()
        cutoff = now - self._window
        key = rate_limit_key(site_id)
        try:
            count = await self._client.zcount(key, f"({cutoff}", "+inf")
            oldest = await self._client.zrangebyscore(
                key, f"({cutoff}", "+inf", start=0, num=1, withscores=True
            )
        except redis.RedisError:
            logger.warning(
                "rate limit check failed, admitting", extra={"site_id": site_id}, exc_info=True
            )
            return RateLimitDecision(
                allowed=True,
                remaining=self._limit,
                reset_time=self._reset_at(now),
                limit=self._limit,
            )

        reset_time = self._reset_at(oldest[0][1] if oldest else now)
        decision = RateLimitDecision(
            allowed=count + cost <= self._limit,
            remaining=max(0, self._limit - count),
            reset_time=reset_time,
            limit=self._limit,
        )
        if not decision.allowed:
            logger.info(
                "rate limit exceeded",
                extra={"site_id": site_id, "in_window": count, "cost": cost, "limit": self._limit},
            )
        return decision

    async def record(self, site_id: int, count: int = 1) -> list[str]:
        """Append *count* timestamps for *site_id* and drop expired ones.

        Returns the recorded members so they can be released again.
        """
        now = self._clock()
        key = rate_limit_key(site_id)
        members = {f"{now}:{uuid.uuid4().hex}": now for _ in range(count)}
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", now - self._window)
                pipe.zadd(key, members)
                pipe.expire(key, self._window)
                await pipe.execute()
        except redis.RedisError:
            logger.warning(
                "rate limit record failed", extra={"site_id": site_id}, exc_info=True
            )
            return []
        logger.debug("rate limit recorded", extra={"site_id": site_id, "count": count})
        return list(members)

    async def release(self, site_id: int, members: list[str]) -> None:
        if not members:
            return
        try:
            await self._client.zrem(rate_limit_key(site_id), *members)
        except redis.RedisError:
            logger.warning(
                "rate limit release failed", extra={"site_id": site_id}, exc_info=True
            )
            return
        logger.debug("rate limit released", extra={"site_id": site_id, "count": len(members)})
