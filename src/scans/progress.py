"""Per-scan progress log kept in a Redis list."""

from __future__ import annotations

import logging

import redis.asyncio as redis

from src.cache.redis import progress_key

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Append-only, human-readable progress messages per scan.

    Messages expire ``ttl`` seconds after the last write. Redis failures are
    logged and swallowed: progress is informational and must never fail a
    scan.
    """

    def __init__(self, client: redis.Redis, ttl: int = 86400) -> None:
        self._client = client
        self._ttl = ttl

    async def emit(self, scan_id: int, message: str) -> None:
        logger.info("scan progress", extra={"scan_id": scan_id, "progress": message})
        key = progress_key(scan_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.rpush(key, message)
                pipe.expire(key, self._ttl)
                await pipe.execute()
        except redis.RedisError:
            logger.warning("progress emit failed", extra={"scan_id": scan_id}, exc_info=True)

    async def messages(self, scan_id: int, start: int = 0) -> list[str]:
        """Return messages from *start* onwards; empty when none are stored."""
        try:
            return list(await self._client.lrange(progress_key(scan_id), start, -1))
        except redis.RedisError:
            logger.warning("progress read failed", extra={"scan_id": scan_id}, exc_info=True)
            return []
