"""Per-site admission lock shared by every API process through Redis."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis

from src.cache.redis import admission_lock_key
from src.scans.errors import ScanConflictError

logger = logging.getLogger(__name__)


class SiteLock:
    """``SET NX`` lock held while a new scan for one site is admitted.

    The key expires after *ttl_ms* so a crashed holder cannot block the
    site forever. Waiters poll until *wait_seconds* elapse and then get a
    409. When Redis is unreachable the lock is skipped with a warning, like
    the rate limiter.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_ms: int = 30_000,
        wait_seconds: float = 10.0,
        poll_seconds: float = 0.05,
    ) -> None:
        self._client = client
        self._ttl_ms = ttl_ms
        self._wait = wait_seconds
        self._poll = poll_seconds

    @asynccontextmanager
    async def hold(self, site_id: int) -> AsyncIterator[None]:
        key = admission_lock_key(site_id)
        owner = uuid.uuid4().hex
        try:
            acquired = await self._acquire(key, owner)
        except redis.RedisError:
            logger.warning("admission lock unavailable", extra={"site_id": site_id}, exc_info=True)
            acquired = None
        if acquired is False:
            logger.info("admission lock busy", extra={"site_id": site_id})
            raise ScanConflictError("A scan is already being started for this site")
        try:
            yield
        finally:
            if acquired:
                await self._release(key, owner, site_id)

    async def _acquire(self, key: str, owner: str) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait
        while True:
            if await self._client.set(key, owner, nx=True, px=self._ttl_ms):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self._poll)

    async def _release(self, key: str, owner: str, site_id: int) -> None:
        """Delete the key only while this holder still owns it."""
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                if await pipe.get(key) != owner:
                    return
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
        except redis.WatchError:
            logger.debug("admission lock changed hands before release", extra={"site_id": site_id})
        except redis.RedisError:
            logger.warning("admission lock release failed", extra={"site_id": site_id}, exc_info=True)
