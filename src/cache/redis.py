"""Redis client factory and the key layout for shared scan state."""

from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "scan:ratelimit:"
PROGRESS_PREFIX = "scan:progress:"
CANCEL_PREFIX = "scan:cancel:"
ADMISSION_LOCK_PREFIX = "scan:lock:"


def rate_limit_key(site_id: int | str) -> str:
    return f"{RATE_LIMIT_PREFIX}{site_id}"


def progress_key(scan_id: int | str) -> str:
    return f"{PROGRESS_PREFIX}{scan_id}"


def cancel_key(scan_id: int | str) -> str:
    return f"{CANCEL_PREFIX}{scan_id}"


def admission_lock_key(site_id: int | str) -> str:
    return f"{ADMISSION_LOCK_PREFIX}{site_id}"


async def create_redis_client(redis_url: str) -> redis.Redis:
    # Strip credentials for logging (everything before @ if present)
    safe_url = redis_url.split("@")[-1] if "@" in redis_url else redis_url
    logger.info("connecting to redis", extra={"redis_url": safe_url})
    retry = Retry(ExponentialBackoff(), retries=3)
    return redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        health_check_interval=30,
        retry=retry,
        retry_on_error=[redis.ConnectionError, redis.TimeoutError],
    )
