"""Cooperative cancellation of running scans."""

from __future__ import annotations

import asyncio
import logging

import redis.asyncio as redis

from src.cache.redis import cancel_key
from src.db.models import utcnow
from src.db.repository import ScanRepository
from src.scans.audit_log import SCAN_CANCELLED, AuditLogger
from src.scans.errors import NotFoundError, PersistenceError, ScanStateError
from src.scans.models import ACTIVE_STATUSES, ScanStatus
from src.scans.progress import ProgressReporter

logger = logging.getLogger(__name__)

CANCELLABLE = tuple(s.value for s in ACTIVE_STATUSES)


class CancellationToken:
    """Shared between the cancel handler and the page loop of one scan.

    The local event covers tasks in this process; the Redis flag covers a
    worker running the same scan in another process.
    """

    def __init__(self, scan_id: int, client: redis.Redis) -> None:
        self.scan_id = scan_id
        self._client = client
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    async def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        try:
            flagged = await self._client.exists(cancel_key(self.scan_id))
        except redis.RedisError:
            logger.warning("cancel flag read failed", extra={"scan_id": self.scan_id}, exc_info=True)
            return False
        if flagged:
            self._event.set()
        return bool(flagged)


class CancellationRegistry:
    def __init__(self, client: redis.Redis, ttl: int = 86400) -> None:
        self._client = client
        self._ttl = ttl
        self._tokens: dict[int, CancellationToken] = {}

    def token(self, scan_id: int) -> CancellationToken:
        token = self._tokens.get(scan_id)
        if token is None:
            token = CancellationToken(scan_id, self._client)
            self._tokens[scan_id] = token
        return token

    def discard(self, scan_id: int) -> None:
        self._tokens.pop(scan_id, None)

    async def signal(self, scan_id: int) -> None:
        token = self._tokens.get(scan_id)
        if token is not None:
            token.cancel()
        try:
            await self._client.set(cancel_key(scan_id), "1", ex=self._ttl)
        except redis.RedisError:
            logger.warning("cancel flag write failed", extra={"scan_id": scan_id}, exc_info=True)


class CancellationHandler:
    def __init__(
        self,
        repository: ScanRepository,
        cancellations: CancellationRegistry,
        progress: ProgressReporter,
        audit_log: AuditLogger,
    ) -> None:
        self._repository = repository
        self._cancellations = cancellations
        self._progress = progress
        self._audit_log = audit_log

    async def cancel(self, scan_id: int) -> dict:
        scan = await self._repository.get_scan(scan_id)
        if scan is None:
            raise NotFoundError("Scan not found")
        if scan.status not in CANCELLABLE:
            raise ScanStateError(f"Cannot cancel scan with status '{scan.status}'")

        changed = await self._repository.transition(
            scan_id, CANCELLABLE, ScanStatus.CANCELLED, completed_at=utcnow()
        )
        if not changed:
            current = await self._repository.get_scan(scan_id)
            status = current.status if current is not None else scan.status
            raise ScanStateError(f"Cannot cancel scan with status '{status}'")

        await self._cancellations.signal(scan_id)

        try:
            await self._repository.delete_partial_results(scan_id)
        except PersistenceError:
            logger.warning("partial result cleanup failed", extra={"scan_id": scan_id}, exc_info=True)

        await self._progress.emit(scan_id, "🛑 Scan cancelled")

        site = await self._repository.get_site(scan.site_id)
        site_label = (site.title or site.url) if site is not None else "Unknown Site"
        await self._audit_log.record(
            SCAN_CANCELLED,
            f"Scan manually stopped by user for {site_label}",
            {"scan_id": scan_id, "site_id": scan.site_id, "previous_status": scan.status},
        )
        logger.info("scan cancelled", extra={"scan_id": scan_id, "site_id": scan.site_id})

        return {
            "message": "Scan cancelled successfully",
            "scan_id": scan_id,
            "status": ScanStatus.CANCELLED.value,
        }
