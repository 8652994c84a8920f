"""Activity trail for scan lifecycle events."""

from __future__ import annotations

import logging
from typing import Any

from src.db.repository import ScanRepository
from src.scans.errors import PersistenceError

logger = logging.getLogger(__name__)

SCAN_STARTED = "scan_started"
SCAN_COMPLETED = "scan_completed"
SCAN_FAILED = "scan_failed"
SCAN_CANCELLED = "scan_cancelled"
SCAN_PAUSED = "scan_paused"
SCAN_RESUMED = "scan_resumed"


class AuditLogger:
    """Writes audit events to ``audit_logs``. Never raises."""

    def __init__(self, repository: ScanRepository) -> None:
        self._repository = repository

    async def record(
        self,
        action: str,
        description: str,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> None:
        try:
            await self._repository.add_audit_log(action, description, details, user_id)
        except PersistenceError:
            logger.warning("audit log write failed", extra={"action": action}, exc_info=True)
