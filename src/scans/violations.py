"""Explode per-page violation lists into ``scan_violations`` rows."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from src.db.models import PageScanResult
from src.db.repository import ScanRepository
from src.scans.errors import PersistenceError
from src.scans.models import EngineViolation, PageStatus

logger = logging.getLogger(__name__)

DEFAULT_IMPACT = "minor"
DEFAULT_HELP_URL = "https://www.deque.com/axe/devtools/"


def violation_rows(scan_id: int, pages: Iterable[PageScanResult]) -> list[dict[str, Any]]:
    """Build one row per violation of every successful page."""
    rows: list[dict[str, Any]] = []
    for page in pages:
        if page.status != PageStatus.SUCCESS.value or not page.violations:
            continue
        for raw in page.violations:
            violation = EngineViolation.from_dict(raw)
            rows.append(
                {
                    "scan_id": scan_id,
                    "engine": page.engine,
                    "rule_id": violation.id,
                    "rule_name": violation.id.replace("-", " "),
                    "description": violation.description,
                    "impact_level": violation.impact or DEFAULT_IMPACT,
                    "page_url": page.page_url,
                    "element_count": violation.nodes or 1,
                    "help_url": violation.help_url or DEFAULT_HELP_URL,
                }
            )
    return rows


class ViolationPersister:
    def __init__(self, repository: ScanRepository) -> None:
        self._repository = repository

    async def persist(self, scan_id: int) -> int:
        """Bulk-insert the violations of a completed job.

        Failures are logged and reported as ``0`` rows; the job stays
        ``completed``.
        """
        try:
            pages = await self._repository.page_results(scan_id)
            inserted = await self._repository.insert_violations(violation_rows(scan_id, pages))
        except PersistenceError:
            logger.exception("violation persist failed", extra={"scan_id": scan_id})
            return 0
        logger.info("violations persisted", extra={"scan_id": scan_id, "count": inserted})
        return inserted
