"""Service layer — read models and progress streaming for the API routes."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from src.api.schemas import PageResultOut, ScanOut, ViolationOut
from src.db.models import Scan
from src.scans.errors import NotFoundError
from src.scans.lifecycle import ScanLifecycleController
from src.scans.models import ScanStatus

logger = logging.getLogger(__name__)

UNKNOWN_SITE = "Unknown Site"

# Statuses after which no more progress will be written.
_SETTLED = {
    ScanStatus.COMPLETED.value,
    ScanStatus.FAILED.value,
    ScanStatus.CANCELLED.value,
    ScanStatus.PAUSED.value,
}


def scan_out(scan: Scan, site_name: str | None = None) -> ScanOut:
    out = ScanOut.model_validate(scan)
    out.site_name = site_name
    return out


async def get_scan(controller: ScanLifecycleController, scan_id: int) -> ScanOut:
    scan = await controller.repository.get_scan(scan_id)
    if scan is None:
        raise NotFoundError("Scan not found")
    site = await controller.repository.get_site(scan.site_id)
    return scan_out(scan, (site.title if site and site.title else UNKNOWN_SITE))


async def list_scans(
    controller: ScanLifecycleController, status: str | None = None
) -> list[ScanOut]:
    rows = await controller.repository.list_scans(status=status)
    return [scan_out(scan, title or UNKNOWN_SITE) for scan, title in rows]


async def list_pages(controller: ScanLifecycleController, scan_id: int) -> list[PageResultOut]:
    rows = await controller.repository.page_results(scan_id)
    rows.sort(key=lambda r: (r.page_index, r.engine))
    return [PageResultOut.model_validate(row) for row in rows]


async def list_violations(
    controller: ScanLifecycleController, scan_id: int
) -> list[ViolationOut]:
    rows = await controller.repository.list_violations(scan_id)
    return [ViolationOut.model_validate(row) for row in rows]


async def stream_progress(
    controller: ScanLifecycleController,
    scan_id: int,
    poll_interval: float = 1.0,
) -> AsyncGenerator[dict[str, str], None]:
    """Yield one SSE ``progress`` event per message, then ``done`` once the scan settles."""
    seen = 0
    while True:
        batch = await controller.progress.messages(scan_id, start=seen)
        for message in batch:
            yield {"event": "progress", "data": message}
        seen += len(batch)

        scan = await controller.repository.get_scan(scan_id)
        status = scan.status if scan is not None else None
        if status is None or status in _SETTLED:
            for message in await controller.progress.messages(scan_id, start=seen):
                yield {"event": "progress", "data": message}
            logger.debug("progress stream finished", extra={"scan_id": scan_id, "status": status})
            yield {"event": "done", "data": json.dumps({"scan_id": scan_id, "status": status})}
            return

        await asyncio.sleep(poll_interval)
