"""Sequential page iteration for one engine pass of a multi-page scan."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from src.db.repository import ScanRepository
from src.scans.cancellation import CancellationToken
from src.scans.engines.base import AuditEngine
from src.scans.errors import EngineFailure, ScanTimeout
from src.scans.models import PageStatus
from src.scans.progress import ProgressReporter
from src.scans.timeout import TimeoutGuard

logger = logging.getLogger(__name__)

MILESTONE_EVERY = 10

ENGINE_LABELS = {"axe": "Axe", "lighthouse": "Lighthouse"}


class StopReason(str, Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class PassOutcome:
    """How a pass ended. ``next_index`` is the first page not yet audited."""

    stop_reason: StopReason | None
    next_index: int
    succeeded: int = 0
    failed: int = 0


async def drive_pages(
    engine: AuditEngine,
    urls: list[str],
    start_index: int,
    *,
    scan_id: int,
    repository: ScanRepository,
    progress: ProgressReporter,
    guard: TimeoutGuard,
    token: CancellationToken,
    intro: str | None = None,
) -> PassOutcome:
    """Audit ``urls[start_index:]`` in order, one page at a time.

    Before every page the cancellation token is checked first, then the
    timeout guard. The guard is checked again after each progress message
    (*intro*, the per-page line and milestones); a stop leaves
    ``next_index`` at the first page not yet audited. Each page is recorded
    and checkpointed as soon as its audit returns, so a later resume never
    re-audits it.
    """
    total = len(urls)
    label = ENGINE_LABELS.get(engine.name, engine.name)
    succeeded = failed = 0
    next_index = start_index

    async def announce(message: str) -> None:
        await progress.emit(scan_id, message)
        guard.check()

    try:
        if intro is not None:
            await announce(intro)

        for index in range(start_index, total):
            if await token.is_cancelled():
                logger.info("pass cancelled", extra={"scan_id": scan_id, "engine": engine.name, "page_index": index})
                return PassOutcome(StopReason.CANCELLED, index, succeeded, failed)
            guard.check()

            url = urls[index]
            await announce(f"📄 [{label}] Scanning page {index + 1}/{total}: {url}")

            try:
                audit = await engine.audit(url)
            except Exception as exc:
                failed += 1
                if isinstance(exc, EngineFailure):
                    logger.warning(
                        "page audit failed",
                        extra={"scan_id": scan_id, "engine": engine.name, "page_index": index, "url": url},
                    )
                else:
                    logger.exception(
                        "engine raised unexpectedly",
                        extra={"scan_id": scan_id, "engine": engine.name, "page_index": index, "url": url},
                    )
                message = str(exc) or type(exc).__name__
                await repository.save_page_result(
                    scan_id,
                    engine=engine.name,
                    page_index=index,
                    page_url=url,
                    status=PageStatus.FAILED.value,
                    error_message=message,
                )
                await progress.emit(scan_id, f"⚠️ [{label}] Page {index + 1} failed: {message}")
            else:
                succeeded += 1
                await repository.save_page_result(
                    scan_id,
                    engine=engine.name,
                    page_index=index,
                    page_url=url,
                    status=PageStatus.SUCCESS.value,
                    score=audit.score,
                    violations=[v.to_dict() for v in audit.violations],
                )

            done = index + 1
            await repository.checkpoint(
                scan_id, engine=engine.name, resume_index=done, pages_scanned=done
            )
            next_index = done
            if done == total:
                await progress.emit(scan_id, f"✅ [{label}] {done}/{total} pages scanned")
            elif done % MILESTONE_EVERY == 0:
                await announce(f"✅ [{label}] {done}/{total} pages scanned")
    except ScanTimeout as exc:
        logger.info(
            "pass timed out",
            extra={"scan_id": scan_id, "engine": engine.name, "page_index": next_index, "reason": str(exc)},
        )
        return PassOutcome(StopReason.TIMEOUT, next_index, succeeded, failed)

    return PassOutcome(None, total, succeeded, failed)
