"""Scan job state machine: admission, background execution and resume."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import Settings
from src.db.models import Scan, Site, utcnow
from src.db.repository import ScanRepository
from src.scans.aggregate import EngineAggregate, merge
from src.scans.audit_log import (
    SCAN_COMPLETED,
    SCAN_FAILED,
    SCAN_PAUSED,
    SCAN_RESUMED,
    SCAN_STARTED,
    AuditLogger,
)
from src.scans.cancellation import (
    CancellationHandler,
    CancellationRegistry,
    CancellationToken,
)
from src.scans.driver import ENGINE_LABELS, StopReason, drive_pages
from src.scans.engines import EngineRegistry, build_default_engines
from src.scans.errors import (
    EngineFailure,
    NotFoundError,
    PersistenceError,
    RateLimitExceeded,
    ScanConflictError,
    ScanStateError,
    SitemapResolutionError,
    ValidationError,
)
from src.scans.models import (
    ACTIVE_STATUSES,
    RUNNING_STATUSES,
    EngineError,
    EngineOutcome,
    EngineSuccess,
    PageStatus,
    ScanMode,
    ScanStatus,
    ScanType,
)
from src.scans.progress import ProgressReporter
from src.scans.rate_limit import RateLimiter
from src.scans.site_lock import SiteLock
from src.scans.sitemap import SitemapResolver
from src.scans.supervisor import ScanSupervisor
from src.scans.timeout import TimeoutGuard, timeout_factory
from src.scans.violations import ViolationPersister

logger = logging.getLogger(__name__)

_PASS_STARTED = {
    "lighthouse": "📊 Starting Lighthouse multi-page audit...",
    "axe": "🔍 Starting Axe multi-page accessibility scan...",
}
_SINGLE_STARTED = {
    "lighthouse": "📊 Starting Lighthouse audit...",
    "axe": "🔍 Starting Axe accessibility scan...",
}


def _site_label(site: Site | None) -> str:
    if site is None:
        return "Unknown Site"
    return site.title or site.url


class ScanLifecycleController:
    """Creates scan jobs and drives them to a terminal (or paused) state.

    Background work runs in tasks owned by the :class:`ScanSupervisor`. Every
    status change is a compare-and-set on the job row, so a concurrent
    cancel is never overwritten.
    """

    def __init__(
        self,
        repository: ScanRepository,
        rate_limiter: RateLimiter,
        site_lock: SiteLock,
        progress: ProgressReporter,
        resolver: SitemapResolver,
        engines: EngineRegistry,
        supervisor: ScanSupervisor,
        cancellations: CancellationRegistry,
        audit_log: AuditLogger,
        new_guard: Callable[[], TimeoutGuard] = TimeoutGuard,
    ) -> None:
        self._repository = repository
        self._rate_limiter = rate_limiter
        self._site_lock = site_lock
        self._progress = progress
        self._resolver = resolver
        self._engines = engines
        self._supervisor = supervisor
        self._cancellations = cancellations
        self._audit_log = audit_log
        self._new_guard = new_guard
        self._violations = ViolationPersister(repository)
        self.cancellation_handler = CancellationHandler(
            repository, cancellations, progress, audit_log
        )

    @property
    def repository(self) -> ScanRepository:
        return self._repository

    @property
    def progress(self) -> ProgressReporter:
        return self._progress

    @property
    def supervisor(self) -> ScanSupervisor:
        return self._supervisor

    async def aclose(self) -> None:
        await self._supervisor.shutdown()
        await self._engines.aclose()
        await self._resolver.aclose()

    # -- admission ---------------------------------------------------------

    async def create_scan(
        self,
        site_id: int | None,
        scan_type: str | None = None,
        single_page: bool = False,
    ) -> Scan:
        """Validate, rate-limit and persist a new job, then start it in the background."""
        if site_id is None:
            raise ValidationError("site_id is required")
        try:
            stype = ScanType(scan_type or ScanType.BOTH.value)
        except ValueError:
            raise ValidationError("Invalid scan_type") from None

        site = await self._repository.get_site(site_id)
        if site is None:
            raise NotFoundError("Site not found")
        if not single_page and not site.sitemap_url:
            raise ValidationError("Site does not have a sitemap URL configured")

        mode = ScanMode.SINGLE_PAGE if single_page else ScanMode.MULTI_PAGE
        async with self._site_lock.hold(site_id):
            active = await self._repository.active_scan_for_site(site_id)
            if active is not None:
                raise ScanConflictError(
                    "A scan is already running for this site", scan_id=active.id
                )

            decision = await self._rate_limiter.admit(site_id, cost=stype.cost)
            if not decision.allowed:
                raise RateLimitExceeded(
                    remaining=decision.remaining,
                    reset_time=decision.reset_time_iso,
                    limit=decision.limit,
                )

            reserved = await self._rate_limiter.record(site_id, count=stype.cost)
            try:
                scan = await self._repository.create_scan(site_id, stype.value, mode.value)
            except PersistenceError:
                await self._rate_limiter.release(site_id, reserved)
                raise

        await self._progress.emit(scan.id, f"🚀 Scan started for {site.url}")
        await self._audit_log.record(
            SCAN_STARTED,
            f"Scan started for {_site_label(site)}",
            {"scan_id": scan.id, "site_id": site_id, "scan_type": stype.value, "mode": mode.value},
        )
        logger.info(
            "scan created",
            extra={"scan_id": scan.id, "site_id": site_id, "scan_type": stype.value, "mode": mode.value},
        )

        self._spawn(scan.id)
        return scan

    async def resume_scan(
        self,
        scan_id: int,
        resume_from_index: int | None = None,
        restart: bool = False,
    ) -> Scan:
        """Continue a paused job, optionally from another page or from scratch."""
        if restart and resume_from_index is not None:
            raise ValidationError("restart and resume_from_index cannot be combined")

        scan = await self._repository.get_scan(scan_id)
        if scan is None:
            raise NotFoundError("Scan not found")
        if scan.status != ScanStatus.PAUSED.value:
            raise ScanStateError(f"Cannot resume scan with status '{scan.status}'")

        pages_total = scan.pages_total or 0
        if resume_from_index is not None and not 0 <= resume_from_index < pages_total:
            raise ValidationError(
                f"resume_from_index must be between 0 and {max(pages_total - 1, 0)}"
            )

        changed = await self._repository.transition(
            scan_id, [ScanStatus.PAUSED], ScanStatus.IN_PROGRESS, paused_at=None
        )
        if not changed:
            current = await self._repository.get_scan(scan_id)
            status = current.status if current is not None else scan.status
            raise ScanStateError(f"Cannot resume scan with status '{status}'")

        start_index = 0 if restart else (
            resume_from_index if resume_from_index is not None else scan.resume_index
        )
        if not restart:
            await self._progress.emit(scan_id, f"▶️ Resuming scan from page {start_index + 1}...")

        site = await self._repository.get_site(scan.site_id)
        await self._audit_log.record(
            SCAN_RESUMED,
            f"Scan {'restarted' if restart else 'resumed'} for {_site_label(site)}",
            {"scan_id": scan_id, "site_id": scan.site_id, "start_index": start_index, "restart": restart},
        )
        logger.info(
            "scan resumed",
            extra={"scan_id": scan_id, "start_index": start_index, "restart": restart},
        )

        self._spawn(scan_id, start_index=start_index, restart=restart)
        refreshed = await self._repository.get_scan(scan_id)
        return refreshed if refreshed is not None else scan

    async def cancel(self, scan_id: int) -> dict:
        return await self.cancellation_handler.cancel(scan_id)

    async def reclaim_orphans(self, resume: bool = True) -> int:
        """Restart or fail jobs left active by a previous process."""
        orphans = [
            scan
            for scan in await self._repository.find_orphaned_scans()
            if not self._supervisor.is_running(scan.id)
        ]
        for scan in orphans:
            if resume:
                logger.info(
                    "reclaiming orphaned scan",
                    extra={"scan_id": scan.id, "resume_index": scan.resume_index},
                )
                await self._progress.emit(
                    scan.id, f"♻️ Resuming interrupted scan from page {scan.resume_index + 1}..."
                )
                self._spawn(scan.id)
            else:
                await self._fail(scan.id, "Scan interrupted by service restart")
        return len(orphans)

    def _spawn(self, scan_id: int, start_index: int | None = None, restart: bool = False) -> None:
        self._supervisor.spawn(
            scan_id, self.execute(scan_id, start_index=start_index, restart=restart)
        )

    # -- execution ---------------------------------------------------------

    async def execute(
        self, scan_id: int, start_index: int | None = None, restart: bool = False
    ) -> None:
        """Run a job to completion. Never raises except on task cancellation."""
        guard = self._new_guard()
        token = self._cancellations.token(scan_id)
        try:
            scan = await self._repository.get_scan(scan_id)
            if scan is None:
                logger.warning("scan vanished before execution", extra={"scan_id": scan_id})
                return
            site = await self._repository.get_site(scan.site_id)
            if site is None:
                await self._fail(scan_id, "Site not found")
                return

            if scan.mode == ScanMode.SINGLE_PAGE.value:
                await self.execute_single_page(scan, site, guard, token)
            else:
                await self._execute_multi_page(scan, site, guard, token, start_index, restart)
        except asyncio.CancelledError:
            logger.warning("scan task interrupted", extra={"scan_id": scan_id})
            raise
        except Exception as exc:
            logger.exception("scan execution failed", extra={"scan_id": scan_id})
            await self._fail(scan_id, str(exc) or type(exc).__name__)
        finally:
            self._cancellations.discard(scan_id)

    async def _execute_multi_page(
        self,
        scan: Scan,
        site: Site,
        guard: TimeoutGuard,
        token: CancellationToken,
        start_index: int | None,
        restart: bool,
    ) -> None:
        scan_id = scan.id
        resume_engine = scan.resume_engine
        if restart:
            await self._progress.emit(scan_id, "🔄 Restarting scan from beginning...")
            await self._repository.reset_progress(scan_id)
            start_index, resume_engine = 0, None
        elif start_index is None:
            start_index = scan.resume_index

        await self._progress.emit(scan_id, "📋 Parsing sitemap...")
        try:
            urls = await self._resolver.resolve(site.sitemap_url or "")
        except SitemapResolutionError as exc:
            await self._fail(scan_id, f"Failed to parse sitemap: {exc}", site)
            return
        await self._progress.emit(scan_id, f"✅ Found {len(urls)} pages in sitemap")
        start_index = min(start_index, len(urls))

        values: dict[str, Any] = {"timeout_at": guard.deadline()}
        if scan.started_at is None:
            values["started_at"] = utcnow()
        if not await self._repository.begin_execution(
            scan_id, pages_total=len(urls), resume_index=start_index, **values
        ):
            logger.info("scan no longer runnable", extra={"scan_id": scan_id})
            return
        logger.info(
            "scan running",
            extra={
                "scan_id": scan_id,
                "pages_total": len(urls),
                "start_index": start_index,
                "budget_remaining_seconds": int(guard.remaining().total_seconds()),
            },
        )

        passes = ScanType(scan.scan_type).engines
        first = passes.index(resume_engine) if resume_engine in passes else 0
        for position, name in enumerate(passes[first:], start=first):
            outcome = await drive_pages(
                self._engines.get(name),
                urls,
                start_index if position == first else 0,
                scan_id=scan_id,
                repository=self._repository,
                progress=self._progress,
                guard=guard,
                token=token,
                intro=_PASS_STARTED.get(name, f"Starting {name} audit..."),
            )
            if outcome.stop_reason is StopReason.CANCELLED:
                await self._discard_cancelled(scan_id)
                return
            if outcome.stop_reason is StopReason.TIMEOUT:
                await self._pause(scan_id, site, name, outcome.next_index, guard)
                return
            logger.info(
                "engine pass finished",
                extra={"scan_id": scan_id, "engine": name, "succeeded": outcome.succeeded, "failed": outcome.failed},
            )
            await self._progress.emit(
                scan_id, f"✅ {ENGINE_LABELS.get(name, name)} audit complete"
            )

        await self._finalize(scan_id, site, passes, len(urls), guard, "✨ Multi-page scan complete!")

    async def execute_single_page(
        self,
        scan: Scan,
        site: Site,
        guard: TimeoutGuard,
        token: CancellationToken,
    ) -> None:
        """Audit the site's root URL once per engine, engines running concurrently."""
        scan_id = scan.id
        values: dict[str, Any] = {"timeout_at": guard.deadline()}
        if scan.started_at is None:
            values["started_at"] = utcnow()
        if not await self._repository.begin_execution(
            scan_id, pages_total=1, resume_index=0, **values
        ):
            logger.info("scan no longer runnable", extra={"scan_id": scan_id})
            return

        passes = ScanType(scan.scan_type).engines

        async def run_engine(name: str) -> EngineOutcome:
            await self._progress.emit(scan_id, _SINGLE_STARTED.get(name, f"Starting {name} audit..."))
            try:
                audit = await self._engines.get(name).audit(site.url)
            except EngineFailure as exc:
                return EngineError(name, str(exc))
            except Exception as exc:
                logger.exception(
                    "engine raised unexpectedly", extra={"scan_id": scan_id, "engine": name}
                )
                return EngineError(name, str(exc) or type(exc).__name__)
            return EngineSuccess(name, audit)

        outcomes = await asyncio.gather(*(run_engine(name) for name in passes))

        if await token.is_cancelled():
            await self._discard_cancelled(scan_id)
            return

        for outcome in outcomes:
            label = ENGINE_LABELS.get(outcome.engine, outcome.engine)
            if isinstance(outcome, EngineSuccess):
                await self._repository.save_page_result(
                    scan_id,
                    engine=outcome.engine,
                    page_index=0,
                    page_url=site.url,
                    status=PageStatus.SUCCESS.value,
                    score=outcome.audit.score,
                    violations=[v.to_dict() for v in outcome.audit.violations],
                )
                await self._progress.emit(scan_id, f"✅ {label} score: {outcome.audit.score}/100")
            else:
                await self._repository.save_page_result(
                    scan_id,
                    engine=outcome.engine,
                    page_index=0,
                    page_url=site.url,
                    status=PageStatus.FAILED.value,
                    error_message=outcome.message,
                )
                await self._progress.emit(scan_id, f"❌ {label} failed: {outcome.message}")
        await self._repository.checkpoint(
            scan_id, engine=passes[-1], resume_index=1, pages_scanned=1
        )

        await self._finalize(scan_id, site, passes, 1, guard, "✨ Scan complete!")

    # -- terminal states ---------------------------------------------------

    async def _finalize(
        self,
        scan_id: int,
        site: Site,
        passes: tuple[str, ...],
        pages_total: int,
        guard: TimeoutGuard,
        done_message: str,
    ) -> None:
        aggregates: list[EngineAggregate] = []
        errors: list[str] = []
        for name in passes:
            aggregate = EngineAggregate(name)
            for row in await self._repository.page_results(scan_id, name):
                if row.page_index >= pages_total:
                    continue
                if row.status == PageStatus.SUCCESS.value:
                    aggregate.add(row.page_index, row.page_url, row.score, row.violations)
                else:
                    aggregate.add(row.page_index, row.page_url, None)
                    if row.error_message:
                        errors.append(f"{row.engine}: {row.error_message}")
            aggregates.append(aggregate)

        if not any(aggregate.scores for aggregate in aggregates):
            detail = "; ".join(errors[:3])
            message = "No page could be audited" + (f": {detail}" if detail else "")
            await self._fail(scan_id, message, site)
            return

        summary = merge(aggregates)
        pages_scanned = min(pages_total, max(aggregate.pages for aggregate in aggregates))
        try:
            completed = await self._repository.complete_scan(
                scan_id,
                site.id,
                summary.scores,
                pages_scanned=pages_scanned,
                **summary.scan_values(),
            )
        except PersistenceError as exc:
            logger.exception("scan finalization failed", extra={"scan_id": scan_id})
            await self._fail(scan_id, f"Failed to save scan results: {exc}", site)
            return

        if not completed:
            await self._discard_cancelled(scan_id)
            return

        await self._violations.persist(scan_id)
        await self._progress.emit(scan_id, done_message)
        await self._audit_log.record(
            SCAN_COMPLETED,
            f"Scan completed for {_site_label(site)}",
            {
                "scan_id": scan_id,
                "site_id": site.id,
                "axe_score": summary.scores.get("axe"),
                "lighthouse_score": summary.scores.get("lighthouse"),
                "pages_scanned": pages_scanned,
                "total_violations": summary.total_violations,
                "worst_page_url": summary.worst_page_url,
                "duration": guard.elapsed_hms(),
            },
        )
        logger.info(
            "scan completed",
            extra={"scan_id": scan_id, "scores": summary.scores, "pages_scanned": pages_scanned},
        )

    async def _pause(
        self, scan_id: int, site: Site, engine: str, next_index: int, guard: TimeoutGuard
    ) -> None:
        changed = await self._repository.transition(
            scan_id,
            RUNNING_STATUSES,
            ScanStatus.PAUSED,
            paused_at=utcnow(),
            resume_index=next_index,
            resume_engine=engine,
        )
        if not changed:
            await self._discard_cancelled(scan_id)
            return
        await self._progress.emit(
            scan_id, f"⏸️ Scan paused at page {next_index}. You can resume later."
        )
        await self._audit_log.record(
            SCAN_PAUSED,
            f"Scan paused after timeout for {_site_label(site)}",
            {"scan_id": scan_id, "engine": engine, "resume_index": next_index, "elapsed": guard.elapsed_hms()},
        )
        logger.info(
            "scan paused",
            extra={"scan_id": scan_id, "engine": engine, "resume_index": next_index},
        )

    async def _discard_cancelled(self, scan_id: int) -> None:
        """Remove rows a cancelled task wrote after the cancel handler's cleanup."""
        try:
            await self._repository.delete_partial_results(scan_id)
        except PersistenceError:
            logger.warning("cancelled scan cleanup failed", extra={"scan_id": scan_id}, exc_info=True)
        logger.info("scan task stopped after cancel", extra={"scan_id": scan_id})

    async def _fail(self, scan_id: int, message: str, site: Site | None = None) -> None:
        try:
            changed = await self._repository.transition(
                scan_id,
                ACTIVE_STATUSES,
                ScanStatus.FAILED,
                error_message=message,
                completed_at=utcnow(),
            )
        except PersistenceError:
            logger.exception("could not record scan failure", extra={"scan_id": scan_id})
            return
        if not changed:
            return
        await self._progress.emit(scan_id, f"❌ Scan error: {message}")
        await self._audit_log.record(
            SCAN_FAILED,
            f"Scan failed for {_site_label(site)}: {message}",
            {"scan_id": scan_id, "error": message},
        )
        logger.warning("scan failed", extra={"scan_id": scan_id, "error": message})


def build_controller(
    settings: Settings,
    redis_client: redis.Redis,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    engines: EngineRegistry | None = None,
    resolver: SitemapResolver | None = None,
    new_guard: Callable[[], TimeoutGuard] | None = None,
) -> ScanLifecycleController:
    """Wire a controller from settings; tests pass fake engines and resolvers."""
    repository = ScanRepository(session_maker)
    return ScanLifecycleController(
        repository=repository,
        rate_limiter=RateLimiter(
            redis_client,
            limit=settings.rate_limit_per_hour,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        site_lock=SiteLock(redis_client),
        progress=ProgressReporter(redis_client, ttl=settings.progress_ttl_seconds),
        resolver=resolver
        or SitemapResolver(
            user_agent=settings.scanner_user_agent,
            timeout=settings.sitemap_timeout_seconds,
            max_documents=settings.sitemap_max_documents,
            max_pages=settings.sitemap_max_pages,
        ),
        engines=engines or build_default_engines(settings),
        supervisor=ScanSupervisor(),
        cancellations=CancellationRegistry(redis_client, ttl=settings.progress_ttl_seconds),
        audit_log=AuditLogger(repository),
        new_guard=new_guard or timeout_factory(settings.scan_timeout_hours),
    )
