"""Persistence operations for scan jobs and their results.

Every status write goes through :meth:`ScanRepository.transition` or
:meth:`ScanRepository.complete_scan`, both of which are compare-and-set
updates (``UPDATE ... WHERE status IN (...)``). When a cancel races the
background task, the first terminal writer wins and the loser sees a zero
row count.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import (
    AuditLog,
    PageScanResult,
    Scan,
    ScanViolation,
    ScoreHistory,
    Site,
    utcnow,
)
from src.scans.errors import PersistenceError
from src.scans.models import ACTIVE_STATUSES, RUNNING_STATUSES, ScanStatus

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


def _values(statuses: Iterable[ScanStatus | str]) -> list[str]:
    return [s.value if isinstance(s, ScanStatus) else s for s in statuses]


class ScanRepository:
    """Async data access for the scan tables."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Database error: {exc}") from exc

    # -- sites -------------------------------------------------------------

    async def get_site(self, site_id: int) -> Site | None:
        async with self._transaction() as session:
            return await session.get(Site, site_id)

    # -- scan jobs ---------------------------------------------------------

    async def create_scan(self, site_id: int, scan_type: str, mode: str) -> Scan:
        scan = Scan(
            site_id=site_id,
            scan_type=scan_type,
            mode=mode,
            status=ScanStatus.PENDING.value,
            pages_scanned=0,
            resume_index=0,
            total_violations_sum=0,
            worst_page_violation_count=0,
        )
        async with self._transaction() as session:
            session.add(scan)
            await session.flush()
        logger.debug("scan row created", extra={"scan_id": scan.id, "site_id": site_id})
        return scan

    async def get_scan(self, scan_id: int) -> Scan | None:
        async with self._transaction() as session:
            return await session.get(Scan, scan_id)

    async def active_scan_for_site(self, site_id: int) -> Scan | None:
        stmt = (
            select(Scan)
            .where(Scan.site_id == site_id, Scan.status.in_(_values(ACTIVE_STATUSES)))
            .order_by(Scan.id.desc())
            .limit(1)
        )
        async with self._transaction() as session:
            return (await session.execute(stmt)).scalars().first()

    async def list_scans(
        self, status: str | None = None, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[tuple[Scan, str | None]]:
        """Return ``(scan, site_title)`` pairs, newest first."""
        stmt = (
            select(Scan, Site.title)
            .outerjoin(Site, Site.id == Scan.site_id)
            .order_by(Scan.created_at.desc(), Scan.id.desc())
            .limit(limit)
        )
        if status:
            stmt = stmt.where(Scan.status == status)
        async with self._transaction() as session:
            rows = (await session.execute(stmt)).all()
        return [(row[0], row[1]) for row in rows]

    async def find_orphaned_scans(self) -> list[Scan]:
        stmt = (
            select(Scan)
            .where(Scan.status.in_(_values(ACTIVE_STATUSES)))
            .order_by(Scan.id)
        )
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def transition(
        self,
        scan_id: int,
        from_statuses: Iterable[ScanStatus | str],
        to_status: ScanStatus,
        **values: Any,
    ) -> bool:
        """Move the job to *to_status* only if it is currently in *from_statuses*."""
        stmt = (
            update(Scan)
            .where(Scan.id == scan_id, Scan.status.in_(_values(from_statuses)))
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
        changed = result.rowcount > 0
        logger.debug(
            "scan transition",
            extra={"scan_id": scan_id, "to_status": to_status.value, "applied": changed},
        )
        return changed

    async def begin_execution(
        self, scan_id: int, *, pages_total: int, resume_index: int, **values: Any
    ) -> bool:
        """Move an active job to ``in_progress`` for a page list of *pages_total*.

        The page list is resolved again on every execution and may have
        shrunk since the last checkpoint, so ``pages_scanned`` and
        ``resume_index`` are clamped to it in the same statement.
        """
        stmt = (
            update(Scan)
            .where(Scan.id == scan_id, Scan.status.in_(_values(ACTIVE_STATUSES)))
            .values(
                status=ScanStatus.IN_PROGRESS.value,
                pages_total=pages_total,
                resume_index=min(resume_index, pages_total),
                pages_scanned=case(
                    (Scan.pages_scanned > pages_total, pages_total),
                    else_=Scan.pages_scanned,
                ),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def checkpoint(
        self, scan_id: int, *, engine: str, resume_index: int, pages_scanned: int
    ) -> bool:
        """Persist the resume point; ``pages_scanned`` only ever grows."""
        stmt = (
            update(Scan)
            .where(Scan.id == scan_id, Scan.status.in_(_values(RUNNING_STATUSES)))
            .values(
                resume_index=resume_index,
                resume_engine=engine,
                pages_scanned=case(
                    (Scan.pages_scanned < pages_scanned, pages_scanned),
                    else_=Scan.pages_scanned,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
        return result.rowcount > 0

    async def reset_progress(self, scan_id: int) -> None:
        """Drop every page result, violation and counter so the job starts over."""
        async with self._transaction() as session:
            await session.execute(delete(PageScanResult).where(PageScanResult.scan_id == scan_id))
            await session.execute(delete(ScanViolation).where(ScanViolation.scan_id == scan_id))
            await session.execute(
                update(Scan)
                .where(Scan.id == scan_id)
                .values(
                    pages_scanned=0,
                    resume_index=0,
                    resume_engine=None,
                    total_violations_sum=0,
                    worst_page_url=None,
                    worst_page_violation_count=0,
                    worst_page_violations=None,
                    axe_score=None,
                    lighthouse_score=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )

    async def complete_scan(
        self,
        scan_id: int,
        site_id: int,
        scores: dict[str, int | None],
        **values: Any,
    ) -> bool:
        """Commit the final job state, site scores and a history row together.

        Returns ``False`` without writing anything when the job is no longer
        running (for example because it was cancelled meanwhile).
        """
        now = utcnow()
        async with self._transaction() as session:
            result = await session.execute(
                update(Scan)
                .where(Scan.id == scan_id, Scan.status.in_(_values(RUNNING_STATUSES)))
                .values(
                    status=ScanStatus.COMPLETED.value,
                    completed_at=now,
                    axe_score=scores.get("axe"),
                    lighthouse_score=scores.get("lighthouse"),
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return False

            site_values: dict[str, Any] = {}
            for engine, score in scores.items():
                if score is None:
                    continue
                site_values[f"{engine}_score"] = score
                site_values[f"{engine}_last_updated"] = now
            if site_values:
                await session.execute(
                    update(Site)
                    .where(Site.id == site_id)
                    .values(**site_values)
                    .execution_options(synchronize_session=False)
                )

            session.add(
                ScoreHistory(
                    site_id=site_id,
                    scan_id=scan_id,
                    axe_score=scores.get("axe"),
                    lighthouse_score=scores.get("lighthouse"),
                    recorded_at=now,
                )
            )
        return True

    # -- per-page results --------------------------------------------------

    async def save_page_result(
        self,
        scan_id: int,
        *,
        engine: str,
        page_index: int,
        page_url: str,
        status: str,
        score: int | None = None,
        violations: list[dict[str, Any]] | None = None,
        error_message: str | None = None,
    ) -> None:
        """Write the result for one page, replacing an earlier attempt at the same index."""
        violations = violations or []
        async with self._transaction() as session:
            await session.execute(
                delete(PageScanResult).where(
                    PageScanResult.scan_id == scan_id,
                    PageScanResult.engine == engine,
                    PageScanResult.page_index == page_index,
                )
            )
            session.add(
                PageScanResult(
                    scan_id=scan_id,
                    engine=engine,
                    page_index=page_index,
                    page_url=page_url,
                    status=status,
                    score=score,
                    violation_count=len(violations),
                    violations=violations,
                    error_message=error_message,
                )
            )

    async def page_results(
        self, scan_id: int, engine: str | None = None
    ) -> list[PageScanResult]:
        stmt = select(PageScanResult).where(PageScanResult.scan_id == scan_id)
        if engine is not None:
            stmt = stmt.where(PageScanResult.engine == engine)
        stmt = stmt.order_by(PageScanResult.engine, PageScanResult.page_index)
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def delete_partial_results(self, scan_id: int) -> None:
        async with self._transaction() as session:
            await session.execute(delete(PageScanResult).where(PageScanResult.scan_id == scan_id))
            await session.execute(delete(ScanViolation).where(ScanViolation.scan_id == scan_id))

    # -- violations --------------------------------------------------------

    async def insert_violations(self, rows: Sequence[dict[str, Any]]) -> int:
        if not rows:
            return 0
        async with self._transaction() as session:
            session.add_all(ScanViolation(**row) for row in rows)
        return len(rows)

    async def list_violations(self, scan_id: int) -> list[ScanViolation]:
        stmt = (
            select(ScanViolation)
            .where(ScanViolation.scan_id == scan_id)
            .order_by(ScanViolation.created_at.desc(), ScanViolation.id.desc())
        )
        async with self._transaction() as session:
            return list((await session.execute(stmt)).scalars().all())

    # -- audit trail -------------------------------------------------------

    async def add_audit_log(
        self,
        action: str,
        description: str,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> None:
        async with self._transaction() as session:
            session.add(
                AuditLog(
                    action=action,
                    description=description,
                    details=details or {},
                    user_id=user_id,
                )
            )
