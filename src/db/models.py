"""ORM models for sites, scan jobs, per-page results, violations and history."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.db.base import Base
from src.scans.models import PageStatus, ScanMode, ScanStatus, ScanType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Site(Base):
    """A monitored site. Only the columns the scan engine touches are mapped."""

    __tablename__ = "sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    sitemap_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    axe_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    lighthouse_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    axe_last_updated: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lighthouse_last_updated: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<Site(id={self.id}, url='{self.url}')>"


class Scan(Base):
    __tablename__ = "scans"
    __table_args__ = (
        CheckConstraint("pages_scanned >= 0", name="ck_scans_pages_scanned_nonneg"),
        CheckConstraint(
            "pages_total IS NULL OR pages_scanned <= pages_total",
            name="ck_scans_pages_scanned_le_total",
        ),
        CheckConstraint(
            "total_violations_sum >= 0", name="ck_scans_total_violations_nonneg"
        ),
        CheckConstraint(
            "axe_score IS NULL OR (axe_score >= 0 AND axe_score <= 100)",
            name="ck_scans_axe_score_range",
        ),
        CheckConstraint(
            "lighthouse_score IS NULL OR (lighthouse_score >= 0 AND lighthouse_score <= 100)",
            name="ck_scans_lighthouse_score_range",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_type: Mapped[str] = mapped_column(
        String(20), default=ScanType.BOTH.value, nullable=False
    )
    mode: Mapped[str] = mapped_column(
        String(20), default=ScanMode.MULTI_PAGE.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ScanStatus.PENDING.value, nullable=False, index=True
    )

    pages_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pages_scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resume_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    resume_engine: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    total_violations_sum: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    worst_page_url: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    worst_page_violation_count: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    worst_page_violations: Mapped[Optional[list[Any]]] = mapped_column(
        JSON, nullable=True
    )

    axe_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    lighthouse_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    paused_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    timeout_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Scan(id={self.id}, site_id={self.site_id}, status='{self.status}')>"


class PageScanResult(Base):
    __tablename__ = "page_scan_results"
    __table_args__ = (
        UniqueConstraint("scan_id", "engine", "page_index", name="uq_page_result"),
        CheckConstraint(
            "score IS NULL OR (score >= 0 AND score <= 100)",
            name="ck_page_result_score_range",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    page_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    page_index: Mapped[int] = mapped_column(Integer, nullable=False)
    engine: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=PageStatus.SUCCESS.value, nullable=False
    )
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    violation_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    violations: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    scanned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class ScanViolation(Base):
    __tablename__ = "scan_violations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scan_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    engine: Mapped[str] = mapped_column(String(20), nullable=False)
    rule_id: Mapped[str] = mapped_column(String(255), nullable=False)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    impact_level: Mapped[str] = mapped_column(String(20), nullable=False)
    page_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    element_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    help_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class ScoreHistory(Base):
    __tablename__ = "score_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sites.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scan_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("scans.id", ondelete="SET NULL"), nullable=True
    )
    axe_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    lighthouse_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
