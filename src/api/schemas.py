"""Request/response Pydantic models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class CreateScanRequest(BaseModel):
    site_id: int | None = None
    scan_type: str | None = None
    single_page: bool = False


class ResumeScanRequest(BaseModel):
    resume_from_index: int | None = None
    restart: bool = False


class ScanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    site_id: int
    site_name: str | None = None
    scan_type: str
    mode: str
    status: str
    pages_total: int | None = None
    pages_scanned: int = 0
    resume_index: int = 0
    resume_engine: str | None = None
    total_violations_sum: int = 0
    worst_page_url: str | None = None
    worst_page_violation_count: int = 0
    worst_page_violations: list[Any] | None = None
    axe_score: int | None = None
    lighthouse_score: int | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    paused_at: datetime | None = None
    timeout_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PageResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    page_url: str
    page_index: int
    engine: str
    status: str
    score: int | None = None
    violation_count: int = 0
    violations: list[Any] = []
    error_message: str | None = None
    scanned_at: datetime


class ViolationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    scan_id: int
    engine: str
    rule_id: str
    rule_name: str
    description: str
    impact_level: str
    page_url: str
    element_count: int
    help_url: str
    created_at: datetime
