"""Reduce per-page audit results into per-engine and per-scan summaries."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

AXE_PENALTY_PER_VIOLATION = 5


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values, unlike :func:`round`."""
    return math.floor(value + 0.5)


def axe_score(violation_count: int) -> int:
    return max(0, 100 - violation_count * AXE_PENALTY_PER_VIOLATION)


def lighthouse_score(category_score: float) -> int:
    return min(100, max(0, round_half_up(category_score * 100)))


@dataclass
class _PageEntry:
    url: str
    violation_count: int
    violations: list[dict[str, Any]]


@dataclass
class EngineAggregate:
    """Running totals for one engine pass.

    ``add`` is called once per page in sitemap order. Failed pages count as
    scanned but carry no score and no violations.
    """

    engine: str
    scores: list[int] = field(default_factory=list)
    total_violations: int = 0
    pages: int = 0
    worst_page_url: str | None = None
    worst_page_violation_count: int = 0
    worst_page_violations: list[dict[str, Any]] = field(default_factory=list)
    per_page: dict[int, _PageEntry] = field(default_factory=dict)

    def add(
        self,
        page_index: int,
        page_url: str,
        score: int | None,
        violations: list[dict[str, Any]] | None = None,
    ) -> None:
        violations = violations or []
        count = len(violations)
        self.pages += 1
        if score is not None:
            self.scores.append(score)
        self.total_violations += count
        self.per_page[page_index] = _PageEntry(page_url, count, violations)
        # Strictly greater: on ties the first page at the maximum is kept.
        if count > self.worst_page_violation_count:
            self.worst_page_url = page_url
            self.worst_page_violation_count = count
            self.worst_page_violations = violations

    @property
    def average_score(self) -> int | None:
        if not self.scores:
            return None
        return round_half_up(sum(self.scores) / len(self.scores))


@dataclass
class ScanSummary:
    scores: dict[str, int | None]
    total_violations: int
    worst_page_url: str | None
    worst_page_violation_count: int
    worst_page_violations: list[dict[str, Any]]

    def scan_values(self) -> dict[str, Any]:
        """Column values for the finished job row."""
        return {
            "total_violations_sum": self.total_violations,
            "worst_page_url": self.worst_page_url,
            "worst_page_violation_count": self.worst_page_violation_count,
            "worst_page_violations": self.worst_page_violations or None,
        }


def merge(aggregates: Iterable[EngineAggregate]) -> ScanSummary:
    """Combine engine passes into the job-level summary.

    Per-page violation counts are summed across engines before the worst
    page is picked, visiting pages in sitemap order.
    """
    aggregates = list(aggregates)
    combined: dict[int, _PageEntry] = {}
    for agg in aggregates:
        for index, entry in agg.per_page.items():
            current = combined.get(index)
            if current is None:
                combined[index] = _PageEntry(
                    entry.url, entry.violation_count, list(entry.violations)
                )
            else:
                current.violation_count += entry.violation_count
                current.violations.extend(entry.violations)

    worst_url: str | None = None
    worst_count = 0
    worst_violations: list[dict[str, Any]] = []
    for index in sorted(combined):
        entry = combined[index]
        if entry.violation_count > worst_count:
            worst_url = entry.url
            worst_count = entry.violation_count
            worst_violations = entry.violations

    return ScanSummary(
        scores={agg.engine: agg.average_score for agg in aggregates},
        total_violations=sum(agg.total_violations for agg in aggregates),
        worst_page_url=worst_url,
        worst_page_violation_count=worst_count,
        worst_page_violations=worst_violations,
    )
