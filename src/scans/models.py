"""Value types shared by the scan orchestration modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ScanStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RUNNING = "running"  # legacy alias of in_progress
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (ScanStatus.PENDING, ScanStatus.IN_PROGRESS, ScanStatus.RUNNING)
RUNNING_STATUSES = (ScanStatus.IN_PROGRESS, ScanStatus.RUNNING)


class ScanType(str, Enum):
    AXE = "axe"
    LIGHTHOUSE = "lighthouse"
    BOTH = "both"

    @property
    def engines(self) -> tuple[str, ...]:
        """Engine names in pass order."""
        if self is ScanType.BOTH:
            return ENGINE_ORDER
        return (self.value,)

    @property
    def cost(self) -> int:
        return len(self.engines)


ENGINE_ORDER = ("lighthouse", "axe")


class ScanMode(str, Enum):
    MULTI_PAGE = "multi_page"
    SINGLE_PAGE = "single_page"


class PageStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class EngineViolation:
    """One rule violation reported by an audit engine for one page."""

    id: str
    impact: str | None = None
    description: str = ""
    help_url: str | None = None
    nodes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "impact": self.impact,
            "description": self.description,
            "help_url": self.help_url,
            "nodes": self.nodes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineViolation:
        return cls(
            id=data.get("id", ""),
            impact=data.get("impact"),
            description=data.get("description") or "",
            help_url=data.get("help_url"),
            nodes=data.get("nodes") or 0,
        )


@dataclass
class PageAudit:
    """Result of auditing one URL with one engine."""

    score: int
    violations: list[EngineViolation] = field(default_factory=list)


@dataclass(frozen=True)
class EngineSuccess:
    engine: str
    audit: PageAudit


@dataclass(frozen=True)
class EngineError:
    engine: str
    message: str


EngineOutcome = EngineSuccess | EngineError
