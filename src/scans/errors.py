"""Scan error taxonomy.

Admission-time errors carry the HTTP status the API answers with; the
exception handler in ``src.main`` renders them as ``{"error": ..., **extra}``.
Execution-time errors never reach a client directly: the lifecycle
controller records them on the job.
"""

from __future__ import annotations

from typing import Any


class ScanError(Exception):
    """Base class for every scan orchestration error."""

    status_code: int = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationError(ScanError):
    status_code = 400


class ScanStateError(ScanError):
    """The job is not in a state that allows the requested transition."""

    status_code = 400


class NotFoundError(ScanError):
    status_code = 404


class ScanConflictError(ScanError):
    status_code = 409


class RateLimitExceeded(ScanError):
    status_code = 429

    def __init__(self, remaining: int, reset_time: str, limit: int) -> None:
        super().__init__(
            "Rate limit exceeded. Please try again later.",
            remaining=remaining,
            reset_time=reset_time,
            limit=limit,
        )


class SitemapResolutionError(ScanError):
    pass


class EngineFailure(ScanError):
    """A single audit call failed; recorded per page, never fatal to the job."""

    def __init__(self, engine: str, url: str, message: str) -> None:
        super().__init__(message, engine=engine, url=url)
        self.engine = engine
        self.url = url


class ScanTimeout(ScanError):
    pass


class PersistenceError(ScanError):
    pass
