"""Audit engine protocol and the name-keyed engine registry."""

from __future__ import annotations

from typing import Protocol

from src.scans.models import PageAudit


class AuditEngine(Protocol):
    """Audits a single URL.

    Implementations raise :class:`~src.scans.errors.EngineFailure` for any
    failure so the caller can record it against the page and move on.
    """

    name: str

    async def audit(self, url: str) -> PageAudit: ...


class EngineRegistry:
    """Registry mapping engine names (``axe``, ``lighthouse``) to instances."""

    def __init__(self) -> None:
        self._engines: dict[str, AuditEngine] = {}

    def register(self, engine: AuditEngine) -> None:
        self._engines[engine.name] = engine

    def get(self, name: str) -> AuditEngine:
        try:
            return self._engines[name]
        except KeyError:
            raise KeyError(f"No audit engine registered for '{name}'") from None

    def names(self) -> tuple[str, ...]:
        return tuple(self._engines)

    async def aclose(self) -> None:
        for engine in self._engines.values():
            close = getattr(engine, "aclose", None)
            if close is not None:
                await close()
