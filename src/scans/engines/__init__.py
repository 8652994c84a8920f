"""Audit engine adapters with a name-keyed registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .axe import AxeEngine
from .base import AuditEngine, EngineRegistry
from .lighthouse import LighthouseEngine

if TYPE_CHECKING:
    from src.config import Settings

__all__ = [
    "AuditEngine",
    "AxeEngine",
    "EngineRegistry",
    "LighthouseEngine",
    "build_default_engines",
]


def build_default_engines(settings: Settings) -> EngineRegistry:
    """Build the registry with both production engines configured."""
    registry = EngineRegistry()
    registry.register(
        LighthouseEngine(
            api_url=settings.pagespeed_api_url,
            api_key=settings.pagespeed_api_key,
            timeout=settings.lighthouse_timeout_seconds,
        )
    )
    registry.register(
        AxeEngine(
            script_url=settings.axe_script_url,
            user_agent=settings.scanner_user_agent,
            page_timeout=settings.axe_page_timeout_seconds,
        )
    )
    return registry
