"""axe-core audits run inside headless Chromium via Playwright."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx
from playwright.async_api import Browser, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from src.scans.aggregate import axe_score
from src.scans.errors import EngineFailure
from src.scans.models import EngineViolation, PageAudit

logger = logging.getLogger(__name__)

_RUN_AXE = "async () => await axe.run(document, {resultTypes: ['violations']})"


def parse_axe_results(results: dict[str, Any]) -> list[EngineViolation]:
    """Map the ``violations`` array of an ``axe.run()`` result."""
    violations: list[EngineViolation] = []
    for item in results.get("violations") or []:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        violations.append(
            EngineViolation(
                id=item["id"],
                impact=item.get("impact"),
                description=item.get("help") or item.get("description") or "",
                help_url=item.get("helpUrl"),
                nodes=len(item.get("nodes") or []),
            )
        )
    return violations


class AxeEngine:
    """Loads each page in a fresh browser context and runs axe-core on it."""

    name = "axe"

    def __init__(
        self,
        script_url: str,
        user_agent: str,
        page_timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._script_url = script_url
        self._user_agent = user_agent
        self._page_timeout_ms = page_timeout * 1000
        self._http = http_client or httpx.AsyncClient(timeout=30, follow_redirects=True)
        self._script: str | None = None
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()

    async def _axe_script(self) -> str:
        if self._script is None:
            resp = await self._http.get(self._script_url)
            resp.raise_for_status()
            self._script = resp.text
            logger.debug("axe script loaded", extra={"bytes": len(self._script)})
        return self._script

    async def _get_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
                logger.info("chromium launched")
            return self._browser

    async def audit(self, url: str) -> PageAudit:
        try:
            script = await self._axe_script()
            browser = await self._get_browser()
            context = await browser.new_context(
                user_agent=self._user_agent,
                viewport={"width": 1280, "height": 720},
            )
            try:
                page = await context.new_page()
                await page.goto(url, wait_until="networkidle", timeout=self._page_timeout_ms)
                await page.add_script_tag(content=script)
                results = await page.evaluate(_RUN_AXE)
            finally:
                await context.close()
        except (PlaywrightError, httpx.HTTPError) as exc:
            logger.warning("axe audit failed", extra={"url": url, "error": str(exc)})
            raise EngineFailure(self.name, url, f"Axe audit failed: {exc}") from exc

        if not isinstance(results, dict):
            raise EngineFailure(self.name, url, "Axe returned an unexpected result")

        violations = parse_axe_results(results)
        return PageAudit(score=axe_score(len(violations)), violations=violations)

    async def aclose(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        await self._http.aclose()
