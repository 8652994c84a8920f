"""Lighthouse accessibility audits via the PageSpeed Insights v5 API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.scans.aggregate import lighthouse_score
from src.scans.errors import EngineFailure
from src.scans.models import EngineViolation, PageAudit

logger = logging.getLogger(__name__)


def parse_lighthouse_payload(payload: dict[str, Any]) -> PageAudit:
    """Extract the accessibility score and failing audits from a PSI response.

    Raises ``ValueError`` when the payload carries no accessibility score.
    """
    lighthouse = payload.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    category = categories.get("accessibility") or {}
    score = category.get("score")
    if not isinstance(score, (int, float)):
        raise ValueError("Missing accessibility score in Lighthouse result")

    audit_ids = [ref.get("id") for ref in category.get("auditRefs") or [] if ref.get("id")]
    if not audit_ids:
        audit_ids = list(audits)

    violations: list[EngineViolation] = []
    for audit_id in audit_ids:
        audit = audits.get(audit_id) or {}
        audit_score = audit.get("score")
        if audit_score is None or audit_score >= 1:
            continue
        items = (audit.get("details") or {}).get("items") or []
        violations.append(
            EngineViolation(
                id=audit_id,
                impact=None,
                description=audit.get("title") or "",
                help_url=None,
                nodes=len(items),
            )
        )
    return PageAudit(score=lighthouse_score(float(score)), violations=violations)


class LighthouseEngine:
    """Runs Lighthouse remotely through the PageSpeed Insights API."""

    name = "lighthouse"

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def audit(self, url: str) -> PageAudit:
        params = {"url": url, "category": "ACCESSIBILITY", "strategy": "desktop"}
        if self._api_key:
            params["key"] = self._api_key
        try:
            resp = await self._http.get(self._api_url, params=params)
            resp.raise_for_status()
            payload = resp.json()
            return parse_lighthouse_payload(payload)
        except httpx.HTTPError as exc:
            logger.warning("lighthouse request failed", extra={"url": url, "error": str(exc)})
            raise EngineFailure(self.name, url, f"Lighthouse request failed: {exc}") from exc
        except ValueError as exc:
            logger.warning("lighthouse payload invalid", extra={"url": url, "error": str(exc)})
            raise EngineFailure(self.name, url, f"Lighthouse returned an invalid result: {exc}") from exc

    async def aclose(self) -> None:
        await self._http.aclose()
