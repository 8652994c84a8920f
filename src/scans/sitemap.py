"""Resolve a site's sitemap into the ordered list of page URLs to audit."""

from __future__ import annotations

import gzip
import logging
from collections import deque
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from src.scans.errors import SitemapResolutionError

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"
_VALID_SCHEMES = {"http", "https"}


def parse_sitemap_document(xml_text: str) -> tuple[list[str], list[str]]:
    """Return ``(page_urls, nested_sitemap_urls)`` in document order."""
    soup = BeautifulSoup(xml_text, "xml")

    page_urls: list[str] = []
    nested: list[str] = []

    for url_tag in soup.find_all("url"):
        loc = url_tag.find("loc")
        if loc and loc.text and _is_http(loc.text.strip()):
            page_urls.append(loc.text.strip())

    for sitemap_tag in soup.find_all("sitemap"):
        loc = sitemap_tag.find("loc")
        if loc and loc.text and _is_http(loc.text.strip()):
            nested.append(loc.text.strip())

    return page_urls, nested


def _is_http(url: str) -> bool:
    return urlparse(url).scheme in _VALID_SCHEMES


def _decode(url: str, body: bytes) -> str:
    if body[:2] == _GZIP_MAGIC or urlparse(url).path.endswith(".gz"):
        try:
            body = gzip.decompress(body)
        except OSError as exc:
            raise SitemapResolutionError(f"Invalid gzip sitemap at {url}: {exc}") from exc
    return body.decode("utf-8", errors="replace")


class SitemapResolver:
    """Fetches a sitemap (or sitemap index) and flattens it into page URLs.

    Index documents are expanded breadth-first, at most ``max_documents``
    fetches per resolution. URLs are de-duplicated preserving first
    occurrence, then capped at ``max_pages`` when it is positive.
    """

    def __init__(
        self,
        user_agent: str,
        timeout: float = 30.0,
        max_documents: int = 20,
        max_pages: int = 0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._max_documents = max_documents
        self._max_pages = max_pages
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )

    async def _fetch(self, url: str) -> str:
        try:
            resp = await self._http.get(url)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SitemapResolutionError(
                f"Failed to fetch sitemap: {exc.response.status_code} {exc.response.reason_phrase}"
            ) from exc
        except httpx.HTTPError as exc:
            raise SitemapResolutionError(f"Failed to fetch sitemap: {exc}") from exc
        logger.debug("sitemap downloaded", extra={"url": url, "bytes": len(resp.content)})
        return _decode(url, resp.content)

    async def resolve(self, sitemap_url: str) -> list[str]:
        logger.info("parsing sitemap", extra={"sitemap_url": sitemap_url})

        queue: deque[str] = deque([sitemap_url])
        visited: set[str] = set()
        urls: list[str] = []
        seen_urls: set[str] = set()
        fetched = 0

        while queue and fetched < self._max_documents:
            doc_url = queue.popleft()
            if doc_url in visited:
                continue
            visited.add(doc_url)
            fetched += 1

            page_urls, nested = parse_sitemap_document(await self._fetch(doc_url))
            for url in page_urls:
                if url not in seen_urls:
                    seen_urls.add(url)
                    urls.append(url)
            queue.extend(n for n in nested if n not in visited)

        if queue:
            logger.warning(
                "sitemap document limit reached",
                extra={"sitemap_url": sitemap_url, "skipped": len(queue)},
            )

        if not urls:
            raise SitemapResolutionError("No URLs found in sitemap")

        if self._max_pages > 0:
            urls = urls[: self._max_pages]

        logger.info(
            "sitemap resolved",
            extra={"sitemap_url": sitemap_url, "url_count": len(urls), "documents": fetched},
        )
        return urls

    async def aclose(self) -> None:
        await self._http.aclose()
