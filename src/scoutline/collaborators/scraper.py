"""
Built-in scraping collaborator: fetches a competitor homepage and extracts
the on-page SEO signals the insight stage works from.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
import structlog
from selectolax.parser import HTMLParser, Node

from scoutline.config.config import ScraperConfig
from scoutline.protocols import CollaboratorResult, utcnow

logger = structlog.get_logger(__name__)


def _attr(node: Optional[Node], name: str) -> str:
    if node is None:
        return ""
    return (node.attributes.get(name) or "").strip()


def _meta(tree: HTMLParser, selector: str) -> str:
    return _attr(tree.css_first(selector), "content")


def _is_internal(href: str, domain: str) -> bool:
    if href.startswith("//"):
        href = f"https:{href}"
    elif "://" not in href:
        return True
    host = urlparse(href).hostname or ""
    return host == domain or host.endswith(f".{domain}")


def extract_seo_data(html: str, domain: str, max_headings: int = 20) -> Dict[str, Any]:
    """Pull title, meta tags, headings, links, images and structured data from a page."""
    tree = HTMLParser(html)

    title_node = tree.css_first("title")
    headings = {
        level: [n.text(strip=True) for n in tree.css(level)][:max_headings] for level in ("h1", "h2", "h3")
    }

    internal: List[str] = []
    external: List[str] = []
    for link in tree.css("a[href]"):
        href = _attr(link, "href")
        if not href or href.startswith(("mailto:", "tel:", "javascript:")):
            continue
        (internal if _is_internal(href, domain) else external).append(href)

    images = tree.css("img")
    structured = []
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            structured.append(json.loads(script.text() or ""))
        except ValueError:
            continue

    body_text = tree.body.text(separator=" ") if tree.body is not None else ""

    return {
        "title": title_node.text(strip=True) if title_node is not None else "",
        "meta_description": _meta(tree, 'meta[name="description"]'),
        "meta_keywords": _meta(tree, 'meta[name="keywords"]'),
        "robots": _meta(tree, 'meta[name="robots"]'),
        "canonical": _attr(tree.css_first('link[rel="canonical"]'), "href"),
        "headings": headings,
        "internal_links": len(internal),
        "external_links": len(external),
        "images": len(images),
        "images_missing_alt": sum(1 for img in images if not _attr(img, "alt")),
        "structured_data": structured,
        "open_graph": {
            "title": _meta(tree, 'meta[property="og:title"]'),
            "description": _meta(tree, 'meta[property="og:description"]'),
            "image": _meta(tree, 'meta[property="og:image"]'),
        },
        "word_count": len(body_text.split()),
        "has_viewport": tree.css_first('meta[name="viewport"]') is not None,
    }


def score_technical(checks: Dict[str, bool]) -> float:
    """Share of passed checks on a 0-100 scale."""
    if not checks:
        return 0.0
    return round(100.0 * sum(1 for passed in checks.values() if passed) / len(checks), 1)


class SeoScraper:
    """Scraping collaborator backed by aiohttp and selectolax."""

    def __init__(self, config: ScraperConfig) -> None:
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def initialize(self) -> None:
        self._get_session()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds),
                headers={"User-Agent": self.config.user_agent},
            )
        return self._session

    async def scrape(self, domain: str, options: Dict[str, Any]) -> CollaboratorResult:
        session = self._get_session()
        url = f"https://{domain}"
        start = time.monotonic()
        try:
            async with session.get(url, allow_redirects=True) as response:
                status = response.status
                final_url = str(response.url)
                html = await response.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return CollaboratorResult.failure(f"Failed to fetch {url}: {type(e).__name__}: {e}")
        load_time_ms = round((time.monotonic() - start) * 1000, 1)

        if status >= 400:
            return CollaboratorResult.failure(f"HTTP {status} from {url}", status_code=status)

        seo = extract_seo_data(html, domain, self.config.max_headings)
        data: Dict[str, Any] = {
            "domain": domain,
            "url": final_url,
            "status_code": status,
            "seo_data": seo,
            "scraped_at": utcnow().isoformat(),
        }

        if options.get("include_technical", True):
            checks = {
                "https_enabled": final_url.startswith("https://"),
                "mobile_friendly": seo["has_viewport"],
                "structured_data": bool(seo["structured_data"]),
                "has_h1": bool(seo["headings"]["h1"]),
                "has_meta_description": bool(seo["meta_description"]),
                "has_canonical": bool(seo["canonical"]),
            }
            if self.config.check_robots:
                checks["robots_txt"] = await self._exists(session, f"https://{domain}/robots.txt")
            if self.config.check_sitemap:
                checks["xml_sitemap"] = await self._exists(session, f"https://{domain}/sitemap.xml")
            data["technical"] = {**checks, "seo_score": score_technical(checks), "load_time_ms": load_time_ms}

        return CollaboratorResult.success(data, load_time_ms=load_time_ms, content_length=len(html))

    async def _exists(self, session: aiohttp.ClientSession, url: str) -> bool:
        try:
            async with session.get(url, allow_redirects=True) as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            self.logger.debug("Probe failed", url=url)
            return False
