"""Sitemap discovery: robots.txt Sitemap lines, then <loc> entries."""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from typing import Callable
from urllib.parse import urlparse

from ..fetcher import Fetcher
from ..models import DiscoverResult, SiteProfile
from .collector import ItemCollector
from .urls import normalize_url, url_host

logger = logging.getLogger(__name__)

LOC_RE = re.compile(r"<loc>\s*([^<]+?)\s*</loc>", re.IGNORECASE)
SITEMAP_INDEX_RE = re.compile(r"<sitemapindex\b", re.IGNORECASE)
ROBOTS_SITEMAP_RE = re.compile(r"^\s*sitemap:\s*(\S+)", re.IGNORECASE | re.MULTILINE)


def site_origin(profile: SiteProfile, base_url: str | None) -> str | None:
    reference = base_url or (profile.seed_urls[0] if profile.seed_urls else None)
    if not reference:
        return None
    parsed = urlparse(reference)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def parse_robots_sitemaps(body: str) -> list[str]:
    return [m.group(1).strip() for m in ROBOTS_SITEMAP_RE.finditer(body or "")]


async def discover_via_sitemap(
    profile: SiteProfile,
    fetcher: Fetcher,
    base_url: str | None,
    detail_tokens: tuple[str, ...],
    clock: Callable[[], float] = time.monotonic,
) -> DiscoverResult:
    """Collect detail URLs from the site's XML sitemaps.

    Sitemap index files are followed. Every sitemap (and robots.txt) fetch
    counts against max_pages; entries on other hosts are ignored.
    """
    limits = profile.limits
    origin = site_origin(profile, base_url)
    collector = ItemCollector(profile, detail_tokens, require_detail_match=False)
    pages_fetched = 0
    pages_ok = 0
    first_failure: dict | None = None
    stopped_by = "drained"
    started = clock()
    budget_s = limits.max_duration_ms / 1000

    if origin is None:
        return DiscoverResult(items=[], meta={"strategy": "sitemap", "discovered_count": 0, "pages_fetched": 0})
    host = url_host(origin)

    async def fetch_body(url: str) -> str | None:
        nonlocal pages_fetched, pages_ok, first_failure
        pages_fetched += 1
        try:
            result = await fetcher.fetch(url, timeout_ms=limits.timeout_ms)
        except Exception as exc:
            logger.debug("Sitemap fetch raised for %s: %r", url, exc)
            first_failure = first_failure or {"url": url, "status": None, "error": str(exc)}
            return None
        if not result.ok:
            first_failure = first_failure or {
                "url": url,
                "status": result.status,
                "error": result.trace.error if result.trace else None,
            }
            return None
        pages_ok += 1
        return result.body

    sitemap_urls = list(profile.sitemap_urls)
    if not sitemap_urls:
        robots = await fetch_body(f"{origin}/robots.txt")
        sitemap_urls = parse_robots_sitemaps(robots or "") or [f"{origin}/sitemap.xml"]

    queue: deque[str] = deque()
    visited: set[str] = set()
    for url in sitemap_urls:
        normalized = normalize_url(url, origin, host=host)
        if normalized:
            queue.append(normalized)

    while queue:
        if pages_fetched >= limits.max_pages:
            stopped_by = "max_pages"
            break
        if collector.full:
            stopped_by = "max_items"
            break
        if clock() - started >= budget_s:
            stopped_by = "max_duration"
            break

        sitemap_url = queue.popleft()
        if sitemap_url in visited:
            continue
        visited.add(sitemap_url)

        body = await fetch_body(sitemap_url)
        if body is None:
            continue

        is_index = bool(SITEMAP_INDEX_RE.search(body))
        for match in LOC_RE.finditer(body):
            loc = normalize_url(match.group(1), origin, host=host)
            if not loc:
                continue
            if is_index or loc.lower().endswith((".xml", ".xml.gz")):
                if loc not in visited:
                    queue.append(loc)
                continue
            collector.offer(loc)
            if collector.full:
                break

    duration_ms = int((clock() - started) * 1000)
    logger.info("sitemap discovery: %d items from %d fetches in %dms", len(collector.items), pages_fetched, duration_ms)
    return DiscoverResult(
        items=collector.items,
        meta={
            "strategy": "sitemap",
            "discovered_count": len(collector.items),
            "pages_fetched": pages_fetched,
            "pages_ok": pages_ok,
            "sitemap_urls": sitemap_urls,
            "suffixed_ids": collector.suffixed,
            "duration_ms": duration_ms,
            "stopped_by": stopped_by,
            "first_failure": first_failure,
        },
    )
