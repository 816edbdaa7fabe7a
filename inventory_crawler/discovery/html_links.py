"""HTML link discovery: follow anchors and pagination from seed listing pages."""

from __future__ import annotations

import logging
import re
import time
from collections import deque
from typing import Callable

from ..fetcher import Fetcher
from ..models import DiscoverResult, SiteProfile
from .collector import ItemCollector
from .urls import normalize_url, sanitize_candidate_url, url_host

logger = logging.getLogger(__name__)

ANCHOR_RE = re.compile(r"<a\s+([^>]*)>", re.IGNORECASE)
HREF_ATTR_RE = re.compile(r"""\bhref\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
REL_NEXT_RE = re.compile(r"""\brel\s*=\s*["'][^"']*\bnext\b[^"']*["']""", re.IGNORECASE)
ARIA_NEXT_RE = re.compile(r"""\baria-label\s*=\s*["']\s*next\b[^"']*["']""", re.IGNORECASE)
CLASS_NEXT_RE = re.compile(r"""\bclass\s*=\s*["'][^"']*next[^"']*["']""", re.IGNORECASE)
PAGE_PARAM_RE = re.compile(r"[?&]page=\d+", re.IGNORECASE)
PAGE_PATH_RE = re.compile(r"/page/\d+/?", re.IGNORECASE)

LOAD_MORE_RE = re.compile(r"(visa fler|ladda fler|load more|show more)", re.IGNORECASE)
ENDPOINT_HINT_RE = re.compile(r"(wp-json|admin-ajax\.php|/api/|\.json|ajax)", re.IGNORECASE)

# Load-more endpoints fetched per listing page
MAX_ENDPOINT_FETCHES = 5


def iter_anchors(body: str):
    """Yield (href, attribute string) for every anchor tag with an href."""
    for match in ANCHOR_RE.finditer(body):
        attrs = match.group(1)
        href_match = HREF_ATTR_RE.search(attrs)
        if href_match:
            href = href_match.group(1).strip()
            if href:
                yield href, attrs


def pagination_candidates(body: str) -> list[str]:
    """Next-page hrefs in precedence order.

    rel="next", then aria-label="next", then class*="next", then any
    ?page=N link, then any /page/N link.
    """
    rel_next: list[str] = []
    aria_next: list[str] = []
    class_next: list[str] = []
    page_param: list[str] = []
    page_path: list[str] = []

    for href, attrs in iter_anchors(body):
        if REL_NEXT_RE.search(attrs):
            rel_next.append(href)
        if ARIA_NEXT_RE.search(attrs):
            aria_next.append(href)
        if CLASS_NEXT_RE.search(attrs):
            class_next.append(href)
        if PAGE_PARAM_RE.search(href):
            page_param.append(href)
        if PAGE_PATH_RE.search(href):
            page_path.append(href)

    return rel_next + aria_next + class_next + page_param + page_path


def endpoint_hints(body: str) -> list[str]:
    """Anchors that look like AJAX/API endpoints behind a "load more" control."""
    if not LOAD_MORE_RE.search(body):
        return []
    return [href for href, _ in iter_anchors(body) if ENDPOINT_HINT_RE.search(href)]


def harvest_anchors(body: str, page_url: str, host: str, collector: ItemCollector) -> int:
    """Offer every anchor on host to the collector. Returns items added.

    Relative hrefs resolve against page_url, which is the final URL after
    redirects; host is the seed host the page was queued under.
    """
    added = 0
    for href, _ in iter_anchors(body):
        if collector.full:
            break
        if not sanitize_candidate_url(href):
            continue
        absolute = normalize_url(href, page_url, host=host)
        if absolute and collector.offer(absolute):
            added += 1
    return added


async def discover_via_html_links(
    profile: SiteProfile,
    fetcher: Fetcher,
    base_url: str | None,
    detail_tokens: tuple[str, ...],
    clock: Callable[[], float] = time.monotonic,
) -> DiscoverResult:
    """Bounded crawl of listing pages, collecting detail URLs.

    Stops when the work queue drains or any of max_pages, max_items or
    max_duration_ms is reached. The duration budget is checked once per
    iteration, so one slow fetch may overrun it by its own timeout. Failed
    pages are skipped, never raised.
    """
    limits = profile.limits
    seeds = list(profile.seed_urls) or ([base_url] if base_url else [])
    collector = ItemCollector(profile, detail_tokens)

    # (url, seed host) pairs; pages found from a seed stay on its host
    queue: deque[tuple[str, str]] = deque()
    queued: set[str] = set()
    for seed in seeds:
        normalized = normalize_url(seed, seed)
        if normalized and normalized not in queued:
            queue.append((normalized, url_host(normalized)))
            queued.add(normalized)

    visited: set[str] = set()
    pages_fetched = 0
    pages_ok = 0
    endpoint_fetches = 0
    first_failure: dict | None = None
    stopped_by = "drained"
    started = clock()
    budget_s = limits.max_duration_ms / 1000

    async def fetch_page(url: str):
        nonlocal pages_fetched, pages_ok, first_failure
        pages_fetched += 1
        try:
            result = await fetcher.fetch(url, timeout_ms=limits.timeout_ms)
        except Exception as exc:
            logger.debug("Discovery fetch raised for %s: %r", url, exc)
            if first_failure is None:
                first_failure = {"url": url, "status": None, "error": str(exc)}
            return None
        if not result.ok:
            logger.debug("Discovery skipping %s (status=%s)", url, result.status)
            if first_failure is None:
                error = result.trace.error if result.trace else None
                first_failure = {"url": url, "status": result.status, "error": error}
            return None
        pages_ok += 1
        return result

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

        url, host = queue.popleft()
        if url in visited:
            continue
        visited.add(url)

        result = await fetch_page(url)
        if result is None:
            continue

        page_url = result.final_url or url
        harvest_anchors(result.body, page_url, host, collector)

        for candidate in pagination_candidates(result.body):
            next_url = normalize_url(candidate, page_url, host=host)
            if next_url and next_url not in visited and next_url not in queued:
                queue.append((next_url, host))
                queued.add(next_url)
                break

        hints = endpoint_hints(result.body)
        for hint in hints[:MAX_ENDPOINT_FETCHES]:
            if collector.full or pages_fetched >= limits.max_pages:
                break
            endpoint_url = normalize_url(hint, page_url, host=host)
            if not endpoint_url or endpoint_url in visited:
                continue
            visited.add(endpoint_url)
            endpoint_fetches += 1
            endpoint = await fetch_page(endpoint_url)
            if endpoint is not None:
                # endpoints often return markup embedded in a JSON string
                fragment = endpoint.body.replace('\\"', '"').replace("\\/", "/")
                harvest_anchors(fragment, endpoint.final_url or endpoint_url, host, collector)
    else:
        if collector.full:
            stopped_by = "max_items"

    duration_ms = int((clock() - started) * 1000)
    logger.info(
        "html_links discovery: %d items from %d pages (%s) in %dms",
        len(collector.items),
        pages_fetched,
        stopped_by,
        duration_ms,
    )
    return DiscoverResult(
        items=collector.items,
        meta={
            "strategy": "html_links",
            "discovered_count": len(collector.items),
            "pages_fetched": pages_fetched,
            "pages_ok": pages_ok,
            "endpoint_fetches": endpoint_fetches,
            "suffixed_ids": collector.suffixed,
            "duration_ms": duration_ms,
            "stopped_by": stopped_by,
            "first_failure": first_failure,
        },
    )
