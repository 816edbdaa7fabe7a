"""Discovery entry point: run the profile's strategy."""

from __future__ import annotations

import logging
import time
from typing import Callable

from ..config import DEFAULT_DETAIL_URL_TOKENS
from ..fetcher import Fetcher
from ..models import DiscoverResult, SiteProfile
from .html_links import discover_via_html_links
from .sitemap import discover_via_sitemap

logger = logging.getLogger(__name__)

STRATEGIES = {
    "html_links": discover_via_html_links,
    "sitemap": discover_via_sitemap,
}


async def discover(
    profile: SiteProfile,
    fetcher: Fetcher,
    base_url: str | None = None,
    detail_tokens: tuple[str, ...] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> DiscoverResult:
    """Find detail URLs for a site. Best-effort and bounded by profile.limits."""
    strategy = STRATEGIES.get(profile.strategy)
    if strategy is None:
        logger.warning("Unknown discovery strategy %r, using html_links", profile.strategy)
        strategy = discover_via_html_links

    return await strategy(
        profile,
        fetcher,
        base_url,
        detail_tokens or DEFAULT_DETAIL_URL_TOKENS,
        clock=clock,
    )
