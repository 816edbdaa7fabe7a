"""URL helpers for discovery: sanitizing, normalizing and deriving item ids."""

from __future__ import annotations

import html as htmllib
import logging
import re
from urllib.parse import urljoin, urlparse, urlunparse

from ..models import IdFromUrl
from ..utils import short_hash

logger = logging.getLogger(__name__)

BLOCKED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "blob:")
BLOCKED_EXTENSIONS = (
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".svg",
    ".js",
    ".css",
    ".map",
    ".ico",
    ".pdf",
    ".zip",
)
CATCH_ALL_PATTERNS = {".*", "^.*$", ".+", "^.+$"}


def sanitize_candidate_url(href: str) -> bool:
    """Return False for hrefs that can never be inventory pages."""
    trimmed = (href or "").strip()
    if not trimmed or trimmed.startswith("#"):
        return False
    lower = trimmed.lower()
    if lower.startswith(BLOCKED_SCHEMES):
        return False
    path = urlparse(trimmed).path.lower()
    return not path.endswith(BLOCKED_EXTENSIONS)


def url_host(url: str) -> str:
    return urlparse(url).netloc.lower()


def normalize_url(href: str, base_url: str, host: str | None = None) -> str | None:
    """Resolve href against base_url into an absolute http(s) URL.

    Drops the fragment and any trailing slash (except for the root path).
    Returns None for unusable input or, when host is given, for links on
    any other host. base_url only resolves relative hrefs; it may sit on a
    different host after a redirect.
    """
    raw = htmllib.unescape((href or "").strip())
    raw = raw.replace("\\u002f", "/").replace("\\u002F", "/").replace("\\/", "/")
    if not raw:
        return None

    try:
        absolute = urljoin(base_url, raw)
        parsed = urlparse(absolute)
    except ValueError:
        return None

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return None

    if host is not None and parsed.netloc.lower() != host.lower():
        return None

    path = parsed.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    parsed = parsed._replace(
        netloc=parsed.netloc.lower(),
        path=path,
        fragment="",
    )
    return urlunparse(parsed)


def compile_patterns(patterns: list[str] | tuple[str, ...]) -> list[re.Pattern]:
    """Compile detail URL patterns, skipping (and logging) invalid ones."""
    compiled: list[re.Pattern] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as exc:
            logger.warning("Ignoring invalid detail URL pattern %r: %s", pattern, exc)
    return compiled


def uses_detail_heuristic(patterns: list[str] | tuple[str, ...]) -> bool:
    """True when no real detail patterns are configured."""
    if not patterns:
        return True
    return len(patterns) == 1 and patterns[0].strip() in CATCH_ALL_PATTERNS


def matches_any(url: str, patterns: list[re.Pattern]) -> bool:
    return any(p.search(url) for p in patterns)


def is_likely_detail_url(url: str, tokens: tuple[str, ...]) -> bool:
    lower = url.lower()
    return any(token in lower for token in tokens)


def extract_source_item_id(url: str, rule: IdFromUrl) -> tuple[str, bool]:
    """Derive a stable item id from url.

    Returns (id, used_fallback). The fallback is a sha1 prefix of the URL,
    used when the rule yields nothing.
    """
    if rule.mode == "regex" and rule.regex:
        try:
            match = re.search(rule.regex, url)
        except re.error:
            match = None
        if match:
            value = match.group(1) if match.groups() and match.group(1) else match.group(0)
            if value:
                return value.lower(), False

    if rule.mode == "last_segment":
        segments = [s for s in urlparse(url).path.split("/") if s]
        if segments:
            return segments[-1].lower(), False

    return short_hash(url, 12), True


def ensure_unique_id(item_id: str, url: str, seen: dict[str, str]) -> str:
    """Suffix item_id when it is already taken by a different URL."""
    existing = seen.get(item_id)
    if existing is None or existing == url:
        return item_id

    suffix = short_hash(url, 6)
    candidate = f"{item_id}-{suffix}"
    counter = 2
    while candidate in seen and seen[candidate] != url:
        candidate = f"{item_id}-{suffix}-{counter}"
        counter += 1
    return candidate
