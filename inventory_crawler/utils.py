"""Shared text and hashing helpers."""

import hashlib
import json
import re
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(fragment: str | None) -> str:
    """Strip tags and entities from a matched markup fragment and collapse whitespace.

    Only ever called on small snippets already isolated by a regex, never on a
    whole page.
    """
    if not fragment:
        return ""
    if "<" not in fragment and "&" not in fragment:
        return _WHITESPACE_RE.sub(" ", fragment).strip()

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        text = BeautifulSoup(fragment, "lxml").get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def parse_amount(text: str | None) -> int | None:
    """Parse a price-like string into an integer amount.

    Handles formats like:
    - "450 000"
    - "450 000 kr"
    - "129900"
    Every non-digit character is dropped, so "1.299,00" would read as 129900;
    inventory prices in the target market are whole kronor.
    """
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    try:
        return int(digits)
    except ValueError:
        return None


def short_hash(value: str, length: int = 12) -> str:
    """Hex sha1 prefix of value."""
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]


def content_hash(payload: dict) -> str:
    """Stable sha256 of a JSON-serializable dict (keys sorted)."""
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def truncate_html(html: str, max_bytes: int) -> tuple[str, bool]:
    """Cut html to at most max_bytes of UTF-8 without splitting a character."""
    encoded = html.encode("utf-8")
    if len(encoded) <= max_bytes:
        return html, False
    return encoded[:max_bytes].decode("utf-8", errors="ignore"), True
