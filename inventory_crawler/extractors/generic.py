"""Generic detail extractor.

Title, description, price, images and key/value attributes are read from raw
markup with regular expressions and fixed heuristics; there is no per-site
configuration. Each field is an ordered list of named rules and the first rule
that yields a value wins (images are the exception: every rule contributes, in
order, with duplicates suppressed).
"""

from __future__ import annotations

import html as htmllib
import re
from urllib.parse import unquote, urljoin

from ..config import Settings
from ..models import DEFAULT_CURRENCY, ExtractResult
from ..utils import clean_text, parse_amount
from .base import BaseExtractor, Rule, first_match

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
H1_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
META_TAG_RE = re.compile(r"<meta\s+([^>]*)>", re.IGNORECASE)
CONTENT_ATTR_RE = re.compile(r"""\bcontent\s*=\s*(["'])(.*?)\1""", re.IGNORECASE | re.DOTALL)
PARAGRAPH_RE = re.compile(r"<p[^>]*>(.*?)</p>", re.IGNORECASE | re.DOTALL)

IMG_TAG_RE = re.compile(r"<img\s([^>]*)>", re.IGNORECASE)
IMG_SRC_RE = re.compile(r"""(?<![\w-])src\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
IMG_DATA_SRC_RE = re.compile(r"""\bdata-src\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
IMG_SRCSET_RE = re.compile(r"""(?<![\w-])srcset\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
NEXT_IMAGE_RE = re.compile(r"""/_next/image\?[^"'\s]*?\burl=([^&"'\s]+)""", re.IGNORECASE)
JSON_IMAGES_ARRAY_RE = re.compile(r'"images"\s*:\s*\[([^\]]*)\]', re.IGNORECASE)
JSON_IMAGE_RE = re.compile(r'"image"\s*:\s*"((?:[^"\\]|\\.)+)"', re.IGNORECASE)
JSON_STRING_RE = re.compile(r'"((?:[^"\\]|\\.)*)"')

# Integer with optional thousands separators ("450 000", "450.000", "450000").
NUMBER = r"(?<![\d])(\d{1,3}(?:[ .]\d{3})+|\d+)"
KRONOR_SUFFIX_RE = re.compile(NUMBER + r"\s*kr\b", re.IGNORECASE)
KRONOR_PREFIX_RE = re.compile(r"\bkr\.?\s*" + NUMBER, re.IGNORECASE)
SEK_SUFFIX_RE = re.compile(NUMBER + r"\s*SEK\b", re.IGNORECASE)
PRICE_KEY_VALUE_RE = re.compile(r"""price["']?\s*[:=]\s*["']?""" + NUMBER, re.IGNORECASE)

DL_PAIR_RE = re.compile(r"<dt[^>]*>(.*?)</dt>\s*<dd[^>]*>(.*?)</dd>", re.IGNORECASE | re.DOTALL)
LABEL_PAIR_RE = re.compile(r"<(strong|b|span)\b[^>]*>([^<]+)</\1>\s*([^<]+)", re.IGNORECASE)

MAX_ATTRIBUTE_KEY_LENGTH = 80


def _normalize_spaces(body: str) -> str:
    return body.replace("\u00a0", " ").replace("&nbsp;", " ").replace("&#160;", " ")


def meta_content(body: str, attr: str, value: str) -> str | None:
    """content of the first <meta attr="value"> tag, whatever the attribute order."""
    wanted = re.compile(rf"""\b{attr}\s*=\s*["']{re.escape(value)}["']""", re.IGNORECASE)
    for match in META_TAG_RE.finditer(body):
        attrs = match.group(1)
        if not wanted.search(attrs):
            continue
        content = CONTENT_ATTR_RE.search(attrs)
        if content:
            text = htmllib.unescape(content.group(2)).strip()
            if text:
                return text
    return None


# --- title ---


def document_title(body: str, base_url: str) -> str | None:
    match = TITLE_RE.search(body)
    return clean_text(match.group(1)) or None if match else None


def first_h1(body: str, base_url: str) -> str | None:
    match = H1_RE.search(body)
    return clean_text(match.group(1)) or None if match else None


# --- description ---


def meta_description(body: str, base_url: str) -> str | None:
    return meta_content(body, "name", "description")


def long_paragraph_rule(min_length: int) -> Rule:
    def first_long_paragraph(body: str, base_url: str) -> str | None:
        for match in PARAGRAPH_RE.finditer(body):
            text = clean_text(match.group(1))
            if len(text) > min_length:
                return text
        return None

    return Rule("first_long_paragraph", first_long_paragraph)


# --- price ---


def _amount_from(pattern: re.Pattern):
    def rule(body: str, base_url: str) -> int | None:
        match = pattern.search(_normalize_spaces(body))
        return parse_amount(match.group(1)) if match else None

    return rule


# --- images ---


def og_image(body: str, base_url: str) -> list[str]:
    url = meta_content(body, "property", "og:image") or meta_content(body, "name", "og:image")
    return [url] if url else []


def _img_attr(pattern: re.Pattern):
    def rule(body: str, base_url: str) -> list[str]:
        found = []
        for tag in IMG_TAG_RE.finditer(body):
            match = pattern.search(tag.group(1))
            if match:
                found.append(match.group(1).strip())
        return found

    return rule


def img_srcset(body: str, base_url: str) -> list[str]:
    found = []
    for tag in IMG_TAG_RE.finditer(body):
        match = IMG_SRCSET_RE.search(tag.group(1))
        if not match:
            continue
        first = match.group(1).strip().split(",")[0].strip().split(" ")[0]
        if first:
            found.append(first)
    return found


def next_image_proxy(body: str, base_url: str) -> list[str]:
    return [unquote(htmllib.unescape(m.group(1))) for m in NEXT_IMAGE_RE.finditer(body)]


def _looks_like_url(value: str) -> bool:
    return value.startswith(("http://", "https://", "//", "/"))


def json_images_array(body: str, base_url: str) -> list[str]:
    found = []
    for block in JSON_IMAGES_ARRAY_RE.finditer(body):
        for string in JSON_STRING_RE.finditer(block.group(1)):
            value = string.group(1).replace("\\/", "/").strip()
            if _looks_like_url(value):
                found.append(value)
    return found


def json_image(body: str, base_url: str) -> list[str]:
    found = []
    for match in JSON_IMAGE_RE.finditer(body):
        value = match.group(1).replace("\\/", "/").strip()
        if _looks_like_url(value):
            found.append(value)
    return found


IMAGE_RULES = [
    Rule("og_image", og_image),
    Rule("img_src", _img_attr(IMG_SRC_RE)),
    Rule("img_data_src", _img_attr(IMG_DATA_SRC_RE)),
    Rule("img_srcset", img_srcset),
    Rule("next_image_proxy", next_image_proxy),
    Rule("json_images_array", json_images_array),
    Rule("json_image", json_image),
]


def collect_images(body: str, base_url: str) -> list[str]:
    """Image URLs from every image rule, in rule order, deduplicated by absolute URL."""
    urls: list[str] = []
    seen: set[str] = set()
    for rule in IMAGE_RULES:
        for raw in rule(body, base_url) or []:
            if not raw or raw.lower().startswith(("data:", "blob:")):
                continue
            resolved = urljoin(base_url, htmllib.unescape(raw)) if base_url else htmllib.unescape(raw)
            if resolved not in seen:
                seen.add(resolved)
                urls.append(resolved)
    return urls


# --- attributes ---


def collect_attributes(body: str) -> dict[str, str]:
    """Key/value pairs from <dt>/<dd> lists and "<strong>Key:</strong> value" labels.

    The first occurrence of a key wins. Lossy by nature.
    """
    attrs: dict[str, str] = {}

    def record(key: str, value: str) -> None:
        key = clean_text(key).rstrip(":").strip()
        value = clean_text(value)
        if key and value and len(key) < MAX_ATTRIBUTE_KEY_LENGTH:
            attrs.setdefault(key, value)

    for match in DL_PAIR_RE.finditer(body):
        record(match.group(1), match.group(2))

    for match in LABEL_PAIR_RE.finditer(body):
        key, value = match.group(2).strip(), match.group(3).strip()
        if key.endswith(":"):
            record(key, value)
        elif value.startswith(":"):
            record(key, value[1:])

    return attrs


class GenericExtractor(BaseExtractor):
    """Markup-agnostic extractor used when a profile names no vertical."""

    name = "generic"
    display_name = "Generic"

    def __init__(self, settings: Settings | None = None):
        settings = settings or Settings()
        self.title_rules = [
            Rule("document_title", document_title),
            Rule("first_h1", first_h1),
        ]
        self.description_rules = [
            Rule("meta_description", meta_description),
            long_paragraph_rule(settings.min_paragraph_length),
        ]
        self.price_rules = [
            Rule("kronor_suffix", _amount_from(KRONOR_SUFFIX_RE)),
            Rule("kronor_prefix", _amount_from(KRONOR_PREFIX_RE)),
            Rule("sek_suffix", _amount_from(SEK_SUFFIX_RE)),
            Rule("price_key_value", _amount_from(PRICE_KEY_VALUE_RE)),
        ]

    def extract_fields(self, body: str, base_url: str) -> ExtractResult:
        image_urls = collect_images(body, base_url)
        return ExtractResult(
            title=first_match(self.title_rules, body, base_url),
            description=first_match(self.description_rules, body, base_url),
            price_amount=first_match(self.price_rules, body, base_url),
            price_currency=DEFAULT_CURRENCY,
            primary_image_url=image_urls[0] if image_urls else None,
            image_urls=image_urls,
            attributes=collect_attributes(body),
        )
