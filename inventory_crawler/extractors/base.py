"""Base extractor class and the ordered rule list used for every field."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from ..models import ExtractResult, FetchResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Rule:
    """A named extraction rule: (body, base_url) -> value or None."""

    name: str
    fn: Callable[[str, str], Any]

    def __call__(self, body: str, base_url: str) -> Any:
        try:
            return self.fn(body, base_url)
        except Exception as exc:  # a broken heuristic must never fail extraction
            logger.debug("Extraction rule %s raised: %r", self.name, exc)
            return None


def first_match(rules: list[Rule], body: str, base_url: str) -> Any:
    """Evaluate rules in order and return the first non-empty value."""
    for rule in rules:
        value = rule(body, base_url)
        if value not in (None, "", [], {}):
            return value
    return None


def matching_rule(rules: list[Rule], body: str, base_url: str) -> str | None:
    """Name of the rule first_match would use (for diagnostics and tests)."""
    for rule in rules:
        if rule(body, base_url) not in (None, "", [], {}):
            return rule.name
    return None


class BaseExtractor(ABC):
    """Abstract base class for detail-page extractors."""

    name: str
    display_name: str

    @abstractmethod
    def extract_fields(self, body: str, base_url: str) -> ExtractResult:
        """Extract fields from a page body. Subclasses must implement this."""
        ...

    def extract(self, fetch_result: FetchResult) -> ExtractResult:
        """Extract a detail page. Never raises; missing fields stay empty."""
        body = fetch_result.body or ""
        base_url = fetch_result.final_url or (fetch_result.trace.url if fetch_result.trace else "") or ""
        if not body:
            return ExtractResult()
        try:
            return self.extract_fields(body, base_url)
        except Exception as exc:
            logger.warning("[%s] extraction failed for %s: %r", self.name, base_url, exc)
            return ExtractResult()
