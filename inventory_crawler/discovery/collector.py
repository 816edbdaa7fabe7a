"""Per-pass item collection: acceptance rule, id derivation and dedupe."""

from __future__ import annotations

from ..models import DiscoveredItem, SiteProfile
from .urls import (
    compile_patterns,
    ensure_unique_id,
    extract_source_item_id,
    is_likely_detail_url,
    matches_any,
    uses_detail_heuristic,
)


class ItemCollector:
    """Accumulates discovered items for exactly one discovery pass.

    Created at the start of a pass and discarded when it returns, so
    concurrent runs never share dedupe state.
    """

    def __init__(
        self,
        profile: SiteProfile,
        detail_tokens: tuple[str, ...],
        require_detail_match: bool = True,
    ):
        self.id_rule = profile.id_from_url
        self.max_items = profile.limits.max_items
        self.detail_tokens = detail_tokens
        self.use_heuristic = uses_detail_heuristic(profile.detail_url_patterns)
        self.patterns = [] if self.use_heuristic else compile_patterns(profile.detail_url_patterns)
        self.require_detail_match = require_detail_match
        self.items: list[DiscoveredItem] = []
        self.seen: dict[str, str] = {}
        self._urls: set[str] = set()
        self.rejected = 0
        self.suffixed = 0

    @property
    def full(self) -> bool:
        return len(self.items) >= self.max_items

    def accepts(self, url: str) -> bool:
        """Whether url looks like a detail page for this profile."""
        if self.use_heuristic:
            if not self.require_detail_match:
                return True
            return is_likely_detail_url(url, self.detail_tokens)
        return matches_any(url, self.patterns)

    def offer(self, url: str) -> bool:
        """Record url as an item if it is accepted and new. Returns True if added."""
        if self.full or url in self._urls:
            return False
        if not self.accepts(url):
            self.rejected += 1
            return False

        item_id, _ = extract_source_item_id(url, self.id_rule)
        unique_id = ensure_unique_id(item_id, url, self.seen)
        if unique_id in self.seen:
            return False
        if unique_id != item_id:
            self.suffixed += 1

        self.seen[unique_id] = url
        self._urls.add(url)
        self.items.append(DiscoveredItem(source_item_id=unique_id, url=url))
        return True
