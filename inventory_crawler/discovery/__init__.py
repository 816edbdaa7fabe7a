"""Discovery of inventory detail URLs on an arbitrary site."""

from .engine import STRATEGIES, discover

__all__ = ["STRATEGIES", "discover"]
