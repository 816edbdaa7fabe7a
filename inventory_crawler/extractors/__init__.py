"""Extractor registry.

Extractors are auto-discovered from modules in this package. Any
`BaseExtractor` subclass with a non-empty `name` attribute is registered under
that name; a site profile selects one through its ``vertical``.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil

from ..config import Settings
from ..models import ExtractResult, FetchResult
from .base import BaseExtractor

__all__ = [
    "BaseExtractor",
    "extract",
    "get_extractor",
    "list_extractors",
]

logger = logging.getLogger(__name__)

DEFAULT_VERTICAL = "generic"


def _discover_extractors() -> dict[str, type[BaseExtractor]]:
    discovered: dict[str, type[BaseExtractor]] = {}

    for module_info in pkgutil.iter_modules(__path__):  # type: ignore[name-defined]
        if module_info.ispkg or module_info.name.startswith("_") or module_info.name == "base":
            continue

        full_name = f"{__name__}.{module_info.name}"
        try:
            module = importlib.import_module(full_name)
        except Exception as exc:
            logger.warning("Failed to import extractor module %s: %r", full_name, exc)
            continue

        for _, obj in inspect.getmembers(module, inspect.isclass):
            if obj is BaseExtractor or not issubclass(obj, BaseExtractor) or inspect.isabstract(obj):
                continue
            # Subclasses are visible from the module that imports their parent.
            if obj.__module__ != module.__name__:
                continue
            extractor_name = getattr(obj, "name", None)
            if not isinstance(extractor_name, str) or not extractor_name.strip():
                continue
            if extractor_name in discovered and discovered[extractor_name] is not obj:
                logger.warning("Duplicate extractor name '%s' (keeping first)", extractor_name)
                continue
            discovered[extractor_name] = obj

    return dict(sorted(discovered.items(), key=lambda kv: kv[0]))


EXTRACTORS: dict[str, type[BaseExtractor]] = _discover_extractors()


def get_extractor(name: str, settings: Settings | None = None) -> BaseExtractor:
    """Get an extractor instance by vertical name."""
    if name not in EXTRACTORS:
        available = ", ".join(EXTRACTORS.keys())
        raise ValueError(f"Unknown extractor '{name}'. Available: {available}")
    return EXTRACTORS[name](settings)


def list_extractors() -> list[str]:
    """List all available extractor names."""
    return list(EXTRACTORS.keys())


def extract(
    fetch_result: FetchResult,
    vertical: str | None = DEFAULT_VERTICAL,
    settings: Settings | None = None,
) -> ExtractResult:
    """Extract a detail page with the extractor for vertical.

    Unknown verticals fall back to the generic extractor.
    """
    name = vertical or DEFAULT_VERTICAL
    if name not in EXTRACTORS:
        logger.debug("No extractor for vertical %r, using %s", name, DEFAULT_VERTICAL)
        name = DEFAULT_VERTICAL
    return get_extractor(name, settings).extract(fetch_result)
