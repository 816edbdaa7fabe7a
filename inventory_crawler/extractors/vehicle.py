"""Vehicle extractor: generic fields plus Swedish technical data labels and equipment."""

from __future__ import annotations

import re

from ..models import ExtractResult
from ..utils import clean_text
from .generic import GenericExtractor

# Output key -> label patterns, tried in order.
SWEDISH_LABELS: dict[str, list[str]] = {
    "regNr": [r"reg\.?\s*nr\.?", r"registreringsnummer"],
    "miltal": [r"miltal", r"mätarställning", r"matarstallning"],
    "bransle": [r"bränsle", r"bransle"],
    "vaxellada": [r"växellåda", r"vaxellada", r"gearbox"],
    "arsmodell": [r"årsmodell", r"arsmodell", r"modellår"],
    "fordonstyp": [r"fordonstyp"],
    "farg": [r"färg", r"farg"],
    "marke": [r"märke", r"marke"],
    "modell": [r"modell"],
}

# Value may sit after the label in the same text node or behind closing/opening tags.
_VALUE_AFTER_LABEL = r"\s*:?\s*(?:</?[a-z][^>]*>\s*)*:?\s*([^<\n]{1,120})"

EQUIPMENT_LIST_RE = re.compile(r"utrustning.*?<ul[^>]*>(.*?)</ul>", re.IGNORECASE | re.DOTALL)
LIST_ITEM_RE = re.compile(r"<li[^>]*>(.*?)</li>", re.IGNORECASE | re.DOTALL)

MAX_FEATURES = 30


def _compile_labels() -> dict[str, list[re.Pattern]]:
    compiled = {}
    for key, patterns in SWEDISH_LABELS.items():
        compiled[key] = [
            re.compile(rf"(?<!\w){pattern}(?!\w){_VALUE_AFTER_LABEL}", re.IGNORECASE)
            for pattern in patterns
        ]
    return compiled


LABEL_PATTERNS = _compile_labels()


def label_value(body: str, patterns: list[re.Pattern]) -> str | None:
    for pattern in patterns:
        for match in pattern.finditer(body):
            value = clean_text(match.group(1)).strip(" :")
            if value:
                return value
    return None


def equipment_list(body: str) -> list[str]:
    """Items of the first <ul> following an "Utrustning" heading, capped at 30."""
    match = EQUIPMENT_LIST_RE.search(body)
    if not match:
        return []
    features: list[str] = []
    for item in LIST_ITEM_RE.finditer(match.group(1)):
        text = clean_text(item.group(1))
        if text and text not in features:
            features.append(text)
        if len(features) >= MAX_FEATURES:
            break
    return features


class VehicleExtractor(GenericExtractor):
    """Extractor for car dealer listings."""

    name = "vehicle"
    display_name = "Vehicle"

    def extract_fields(self, body: str, base_url: str) -> ExtractResult:
        result = super().extract_fields(body, base_url)
        attrs = dict(result.attributes)

        for key, patterns in LABEL_PATTERNS.items():
            value = label_value(body, patterns)
            if value:
                attrs[key] = value

        features = equipment_list(body)
        if features:
            attrs["features"] = features

        result.attributes = attrs
        return result
