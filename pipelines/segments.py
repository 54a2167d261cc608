"""Property type and bedroom normalisation.

Listings and transactions describe units differently ('2 B/R', '2 bed',
'Unit', 'Flat'). Segments group them for market metrics and signals; type
families group them for comparable matching.
"""

from __future__ import annotations

import re
from typing import Mapping

RESIDENTIAL = "residential"
COMMERCIAL = "commercial"
LAND = "land"
UNKNOWN = "unknown"

UNKNOWN_SEGMENT = "Unknown"

SEGMENT_CATEGORIES: Mapping[str, str] = {
    "Studio": RESIDENTIAL,
    "1BR": RESIDENTIAL,
    "2BR": RESIDENTIAL,
    "3BR": RESIDENTIAL,
    "4BR": RESIDENTIAL,
    "5BR+": RESIDENTIAL,
    "Villa": RESIDENTIAL,
    "Townhouse": RESIDENTIAL,
    "Penthouse": RESIDENTIAL,
    "Apartment": RESIDENTIAL,
    "Office": COMMERCIAL,
    "Retail": COMMERCIAL,
    "Warehouse": COMMERCIAL,
    "Hotel": COMMERCIAL,
    "Commercial": COMMERCIAL,
    "Plot": LAND,
    "Land": LAND,
    UNKNOWN_SEGMENT: UNKNOWN,
}

PROPERTY_TYPE_ALIASES: Mapping[str, str] = {
    "studio": "Studio",
    "bachelor": "Studio",
    "apartment": "Apartment",
    "apt": "Apartment",
    "flat": "Apartment",
    "unit": "Apartment",
    "villa": "Villa",
    "villas": "Villa",
    "detached villa": "Villa",
    "townhouse": "Townhouse",
    "town house": "Townhouse",
    "townhome": "Townhouse",
    "penthouse": "Penthouse",
    "pent house": "Penthouse",
    "office": "Office",
    "office space": "Office",
    "retail": "Retail",
    "shop": "Retail",
    "showroom": "Retail",
    "warehouse": "Warehouse",
    "industrial": "Warehouse",
    "hotel": "Hotel",
    "hotel apartment": "Hotel",
    "serviced apartment": "Hotel",
    "commercial": "Commercial",
    "plot": "Plot",
    "residential plot": "Plot",
    "land": "Land",
}

# Transaction registries record apartments as 'Unit' and both villas and
# townhouses as 'Villa'.
_TYPE_FAMILIES: Mapping[str, str] = {
    "apartment": "unit",
    "studio": "unit",
    "penthouse": "unit",
    "duplex": "unit",
    "flat": "unit",
    "unit": "unit",
    "villa": "villa",
    "townhouse": "villa",
}

_SPECIAL_RESIDENTIAL = {"Villa", "Townhouse", "Penthouse"}

_BEDROOM_PATTERN = re.compile(r"(\d+)\s*(?:\+\s*)?(?:b/?r|bed|bedroom|bhk)", re.IGNORECASE)
_BARE_NUMBER = re.compile(r"^\s*(\d+)\s*$")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[,.\-]", " ", text.lower())).strip()


def bedroom_segment(bedrooms: int | None) -> str | None:
    if bedrooms is None or bedrooms < 0:
        return None
    if bedrooms == 0:
        return "Studio"
    if bedrooms >= 5:
        return "5BR+"
    return f"{bedrooms}BR"


def parse_bedrooms(raw: str | None) -> int | None:
    """Parse registry room labels such as '2 B/R', '3 bed', 'Studio' or '4'."""

    if not raw:
        return None
    normalized = raw.strip().lower()
    if "studio" in normalized:
        return 0
    match = _BEDROOM_PATTERN.search(normalized) or _BARE_NUMBER.match(normalized)
    if match:
        return int(match.group(1))
    return None


def normalize_bedroom_label(raw: str | None) -> str | None:
    return bedroom_segment(parse_bedrooms(raw))


def property_type_segment(property_type: str | None) -> str:
    if not property_type or not property_type.strip():
        return UNKNOWN_SEGMENT
    normalized = _normalize(property_type)
    direct = PROPERTY_TYPE_ALIASES.get(normalized)
    if direct:
        return direct
    # Longest alias first so 'hotel apartment' beats 'apartment'.
    for alias in sorted(PROPERTY_TYPE_ALIASES, key=len, reverse=True):
        if re.search(rf"\b{re.escape(alias)}\b", normalized):
            return PROPERTY_TYPE_ALIASES[alias]
    return UNKNOWN_SEGMENT


def map_to_segment(property_type: str | None = None, bedrooms: int | None = None) -> str:
    """Pick the segment for a unit, preferring an explicit bedroom count.

    Villas, townhouses, penthouses and non-residential types keep their type
    segment even when a bedroom count is known.
    """

    type_segment = property_type_segment(property_type)
    by_bedrooms = bedroom_segment(bedrooms)
    if by_bedrooms is None:
        return type_segment
    if type_segment in _SPECIAL_RESIDENTIAL:
        return type_segment
    if SEGMENT_CATEGORIES.get(type_segment) in {COMMERCIAL, LAND}:
        return type_segment
    return by_bedrooms


def segment_category(segment: str) -> str:
    return SEGMENT_CATEGORIES.get(segment, UNKNOWN)


def property_type_family(property_type: str | None) -> str | None:
    """Coarse type class shared by listing and transaction vocabularies."""

    if not property_type or not property_type.strip():
        return None
    normalized = _normalize(property_type)
    family = _TYPE_FAMILIES.get(normalized)
    if family:
        return family
    for word in normalized.split():
        if word in _TYPE_FAMILIES:
            return _TYPE_FAMILIES[word]
    return normalized


__all__ = [
    "SEGMENT_CATEGORIES",
    "UNKNOWN_SEGMENT",
    "bedroom_segment",
    "map_to_segment",
    "normalize_bedroom_label",
    "parse_bedrooms",
    "property_type_family",
    "property_type_segment",
    "segment_category",
]
