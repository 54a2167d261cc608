"""Resolve free-text area names to canonical geographies.

Area names arrive from registries and portals with inconsistent spelling
('Dubai Marina', 'DUBAI MARINA', 'Marina', 'Dubai Marina, Dubai'). The resolver
matches them against an alias index built from the ``geo_reference`` table, in
order of decreasing strictness: exact alias, alias containment, then edit
distance. Names that match nothing get a synthesised slug and ``unknown``
confidence, which callers treat as "no market data" rather than an error.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Mapping

from rapidfuzz.distance import Levenshtein

from pipelines.cache import TTLCache
from pipelines.model import GeoMatch, GeoReference

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5 * 60
MIN_CONTAINMENT_LENGTH = 3
FUZZY_MIN_DISTANCE = 3
FUZZY_LENGTH_RATIO = 0.2

UNKNOWN_GEO_ID = "unknown"
UNKNOWN_GEO_TYPE = "community"

_INDEX_KEY = "geo_index"


class GeoReferenceLoadError(RuntimeError):
    """Raised when the reference geography set cannot be loaded."""


def normalize_area_text(text: str) -> str:
    """Lowercase, drop commas and periods, treat hyphens as spaces, collapse whitespace."""

    lowered = text.lower().replace(",", "").replace(".", "").replace("-", " ")
    return re.sub(r"\s+", " ", lowered).strip()


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", text.lower().strip())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug or UNKNOWN_GEO_ID


@dataclass(frozen=True)
class GeoIndex:
    """Immutable snapshot of the reference set and its alias index."""

    references: Mapping[str, GeoReference]
    aliases: Mapping[str, str]
    # (alias, geo_id) pairs, longest alias first, ties alphabetical.
    ordered_aliases: tuple[tuple[str, str], ...]

    @classmethod
    def build(cls, references: Iterable[GeoReference]) -> "GeoIndex":
        by_id: dict[str, GeoReference] = {}
        aliases: dict[str, str] = {}
        for ref in references:
            if not ref.is_active:
                continue
            by_id[ref.id] = ref
            names = [ref.canonical_name, *ref.aliases]
            if ref.dld_area_name:
                names.append(ref.dld_area_name)
            for name in names:
                alias = normalize_area_text(name)
                if not alias:
                    continue
                owner = aliases.setdefault(alias, ref.id)
                if owner != ref.id:
                    logger.warning(
                        "Alias '%s' of %s already registered to %s; keeping %s.",
                        alias,
                        ref.id,
                        owner,
                        owner,
                    )
        ordered = tuple(sorted(aliases.items(), key=lambda item: (-len(item[0]), item[0])))
        return cls(references=by_id, aliases=aliases, ordered_aliases=ordered)


class GeoResolver:
    """Alias-index resolver over a TTL-cached snapshot of geo references.

    ``loader`` returns the active reference rows; it is called on first use,
    whenever the snapshot is older than ``ttl_seconds`` and on ``refresh()``.
    """

    def __init__(
        self,
        loader: Callable[[], Iterable[GeoReference]],
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self._cache: TTLCache[GeoIndex] = TTLCache(ttl_seconds, clock=clock)

    def _load_index(self) -> GeoIndex:
        try:
            references = list(self._loader())
        except Exception as exc:
            logger.error("Failed to load geo references: %s", exc)
            raise GeoReferenceLoadError("Unable to load geo reference data") from exc
        index = GeoIndex.build(references)
        logger.info(
            "Loaded %s geo references with %s aliases.",
            len(index.references),
            len(index.aliases),
        )
        return index

    @property
    def index(self) -> GeoIndex:
        return self._cache.get_or_load(_INDEX_KEY, self._load_index)

    def refresh(self) -> GeoIndex:
        """Rebuild the snapshot now and swap it in."""

        return self._cache.set(_INDEX_KEY, self._load_index())

    def invalidate(self) -> None:
        """Drop the snapshot so the next lookup reloads it (after admin writes)."""

        self._cache.clear()

    def get(self, geo_id: str) -> GeoReference | None:
        return self.index.references.get(geo_id)

    def references(self) -> list[GeoReference]:
        return list(self.index.references.values())

    def resolve(self, area_name: str | None) -> GeoMatch:
        index = self.index

        if not area_name or not area_name.strip():
            return GeoMatch(
                geo_id=UNKNOWN_GEO_ID,
                canonical_name="Unknown",
                geo_type=UNKNOWN_GEO_TYPE,
                confidence="unknown",
            )

        normalized = normalize_area_text(area_name)

        geo_id = index.aliases.get(normalized)
        if geo_id is not None:
            return self._match(index, geo_id, "exact")

        for alias, geo_id in index.ordered_aliases:
            if min(len(alias), len(normalized)) < MIN_CONTAINMENT_LENGTH:
                continue
            if alias in normalized or normalized in alias:
                return self._match(index, geo_id, "alias")

        threshold = max(FUZZY_MIN_DISTANCE, int(len(normalized) * FUZZY_LENGTH_RATIO))
        best: tuple[int, str] | None = None
        for alias, geo_id in index.ordered_aliases:
            distance = Levenshtein.distance(normalized, alias, score_cutoff=threshold)
            if distance <= threshold and (best is None or distance < best[0]):
                best = (distance, geo_id)
        if best is not None:
            return self._match(index, best[1], "fuzzy")

        return GeoMatch(
            geo_id=slugify(area_name),
            canonical_name=area_name.strip(),
            geo_type=UNKNOWN_GEO_TYPE,
            confidence="unknown",
        )

    def resolve_many(self, area_names: Iterable[str]) -> dict[str, GeoMatch]:
        return {name: self.resolve(name) for name in area_names}

    @staticmethod
    def _match(index: GeoIndex, geo_id: str, confidence: str) -> GeoMatch:
        ref = index.references[geo_id]
        return GeoMatch(
            geo_id=ref.id,
            canonical_name=ref.canonical_name,
            geo_type=ref.geo_type,
            confidence=confidence,
        )


__all__ = [
    "GeoIndex",
    "GeoReferenceLoadError",
    "GeoResolver",
    "UNKNOWN_GEO_ID",
    "normalize_area_text",
    "slugify",
]
