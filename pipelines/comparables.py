"""Tiered comparable-transaction selection.

Tiers go from most to least specific and the first tier that yields at least
``min_comparables`` transactions wins:

1. same building (plus bedroom label and size band when known)
2. same property-type family, bedroom label and size band
3. same property-type family
4. same area

Every tier is restricted to sales in the listing's resolved geography inside
the lookback window. Statistics are aggregated in DuckDB.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

import duckdb

from pipelines.geo import GeoResolver
from pipelines.model import ComparableSet, GeoMatch, ValueRange
from pipelines.segments import normalize_bedroom_label, property_type_family
from storage.reference import summarize_transactions

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 730
DEFAULT_HALF_LIFE_DAYS = 180
DEFAULT_MIN_COMPARABLES = 3
SIZE_TOLERANCE = 0.15
FRESH_WITHIN_DAYS = 90


@dataclass(frozen=True)
class TierPolicy:
    tier: int
    description: str
    base_confidence: float
    fresh_recency: float
    stale_recency: float


TIER_POLICIES: dict[int, TierPolicy] = {
    1: TierPolicy(1, "Same building", 0.95, 0.90, 0.60),
    2: TierPolicy(2, "Same area, type, bedrooms and size", 0.80, 0.85, 0.55),
    3: TierPolicy(3, "Same area and property type", 0.60, 0.75, 0.45),
    4: TierPolicy(4, "Same area", 0.40, 0.65, 0.35),
}

# (minimum count, bonus); first match wins. Bonuses stay below the gap
# between tier base confidences.
COUNT_BONUSES: tuple[tuple[int, float], ...] = ((50, 0.04), (20, 0.02), (10, 0.01))


def count_bonus(count: int, bonuses: tuple[tuple[int, float], ...] = COUNT_BONUSES) -> float:
    for threshold, bonus in bonuses:
        if count >= threshold:
            return bonus
    return 0.0


def _size_band(size: float | None) -> tuple[float, float] | None:
    if not size or size <= 0:
        return None
    return size * (1 - SIZE_TOLERANCE), size * (1 + SIZE_TOLERANCE)


def build_tier_filters(
    tier: int,
    *,
    property_type: str | None,
    bedroom_label: str | None,
    size: float | None,
    building_name: str | None,
) -> tuple[str, list[Any]] | None:
    """Return the tier-specific ``(where, params)`` or ``None`` when the tier is not applicable."""

    filters: list[str] = []
    params: list[Any] = []
    family = property_type_family(property_type)
    band = _size_band(size)

    if tier == 1:
        if not building_name or not building_name.strip():
            return None
        filters.append("lower(building_name) = lower(?)")
        params.append(building_name.strip())
        if bedroom_label:
            filters.append("bedroom_label = ?")
            params.append(bedroom_label)
        if band:
            filters.append("size BETWEEN ? AND ?")
            params.extend(band)
    elif tier == 2:
        if not family or (not bedroom_label and not band):
            return None
        filters.append("type_family = ?")
        params.append(family)
        if bedroom_label:
            filters.append("bedroom_label = ?")
            params.append(bedroom_label)
        if band:
            filters.append("size BETWEEN ? AND ?")
            params.extend(band)
    elif tier == 3:
        if not family:
            return None
        filters.append("type_family = ?")
        params.append(family)
    elif tier == 4:
        filters.append("TRUE")
    else:
        raise ValueError(f"Unknown comparable tier {tier}")

    return " AND ".join(filters), params


class ComparableSelector:
    """Select the most specific comparable set available for a listing."""

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        *,
        resolver: GeoResolver | None = None,
        as_of: date | None = None,
        lookback_days: int = DEFAULT_LOOKBACK_DAYS,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    ) -> None:
        self._conn = conn
        self._resolver = resolver
        self._as_of = as_of
        self.lookback_days = lookback_days
        self.half_life_days = half_life_days

    @property
    def as_of(self) -> date:
        return self._as_of or date.today()

    def _geo_id(self, area: str | GeoMatch) -> str | None:
        if isinstance(area, GeoMatch):
            return area.geo_id if area.is_known else None
        if self._resolver is None:
            # Without a resolver the caller passes a canonical geo id.
            return area or None
        match = self._resolver.resolve(area)
        return match.geo_id if match.is_known else None

    def select(
        self,
        area: str | GeoMatch,
        property_type: str | None = None,
        bedroom_label: str | None = None,
        size: float | None = None,
        building_name: str | None = None,
        *,
        min_comparables: int = DEFAULT_MIN_COMPARABLES,
    ) -> ComparableSet | None:
        geo_id = self._geo_id(area)
        if geo_id is None:
            return None

        as_of = self.as_of
        label = normalize_bedroom_label(bedroom_label) if bedroom_label else None
        base = (
            "geo_id = ? AND transaction_type = 'sales' AND price > 0 AND price_per_area > 0"
            " AND transaction_date BETWEEN ? AND ?"
        )
        base_params: list[Any] = [geo_id, as_of - timedelta(days=self.lookback_days), as_of]

        for tier, policy in TIER_POLICIES.items():
            tier_filters = build_tier_filters(
                tier,
                property_type=property_type,
                bedroom_label=label,
                size=size,
                building_name=building_name,
            )
            if tier_filters is None:
                continue
            where, params = tier_filters
            stats = summarize_transactions(
                self._conn,
                where=f"{base} AND {where}",
                params=[*base_params, *params],
                as_of=as_of,
                half_life_days=self.half_life_days,
            )
            count = stats["comparable_count"] or 0
            logger.debug("Tier %s for %s matched %s transactions.", tier, geo_id, count)
            if count >= max(min_comparables, 1):
                return self._build_set(policy, stats, as_of)

        return None

    @staticmethod
    def _build_set(policy: TierPolicy, stats: dict[str, Any], as_of: date) -> ComparableSet:
        count = int(stats["comparable_count"])
        latest: date | None = stats["latest_transaction_date"]
        fresh = latest is not None and (as_of - latest).days <= FRESH_WITHIN_DAYS
        median_ppa = float(stats["median_price_per_area"])
        weighted = stats["time_weighted_avg_price_per_area"]
        return ComparableSet(
            match_tier=policy.tier,
            match_description=policy.description,
            confidence_score=round(min(1.0, policy.base_confidence + count_bonus(count)), 2),
            comparable_count=count,
            median_price=float(stats["median_price"]),
            median_price_per_area=median_ppa,
            time_weighted_avg_price_per_area=float(weighted) if weighted is not None else median_ppa,
            avg_size=float(stats["avg_size"]) if stats["avg_size"] is not None else None,
            recency_score=policy.fresh_recency if fresh else policy.stale_recency,
            price_range=ValueRange(min=float(stats["price_min"]), max=float(stats["price_max"])),
            price_per_area_range=ValueRange(
                min=float(stats["price_per_area_min"]),
                max=float(stats["price_per_area_max"]),
            ),
            latest_transaction_date=latest,
        )


__all__ = [
    "COUNT_BONUSES",
    "ComparableSelector",
    "TIER_POLICIES",
    "TierPolicy",
    "build_tier_filters",
    "count_bonus",
]
