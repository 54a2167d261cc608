"""Area-level yield, liquidity and sentiment inputs for deal scoring."""

from __future__ import annotations

import logging
import time
from datetime import date, datetime
from typing import Callable

import duckdb

from pipelines.cache import TTLCache
from pipelines.model import LiquidityContext, MarketContext, YieldContext
from pipelines.segments import property_type_family
from storage.reference import (
    fetch_latest_metrics,
    fetch_listing_liquidity,
    fetch_market_context_row,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 5 * 60
AREA_WIDE_SEGMENT = "All"
RENT_METRIC = "median_rent_annual"
YIELD_METRIC = "gross_yield"
STALE_AFTER_DAYS = 90
FRESH_WITHIN_DAYS = 30
DOM_HORIZON_DAYS = 180

# Signature of a pluggable sentiment source: (geo_id, segment) -> MarketContext.
SentimentSource = Callable[[str, str], MarketContext]


def neutral_sentiment(_geo_id: str, _segment: str) -> MarketContext:
    return MarketContext()


def liquidity_score(avg_days_on_market: float | None, fresh: int, active: int) -> float:
    """0.6 weight on days-on-market speed, 0.4 on the share of fresh listings."""

    if not active:
        return 0.5
    dom = DOM_HORIZON_DAYS if avg_days_on_market is None else avg_days_on_market
    speed = 1 - min(max(dom, 0.0), DOM_HORIZON_DAYS) / DOM_HORIZON_DAYS
    return round(min(1.0, max(0.0, 0.6 * speed + 0.4 * fresh / active)), 4)


class MarketContextProvider:
    """Cached lookups over the metric snapshot, listing and market-context tables."""

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        *,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        as_of: date | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._conn = conn
        self._as_of = as_of
        self._cache: TTLCache[object] = TTLCache(ttl_seconds, clock=clock)

    @property
    def as_of(self) -> date:
        return self._as_of or date.today()

    def clear(self) -> None:
        self._cache.clear()

    def yield_context(self, geo_id: str, segment: str) -> YieldContext | None:
        return self._cache.get_or_load(
            ("yield", geo_id, segment), lambda: self._load_yield(geo_id, segment)
        )

    def _load_yield(self, geo_id: str, segment: str) -> YieldContext | None:
        metrics = (RENT_METRIC, YIELD_METRIC)
        for candidate in dict.fromkeys((segment, AREA_WIDE_SEGMENT)):
            values = fetch_latest_metrics(self._conn, geo_id, candidate, metrics)
            if values:
                return YieldContext(
                    geo_id=geo_id,
                    segment=candidate,
                    median_annual_rent=values.get(RENT_METRIC),
                    area_gross_yield=values.get(YIELD_METRIC),
                )
        return None

    def liquidity_context(self, geo_id: str, property_type: str | None) -> LiquidityContext | None:
        family = property_type_family(property_type)
        return self._cache.get_or_load(
            ("liquidity", geo_id, family), lambda: self._load_liquidity(geo_id, family)
        )

    def _load_liquidity(self, geo_id: str, family: str | None) -> LiquidityContext | None:
        row = fetch_listing_liquidity(
            self._conn,
            geo_id,
            family,
            as_of=self.as_of,
            stale_after_days=STALE_AFTER_DAYS,
            fresh_within_days=FRESH_WITHIN_DAYS,
        )
        if row is None:
            return None
        active = int(row["active_listings"])
        fresh = int(row["fresh_listings_count"])
        return LiquidityContext(
            geo_id=geo_id,
            property_type=family or "all",
            active_listings=active,
            avg_days_on_market=row["avg_days_on_market"],
            median_days_on_market=row["median_days_on_market"],
            stale_listings_count=int(row["stale_listings_count"]),
            fresh_listings_count=fresh,
            liquidity_score=liquidity_score(row["avg_days_on_market"], fresh, active),
        )

    def market_context(self, geo_id: str, segment: str) -> MarketContext:
        return self._cache.get_or_load(
            ("sentiment", geo_id, segment), lambda: self._load_market_context(geo_id, segment)
        )

    def _load_market_context(self, geo_id: str, segment: str) -> MarketContext:
        row = fetch_market_context_row(self._conn, geo_id, segment)
        if row is None:
            return MarketContext()
        updated_at: datetime | None = row["updated_at"]
        freshness = (self.as_of - updated_at.date()).days if updated_at else None
        return MarketContext(
            sentiment=row["sentiment"],
            key_developments=row["key_developments"],
            risks=row["risks"],
            opportunities=row["opportunities"],
            news_freshness_days=max(freshness, 0) if freshness is not None else None,
        )


__all__ = [
    "MarketContextProvider",
    "SentimentSource",
    "liquidity_score",
    "neutral_sentiment",
]
