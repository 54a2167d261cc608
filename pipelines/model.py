"""Canonical data model for listings, transactions, deal scores and market signals."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

GeoType = Literal["city", "district", "community", "sub-community"]
MatchConfidence = Literal["exact", "alias", "fuzzy", "unknown"]
Sentiment = Literal["bullish", "neutral", "bearish"]
DealRating = Literal[
    "exceptional_opportunity",
    "strong_buy",
    "fair_deal",
    "market_price",
    "overpriced",
]
Severity = Literal["urgent", "high", "normal", "low"]


class _Record(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)


class GeoReference(_Record):
    """Canonical geography node administered out-of-band."""

    id: str = Field(..., description="Canonical slug (e.g. 'dubai-marina').")
    geo_type: GeoType = "community"
    canonical_name: str
    parent_id: Optional[str] = None
    aliases: list[str] = Field(default_factory=list)
    dld_area_code: Optional[str] = None
    dld_area_name: Optional[str] = None
    bayut_location_id: Optional[str] = None
    propertyfinder_location_id: Optional[str] = None
    is_active: bool = True


class GeoMatch(_Record):
    """Outcome of resolving a free-text area name."""

    geo_id: str
    canonical_name: str
    geo_type: str
    confidence: MatchConfidence

    @property
    def is_known(self) -> bool:
        return self.confidence != "unknown"


class ListingRecord(_Record):
    """Portal listing snapshot, owned by the ingestion side."""

    portal: str
    listing_id: str
    listing_url: Optional[str] = None
    area_name: str
    building_name: Optional[str] = None
    property_type: str = "apartment"
    bedrooms: Optional[int] = Field(default=None, ge=0)
    size: Optional[float] = Field(default=None, description="Built-up area in square metres.")
    asking_price: float
    price_per_area: Optional[float] = None
    listed_date: Optional[date] = None
    is_active: bool = True
    listing_type: str = "sale"
    geo_id: Optional[str] = Field(
        default=None, description="Canonical geography stamped at ingest time, if known."
    )

    @property
    def effective_price_per_area(self) -> float | None:
        """Price-per-area as listed, otherwise derived from asking price and size."""

        if self.price_per_area and self.price_per_area > 0:
            return self.price_per_area
        if self.size and self.size > 0 and self.asking_price > 0:
            return self.asking_price / self.size
        return None


class TransactionRecord(_Record):
    """Registered transaction used as comparable evidence."""

    transaction_id: str
    area_name: str
    geo_id: Optional[str] = None
    building_name: Optional[str] = None
    property_type: str
    bedroom_label: Optional[str] = None
    size: Optional[float] = None
    price: float
    price_per_area: Optional[float] = None
    transaction_date: date
    transaction_type: str = "sales"

    @property
    def effective_price_per_area(self) -> float | None:
        if self.price_per_area and self.price_per_area > 0:
            return self.price_per_area
        if self.size and self.size > 0:
            return self.price / self.size
        return None


class ValueRange(_Record):
    min: float
    max: float


class ComparableSet(_Record):
    """Summary of the comparable transactions selected for one listing."""

    match_tier: int = Field(..., ge=0, le=4)
    match_description: str
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    comparable_count: int
    median_price: float
    median_price_per_area: float
    time_weighted_avg_price_per_area: float
    avg_size: Optional[float] = None
    recency_score: float = Field(..., ge=0.0, le=1.0)
    price_range: ValueRange
    price_per_area_range: ValueRange
    latest_transaction_date: Optional[date] = None

    @property
    def reference_price_per_area(self) -> float:
        if self.time_weighted_avg_price_per_area > 0:
            return self.time_weighted_avg_price_per_area
        return self.median_price_per_area


class YieldContext(_Record):
    geo_id: str
    segment: str
    median_annual_rent: Optional[float] = None
    area_gross_yield: Optional[float] = Field(
        default=None, description="Area gross yield as a fraction (0.055 = 5.5%)."
    )


class LiquidityContext(_Record):
    geo_id: str
    property_type: str
    active_listings: int = 0
    avg_days_on_market: Optional[float] = None
    median_days_on_market: Optional[float] = None
    stale_listings_count: int = 0
    fresh_listings_count: int = 0
    liquidity_score: float = Field(default=0.5, ge=0.0, le=1.0)


class MarketContext(_Record):
    """Sentiment input for the scorer. The default is a neutral, undated context."""

    sentiment: Sentiment = "neutral"
    key_developments: list[str] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    opportunities: list[str] = Field(default_factory=list)
    news_freshness_days: Optional[int] = None


class ScoreBreakdown(_Record):
    price: float
    yield_: float = Field(..., alias="yield")
    match_quality: float
    sentiment: float
    liquidity: float
    recency: float

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class YieldAnalysis(_Record):
    estimated_annual_rent: Optional[float] = None
    gross_yield_pct: Optional[float] = None
    area_avg_yield_pct: Optional[float] = None
    yield_premium_pct: Optional[float] = None


class DealAnalysis(_Record):
    """Audit trail of the figures behind a deal score."""

    price_discount_pct: float
    price_per_area_discount_pct: float
    savings_amount: float
    listing_price_per_area: float
    reference_price_per_area: float
    median_price_per_area: float
    median_price: float
    price_range: ValueRange
    yield_analysis: YieldAnalysis
    market_context: MarketContext
    liquidity_analysis: Optional[LiquidityContext] = None
    match_tier: int
    match_description: str
    comparable_count: int
    data_recency: Optional[date] = None


class DealScore(_Record):
    composite_score: int = Field(..., ge=0, le=100)
    rating: DealRating
    breakdown: ScoreBreakdown
    confidence: float = Field(..., ge=0.0, le=1.0)
    analysis: DealAnalysis


class SignalEvidence(_Record):
    """Evidence payload persisted alongside a pricing signal."""

    composite_score: int
    rating: DealRating
    score_breakdown: ScoreBreakdown
    confidence: float
    listing_id: str
    listing_url: Optional[str] = None
    portal: str
    property_type: str
    bedrooms: Optional[int] = None
    size: Optional[float] = None
    asking_price: float
    listed_date: Optional[date] = None
    geo_confidence: MatchConfidence
    analysis: DealAnalysis


class MarketSignal(_Record):
    """Persisted pricing signal, unique per ``signal_key``."""

    org_id: str = Field(..., description="Organisation scope of the signal.")
    type: str = Field(default="pricing_opportunity", description="Signal type.")
    source: str = Field(..., description="Portal the listing was observed on (e.g. 'bayut').")
    source_type: str = Field(default="portal", description="'portal' or 'official'.")
    geo_type: str = Field(..., description="Granularity of the resolved geography.")
    geo_id: str = Field(..., description="Canonical geography slug.")
    geo_name: str = Field(..., description="Human-readable geography name.")
    segment: str = Field(..., description="Canonical segment (e.g. '2BR', 'Villa').")
    timeframe: str = "current"
    metric: str = "price_per_area"
    current_value: float = Field(..., description="Listing price-per-area.")
    prev_value: Optional[float] = Field(
        default=None, description="Reference price-per-area from comparables."
    )
    delta_pct: Optional[float] = Field(
        default=None, description="Percent difference to the reference; negative is below market."
    )
    confidence_score: float = Field(..., ge=0.0, le=1.0)
    severity: Severity
    status: str = "new"
    signal_key: str = Field(..., description="Deterministic upsert key.")
    evidence: SignalEvidence
    updated_at: Optional[datetime] = None


def build_signal_key(
    *,
    source: str,
    signal_type: str,
    geo_type: str,
    geo_id: str,
    segment: str,
    listing_id: str,
) -> str:
    return "|".join(
        ["portal", source, signal_type, geo_type, geo_id, segment, "listing", listing_id]
    )


__all__ = [
    "ComparableSet",
    "DealAnalysis",
    "DealRating",
    "DealScore",
    "GeoMatch",
    "GeoReference",
    "LiquidityContext",
    "ListingRecord",
    "MarketContext",
    "MarketSignal",
    "ScoreBreakdown",
    "SignalEvidence",
    "TransactionRecord",
    "ValueRange",
    "YieldAnalysis",
    "YieldContext",
    "build_signal_key",
]
