"""Composite deal scoring.

Six sub-scores in ``[0, 1]`` are combined into a 0-100 composite:

=============  ======
price          30%
yield          20%
match quality  15%
sentiment      15%
liquidity      10%
recency        10%
=============  ======

The price and yield band tables must stay stable so scores remain comparable
across runs.
"""

from __future__ import annotations

import math
from datetime import date
from typing import Mapping

from pipelines.model import (
    ComparableSet,
    DealAnalysis,
    DealRating,
    DealScore,
    LiquidityContext,
    ListingRecord,
    MarketContext,
    ScoreBreakdown,
    Severity,
    ValueRange,
    YieldAnalysis,
    YieldContext,
)

WEIGHTS: Mapping[str, float] = {
    "price": 0.30,
    "yield": 0.20,
    "match_quality": 0.15,
    "sentiment": 0.15,
    "liquidity": 0.10,
    "recency": 0.10,
}

DEFAULT_AREA_YIELD_PCT = 5.5

TIER_MATCH_SCORES: Mapping[int, float] = {1: 0.95, 2: 0.80, 3: 0.60, 4: 0.40, 0: 0.10}
MATCH_COUNT_BONUSES: tuple[tuple[int, float], ...] = ((50, 0.05), (20, 0.03), (10, 0.01))

SENTIMENT_BASELINES: Mapping[str, float] = {"bullish": 0.8, "neutral": 0.5, "bearish": 0.3}

RATING_THRESHOLDS: tuple[tuple[int, DealRating], ...] = (
    (85, "exceptional_opportunity"),
    (70, "strong_buy"),
    (55, "fair_deal"),
    (40, "market_price"),
)

SEVERITY_THRESHOLDS: tuple[tuple[int, Severity], ...] = (
    (85, "urgent"),
    (70, "high"),
    (55, "normal"),
)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    # Drop float noise (0.8145 * 100 == 81.44999...) before rounding.
    return math.floor(round(value * factor, 6) + 0.5) / factor


def price_score(discount_pct: float | None) -> float:
    """Map a price-per-area discount (positive = below market) onto ``[0, 1]``."""

    if discount_pct is None:
        return 0.5
    d = discount_pct
    if d >= 30:
        return 1.0
    if d >= 20:
        return 0.85 + (d - 20) * 0.015
    if d >= 10:
        return 0.70 + (d - 10) * 0.015
    if d >= 0:
        return 0.50 + d * 0.02
    if d >= -10:
        return 0.25 + (d + 10) * 0.025
    if d >= -20:
        return 0.10 + (d + 20) * 0.015
    return 0.0


def yield_score(premium_pct: float | None) -> float:
    """Map a gross-yield premium in percentage points onto ``[0.1, 1]``."""

    if premium_pct is None:
        return 0.5
    p = premium_pct
    if p >= 2:
        return 1.0
    if p >= 1:
        return 0.7 + p * 0.15
    if p >= -1:
        return 0.5 + p * 0.2
    if p >= -2:
        return 0.1 + (p + 2) * 0.1
    return 0.1


def match_quality_score(tier: int, comparable_count: int) -> float:
    base = TIER_MATCH_SCORES.get(tier, 0.5)
    bonus = next(
        (value for threshold, value in MATCH_COUNT_BONUSES if comparable_count >= threshold),
        0.0,
    )
    return min(1.0, base + bonus)


def sentiment_score(context: MarketContext) -> float:
    score = SENTIMENT_BASELINES.get(context.sentiment, 0.5)
    score += min(0.1, len(context.key_developments) * 0.05)
    score += min(0.1, len(context.opportunities) * 0.05)
    score -= min(0.15, len(context.risks) * 0.05)
    freshness = context.news_freshness_days
    if freshness is not None:
        if freshness > 30:
            score -= 0.1
        elif freshness > 7:
            score -= 0.05
    return _clamp(score)


def liquidity_score(
    liquidity: LiquidityContext | None, listing: ListingRecord, as_of: date
) -> float:
    if liquidity is None:
        return 0.5
    score = liquidity.liquidity_score
    avg_dom = liquidity.avg_days_on_market
    if listing.listed_date and avg_dom:
        listing_age = (as_of - listing.listed_date).days
        if listing_age < avg_dom * 0.5:
            score = min(1.0, score + 0.1)
        elif listing_age > avg_dom * 1.5:
            score = max(0.0, score - 0.1)
    if liquidity.stale_listings_count > liquidity.fresh_listings_count * 2:
        score = max(0.0, score - 0.1)
    return _clamp(score)


def determine_rating(composite_score: int) -> DealRating:
    for threshold, rating in RATING_THRESHOLDS:
        if composite_score >= threshold:
            return rating
    return "overpriced"


def determine_severity(composite_score: int) -> Severity:
    for threshold, severity in SEVERITY_THRESHOLDS:
        if composite_score >= threshold:
            return severity
    return "low"


def _discount_pct(reference: float | None, value: float) -> float | None:
    if not reference or reference <= 0:
        return None
    return (reference - value) / reference * 100


def _yield_analysis(listing: ListingRecord, context: YieldContext | None) -> YieldAnalysis:
    if context is None:
        return YieldAnalysis()
    area_pct = (
        round(context.area_gross_yield * 100, 2)
        if context.area_gross_yield is not None
        else None
    )
    rent = context.median_annual_rent
    if not rent or rent <= 0 or listing.asking_price <= 0:
        return YieldAnalysis(area_avg_yield_pct=area_pct)
    gross_pct = rent / listing.asking_price * 100
    premium = gross_pct - (area_pct if area_pct is not None else DEFAULT_AREA_YIELD_PCT)
    return YieldAnalysis(
        estimated_annual_rent=rent,
        gross_yield_pct=round(gross_pct, 2),
        area_avg_yield_pct=area_pct,
        yield_premium_pct=round(premium, 2),
    )


def score_deal(
    listing: ListingRecord,
    comparables: ComparableSet | None,
    yield_context: YieldContext | None = None,
    liquidity: LiquidityContext | None = None,
    market_context: MarketContext | None = None,
    *,
    as_of: date | None = None,
) -> DealScore:
    """Score one listing against its comparable set and market context.

    ``comparables=None`` scores the listing as tier 0 (no usable comparables)
    with a neutral price and recency score. Missing yield, liquidity or
    sentiment inputs fall back to neutral values.
    """

    listing_ppa = listing.effective_price_per_area
    if listing_ppa is None:
        raise ValueError(f"Listing {listing.listing_id} has no usable price per area")

    as_of = as_of or date.today()
    market_context = market_context or MarketContext()

    if comparables is not None:
        reference_ppa = comparables.reference_price_per_area
        ppa_discount = _discount_pct(reference_ppa, listing_ppa)
        tier = comparables.match_tier
        count = comparables.comparable_count
        recency = comparables.recency_score
    else:
        reference_ppa = 0.0
        ppa_discount = None
        tier = 0
        count = 0
        recency = 0.5

    yield_analysis = _yield_analysis(listing, yield_context)

    sub_scores = {
        "price": price_score(ppa_discount),
        "yield": yield_score(yield_analysis.yield_premium_pct),
        "match_quality": match_quality_score(tier, count),
        "sentiment": sentiment_score(market_context),
        "liquidity": liquidity_score(liquidity, listing, as_of),
        "recency": _clamp(recency),
    }
    weighted = sum(sub_scores[name] * weight for name, weight in WEIGHTS.items())
    composite = int(max(0, min(100, _round_half_up(weighted * 100))))

    comparable_confidence = comparables.confidence_score if comparables is not None else 0.0
    confidence = (
        comparable_confidence * 0.6
        + (0.2 if yield_analysis.gross_yield_pct is not None else 0.0)
        + (0.1 if market_context.sentiment != "neutral" else 0.05)
        + (0.1 if liquidity is not None else 0.0)
    )

    median_price = comparables.median_price if comparables is not None else 0.0
    analysis = DealAnalysis(
        price_discount_pct=_round_half_up(_discount_pct(median_price, listing.asking_price) or 0.0, 1),
        price_per_area_discount_pct=_round_half_up(ppa_discount or 0.0, 1),
        savings_amount=_round_half_up(median_price - listing.asking_price) if median_price else 0.0,
        listing_price_per_area=round(listing_ppa, 2),
        reference_price_per_area=round(reference_ppa, 2),
        median_price_per_area=comparables.median_price_per_area if comparables is not None else 0.0,
        median_price=median_price,
        price_range=comparables.price_range if comparables is not None else ValueRange(min=0, max=0),
        yield_analysis=yield_analysis,
        market_context=market_context,
        liquidity_analysis=liquidity,
        match_tier=tier,
        match_description=comparables.match_description if comparables is not None else "No comparables",
        comparable_count=count,
        data_recency=comparables.latest_transaction_date if comparables is not None else None,
    )

    return DealScore(
        composite_score=composite,
        rating=determine_rating(composite),
        breakdown=ScoreBreakdown(
            price=round(sub_scores["price"], 2),
            yield_=round(sub_scores["yield"], 2),
            match_quality=round(sub_scores["match_quality"], 2),
            sentiment=round(sub_scores["sentiment"], 2),
            liquidity=round(sub_scores["liquidity"], 2),
            recency=round(sub_scores["recency"], 2),
        ),
        confidence=round(min(1.0, confidence), 2),
        analysis=analysis,
    )


__all__ = [
    "WEIGHTS",
    "determine_rating",
    "determine_severity",
    "liquidity_score",
    "match_quality_score",
    "price_score",
    "score_deal",
    "sentiment_score",
    "yield_score",
]
