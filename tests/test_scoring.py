from datetime import timedelta

import pytest

from conftest import AS_OF, make_listing
from pipelines.model import (
    ComparableSet,
    LiquidityContext,
    MarketContext,
    ValueRange,
    YieldContext,
)
from pipelines.scoring import (
    determine_rating,
    determine_severity,
    liquidity_score,
    match_quality_score,
    price_score,
    score_deal,
    sentiment_score,
    yield_score,
)


def make_comparables(**overrides) -> ComparableSet:
    fields = {
        "match_tier": 2,
        "match_description": "Same area, type, bedrooms and size",
        "confidence_score": 0.81,
        "comparable_count": 15,
        "median_price": 200_000.0,
        "median_price_per_area": 1950.0,
        "time_weighted_avg_price_per_area": 2000.0,
        "avg_size": 100.0,
        "recency_score": 0.7,
        "price_range": ValueRange(min=150_000.0, max=240_000.0),
        "price_per_area_range": ValueRange(min=1500.0, max=2400.0),
        "latest_transaction_date": AS_OF - timedelta(days=12),
    }
    fields.update(overrides)
    return ComparableSet(**fields)


@pytest.mark.parametrize(
    ("discount", "expected"),
    [
        (45, 1.0),
        (30, 1.0),
        (25, 0.925),
        (20, 0.85),
        (10, 0.70),
        (5, 0.60),
        (0, 0.50),
        (-5, 0.375),
        (-10, 0.25),
        (-15, 0.175),
        (-20, 0.10),
        (-20.5, 0.0),
        (-60, 0.0),
        (None, 0.5),
    ],
)
def test_price_score_bands(discount, expected):
    assert price_score(discount) == pytest.approx(expected)


def test_price_score_is_monotonic():
    discounts = [step / 4 for step in range(-200, 200)]
    scores = [price_score(d) for d in discounts]
    assert all(later >= earlier for earlier, later in zip(scores, scores[1:]))


@pytest.mark.parametrize(
    ("premium", "expected"),
    [
        (3.0, 1.0),
        (2.0, 1.0),
        (1.5, 0.925),
        (0.0, 0.5),
        (-0.5, 0.4),
        (-1.5, 0.15),
        (-3.0, 0.1),
        (None, 0.5),
    ],
)
def test_yield_score_bands(premium, expected):
    assert yield_score(premium) == pytest.approx(expected)


def test_match_quality_score():
    assert match_quality_score(1, 3) == pytest.approx(0.95)
    assert match_quality_score(1, 60) == pytest.approx(1.0)
    assert match_quality_score(2, 25) == pytest.approx(0.83)
    assert match_quality_score(3, 12) == pytest.approx(0.61)
    assert match_quality_score(0, 0) == pytest.approx(0.10)


def test_sentiment_score_adjustments():
    assert sentiment_score(MarketContext()) == pytest.approx(0.5)
    assert sentiment_score(MarketContext(sentiment="bullish")) == pytest.approx(0.8)
    assert sentiment_score(MarketContext(sentiment="bearish")) == pytest.approx(0.3)
    busy = MarketContext(
        sentiment="bullish",
        key_developments=["metro", "mall", "school"],
        opportunities=["visa reform"],
        news_freshness_days=3,
    )
    assert sentiment_score(busy) == pytest.approx(0.95)
    risky = MarketContext(risks=["a", "b", "c", "d"], news_freshness_days=45)
    assert sentiment_score(risky) == pytest.approx(0.25)
    assert sentiment_score(MarketContext(news_freshness_days=10)) == pytest.approx(0.45)


def test_liquidity_score_nudges():
    listing = make_listing("L1", listed_date=AS_OF - timedelta(days=5))
    context = LiquidityContext(
        geo_id="dubai-marina",
        property_type="unit",
        active_listings=20,
        avg_days_on_market=60,
        stale_listings_count=2,
        fresh_listings_count=8,
        liquidity_score=0.6,
    )
    assert liquidity_score(context, listing, AS_OF) == pytest.approx(0.7)

    old_listing = make_listing("L2", listed_date=AS_OF - timedelta(days=200))
    stale_market = context.model_copy(update={"stale_listings_count": 17, "fresh_listings_count": 3})
    assert liquidity_score(stale_market, old_listing, AS_OF) == pytest.approx(0.4)
    assert liquidity_score(None, listing, AS_OF) == pytest.approx(0.5)


@pytest.mark.parametrize(
    ("score", "rating"),
    [
        (100, "exceptional_opportunity"),
        (85, "exceptional_opportunity"),
        (84, "strong_buy"),
        (70, "strong_buy"),
        (69, "fair_deal"),
        (55, "fair_deal"),
        (54, "market_price"),
        (40, "market_price"),
        (39, "overpriced"),
        (0, "overpriced"),
    ],
)
def test_rating_boundaries(score, rating):
    assert determine_rating(score) == rating


def test_severity_thresholds():
    assert determine_severity(85) == "urgent"
    assert determine_severity(70) == "high"
    assert determine_severity(55) == "normal"
    assert determine_severity(54) == "low"


def test_end_to_end_scenario():
    # 1,400/area against a 2,000 time-weighted reference is a 30% discount.
    listing = make_listing("L-e2e", asking_price=140_000.0, size=100.0, listed_date=None)
    yield_context = YieldContext(
        geo_id="dubai-marina",
        segment="2BR",
        median_annual_rent=9_800.0,
        area_gross_yield=0.055,
    )
    liquidity = LiquidityContext(geo_id="dubai-marina", property_type="unit", liquidity_score=0.6)

    score = score_deal(
        listing,
        make_comparables(),
        yield_context,
        liquidity,
        MarketContext(),
        as_of=AS_OF,
    )

    assert score.breakdown.price == pytest.approx(1.0)
    assert score.breakdown.yield_ == pytest.approx(0.925, abs=0.006)
    assert score.breakdown.match_quality == pytest.approx(0.81)
    assert score.breakdown.sentiment == pytest.approx(0.5)
    assert score.breakdown.liquidity == pytest.approx(0.6)
    assert score.breakdown.recency == pytest.approx(0.7)
    assert score.composite_score == 81
    assert score.rating == "strong_buy"
    # 0.6 * 0.81 + 0.2 (rent) + 0.05 (neutral) + 0.1 (liquidity)
    assert score.confidence == pytest.approx(0.84)

    analysis = score.analysis
    assert analysis.price_per_area_discount_pct == pytest.approx(30.0)
    assert analysis.price_discount_pct == pytest.approx(30.0)
    assert analysis.savings_amount == pytest.approx(60_000.0)
    assert analysis.yield_analysis.gross_yield_pct == pytest.approx(7.0)
    assert analysis.yield_analysis.yield_premium_pct == pytest.approx(1.5)
    assert analysis.match_tier == 2
    assert analysis.comparable_count == 15
    assert analysis.data_recency == AS_OF - timedelta(days=12)


def test_composite_is_monotonic_in_discount():
    comparables = make_comparables()
    scores = []
    for price_per_area in range(3000, 1000, -50):
        listing = make_listing("L", asking_price=price_per_area * 100.0, size=100.0)
        scores.append(score_deal(listing, comparables, as_of=AS_OF).composite_score)
    assert all(later >= earlier for earlier, later in zip(scores, scores[1:]))
    assert all(0 <= value <= 100 for value in scores)


def test_missing_inputs_fall_back_to_neutral():
    listing = make_listing("L-min", listed_date=None)

    score = score_deal(listing, make_comparables(), as_of=AS_OF)

    assert score.breakdown.yield_ == pytest.approx(0.5)
    assert score.breakdown.liquidity == pytest.approx(0.5)
    assert score.breakdown.sentiment == pytest.approx(0.5)
    assert score.analysis.yield_analysis.gross_yield_pct is None
    assert score.confidence == pytest.approx(0.54)


def test_no_comparables_scores_as_tier_zero():
    score = score_deal(make_listing("L-none"), None, as_of=AS_OF)

    assert score.breakdown.match_quality == pytest.approx(0.10)
    assert score.breakdown.price == pytest.approx(0.5)
    assert score.analysis.match_tier == 0
    assert score.analysis.data_recency is None


def test_listing_without_price_per_area_is_rejected():
    listing = make_listing("L-bad", size=None, price_per_area=None)
    with pytest.raises(ValueError):
        score_deal(listing, make_comparables(), as_of=AS_OF)


def test_breakdown_serializes_yield_key():
    score = score_deal(make_listing("L-json"), make_comparables(), as_of=AS_OF)
    payload = score.model_dump(by_alias=True)
    assert set(payload["breakdown"]) == {
        "price",
        "yield",
        "match_quality",
        "sentiment",
        "liquidity",
        "recency",
    }
