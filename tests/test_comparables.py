from datetime import timedelta

import pytest

from conftest import AS_OF, make_transaction
from pipelines.comparables import ComparableSelector, build_tier_filters, count_bonus
from pipelines.geo import GeoResolver
from pipelines.model import GeoMatch
from storage.reference import upsert_transactions


@pytest.fixture()
def selector(db_conn, geo_references):
    return ComparableSelector(db_conn, resolver=GeoResolver(lambda: geo_references), as_of=AS_OF)


def _seed(conn, transactions):
    upsert_transactions(conn, transactions)


def test_building_tier_wins_when_enough_matches(db_conn, selector):
    building = [
        make_transaction(i, building_name="Marina Gate", ppa=2500.0) for i in range(3)
    ]
    area = [make_transaction(100 + i, age_days=i) for i in range(30)]
    _seed(db_conn, building + area)

    result = selector.select("Dubai Marina", "apartment", "2BR", 100.0, "marina gate")

    assert result is not None
    assert result.match_tier == 1
    assert result.comparable_count == 3
    assert result.median_price_per_area == pytest.approx(2500.0)
    assert result.confidence_score == pytest.approx(0.95)


def test_falls_back_to_type_bedrooms_and_size(db_conn, selector):
    transactions = [make_transaction(i, building_name="Marina Gate") for i in range(2)]
    transactions += [make_transaction(10 + i, size=110.0) for i in range(12)]
    # Outside the +/-15% size band.
    transactions += [make_transaction(40 + i, size=200.0) for i in range(5)]
    _seed(db_conn, transactions)

    result = selector.select("Dubai Marina", "apartment", "2BR", 100.0, "Marina Gate")

    assert result is not None
    assert result.match_tier == 2
    assert result.comparable_count == 14
    assert result.confidence_score == pytest.approx(0.81)


def test_falls_back_to_property_type_family(db_conn, selector):
    _seed(
        db_conn,
        [make_transaction(i, bedroom_label="1BR", size=60.0) for i in range(4)],
    )

    result = selector.select("Dubai Marina", "apartment", "2BR", 100.0)

    assert result is not None
    assert result.match_tier == 3
    assert result.comparable_count == 4


def test_falls_back_to_area_only(db_conn, selector):
    _seed(
        db_conn,
        [make_transaction(i, property_type="Villa", bedroom_label="4BR", size=400.0) for i in range(3)],
    )

    result = selector.select("Dubai Marina", "apartment", "2BR", 100.0)

    assert result is not None
    assert result.match_tier == 4
    assert result.match_description == "Same area"


def test_below_minimum_returns_none(db_conn, selector):
    _seed(db_conn, [make_transaction(i) for i in range(2)])

    assert selector.select("Dubai Marina", "apartment", "2BR", 100.0) is None
    assert selector.select("Dubai Marina", "apartment", "2BR", 100.0, min_comparables=2) is not None


def test_unknown_geography_returns_none(db_conn, selector):
    _seed(db_conn, [make_transaction(i) for i in range(5)])

    assert selector.select("Nowhere Special Zzz", "apartment", "2BR", 100.0) is None


def test_filters_other_areas_old_and_non_sale_records(db_conn, selector):
    transactions = [make_transaction(i) for i in range(3)]
    transactions += [
        make_transaction(10, geo_id="business-bay", area_name="Business Bay"),
        make_transaction(11, age_days=800),
        make_transaction(12, transaction_type="Mortgage"),
        make_transaction(13, age_days=-5),
    ]
    _seed(db_conn, transactions)

    result = selector.select(GeoMatch(
        geo_id="dubai-marina",
        canonical_name="Dubai Marina",
        geo_type="community",
        confidence="exact",
    ), "apartment", "2BR", 100.0)

    assert result is not None
    assert result.comparable_count == 3


def test_statistics_and_time_weighting(db_conn, selector):
    _seed(
        db_conn,
        [
            make_transaction(1, ppa=3000.0, age_days=0),
            make_transaction(2, ppa=3000.0, age_days=0),
            make_transaction(3, ppa=1000.0, age_days=180),
        ],
    )

    result = selector.select("Dubai Marina", "apartment", "2BR", 100.0)

    assert result is not None
    assert result.median_price_per_area == pytest.approx(3000.0)
    # Weights 1, 1 and 0.5 for a 180-day half-life.
    assert result.time_weighted_avg_price_per_area == pytest.approx(2600.0)
    assert result.reference_price_per_area == pytest.approx(2600.0)
    assert result.price_range.min <= result.median_price <= result.price_range.max
    assert result.price_per_area_range.min == pytest.approx(1000.0)
    assert result.latest_transaction_date == AS_OF
    assert result.avg_size == pytest.approx(100.0)


def test_recency_score_depends_on_latest_comparable(db_conn, selector):
    _seed(db_conn, [make_transaction(i, age_days=120 + i) for i in range(3)])
    stale = selector.select("Dubai Marina", "apartment", "2BR", 100.0)
    assert stale.recency_score == pytest.approx(0.55)

    _seed(db_conn, [make_transaction(10, age_days=30)])
    fresh = selector.select("Dubai Marina", "apartment", "2BR", 100.0)
    assert fresh.recency_score == pytest.approx(0.85)
    assert fresh.latest_transaction_date == AS_OF - timedelta(days=30)


def test_count_bonus_never_lets_count_outrank_tier():
    assert count_bonus(9) == 0
    assert count_bonus(10) == pytest.approx(0.01)
    assert count_bonus(20) == pytest.approx(0.02)
    assert count_bonus(500) == pytest.approx(0.04)
    assert 0.80 + count_bonus(10_000) < 0.95


def test_tier_filters_skip_inapplicable_tiers():
    assert build_tier_filters(1, property_type="apartment", bedroom_label="2BR", size=100, building_name=None) is None
    assert build_tier_filters(2, property_type="apartment", bedroom_label=None, size=None, building_name=None) is None
    assert build_tier_filters(3, property_type=None, bedroom_label=None, size=None, building_name=None) is None

    where, params = build_tier_filters(
        2, property_type="Penthouse", bedroom_label="3BR", size=200.0, building_name=None
    )
    assert "type_family = ?" in where
    assert params[0] == "unit"
    assert params[2:] == [pytest.approx(170.0), pytest.approx(230.0)]
