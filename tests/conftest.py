from datetime import date, timedelta

import pytest

from pipelines.model import GeoReference, ListingRecord, TransactionRecord
from storage.db import connect

AS_OF = date(2025, 6, 30)

GEO_REFERENCES = [
    GeoReference(
        id="dubai-marina",
        geo_type="community",
        canonical_name="Dubai Marina",
        parent_id="dubai",
        aliases=["Marina", "DUBAI MARINA"],
        dld_area_name="Marsa Dubai",
        dld_area_code="M01",
    ),
    GeoReference(
        id="downtown-dubai",
        geo_type="community",
        canonical_name="Downtown Dubai",
        parent_id="dubai",
        aliases=["Downtown", "Burj Khalifa"],
    ),
    GeoReference(
        id="jumeirah-village-circle",
        geo_type="community",
        canonical_name="Jumeirah Village Circle",
        parent_id="dubai",
        aliases=["JVC"],
    ),
    GeoReference(
        id="business-bay",
        geo_type="community",
        canonical_name="Business Bay",
        parent_id="dubai",
    ),
    GeoReference(
        id="palm-jumeirah",
        geo_type="community",
        canonical_name="Palm Jumeirah",
        parent_id="dubai",
        aliases=["The Palm"],
    ),
    GeoReference(
        id="old-town",
        geo_type="sub-community",
        canonical_name="Old Town Island",
        parent_id="downtown-dubai",
        is_active=False,
    ),
]


@pytest.fixture()
def geo_references():
    return list(GEO_REFERENCES)


@pytest.fixture()
def db_conn(tmp_path):
    conn = connect(tmp_path / "deal_signals.duckdb")
    try:
        yield conn
    finally:
        conn.close()


def make_transaction(index: int, **overrides) -> TransactionRecord:
    """2BR unit in Dubai Marina at 2,000/sqm unless overridden."""

    size = overrides.pop("size", 100.0)
    price_per_area = overrides.pop("ppa", 2000.0)
    age_days = overrides.pop("age_days", 10 * index)
    fields = {
        "transaction_id": f"T{index:04d}",
        "area_name": "Dubai Marina",
        "geo_id": "dubai-marina",
        "building_name": None,
        "property_type": "Unit",
        "bedroom_label": "2BR",
        "size": size,
        "price": size * price_per_area if size else price_per_area * 100,
        "transaction_date": AS_OF - timedelta(days=age_days),
        "transaction_type": "Sales",
    }
    fields.update(overrides)
    return TransactionRecord(**fields)


def make_listing(listing_id: str, **overrides) -> ListingRecord:
    fields = {
        "portal": "bayut",
        "listing_id": listing_id,
        "listing_url": f"https://example.com/listings/{listing_id}",
        "area_name": "Dubai Marina",
        "property_type": "apartment",
        "bedrooms": 2,
        "size": 100.0,
        "asking_price": 140_000.0,
        "listed_date": AS_OF - timedelta(days=10),
    }
    fields.update(overrides)
    return ListingRecord(**fields)
