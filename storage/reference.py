"""DuckDB access for the engine's inputs: geographies, listings, transactions and market context."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Callable, Iterable, Sequence

import duckdb

from pipelines.model import (
    GeoReference,
    ListingRecord,
    MarketContext,
    TransactionRecord,
)
from pipelines.segments import normalize_bedroom_label, property_type_family
from storage.db import (
    GEO_REFERENCE_TABLE,
    LISTINGS_TABLE,
    MARKET_CONTEXT_TABLE,
    MARKET_METRICS_TABLE,
    TRANSACTIONS_TABLE,
    rows_as_dicts,
)

GeoStamp = Callable[[str], str | None]

_GEO_COLUMNS = (
    "id",
    "geo_type",
    "canonical_name",
    "parent_id",
    "aliases",
    "dld_area_code",
    "dld_area_name",
    "bayut_location_id",
    "propertyfinder_location_id",
    "is_active",
)


def upsert_geo_references(
    conn: duckdb.DuckDBPyConnection, references: Iterable[GeoReference]
) -> int:
    rows = [
        (*(getattr(ref, column) for column in _GEO_COLUMNS), datetime.now())
        for ref in references
    ]
    if not rows:
        return 0
    conn.executemany(
        f"""
        INSERT OR REPLACE INTO {GEO_REFERENCE_TABLE} ({", ".join(_GEO_COLUMNS)}, updated_at)
        VALUES ({", ".join("?" for _ in _GEO_COLUMNS)}, ?)
        """,
        rows,
    )
    return len(rows)


def fetch_geo_references(
    conn: duckdb.DuckDBPyConnection, *, active_only: bool = True
) -> list[GeoReference]:
    sql = f"SELECT {', '.join(_GEO_COLUMNS)} FROM {GEO_REFERENCE_TABLE}"
    if active_only:
        sql += " WHERE is_active"
    sql += " ORDER BY id"
    return [
        GeoReference(**{**row, "aliases": list(row["aliases"] or [])})
        for row in rows_as_dicts(conn.execute(sql))
    ]


def _listing_row(listing: ListingRecord, geo_id: str | None) -> tuple:
    return (
        listing.portal,
        listing.listing_id,
        listing.listing_url,
        listing.area_name,
        listing.building_name,
        listing.property_type,
        property_type_family(listing.property_type),
        listing.bedrooms,
        listing.size,
        listing.asking_price,
        listing.price_per_area,
        listing.listed_date,
        listing.is_active,
        listing.listing_type,
        geo_id,
    )


def upsert_listings(
    conn: duckdb.DuckDBPyConnection,
    listings: Iterable[ListingRecord],
    *,
    stamp_geo: GeoStamp | None = None,
) -> int:
    """Insert or replace listings; ``stamp_geo`` maps area names to geo ids."""

    rows = []
    for listing in listings:
        geo_id = listing.geo_id
        if geo_id is None and stamp_geo is not None:
            geo_id = stamp_geo(listing.area_name)
        rows.append(_listing_row(listing, geo_id))
    if not rows:
        return 0
    conn.executemany(
        f"""
        INSERT OR REPLACE INTO {LISTINGS_TABLE} (
            portal, listing_id, listing_url, area_name, building_name, property_type,
            type_family, bedrooms, size, asking_price, price_per_area, listed_date,
            is_active, listing_type, geo_id
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    return len(rows)


def fetch_active_listings(
    conn: duckdb.DuckDBPyConnection, *, listing_type: str = "sale"
) -> list[ListingRecord]:
    cursor = conn.execute(
        f"""
        SELECT portal, listing_id, listing_url, area_name, building_name, property_type,
               bedrooms, size, asking_price, price_per_area, listed_date, is_active,
               listing_type, geo_id
        FROM {LISTINGS_TABLE}
        WHERE is_active AND listing_type = ? AND asking_price > 0
        ORDER BY portal, listing_id
        """,
        [listing_type],
    )
    return [ListingRecord(**row) for row in rows_as_dicts(cursor)]


def upsert_transactions(
    conn: duckdb.DuckDBPyConnection,
    transactions: Iterable[TransactionRecord],
    *,
    stamp_geo: GeoStamp | None = None,
) -> int:
    rows = []
    for txn in transactions:
        geo_id = txn.geo_id
        if geo_id is None and stamp_geo is not None:
            geo_id = stamp_geo(txn.area_name)
        rows.append(
            (
                txn.transaction_id,
                txn.area_name,
                geo_id,
                txn.building_name,
                txn.property_type,
                property_type_family(txn.property_type),
                normalize_bedroom_label(txn.bedroom_label) or txn.bedroom_label,
                txn.size,
                txn.price,
                txn.effective_price_per_area,
                txn.transaction_date,
                txn.transaction_type.lower(),
            )
        )
    if not rows:
        return 0
    conn.executemany(
        f"""
        INSERT OR REPLACE INTO {TRANSACTIONS_TABLE} (
            transaction_id, area_name, geo_id, building_name, property_type, type_family,
            bedroom_label, size, price, price_per_area, transaction_date, transaction_type
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
    )
    return len(rows)


def summarize_transactions(
    conn: duckdb.DuckDBPyConnection,
    *,
    where: str,
    params: Sequence[Any],
    as_of: date,
    half_life_days: float,
) -> dict[str, Any]:
    """Aggregate the transactions matching ``where`` into comparable statistics.

    Each row is weighted by ``0.5 ** (age_days / half_life_days)`` for the
    time-weighted price-per-area.
    """

    cursor = conn.execute(
        f"""
        SELECT
            COUNT(*) AS comparable_count,
            quantile_cont(price, 0.5) AS median_price,
            quantile_cont(price_per_area, 0.5) AS median_price_per_area,
            SUM(price_per_area * weight) / NULLIF(SUM(weight), 0) AS time_weighted_avg_price_per_area,
            AVG(size) AS avg_size,
            MIN(price) AS price_min,
            MAX(price) AS price_max,
            MIN(price_per_area) AS price_per_area_min,
            MAX(price_per_area) AS price_per_area_max,
            MAX(transaction_date) AS latest_transaction_date
        FROM (
            SELECT
                *,
                pow(0.5, date_diff('day', transaction_date, CAST(? AS DATE)) / CAST(? AS DOUBLE)) AS weight
            FROM {TRANSACTIONS_TABLE}
            WHERE {where}
        )
        """,
        [as_of, half_life_days, *params],
    )
    return rows_as_dicts(cursor)[0]


def restamp_geo_ids(conn: duckdb.DuckDBPyConnection, stamp_geo: GeoStamp) -> int:
    """Re-resolve the geo id of every distinct area name in listings and transactions."""

    updated = 0
    for table in (LISTINGS_TABLE, TRANSACTIONS_TABLE):
        areas = [row[0] for row in conn.execute(f"SELECT DISTINCT area_name FROM {table}").fetchall()]
        for area in areas:
            conn.execute(
                f"UPDATE {table} SET geo_id = ? WHERE area_name = ?",
                [stamp_geo(area), area],
            )
            updated += 1
    return updated


def upsert_market_metrics(
    conn: duckdb.DuckDBPyConnection,
    rows: Iterable[tuple[str, str, str, float, int | None, datetime]],
) -> int:
    """Write ``(geo_id, segment, metric, value, sample_size, observed_at)`` snapshot rows."""

    materialized = list(rows)
    if not materialized:
        return 0
    conn.executemany(
        f"""
        INSERT OR REPLACE INTO {MARKET_METRICS_TABLE}
            (geo_id, segment, metric, value, sample_size, observed_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        materialized,
    )
    return len(materialized)


def fetch_latest_metrics(
    conn: duckdb.DuckDBPyConnection,
    geo_id: str,
    segment: str,
    metrics: Sequence[str],
) -> dict[str, float]:
    cursor = conn.execute(
        f"""
        SELECT metric, arg_max(value, observed_at) AS value
        FROM {MARKET_METRICS_TABLE}
        WHERE geo_id = ? AND segment = ? AND list_contains(?, metric)
        GROUP BY metric
        """,
        [geo_id, segment, list(metrics)],
    )
    return {metric: value for metric, value in cursor.fetchall()}


def fetch_listing_liquidity(
    conn: duckdb.DuckDBPyConnection,
    geo_id: str,
    type_family: str | None,
    *,
    as_of: date,
    stale_after_days: int,
    fresh_within_days: int,
) -> dict[str, Any] | None:
    filters = ["is_active", "listing_type = 'sale'", "listed_date IS NOT NULL", "geo_id = ?"]
    params: list[Any] = [as_of, geo_id]
    if type_family:
        filters.append("type_family = ?")
        params.append(type_family)
    cursor = conn.execute(
        f"""
        SELECT
            COUNT(*) AS active_listings,
            AVG(dom) AS avg_days_on_market,
            quantile_cont(dom, 0.5) AS median_days_on_market,
            COUNT(*) FILTER (WHERE dom > ?) AS stale_listings_count,
            COUNT(*) FILTER (WHERE dom <= ?) AS fresh_listings_count
        FROM (
            SELECT greatest(date_diff('day', listed_date, CAST(? AS DATE)), 0) AS dom
            FROM {LISTINGS_TABLE}
            WHERE {" AND ".join(filters)}
        )
        """,
        [stale_after_days, fresh_within_days, *params],
    )
    row = rows_as_dicts(cursor)[0]
    if not row["active_listings"]:
        return None
    return row


def upsert_market_context(
    conn: duckdb.DuckDBPyConnection,
    geo_id: str,
    context: MarketContext,
    *,
    segment: str = "All",
    updated_at: datetime | None = None,
) -> None:
    conn.execute(
        f"""
        INSERT OR REPLACE INTO {MARKET_CONTEXT_TABLE}
            (geo_id, segment, sentiment, key_developments, risks, opportunities, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        [
            geo_id,
            segment,
            context.sentiment,
            json.dumps(context.key_developments),
            json.dumps(context.risks),
            json.dumps(context.opportunities),
            updated_at or datetime.now(),
        ],
    )


def fetch_market_context_row(
    conn: duckdb.DuckDBPyConnection, geo_id: str, segment: str
) -> dict[str, Any] | None:
    cursor = conn.execute(
        f"""
        SELECT sentiment, key_developments, risks, opportunities, updated_at
        FROM {MARKET_CONTEXT_TABLE}
        WHERE geo_id = ? AND segment IN (?, 'All')
        ORDER BY CASE WHEN segment = ? THEN 0 ELSE 1 END
        LIMIT 1
        """,
        [geo_id, segment, segment],
    )
    rows = rows_as_dicts(cursor)
    if not rows:
        return None
    row = rows[0]
    for column in ("key_developments", "risks", "opportunities"):
        value = row[column]
        row[column] = json.loads(value) if isinstance(value, str) else list(value or [])
    return row


__all__ = [
    "fetch_active_listings",
    "fetch_geo_references",
    "fetch_latest_metrics",
    "fetch_listing_liquidity",
    "fetch_market_context_row",
    "restamp_geo_ids",
    "summarize_transactions",
    "upsert_geo_references",
    "upsert_listings",
    "upsert_market_context",
    "upsert_market_metrics",
    "upsert_transactions",
]
