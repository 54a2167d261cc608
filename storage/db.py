"""DuckDB persistence utilities: connection, schema and pricing-signal storage."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

import duckdb

from pipelines.model import MarketSignal

logger = logging.getLogger(__name__)

DB_ENV_VAR = "DEAL_SIGNALS_DB_PATH"
DEFAULT_DB_PATH = Path("data/deal_signals.duckdb")

GEO_REFERENCE_TABLE = "geo_reference"
LISTINGS_TABLE = "listings"
TRANSACTIONS_TABLE = "transactions"
MARKET_METRICS_TABLE = "market_metrics"
MARKET_CONTEXT_TABLE = "market_context"
MARKET_SIGNALS_TABLE = "market_signals"

UPSERT_CHUNK_SIZE = 50

_SCHEMA = (
    f"""
    CREATE TABLE IF NOT EXISTS {GEO_REFERENCE_TABLE} (
        id TEXT PRIMARY KEY,
        geo_type TEXT NOT NULL,
        canonical_name TEXT NOT NULL,
        parent_id TEXT,
        aliases TEXT[],
        dld_area_code TEXT,
        dld_area_name TEXT,
        bayut_location_id TEXT,
        propertyfinder_location_id TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        updated_at TIMESTAMP
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {LISTINGS_TABLE} (
        portal TEXT NOT NULL,
        listing_id TEXT NOT NULL,
        listing_url TEXT,
        area_name TEXT NOT NULL,
        building_name TEXT,
        property_type TEXT NOT NULL,
        type_family TEXT,
        bedrooms INTEGER,
        size DOUBLE,
        asking_price DOUBLE NOT NULL,
        price_per_area DOUBLE,
        listed_date DATE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        listing_type TEXT NOT NULL DEFAULT 'sale',
        geo_id TEXT,
        PRIMARY KEY (portal, listing_id)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {TRANSACTIONS_TABLE} (
        transaction_id TEXT PRIMARY KEY,
        area_name TEXT NOT NULL,
        geo_id TEXT,
        building_name TEXT,
        property_type TEXT NOT NULL,
        type_family TEXT,
        bedroom_label TEXT,
        size DOUBLE,
        price DOUBLE NOT NULL,
        price_per_area DOUBLE,
        transaction_date DATE NOT NULL,
        transaction_type TEXT NOT NULL DEFAULT 'sales'
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MARKET_METRICS_TABLE} (
        geo_id TEXT NOT NULL,
        segment TEXT NOT NULL,
        metric TEXT NOT NULL,
        value DOUBLE NOT NULL,
        sample_size INTEGER,
        observed_at TIMESTAMP NOT NULL,
        PRIMARY KEY (geo_id, segment, metric, observed_at)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MARKET_CONTEXT_TABLE} (
        geo_id TEXT NOT NULL,
        segment TEXT NOT NULL,
        sentiment TEXT NOT NULL,
        key_developments JSON,
        risks JSON,
        opportunities JSON,
        updated_at TIMESTAMP NOT NULL,
        PRIMARY KEY (geo_id, segment)
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {MARKET_SIGNALS_TABLE} (
        signal_key TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        type TEXT NOT NULL,
        source TEXT NOT NULL,
        source_type TEXT NOT NULL,
        geo_type TEXT NOT NULL,
        geo_id TEXT NOT NULL,
        geo_name TEXT NOT NULL,
        segment TEXT NOT NULL,
        timeframe TEXT NOT NULL,
        metric TEXT NOT NULL,
        current_value DOUBLE NOT NULL,
        prev_value DOUBLE,
        delta_pct DOUBLE,
        confidence_score DOUBLE,
        severity TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'new',
        composite_score INTEGER,
        rating TEXT,
        evidence JSON,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL
    )
    """,
)


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    conn = duckdb.connect(str(db_path), read_only=read_only)
    if ensure and not read_only:
        ensure_schema(conn)
    return conn


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create every table the engine reads or writes if it does not exist yet."""

    for statement in _SCHEMA:
        conn.execute(statement)


def rows_as_dicts(cursor: duckdb.DuckDBPyConnection) -> list[dict[str, Any]]:
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _serialize_signal(signal: MarketSignal, now: datetime) -> tuple:
    evidence = signal.evidence
    return (
        signal.signal_key,
        signal.org_id,
        signal.type,
        signal.source,
        signal.source_type,
        signal.geo_type,
        signal.geo_id,
        signal.geo_name,
        signal.segment,
        signal.timeframe,
        signal.metric,
        signal.current_value,
        signal.prev_value,
        signal.delta_pct,
        signal.confidence_score,
        signal.severity,
        signal.status,
        evidence.composite_score,
        evidence.rating,
        evidence.model_dump_json(by_alias=True),
        now,
        now,
    )


_UPSERT_SIGNAL_SQL = f"""
    INSERT INTO {MARKET_SIGNALS_TABLE} (
        signal_key,
        org_id,
        type,
        source,
        source_type,
        geo_type,
        geo_id,
        geo_name,
        segment,
        timeframe,
        metric,
        current_value,
        prev_value,
        delta_pct,
        confidence_score,
        severity,
        status,
        composite_score,
        rating,
        evidence,
        created_at,
        updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (signal_key) DO UPDATE SET
        org_id = excluded.org_id,
        geo_name = excluded.geo_name,
        current_value = excluded.current_value,
        prev_value = excluded.prev_value,
        delta_pct = excluded.delta_pct,
        confidence_score = excluded.confidence_score,
        severity = excluded.severity,
        composite_score = excluded.composite_score,
        rating = excluded.rating,
        evidence = excluded.evidence,
        updated_at = excluded.updated_at
"""


def upsert_market_signals(
    conn: duckdb.DuckDBPyConnection, signals: Iterable[MarketSignal]
) -> int:
    """Insert or update a batch of signals keyed by ``signal_key``.

    Existing rows keep their ``status`` and ``created_at`` so triage state
    survives re-runs. The batch is written atomically.

    Returns
    -------
    int
        Number of records written to the database.
    """

    now = _utcnow()
    serialized = [_serialize_signal(signal, now) for signal in signals]
    if not serialized:
        return 0

    conn.begin()
    try:
        conn.executemany(_UPSERT_SIGNAL_SQL, serialized)
    except duckdb.Error:
        conn.rollback()
        raise
    conn.commit()
    return len(serialized)


def upsert_market_signals_chunked(
    conn: duckdb.DuckDBPyConnection,
    signals: Sequence[MarketSignal],
    *,
    chunk_size: int = UPSERT_CHUNK_SIZE,
) -> tuple[int, int]:
    """Upsert in chunks; a failing chunk is logged and skipped.

    Returns ``(written, failed_chunks)``.
    """

    written = 0
    failed_chunks = 0
    for start in range(0, len(signals), chunk_size):
        chunk = signals[start : start + chunk_size]
        chunk_number = start // chunk_size + 1
        try:
            written += upsert_market_signals(conn, chunk)
        except duckdb.Error as exc:
            failed_chunks += 1
            logger.error("Failed to upsert signal chunk %s: %s", chunk_number, exc)
            continue
        logger.info("Upserted chunk %s (%s signals).", chunk_number, len(chunk))
    return written, failed_chunks


def _row_to_signal(row: dict[str, Any]) -> MarketSignal:
    evidence = row["evidence"]
    return MarketSignal(
        org_id=row["org_id"],
        type=row["type"],
        source=row["source"],
        source_type=row["source_type"],
        geo_type=row["geo_type"],
        geo_id=row["geo_id"],
        geo_name=row["geo_name"],
        segment=row["segment"],
        timeframe=row["timeframe"],
        metric=row["metric"],
        current_value=row["current_value"],
        prev_value=row["prev_value"],
        delta_pct=row["delta_pct"],
        confidence_score=row["confidence_score"],
        severity=row["severity"],
        status=row["status"],
        signal_key=row["signal_key"],
        evidence=json.loads(evidence) if isinstance(evidence, str) else evidence,
        updated_at=row["updated_at"],
    )


def fetch_market_signals(
    conn: duckdb.DuckDBPyConnection,
    *,
    where: str | None = None,
    params: Sequence[object] | None = None,
    limit: int | None = None,
) -> list[MarketSignal]:
    """Query stored signals (best score first) and reconstruct ``MarketSignal`` models."""

    sql = f"SELECT * FROM {MARKET_SIGNALS_TABLE}"
    if where:
        sql += f" WHERE {where}"
    sql += " ORDER BY composite_score DESC, signal_key"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    cursor = conn.execute(sql, params or [])
    return [_row_to_signal(row) for row in rows_as_dicts(cursor)]


def count_market_signals(conn: duckdb.DuckDBPyConnection) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {MARKET_SIGNALS_TABLE}").fetchone()[0]


__all__ = [
    "DB_ENV_VAR",
    "GEO_REFERENCE_TABLE",
    "LISTINGS_TABLE",
    "MARKET_CONTEXT_TABLE",
    "MARKET_METRICS_TABLE",
    "MARKET_SIGNALS_TABLE",
    "TRANSACTIONS_TABLE",
    "connect",
    "count_market_signals",
    "ensure_schema",
    "fetch_market_signals",
    "get_database_path",
    "rows_as_dicts",
    "upsert_market_signals",
    "upsert_market_signals_chunked",
]
