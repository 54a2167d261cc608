"""Flat-file exports of the pricing-signal table via DuckDB ``COPY``."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

import duckdb

from storage.db import MARKET_SIGNALS_TABLE

EXPORT_COLUMNS = (
    "signal_key",
    "org_id",
    "type",
    "source",
    "geo_type",
    "geo_id",
    "geo_name",
    "segment",
    "metric",
    "current_value",
    "prev_value",
    "delta_pct",
    "composite_score",
    "rating",
    "confidence_score",
    "severity",
    "status",
    "evidence",
    "created_at",
    "updated_at",
)


def build_signals_query(where: str | None = None, limit: int | None = None) -> str:
    """SELECT over the signals table, best score first, matching ``fetch_market_signals``."""

    sql = f"SELECT {', '.join(EXPORT_COLUMNS)} FROM {MARKET_SIGNALS_TABLE}"
    if where:
        sql += f" WHERE {where}"
    sql += " ORDER BY composite_score DESC, signal_key"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return sql


def _copy(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    options: str,
    query: str | None,
    params: Sequence[Any] | None,
) -> Path:
    dest_path = Path(destination)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    quoted = str(dest_path).replace("'", "''")
    conn.execute(
        f"COPY ({query or build_signals_query()}) TO '{quoted}' ({options})",
        list(params or []),
    )
    return dest_path


def export_to_csv(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    *,
    query: str | None = None,
    params: Sequence[Any] | None = None,
    include_header: bool = True,
) -> Path:
    """Write query results (all signals by default) to ``destination`` as CSV."""

    header = "TRUE" if include_header else "FALSE"
    return _copy(conn, destination, f"FORMAT CSV, HEADER {header}", query, params)


def export_to_parquet(
    conn: duckdb.DuckDBPyConnection,
    destination: str | Path,
    *,
    query: str | None = None,
    params: Sequence[Any] | None = None,
) -> Path:
    return _copy(conn, destination, "FORMAT PARQUET", query, params)


__all__ = ["EXPORT_COLUMNS", "build_signals_query", "export_to_csv", "export_to_parquet"]
