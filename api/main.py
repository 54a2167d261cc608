"""FastAPI service exposing pricing signals in multiple formats plus geo resolution."""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Sequence

import duckdb
from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from dotenv import load_dotenv

from pipelines.geo import GeoReferenceLoadError, GeoResolver
from storage.db import connect, fetch_market_signals
from storage.exports import build_signals_query, export_to_csv, export_to_parquet
from storage.reference import fetch_geo_references

DEFAULT_LIMIT = 200
MAX_LIMIT = 2000
ALLOWED_SEVERITIES = {"urgent", "high", "normal", "low"}
load_dotenv()

logger = logging.getLogger(__name__)


def _load_geo_references():
    conn = connect(read_only=True)
    try:
        return fetch_geo_references(conn)
    finally:
        conn.close()


resolver = GeoResolver(
    _load_geo_references,
    ttl_seconds=float(os.getenv("GEO_CACHE_TTL_SECONDS", "300")),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    conn = connect()
    conn.close()
    resolver.invalidate()
    yield


app = FastAPI(title="Listing Deal Signals API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


def _build_filters(
    *,
    geo_id: str | None,
    segment: str | None,
    severity: str | None,
    status: str | None,
    min_score: int | None,
) -> tuple[str | None, list[Any]]:
    filters: list[str] = []
    params: list[Any] = []

    if severity and severity not in ALLOWED_SEVERITIES:
        raise HTTPException(status_code=400, detail=f"Unknown severity '{severity}'")

    if geo_id:
        filters.append("geo_id = ?")
        params.append(geo_id)
    if segment:
        filters.append("segment = ?")
        params.append(segment)
    if severity:
        filters.append("severity = ?")
        params.append(severity)
    if status:
        filters.append("status = ?")
        params.append(status)
    if min_score is not None:
        filters.append("composite_score >= ?")
        params.append(min_score)

    if not filters:
        return None, params

    return " AND ".join(filters), params


# format -> (suffix, media type, exporter)
FILE_EXPORTS = {
    "csv": (".csv", "text/csv", export_to_csv),
    "parquet": (".parquet", "application/vnd.apache.parquet", export_to_parquet),
}


def _remove_file(path: Path) -> None:
    path.unlink(missing_ok=True)


def _file_response(
    conn: duckdb.DuckDBPyConnection,
    fmt: str,
    query: str,
    params: Sequence[Any],
    background_tasks: BackgroundTasks,
) -> FileResponse:
    suffix, media_type, exporter = FILE_EXPORTS[fmt]
    with tempfile.NamedTemporaryFile(prefix="signals-", suffix=suffix, delete=False) as tmp:
        dest = Path(tmp.name)
    exporter(conn, dest, query=query, params=params)
    background_tasks.add_task(_remove_file, dest)
    return FileResponse(
        dest,
        media_type=media_type,
        filename=f"pricing_signals{suffix}",
        background=background_tasks,
    )


@app.get("/signals")
def get_signals(
    background_tasks: BackgroundTasks,
    format: str = Query("json", description="Response format: json, csv, or parquet"),
    geo_id: str | None = Query(None, description="Canonical geography slug"),
    segment: str | None = Query(None, description="Segment such as '2BR' or 'Villa'"),
    severity: str | None = Query(None, description="urgent, high, normal or low"),
    status: str | None = Query(None, description="Triage status (e.g. 'new')"),
    min_score: int | None = Query(None, ge=0, le=100, description="Minimum composite score"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Maximum records returned"),
):
    fmt = format.lower()
    if fmt != "json" and fmt not in FILE_EXPORTS:
        raise HTTPException(status_code=400, detail=f"Unsupported format '{format}'.")

    where, params = _build_filters(
        geo_id=geo_id,
        segment=segment,
        severity=severity,
        status=status,
        min_score=min_score,
    )

    conn = connect(read_only=True)
    try:
        if fmt != "json":
            return _file_response(
                conn, fmt, build_signals_query(where, limit), params, background_tasks
            )
        signals = fetch_market_signals(conn, where=where, params=params, limit=limit)
        return JSONResponse(
            content={
                "count": len(signals),
                "items": [signal.model_dump(mode="json", by_alias=True) for signal in signals],
            }
        )
    except duckdb.Error as exc:
        logger.error("Signal query failed: %s", exc)
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    finally:
        conn.close()


@app.get("/geo/resolve")
def resolve_geo(q: str = Query(..., min_length=1, description="Free-text area name")):
    try:
        match = resolver.resolve(q)
    except GeoReferenceLoadError as exc:
        raise HTTPException(status_code=503, detail="Geo reference data unavailable") from exc
    return match.model_dump()
