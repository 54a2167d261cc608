"""Batch job that pulls DLD sales transactions into the local transaction store."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import date, timedelta

import duckdb
from dotenv import load_dotenv

from jobs.config import get_rate_limit
from pipelines.common import SlidingWindowRateLimiter
from pipelines.geo import GeoResolver
from pipelines.sources.dld import fetch_dld_transactions
from storage.db import connect
from storage.reference import fetch_geo_references, upsert_transactions

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30


def known_geo_stamper(resolver: GeoResolver):
    """Map area names to canonical geo ids, leaving unresolved names unstamped."""

    def _stamp(area_name: str) -> str | None:
        match = resolver.resolve(area_name)
        return match.geo_id if match.is_known else None

    return _stamp


async def ingest_dld_async(
    from_date: date,
    to_date: date,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    area_name: str | None = None,
) -> int:
    owns_connection = conn is None
    conn = conn or connect()
    try:
        preset = get_rate_limit("dld")
        limiter = SlidingWindowRateLimiter(preset.max_requests, preset.window_seconds)

        def _progress(fetched: int, total: int) -> None:
            logger.info("Fetched %s/%s DLD transactions.", fetched, total)

        transactions = await fetch_dld_transactions(
            from_date=from_date,
            to_date=to_date,
            area_name=area_name,
            limiter=limiter,
            on_progress=_progress,
        )
        if not transactions:
            logger.warning("No DLD transactions fetched for %s..%s; skipping write.", from_date, to_date)
            return 0

        resolver = GeoResolver(lambda: fetch_geo_references(conn))
        written = upsert_transactions(conn, transactions, stamp_geo=known_geo_stamper(resolver))
        logger.info("Persisted %s DLD transactions.", written)
        return written
    finally:
        if owns_connection:
            conn.close()


def main(from_date: date | None = None, to_date: date | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    to_date = to_date or date.today()
    from_date = from_date or to_date - timedelta(days=DEFAULT_WINDOW_DAYS)
    written = asyncio.run(ingest_dld_async(from_date, to_date))
    logger.info("DLD ingest finished (records written=%s).", written)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
