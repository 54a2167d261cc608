"""Command-line entrypoint for batch jobs."""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import asdict
from datetime import date
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from jobs.config import API_RATE_LIMITS, PipelineConfig
from jobs.generate_signals import main as run_generate_signals
from jobs.ingest_dld import known_geo_stamper, main as run_ingest_dld
from pipelines.geo import GeoResolver
from pipelines.model import GeoReference
from storage.db import connect
from storage.reference import fetch_geo_references, restamp_geo_ids, upsert_geo_references

_GEO_LIST = TypeAdapter(list[GeoReference])


def _parse_date(raw: str) -> date:
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{raw}' (expected YYYY-MM-DD)") from exc


def _load_geo(path: Path) -> int:
    try:
        references = _GEO_LIST.validate_python(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise SystemExit(f"Could not load geo references from {path}: {exc}") from exc
    conn = connect()
    try:
        written = upsert_geo_references(conn, references)
    finally:
        conn.close()
    print(f"Loaded {written} geo references from {path}.")
    return 0


def _remap_geo() -> int:
    conn = connect()
    try:
        resolver = GeoResolver(lambda: fetch_geo_references(conn))
        updated = restamp_geo_ids(conn, known_geo_stamper(resolver))
    finally:
        conn.close()
    print(f"Re-stamped geo ids for {updated} distinct area names.")
    return 0


def _resolve_area(text: str) -> int:
    conn = connect()
    try:
        match = GeoResolver(lambda: fetch_geo_references(conn)).resolve(text)
    finally:
        conn.close()
    print(
        f"{text!r} -> {match.geo_id} ({match.canonical_name}, {match.geo_type}) "
        f"confidence={match.confidence}"
    )
    return 0 if match.is_known else 2


def _show_config() -> int:
    config = PipelineConfig.from_env()
    for key, value in asdict(config).items():
        print(f"{key}={value}")
    for preset in API_RATE_LIMITS:
        print(f"rate_limit.{preset.key}={preset.max_requests}/{preset.window_seconds:g}s")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Listing deal signals job runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    generate_parser = subparsers.add_parser(
        "generate-signals", help="Score active listings and upsert pricing signals"
    )
    generate_parser.add_argument("--min-score", type=int, help="Minimum composite score to emit")
    generate_parser.add_argument(
        "--min-comparables", type=int, help="Minimum comparable count for a tier to qualify"
    )
    generate_parser.add_argument("--batch-size", type=int, help="Listings processed per batch")
    generate_parser.add_argument(
        "--as-of", type=_parse_date, help="Valuation date (YYYY-MM-DD, defaults to today)"
    )
    generate_parser.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )

    ingest_parser = subparsers.add_parser(
        "ingest-dld", help="Fetch DLD sales transactions into DuckDB"
    )
    ingest_parser.add_argument("--from", dest="from_date", type=_parse_date, help="First date (YYYY-MM-DD)")
    ingest_parser.add_argument("--to", dest="to_date", type=_parse_date, help="Last date (YYYY-MM-DD)")
    ingest_parser.add_argument("--log-level", help="Override LOG_LEVEL for this invocation")

    load_geo_parser = subparsers.add_parser(
        "load-geo", help="Load geo references from a JSON file (list of objects)"
    )
    load_geo_parser.add_argument("file", type=Path)

    subparsers.add_parser(
        "remap-geo", help="Re-resolve geo ids on stored listings and transactions"
    )

    resolve_parser = subparsers.add_parser("resolve-area", help="Resolve an area name to a geography")
    resolve_parser.add_argument("text")

    subparsers.add_parser("show-config", help="Show the effective pipeline configuration")

    args = parser.parse_args(argv)

    if getattr(args, "log_level", None):
        os.environ["LOG_LEVEL"] = args.log_level

    if args.command == "generate-signals":
        config = PipelineConfig.from_env(
            min_score=args.min_score,
            min_comparables=args.min_comparables,
            batch_size=args.batch_size,
        )
        return run_generate_signals(config, as_of=args.as_of)

    if args.command == "ingest-dld":
        return run_ingest_dld(args.from_date, args.to_date)

    if args.command == "load-geo":
        return _load_geo(args.file)

    if args.command == "remap-geo":
        return _remap_geo()

    if args.command == "resolve-area":
        return _resolve_area(args.text)

    if args.command == "show-config":
        return _show_config()

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
