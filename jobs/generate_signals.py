"""Batch job that scores every active sale listing and persists pricing signals."""

from __future__ import annotations

import asyncio
import logging
import os
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Literal

import duckdb
from dotenv import load_dotenv

from jobs.config import PipelineConfig
from pipelines.common import (
    SlidingWindowRateLimiter,
    batch_process,
    is_transient_error,
    with_retry,
)
from pipelines.comparables import ComparableSelector
from pipelines.context import MarketContextProvider, SentimentSource
from pipelines.geo import GeoReferenceLoadError, GeoResolver
from pipelines.model import (
    ComparableSet,
    DealScore,
    GeoMatch,
    ListingRecord,
    MarketSignal,
    SignalEvidence,
    build_signal_key,
)
from pipelines.scoring import determine_severity, score_deal
from pipelines.segments import bedroom_segment, map_to_segment
from storage.db import connect, upsert_market_signals_chunked
from storage.reference import fetch_active_listings, fetch_geo_references

load_dotenv()

logger = logging.getLogger(__name__)

SIGNAL_TYPE = "pricing_opportunity"
SUMMARY_TOP_N = 20

SKIP_NO_PRICE_PER_AREA = "no_price_per_area"
SKIP_UNKNOWN_GEOGRAPHY = "unknown_geography"
SKIP_INSUFFICIENT_COMPARABLES = "insufficient_comparables"


@dataclass(frozen=True)
class ListingOutcome:
    listing: ListingRecord
    status: Literal["signal", "below_threshold", "skipped"]
    reason: str | None = None
    score: DealScore | None = None
    signal: MarketSignal | None = None


@dataclass(frozen=True)
class FailedListing:
    listing_id: str
    portal: str
    error: str


@dataclass
class RunReport:
    """Counts by stage plus the rating and tier distribution of one run."""

    total_listings: int = 0
    analyzed: int = 0
    skipped: Counter[str] = field(default_factory=Counter)
    failed: list[FailedListing] = field(default_factory=list)
    below_threshold: int = 0
    opportunities: list[MarketSignal] = field(default_factory=list)
    signals_upserted: int = 0
    failed_chunks: int = 0
    by_rating: Counter[str] = field(default_factory=Counter)
    by_tier: Counter[int] = field(default_factory=Counter)

    @property
    def skipped_total(self) -> int:
        return sum(self.skipped.values())

    def record(self, outcome: ListingOutcome) -> None:
        if outcome.status == "skipped" or outcome.score is None:
            self.skipped[outcome.reason or "unknown"] += 1
            return
        self.analyzed += 1
        self.by_rating[outcome.score.rating] += 1
        self.by_tier[outcome.score.analysis.match_tier] += 1
        if outcome.status == "below_threshold":
            self.below_threshold += 1
        elif outcome.signal is not None:
            self.opportunities.append(outcome.signal)


class SignalPipeline:
    """Resolve, select comparables, score and upsert across the active listing set."""

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        config: PipelineConfig | None = None,
        *,
        resolver: GeoResolver | None = None,
        selector: ComparableSelector | None = None,
        context: MarketContextProvider | None = None,
        sentiment: SentimentSource | None = None,
        as_of: date | None = None,
    ) -> None:
        self.conn = conn
        self.config = config or PipelineConfig.from_env()
        self.as_of = as_of or date.today()
        self.resolver = resolver or GeoResolver(
            lambda: fetch_geo_references(conn),
            ttl_seconds=self.config.geo_cache_ttl_seconds,
        )
        self.selector = selector or ComparableSelector(
            conn,
            as_of=self.as_of,
            lookback_days=self.config.lookback_days,
        )
        self.context = context or MarketContextProvider(
            conn,
            ttl_seconds=self.config.context_cache_ttl_seconds,
            as_of=self.as_of,
        )
        self.sentiment: SentimentSource = sentiment or self.context.market_context
        self.limiter = (
            SlidingWindowRateLimiter(self.config.rate_limit)
            if self.config.rate_limit > 0
            else None
        )

    async def _select_comparables(
        self, match: GeoMatch, listing: ListingRecord
    ) -> ComparableSet | None:
        async def _query() -> ComparableSet | None:
            if self.limiter is not None:
                await self.limiter.acquire()
            return self.selector.select(
                match,
                listing.property_type,
                bedroom_segment(listing.bedrooms),
                listing.size,
                listing.building_name,
                min_comparables=self.config.min_comparables,
            )

        return await with_retry(
            _query,
            max_retries=self.config.max_retries,
            should_retry=is_transient_error,
        )

    async def process_listing(self, listing: ListingRecord) -> ListingOutcome:
        price_per_area = listing.effective_price_per_area
        if price_per_area is None:
            return ListingOutcome(listing, "skipped", SKIP_NO_PRICE_PER_AREA)

        match = self.resolver.resolve(listing.area_name)
        if not match.is_known:
            return ListingOutcome(listing, "skipped", SKIP_UNKNOWN_GEOGRAPHY)

        comparables = await self._select_comparables(match, listing)
        if comparables is None:
            return ListingOutcome(listing, "skipped", SKIP_INSUFFICIENT_COMPARABLES)

        segment = map_to_segment(listing.property_type, listing.bedrooms)
        score = score_deal(
            listing,
            comparables,
            self.context.yield_context(match.geo_id, segment),
            self.context.liquidity_context(match.geo_id, listing.property_type),
            self.sentiment(match.geo_id, segment),
            as_of=self.as_of,
        )
        if score.composite_score < self.config.min_score:
            return ListingOutcome(listing, "below_threshold", score=score)

        signal = self.build_signal(listing, match, segment, score)
        return ListingOutcome(listing, "signal", score=score, signal=signal)

    def build_signal(
        self,
        listing: ListingRecord,
        match: GeoMatch,
        segment: str,
        score: DealScore,
    ) -> MarketSignal:
        analysis = score.analysis
        reference = analysis.reference_price_per_area
        current = analysis.listing_price_per_area
        delta_pct = round((current - reference) / reference * 100, 1) if reference > 0 else None
        evidence = SignalEvidence(
            composite_score=score.composite_score,
            rating=score.rating,
            score_breakdown=score.breakdown,
            confidence=score.confidence,
            listing_id=listing.listing_id,
            listing_url=listing.listing_url,
            portal=listing.portal,
            property_type=listing.property_type,
            bedrooms=listing.bedrooms,
            size=listing.size,
            asking_price=listing.asking_price,
            listed_date=listing.listed_date,
            geo_confidence=match.confidence,
            analysis=analysis,
        )
        return MarketSignal(
            org_id=self.config.org_id,
            type=SIGNAL_TYPE,
            source=listing.portal,
            source_type="portal",
            geo_type=match.geo_type,
            geo_id=match.geo_id,
            geo_name=match.canonical_name,
            segment=segment,
            current_value=current,
            prev_value=reference or None,
            delta_pct=delta_pct,
            confidence_score=score.confidence,
            severity=determine_severity(score.composite_score),
            signal_key=build_signal_key(
                source=listing.portal,
                signal_type=SIGNAL_TYPE,
                geo_type=match.geo_type,
                geo_id=match.geo_id,
                segment=segment,
                listing_id=listing.listing_id,
            ),
            evidence=evidence,
        )

    async def run(self) -> RunReport:
        """Execute one run. Raises ``GeoReferenceLoadError`` if reference data is unavailable."""

        self.resolver.refresh()
        self.context.clear()

        listings = fetch_active_listings(self.conn)
        report = RunReport(total_listings=len(listings))
        logger.info("Scoring %s active listings.", len(listings))

        def _progress(done: int, total: int) -> None:
            logger.info("Processed %s/%s listings.", done, total)

        outcome = await batch_process(
            listings,
            self.process_listing,
            batch_size=self.config.batch_size,
            delay_between_batches=self.config.batch_delay_seconds,
            on_progress=_progress,
            fatal=(GeoReferenceLoadError,),
        )
        for result in outcome.results:
            report.record(result)
        for failure in outcome.errors:
            logger.error(
                "Failed to score listing %s/%s: %s",
                failure.item.portal,
                failure.item.listing_id,
                failure.error,
            )
            report.failed.append(
                FailedListing(
                    listing_id=failure.item.listing_id,
                    portal=failure.item.portal,
                    error=str(failure.error) or type(failure.error).__name__,
                )
            )

        report.opportunities.sort(
            key=lambda signal: (-signal.evidence.composite_score, signal.signal_key)
        )
        if report.opportunities:
            written, failed_chunks = upsert_market_signals_chunked(self.conn, report.opportunities)
            report.signals_upserted = written
            report.failed_chunks = failed_chunks
        else:
            logger.info("No listings met the minimum score of %s.", self.config.min_score)

        logger.info(
            "Run finished: analyzed=%s skipped=%s failed=%s below_threshold=%s signals=%s",
            report.analyzed,
            report.skipped_total,
            len(report.failed),
            report.below_threshold,
            report.signals_upserted,
        )
        return report


def render_summary(report: RunReport, *, top_n: int = SUMMARY_TOP_N) -> str:
    """Plain-text run summary: stage counts, top opportunities, rating and tier distribution."""

    lines = [
        "Signal generation summary",
        f"  Listings:           {report.total_listings}",
        f"  Analyzed:           {report.analyzed}",
        f"  Skipped:            {report.skipped_total}",
    ]
    for reason, count in sorted(report.skipped.items()):
        lines.append(f"    {reason}: {count}")
    lines.extend(
        [
            f"  Failed:             {len(report.failed)}",
            f"  Below threshold:    {report.below_threshold}",
            f"  Opportunities:      {len(report.opportunities)}",
            f"  Signals upserted:   {report.signals_upserted}",
            f"  Failed chunks:      {report.failed_chunks}",
        ]
    )

    if report.opportunities:
        lines.append("")
        lines.append(f"Top {min(top_n, len(report.opportunities))} opportunities")
        header = f"{'Score':>5}  {'Rating':<24} {'Tier':>4}  {'Area':<24} {'Segment':<9} {'Price/area':>11} {'Reference':>11} {'Delta %':>8}"
        lines.append(header)
        lines.append("-" * len(header))
        for signal in report.opportunities[:top_n]:
            evidence = signal.evidence
            reference = f"{signal.prev_value:,.0f}" if signal.prev_value else "-"
            delta = f"{signal.delta_pct:+.1f}" if signal.delta_pct is not None else "-"
            lines.append(
                f"{evidence.composite_score:>5}  {evidence.rating:<24} {evidence.analysis.match_tier:>4}  "
                f"{signal.geo_name[:24]:<24} {signal.segment:<9} {signal.current_value:>11,.0f} "
                f"{reference:>11} {delta:>8}"
            )

    if report.by_rating:
        lines.append("")
        lines.append("By rating")
        for rating, count in report.by_rating.most_common():
            lines.append(f"  {rating:<24} {count}")
    if report.by_tier:
        lines.append("")
        lines.append("By match tier")
        for tier in sorted(report.by_tier):
            lines.append(f"  tier {tier}: {report.by_tier[tier]}")

    return "\n".join(lines)


async def generate_signals(
    config: PipelineConfig | None = None,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    as_of: date | None = None,
) -> RunReport:
    """Run the pipeline on ``conn`` (or a fresh connection to the configured database)."""

    owns_connection = conn is None
    conn = conn or connect()
    try:
        pipeline = SignalPipeline(conn, config, as_of=as_of)
        return await pipeline.run()
    finally:
        if owns_connection:
            conn.close()


def main(config: PipelineConfig | None = None, *, as_of: date | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    try:
        report = asyncio.run(generate_signals(config, as_of=as_of))
    except GeoReferenceLoadError as exc:
        logger.error("Aborting signal generation: %s", exc)
        return 1
    print(render_summary(report))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
