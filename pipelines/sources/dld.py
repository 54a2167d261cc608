"""Dubai Land Department (DLD) transaction ingestor.

Pages through the open-data transactions endpoint and normalizes each record
into a ``TransactionRecord``. Sizes stay in square metres as registered.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
from datetime import date
from typing import Any, Callable, Mapping

from pipelines.common import SlidingWindowRateLimiter, fetch_json
from pipelines.model import TransactionRecord
from pipelines.segments import normalize_bedroom_label

DLD_DEFAULT_BASE_URL = "https://api.dubaiapi.ae/dld/v1"
DEFAULT_PAGE_SIZE = 100
MAX_OFFSET = 10_000

_SENTINEL_VALUES = {"", "NA", "N/A", "null"}

logger = logging.getLogger(__name__)


def _resolve_api_key(api_key: str | None) -> str | None:
    resolved = api_key or os.getenv("DLD_API_KEY")
    if not resolved:
        logger.warning(
            "DLD API key missing. Skipping DLD fetch. Set DLD_API_KEY or pass api_key explicitly."
        )
    return resolved


def _resolve_base_url(base_url: str | None) -> str:
    return (base_url or os.getenv("DLD_API_BASE_URL") or DLD_DEFAULT_BASE_URL).rstrip("/")


def _coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        stripped = value.strip().replace(",", "")
        if stripped in _SENTINEL_VALUES:
            return None
        try:
            numeric = float(stripped)
        except ValueError:
            return None
    else:
        return None

    if math.isnan(numeric) or math.isinf(numeric):
        return None
    return numeric


def _parse_date(raw: Any) -> date | None:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None


def _fallback_id(raw: Mapping[str, Any]) -> str:
    # Registry rows occasionally lack ids; derive a stable one so re-ingesting
    # the same page does not duplicate them.
    fingerprint = "|".join(
        str(raw.get(key, ""))
        for key in ("transaction_date", "area_name_en", "building_name", "transaction_value", "procedure_area")
    )
    return "dld-" + hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()[:16]


def normalize_transaction(raw: Mapping[str, Any]) -> TransactionRecord | None:
    """Map one API row to a ``TransactionRecord``; malformed rows return ``None``."""

    price = _coerce_float(raw.get("transaction_value"))
    transaction_date = _parse_date(raw.get("transaction_date"))
    area_name = raw.get("area_name_en") or raw.get("area_name")
    property_type = raw.get("property_sub_type") or raw.get("property_type")
    if not price or price <= 0 or transaction_date is None or not area_name or not property_type:
        return None

    size = _coerce_float(raw.get("procedure_area")) or _coerce_float(raw.get("actual_area"))
    transaction_id = raw.get("transaction_id") or raw.get("transaction_number") or _fallback_id(raw)
    return TransactionRecord(
        transaction_id=str(transaction_id),
        area_name=str(area_name),
        building_name=raw.get("building_name") or raw.get("project_name") or None,
        property_type=str(property_type),
        bedroom_label=normalize_bedroom_label(raw.get("rooms")),
        size=size if size and size > 0 else None,
        price=price,
        price_per_area=price / size if size and size > 0 else None,
        transaction_date=transaction_date,
        transaction_type=str(raw.get("transaction_type") or "sales").lower(),
    )


async def fetch_dld_transactions(
    *,
    from_date: date,
    to_date: date,
    area_name: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    limiter: SlidingWindowRateLimiter | None = None,
    on_progress: Callable[[int, int], None] | None = None,
) -> list[TransactionRecord]:
    """Fetch every sales transaction registered between ``from_date`` and ``to_date``."""

    resolved_key = _resolve_api_key(api_key)
    if not resolved_key:
        return []
    url = f"{_resolve_base_url(base_url)}/transactions"
    headers = {"Authorization": f"Bearer {resolved_key}", "Accept": "application/json"}

    transactions: list[TransactionRecord] = []
    dropped = 0
    offset = 0
    while True:
        params: dict[str, Any] = {
            "from_date": from_date.isoformat(),
            "to_date": to_date.isoformat(),
            "transaction_type": "Sales",
            "limit": page_size,
            "offset": offset,
        }
        if area_name:
            params["area_name"] = area_name

        if limiter is not None:
            await limiter.acquire()
        payload = await fetch_json(url, headers=headers, params=params)

        if not isinstance(payload, Mapping) or not payload.get("success"):
            error = payload.get("error") if isinstance(payload, Mapping) else None
            logger.warning("DLD API returned no data at offset %s: %s", offset, error or "unknown error")
            break
        rows = payload.get("data")
        if not isinstance(rows, list):
            break

        for row in rows:
            record = normalize_transaction(row) if isinstance(row, Mapping) else None
            if record is None:
                dropped += 1
                continue
            transactions.append(record)

        total = int(payload.get("total") or len(transactions))
        if on_progress is not None:
            on_progress(len(transactions), total)

        offset += page_size
        if not payload.get("hasMore") or len(rows) < page_size:
            break
        if offset > MAX_OFFSET:
            logger.warning("DLD pagination stopped at offset %s safety limit.", offset)
            break

    if dropped:
        logger.info("Dropped %s malformed DLD rows.", dropped)
    return transactions


__all__ = [
    "DLD_DEFAULT_BASE_URL",
    "fetch_dld_transactions",
    "normalize_transaction",
]
