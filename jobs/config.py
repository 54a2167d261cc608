"""Runtime configuration for the signal jobs and upstream rate-limit presets."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Callable, TypeVar

from dotenv import load_dotenv

T = TypeVar("T")

DEFAULT_ORG_ID = "11111111-1111-1111-1111-111111111111"


@dataclass(frozen=True)
class RateLimitPreset:
    """Sliding-window limit for one upstream: ``max_requests`` per ``window_seconds``."""

    key: str
    max_requests: int
    window_seconds: float = 1.0


API_RATE_LIMITS: tuple[RateLimitPreset, ...] = (
    RateLimitPreset(key="dld", max_requests=10),
    RateLimitPreset(key="bayut", max_requests=5),
    RateLimitPreset(key="propertyfinder", max_requests=5),
    RateLimitPreset(key="default", max_requests=3),
)


def get_rate_limit(key: str) -> RateLimitPreset:
    for preset in API_RATE_LIMITS:
        if preset.key == key:
            return preset
    return get_rate_limit("default")


def _env(name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from exc


@dataclass(frozen=True)
class PipelineConfig:
    """Knobs for one signal-generation run."""

    min_score: int = 55
    min_comparables: int = 3
    batch_size: int = 25
    batch_delay_seconds: float = 0.1
    # Store queries per second; 0 disables the limiter.
    rate_limit: int = 10
    max_retries: int = 3
    org_id: str = DEFAULT_ORG_ID
    geo_cache_ttl_seconds: float = 300.0
    context_cache_ttl_seconds: float = 300.0
    lookback_days: int = 730

    @classmethod
    def from_env(cls, **overrides: object) -> "PipelineConfig":
        """Build a config from ``SIGNALS_*`` and related environment variables.

        Keyword overrides (e.g. from CLI flags) win over the environment; ``None``
        overrides are ignored.
        """

        load_dotenv()
        values = {
            "min_score": _env("SIGNALS_MIN_SCORE", cls.min_score, int),
            "min_comparables": _env("SIGNALS_MIN_COMPARABLES", cls.min_comparables, int),
            "batch_size": _env("SIGNALS_BATCH_SIZE", cls.batch_size, int),
            "batch_delay_seconds": _env("SIGNALS_BATCH_DELAY", cls.batch_delay_seconds, float),
            "rate_limit": _env("SIGNALS_RATE_LIMIT", cls.rate_limit, int),
            "max_retries": _env("SIGNALS_MAX_RETRIES", cls.max_retries, int),
            "org_id": _env("SIGNALS_ORG_ID", cls.org_id, str),
            "geo_cache_ttl_seconds": _env("GEO_CACHE_TTL_SECONDS", cls.geo_cache_ttl_seconds, float),
            "context_cache_ttl_seconds": _env(
                "CONTEXT_CACHE_TTL_SECONDS", cls.context_cache_ttl_seconds, float
            ),
            "lookback_days": _env("COMPARABLE_LOOKBACK_DAYS", cls.lookback_days, int),
        }
        known = {field.name for field in fields(cls)}
        for name, value in overrides.items():
            if name not in known:
                raise TypeError(f"Unknown config field '{name}'")
            if value is not None:
                values[name] = value
        return cls(**values)


__all__ = [
    "API_RATE_LIMITS",
    "DEFAULT_ORG_ID",
    "PipelineConfig",
    "RateLimitPreset",
    "get_rate_limit",
]
