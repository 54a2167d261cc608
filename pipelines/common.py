"""Shared utilities for calling external or heavily shared data sources.

Provides the HTTP JSON helper used by ingestors, a sliding-window rate limiter,
retry-with-backoff built on tenacity and a bounded batch processor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    Mapping,
    MutableMapping,
    Sequence,
    TypeVar,
)

import duckdb
import httpx
from tenacity import (
    AsyncRetrying,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_TIMEOUT_SECONDS = 30.0
_DEFAULT_WAIT = wait_exponential(min=1, max=16)
_DEFAULT_STOP = stop_after_attempt(5)

_RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


Headers = Mapping[str, str] | None
Params = Mapping[str, Any] | None
Data = MutableMapping[str, Any] | bytes | str | None
JsonData = Any


def is_transient_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying (throttling, timeouts, I/O)."""

    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.TransportError, TimeoutError, asyncio.TimeoutError)):
        return True
    return isinstance(exc, duckdb.IOException)


@retry(
    wait=_DEFAULT_WAIT,
    stop=_DEFAULT_STOP,
    retry=retry_if_exception(is_transient_error),
    reraise=True,
)
async def fetch_json(
    url: str,
    *,
    headers: Headers = None,
    params: Params = None,
    method: str = "GET",
    data: Data = None,
    json: JsonData = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Any:
    """Execute an HTTP request and return the decoded JSON payload.

    Retries with exponential backoff when transient failures occur (transport
    errors, 429 and 5xx responses). Client errors are raised immediately.
    """

    request_method = method.upper()
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.request(
            request_method,
            url,
            headers=headers,
            params=params,
            data=data,
            json=json,
        )

    response.raise_for_status()
    return response.json()


@dataclass(frozen=True)
class RateLimiterStats:
    remaining: int
    reset_in: float


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` acquisitions in any ``window_seconds`` span.

    ``acquire`` waits cooperatively until the oldest timestamp in the window
    expires; ``try_acquire`` never waits.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 1.0,
        *,
        retry_after: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1.")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive.")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.retry_after = retry_after if retry_after is not None else window_seconds
        self._clock = clock
        self._timestamps: deque[float] = deque()

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def try_acquire(self) -> bool:
        now = self._clock()
        self._cleanup(now)
        if len(self._timestamps) < self.max_requests:
            self._timestamps.append(now)
            return True
        return False

    async def acquire(self) -> None:
        while not self.try_acquire():
            oldest = self._timestamps[0] if self._timestamps else self._clock()
            wait = max(0.0, oldest + self.window_seconds - self._clock()) + 0.001
            await asyncio.sleep(min(wait, self.retry_after))

    def stats(self) -> RateLimiterStats:
        now = self._clock()
        self._cleanup(now)
        remaining = max(0, self.max_requests - len(self._timestamps))
        reset_in = (
            max(0.0, self._timestamps[0] + self.window_seconds - now) if self._timestamps else 0.0
        )
        return RateLimiterStats(remaining=remaining, reset_in=reset_in)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = lambda _exc: True,
) -> T:
    """Await ``fn`` and retry it with capped exponential backoff.

    ``should_retry`` decides which errors are retryable; anything else, or the
    last error once ``max_retries`` retries are spent, is re-raised.
    """

    def _log_retry(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Attempt %s/%s failed, retrying in %.2fs: %s",
            retry_state.attempt_number,
            max_retries + 1,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            exc,
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=initial_delay, min=initial_delay, max=max_delay),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise RuntimeError("unreachable")  # pragma: no cover


def rate_limited(
    fn: Callable[..., Awaitable[R]], limiter: SlidingWindowRateLimiter
) -> Callable[..., Awaitable[R]]:
    async def _wrapped(*args: Any, **kwargs: Any) -> R:
        await limiter.acquire()
        return await fn(*args, **kwargs)

    return _wrapped


@dataclass
class BatchError(Generic[T]):
    item: T
    error: BaseException


@dataclass
class BatchResult(Generic[T, R]):
    results: list[R] = field(default_factory=list)
    errors: list[BatchError[T]] = field(default_factory=list)


async def batch_process(
    items: Sequence[T] | Iterable[T],
    processor: Callable[[T], Awaitable[R]],
    *,
    batch_size: int = 10,
    delay_between_batches: float = 0.1,
    limiter: SlidingWindowRateLimiter | None = None,
    on_progress: Callable[[int, int], None] | None = None,
    fatal: tuple[type[BaseException], ...] = (),
) -> BatchResult[T, R]:
    """Run ``processor`` over ``items`` in fixed-size concurrent batches.

    Failures are collected per item so one bad item never aborts the others,
    except for exception types listed in ``fatal`` which are re-raised.
    Results keep input order among the successful items.
    """

    if batch_size < 1:
        raise ValueError("batch_size must be at least 1.")
    pending = list(items)
    total = len(pending)
    semaphore = asyncio.Semaphore(batch_size)
    outcome = BatchResult[T, R]()

    async def _run(item: T) -> tuple[bool, Any]:
        async with semaphore:
            try:
                if limiter is not None:
                    await limiter.acquire()
                return True, await processor(item)
            except fatal:
                raise
            except Exception as exc:
                return False, exc

    for start in range(0, total, batch_size):
        batch = pending[start : start + batch_size]
        settled = await asyncio.gather(*(_run(item) for item in batch))
        for item, (ok, value) in zip(batch, settled):
            if ok:
                outcome.results.append(value)
            else:
                outcome.errors.append(BatchError(item=item, error=value))

        processed = min(start + batch_size, total)
        if on_progress is not None:
            on_progress(processed, total)
        if processed < total and delay_between_batches > 0:
            await asyncio.sleep(delay_between_batches)

    return outcome


__all__ = [
    "BatchError",
    "BatchResult",
    "DEFAULT_TIMEOUT_SECONDS",
    "RateLimiterStats",
    "SlidingWindowRateLimiter",
    "batch_process",
    "fetch_json",
    "is_transient_error",
    "rate_limited",
    "with_retry",
]
