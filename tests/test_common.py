import asyncio
import time

import httpx
import pytest

from pipelines.cache import TTLCache
from pipelines.common import (
    SlidingWindowRateLimiter,
    batch_process,
    is_transient_error,
    rate_limited,
    with_retry,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_try_acquire_never_exceeds_ceiling():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, 1.0, clock=clock)

    assert [limiter.try_acquire() for _ in range(5)] == [True, True, True, False, False]
    assert limiter.stats().remaining == 0

    clock.now += 0.5
    assert limiter.try_acquire() is False

    clock.now += 0.5
    assert limiter.try_acquire() is True
    assert limiter.stats().remaining == 2


def test_window_slides_per_request():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 1.0, clock=clock)
    assert limiter.try_acquire()
    clock.now += 0.6
    assert limiter.try_acquire()
    clock.now += 0.5
    # Only the first timestamp has left the window.
    assert limiter.try_acquire()
    assert not limiter.try_acquire()
    stats = limiter.stats()
    assert stats.remaining == 0
    assert stats.reset_in == pytest.approx(0.5)


def test_acquire_blocks_until_window_slides():
    limiter = SlidingWindowRateLimiter(2, 0.2)

    async def scenario() -> float:
        start = time.monotonic()
        for _ in range(3):
            await limiter.acquire()
        return time.monotonic() - start

    elapsed = asyncio.run(scenario())
    assert elapsed >= 0.18


def test_limiter_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0)
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(1, 0)


def test_rate_limited_wrapper_acquires_slot():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(5, 1.0, clock=clock)

    async def double(value: int) -> int:
        return value * 2

    wrapped = rate_limited(double, limiter)
    assert asyncio.run(wrapped(21)) == 42
    assert limiter.stats().remaining == 4


def test_with_retry_recovers_from_transient_failures():
    calls = []

    async def flaky() -> str:
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("reset")
        return "ok"

    result = asyncio.run(with_retry(flaky, max_retries=3, initial_delay=0.01, max_delay=0.02))
    assert result == "ok"
    assert len(calls) == 3


def test_with_retry_reraises_after_exhaustion():
    calls = []

    async def always_fails() -> None:
        calls.append(1)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        asyncio.run(with_retry(always_fails, max_retries=2, initial_delay=0.01, max_delay=0.01))
    assert len(calls) == 3


def test_with_retry_respects_predicate():
    calls = []

    async def bad_input() -> None:
        calls.append(1)
        raise ValueError("bad")

    with pytest.raises(ValueError):
        asyncio.run(
            with_retry(
                bad_input,
                max_retries=5,
                initial_delay=0.01,
                should_retry=lambda exc: isinstance(exc, ConnectionError),
            )
        )
    assert len(calls) == 1


def test_is_transient_error():
    request = httpx.Request("GET", "https://example.com")

    def status_error(code: int) -> httpx.HTTPStatusError:
        response = httpx.Response(code, request=request)
        return httpx.HTTPStatusError("boom", request=request, response=response)

    assert is_transient_error(status_error(429))
    assert is_transient_error(status_error(503))
    assert not is_transient_error(status_error(404))
    assert is_transient_error(httpx.ConnectTimeout("slow", request=request))
    assert is_transient_error(TimeoutError())
    assert not is_transient_error(ValueError("nope"))


def test_batch_process_isolates_failures_and_keeps_order():
    progress = []

    async def processor(value: int) -> int:
        await asyncio.sleep(0)
        if value % 4 == 0:
            raise ValueError(f"bad {value}")
        return value * 10

    outcome = asyncio.run(
        batch_process(
            range(1, 10),
            processor,
            batch_size=3,
            delay_between_batches=0,
            on_progress=lambda done, total: progress.append((done, total)),
        )
    )

    assert outcome.results == [10, 20, 30, 50, 60, 70, 90]
    assert [error.item for error in outcome.errors] == [4, 8]
    assert all(isinstance(error.error, ValueError) for error in outcome.errors)
    assert progress == [(3, 9), (6, 9), (9, 9)]


def test_batch_process_bounds_concurrency():
    active = 0
    peak = 0

    async def processor(value: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return value

    outcome = asyncio.run(batch_process(range(12), processor, batch_size=4, delay_between_batches=0))
    assert len(outcome.results) == 12
    assert peak <= 4


def test_batch_process_reraises_fatal_errors():
    class ReferenceDataMissing(RuntimeError):
        pass

    async def processor(value: int) -> int:
        if value == 2:
            raise ReferenceDataMissing("gone")
        return value

    with pytest.raises(ReferenceDataMissing):
        asyncio.run(
            batch_process(range(5), processor, batch_size=2, fatal=(ReferenceDataMissing,))
        )


def test_ttl_cache_expires_entries():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    loads = []

    def loader() -> str:
        loads.append(1)
        return "value"

    assert cache.get_or_load("key", loader) == "value"
    assert cache.get_or_load("key", loader) == "value"
    assert len(loads) == 1
    assert "key" in cache

    clock.now += 11
    assert "key" not in cache
    assert cache.get("key", None) is None
    with pytest.raises(KeyError):
        cache.get("key")

    cache.get_or_load("key", loader)
    assert len(loads) == 2


def test_ttl_cache_remembers_none():
    cache = TTLCache(10, clock=FakeClock())
    loads = []

    def loader():
        loads.append(1)
        return None

    assert cache.get_or_load("miss", loader) is None
    assert cache.get_or_load("miss", loader) is None
    assert len(loads) == 1
