"""Small in-process cache with per-entry time-to-live."""

from __future__ import annotations

import time
from typing import Callable, Generic, Hashable, TypeVar

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    """Mapping of keys to values that expire ``ttl_seconds`` after being stored.

    Values are replaced wholesale: a refresh builds the new value first and then
    swaps it in with a single assignment, so readers never see partial state.
    ``None`` is a valid cached value (a remembered miss).
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, V]] = {}

    def _lookup(self, key: Hashable):
        entry = self._entries.get(key)
        if entry is None or self._clock() - entry[0] > self.ttl_seconds:
            return _MISSING
        return entry[1]

    def get(self, key: Hashable, default: object = _MISSING):
        value = self._lookup(key)
        if value is _MISSING:
            if default is _MISSING:
                raise KeyError(key)
            return default
        return value

    def set(self, key: Hashable, value: V) -> V:
        self._entries[key] = (self._clock(), value)
        return value

    def get_or_load(self, key: Hashable, loader: Callable[[], V]) -> V:
        cached = self._lookup(key)
        if cached is not _MISSING:
            return cached
        return self.set(key, loader())

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries = {}

    def __contains__(self, key: Hashable) -> bool:
        return self._lookup(key) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["TTLCache"]
