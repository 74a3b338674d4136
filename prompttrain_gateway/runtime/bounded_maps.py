from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass(slots=True)
class _Entry[V]:
    value: V
    stored_at: float


class ExpiringLruMap[K, V]:
    """Size-bounded LRU map whose entries also expire after ``ttl_seconds``."""

    def __init__(
        self,
        *,
        max_keys: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ):
        self._max_keys = max(1, int(max_keys))
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._data: OrderedDict[K, _Entry[V]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def _expired(self, entry: _Entry[V], now: float) -> bool:
        return now - entry.stored_at >= self._ttl_seconds

    def get(self, key: K, default: V | None = None) -> V | None:
        entry = self._data.get(key)
        if entry is None:
            return default
        if self._expired(entry, self._clock()):
            del self._data[key]
            return default
        self._data.move_to_end(key)
        return entry.value

    def set(self, key: K, value: V) -> None:
        self._data[key] = _Entry(value=value, stored_at=self._clock())
        self._data.move_to_end(key)
        while len(self._data) > self._max_keys:
            self._data.popitem(last=False)

    def prune(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._data.items() if self._expired(entry, now)]
        for key in expired:
            del self._data[key]
        return len(expired)

    def clear(self) -> None:
        self._data.clear()
