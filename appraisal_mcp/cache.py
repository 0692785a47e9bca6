"""Bounded LRU cache injected into clients and the listings aggregator."""

from __future__ import annotations

import time
from collections import OrderedDict
from typing import Any


class LRUCache:
    """In-memory LRU cache with a capped entry count and optional TTL."""

    def __init__(self, max_entries: int = 256, ttl: float | None = 300.0) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._store: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self._max_entries = max_entries
        self._ttl = ttl

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        ts, value = entry
        if self._ttl is not None and time.monotonic() - ts > self._ttl:
            del self._store[key]
            return None
        self._store.move_to_end(key)
        return value

    def set(self, key: str, value: Any) -> None:
        self._store[key] = (time.monotonic(), value)
        self._store.move_to_end(key)
        while len(self._store) > self._max_entries:
            self._store.popitem(last=False)

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None
