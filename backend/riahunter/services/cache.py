import threading
import time
from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class _Entry:
    expires_at: float
    value: Any


class TTLCache:
    """Small thread-safe TTL cache for per-process lookups (roles, subscription status)."""

    def __init__(
        self,
        *,
        max_items: int = 5000,
        ttl_s: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_items = max(1, int(max_items or 1))
        self._ttl_s = max(1, int(ttl_s or 1))
        self._clock = clock
        self._items: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._items.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._evict_if_needed()
            self._items[key] = _Entry(expires_at=self._clock() + self._ttl_s, value=value)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def _evict_if_needed(self) -> None:
        if len(self._items) < self._max_items:
            return
        now = self._clock()
        for k in list(self._items.keys()):
            if self._items[k].expires_at <= now:
                self._items.pop(k, None)
        while len(self._items) >= self._max_items and self._items:
            self._items.pop(next(iter(self._items)), None)
