from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Callable, Generic, Hashable, Optional, Tuple, TypeVar

V = TypeVar("V")


class TTLCache(Generic[V]):
    """
    Bounded map with per-entry expiry.

    Entries are evicted when they expire or, once `capacity` is reached, in
    least-recently-used order. The clock is injectable so tests can move time
    without sleeping.
    """

    def __init__(
        self,
        capacity: int,
        default_ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cap = max(1, capacity)
        self._ttl = max(0.0, default_ttl)
        self._clock = clock
        self._lock = threading.RLock()
        # key -> (value, expires_at)
        self._map: OrderedDict[Hashable, Tuple[V, float]] = OrderedDict()

    def _purge_expired(self) -> None:
        now = self._clock()
        dead = [k for k, (_, exp) in self._map.items() if exp <= now]
        for k in dead:
            self._map.pop(k, None)

    def get(self, key: Hashable) -> Optional[V]:
        with self._lock:
            pair = self._map.get(key)
            if pair is None:
                return None
            value, exp = pair
            if exp <= self._clock():
                self._map.pop(key, None)
                return None
            self._map.move_to_end(key, last=True)
            return value

    def set(self, key: Hashable, value: V, ttl: Optional[float] = None) -> None:
        ttl = self._ttl if ttl is None else max(0.0, ttl)
        if ttl == 0:
            return
        expires_at = self._clock() + ttl
        with self._lock:
            self._purge_expired()
            if key in self._map:
                self._map.move_to_end(key, last=True)
            self._map[key] = (value, expires_at)
            while len(self._map) > self._cap:
                self._map.popitem(last=False)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._map.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._map.clear()

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._map)
