from __future__ import annotations

import copy
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypedDict

from .config import CacheSettings


STATIONS_KEY = "stations"
WALK_KEY_PRECISION = 4


class CacheEntry(TypedDict):
    data: Any
    inserted_at: Optional[float]
    last_updated: Optional[int]
    last_error: Optional[str]
    last_error_at: Optional[int]
    fetch_count: int
    error_count: int


class Cache:
    """Thread-safe key/value cache with TTL expiry and LRU eviction.

    Values are deep-copied on the way in and out so callers never share
    mutable state through the cache; caches holding immutable tuples can turn
    that off with ``copy_values=False``. Error bookkeeping for a key outlives its
    value so the health report can still see a failing source.
    """

    def __init__(
        self,
        max_size: int,
        ttl_seconds: float,
        name: str = "cache",
        copy_values: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("Cache max_size must be at least 1.")
        self.name = name
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.copy_values = copy_values
        self._clock = clock
        self._lock = threading.Lock()
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()

    def _new_entry(self) -> CacheEntry:
        return {
            "data": None,
            "inserted_at": None,
            "last_updated": None,
            "last_error": None,
            "last_error_at": None,
            "fetch_count": 0,
            "error_count": 0,
        }

    def _ensure_key(self, key: str) -> CacheEntry:
        if key not in self._store:
            self._store[key] = self._new_entry()
        self._store.move_to_end(key)
        self._evict()
        return self._store[key]

    def _copy(self, data: Any) -> Any:
        return copy.deepcopy(data) if self.copy_values else data

    def _evict(self) -> None:
        while len(self._store) > self.max_size:
            self._store.popitem(last=False)

    def _is_fresh(self, entry: CacheEntry) -> bool:
        inserted_at = entry["inserted_at"]
        if inserted_at is None:
            return False
        return self._clock() - inserted_at < self.ttl_seconds

    def get(self, key: str) -> Any:
        """Return a copy of the cached value, or ``None`` on a miss or expiry."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry):
                entry["data"] = None
                entry["inserted_at"] = None
                return None
            self._store.move_to_end(key)
            return self._copy(entry["data"])

    def set(self, key: str, data: Any) -> None:
        with self._lock:
            entry = self._ensure_key(key)
            entry["data"] = self._copy(data)
            entry["inserted_at"] = self._clock()
            entry["last_updated"] = int(time.time())
            entry["last_error"] = None
            entry["last_error_at"] = None
            entry["fetch_count"] += 1

    def record_error(self, key: str, error: str) -> None:
        with self._lock:
            entry = self._ensure_key(key)
            entry["last_error"] = error
            entry["last_error_at"] = int(time.time())
            entry["error_count"] += 1

    def entry(self, key: str) -> CacheEntry:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return self._new_entry()
            return self._snapshot(entry)

    def get_all_metadata(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return {key: self._snapshot(entry) for key, entry in self._store.items()}

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._store.values() if entry["inserted_at"] is not None)

    def _snapshot(self, entry: CacheEntry) -> CacheEntry:
        return {
            "data": self._copy(entry["data"]),
            "inserted_at": entry["inserted_at"],
            "last_updated": entry["last_updated"],
            "last_error": entry["last_error"],
            "last_error_at": entry["last_error_at"],
            "fetch_count": entry["fetch_count"],
            "error_count": entry["error_count"],
        }


@dataclass(frozen=True)
class Caches:
    feeds: Cache
    walking: Cache
    stations: Cache


def build_caches(settings: CacheSettings) -> Caches:
    return Caches(
        feeds=Cache(
            settings.feed_max_entries,
            settings.feed_ttl_seconds,
            name="feeds",
            copy_values=False,
        ),
        walking=Cache(settings.walk_max_entries, settings.walk_ttl_seconds, name="walking"),
        stations=Cache(1, settings.stations_ttl_seconds, name="stations", copy_values=False),
    )


def quantize_coord(coord: float) -> float:
    # 4 decimals is roughly 11 m of latitude
    return round(coord, WALK_KEY_PRECISION)


def make_walk_cache_key(from_lat: float, from_lon: float, to_lat: float, to_lon: float) -> str:
    """Quantize the requester's position; station coordinates stay exact."""
    return "%.4f,%.4f,%.6f,%.6f" % (
        quantize_coord(from_lat),
        quantize_coord(from_lon),
        to_lat,
        to_lon,
    )
