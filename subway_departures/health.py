from __future__ import annotations

import time
from typing import Dict, Optional, TypedDict

from .cache import STATIONS_KEY, Cache
from .fetchers.mta import FEED_URLS
from .fetchers.stations import StationDirectory
from .fetchers.trips import TripIndex


START_TIME = time.time()


class SourceHealth(TypedDict):
    last_update: str
    status: str
    fetch_count: int
    error_count: int


class HealthStatus(TypedDict):
    status: str
    uptime_seconds: int
    stations: SourceHealth
    trips: SourceHealth
    feeds: Dict[str, SourceHealth]


def _format_age(last_updated: Optional[int], now: int) -> str:
    if not last_updated:
        return "never"
    delta = max(0, now - last_updated)
    return f"{delta}s ago"


def _source_status(
    last_updated: Optional[int],
    last_error_at: Optional[int],
    now: int,
    staleness_warning_sec: int,
    staleness_critical_sec: int,
) -> str:
    if last_error_at and (last_updated is None or last_error_at >= last_updated):
        return "error"
    if last_updated is None:
        return "error"
    age = now - last_updated
    if age >= staleness_critical_sec:
        return "error"
    if age >= staleness_warning_sec:
        return "stale"
    return "healthy"


def _feed_status(last_updated: Optional[int], last_error_at: Optional[int]) -> str:
    # Feeds are fetched on demand, so an old or missing fetch is not a fault.
    if last_error_at and (last_updated is None or last_error_at >= last_updated):
        return "error"
    if last_updated is None:
        return "idle"
    return "healthy"


def get_health_status(
    directory: StationDirectory,
    trip_index: TripIndex,
    station_cache: Cache,
    feed_cache: Cache,
    stations_refresh_sec: int,
    trips_refresh_sec: int,
) -> HealthStatus:
    """Summarise the freshness of every upstream source.

    Snapshots count as stale after one missed refresh and as failing after two.
    """
    now = int(time.time())

    station_entry = station_cache.entry(STATIONS_KEY)
    stations: SourceHealth = {
        "last_update": _format_age(station_entry["last_updated"], now),
        "status": _source_status(
            last_updated=station_entry["last_updated"] if len(directory) else None,
            last_error_at=station_entry["last_error_at"],
            now=now,
            staleness_warning_sec=stations_refresh_sec + 60,
            staleness_critical_sec=2 * stations_refresh_sec + 60,
        ),
        "fetch_count": int(station_entry["fetch_count"]),
        "error_count": int(station_entry["error_count"]),
    }
    # An expired station-list cache means readers are on the last good snapshot.
    if stations["status"] == "healthy" and not directory.is_fresh():
        stations["status"] = "stale"

    trips: SourceHealth = {
        "last_update": _format_age(trip_index.loaded_at, now),
        "status": _source_status(
            last_updated=trip_index.loaded_at,
            last_error_at=trip_index.last_error_at,
            now=now,
            staleness_warning_sec=trips_refresh_sec + 60,
            staleness_critical_sec=2 * trips_refresh_sec + 60,
        ),
        "fetch_count": trip_index.fetch_count,
        "error_count": trip_index.error_count,
    }

    metadata = feed_cache.get_all_metadata()
    feeds: Dict[str, SourceHealth] = {}
    for feed_name in FEED_URLS:
        entry = metadata.get(feed_name)
        if entry is None:
            feeds[feed_name] = {"last_update": "never", "status": "idle", "fetch_count": 0, "error_count": 0}
            continue
        feeds[feed_name] = {
            "last_update": _format_age(entry["last_updated"], now),
            "status": _feed_status(entry["last_updated"], entry["last_error_at"]),
            "fetch_count": int(entry["fetch_count"]),
            "error_count": int(entry["error_count"]),
        }

    overall_status = "healthy"
    if stations["status"] == "error":
        overall_status = "down"
    elif (
        stations["status"] == "stale"
        or trips["status"] != "healthy"
        or any(feed["status"] == "error" for feed in feeds.values())
    ):
        overall_status = "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": int(now - START_TIME),
        "stations": stations,
        "trips": trips,
        "feeds": feeds,
    }
