from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

import requests
from nyct_gtfs import NYCTFeed

from ..cache import Cache
from .stations import Station


FEED_URLS: Dict[str, str] = {
    "gtfs-1234567": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs",
    "gtfs-ace": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-ace",
    "gtfs-bdfm": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-bdfm",
    "gtfs-g": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-g",
    "gtfs-jz": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-jz",
    "gtfs-l": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-l",
    "gtfs-nqrw": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-nqrw",
    "gtfs-si": "https://api-endpoint.mta.info/Dataservice/mtagtfsfeeds/nyct%2Fgtfs-si",
}

LINE_TO_FEED: Dict[str, str] = {
    "1": "gtfs-1234567",
    "2": "gtfs-1234567",
    "3": "gtfs-1234567",
    "4": "gtfs-1234567",
    "5": "gtfs-1234567",
    "6": "gtfs-1234567",
    "7": "gtfs-1234567",
    "GS": "gtfs-1234567",  # 42 St Shuttle
    "A": "gtfs-ace",
    "C": "gtfs-ace",
    "E": "gtfs-ace",
    "H": "gtfs-ace",  # Rockaway Park Shuttle
    "FS": "gtfs-ace",  # Franklin Av Shuttle
    "B": "gtfs-bdfm",
    "D": "gtfs-bdfm",
    "F": "gtfs-bdfm",
    "M": "gtfs-bdfm",
    "G": "gtfs-g",
    "J": "gtfs-jz",
    "Z": "gtfs-jz",
    "L": "gtfs-l",
    "N": "gtfs-nqrw",
    "Q": "gtfs-nqrw",
    "R": "gtfs-nqrw",
    "W": "gtfs-nqrw",
    "SI": "gtfs-si",
    "SIR": "gtfs-si",
}

# A bare "S" in the station list could be any of the shuttles.
SHUTTLE_FEEDS = ("gtfs-1234567", "gtfs-ace")
EXPRESS_SUFFIX = "X"

FEED_TIMEOUT_SECONDS = 12
STALE_THRESHOLD_SECONDS = 120

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedRecord:
    route_id: str
    trip_id: str
    stop_id: str
    arrival_time: Optional[int]
    departure_time: Optional[int]
    sequence_number: int


class FeedError(RuntimeError):
    pass


def _feeds_for_route(route: str) -> List[str]:
    feed = LINE_TO_FEED.get(route)
    if feed is not None:
        return [feed]
    if len(route) > 1 and route.endswith(EXPRESS_SUFFIX):
        feed = LINE_TO_FEED.get(route[: -len(EXPRESS_SUFFIX)])
        if feed is not None:
            return [feed]
    if route == "S":
        return list(SHUTTLE_FEEDS)
    return []


def get_feeds_for_station(station: Station) -> List[str]:
    """Return the feed names that can carry departures for ``station``.

    Without route information, or when none of its routes is recognised, every
    feed is returned.
    """
    if not station.routes:
        logger.info("No route information for station %s, using all feeds", station.name)
        return list(FEED_URLS.keys())

    required: Set[str] = set()
    for route in station.routes:
        feeds = _feeds_for_route(route.strip().upper())
        if not feeds:
            logger.warning("Unknown route '%s' for station %s; skipping feed mapping.", route, station.name)
            continue
        required.update(feeds)

    if not required:
        logger.info(
            "No feeds matched for station %s routes %s, using all feeds",
            station.name,
            list(station.routes),
        )
        return list(FEED_URLS.keys())
    return [feed for feed in FEED_URLS.keys() if feed in required]


def _fetch_feed(
    feed_name: str,
    api_key: Optional[str],
    timeout_seconds: float,
    session: Optional[requests.Session] = None,
) -> NYCTFeed:
    feed_url = FEED_URLS[feed_name]
    feed = NYCTFeed(feed_url, fetch_immediately=False)
    headers = {"x-api-key": api_key} if api_key else None
    http = session if session is not None else requests
    response = http.get(feed_url, headers=headers, timeout=timeout_seconds)
    if response.status_code in {401, 403}:
        logger.error(
            "MTA feed request unauthorized for %s (HTTP %s).",
            feed_name,
            response.status_code,
        )
    response.raise_for_status()
    feed.load_gtfs_bytes(response.content)
    return feed


def _to_timestamp(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp())
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def records_from_trips(trips: Iterable[Any]) -> List[FeedRecord]:
    """Flatten decoded trips into one ``FeedRecord`` per (trip, stop) pair."""
    records: List[FeedRecord] = []
    for trip in trips:
        route_id = str(getattr(trip, "route_id", "") or "").strip()
        trip_id = str(getattr(trip, "trip_id", "") or "").strip()
        for position, update in enumerate(getattr(trip, "stop_time_updates", None) or []):
            stop_id = getattr(update, "stop_id", None)
            if not stop_id:
                continue
            sequence = getattr(update, "stop_sequence", None)
            records.append(
                FeedRecord(
                    route_id=route_id,
                    trip_id=trip_id,
                    stop_id=stop_id,
                    arrival_time=_to_timestamp(getattr(update, "arrival", None)),
                    departure_time=_to_timestamp(getattr(update, "departure", None)),
                    sequence_number=sequence if isinstance(sequence, int) else position,
                )
            )
    return records


def _warn_if_stale(feed_name: str, feed: NYCTFeed, now_timestamp: int, threshold: int) -> None:
    last_generated = getattr(feed, "last_generated", None)
    if not isinstance(last_generated, datetime):
        return
    age = now_timestamp - int(last_generated.timestamp())
    if age > threshold:
        logger.warning("Feed %s is stale: generated %ss ago at %s.", feed_name, age, last_generated)


class FeedClient:
    """Fetches and decodes feeds, caching the decoded records per feed name."""

    def __init__(
        self,
        cache: Cache,
        api_key: Optional[str] = None,
        timeout_seconds: float = FEED_TIMEOUT_SECONDS,
        stale_threshold_seconds: int = STALE_THRESHOLD_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cache = cache
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._stale_threshold_seconds = stale_threshold_seconds
        self._session = session
        if not api_key:
            logger.info("MTA_API_KEY is not set; fetching feeds without authentication.")

    def get_records(self, feed_name: str) -> List[FeedRecord]:
        """Return the decoded records for ``feed_name``.

        Raises ``FeedError`` for unknown feeds, network failures, HTTP errors and
        undecodable payloads; failures are recorded on the cache entry.
        """
        cached = self._cache.get(feed_name)
        if cached is not None:
            return list(cached)
        if feed_name not in FEED_URLS:
            raise FeedError(f"Unknown feed {feed_name}")

        started = time.monotonic()
        try:
            feed = _fetch_feed(feed_name, self._api_key, self._timeout_seconds, self._session)
            records = records_from_trips(feed.filter_trips())
        except requests.RequestException as exc:
            self._cache.record_error(feed_name, str(exc))
            raise FeedError(f"Network error while fetching feed {feed_name}: {exc}") from exc
        except Exception as exc:
            self._cache.record_error(feed_name, str(exc))
            raise FeedError(f"Failed to decode feed {feed_name}: {exc}") from exc

        _warn_if_stale(feed_name, feed, int(time.time()), self._stale_threshold_seconds)
        self._cache.set(feed_name, tuple(records))
        logger.info(
            "Fetched feed %s: %s stop updates in %.0f ms",
            feed_name,
            len(records),
            (time.monotonic() - started) * 1000,
        )
        return records
