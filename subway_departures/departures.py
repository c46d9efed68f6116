from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypedDict
from zoneinfo import ZoneInfo

from .fetchers.mta import FeedClient, FeedRecord, get_feeds_for_station
from .fetchers.stations import Station, StationDirectory
from .fetchers.trips import TripIndex, service_calendar_for


DIRECTION_SUFFIXES = ("N", "S", "E", "W")
MAX_DEPARTURES_PER_ROUTE_DIRECTION = 2
QUERY_TIMEOUT_SECONDS = 15
MAX_FEED_WORKERS = 8

logger = logging.getLogger(__name__)


class DepartureOutput(TypedDict):
    route_id: str
    stop_id: str
    direction: str
    unix_time: int
    eta_seconds: int
    trip_id: str
    headsign: str
    last_stop_name: str


@dataclass
class Departure:
    route_id: str
    stop_id: str
    direction: str
    unix_time: int
    eta_seconds: int
    trip_id: str
    headsign: str = ""
    last_stop_name: str = ""

    def to_dict(self) -> DepartureOutput:
        return {
            "route_id": self.route_id,
            "stop_id": self.stop_id,
            "direction": self.direction,
            "unix_time": self.unix_time,
            "eta_seconds": self.eta_seconds,
            "trip_id": self.trip_id,
            "headsign": self.headsign,
            "last_stop_name": self.last_stop_name,
        }


def base_stop_id(stop_id: str) -> str:
    """Strip a trailing platform letter: ``"123N"`` -> ``"123"``, ``"4567"`` unchanged."""
    if stop_id and stop_id[-1].isascii() and stop_id[-1].isalpha():
        return stop_id[:-1]
    return stop_id


def stop_matches(station_stop_id: str, feed_stop_id: str) -> bool:
    if feed_stop_id == station_stop_id:
        return True
    return base_stop_id(feed_stop_id) == base_stop_id(station_stop_id)


def direction_from_stop_id(stop_id: str) -> str:
    if stop_id and stop_id[-1] in DIRECTION_SUFFIXES:
        return stop_id[-1]
    return ""


def extract_departure(record: FeedRecord, now_timestamp: int) -> Optional[Departure]:
    departure_ts = record.departure_time or record.arrival_time
    if not departure_ts or departure_ts < now_timestamp:
        return None
    return Departure(
        route_id=record.route_id,
        stop_id=record.stop_id,
        direction=direction_from_stop_id(record.stop_id),
        unix_time=departure_ts,
        eta_seconds=departure_ts - now_timestamp,
        trip_id=record.trip_id,
    )


def limit_departures_by_route_and_direction(
    departures: Iterable[Departure],
    per_key: int = MAX_DEPARTURES_PER_ROUTE_DIRECTION,
) -> List[Departure]:
    counts: Dict[Tuple[str, str], int] = {}
    kept: List[Departure] = []
    for departure in departures:
        key = (departure.route_id, departure.direction)
        if counts.get(key, 0) >= per_key:
            continue
        counts[key] = counts.get(key, 0) + 1
        kept.append(departure)
    return kept


def terminal_stops(records: Iterable[FeedRecord]) -> Dict[str, FeedRecord]:
    """Map each trip id to its highest-sequence stop record."""
    terminals: Dict[str, FeedRecord] = {}
    for record in records:
        if not record.trip_id:
            continue
        current = terminals.get(record.trip_id)
        if current is None or record.sequence_number > current.sequence_number:
            terminals[record.trip_id] = record
    return terminals


def resolve_stop_name(directory: StationDirectory, stop_id: str) -> str:
    station = directory.find_by_id(stop_id)
    if station is None:
        station = directory.find_by_id(base_stop_id(stop_id))
    return station.name if station is not None else ""


def lookup_headsign(trip_index: TripIndex, trip_id: str, service_calendar: str) -> str:
    matches = trip_index.find_matches(trip_id)
    if not matches:
        return ""
    for match in matches:
        if match.service_calendar == service_calendar:
            return match.headsign
    return matches[0].headsign


def resolve_headsign(
    departure: Departure,
    trip_index: TripIndex,
    directory: StationDirectory,
    terminals: Dict[str, FeedRecord],
    service_calendar: str,
) -> None:
    """Fill ``headsign`` and ``last_stop_name`` on ``departure`` in place.

    The static timetable wins; otherwise the name of the trip's last stop in
    the live feed is used. An unresolved headsign stays empty and is left to
    the client to render as a direction word.
    """
    terminal = terminals.get(departure.trip_id)
    if terminal is not None:
        departure.last_stop_name = resolve_stop_name(directory, terminal.stop_id)
    headsign = lookup_headsign(trip_index, departure.trip_id, service_calendar)
    departure.headsign = headsign or departure.last_stop_name


class DepartureService:
    def __init__(
        self,
        feed_client: FeedClient,
        trip_index: TripIndex,
        directory: StationDirectory,
        timezone: str = "America/New_York",
        query_timeout_seconds: float = QUERY_TIMEOUT_SECONDS,
        max_workers: int = MAX_FEED_WORKERS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._feed_client = feed_client
        self._trip_index = trip_index
        self._directory = directory
        self._tz = ZoneInfo(timezone)
        self._query_timeout_seconds = query_timeout_seconds
        self._max_workers = max(1, max_workers)
        self._clock = clock

    def fetch_records(self, feed_names: Sequence[str]) -> Dict[str, List[FeedRecord]]:
        """Fetch every feed concurrently; failed or timed-out feeds are left out."""
        if not feed_names:
            return {}
        results: Dict[str, List[FeedRecord]] = {}
        executor = ThreadPoolExecutor(max_workers=min(len(feed_names), self._max_workers))
        try:
            futures: Dict[Future, str] = {
                executor.submit(self._feed_client.get_records, name): name for name in feed_names
            }
            done, not_done = wait(futures, timeout=self._query_timeout_seconds)
            for future in not_done:
                future.cancel()
                logger.warning(
                    "Feed %s did not finish within %.0fs; skipping it.",
                    futures[future],
                    self._query_timeout_seconds,
                )
            for future in done:
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception as exc:
                    logger.error("fetch error for %s: %s", name, exc)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def departures_for_station(self, station: Station) -> List[Departure]:
        now_timestamp = int(self._clock())
        feed_names = get_feeds_for_station(station)
        logger.info(
            "Station %s serves routes %s, fetching %s feed(s)",
            station.name,
            list(station.routes),
            len(feed_names),
        )
        records_by_feed = self.fetch_records(feed_names)

        all_records: List[FeedRecord] = []
        departures: List[Departure] = []
        for feed_name in feed_names:
            records = records_by_feed.get(feed_name, [])
            all_records.extend(records)
            for record in records:
                if not stop_matches(station.stop_id, record.stop_id):
                    continue
                departure = extract_departure(record, now_timestamp)
                if departure is not None:
                    departures.append(departure)

        departures.sort(key=lambda departure: departure.unix_time)
        departures = limit_departures_by_route_and_direction(departures)

        terminals = terminal_stops(all_records)
        calendar = service_calendar_for(datetime.fromtimestamp(now_timestamp, tz=self._tz))
        for departure in departures:
            resolve_headsign(departure, self._trip_index, self._directory, terminals, calendar)

        logger.info("Station %s produced %s departures after filtering", station.name, len(departures))
        return departures
