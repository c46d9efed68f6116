from __future__ import annotations

import csv
import io
import logging
import math
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, TypedDict

import requests

from ..cache import STATIONS_KEY, Cache


REQUEST_TIMEOUT_SECONDS = 12
EARTH_RADIUS_METERS = 6371000.0

STATION_COLUMNS = ("gtfsstopid", "stopname", "gtfslatitude", "gtfslongitude")
ROUTE_COLUMNS = ("gtfsstopid", "daytimeroutes")

logger = logging.getLogger(__name__)


class StationOutput(TypedDict, total=False):
    gtfs_stop_id: str
    stop_name: str
    lat: float
    lon: float
    routes: List[str]


@dataclass(frozen=True)
class Station:
    stop_id: str
    name: str
    lat: float
    lon: float
    routes: Tuple[str, ...] = ()

    def to_dict(self) -> StationOutput:
        output: StationOutput = {
            "gtfs_stop_id": self.stop_id,
            "stop_name": self.name,
            "lat": self.lat,
            "lon": self.lon,
        }
        if self.routes:
            output["routes"] = list(self.routes)
        return output


class StationDataError(RuntimeError):
    pass


class StationNotFoundError(LookupError):
    pass


def normalize_header(value: str) -> str:
    value = value.strip().lower()
    for char in (" ", "_", "-", "/", "."):
        value = value.replace(char, "")
    return value


def parse_csv_headers(
    reader: Iterator[List[str]],
    needed: Sequence[str],
    source: str,
    normalize: bool = True,
) -> Dict[str, int]:
    try:
        headers = next(reader)
    except StopIteration as exc:
        raise StationDataError(f"{source} csv is empty.") from exc
    logger.debug("%s csv header (raw): %s", source, headers)
    index: Dict[str, int] = {}
    for position, header in enumerate(headers):
        key = normalize_header(header) if normalize else header.strip().lower()
        index[key] = position
    missing = [column for column in needed if column not in index]
    if missing:
        raise StationDataError(f"{source} csv missing column(s): {', '.join(missing)}")
    return index


def _cell(row: Sequence[str], index: Dict[str, int], column: str) -> str:
    position = index[column]
    return row[position].strip() if position < len(row) else ""


def parse_stations_csv(text: str) -> List[Station]:
    reader = csv.reader(io.StringIO(text))
    index = parse_csv_headers(reader, STATION_COLUMNS, "stations")
    stations: List[Station] = []
    for row in reader:
        if not row:
            continue
        stop_id = _cell(row, index, "gtfsstopid")
        try:
            lat = float(_cell(row, index, "gtfslatitude") or 0.0)
            lon = float(_cell(row, index, "gtfslongitude") or 0.0)
        except ValueError:
            continue
        if not stop_id or lat == 0 or lon == 0:
            continue
        stations.append(
            Station(stop_id=stop_id, name=_cell(row, index, "stopname"), lat=lat, lon=lon)
        )
    return stations


def parse_route_mapping_csv(text: str) -> Dict[str, Tuple[str, ...]]:
    reader = csv.reader(io.StringIO(text))
    index = parse_csv_headers(reader, ROUTE_COLUMNS, "mta-stations")
    routes_by_stop: Dict[str, Tuple[str, ...]] = {}
    for row in reader:
        if not row:
            continue
        stop_id = _cell(row, index, "gtfsstopid")
        routes = tuple(_cell(row, index, "daytimeroutes").split())
        if not stop_id or not routes:
            continue
        routes_by_stop[stop_id] = routes
    return routes_by_stop


def apply_route_mapping(
    stations: Iterable[Station],
    routes_by_stop: Dict[str, Tuple[str, ...]],
) -> List[Station]:
    return [
        replace(station, routes=routes_by_stop[station.stop_id])
        if station.stop_id in routes_by_stop
        else station
        for station in stations
    ]


def _download_text(url: str, label: str, timeout_seconds: float) -> str:
    try:
        response = requests.get(url, timeout=timeout_seconds)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise StationDataError(f"Failed to download {label}: {exc}") from exc
    return response.content.decode("utf-8-sig")


def load_stations(
    csv_url: str,
    routes_csv_url: Optional[str] = None,
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
) -> Tuple[Station, ...]:
    """Download the station list and merge in serving routes where available.

    The route mapping is optional: when it cannot be loaded, stations keep an
    empty route list and every feed is queried for them.
    """
    stations = parse_stations_csv(_download_text(csv_url, "stations", timeout_seconds))
    if not stations:
        raise StationDataError("Stations csv produced no usable rows.")
    if routes_csv_url:
        try:
            routes_by_stop = parse_route_mapping_csv(
                _download_text(routes_csv_url, "route mapping", timeout_seconds)
            )
        except StationDataError as exc:
            logger.warning("Failed to load route mappings: %s", exc)
        else:
            stations = apply_route_mapping(stations, routes_by_stop)
            logger.info("Loaded route mappings for %s stops", len(routes_by_stop))
    return tuple(stations)


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class StationDirectory:
    """Holds the current station snapshot.

    A snapshot is an immutable tuple that is replaced wholesale on refresh, so
    readers always see one self-consistent list. The station-list cache bounds
    how long a snapshot counts as fresh; once it expires readers keep using
    the last good snapshot until the background refresh replaces it.
    """

    def __init__(self, cache: Cache, stations: Iterable[Station] = ()) -> None:
        self._cache = cache
        self._lock = threading.Lock()
        self._snapshot: Tuple[Station, ...] = ()
        self._by_id: Dict[str, Station] = {}
        if stations:
            self.replace(stations)

    def replace(self, stations: Iterable[Station]) -> None:
        snapshot = tuple(stations)
        by_id = {station.stop_id: station for station in snapshot}
        with self._lock:
            self._snapshot = snapshot
            self._by_id = by_id
        self._cache.set(STATIONS_KEY, snapshot)

    def refresh(self, loader: Callable[[], Iterable[Station]]) -> bool:
        """Reload via ``loader``; on failure log and keep the previous snapshot."""
        try:
            stations = loader()
        except Exception as exc:
            self._cache.record_error(STATIONS_KEY, str(exc))
            logger.error("Station directory refresh failed, keeping previous snapshot: %s", exc)
            return False
        self.replace(stations)
        logger.info("Loaded %s stations", len(self._snapshot))
        return True

    def is_fresh(self) -> bool:
        return self._cache.get(STATIONS_KEY) is not None

    def stations(self) -> Tuple[Station, ...]:
        cached = self._cache.get(STATIONS_KEY)
        if cached is not None:
            return cached
        with self._lock:
            snapshot = self._snapshot
        if snapshot:
            logger.warning("Station list cache expired; serving last good snapshot of %s stations", len(snapshot))
        return snapshot

    def __len__(self) -> int:
        return len(self.stations())

    def find_by_id(self, stop_id: str) -> Optional[Station]:
        with self._lock:
            return self._by_id.get(stop_id)

    def get_by_id(self, stop_id: str) -> Station:
        station = self.find_by_id(stop_id)
        if station is None:
            raise StationNotFoundError(f"no station with id {stop_id}")
        return station

    def search_by_name(self, term: str) -> List[Station]:
        needle = term.strip().lower()
        if not needle:
            return []
        return [station for station in self.stations() if needle in station.name.lower()]

    def nearest(self, lat: float, lon: float) -> Station:
        stations = self.stations()
        if not stations:
            raise StationNotFoundError("station directory is empty")
        return min(stations, key=lambda station: haversine_meters(lat, lon, station.lat, station.lon))
