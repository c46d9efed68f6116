from __future__ import annotations

import csv
import io
import logging
import threading
import time
import zipfile
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

import requests

from .stations import StationDataError, parse_csv_headers


REQUEST_TIMEOUT_SECONDS = 60
TRIPS_FILENAME = "trips.txt"
TRIP_COLUMNS = ("route_id", "trip_id", "service_id", "trip_headsign", "direction_id")

WEEKDAY = "Weekday"
SATURDAY = "Saturday"
SUNDAY = "Sunday"

logger = logging.getLogger(__name__)


class TripDataError(RuntimeError):
    pass


@dataclass(frozen=True)
class TripRecord:
    route_id: str
    trip_id: str
    service_id: str
    headsign: str
    direction_id: str = ""

    @property
    def service_calendar(self) -> str:
        return classify_service(self.service_id)


def classify_service(service_id: str) -> str:
    """Map a GTFS service id such as ``AFA24GEN-1037-Weekday-00`` to its day class."""
    lowered = service_id.lower()
    for calendar in (WEEKDAY, SATURDAY, SUNDAY):
        if calendar.lower() in lowered:
            return calendar
    return ""


def service_calendar_for(moment: datetime) -> str:
    weekday = moment.weekday()
    if weekday == 6:
        return SUNDAY
    if weekday == 5:
        return SATURDAY
    return WEEKDAY


def parse_trips_csv(text: str) -> List[TripRecord]:
    reader = csv.reader(io.StringIO(text))
    try:
        index = parse_csv_headers(reader, TRIP_COLUMNS, "trips", normalize=False)
    except StationDataError as exc:
        raise TripDataError(str(exc)) from exc

    def cell(row: List[str], column: str) -> str:
        position = index[column]
        return row[position].strip() if position < len(row) else ""

    trips: List[TripRecord] = []
    for row in reader:
        if not row:
            continue
        trip_id = cell(row, "trip_id")
        if not trip_id:
            continue
        trips.append(
            TripRecord(
                route_id=cell(row, "route_id"),
                trip_id=trip_id,
                service_id=cell(row, "service_id"),
                headsign=cell(row, "trip_headsign"),
                direction_id=cell(row, "direction_id"),
            )
        )
    return trips


def extract_trips_from_zip(payload: bytes) -> List[TripRecord]:
    try:
        archive = zipfile.ZipFile(io.BytesIO(payload))
    except zipfile.BadZipFile as exc:
        raise TripDataError(f"Static GTFS archive is not a zip file: {exc}") from exc
    with archive:
        if TRIPS_FILENAME not in archive.namelist():
            raise TripDataError(f"{TRIPS_FILENAME} not found in GTFS zip")
        text = archive.read(TRIPS_FILENAME).decode("utf-8-sig")
    trips = parse_trips_csv(text)
    if not trips:
        raise TripDataError(f"{TRIPS_FILENAME} produced no usable rows.")
    return trips


def load_trips(zip_url: str, timeout_seconds: float = REQUEST_TIMEOUT_SECONDS) -> Tuple[TripRecord, ...]:
    try:
        response = requests.get(zip_url, timeout=timeout_seconds)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise TripDataError(f"Failed to download GTFS zip: {exc}") from exc
    trips = extract_trips_from_zip(response.content)
    logger.info("Loaded %s trips from GTFS data", len(trips))
    return tuple(trips)


class TripIndex:
    """Immutable trip table snapshot, swapped wholesale on refresh."""

    def __init__(self, trips: Iterable[TripRecord] = ()) -> None:
        self._lock = threading.Lock()
        self._trips: Tuple[TripRecord, ...] = tuple(trips)
        self.loaded_at: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_error_at: Optional[int] = None
        self.fetch_count = 0
        self.error_count = 0

    def replace(self, trips: Iterable[TripRecord]) -> None:
        snapshot = tuple(trips)
        with self._lock:
            self._trips = snapshot
            self.loaded_at = int(time.time())
            self.last_error = None
            self.last_error_at = None
            self.fetch_count += 1

    def refresh(self, loader: Callable[[], Iterable[TripRecord]]) -> bool:
        try:
            trips = loader()
        except Exception as exc:
            with self._lock:
                self.last_error = str(exc)
                self.last_error_at = int(time.time())
                self.error_count += 1
            logger.error("Trip index refresh failed, keeping previous snapshot: %s", exc)
            return False
        self.replace(trips)
        return True

    def trips(self) -> Tuple[TripRecord, ...]:
        with self._lock:
            return self._trips

    def __len__(self) -> int:
        return len(self.trips())

    def find_matches(self, trip_id: str) -> List[TripRecord]:
        """Static trips whose id contains the live trip id.

        Live GTFS-realtime ids are a fragment of the static ids (for example
        ``067150_1..N03R`` inside ``AFA24GEN-1037-Weekday-00_067150_1..N03R``),
        so this is a containment scan in load order rather than a keyed lookup.
        """
        if not trip_id:
            return []
        return [trip for trip in self.trips() if trip_id in trip.trip_id]
