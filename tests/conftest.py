"""Shared fixtures and fakes for the departure service tests."""

import time
from typing import Dict, List, Optional, Sequence, Union

import pytest

from subway_departures.cache import Cache
from subway_departures.fetchers.mta import FeedRecord
from subway_departures.fetchers.stations import Station, StationDirectory

# Wednesday 2024-01-10 12:00 in New York.
WEDNESDAY_NOON = 1704906000
# Saturday 2024-01-13 12:00 in New York.
SATURDAY_NOON = 1705165200


class FakeClock:
    """Monotonic clock stand-in that only moves when told to."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFeedClient:
    """Serves canned records per feed; an exception value is raised instead."""

    def __init__(
        self,
        feeds: Dict[str, Union[Sequence[FeedRecord], Exception]],
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.feeds = feeds
        self.delays = delays or {}
        self.calls: List[str] = []

    def get_records(self, feed_name: str) -> List[FeedRecord]:
        self.calls.append(feed_name)
        delay = self.delays.get(feed_name)
        if delay:
            time.sleep(delay)
        value = self.feeds.get(feed_name, [])
        if isinstance(value, Exception):
            raise value
        return list(value)


def make_record(
    stop_id: str,
    trip_id: str = "trip1",
    route_id: str = "6",
    arrival: Optional[int] = None,
    departure: Optional[int] = None,
    sequence: int = 0,
) -> FeedRecord:
    return FeedRecord(
        route_id=route_id,
        trip_id=trip_id,
        stop_id=stop_id,
        arrival_time=arrival,
        departure_time=departure,
        sequence_number=sequence,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def stations() -> List[Station]:
    return [
        Station(stop_id="R14", name="14 St - Union Sq", lat=40.7359, lon=-73.9906, routes=("N", "Q", "R", "W")),
        Station(stop_id="631", name="Grand Central - 42 St", lat=40.7527, lon=-73.9772, routes=("4", "5", "6")),
        Station(stop_id="A32", name="Times Sq - 42 St", lat=40.7553, lon=-73.9877, routes=("A", "C", "E")),
        Station(stop_id="640", name="Brooklyn Bridge - City Hall", lat=40.713065, lon=-74.004131, routes=("4", "5", "6")),
    ]


@pytest.fixture
def directory(stations: List[Station]) -> StationDirectory:
    return StationDirectory(Cache(1, 86400, name="stations", copy_values=False), stations)
