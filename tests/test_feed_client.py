"""Tests for realtime feed fetching and decoding."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from subway_departures.cache import Cache
from subway_departures.fetchers.mta import (
    FEED_URLS,
    FeedClient,
    FeedError,
    FeedRecord,
    _fetch_feed,
    records_from_trips,
)


def _update(stop_id, arrival=None, departure=None, **extra):
    return SimpleNamespace(stop_id=stop_id, arrival=arrival, departure=departure, **extra)


def _trip(trip_id, route_id, updates):
    return SimpleNamespace(trip_id=trip_id, route_id=route_id, stop_time_updates=updates)


ARRIVAL = datetime(2024, 1, 10, 17, 5, tzinfo=timezone.utc)


def _decoded_feed(trips, generated=None):
    feed = MagicMock()
    feed.filter_trips.return_value = trips
    feed.last_generated = generated or datetime.now(timezone.utc)
    return feed


class TestRecordsFromTrips:
    """Flattening decoded trips into feed records."""

    def test_one_record_per_stop_update(self) -> None:
        trips = [
            _trip(
                "067150_6..N01R",
                "6",
                [
                    _update("631N", arrival=ARRIVAL),
                    _update("630N", departure=ARRIVAL + timedelta(minutes=2)),
                ],
            )
        ]

        records = records_from_trips(trips)

        assert records == [
            FeedRecord("6", "067150_6..N01R", "631N", int(ARRIVAL.timestamp()), None, 0),
            FeedRecord("6", "067150_6..N01R", "630N", None, int(ARRIVAL.timestamp()) + 120, 1),
        ]

    def test_uses_stop_sequence_when_present(self) -> None:
        trips = [_trip("t", "L", [_update("L08N", arrival=ARRIVAL, stop_sequence=17)])]

        assert records_from_trips(trips)[0].sequence_number == 17

    def test_skips_updates_without_stop_id(self) -> None:
        trips = [_trip("t", "L", [_update(None, arrival=ARRIVAL), _update("L08N")])]

        records = records_from_trips(trips)

        assert [record.stop_id for record in records] == ["L08N"]
        assert records[0].arrival_time is None
        assert records[0].departure_time is None

    def test_trip_without_updates(self) -> None:
        assert records_from_trips([_trip("t", "L", None)]) == []

    def test_integer_timestamps_pass_through(self) -> None:
        trips = [_trip("t", "G", [_update("G22N", arrival=1704906300)])]

        assert records_from_trips(trips)[0].arrival_time == 1704906300


class TestFetchFeed:
    """The HTTP fetch for a single feed."""

    def test_sends_api_key_and_decodes_body(self) -> None:
        response = MagicMock(status_code=200, content=b"protobuf")
        with patch("subway_departures.fetchers.mta.NYCTFeed") as feed_cls, patch(
            "subway_departures.fetchers.mta.requests.get", return_value=response
        ) as get:
            feed = _fetch_feed("gtfs-l", "secret", 5)

        get.assert_called_once_with(FEED_URLS["gtfs-l"], headers={"x-api-key": "secret"}, timeout=5)
        feed_cls.assert_called_once_with(FEED_URLS["gtfs-l"], fetch_immediately=False)
        feed.load_gtfs_bytes.assert_called_once_with(b"protobuf")

    def test_no_key_sends_no_headers(self) -> None:
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, content=b"")
        with patch("subway_departures.fetchers.mta.NYCTFeed"):
            _fetch_feed("gtfs-g", None, 5, session=session)

        session.get.assert_called_once_with(FEED_URLS["gtfs-g"], headers=None, timeout=5)

    def test_http_error_propagates(self) -> None:
        response = MagicMock(status_code=403, content=b"")
        response.raise_for_status.side_effect = requests.HTTPError("403 Forbidden")
        with patch("subway_departures.fetchers.mta.NYCTFeed"), patch(
            "subway_departures.fetchers.mta.requests.get", return_value=response
        ):
            with pytest.raises(requests.HTTPError):
                _fetch_feed("gtfs-ace", None, 5)


class TestFeedClient:
    """Caching and error handling around feed fetches."""

    def test_fetches_and_caches_records(self) -> None:
        cache = Cache(20, 30, copy_values=False)
        client = FeedClient(cache)
        feed = _decoded_feed([_trip("t1", "L", [_update("L08N", arrival=ARRIVAL)])])

        with patch("subway_departures.fetchers.mta._fetch_feed", return_value=feed) as fetch:
            first = client.get_records("gtfs-l")
            second = client.get_records("gtfs-l")

        fetch.assert_called_once()
        assert first == second
        assert first[0].stop_id == "L08N"
        assert cache.entry("gtfs-l")["fetch_count"] == 1

    def test_unknown_feed_raises(self) -> None:
        with pytest.raises(FeedError, match="Unknown feed"):
            FeedClient(Cache(20, 30)).get_records("gtfs-xyz")

    def test_network_error_is_recorded(self) -> None:
        cache = Cache(20, 30)
        client = FeedClient(cache)

        with patch(
            "subway_departures.fetchers.mta._fetch_feed",
            side_effect=requests.ConnectionError("unreachable"),
        ):
            with pytest.raises(FeedError, match="Network error"):
                client.get_records("gtfs-ace")

        entry = cache.entry("gtfs-ace")
        assert entry["error_count"] == 1
        assert "unreachable" in entry["last_error"]
        assert cache.get("gtfs-ace") is None

    def test_decode_error_is_recorded(self) -> None:
        cache = Cache(20, 30)
        client = FeedClient(cache)
        feed = MagicMock()
        feed.filter_trips.side_effect = ValueError("bad protobuf")

        with patch("subway_departures.fetchers.mta._fetch_feed", return_value=feed):
            with pytest.raises(FeedError, match="Failed to decode"):
                client.get_records("gtfs-g")

        assert cache.entry("gtfs-g")["error_count"] == 1

    def test_stale_feed_is_still_served(self, caplog: pytest.LogCaptureFixture) -> None:
        client = FeedClient(Cache(20, 30), stale_threshold_seconds=60)
        generated = datetime.now(timezone.utc) - timedelta(minutes=10)
        feed = _decoded_feed([_trip("t1", "G", [_update("G22N", arrival=ARRIVAL)])], generated)

        with patch("subway_departures.fetchers.mta._fetch_feed", return_value=feed):
            records = client.get_records("gtfs-g")

        assert len(records) == 1
        assert "stale" in caplog.text
