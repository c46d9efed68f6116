"""Tests for the OSRM walking time client."""

from unittest.mock import MagicMock

import pytest
import requests

from subway_departures.cache import Cache
from subway_departures.fetchers.walking import WalkingClient, WalkingTimeError


def _session(payload=None, error=None) -> MagicMock:
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    session.get.return_value = response
    return session


OSRM_OK = {"code": "Ok", "routes": [{"duration": 412.3, "distance": 530.8}]}


class TestWalkingClient:
    """Walking time lookups."""

    def test_route_url_uses_lon_lat_order(self) -> None:
        client = WalkingClient(Cache(10, 60), "https://osrm.example/")

        url = client.route_url(40.7848, -73.9711, 40.785868, -73.968916)

        assert url == (
            "https://osrm.example/route/v1/foot/"
            "-73.971100,40.784800;-73.968916,40.785868?overview=false"
        )

    def test_returns_duration_and_distance(self) -> None:
        session = _session(OSRM_OK)
        client = WalkingClient(Cache(10, 60), "https://osrm.example", timeout_seconds=3, session=session)

        result = client.walking_time(40.7848, -73.9711, 40.785868, -73.968916)

        assert result == {"seconds": 412.3, "meters": 530.8}
        assert session.get.call_args.kwargs["timeout"] == 3

    def test_nearby_origin_hits_cache(self) -> None:
        session = _session(OSRM_OK)
        client = WalkingClient(Cache(10, 60), "https://osrm.example", session=session)

        client.walking_time(40.784791, -73.971081, 40.785868, -73.968916)
        result = client.walking_time(40.784812, -73.971099, 40.785868, -73.968916)

        assert session.get.call_count == 1
        assert result["seconds"] == pytest.approx(412.3)

    def test_request_failure_raises(self) -> None:
        client = WalkingClient(
            Cache(10, 60), "https://osrm.example", session=_session(error=requests.Timeout("slow"))
        )

        with pytest.raises(WalkingTimeError, match="OSRM request failed"):
            client.walking_time(40.78, -73.97, 40.79, -73.96)

    def test_zero_routes_raises(self) -> None:
        client = WalkingClient(
            Cache(10, 60), "https://osrm.example", session=_session({"code": "NoRoute", "routes": []})
        )

        with pytest.raises(WalkingTimeError, match="zero routes"):
            client.walking_time(40.78, -73.97, 40.79, -73.96)

    def test_malformed_route_raises(self) -> None:
        client = WalkingClient(
            Cache(10, 60), "https://osrm.example", session=_session({"routes": [{"duration": 1}]})
        )

        with pytest.raises(WalkingTimeError, match="Malformed"):
            client.walking_time(40.78, -73.97, 40.79, -73.96)

    def test_invalid_json_raises(self) -> None:
        session = _session(OSRM_OK)
        session.get.return_value.json.side_effect = ValueError("no json")
        client = WalkingClient(Cache(10, 60), "https://osrm.example", session=session)

        with pytest.raises(WalkingTimeError, match="valid JSON"):
            client.walking_time(40.78, -73.97, 40.79, -73.96)

    def test_failures_are_not_cached(self) -> None:
        cache = Cache(10, 60)
        session = _session(error=requests.ConnectionError("down"))
        client = WalkingClient(cache, "https://osrm.example", session=session)

        for _ in range(2):
            with pytest.raises(WalkingTimeError):
                client.walking_time(40.78, -73.97, 40.79, -73.96)

        assert session.get.call_count == 2
        assert len(cache) == 0
