from __future__ import annotations

import logging
import time
from typing import Optional, TypedDict

import requests

from ..cache import Cache, make_walk_cache_key


REQUEST_TIMEOUT_SECONDS = 12

logger = logging.getLogger(__name__)


class WalkResult(TypedDict):
    seconds: float
    meters: float


class WalkingTimeError(RuntimeError):
    pass


class WalkingClient:
    """OSRM foot-profile client with a quantized-coordinate cache."""

    def __init__(
        self,
        cache: Cache,
        base_url: str,
        timeout_seconds: float = REQUEST_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._session = session

    def route_url(self, from_lat: float, from_lon: float, to_lat: float, to_lon: float) -> str:
        return (
            f"{self._base_url}/route/v1/foot/"
            f"{from_lon:f},{from_lat:f};{to_lon:f},{to_lat:f}?overview=false"
        )

    def walking_time(self, from_lat: float, from_lon: float, to_lat: float, to_lon: float) -> WalkResult:
        cache_key = make_walk_cache_key(from_lat, from_lon, to_lat, to_lon)
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.info("Walking time cache hit for key %s", cache_key)
            return cached

        url = self.route_url(from_lat, from_lon, to_lat, to_lon)
        http = self._session if self._session is not None else requests
        started = time.monotonic()
        try:
            response = http.get(url, timeout=self._timeout_seconds)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise WalkingTimeError(f"OSRM request failed: {exc}") from exc
        except ValueError as exc:
            raise WalkingTimeError("OSRM response was not valid JSON.") from exc

        routes = payload.get("routes") if isinstance(payload, dict) else None
        if not isinstance(routes, list) or not routes:
            raise WalkingTimeError("OSRM response had zero routes")
        try:
            result: WalkResult = {
                "seconds": float(routes[0]["duration"]),
                "meters": float(routes[0]["distance"]),
            }
        except (KeyError, TypeError, ValueError) as exc:
            raise WalkingTimeError("Malformed OSRM route entry.") from exc

        self._cache.set(cache_key, result)
        logger.info(
            "Walking time OK: duration=%.1fs distance=%.1fm (elapsed %.0f ms) [cached: %s]",
            result["seconds"],
            result["meters"],
            (time.monotonic() - started) * 1000,
            cache_key,
        )
        return result
