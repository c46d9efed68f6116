from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS

from .cache import Caches, build_caches
from .config import Settings, load_settings
from .departures import Departure, DepartureService
from .fetchers.mta import FeedClient
from .fetchers.stations import Station, StationDirectory, StationNotFoundError, load_stations
from .fetchers.trips import TripIndex, TripRecord, load_trips
from .fetchers.walking import WalkingClient, WalkingTimeError, WalkResult
from .health import get_health_status


DEPARTURES_CACHE_CONTROL = "public, max-age=30, stale-while-revalidate=10"

logger = logging.getLogger(__name__)


class InvalidQueryError(ValueError):
    pass


@dataclass
class Services:
    settings: Settings
    caches: Caches
    directory: StationDirectory
    trip_index: TripIndex
    departures: DepartureService
    walking: WalkingClient


def build_services(
    settings: Settings,
    stations: Tuple[Station, ...] = (),
    trips: Tuple[TripRecord, ...] = (),
    caches: Optional[Caches] = None,
) -> Services:
    caches = caches or build_caches(settings.cache)
    directory = StationDirectory(caches.stations, stations)
    trip_index = TripIndex(trips)
    feed_client = FeedClient(
        caches.feeds,
        api_key=settings.api_key,
        timeout_seconds=settings.feed_timeout_seconds,
        stale_threshold_seconds=settings.feed_stale_warning_seconds,
    )
    departures = DepartureService(
        feed_client,
        trip_index,
        directory,
        timezone=settings.timezone,
        query_timeout_seconds=settings.query_timeout_seconds,
    )
    walking = WalkingClient(
        caches.walking,
        settings.osrm_url,
        timeout_seconds=settings.walking_timeout_seconds,
    )
    return Services(
        settings=settings,
        caches=caches,
        directory=directory,
        trip_index=trip_index,
        departures=departures,
        walking=walking,
    )


def parse_lat_lon(args: Mapping[str, str]) -> Tuple[float, float]:
    lat_raw = (args.get("lat") or "").strip()
    lon_raw = (args.get("lon") or "").strip()
    if not lat_raw or not lon_raw:
        raise InvalidQueryError("missing lat or lon")
    try:
        return float(lat_raw), float(lon_raw)
    except ValueError as exc:
        raise InvalidQueryError("invalid lat or lon") from exc


def _required_arg(args: Mapping[str, str], name: str) -> str:
    value = (args.get(name) or "").strip()
    if not value:
        raise InvalidQueryError(f"missing {name}")
    return value


def _departures_response(
    station: Station,
    departures: List[Departure],
    walking: Optional[WalkResult] = None,
) -> Response:
    payload: Dict[str, Any] = {
        "station": station.to_dict(),
        "departures": [departure.to_dict() for departure in departures],
    }
    if walking is not None:
        payload["walking"] = walking
    response = jsonify(payload)
    response.headers["Cache-Control"] = DEPARTURES_CACHE_CONTROL
    return response


def create_app(services: Services) -> Flask:
    app = Flask(__name__)
    CORS(app)
    app.extensions["subway_services"] = services

    @app.before_request
    def _log_request_start() -> None:
        g.request_started = time.monotonic()
        logger.info("Request received: %s %s", request.method, request.full_path.rstrip("?"))

    @app.after_request
    def _log_request_end(response: Response) -> Response:
        started = getattr(g, "request_started", None)
        if started is not None:
            logger.info(
                "Request completed in %.2f ms (HTTP %s)",
                (time.monotonic() - started) * 1000,
                response.status_code,
            )
        return response

    @app.errorhandler(InvalidQueryError)
    def _invalid_query(exc: InvalidQueryError) -> Tuple[Response, int]:
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(StationNotFoundError)
    def _not_found(exc: StationNotFoundError) -> Tuple[Response, int]:
        return jsonify({"error": str(exc)}), 404

    @app.route("/api/stops")
    def api_stops() -> Any:
        return jsonify([station.to_dict() for station in services.directory.stations()])

    @app.route("/api/departures/nearest")
    def api_nearest() -> Any:
        lat, lon = parse_lat_lon(request.args)
        if not services.settings.bounding_box.contains(lat, lon):
            raise InvalidQueryError("location outside NYC area")

        nearest = services.directory.nearest(lat, lon)
        logger.info(
            "Nearest station to (%.6f, %.6f) is %s [%s] at (%.6f, %.6f)",
            lat,
            lon,
            nearest.name,
            nearest.stop_id,
            nearest.lat,
            nearest.lon,
        )
        departures = services.departures.departures_for_station(nearest)

        walking: Optional[WalkResult] = None
        try:
            walking = services.walking.walking_time(lat, lon, nearest.lat, nearest.lon)
        except WalkingTimeError as exc:
            logger.warning("Walking time unavailable: %s", exc)
        return _departures_response(nearest, departures, walking)

    @app.route("/api/departures/by-name")
    def api_by_name() -> Any:
        name = _required_arg(request.args, "name")
        matched = services.directory.search_by_name(name)
        if not matched:
            raise StationNotFoundError("no station matched by name")
        logger.info("by-name matched %s station records for name %r", len(matched), name)
        station = matched[0]
        return _departures_response(station, services.departures.departures_for_station(station))

    @app.route("/api/departures/by-id")
    def api_by_id() -> Any:
        stop_id = _required_arg(request.args, "id")
        station = services.directory.get_by_id(stop_id)
        return _departures_response(station, services.departures.departures_for_station(station))

    @app.route("/health")
    def health_alias() -> Any:
        return api_health()

    @app.route("/api/health")
    def api_health() -> Any:
        settings = services.settings
        status = get_health_status(
            services.directory,
            services.trip_index,
            services.caches.stations,
            services.caches.feeds,
            stations_refresh_sec=settings.stations_refresh_hours * 3600,
            trips_refresh_sec=settings.trips_refresh_hours * 3600,
        )
        return jsonify(status)

    return app


def refresh_stations_task(services: Services) -> None:
    settings = services.settings
    services.directory.refresh(
        lambda: load_stations(settings.stations_csv_url, settings.routes_csv_url)
    )


def refresh_trips_task(services: Services) -> None:
    services.trip_index.refresh(lambda: load_trips(services.settings.gtfs_zip_url))


def start_scheduler(services: Services) -> BackgroundScheduler:
    settings = services.settings
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        refresh_stations_task,
        "interval",
        hours=settings.stations_refresh_hours,
        args=[services],
        id="refresh_stations",
    )
    scheduler.add_job(
        refresh_trips_task,
        "interval",
        hours=settings.trips_refresh_hours,
        args=[services],
        id="refresh_trips",
    )
    scheduler.start()
    logger.info(
        "Scheduler started: stations every %sh, trips every %sh",
        settings.stations_refresh_hours,
        settings.trips_refresh_hours,
    )
    return scheduler


def bootstrap(settings: Settings) -> Services:
    """Load the station directory and trip index; either failing is fatal."""
    stations = load_stations(settings.stations_csv_url, settings.routes_csv_url)
    logger.info("Loaded %s stations", len(stations))
    trips = load_trips(settings.gtfs_zip_url)
    logger.info("Loaded %s trips", len(trips))
    services = build_services(settings, stations=stations)
    services.trip_index.replace(trips)
    return services


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    try:
        settings = load_settings()
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        sys.exit(1)

    try:
        services = bootstrap(settings)
    except Exception as exc:
        logger.error("Startup data load failed: %s", exc)
        sys.exit(1)

    scheduler = start_scheduler(services)
    app = create_app(services)
    logger.info("Flask server starting on http://%s:%s", settings.host, settings.port)
    try:
        app.run(host=settings.host, port=settings.port, threaded=True)
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    main()
