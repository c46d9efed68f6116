from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


ROOT_DIR = Path(__file__).resolve().parents[1]
CONFIG_PATH = ROOT_DIR / "config.yaml"

DEFAULT_STATIONS_CSV = "https://data.ny.gov/api/views/39hk-dx4f/rows.csv?accessType=DOWNLOAD"
DEFAULT_ROUTES_CSV = "http://web.mta.info/developers/data/nyct/subway/Stations.csv"
DEFAULT_GTFS_ZIP = "http://web.mta.info/developers/data/nyct/subway/google_transit.zip"
DEFAULT_OSRM_URL = "https://router.project-osrm.org"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float = 40.3
    max_lat: float = 41.1
    min_lon: float = -74.5
    max_lon: float = -73.3

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon


@dataclass(frozen=True)
class CacheSettings:
    feed_ttl_seconds: int = 30
    feed_max_entries: int = 20
    walk_ttl_seconds: int = 24 * 60 * 60
    walk_max_entries: int = 10000
    stations_ttl_seconds: int = 24 * 60 * 60


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8080
    timezone: str = "America/New_York"
    bounding_box: BoundingBox = field(default_factory=BoundingBox)
    stations_csv_url: str = DEFAULT_STATIONS_CSV
    routes_csv_url: str = DEFAULT_ROUTES_CSV
    stations_refresh_hours: int = 24
    gtfs_zip_url: str = DEFAULT_GTFS_ZIP
    trips_refresh_hours: int = 24
    feed_timeout_seconds: float = 12.0
    query_timeout_seconds: float = 15.0
    feed_stale_warning_seconds: int = 120
    osrm_url: str = DEFAULT_OSRM_URL
    walking_timeout_seconds: float = 12.0
    api_key: Optional[str] = None
    cache: CacheSettings = field(default_factory=CacheSettings)


def load_config(config_path: Path = CONFIG_PATH) -> Dict[str, Any]:
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    logger.info("Loading config from %s", config_path)
    with config_path.open() as handle:
        data = yaml.safe_load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping.")
    return data


def _safe_int(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _safe_float(value: Any, fallback: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return fallback


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, dict) else {}


def _string(value: Any, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def build_settings(
    config: Mapping[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build ``Settings`` from a parsed config mapping plus environment overrides.

    Missing or malformed values fall back to the defaults above, so an empty
    mapping yields a working configuration.
    """
    env = os.environ if environ is None else environ
    defaults = Settings()

    server = _section(config, "server")
    bbox = _section(config, "bounding_box")
    stations = _section(config, "stations")
    trips = _section(config, "trips")
    feeds = _section(config, "feeds")
    walking = _section(config, "walking")
    cache = _section(config, "cache")

    default_bbox = BoundingBox()
    bounding_box = BoundingBox(
        min_lat=_safe_float(bbox.get("min_lat"), default_bbox.min_lat),
        max_lat=_safe_float(bbox.get("max_lat"), default_bbox.max_lat),
        min_lon=_safe_float(bbox.get("min_lon"), default_bbox.min_lon),
        max_lon=_safe_float(bbox.get("max_lon"), default_bbox.max_lon),
    )

    default_cache = CacheSettings()
    cache_settings = CacheSettings(
        feed_ttl_seconds=max(1, _safe_int(cache.get("feed_ttl_seconds"), default_cache.feed_ttl_seconds)),
        feed_max_entries=max(1, _safe_int(cache.get("feed_max_entries"), default_cache.feed_max_entries)),
        walk_ttl_seconds=max(1, _safe_int(cache.get("walk_ttl_seconds"), default_cache.walk_ttl_seconds)),
        walk_max_entries=max(1, _safe_int(cache.get("walk_max_entries"), default_cache.walk_max_entries)),
        stations_ttl_seconds=max(
            1, _safe_int(cache.get("stations_ttl_seconds"), default_cache.stations_ttl_seconds)
        ),
    )

    api_key = env.get("MTA_API_KEY") or None

    return Settings(
        host=_string(env.get("HOST"), _string(server.get("host"), defaults.host)),
        port=_safe_int(env.get("PORT"), _safe_int(server.get("port"), defaults.port)),
        timezone=_string(config.get("timezone"), defaults.timezone),
        bounding_box=bounding_box,
        stations_csv_url=_string(
            env.get("STATIONS_CSV"), _string(stations.get("csv_url"), defaults.stations_csv_url)
        ),
        routes_csv_url=_string(stations.get("routes_csv_url"), defaults.routes_csv_url),
        stations_refresh_hours=max(
            1, _safe_int(stations.get("refresh_hours"), defaults.stations_refresh_hours)
        ),
        gtfs_zip_url=_string(trips.get("gtfs_zip_url"), defaults.gtfs_zip_url),
        trips_refresh_hours=max(1, _safe_int(trips.get("refresh_hours"), defaults.trips_refresh_hours)),
        feed_timeout_seconds=_safe_float(feeds.get("timeout_seconds"), defaults.feed_timeout_seconds),
        query_timeout_seconds=_safe_float(
            feeds.get("query_timeout_seconds"), defaults.query_timeout_seconds
        ),
        feed_stale_warning_seconds=max(
            0, _safe_int(feeds.get("stale_warning_seconds"), defaults.feed_stale_warning_seconds)
        ),
        osrm_url=_string(walking.get("osrm_url"), defaults.osrm_url).rstrip("/"),
        walking_timeout_seconds=_safe_float(
            walking.get("timeout_seconds"), defaults.walking_timeout_seconds
        ),
        api_key=api_key,
        cache=cache_settings,
    )


def load_settings(config_path: Optional[Path] = None) -> Settings:
    path = config_path
    if path is None:
        override = os.environ.get("SUBWAY_CONFIG")
        path = Path(override) if override else CONFIG_PATH
    return build_settings(load_config(path))
