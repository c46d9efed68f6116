"""Per-station NYC subway departures aggregated from the MTA realtime feeds."""

__version__ = "0.1.0"
