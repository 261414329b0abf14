"""Kiosk dashboard backend: calendar aggregation, weather and a small JSON API."""

__version__ = "0.3.0"
