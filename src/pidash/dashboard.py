from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .aggregator import aggregate_events, build_fetchers, error_fallback_events
from .calendar_google import check_google_connection
from .calendar_ical import check_ical_feed
from .config import AppConfig
from .errors import WeatherError
from .models import CalendarSource, NormalizedEvent
from .settings import SettingsStore
from .weather import RateLimitTracker, WeatherClient

logger = logging.getLogger(__name__)

CALENDAR_FAILURE_MESSAGE = "Failed to fetch calendar events"
SECRET_SETTINGS = (("weatherApiKey", "hasWeatherApiKey"), ("googleCalendarApiKey", "hasGoogleCalendarApiKey"))


class DashboardService:
    """Operations behind the dashboard/admin HTTP API and the CLI."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Optional[SettingsStore] = None,
        tracker: Optional[RateLimitTracker] = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store or SettingsStore(self.config.settings_path)
        self.tracker = tracker or RateLimitTracker(
            max_per_day=self.config.weather.max_calls_per_day,
            max_per_minute=self.config.weather.max_calls_per_minute,
        )
        self.fetchers = build_fetchers(
            timeout=self.config.http.timeout_seconds,
            user_agent=self.config.http.user_agent,
        )

    def calendar_events(self, now: Optional[datetime] = None) -> List[NormalizedEvent]:
        data = self.store.load_strict()
        sources = self.store.calendar_sources(data)
        max_results = self.store.max_calendar_events(data)
        return aggregate_events(
            sources,
            max_results,
            now=now,
            tz=self.config.tz,
            fetchers=self.fetchers,
        )

    def calendar_payload(self, now: Optional[datetime] = None) -> tuple[int, Any]:
        try:
            events = self.calendar_events(now=now)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Calendar aggregation failed: %s", exc)
            fallback = error_fallback_events(CALENDAR_FAILURE_MESSAGE, now=now)
            return 500, {
                "error": CALENDAR_FAILURE_MESSAGE,
                "fallbackEvents": [e.to_dict() for e in fallback],
            }
        return 200, [e.to_dict() for e in events]

    def test_google(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        api_key = str(payload.get("apiKey") or "").strip()
        calendar_id = str(payload.get("calendarId") or "").strip()
        if not api_key:
            raise ValueError("No Google Calendar API key provided")
        if not calendar_id:
            raise ValueError("No Calendar ID provided")
        return check_google_connection(api_key, calendar_id, timeout=self.config.http.timeout_seconds)

    def test_ical(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = str(payload.get("url") or "").strip()
        if not url:
            raise ValueError("No iCal URL provided")
        return check_ical_feed(
            url,
            tz=self.config.tz,
            timeout=self.config.http.timeout_seconds,
            user_agent=self.config.http.user_agent,
        )

    def list_sources(self) -> List[Dict[str, Any]]:
        return [s.to_dict() for s in self.store.calendar_sources(self.store.load())]

    def add_source(self, payload: Dict[str, Any]) -> CalendarSource:
        return self.store.add_source(payload)

    def update_source(self, source_id: str, payload: Dict[str, Any]) -> CalendarSource:
        return self.store.update_source(source_id, payload)

    def delete_source(self, source_id: str) -> None:
        self.store.delete_source(source_id)

    def dashboard_state(self) -> Dict[str, Any]:
        """Stored settings for the admin page, with API keys reduced to presence flags."""
        data = self.store.load()
        settings = dict(data.get("settings", {}))
        for key, flag in SECRET_SETTINGS:
            settings[flag] = bool(settings.pop(key, None))
        return {**data, "settings": settings}

    def update_settings(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.store.update_settings(payload)
        return {"success": True, "state": self.dashboard_state()}

    def reset_settings(self) -> Dict[str, Any]:
        self.store.reset()
        return {"success": True, "message": "Settings reset to defaults", "state": self.dashboard_state()}

    def usage(self) -> Dict[str, Any]:
        return self.tracker.usage()

    def weather(self, city: Optional[str] = None, units: Optional[str] = None) -> Dict[str, Any]:
        settings = self.store.load().get("settings", {})
        api_key = settings.get("weatherApiKey") or os.environ.get("WEATHER_API_KEY")
        if not api_key:
            raise WeatherError(
                "Weather API key not configured. Please add your OpenWeatherMap API key in the admin panel."
            )
        client = WeatherClient(
            api_key,
            tracker=self.tracker,
            timeout=self.config.http.timeout_seconds,
            tz=self.config.tz,
        )
        return client.current_and_forecast(
            city or settings.get("city") or "Dallas,US",
            units or settings.get("units") or "imperial",
        )

    @staticmethod
    def health() -> Dict[str, Any]:
        return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}
