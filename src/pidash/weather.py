from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
import logging
from typing import Any, Callable, Deque, Dict, List, Optional

import requests

from .errors import RateLimitExceeded, WeatherError

logger = logging.getLogger(__name__)

OPENWEATHER_BASE_URL = "https://api.openweathermap.org/data/2.5"
FORECAST_DAYS = 5
FETCH_FAILED_MESSAGE = "Failed to fetch weather data"

_GLYPHS = {
    "01": "☀",
    "02": "⛅",
    "03": "☁",
    "04": "☁",
    "09": "☔",
    "10": "☔",
    "11": "⚡",
    "13": "❄",
    "50": "☁",
}


def weather_glyph(icon_code: str) -> str:
    # OpenWeatherMap codes look like "10d"; day/night share a glyph.
    return _GLYPHS.get((icon_code or "")[:2], "☁")


class RateLimitTracker:
    """Sliding-window call counter for a metered API."""

    def __init__(
        self,
        max_per_day: int = 1000,
        max_per_minute: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_per_day = max_per_day
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._calls: Deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._calls and self._calls[0] <= now - 86400:
            self._calls.popleft()

    def can_make_call(self) -> bool:
        now = self._clock()
        self._prune(now)
        if len(self._calls) >= self.max_per_day:
            return False
        return self.calls_last_minute < self.max_per_minute

    def record_call(self) -> None:
        self._calls.append(self._clock())

    @property
    def calls_today(self) -> int:
        self._prune(self._clock())
        return len(self._calls)

    @property
    def calls_last_minute(self) -> int:
        now = self._clock()
        return sum(1 for t in self._calls if t > now - 60)

    def reset_time(self) -> Optional[datetime]:
        """When the oldest call in the window expires, or None with no calls."""
        self._prune(self._clock())
        if not self._calls:
            return None
        return datetime.fromtimestamp(self._calls[0] + 86400, tz=timezone.utc)

    def usage(self) -> Dict[str, Any]:
        calls_today = self.calls_today
        if calls_today >= self.max_per_day:
            status = "limit_reached"
        elif calls_today >= self.max_per_day * 0.8:
            status = "warning"
        else:
            status = "ok"
        reset_at = self.reset_time()
        return {
            "callsToday": calls_today,
            "maxCallsPerDay": self.max_per_day,
            "remaining": max(self.max_per_day - calls_today, 0),
            "percentUsed": round(calls_today * 100 / self.max_per_day) if self.max_per_day else 100,
            "callsLastMinute": self.calls_last_minute,
            "maxCallsPerMinute": self.max_per_minute,
            "resetTime": reset_at.isoformat() if reset_at else None,
            "status": status,
        }


@dataclass(frozen=True)
class DailyForecast:
    date: datetime
    high: int
    low: int
    current: int
    description: str
    icon: str
    humidity: int
    wind_speed: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "temperature": {"high": self.high, "low": self.low, "current": self.current},
            "description": self.description,
            "icon": self.icon,
            "glyph": weather_glyph(self.icon),
            "humidity": self.humidity,
            "windSpeed": self.wind_speed,
        }


def summarize_forecast(entries: List[Dict[str, Any]], tz: Any = timezone.utc) -> List[DailyForecast]:
    """Group 3-hourly entries by local date: high/low plus the entry nearest noon."""
    by_date: Dict[str, Dict[str, Any]] = {}
    for entry in entries:
        when = datetime.fromtimestamp(entry["dt"], tz=tz)
        temp = float(entry["main"]["temp"])
        day = by_date.setdefault(
            when.date().isoformat(),
            {"max": temp, "min": temp, "noon": None, "noon_diff": 24},
        )
        day["max"] = max(day["max"], temp)
        day["min"] = min(day["min"], temp)
        diff = abs(when.hour - 12)
        if diff < day["noon_diff"]:
            day["noon"] = entry
            day["noon_diff"] = diff

    days: List[DailyForecast] = []
    for day in list(by_date.values())[:FORECAST_DAYS]:
        noon = day["noon"]
        days.append(
            DailyForecast(
                date=datetime.fromtimestamp(noon["dt"], tz=tz),
                high=int(round(day["max"])),
                low=int(round(day["min"])),
                current=int(round(float(noon["main"]["temp"]))),
                description=noon["weather"][0]["description"],
                icon=noon["weather"][0]["icon"],
                humidity=int(noon["main"].get("humidity", 0)),
                wind_speed=float(noon.get("wind", {}).get("speed", 0.0)),
            )
        )
    return days


class WeatherClient:
    def __init__(
        self,
        api_key: str,
        tracker: Optional[RateLimitTracker] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 15,
        base_url: str = OPENWEATHER_BASE_URL,
        tz: tzinfo = timezone.utc,
    ) -> None:
        self.api_key = api_key
        self.tracker = tracker or RateLimitTracker()
        self.timeout = timeout
        self.base_url = base_url
        self.tz = tz
        self._session = session or requests.Session()

    def _get(self, endpoint: str, city: str, units: str) -> Dict[str, Any]:
        if not self.tracker.can_make_call():
            raise RateLimitExceeded()
        self.tracker.record_call()
        try:
            resp = self._session.get(
                f"{self.base_url}/{endpoint}",
                params={"q": city, "appid": self.api_key, "units": units},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.HTTPError as exc:
            raise self._classify(exc, city) from exc
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise WeatherError("Network error. Please check your internet connection.") from exc
        except (requests.RequestException, ValueError) as exc:
            # e.g. an HTML page from a proxy or captive portal
            logger.warning("Unreadable weather response from %s: %s", endpoint, exc)
            raise WeatherError(FETCH_FAILED_MESSAGE) from exc
        if not isinstance(payload, dict):
            raise WeatherError(FETCH_FAILED_MESSAGE)
        return payload

    @staticmethod
    def _classify(exc: requests.HTTPError, city: str) -> WeatherError:
        resp = exc.response
        status = resp.status_code if resp is not None else None
        if status == 401:
            return WeatherError(
                "Invalid API key. Please check your OpenWeatherMap API key is correct and active. "
                "New keys can take up to 2 hours to activate.",
                status=status,
            )
        if status == 404:
            return WeatherError(
                f'City "{city}" not found. Please check the city format (e.g., "Dallas,US", "London,GB").',
                status=status,
            )
        if status == 429:
            return RateLimitExceeded()
        try:
            detail = resp.json().get("message", "Unknown error")
        except (AttributeError, ValueError):
            detail = "Unknown error"
        return WeatherError(f"Weather API error ({status}): {detail}", status=status)

    def current_and_forecast(self, city: str, units: str = "imperial") -> Dict[str, Any]:
        logger.info("Fetching weather for %s", city)
        current = self._get("weather", city, units)
        forecast = self._get("forecast", city, units)

        try:
            icon = current["weather"][0]["icon"]
            return {
                "current": {
                    "temperature": int(round(float(current["main"]["temp"]))),
                    "description": current["weather"][0]["description"],
                    "icon": icon,
                    "glyph": weather_glyph(icon),
                    "humidity": current["main"].get("humidity"),
                    "windSpeed": current.get("wind", {}).get("speed"),
                    "city": current.get("name", city),
                    "country": current.get("sys", {}).get("country", ""),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
                "forecast": [
                    d.to_dict() for d in summarize_forecast(forecast.get("list", []), tz=self.tz)
                ],
            }
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
            logger.warning("Malformed weather payload for %s: %r", city, exc)
            raise WeatherError(FETCH_FAILED_MESSAGE) from exc
