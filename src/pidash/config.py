from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict
from zoneinfo import ZoneInfo
import yaml

from .calendar_ical import BROWSER_USER_AGENT


@dataclass
class HttpConfig:
    timeout_seconds: float = 15.0
    user_agent: str = BROWSER_USER_AGENT


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000


@dataclass
class WeatherConfig:
    max_calls_per_day: int = 1000
    max_calls_per_minute: int = 60


@dataclass
class AppConfig:
    timezone: str = "UTC"
    settings_path: str = "data/settings.json"
    http: HttpConfig = field(default_factory=HttpConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    weather: WeatherConfig = field(default_factory=WeatherConfig)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def load_config(path: str) -> AppConfig:
    p = Path(path)
    data: Dict[str, Any] = {}
    if p.exists():
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}

    http = data.get("http", {})
    server = data.get("server", {})
    weather = data.get("weather", {})

    return AppConfig(
        timezone=str(data.get("timezone", "UTC")),
        settings_path=str(data.get("settings_path", "data/settings.json")),
        http=HttpConfig(
            timeout_seconds=float(http.get("timeout_seconds", 15.0)),
            user_agent=str(http.get("user_agent", BROWSER_USER_AGENT)),
        ),
        server=ServerConfig(
            host=str(server.get("host", "0.0.0.0")),
            port=int(server.get("port", 3000)),
        ),
        weather=WeatherConfig(
            max_calls_per_day=int(weather.get("max_calls_per_day", 1000)),
            max_calls_per_minute=int(weather.get("max_calls_per_minute", 60)),
        ),
    )
