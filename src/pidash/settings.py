from __future__ import annotations

import copy
import json
import logging
import os
import re
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import SettingsError
from .models import SOURCE_TYPES, CalendarSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 10
MAX_EVENTS_LIMIT = 50
MIN_API_KEY_LENGTH = 10
UNITS = ("imperial", "metric", "standard")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "settings": {
        "city": "Dallas,US",
        "units": "imperial",
        "timezone": "auto",
        "weatherApiKey": None,
        "googleCalendarApiKey": None,
        "calendarId": None,
        "maxCalendarEvents": DEFAULT_MAX_EVENTS,
        "calendarSources": [],
    },
    "autoCycle": True,
    "cycleInterval": 10000,
    "lastSaved": None,
}

_REQUIRED_CONFIG = {
    "google": ("apiKey", "calendarId"),
    "ical": ("url",),
}


def validate_source_payload(payload: Dict[str, Any]) -> None:
    if not str(payload.get("name", "")).strip():
        raise ValueError("Calendar source name is required.")
    source_type = payload.get("type")
    if source_type not in SOURCE_TYPES:
        raise ValueError(f"Calendar source type must be one of: {', '.join(SOURCE_TYPES)}.")
    config = payload.get("config") or {}
    if not isinstance(config, dict):
        raise ValueError("Calendar source config must be an object.")
    missing = [k for k in _REQUIRED_CONFIG[source_type] if not str(config.get(k) or "").strip()]
    if missing:
        raise ValueError(f"{source_type} calendar source requires {', '.join(missing)}.")


class SettingsStore:
    """JSON settings file with a single rolling backup next to it."""

    def __init__(self, path: str | Path = "data/settings.json") -> None:
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.stem + ".backup" + self.path.suffix)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            logger.info("No settings file at %s, using defaults", self.path)
            return copy.deepcopy(DEFAULT_SETTINGS)
        try:
            return self._read(self.path)
        except (OSError, ValueError) as exc:
            logger.error("Failed to load settings from %s, trying backup: %s", self.path, exc)
        return self._load_backup()

    def load_strict(self) -> Dict[str, Any]:
        """Like load(), but a corrupt file with no usable backup raises SettingsError."""
        if not self.path.exists():
            return copy.deepcopy(DEFAULT_SETTINGS)
        try:
            return self._read(self.path)
        except (OSError, ValueError) as exc:
            if self.backup_path.exists():
                try:
                    return self._read(self.backup_path)
                except (OSError, ValueError):
                    pass
            raise SettingsError(f"Settings file {self.path} is unreadable: {exc}") from exc

    def save(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            shutil.copyfile(self.path, self.backup_path)
        to_save = dict(data)
        to_save["lastSaved"] = datetime.now(timezone.utc).isoformat()
        self.path.write_text(json.dumps(to_save, indent=2), encoding="utf-8")
        logger.info("Settings saved to %s", self.path)

    def reset(self) -> Dict[str, Any]:
        """Write defaults, taking city and units from DEFAULT_CITY / DEFAULT_UNITS when set."""
        defaults = copy.deepcopy(DEFAULT_SETTINGS)
        settings = defaults["settings"]
        settings["city"] = os.environ.get("DEFAULT_CITY") or settings["city"]
        settings["units"] = os.environ.get("DEFAULT_UNITS") or settings["units"]
        self.save(defaults)
        logger.info("Settings reset to defaults (city=%s, units=%s)", settings["city"], settings["units"])
        return self.load()

    def update_settings(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Apply the admin form's fields; anything left out keeps its stored value."""
        data = self.load()
        settings = data.setdefault("settings", {})

        city = str(payload.get("city") or "").strip()
        if city:
            settings["city"] = re.sub(r"\s*,\s*", ",", city, count=1)
        units = payload.get("units")
        if units:
            if units not in UNITS:
                raise ValueError(f"Units must be one of: {', '.join(UNITS)}.")
            settings["units"] = units
        for field, label in (("weatherApiKey", "weather"), ("googleCalendarApiKey", "Google Calendar")):
            if payload.get(field):
                key = str(payload[field]).strip()
                if len(key) <= MIN_API_KEY_LENGTH:
                    raise ValueError(f"Invalid {label} API key format")
                settings[field] = key
        if payload.get("calendarId"):
            settings["calendarId"] = str(payload["calendarId"]).strip()
        if payload.get("maxCalendarEvents") is not None:
            try:
                max_events = int(payload["maxCalendarEvents"])
            except (TypeError, ValueError):
                max_events = 0
            if not 0 < max_events <= MAX_EVENTS_LIMIT:
                raise ValueError(f"maxCalendarEvents must be between 1 and {MAX_EVENTS_LIMIT}.")
            settings["maxCalendarEvents"] = max_events
        if isinstance(payload.get("autoCycle"), bool):
            data["autoCycle"] = payload["autoCycle"]
        if payload.get("cycleInterval"):
            try:
                data["cycleInterval"] = int(payload["cycleInterval"])
            except (TypeError, ValueError):
                raise ValueError("cycleInterval must be a number of milliseconds.") from None

        self.save(data)
        return self.load()

    def calendar_sources(self, data: Optional[Dict[str, Any]] = None) -> List[CalendarSource]:
        data = data if data is not None else self.load_strict()
        settings = data.get("settings", {})
        sources = [CalendarSource.from_dict(raw) for raw in settings.get("calendarSources") or []]
        if sources:
            return sources

        # Single-calendar installs predate calendarSources
        api_key = settings.get("googleCalendarApiKey") or os.environ.get("GOOGLE_CALENDAR_API_KEY")
        calendar_id = settings.get("calendarId") or os.environ.get("GOOGLE_CALENDAR_ID")
        if api_key and calendar_id:
            return [
                CalendarSource(
                    id="legacy-google",
                    name="Google Calendar",
                    type="google",
                    config={"apiKey": api_key, "calendarId": calendar_id},
                )
            ]
        return []

    def max_calendar_events(self, data: Optional[Dict[str, Any]] = None) -> int:
        data = data if data is not None else self.load_strict()
        raw = data.get("settings", {}).get("maxCalendarEvents", DEFAULT_MAX_EVENTS)
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return DEFAULT_MAX_EVENTS
        if value <= 0:
            return DEFAULT_MAX_EVENTS
        return min(value, MAX_EVENTS_LIMIT)

    def add_source(self, payload: Dict[str, Any]) -> CalendarSource:
        validate_source_payload(payload)
        data = self.load()
        source = CalendarSource.from_dict({**payload, "id": uuid.uuid4().hex})
        data.setdefault("settings", {}).setdefault("calendarSources", []).append(source.to_dict())
        self.save(data)
        return source

    def update_source(self, source_id: str, payload: Dict[str, Any]) -> CalendarSource:
        data = self.load()
        raw_sources = data.setdefault("settings", {}).setdefault("calendarSources", [])
        for idx, raw in enumerate(raw_sources):
            if raw.get("id") != source_id:
                continue
            merged = {**raw, **payload, "id": source_id}
            validate_source_payload(merged)
            source = CalendarSource.from_dict(merged)
            raw_sources[idx] = source.to_dict()
            self.save(data)
            return source
        raise KeyError(source_id)

    def delete_source(self, source_id: str) -> None:
        data = self.load()
        raw_sources = data.setdefault("settings", {}).setdefault("calendarSources", [])
        remaining = [raw for raw in raw_sources if raw.get("id") != source_id]
        if len(remaining) == len(raw_sources):
            raise KeyError(source_id)
        data["settings"]["calendarSources"] = remaining
        self.save(data)

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("settings root must be an object")
        return data

    def _load_backup(self) -> Dict[str, Any]:
        if self.backup_path.exists():
            try:
                data = self._read(self.backup_path)
                logger.info("Settings loaded from backup %s", self.backup_path)
                return data
            except (OSError, ValueError) as exc:
                logger.error("Failed to load backup settings, using defaults: %s", exc)
        return copy.deepcopy(DEFAULT_SETTINGS)
