from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

UNTITLED = "Untitled Event"
SOURCE_TYPES = ("google", "ical")


def normalize_title(value: Any) -> str:
    """Collapse the several shapes a summary can arrive in into one string."""
    if isinstance(value, dict):
        value = value.get("val", value.get("value"))
    elif value is not None and not isinstance(value, str):
        # vobject-style content lines keep the text in .value
        value = getattr(value, "val", getattr(value, "value", value))
    if value is None:
        return UNTITLED
    text = str(value).strip()
    return text or UNTITLED


def isoformat_z(value: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class CalendarSource:
    id: str
    name: str
    type: str                   # "google" / "ical"
    enabled: bool = True
    color: str = "#4285f4"
    icon: str = "calendar"
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalendarSource":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            type=str(data.get("type", "")),
            enabled=bool(data.get("enabled", True)),
            color=str(data.get("color", "#4285f4")),
            icon=str(data.get("icon", "calendar")),
            config=dict(data.get("config") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "enabled": self.enabled,
            "color": self.color,
            "icon": self.icon,
            "config": dict(self.config),
        }


@dataclass(frozen=True)
class NormalizedEvent:
    id: str
    title: str
    start: datetime             # timezone-aware
    end: datetime               # timezone-aware
    original_start: str = ""
    original_end: str = ""
    is_all_day: bool = False
    description: str = ""
    location: str = ""
    status: str = "confirmed"
    source: Optional[str] = None
    source_id: Optional[str] = None
    color: Optional[str] = None
    icon: Optional[str] = None

    def tagged(self, source: CalendarSource) -> "NormalizedEvent":
        return replace(
            self,
            source=source.name,
            source_id=source.id,
            color=source.color,
            icon=source.icon,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "start": isoformat_z(self.start),
            "end": isoformat_z(self.end),
            "originalStart": self.original_start or isoformat_z(self.start),
            "originalEnd": self.original_end or isoformat_z(self.end),
            "isAllDay": self.is_all_day,
            "description": self.description,
            "location": self.location,
            "status": self.status,
        }
        if self.source_id is not None:
            payload.update(
                {
                    "source": self.source,
                    "sourceId": self.source_id,
                    "color": self.color,
                    "icon": self.icon,
                }
            )
        return payload
