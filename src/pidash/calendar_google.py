from __future__ import annotations
from datetime import date, datetime, time, timedelta, timezone, tzinfo
import json
import logging
from typing import Any, Dict, List, Optional

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .errors import CalendarFetchError, SourceConfigError
from .models import NormalizedEvent, normalize_title

logger = logging.getLogger(__name__)

WINDOW_DAYS = 30
DEFAULT_TIMEOUT_SECONDS = 15

_STATUS_MESSAGES = {
    401: (
        "invalid_key",
        "Invalid Google Calendar API key. Please check your API key is correct and has Calendar API access.",
    ),
    403: (
        "permission_denied",
        "Google Calendar API access denied. Check API key permissions and quotas.",
    ),
    404: (
        "not_found",
        "Calendar not found. Please check the Calendar ID is correct and publicly accessible.",
    ),
}
NETWORK_MESSAGE = "Network error connecting to Google Calendar API."


def _parse_datetime(value: str) -> datetime:
    # fromisoformat only learned the Z suffix in 3.11
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def _error_detail(exc: HttpError) -> str:
    try:
        payload = json.loads(exc.content.decode("utf-8"))
        return str(payload["error"]["message"])
    except (AttributeError, ValueError, KeyError, TypeError):
        return getattr(exc, "reason", None) or "Unknown error"


def classify_google_error(exc: Exception) -> CalendarFetchError:
    """Turn a client or transport exception into a readable CalendarFetchError."""
    if isinstance(exc, CalendarFetchError):
        return exc
    if isinstance(exc, HttpError):
        status = int(exc.resp.status)
        if status in _STATUS_MESSAGES:
            kind, message = _STATUS_MESSAGES[status]
            return CalendarFetchError(message, kind=kind, status=status)
        return CalendarFetchError(
            f"Google Calendar API error ({status}): {_error_detail(exc)}",
            kind="upstream",
            status=status,
        )
    if isinstance(exc, (httplib2.HttpLib2Error, OSError)):
        return CalendarFetchError(NETWORK_MESSAGE, kind="network")
    return CalendarFetchError(f"Failed to fetch Google Calendar events: {exc}", kind="upstream")


def _list_events(
    api_key: str,
    calendar_id: str,
    time_min: datetime,
    time_max: datetime,
    max_results: int,
    timeout: float,
) -> List[Dict[str, Any]]:
    http = httplib2.Http(timeout=timeout)
    try:
        service = build(
            "calendar",
            "v3",
            developerKey=api_key,
            http=http,
            cache_discovery=False,
        )
        resp = service.events().list(
            calendarId=calendar_id,
            timeMin=time_min.isoformat(),
            timeMax=time_max.isoformat(),
            singleEvents=True,
            orderBy="startTime",
            maxResults=max_results,
        ).execute()
    except Exception as exc:  # noqa: BLE001
        raise classify_google_error(exc) from exc
    finally:
        http.close()
    return list(resp.get("items", []))


def _normalize_item(item: Dict[str, Any], tz: tzinfo) -> NormalizedEvent:
    start_obj = item.get("start") or {}
    end_obj = item.get("end") or {}

    if start_obj.get("dateTime"):
        original_start = start_obj["dateTime"]
        original_end = end_obj.get("dateTime") or original_start
        start = _parse_datetime(original_start)
        end = _parse_datetime(original_end)
        all_day = False
    elif start_obj.get("date"):
        # All-day: local midnight through the last second of the end date
        original_start = start_obj["date"]
        original_end = end_obj.get("date") or original_start
        start = datetime.combine(date.fromisoformat(original_start), time.min, tzinfo=tz)
        end = datetime.combine(date.fromisoformat(original_end), time(23, 59, 59), tzinfo=tz)
        all_day = True
    else:
        raise ValueError(f"event {item.get('id')!r} has no start")

    return NormalizedEvent(
        id=str(item.get("id", "")),
        title=normalize_title(item.get("summary")),
        start=start.astimezone(timezone.utc),
        end=end.astimezone(timezone.utc),
        original_start=original_start,
        original_end=original_end,
        is_all_day=all_day,
        description=item.get("description") or "",
        location=item.get("location") or "",
        status=item.get("status") or "confirmed",
    )


def fetch_google_events(
    api_key: str,
    calendar_id: str,
    max_results: int = 10,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> List[NormalizedEvent]:
    if not api_key or not calendar_id:
        raise SourceConfigError("Google source requires apiKey and calendarId")

    now = now or datetime.now(timezone.utc)
    items = _list_events(api_key, calendar_id, now, now + timedelta(days=WINDOW_DAYS), max_results, timeout)
    logger.info("Google Calendar %s returned %d events", calendar_id, len(items))

    events: List[NormalizedEvent] = []
    for item in items:
        try:
            events.append(_normalize_item(item, tz))
        except (ValueError, TypeError) as exc:
            logger.debug("Skipping Google event %s: %s", item.get("id"), exc)

    upcoming = [e for e in events if e.start > now]
    upcoming.sort(key=lambda e: e.start)
    return upcoming


def check_google_connection(
    api_key: str,
    calendar_id: str,
    now: Optional[datetime] = None,
    timeout: float = 10,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    items = _list_events(api_key, calendar_id, now, now + timedelta(days=7), 1, timeout)
    return {
        "success": True,
        "message": "Calendar API key is working correctly",
        "eventsFound": len(items),
        "calendarId": calendar_id,
    }
