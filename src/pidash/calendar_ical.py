"""iCal/webcal feed fetching and VEVENT normalization.

Consumer calendar exports are inconsistent about how they encode time zones,
so every DTSTART/DTEND goes through two steps:

1. resolve the value the parser gives us into a UTC instant, and
2. apply any per-zone correction registered in ``TZ_CORRECTIONS``.

All-day detection runs on the raw DTSTART token first and only falls back to
the instants when the token is a regular timestamp.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from icalendar import Calendar

from .errors import CalendarFetchError
from .models import NormalizedEvent, isoformat_z, normalize_title

logger = logging.getLogger(__name__)

WINDOW_DAYS = 14
DEFAULT_TIMEOUT_SECONDS = 15
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ONE_DAY = timedelta(days=1)


def _chicago_cdt(raw: datetime) -> datetime:
    # The wall clock was read as UTC; add the CDT offset back.
    # Fixed at +5h all year, so Standard Time events land one hour early.
    return raw + timedelta(hours=5)


# Zones whose TZID-qualified local times are read as UTC wall clock and then
# shifted by the registered function.
TZ_CORRECTIONS: Dict[str, Callable[[datetime], datetime]] = {
    "America/Chicago": _chicago_cdt,
}


@dataclass(frozen=True)
class ParsedTime:
    raw: str                    # token as it appeared after the colon
    tzid: Optional[str]
    instant: datetime           # UTC, before any zone correction
    is_date: bool = False

    def corrected(self) -> datetime:
        fix = TZ_CORRECTIONS.get(self.tzid or "")
        return fix(self.instant) if fix else self.instant


def normalize_feed_url(url: str) -> str:
    url = url.strip()
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://"):]
    return url


def parse_time(prop: Any, tz: tzinfo = timezone.utc) -> ParsedTime:
    """Resolve an icalendar date/date-time property to an uncorrected UTC instant."""
    raw = prop.to_ical().decode("utf-8")
    tzid = prop.params.get("TZID")
    value = prop.dt

    if not isinstance(value, datetime):
        if not isinstance(value, date):
            raise ValueError(f"unsupported time value {raw!r}")
        instant = datetime.combine(value, time.min, tzinfo=tz)
        return ParsedTime(raw=raw, tzid=tzid, instant=instant.astimezone(timezone.utc), is_date=True)

    if tzid and tzid in TZ_CORRECTIONS:
        instant = value.replace(tzinfo=timezone.utc)
    elif value.tzinfo is None:
        # Floating time: take it as local wall clock
        instant = value.replace(tzinfo=tz)
    else:
        instant = value
    return ParsedTime(raw=raw, tzid=tzid, instant=instant.astimezone(timezone.utc))


def is_all_day(raw_start: str, start: datetime, end: datetime, tz: tzinfo = timezone.utc) -> bool:
    if len(raw_start) == 8 and "T" not in raw_start and ":" not in raw_start:
        return True
    if _ISO_DATE_RE.match(raw_start):
        return True

    local = start.astimezone(tz)
    if (local.hour, local.minute, local.second) != (0, 0, 0):
        return False
    duration = end - start
    return duration > timedelta(0) and duration % _ONE_DAY == timedelta(0)


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _event_bounds(component: Any, tz: tzinfo) -> Tuple[ParsedTime, datetime, datetime]:
    start = parse_time(component["DTSTART"], tz)
    start_at = start.corrected()

    if component.get("DTEND") is not None:
        end_at = parse_time(component["DTEND"], tz).corrected()
    elif component.get("DURATION") is not None:
        end_at = start_at + component["DURATION"].dt
    elif start.is_date:
        end_at = start_at + _ONE_DAY
    else:
        end_at = start_at
    return start, start_at, end_at


def normalize_vevent(component: Any, fallback_id: str, tz: tzinfo = timezone.utc) -> NormalizedEvent:
    start, start_at, end_at = _event_bounds(component, tz)
    return NormalizedEvent(
        id=_text(component, "UID") or fallback_id,
        title=normalize_title(component.get("SUMMARY")),
        start=start_at,
        end=end_at,
        original_start=isoformat_z(start_at),
        original_end=isoformat_z(end_at),
        is_all_day=is_all_day(start.raw, start_at, end_at, tz),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        status=_text(component, "STATUS").lower() or "confirmed",
    )


def _vevents(payload: bytes) -> Dict[str, Any]:
    """Keyed VEVENTs with a start; recurrence overrides keep their own key."""
    cal = Calendar.from_ical(payload)
    keyed: Dict[str, Any] = {}
    for idx, component in enumerate(cal.walk("VEVENT")):
        if component.get("DTSTART") is None:
            continue
        uid = _text(component, "UID") or f"ical-{idx}"
        recurrence_id = component.get("RECURRENCE-ID")
        key = f"{uid}@{recurrence_id.to_ical().decode('utf-8')}" if recurrence_id is not None else uid
        keyed[key] = component
    return keyed


def parse_ical_events(
    payload: bytes,
    max_results: int,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
) -> List[NormalizedEvent]:
    now = now or datetime.now(timezone.utc)
    horizon = now + timedelta(days=WINDOW_DAYS)

    events: List[NormalizedEvent] = []
    for key, component in _vevents(payload).items():
        try:
            event = normalize_vevent(component, fallback_id=key, tz=tz)
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            logger.debug("Skipping unparseable VEVENT %s: %s", key, exc)
            continue
        if now < event.start < horizon:
            events.append(event)

    events.sort(key=lambda e: e.start)
    return events[:max_results]


def _download(url: str, session: requests.Session, timeout: float, user_agent: str) -> bytes:
    headers = {"User-Agent": user_agent, "Accept": "text/calendar, */*"}
    try:
        resp = session.get(url, headers=headers, timeout=timeout)
        resp.raise_for_status()
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else None
        kind = "not_found" if status == 404 else "upstream"
        raise CalendarFetchError(f"Failed to fetch iCal calendar: {exc}", kind=kind, status=status) from exc
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise CalendarFetchError(f"Failed to fetch iCal calendar: {exc}", kind="network") from exc
    except requests.RequestException as exc:
        raise CalendarFetchError(f"Failed to fetch iCal calendar: {exc}") from exc
    return resp.content


def fetch_ical_events(
    url: str,
    max_results: int = 10,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = BROWSER_USER_AGENT,
) -> List[NormalizedEvent]:
    feed_url = normalize_feed_url(url)
    own_session = session is None
    if own_session:
        session = requests.Session()

    try:
        payload = _download(feed_url, session, timeout, user_agent)
    finally:
        if own_session:
            session.close()

    try:
        events = parse_ical_events(payload, max_results, now=now, tz=tz)
    except ValueError as exc:
        raise CalendarFetchError(f"Failed to fetch iCal calendar: {exc}", kind="parse") from exc

    logger.info("iCal feed %s yielded %d upcoming events", feed_url, len(events))
    return events


def check_ical_feed(url: str, session: Optional[requests.Session] = None, **kwargs: Any) -> Dict[str, Any]:
    events = fetch_ical_events(url, max_results=3, session=session, **kwargs)
    return {
        "success": True,
        "message": "iCal calendar is accessible",
        "eventsFound": len(events),
        "url": url,
    }
