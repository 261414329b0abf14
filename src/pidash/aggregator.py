from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
import logging
from typing import Callable, Dict, List, Mapping, Optional

from .calendar_google import fetch_google_events
from .calendar_ical import BROWSER_USER_AGENT, DEFAULT_TIMEOUT_SECONDS, fetch_ical_events
from .errors import SourceConfigError
from .models import CalendarSource, NormalizedEvent, isoformat_z

logger = logging.getLogger(__name__)

# fetcher(source, max_results, now, tz) -> events
SourceFetcher = Callable[[CalendarSource, int, datetime, tzinfo], List[NormalizedEvent]]

MAX_WORKERS = 4


@dataclass
class SourceOutcome:
    source: CalendarSource
    events: List[NormalizedEvent] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _require(source: CalendarSource, *keys: str) -> List[str]:
    values = [str(source.config.get(k) or "").strip() for k in keys]
    missing = [k for k, v in zip(keys, values) if not v]
    if missing:
        raise SourceConfigError(
            f"{source.type} source {source.name!r} is missing {', '.join(missing)}"
        )
    return values


def build_fetchers(
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    user_agent: str = BROWSER_USER_AGENT,
) -> Dict[str, SourceFetcher]:
    def google(source: CalendarSource, max_results: int, now: datetime, tz: tzinfo) -> List[NormalizedEvent]:
        api_key, calendar_id = _require(source, "apiKey", "calendarId")
        return fetch_google_events(api_key, calendar_id, max_results, now=now, tz=tz, timeout=timeout)

    def ical(source: CalendarSource, max_results: int, now: datetime, tz: tzinfo) -> List[NormalizedEvent]:
        (url,) = _require(source, "url")
        return fetch_ical_events(url, max_results, now=now, tz=tz, timeout=timeout, user_agent=user_agent)

    return {"google": google, "ical": ical}


DEFAULT_FETCHERS = build_fetchers()


def _settle(
    fetcher: SourceFetcher,
    source: CalendarSource,
    max_results: int,
    now: datetime,
    tz: tzinfo,
) -> SourceOutcome:
    try:
        events = fetcher(source, max_results, now, tz)
    except Exception as exc:  # noqa: BLE001
        return SourceOutcome(source=source, error=exc)
    return SourceOutcome(source=source, events=[e.tagged(source) for e in events])


def collect_outcomes(
    sources: List[CalendarSource],
    max_results: int,
    now: datetime,
    tz: tzinfo = timezone.utc,
    fetchers: Optional[Mapping[str, SourceFetcher]] = None,
) -> List[SourceOutcome]:
    """Fetch every enabled source of a known type; one outcome per source, in order."""
    fetchers = fetchers if fetchers is not None else DEFAULT_FETCHERS
    jobs = [(fetchers[s.type], s) for s in sources if s.enabled and s.type in fetchers]
    if not jobs:
        return []

    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(jobs))) as executor:
        futures = [executor.submit(_settle, fetcher, s, max_results, now, tz) for fetcher, s in jobs]
        return [f.result() for f in futures]


def _normalize_text(value: str | None) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def _dedupe_events(events: List[NormalizedEvent]) -> List[NormalizedEvent]:
    """Drop repeats within one source; identical events from different sources all stay."""
    deduped: List[NormalizedEvent] = []
    seen = set()
    for e in events:
        key = (
            e.source_id,
            _normalize_text(e.title),
            e.start,
            e.end,
            e.is_all_day,
            _normalize_text(e.location),
        )
        if key in seen:
            continue
        seen.add(key)
        deduped.append(e)
    return deduped


def aggregate_events(
    sources: List[CalendarSource],
    max_results: int = 10,
    now: Optional[datetime] = None,
    tz: tzinfo = timezone.utc,
    fetchers: Optional[Mapping[str, SourceFetcher]] = None,
) -> List[NormalizedEvent]:
    if max_results <= 0:
        raise ValueError("max_results must be positive")
    now = now or datetime.now(timezone.utc)

    if not any(s.enabled for s in sources):
        logger.info("No calendar sources enabled; returning sample events")
        return sample_events(now)

    outcomes = collect_outcomes(sources, max_results, now, tz, fetchers)
    combined: List[NormalizedEvent] = []
    for outcome in outcomes:
        if not outcome.ok:
            logger.warning(
                "Calendar source %r (%s) failed; continuing without it: %s",
                outcome.source.name,
                outcome.source.type,
                outcome.error,
            )
            continue
        combined.extend(outcome.events)

    combined = _dedupe_events(combined)
    combined.sort(key=lambda e: e.start)
    logger.info("Aggregated %d events from %d sources", len(combined), len(outcomes))
    return combined[:max_results]


def _sample(event_id: str, title: str, start: datetime, description: str, location: str) -> NormalizedEvent:
    end = start + timedelta(hours=1)
    return NormalizedEvent(
        id=event_id,
        title=title,
        start=start,
        end=end,
        original_start=isoformat_z(start),
        original_end=isoformat_z(end),
        description=description,
        location=location,
    )


def sample_events(now: Optional[datetime] = None) -> List[NormalizedEvent]:
    now = now or datetime.now(timezone.utc)
    return [
        _sample("sample-1", "Team Meeting", now + timedelta(hours=2), "Weekly team sync", "Conference Room A"),
        _sample("sample-2", "Project Review", now + timedelta(hours=24), "Q4 project milestone review", "Online"),
        _sample("sample-3", "Client Call", now + timedelta(hours=48), "Monthly check-in call", "Phone"),
    ]


def error_fallback_events(message: str, now: Optional[datetime] = None) -> List[NormalizedEvent]:
    now = now or datetime.now(timezone.utc)
    return [_sample("error-sample", "Calendar Error", now + timedelta(hours=1), message, "Error")]
