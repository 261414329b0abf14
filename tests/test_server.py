import json
import threading
from datetime import datetime, timezone

import pytest
import requests

from pidash.config import AppConfig
from pidash.dashboard import DashboardService
from pidash.errors import CalendarFetchError
from pidash.server import make_server
from pidash.settings import SettingsStore


@pytest.fixture
def service(tmp_path, monkeypatch):
    monkeypatch.delenv("GOOGLE_CALENDAR_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_CALENDAR_ID", raising=False)
    monkeypatch.delenv("WEATHER_API_KEY", raising=False)
    return DashboardService(AppConfig(settings_path=str(tmp_path / "settings.json")))


@pytest.fixture
def base_url(service):
    server = make_server(service, host="127.0.0.1", port=0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


def test_calendar_without_sources_returns_samples(base_url):
    resp = requests.get(f"{base_url}/api/calendar", timeout=5)

    assert resp.status_code == 200
    assert [e["id"] for e in resp.json()] == ["sample-1", "sample-2", "sample-3"]


def test_calendar_failure_returns_500_with_fallback(service, base_url):
    service.store.path.write_text("{broken", encoding="utf-8")

    resp = requests.get(f"{base_url}/api/calendar", timeout=5)

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Failed to fetch calendar events"
    assert [e["id"] for e in body["fallbackEvents"]] == ["error-sample"]


def test_source_management_round_trip(base_url):
    payload = {"name": "Holidays", "type": "ical", "color": "#ff9900", "icon": "flag",
               "config": {"url": "webcal://example.com/holidays.ics"}}

    created = requests.post(f"{base_url}/api/calendar/sources", json=payload, timeout=5).json()
    listed = requests.get(f"{base_url}/api/calendar/sources", timeout=5).json()
    updated = requests.put(
        f"{base_url}/api/calendar/sources/{created['id']}", json={"enabled": False}, timeout=5
    ).json()
    deleted = requests.delete(f"{base_url}/api/calendar/sources/{created['id']}", timeout=5)

    assert [s["id"] for s in listed] == [created["id"]]
    assert updated["enabled"] is False
    assert deleted.json() == {"success": True}
    assert requests.get(f"{base_url}/api/calendar/sources", timeout=5).json() == []


def test_invalid_source_is_400_and_unknown_id_is_404(base_url):
    bad = requests.post(f"{base_url}/api/calendar/sources", json={"name": "X", "type": "ical"}, timeout=5)
    missing = requests.delete(f"{base_url}/api/calendar/sources/nope", timeout=5)

    assert bad.status_code == 400
    assert missing.status_code == 404


def test_ical_test_endpoint_requires_url(base_url):
    resp = requests.post(f"{base_url}/api/calendar/test-ical", json={}, timeout=5)

    assert resp.status_code == 400
    assert resp.json()["error"] == "No iCal URL provided"


def test_google_test_endpoint_reports_classified_error(base_url, monkeypatch):
    def fail(*_args, **_kwargs):
        raise CalendarFetchError("Calendar not found.", kind="not_found", status=404)

    monkeypatch.setattr("pidash.dashboard.check_google_connection", fail)

    resp = requests.post(
        f"{base_url}/api/calendar/test-google", json={"apiKey": "k", "calendarId": "c"}, timeout=5
    )

    assert resp.status_code == 500
    assert resp.json() == {"success": False, "error": "Calendar not found.", "kind": "not_found"}


def test_weather_without_key_is_500(base_url):
    resp = requests.get(f"{base_url}/api/weather", timeout=5)

    assert resp.status_code == 500
    assert "Weather API key not configured" in resp.json()["error"]


def test_health_and_unknown_path(base_url):
    assert requests.get(f"{base_url}/health", timeout=5).json()["status"] == "OK"
    assert requests.get(f"{base_url}/nope", timeout=5).status_code == 404


def test_calendar_payload_uses_settings(tmp_path, monkeypatch):
    now = datetime(2025, 6, 14, 12, 0, tzinfo=timezone.utc)
    store = SettingsStore(tmp_path / "settings.json")
    store.save(
        {
            "settings": {
                "maxCalendarEvents": 1,
                "calendarSources": [
                    {"id": "h", "name": "Holidays", "type": "ical", "color": "#111111", "icon": "flag",
                     "config": {"url": "https://example.com/h.ics"}},
                ],
            }
        }
    )
    seen = {}

    def fake_fetch(url, max_results, **kwargs):
        from pidash.aggregator import sample_events

        seen.update(url=url, max_results=max_results, timeout=kwargs["timeout"])
        return sample_events(now)

    monkeypatch.setattr("pidash.aggregator.fetch_ical_events", fake_fetch)
    service = DashboardService(AppConfig(settings_path=str(store.path)), store=store)

    status, payload = service.calendar_payload(now=now)

    assert status == 200
    assert seen == {"url": "https://example.com/h.ics", "max_results": 1, "timeout": 15.0}
    assert len(payload) == 1
    assert payload[0]["sourceId"] == "h"
    assert json.loads(json.dumps(payload))[0]["start"] == "2025-06-14T14:00:00.000Z"


class _PortalPage:
    status_code = 200

    def raise_for_status(self):
        return None

    def json(self):
        raise requests.JSONDecodeError("Expecting value", "<html>", 0)


class _PortalSession:
    def get(self, url, params=None, timeout=None):
        return _PortalPage()


def test_weather_with_unreadable_body_is_500(base_url, monkeypatch):
    monkeypatch.setenv("WEATHER_API_KEY", "abcdefghijkl")
    monkeypatch.setattr("pidash.weather.requests.Session", _PortalSession)

    resp = requests.get(f"{base_url}/api/weather", timeout=5)

    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to fetch weather data"}


def test_usage_reflects_weather_calls(service, base_url, monkeypatch):
    monkeypatch.setenv("WEATHER_API_KEY", "abcdefghijkl")
    monkeypatch.setattr("pidash.weather.requests.Session", _PortalSession)
    requests.get(f"{base_url}/api/weather", timeout=5)

    usage = requests.get(f"{base_url}/api/usage", timeout=5).json()

    assert usage["callsToday"] == 1
    assert usage["maxCallsPerDay"] == service.config.weather.max_calls_per_day
    assert usage["status"] == "ok"
    assert usage["resetTime"]


def test_settings_update_then_reset(service, base_url):
    resp = requests.post(
        f"{base_url}/api/dashboard/settings",
        json={"city": "Austin , US", "units": "metric", "weatherApiKey": " 0123456789abcdef ",
              "maxCalendarEvents": "25"},
        timeout=5,
    )

    assert resp.status_code == 200
    state = resp.json()["state"]
    assert state["settings"]["city"] == "Austin,US"
    assert state["settings"]["hasWeatherApiKey"] is True
    assert "weatherApiKey" not in state["settings"]
    assert service.store.max_calendar_events() == 25
    assert service.store.load()["settings"]["weatherApiKey"] == "0123456789abcdef"

    reset = requests.post(f"{base_url}/api/dashboard/reset", timeout=5).json()

    assert reset["success"] is True
    assert reset["state"]["settings"]["city"] == "Dallas,US"
    assert reset["state"]["settings"]["hasWeatherApiKey"] is False
    assert requests.get(f"{base_url}/api/dashboard/state", timeout=5).json()["settings"]["units"] == "imperial"


def test_invalid_settings_are_400(base_url):
    resp = requests.post(f"{base_url}/api/dashboard/settings", json={"weatherApiKey": "short"}, timeout=5)

    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid weather API key format"
