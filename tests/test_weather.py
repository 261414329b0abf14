from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest
import requests

from pidash.errors import RateLimitExceeded, WeatherError
from pidash.weather import RateLimitTracker, WeatherClient, summarize_forecast, weather_glyph


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            resp = requests.Response()
            resp.status_code = self.status_code
            resp._content = b'{"message": "city not found"}'
            raise requests.HTTPError(f"{self.status_code}", response=resp)

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        return self.responses[url.rsplit("/", 1)[-1]]


def _entry(ts: int, temp: float, icon: str = "01d"):
    return {
        "dt": ts,
        "main": {"temp": temp, "humidity": 40},
        "weather": [{"description": "clear sky", "icon": icon}],
        "wind": {"speed": 3.5},
    }


def test_tracker_enforces_per_minute_limit_and_recovers():
    clock = FakeClock()
    tracker = RateLimitTracker(max_per_day=100, max_per_minute=2, clock=clock)

    tracker.record_call()
    tracker.record_call()
    assert tracker.can_make_call() is False

    clock.now += 61
    assert tracker.can_make_call() is True


def test_tracker_enforces_daily_limit_and_forgets_old_calls():
    clock = FakeClock()
    tracker = RateLimitTracker(max_per_day=3, max_per_minute=10, clock=clock)
    for _ in range(3):
        tracker.record_call()
        clock.now += 120

    assert tracker.can_make_call() is False
    clock.now += 86400
    assert tracker.can_make_call() is True
    assert tracker.calls_today == 0


def test_trackers_are_independent():
    clock = FakeClock()
    first = RateLimitTracker(max_per_minute=1, clock=clock)
    second = RateLimitTracker(max_per_minute=1, clock=clock)

    first.record_call()

    assert first.can_make_call() is False
    assert second.can_make_call() is True


def test_forecast_groups_by_day_with_noon_icon():
    day1 = int(datetime(2025, 6, 15, 0, 0, tzinfo=timezone.utc).timestamp())
    entries = [
        _entry(day1 + 9 * 3600, 70, "02d"),
        _entry(day1 + 12 * 3600, 80, "10d"),
        _entry(day1 + 15 * 3600, 85, "01d"),
        _entry(day1 + 36 * 3600, 60, "13d"),
    ]

    days = summarize_forecast(entries)

    assert [(d.high, d.low, d.icon) for d in days] == [(85, 70, "10d"), (60, 60, "13d")]
    assert days[0].to_dict()["glyph"] == "☔"


def test_client_returns_current_and_forecast():
    day1 = int(datetime(2025, 6, 15, tzinfo=timezone.utc).timestamp())
    session = FakeSession(
        {
            "weather": FakeResponse(
                {
                    "name": "Dallas",
                    "sys": {"country": "US"},
                    "main": {"temp": 91.6, "humidity": 30},
                    "weather": [{"description": "sunny", "icon": "01d"}],
                    "wind": {"speed": 5},
                }
            ),
            "forecast": FakeResponse({"list": [_entry(day1 + 12 * 3600, 88)]}),
        }
    )
    tracker = RateLimitTracker(clock=FakeClock())
    client = WeatherClient("key", tracker=tracker, session=session)

    result = client.current_and_forecast("Dallas,US")

    assert result["current"]["temperature"] == 92
    assert result["current"]["city"] == "Dallas"
    assert len(result["forecast"]) == 1
    assert session.calls[0][1] == {"q": "Dallas,US", "appid": "key", "units": "imperial"}
    assert tracker.calls_today == 2


def test_client_refuses_when_rate_limited():
    tracker = RateLimitTracker(max_per_minute=0, clock=FakeClock())
    client = WeatherClient("key", tracker=tracker, session=FakeSession({}))

    with pytest.raises(RateLimitExceeded):
        client.current_and_forecast("Dallas,US")


def test_unknown_city_is_classified():
    session = FakeSession({"weather": FakeResponse({}, status_code=404)})
    client = WeatherClient("key", tracker=RateLimitTracker(clock=FakeClock()), session=session)

    with pytest.raises(WeatherError) as info:
        client.current_and_forecast("Atlantis")

    assert info.value.status == 404
    assert 'City "Atlantis" not found' in info.value.message


def test_weather_glyph_ignores_day_night_suffix():
    assert weather_glyph("01d") == weather_glyph("01n") == "☀"
    assert weather_glyph("") == "☁"


class HtmlResponse:
    status_code = 200

    def raise_for_status(self):
        return None

    def json(self):
        raise requests.JSONDecodeError("Expecting value", "<html>portal</html>", 0)


def test_non_json_body_becomes_weather_error():
    session = FakeSession({"weather": HtmlResponse()})
    client = WeatherClient("key", tracker=RateLimitTracker(clock=FakeClock()), session=session)

    with pytest.raises(WeatherError) as info:
        client.current_and_forecast("Dallas,US")

    assert info.value.message == "Failed to fetch weather data"


@pytest.mark.parametrize(
    "current",
    [
        {"main": {"temp": 70}, "weather": []},
        {"main": {"temp": 70}},
        {"main": None, "weather": [{"description": "x", "icon": "01d"}]},
        ["not", "an", "object"],
    ],
)
def test_malformed_payload_becomes_weather_error(current):
    session = FakeSession(
        {"weather": FakeResponse(current), "forecast": FakeResponse({"list": []})}
    )
    client = WeatherClient("key", tracker=RateLimitTracker(clock=FakeClock()), session=session)

    with pytest.raises(WeatherError):
        client.current_and_forecast("Dallas,US")


def test_forecast_days_follow_local_timezone():
    chicago = ZoneInfo("America/Chicago")
    # 02:00 UTC on the 16th is still the evening of the 15th in Chicago
    late = int(datetime(2025, 6, 16, 2, 0, tzinfo=timezone.utc).timestamp())
    noon = int(datetime(2025, 6, 15, 17, 0, tzinfo=timezone.utc).timestamp())
    entries = [_entry(noon, 90), _entry(late, 75)]

    assert len(summarize_forecast(entries)) == 2
    [day] = summarize_forecast(entries, tz=chicago)
    assert (day.high, day.low) == (90, 75)
    assert day.date.date().isoformat() == "2025-06-15"


def test_client_groups_forecast_in_its_timezone():
    late = int(datetime(2025, 6, 16, 2, 0, tzinfo=timezone.utc).timestamp())
    noon = int(datetime(2025, 6, 15, 17, 0, tzinfo=timezone.utc).timestamp())
    session = FakeSession(
        {
            "weather": FakeResponse({"main": {"temp": 80}, "weather": [{"description": "sun", "icon": "01d"}]}),
            "forecast": FakeResponse({"list": [_entry(noon, 90), _entry(late, 75)]}),
        }
    )
    client = WeatherClient(
        "key", tracker=RateLimitTracker(clock=FakeClock()), session=session, tz=ZoneInfo("America/Chicago")
    )

    result = client.current_and_forecast("Chicago,US")

    assert len(result["forecast"]) == 1


def test_usage_reports_counts_and_status():
    clock = FakeClock()
    tracker = RateLimitTracker(max_per_day=5, max_per_minute=3, clock=clock)
    assert tracker.usage()["resetTime"] is None

    first_call = clock.now
    for _ in range(4):
        tracker.record_call()
        clock.now += 30

    usage = tracker.usage()

    assert usage["callsToday"] == 4
    assert usage["remaining"] == 1
    assert usage["percentUsed"] == 80
    assert usage["callsLastMinute"] == 1
    assert usage["status"] == "warning"
    assert usage["resetTime"] == datetime.fromtimestamp(first_call + 86400, tz=timezone.utc).isoformat()

    tracker.record_call()
    assert tracker.usage()["status"] == "limit_reached"
