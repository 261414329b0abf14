import pytest


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "GOOGLE_CALENDAR_API_KEY",
        "GOOGLE_CALENDAR_ID",
        "WEATHER_API_KEY",
        "DEFAULT_CITY",
        "DEFAULT_UNITS",
    ):
        monkeypatch.delenv(name, raising=False)
