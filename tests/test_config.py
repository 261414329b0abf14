from zoneinfo import ZoneInfo

from pidash.config import load_config


def test_missing_config_uses_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.timezone == "UTC"
    assert cfg.settings_path == "data/settings.json"
    assert cfg.http.timeout_seconds == 15.0
    assert cfg.http.user_agent.startswith("Mozilla/5.0")
    assert cfg.server.port == 3000
    assert cfg.weather.max_calls_per_day == 1000


def test_config_overrides(tmp_path):
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(
        """
        timezone: 'America/Chicago'
        settings_path: /var/lib/pidash/settings.json
        http:
          timeout_seconds: 5
        server:
          port: 8080
        weather:
          max_calls_per_minute: 10
        """,
        encoding="utf-8",
    )

    cfg = load_config(str(cfg_path))

    assert cfg.tz == ZoneInfo("America/Chicago")
    assert cfg.settings_path == "/var/lib/pidash/settings.json"
    assert cfg.http.timeout_seconds == 5.0
    assert cfg.server.port == 8080
    assert cfg.server.host == "0.0.0.0"
    assert cfg.weather.max_calls_per_minute == 10
