"""Tests for ORA configuration loading and validation."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from ora.config import DEFAULTS, ConfigError, load_config, parse_calendar_defaults

pytestmark = pytest.mark.unit

FULL_TOML = """\
[calendar]
slot_minutes = 15
sync_horizon_days = 21
auto_sync_cooldown_hours = 1.5
timezone = "Europe/Paris"

[logging]
level = "debug"
format = "json"

[server]
host = "0.0.0.0"
port = 9100
database_url = "${ORA_TEST_DSN}"

[google]
client_id = "toml-client"
"""


def _write_toml(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "ora.toml"
    path.write_text(content)
    return path


class TestDefaults:
    def test_calendar_defaults(self):
        assert DEFAULTS.slot_minutes == 30
        assert DEFAULTS.default_event_duration == timedelta(hours=1)
        assert DEFAULTS.min_probe_span == timedelta(minutes=15)
        assert DEFAULTS.sync_horizon_days == 14
        assert DEFAULTS.token_safety_margin == timedelta(seconds=60)
        assert DEFAULTS.state_max_age == timedelta(minutes=10)
        assert DEFAULTS.auto_sync_cooldown == timedelta(hours=6)
        assert DEFAULTS.presence_stale_after == timedelta(hours=36)

    def test_missing_optional_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        config = load_config(environ={})

        assert config.calendar == DEFAULTS
        assert config.port == 8300
        assert not config.google.configured


class TestLoadConfig:
    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORA_TEST_DSN", "postgresql://localhost/ora")
        path = _write_toml(tmp_path, FULL_TOML)

        config = load_config(path, environ={"GOOGLE_OAUTH_CLIENT_SECRET": " s3cret "})

        assert config.calendar.slot_minutes == 15
        assert config.calendar.sync_horizon_days == 21
        assert config.calendar.auto_sync_cooldown == timedelta(minutes=90)
        assert str(config.calendar.tzinfo) == "Europe/Paris"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.host == "0.0.0.0"
        assert config.port == 9100
        assert config.database_url == "postgresql://localhost/ora"
        assert config.google.client_id == "toml-client"
        assert config.google.client_secret == "s3cret"
        assert config.google.configured

    def test_secrets_come_from_environment(self, tmp_path):
        path = _write_toml(tmp_path, "")

        config = load_config(
            path,
            environ={
                "CALENDAR_OAUTH_STATE_SECRET": "state",
                "CRON_SECRET": "cron",
                "APP_BASE_URL": "https://ora.example",
                "ORA_DATABASE_URL": "postgresql://db/ora",
            },
        )

        assert config.state_secret == "state"
        assert config.cron_secret == "cron"
        assert config.app_base_url == "https://ora.example"
        assert config.database_url == "postgresql://db/ora"

    def test_dedicated_cron_secret_wins(self, tmp_path):
        path = _write_toml(tmp_path, "")

        config = load_config(
            path, environ={"CALENDAR_SYNC_CRON_SECRET": "dedicated", "CRON_SECRET": "shared"}
        )

        assert config.cron_secret == "dedicated"

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml", environ={})

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write_toml(tmp_path, "[calendar\n"), environ={})

    def test_unresolved_env_var(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ORA_TEST_DSN", raising=False)

        with pytest.raises(ConfigError, match="ORA_TEST_DSN"):
            load_config(_write_toml(tmp_path, FULL_TOML), environ={})

    def test_bad_log_format(self, tmp_path):
        with pytest.raises(ConfigError, match="logging.format"):
            load_config(_write_toml(tmp_path, '[logging]\nformat = "xml"\n'), environ={})

    def test_bad_port(self, tmp_path):
        with pytest.raises(ConfigError, match="server.port"):
            load_config(_write_toml(tmp_path, '[server]\nport = "80"\n'), environ={})


class TestCalendarSection:
    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="slot_minute"):
            parse_calendar_defaults({"slot_minute": 15})

    @pytest.mark.parametrize("value", [0, -5, "15", True])
    def test_non_positive_or_non_numeric(self, value):
        with pytest.raises(ConfigError):
            parse_calendar_defaults({"slot_minutes": value})

    def test_unknown_timezone(self):
        with pytest.raises(ConfigError, match="timezone"):
            parse_calendar_defaults({"timezone": "Mars/Olympus"})

    def test_slot_longer_than_a_day(self):
        with pytest.raises(ConfigError, match="1440"):
            parse_calendar_defaults({"slot_minutes": 1441})

    def test_integer_fields_stay_integers(self):
        defaults = parse_calendar_defaults({"slot_minutes": 20.0})

        assert defaults.slot_minutes == 20
        assert isinstance(defaults.slot_minutes, int)
