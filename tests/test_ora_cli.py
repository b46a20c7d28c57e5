"""Tests for the ``ora`` command line."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from ora import __version__
from ora.cli import cli

pytestmark = pytest.mark.unit


@pytest.fixture
def runner(tmp_path, monkeypatch) -> CliRunner:
    monkeypatch.chdir(tmp_path)
    for name in ("ORA_DATABASE_URL", "GOOGLE_OAUTH_CLIENT_ID", "GOOGLE_OAUTH_CLIENT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


def _events_file(tmp_path, events) -> str:
    path = tmp_path / "events.json"
    path.write_text(json.dumps(events))
    return str(path)


class TestGridCommand:
    def test_prints_busy_rows(self, runner, tmp_path):
        events = _events_file(
            tmp_path,
            [
                {"start": "2026-03-10T09:00:00Z", "end": "2026-03-10T10:00:00Z"},
                {"start": "2026-03-11"},
            ],
        )

        result = runner.invoke(cli, ["grid", events, "--start", "2026-03-10", "--days", "2"])

        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert lines[0].startswith("2026-03-10  " + "." * 18 + "##" + "." * 28)
        assert lines[0].endswith("(2/48 busy)")
        assert lines[1].endswith("(48/48 busy)")

    def test_json_output(self, runner, tmp_path):
        events = _events_file(
            tmp_path, [{"start": "2026-03-10T00:00:00Z", "end": "2026-03-10T01:00:00Z"}]
        )

        result = runner.invoke(
            cli, ["grid", events, "--start", "2026-03-10", "--slot-minutes", "60", "--json"]
        )

        assert result.exit_code == 0, result.output
        documents = json.loads(result.output)
        assert list(documents) == ["2026-03-10"]
        assert len(documents["2026-03-10"]) == 24
        assert documents["2026-03-10"][0]["state"] == "busy"
        assert documents["2026-03-10"][1]["state"] == "free"

    def test_transparent_events_still_block(self, runner, tmp_path):
        events = _events_file(
            tmp_path,
            [
                {
                    "start": "2026-03-10T09:00:00Z",
                    "end": "2026-03-10T09:30:00Z",
                    "transparency": "transparent",
                }
            ],
        )

        result = runner.invoke(cli, ["grid", events, "--start", "2026-03-10"])

        assert "(1/48 busy)" in result.output

    def test_time_zone_option(self, runner, tmp_path):
        events = _events_file(tmp_path, [])

        result = runner.invoke(
            cli, ["grid", events, "--start", "2026-03-29", "--tz", "Europe/Paris"]
        )

        assert "(0/46 busy)" in result.output

    def test_bad_time_zone(self, runner, tmp_path):
        result = runner.invoke(
            cli, ["grid", _events_file(tmp_path, []), "--start", "2026-03-10", "--tz", "Nowhere"]
        )

        assert result.exit_code == 2

    def test_events_file_must_be_a_list(self, runner, tmp_path):
        result = runner.invoke(
            cli, ["grid", _events_file(tmp_path, {"start": "x"}), "--start", "2026-03-10"]
        )

        assert result.exit_code == 2
        assert "JSON list" in result.output


class TestGroup:
    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_invalid_config_file(self, runner, tmp_path):
        bad = tmp_path / "bad.toml"
        bad.write_text("[calendar]\nslot_minutes = 0\n")

        result = runner.invoke(cli, ["--config", str(bad), "grid", "--help"])

        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_sweep_requires_database(self, runner):
        result = runner.invoke(cli, ["sweep"])

        assert result.exit_code == 1
        assert "ORA_DATABASE_URL" in result.output
