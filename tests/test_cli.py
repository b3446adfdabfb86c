"""
Tests for the lastsignal command line.
"""

import json
from unittest.mock import patch

import pytest

from conftest import FakeChannel

from lastsignal import __version__
from lastsignal.cli import main

CONFIG = """
[checkin]
duration_between_checkins = "7d"
output_retry_delay = "24h"

[[checkin.outputs]]
type = "facebook_messenger"
config = {{ user_id = "me", access_token = "t" }}

[recipient]
max_time_since_last_checkin = "14d"
output_retry_delay = "12h"

[[recipient.last_signal_outputs]]
type = "facebook_messenger"
config = {{ user_id = "alice", access_token = "t" }}

[app]
data_directory = "{data_dir}"
"""


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG.format(data_dir=tmp_path.as_posix()), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def no_log_files():
    with patch("lastsignal.cli.configure_logging"):
        yield


class TestCli:

    def test_version(self, capsys):
        main(["version"])
        assert capsys.readouterr().out.strip() == f"lastsignal {__version__}"

    def test_no_command_prints_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1
        assert "usage" in capsys.readouterr().out

    def test_checkin_then_status(self, config_path, tmp_path, capsys):
        main(["-c", str(config_path), "checkin"])
        assert "Check-in recorded" in capsys.readouterr().out
        assert (tmp_path / "state.json").exists()

        main(["-c", str(config_path), "status"])
        out = capsys.readouterr().out
        assert "Phase: normal" in out
        assert "every 7d" in out

    def test_status_json(self, config_path, capsys):
        main(["-c", str(config_path), "status", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert data["phase"] == "awaiting_checkin"
        assert data["last_checkin"] is None

    def test_missing_config_exits_1(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(tmp_path / "missing.toml"), "status"])
        assert exc_info.value.code == 1
        assert "Config file not found" in capsys.readouterr().err

    def test_invalid_duration_exits_1(self, config_path, capsys):
        config_path.write_text(
            config_path.read_text(encoding="utf-8").replace('"7d"', '"7"'), encoding="utf-8"
        )
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(config_path), "checkin"])
        assert exc_info.value.code == 1
        assert "unit" in capsys.readouterr().err

    def test_corrupt_state_exits_1(self, config_path, tmp_path, capsys):
        (tmp_path / "state.json").write_text("{", encoding="utf-8")
        with pytest.raises(SystemExit) as exc_info:
            main(["-c", str(config_path), "status"])
        assert exc_info.value.code == 1
        assert "state file" in capsys.readouterr().err

    def test_test_command_reports_every_output(self, config_path, capsys):
        fakes = {"me": FakeChannel("me", healthy=False), "alice": FakeChannel("alice")}
        with patch("lastsignal.orchestrator.build_channel", side_effect=lambda d: fakes[d.user_id]):
            with pytest.raises(SystemExit) as exc_info:
                main(["-c", str(config_path), "test"])

        assert exc_info.value.code == 1
        out = capsys.readouterr().out
        assert "❌ me" in out
        assert "✅ alice" in out

    def test_test_command_all_healthy(self, config_path, capsys):
        fakes = {"me": FakeChannel("me"), "alice": FakeChannel("alice")}
        with patch("lastsignal.orchestrator.build_channel", side_effect=lambda d: fakes[d.user_id]):
            main(["-c", str(config_path), "test"])
        assert "❌" not in capsys.readouterr().out
