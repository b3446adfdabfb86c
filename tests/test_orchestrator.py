"""Tests for application wiring, the daemon loop and logging setup."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import T0, FakeChannel, FakeClock

from lastsignal.config.loader import parse_config
from lastsignal.errors import InstanceAlreadyRunning, StateIOError
from lastsignal.orchestrator import LastSignalApp, build_providers, configure_logging
from lastsignal.services.dispatcher import DispatchStatus
from lastsignal.services.email_reply_provider import EmailReplyProvider
from lastsignal.services.escalation import Phase
from lastsignal.services.file_lock import acquire_instance_lock
from lastsignal.services.whoop_provider import WhoopProvider


def make_config(tmp_path, **recipient):
    raw = {
        "checkin": {
            "duration_between_checkins": "7d",
            "output_retry_delay": "24h",
            "outputs": [{"type": "messenger", "config": {"user_id": "me", "access_token": "t"}}],
        },
        "recipient": {
            "max_time_since_last_checkin": "14d",
            "output_retry_delay": "12h",
            "last_signal_outputs": [{"type": "messenger", "config": {"user_id": "alice", "access_token": "t"}}],
            **recipient,
        },
        "last_signal": {"placeholders": {"name": "Alex"}},
        "app": {"data_directory": str(tmp_path), "check_interval": "1h"},
    }
    return parse_config(raw)


@pytest.fixture
def channels():
    return {"me": FakeChannel("me"), "alice": FakeChannel("alice")}


@pytest.fixture
def app(tmp_path, channels):
    clock = FakeClock()
    with patch("lastsignal.orchestrator.build_channel", side_effect=lambda d: channels[d.user_id]):
        return LastSignalApp.from_config(make_config(tmp_path), clock=clock)


class TestLastSignalApp:

    def test_checkin_and_status(self, app):
        app.checkin()
        app.clock.advance(days=8)

        report = app.status()

        assert report["phase"] is Phase.AWAITING_CHECKIN
        assert report["last_checkin"] == T0
        assert report["reminders_due_at"] == T0 + timedelta(days=7)
        assert report["last_signal_due_at"] == T0 + timedelta(days=14)
        assert report["time_since_checkin"] == "8 days"
        assert report["duration_between_checkins"] == "7d"

    def test_status_never_checked_in(self, app):
        report = app.status()
        assert report["last_checkin"] is None
        assert report["reminders_due_at"] is None
        assert not app.store.path.exists()

    def test_status_surfaces_corrupt_state(self, app):
        app.store.path.write_text("garbage", encoding="utf-8")
        with pytest.raises(StateIOError):
            app.status()

    def test_tick_sends_last_signal_with_placeholders(self, app, channels, tmp_path):
        app.checkin()
        app.clock.advance(days=20)

        outcome = app.tick()

        assert outcome.result.status is DispatchStatus.SENT
        assert len(channels["alice"].sent) == 1
        assert (tmp_path / "message.txt").exists()

    def test_test_outputs_reports_all(self, app, channels):
        channels["me"].healthy = False
        report = app.test_outputs()
        assert [a.ok for a in report.checkin] == [False]
        assert [a.ok for a in report.recipient] == [True]
        assert not report.all_healthy

    def test_broadcast_mode_wired(self, tmp_path, channels):
        with patch("lastsignal.orchestrator.build_channel", side_effect=lambda d: channels[d.user_id]):
            app = LastSignalApp.from_config(make_config(tmp_path, delivery="broadcast"))
        assert app.engine.broadcast is True


class TestDaemonLoop:

    def test_runs_until_stop_event(self, app):
        stop = threading.Event()
        ticks = []

        def fake_tick():
            ticks.append(1)
            if len(ticks) == 2:
                stop.set()
            return app.engine.tick(app.clock())

        app.tick = fake_tick
        with patch.object(stop, "wait") as mock_wait:
            app.run(stop)

        assert len(ticks) == 2
        assert mock_wait.call_args_list[0].args == (3600.0,)

    def test_tick_error_backs_off_and_continues(self, app):
        stop = threading.Event()
        calls = []

        def failing_tick():
            calls.append(1)
            if len(calls) == 1:
                raise StateIOError("disk unplugged")
            stop.set()
            return app.engine.tick(app.clock())

        app.tick = failing_tick
        with patch("lastsignal.orchestrator.settings.ERROR_BACKOFF_SECONDS", 5.0):
            with patch.object(stop, "wait") as mock_wait:
                app.run(stop)

        assert len(calls) == 2
        assert mock_wait.call_args_list[0].args == (5.0,)

    def test_second_daemon_refused(self, app, tmp_path):
        with acquire_instance_lock(tmp_path / "daemon.lock"):
            with pytest.raises(InstanceAlreadyRunning):
                app.run(threading.Event())

    def test_warns_when_episode_already_fired(self, app, caplog):
        app.checkin()
        app.store.record_signal_fired(T0 + timedelta(days=15))
        stop = threading.Event()
        stop.set()

        with caplog.at_level(logging.WARNING, logger="lastsignal.orchestrator"):
            app.run(stop)

        assert any("already fired" in r.getMessage() for r in caplog.records)


class TestWiring:

    def test_build_providers(self, tmp_path):
        raw_email = {"to": "me@example.com", "smtp_host": "smtp.example.com", "smtp_port": 587,
                     "username": "me@example.com", "password": "pw"}
        cfg = parse_config({
            "checkin": {
                "duration_between_checkins": "7d",
                "output_retry_delay": "24h",
                "outputs": [
                    {"type": "email", "bidirectional": True, "config": raw_email},
                    {"type": "email", "config": raw_email},
                ],
                "providers": [{"type": "whoop", "config": {"client_id": "c", "client_secret": "s"}}],
            },
            "recipient": {
                "max_time_since_last_checkin": "14d",
                "output_retry_delay": "12h",
                "last_signal_outputs": [{"type": "email", "config": raw_email}],
            },
            "app": {"data_directory": str(tmp_path)},
        })

        providers = build_providers(cfg)

        assert [type(p) for p in providers] == [WhoopProvider, EmailReplyProvider]


class TestConfigureLogging:

    def test_creates_log_and_audit_handlers(self, tmp_path):
        root = logging.getLogger()
        audit = logging.getLogger("lastsignal.audit")
        saved_root, saved_audit, saved_level = root.handlers[:], audit.handlers[:], root.level
        root.handlers = []
        try:
            configure_logging("debug", tmp_path)
            audit.info("REMINDER sent via test")
            for handler in audit.handlers:
                handler.flush()

            assert (tmp_path / "lastsignal.log").exists()
            assert "REMINDER sent via test" in (tmp_path / "dispatch_audit.log").read_text(encoding="utf-8")
            assert audit.propagate is False
        finally:
            for handler in root.handlers + audit.handlers:
                if handler not in saved_root and handler not in saved_audit:
                    handler.close()
            root.handlers = saved_root
            root.setLevel(saved_level)
            audit.handlers = saved_audit
            audit.propagate = True
