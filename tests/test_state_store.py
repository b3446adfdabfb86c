"""Tests for atomic writes, file locks and the state store."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from lastsignal.errors import InstanceAlreadyRunning, StateContention, StateIOError
from lastsignal.services.file_lock import LockHeld, acquire_instance_lock, file_lock
from lastsignal.services.state_store import PersistedState, StateStore
from lastsignal.utils.atomic import atomic_write_json, atomic_write_text

T0 = datetime(2024, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# atomic_write_json
# ---------------------------------------------------------------------------

class TestAtomicWriteJson:

    def test_basic_write(self, tmp_path: Path) -> None:
        target = tmp_path / "test.json"
        atomic_write_json(target, {"key": "value", "nested": [1, 2, 3]})
        assert json.loads(target.read_text(encoding="utf-8")) == {"key": "value", "nested": [1, 2, 3]}

    def test_no_orphan_tmp_on_success(self, tmp_path: Path) -> None:
        target = tmp_path / "test.json"
        atomic_write_json(target, {"ok": True})
        assert not target.with_suffix(".json.tmp").exists()

    def test_creates_parent_dirs(self, tmp_path: Path) -> None:
        target = tmp_path / "sub" / "deep" / "test.json"
        atomic_write_json(target, {"created": True})
        assert target.exists()

    def test_failed_replace_keeps_original(self, tmp_path: Path) -> None:
        target = tmp_path / "test.json"
        atomic_write_json(target, {"version": 1})

        with patch("lastsignal.utils.atomic.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                atomic_write_json(target, {"version": 2})

        assert json.loads(target.read_text(encoding="utf-8")) == {"version": 1}
        assert not target.with_suffix(".json.tmp").exists()

    def test_text_write_is_utf8(self, tmp_path: Path) -> None:
        target = tmp_path / "message.txt"
        atomic_write_text(target, "Grüße ✉")
        assert target.read_text(encoding="utf-8") == "Grüße ✉"


# ---------------------------------------------------------------------------
# file locks
# ---------------------------------------------------------------------------

class TestFileLock:

    def test_second_holder_fails_fast(self, tmp_path: Path) -> None:
        lock = tmp_path / "x.lock"
        with file_lock(lock):
            with pytest.raises(LockHeld):
                with file_lock(lock):
                    pass

    def test_retries_with_linear_backoff(self, tmp_path: Path) -> None:
        lock = tmp_path / "x.lock"
        with file_lock(lock):
            with patch("lastsignal.services.file_lock.time.sleep") as mock_sleep:
                with pytest.raises(LockHeld):
                    with file_lock(lock, retries=2, backoff_seconds=0.5):
                        pass
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.5, 1.0]

    def test_released_after_block(self, tmp_path: Path) -> None:
        lock = tmp_path / "x.lock"
        with file_lock(lock):
            pass
        with file_lock(lock):
            pass

    def test_instance_lock_records_pid_and_blocks_second_daemon(self, tmp_path: Path) -> None:
        lock = tmp_path / "daemon.lock"
        with acquire_instance_lock(lock):
            assert lock.read_text().strip().isdigit()
            with pytest.raises(InstanceAlreadyRunning, match="already running"):
                with acquire_instance_lock(lock):
                    pass


# ---------------------------------------------------------------------------
# PersistedState / StateStore
# ---------------------------------------------------------------------------

class TestPersistedState:

    def test_round_trip_keeps_microseconds(self) -> None:
        state = PersistedState(
            last_checkin=T0,
            last_checkin_request=T0 + timedelta(days=7),
            last_signal_fired=None,
            checkin_request_count=2,
            last_signal_recipients_notified={"email:a@example.com": T0 + timedelta(days=14)},
        )
        assert PersistedState.from_dict(json.loads(json.dumps(state.to_dict()))) == state

    def test_timestamps_serialize_as_utc_z(self) -> None:
        data = PersistedState(last_checkin=T0).to_dict()
        assert data["last_checkin"] == "2024-01-01T12:00:00.123456Z"

    def test_naive_and_offset_timestamps_normalized_to_utc(self) -> None:
        state = PersistedState.from_dict({"last_checkin": "2024-01-01T14:00:00+02:00"})
        assert state.last_checkin == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"last_checkin": 12},
            {"last_checkin": "yesterday"},
            {"checkin_request_count": -1},
            {"checkin_request_count": "3"},
            {"last_signal_recipients_notified": []},
        ],
    )
    def test_rejects_malformed(self, data) -> None:
        with pytest.raises(StateIOError):
            PersistedState.from_dict(data)

    def test_signal_fired_this_episode(self) -> None:
        assert not PersistedState().signal_fired_this_episode()
        assert PersistedState(last_checkin=T0, last_signal_fired=T0 + timedelta(days=14)).signal_fired_this_episode()
        assert not PersistedState(
            last_checkin=T0 + timedelta(days=20), last_signal_fired=T0 + timedelta(days=14)
        ).signal_fired_this_episode()


class TestStateStore:

    def test_missing_file_is_default_state(self, store: StateStore) -> None:
        assert store.load() == PersistedState()
        assert not store.path.exists()

    def test_corrupt_file_raises(self, store: StateStore) -> None:
        store.path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateIOError):
            store.load()

    def test_record_checkin_resets_episode(self, store: StateStore) -> None:
        store.record_checkin_request(T0)
        store.record_checkin_request(T0 + timedelta(days=1))
        store.record_recipient_notified("email:a@example.com", T0)
        state = store.record_checkin(T0 + timedelta(days=2))

        assert state.last_checkin == T0 + timedelta(days=2)
        assert state.checkin_request_count == 0
        assert state.last_signal_recipients_notified == {}
        assert store.load() == state

    def test_older_checkin_is_ignored(self, store: StateStore) -> None:
        store.record_checkin(T0 + timedelta(days=1))
        state = store.record_checkin(T0)
        assert state.last_checkin == T0 + timedelta(days=1)

    def test_checkin_request_increments(self, store: StateStore) -> None:
        store.record_checkin(T0)
        store.record_checkin_request(T0 + timedelta(days=7))
        state = store.record_checkin_request(T0 + timedelta(days=8))
        assert state.checkin_request_count == 2
        assert state.last_checkin_request == T0 + timedelta(days=8)

    def test_mutators_persist_before_returning(self, store: StateStore, tmp_path: Path) -> None:
        state = store.record_signal_fired(T0)
        fresh = StateStore(store.path)
        assert fresh.load().last_signal_fired == T0 == state.last_signal_fired

    def test_interrupted_write_leaves_previous_file(self, store: StateStore) -> None:
        store.record_checkin(T0)
        before = store.path.read_text(encoding="utf-8")

        with patch("lastsignal.utils.atomic.os.replace", side_effect=OSError("power cut")):
            with pytest.raises(StateIOError):
                store.record_checkin_request(T0 + timedelta(days=7))

        assert store.path.read_text(encoding="utf-8") == before
        assert store.load().checkin_request_count == 0

    def test_contention_is_reported_not_waited_on(self, store: StateStore) -> None:
        with file_lock(store.lock_path):
            with pytest.raises(StateContention):
                store.record_checkin(T0)

    def test_transaction_without_change_does_not_write(self, store: StateStore) -> None:
        with patch.object(store, "save") as mock_save:
            with store.transaction() as box:
                assert box[0] == PersistedState()
        mock_save.assert_not_called()

    def test_in_directory(self, tmp_path: Path) -> None:
        s = StateStore.in_directory(tmp_path)
        assert s.path == tmp_path / "state.json"
        assert s.lock_path == tmp_path / "state.json.lock"
