"""Tests for the singleton daemon lock and its owner classification."""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from fleet.daemon_lock import (
    DUPLICATE_WARN_STATE_NAME,
    OWNER_MONITOR,
    OWNER_OTHER,
    OWNER_UNKNOWN,
    DaemonLock,
    LockPolicy,
    acquire_daemon_lock,
    classify_command_line,
    duplicate_start_warn_throttle_ms,
    is_process_alive,
    lock_status,
    parse_lock_payload,
    payload_pid,
    should_assume_monitor_for_unknown_owner,
)

OTHER_PID = 424242
DAEMON_ARGV = ["python3", "-m", "fleet.daemon"]


@pytest.fixture()
def lock_dir(tmp_path: Path) -> Path:
    return tmp_path / "run"


def _lock(lock_dir: Path, **kwargs) -> DaemonLock:
    kwargs.setdefault("argv", DAEMON_ARGV)
    return DaemonLock(lock_dir, **kwargs)


def _write_payload(lock_dir: Path, payload) -> Path:
    lock_dir.mkdir(parents=True, exist_ok=True)
    path = lock_dir / "fleet.pid"
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload))
    return path


def _read_payload(lock_dir: Path) -> dict:
    return json.loads((lock_dir / "fleet.pid").read_text())


# ---------------------------------------------------------------------------
# Acquisition
# ---------------------------------------------------------------------------


class TestAcquire:
    def test_fresh_acquire_writes_payload(self, lock_dir):
        lock = _lock(lock_dir)
        assert lock.acquire() is True

        payload = _read_payload(lock_dir)
        assert payload["pid"] == os.getpid()
        assert payload["argv"] == DAEMON_ARGV
        assert payload["lock_token"] == lock.token
        assert payload["started_at"] == lock.started_at

    def test_reacquire_by_same_object_is_reentrant(self, lock_dir):
        lock = _lock(lock_dir)
        assert lock.acquire()
        token = lock.token
        assert lock.acquire()
        assert lock.token == token
        assert _read_payload(lock_dir)["lock_token"] == token

    def test_own_pid_with_foreign_token_is_replaced(self, lock_dir):
        _write_payload(
            lock_dir,
            {"pid": os.getpid(), "started_at": "2026-01-01T00:00:00+00:00", "lock_token": "stale"},
        )
        lock = _lock(lock_dir)
        assert lock.acquire()
        payload = _read_payload(lock_dir)
        assert payload["lock_token"] not in ("stale", None)
        assert payload["lock_token"] == lock.token

    def test_legacy_payload_matched_by_started_at(self, lock_dir):
        lock = _lock(lock_dir)
        assert lock.acquire()
        payload = _read_payload(lock_dir)
        del payload["lock_token"]
        _write_payload(lock_dir, payload)
        assert lock.owns(payload)
        assert lock.acquire()

    @pytest.mark.parametrize(
        "contents",
        [
            "not json at all",
            "",
            json.dumps({"pid": "abc"}),
            json.dumps({"pid": -5}),
            json.dumps(["list"]),
            "true",
        ],
    )
    def test_malformed_lock_file_is_replaced(self, lock_dir, contents):
        _write_payload(lock_dir, contents)
        lock = _lock(lock_dir)
        assert lock.acquire()
        assert _read_payload(lock_dir)["lock_token"] == lock.token

    def test_dead_owner_is_replaced(self, lock_dir):
        _write_payload(lock_dir, {"pid": OTHER_PID, "argv": DAEMON_ARGV})
        with patch("fleet.daemon_lock.is_process_alive", return_value=False):
            assert _lock(lock_dir).acquire()
        assert _read_payload(lock_dir)["pid"] == os.getpid()

    def test_out_of_range_legacy_pid_is_replaced(self, lock_dir):
        _write_payload(lock_dir, "2147483647")
        assert _lock(lock_dir).acquire()
        assert _read_payload(lock_dir)["pid"] == os.getpid()

    def test_live_daemon_owner_refuses(self, lock_dir, caplog):
        _write_payload(lock_dir, {"pid": OTHER_PID, "started_at": "x", "argv": DAEMON_ARGV})
        with (
            patch("fleet.daemon_lock.is_process_alive", return_value=True),
            patch(
                "fleet.daemon_lock.read_process_command_line",
                return_value="/usr/bin/python3 -m fleet.daemon",
            ),
            caplog.at_level(logging.WARNING, logger="fleet.daemon_lock"),
        ):
            assert _lock(lock_dir).acquire() is False
        assert _read_payload(lock_dir)["pid"] == OTHER_PID
        assert "refusing duplicate start" in caplog.text

    def test_live_unrelated_owner_is_replaced(self, lock_dir):
        _write_payload(lock_dir, {"pid": OTHER_PID, "argv": ["vim"]})
        with (
            patch("fleet.daemon_lock.is_process_alive", return_value=True),
            patch("fleet.daemon_lock.read_process_command_line", return_value="vim notes.txt"),
        ):
            assert _lock(lock_dir).acquire()
        assert _read_payload(lock_dir)["pid"] == os.getpid()

    def test_unknown_owner_with_recent_daemon_argv_refuses(self, lock_dir):
        started = datetime.now(UTC).isoformat()
        _write_payload(lock_dir, {"pid": OTHER_PID, "started_at": started, "argv": DAEMON_ARGV})
        with (
            patch("fleet.daemon_lock.is_process_alive", return_value=True),
            patch("fleet.daemon_lock.read_process_command_line", return_value=None),
        ):
            assert _lock(lock_dir).acquire() is False

    def test_unknown_owner_outside_grace_window_is_replaced(self, lock_dir):
        started = (datetime.now(UTC) - timedelta(hours=2)).isoformat()
        _write_payload(lock_dir, {"pid": OTHER_PID, "started_at": started, "argv": DAEMON_ARGV})
        with (
            patch("fleet.daemon_lock.is_process_alive", return_value=True),
            patch("fleet.daemon_lock.read_process_command_line", return_value=None),
        ):
            assert _lock(lock_dir).acquire()

    def test_lock_dir_that_is_a_file_continues_unlocked(self, tmp_path, caplog):
        blocker = tmp_path / "run"
        blocker.write_text("i am a file")
        with caplog.at_level(logging.WARNING, logger="fleet.daemon_lock"):
            assert _lock(blocker).acquire() is True
        assert "continuing unlocked" in caplog.text

    def test_file_that_keeps_reappearing_gives_up(self, lock_dir):
        _write_payload(lock_dir, "garbage")
        lock = _lock(lock_dir)
        with patch.object(Path, "unlink", return_value=None):
            assert lock.acquire() is False


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


class TestRelease:
    def test_release_removes_own_lock(self, lock_dir):
        lock = _lock(lock_dir)
        lock.acquire()
        assert lock.release() is True
        assert not (lock_dir / "fleet.pid").exists()

    def test_release_leaves_foreign_lock(self, lock_dir):
        lock = _lock(lock_dir)
        lock.acquire()
        payload = _read_payload(lock_dir)
        payload["lock_token"] = "someone-else"
        _write_payload(lock_dir, payload)
        assert lock.release() is False
        assert (lock_dir / "fleet.pid").exists()

    def test_release_without_file(self, lock_dir):
        assert _lock(lock_dir).release() is False


def test_acquire_daemon_lock_helper(lock_dir):
    lock = acquire_daemon_lock(lock_dir)
    assert lock is not None
    assert lock.path.exists()
    lock.release()


def test_repeated_helper_calls_keep_the_same_payload(lock_dir, caplog):
    first = acquire_daemon_lock(lock_dir)
    before = _read_payload(lock_dir)
    with caplog.at_level(logging.WARNING, logger="fleet.daemon_lock"):
        second = acquire_daemon_lock(lock_dir)

    assert first is not None
    assert second is not None
    assert _read_payload(lock_dir) == before
    assert second.token == before["lock_token"]
    assert "foreign token" not in caplog.text
    assert second.release() is True
    assert not (lock_dir / "fleet.pid").exists()


def test_lock_for_another_pid_does_not_share_tokens(lock_dir):
    assert _lock(lock_dir).acquire()
    payload = _read_payload(lock_dir)
    assert _lock(lock_dir, pid=OTHER_PID).owns(payload) is False


def test_acquire_daemon_lock_helper_refused(lock_dir):
    _write_payload(lock_dir, {"pid": OTHER_PID, "started_at": "x", "argv": DAEMON_ARGV})
    with (
        patch("fleet.daemon_lock.is_process_alive", return_value=True),
        patch("fleet.daemon_lock.read_process_command_line", return_value="fleetd"),
    ):
        assert acquire_daemon_lock(lock_dir) is None


# ---------------------------------------------------------------------------
# Duplicate start warning throttle
# ---------------------------------------------------------------------------


def test_duplicate_start_warning_is_throttled(lock_dir, caplog):
    _write_payload(lock_dir, {"pid": OTHER_PID, "started_at": "x", "argv": DAEMON_ARGV})
    with (
        patch("fleet.daemon_lock.is_process_alive", return_value=True),
        patch("fleet.daemon_lock.read_process_command_line", return_value="fleetd"),
        caplog.at_level(logging.WARNING, logger="fleet.daemon_lock"),
    ):
        for _ in range(3):
            assert _lock(lock_dir).acquire() is False

    assert caplog.text.count("refusing duplicate start") == 1
    state = json.loads((lock_dir / DUPLICATE_WARN_STATE_NAME).read_text())
    assert state["pid"] == OTHER_PID
    assert state["suppressed"] == 2


def test_duplicate_start_throttle_env(monkeypatch):
    monkeypatch.delenv("FLEET_DUPLICATE_START_WARN_THROTTLE_MS", raising=False)
    assert duplicate_start_warn_throttle_ms() == 60_000
    monkeypatch.setenv("FLEET_DUPLICATE_START_WARN_THROTTLE_MS", "10")
    assert duplicate_start_warn_throttle_ms() == 5_000
    monkeypatch.setenv("FLEET_DUPLICATE_START_WARN_THROTTLE_MS", "nonsense")
    assert duplicate_start_warn_throttle_ms() == 60_000


# ---------------------------------------------------------------------------
# Liveness check
# ---------------------------------------------------------------------------


class TestIsProcessAlive:
    @pytest.mark.parametrize(
        "pid", [float("nan"), float("inf"), 1.5, 0, -1, True, False, None, "123"]
    )
    def test_invalid_pids_skip_syscall(self, pid):
        with patch("fleet.daemon_lock.os.kill") as kill:
            assert is_process_alive(pid) is False
        kill.assert_not_called()

    def test_current_process_is_alive(self):
        assert is_process_alive(os.getpid()) is True

    def test_integral_float_is_checked(self):
        with patch("fleet.daemon_lock.os.kill") as kill:
            assert is_process_alive(float(OTHER_PID)) is True
        kill.assert_called_once_with(OTHER_PID, 0)

    def test_permission_error_means_alive(self):
        with patch("fleet.daemon_lock.os.kill", side_effect=PermissionError):
            assert is_process_alive(1) is True

    @pytest.mark.parametrize("exc", [ProcessLookupError, OverflowError, OSError])
    def test_signal_errors_mean_dead(self, exc):
        with patch("fleet.daemon_lock.os.kill", side_effect=exc):
            assert is_process_alive(OTHER_PID) is False


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassifyCommandLine:
    @pytest.mark.parametrize(
        "cmdline",
        [
            "python3 -m fleet.daemon",
            "/usr/bin/python3.12 -m fleet.daemon --verbose",
            "/home/me/.local/bin/fleetd",
            "fleet daemon run",
            "/opt/venv/bin/fleet daemon run -v",
            "python /home/me/src/fleet/daemon.py",
            "C:\\Python311\\python.exe C:\\src\\fleet\\daemon.py",
            "python3\x00-m\x00fleet.daemon",
        ],
    )
    def test_monitor_command_lines(self, cmdline):
        assert classify_command_line(cmdline) == OWNER_MONITOR

    @pytest.mark.parametrize(
        "cmdline",
        [
            "vim daemon.py",
            "node /srv/other/daemon.py",
            "python3 /srv/other/daemon.py",
            "fleet task list",
            "bash",
        ],
    )
    def test_other_command_lines(self, cmdline):
        assert classify_command_line(cmdline) == OWNER_OTHER

    @pytest.mark.parametrize("cmdline", [None, "", "   "])
    def test_unreadable_command_lines(self, cmdline):
        assert classify_command_line(cmdline) == OWNER_UNKNOWN

    def test_custom_policy_markers(self):
        policy = LockPolicy(markers=("my-supervisor",), entrypoint_patterns=())
        assert classify_command_line("/bin/my-supervisor --fg", policy) == OWNER_MONITOR
        assert classify_command_line("fleetd", policy) == OWNER_OTHER


class TestUnknownOwnerHeuristic:
    def test_requires_daemon_argv(self):
        assert not should_assume_monitor_for_unknown_owner({"argv": ["vim"]})
        assert not should_assume_monitor_for_unknown_owner({})

    def test_unparseable_start_time_assumes_monitor(self):
        assert should_assume_monitor_for_unknown_owner({"argv": DAEMON_ARGV, "started_at": "?"})

    def test_grace_window(self):
        now_ms = datetime(2026, 1, 1, 12, tzinfo=UTC).timestamp() * 1000
        payload = {"argv": DAEMON_ARGV, "started_at": "2026-01-01T11:59:00+00:00"}
        assert should_assume_monitor_for_unknown_owner(payload, now_ms=now_ms)
        payload["started_at"] = "2026-01-01T11:00:00+00:00"
        assert not should_assume_monitor_for_unknown_owner(payload, now_ms=now_ms)
        wide = LockPolicy(grace_ms=2 * 60 * 60 * 1000)
        assert should_assume_monitor_for_unknown_owner(payload, now_ms=now_ms, policy=wide)


# ---------------------------------------------------------------------------
# Payload parsing and status
# ---------------------------------------------------------------------------


def test_parse_lock_payload_variants():
    assert parse_lock_payload("1234") == {"pid": 1234}
    assert parse_lock_payload('{"pid": 7}') == {"pid": 7}
    assert parse_lock_payload("nope") is None
    assert parse_lock_payload("false") is None
    assert parse_lock_payload('"1234"') is None


def test_payload_pid_coercion():
    assert payload_pid({"pid": 12}) == 12
    assert payload_pid({"pid": 12.0}) == 12
    assert payload_pid({"pid": " 12 "}) == 12
    assert payload_pid({"pid": 12.5}) is None
    assert payload_pid({"pid": True}) is None
    assert payload_pid({}) is None


def test_lock_status_reports_holder(lock_dir):
    assert lock_status(lock_dir)["held"] is False
    lock = _lock(lock_dir)
    lock.acquire()
    status = lock_status(lock_dir)
    assert status["held"] is True
    assert status["pid"] == os.getpid()
    assert status["started_at"] == lock.started_at
