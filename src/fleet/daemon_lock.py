"""Singleton daemon lock.

A pid file under the lock directory records who owns the daemon::

    {"pid": 4242, "started_at": "2026-01-01T00:00:00+00:00",
     "argv": ["python", "-m", "fleet.daemon"], "lock_token": "9f0c..."}

The token is regenerated on every successful acquisition, so a process that
reuses an old pid can never be mistaken for the recorded owner.  Stale,
malformed or foreign files are replaced; a live owner that looks like
another daemon makes :meth:`DaemonLock.acquire` return False.
"""

from __future__ import annotations

import atexit
import contextlib
import json
import logging
import math
import os
import re
import subprocess
import sys
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fleet.atomic import write_json_atomic
from fleet.paths import DEFAULT_LOCK_DIR
from fleet.settings import DEFAULT_LOCK_GRACE_MS, parse_bounded_int

log = logging.getLogger(__name__)

LOCK_NAME = "fleet"
MAX_ACQUIRE_ATTEMPTS = 3

DUPLICATE_WARN_STATE_NAME = "duplicate-start-warning.json"
DEFAULT_DUPLICATE_WARN_THROTTLE_MS = 60_000
MIN_DUPLICATE_WARN_THROTTLE_MS = 5_000

OWNER_MONITOR = "monitor"
OWNER_UNKNOWN = "unknown"
OWNER_OTHER = "other"

_REENTRANT = "reentrant"
_REFUSE = "refuse"
_REPLACE = "replace"

# Token and started_at this process last wrote, per lock file.  Shared by every
# DaemonLock instance so repeated acquisitions from one process are re-entrant.
_written_by_this_process: dict[str, tuple[str, str]] = {}


# -- Command-line classification -------------------------------------------


@dataclass(frozen=True)
class LockPolicy:
    """How a live lock owner is recognised as another fleet daemon.

    *markers* are plain substrings; *entrypoint_patterns* are regexes
    matched against the lowercased, slash-normalised command line.  A bare
    ``daemon.py`` script only counts when launched by a Python interpreter
    from a path mentioning ``fleet``.
    """

    markers: tuple[str, ...] = ("-m fleet.daemon", "/fleet/daemon.py")
    entrypoint_patterns: tuple[str, ...] = (
        r"(?:^|[/\s])fleetd(?:\.exe)?(?=$|\s)",
        r"(?:^|[/\s])fleet(?:\.exe)?\s+daemon\s+run(?=$|\s)",
    )
    script_pattern: str = r"(?:^|[/\s\"'=])daemon\.py(?=$|[?#/\s\"'`),;:])"
    launcher_pattern: str = r"(?:^|[/\s])python(?:3(?:\.\d+)?)?(?:\.exe)?(?=$|\s)"
    grace_ms: int = DEFAULT_LOCK_GRACE_MS


DEFAULT_POLICY = LockPolicy()


def classify_command_line(cmdline: str | None, policy: LockPolicy = DEFAULT_POLICY) -> str:
    """Classify a process command line as ``monitor``, ``unknown`` or ``other``."""
    if cmdline is None:
        return OWNER_UNKNOWN
    normalized = " ".join(cmdline.replace("\x00", " ").replace("\\", "/").lower().split())
    if not normalized:
        return OWNER_UNKNOWN
    if any(marker in normalized for marker in policy.markers):
        return OWNER_MONITOR
    if any(re.search(pattern, normalized) for pattern in policy.entrypoint_patterns):
        return OWNER_MONITOR
    if (
        "fleet" in normalized
        and re.search(policy.script_pattern, normalized)
        and re.search(policy.launcher_pattern, normalized)
    ):
        return OWNER_MONITOR
    return OWNER_OTHER


def _parse_iso_ms(value: object) -> float | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp() * 1000


def should_assume_monitor_for_unknown_owner(
    payload: dict[str, Any],
    *,
    now_ms: float | None = None,
    policy: LockPolicy = DEFAULT_POLICY,
) -> bool:
    """Decide whether an owner whose command line is unreadable is a daemon.

    True only when the recorded argv looks like a daemon launch and the
    recorded start time is unparseable or within the grace window.
    """
    argv = payload.get("argv")
    if not isinstance(argv, list) or not argv:
        return False
    if classify_command_line(" ".join(str(part) for part in argv), policy) != OWNER_MONITOR:
        return False
    started_ms = _parse_iso_ms(payload.get("started_at"))
    if started_ms is None:
        return True
    now_ms = time.time() * 1000 if now_ms is None else now_ms
    return abs(now_ms - started_ms) <= policy.grace_ms


# -- Process probes ----------------------------------------------------------


def is_process_alive(pid: object) -> bool:
    """Zero-signal liveness probe.

    Non-integral, non-finite and non-positive values are rejected without a
    syscall.  A permission error means the process exists under another
    user.
    """
    if isinstance(pid, bool):
        return False
    if isinstance(pid, float):
        if not math.isfinite(pid) or not pid.is_integer():
            return False
        pid = int(pid)
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except (ProcessLookupError, OverflowError):
        return False
    except OSError:
        return False
    return True


def read_process_command_line(pid: int) -> str | None:
    """Return the command line of *pid*, or None when it cannot be read."""
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except FileNotFoundError:
        pass
    except OSError:
        return None
    else:
        return raw.replace(b"\x00", b" ").decode(errors="replace").strip()

    try:
        result = subprocess.run(
            ["ps", "-o", "args=", "-p", str(pid)],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


# -- Payload parsing ----------------------------------------------------------


def parse_lock_payload(text: str) -> dict[str, Any] | None:
    """Parse pid-file contents.  A bare number is read as a legacy pid-only file."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if isinstance(data, bool):
        return None
    if isinstance(data, int | float):
        return {"pid": data}
    return data if isinstance(data, dict) else None


def payload_pid(payload: dict[str, Any]) -> int | None:
    pid = payload.get("pid")
    if isinstance(pid, bool):
        return None
    if isinstance(pid, float) and math.isfinite(pid) and pid.is_integer():
        pid = int(pid)
    elif isinstance(pid, str) and pid.strip().isdigit():
        pid = int(pid.strip())
    if isinstance(pid, int) and pid > 0:
        return pid
    return None


def duplicate_start_warn_throttle_ms() -> int:
    return parse_bounded_int(
        os.environ.get("FLEET_DUPLICATE_START_WARN_THROTTLE_MS"),
        DEFAULT_DUPLICATE_WARN_THROTTLE_MS,
        MIN_DUPLICATE_WARN_THROTTLE_MS,
        2**31 - 1,
    )


# -- Lock -------------------------------------------------------------------


class DaemonLock:
    """Pid-file lock owned by one daemon process."""

    def __init__(
        self,
        lock_dir: Path = DEFAULT_LOCK_DIR,
        *,
        name: str = LOCK_NAME,
        policy: LockPolicy | None = None,
        argv: list[str] | None = None,
        pid: int | None = None,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.path = self.lock_dir / f"{name}.pid"
        self.policy = policy or DEFAULT_POLICY
        self.argv = list(sys.argv if argv is None else argv)
        self.pid = os.getpid() if pid is None else pid
        self.token: str | None = None
        self.started_at: str | None = None
        self._atexit_registered = False

    def read_payload(self) -> dict[str, Any] | None:
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        return parse_lock_payload(text)

    def _key(self) -> str:
        return str(self.path.resolve())

    def _known_writes(self) -> list[tuple[str | None, str | None]]:
        known: list[tuple[str | None, str | None]] = [(self.token, self.started_at)]
        if self.pid == os.getpid():
            shared = _written_by_this_process.get(self._key())
            if shared is not None:
                known.append(shared)
        return known

    def owns(self, payload: dict[str, Any]) -> bool:
        """True when *payload* was written by this lock or another one in this process."""
        token = payload.get("lock_token")
        for known_token, known_started_at in self._known_writes():
            if isinstance(token, str) and token:
                if token == known_token:
                    self.token, self.started_at = known_token, known_started_at
                    return True
            # Payloads written before tokens existed only carry started_at.
            elif known_started_at is not None and payload.get("started_at") == known_started_at:
                self.token, self.started_at = known_token, known_started_at
                return True
        return False

    def acquire(self) -> bool:
        """Take the lock.  False means another daemon is already running."""
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            log.warning("Cannot create lock dir %s (%s); continuing unlocked", self.lock_dir, exc)
            return True

        for _attempt in range(MAX_ACQUIRE_ATTEMPTS):
            try:
                self._write_fresh()
                return True
            except FileExistsError:
                pass
            except OSError as exc:
                log.warning("Lock file %s unusable (%s); continuing unlocked", self.path, exc)
                return True

            try:
                text = self.path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                continue
            except OSError as exc:
                log.warning("Cannot read lock file %s (%s); continuing unlocked", self.path, exc)
                return True

            decision = self._inspect(parse_lock_payload(text))
            if decision == _REENTRANT:
                return True
            if decision == _REFUSE:
                return False
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                log.warning("Cannot replace lock file %s (%s); continuing unlocked", self.path, exc)
                return True

        log.warning(
            "Lock file %s kept reappearing after %d attempts; another daemon is starting",
            self.path,
            MAX_ACQUIRE_ATTEMPTS,
        )
        return False

    def release(self) -> bool:
        """Remove the pid file if this object owns it."""
        payload = self.read_payload()
        if payload is None or payload_pid(payload) != self.pid or not self.owns(payload):
            return False
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        log.info("Released daemon lock %s", self.path)
        _written_by_this_process.pop(self._key(), None)
        self.token = None
        return True

    def _write_fresh(self) -> None:
        token = uuid.uuid4().hex
        started_at = datetime.now(UTC).isoformat()
        payload = {
            "pid": self.pid,
            "started_at": started_at,
            "argv": self.argv,
            "lock_token": token,
        }
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        self.token = token
        self.started_at = started_at
        if self.pid == os.getpid():
            _written_by_this_process[self._key()] = (token, started_at)
        if not self._atexit_registered:
            atexit.register(self.release)
            self._atexit_registered = True
        log.info("Acquired daemon lock %s (pid %d)", self.path, self.pid)

    def _inspect(self, payload: dict[str, Any] | None) -> str:
        if payload is None:
            log.warning("Replacing malformed lock file %s", self.path)
            return _REPLACE
        pid = payload_pid(payload)
        if pid is None:
            log.warning("Replacing lock file %s with invalid pid %r", self.path, payload.get("pid"))
            return _REPLACE

        if pid == self.pid:
            if self.owns(payload):
                return _REENTRANT
            log.warning("Lock file %s names this pid with a foreign token; replacing", self.path)
            return _REPLACE

        if not is_process_alive(pid):
            log.info("Removing stale lock for dead pid %d", pid)
            return _REPLACE

        kind = classify_command_line(read_process_command_line(pid), self.policy)
        if kind == OWNER_MONITOR:
            self._warn_duplicate_start(pid, payload)
            return _REFUSE
        if kind == OWNER_UNKNOWN:
            if should_assume_monitor_for_unknown_owner(payload, policy=self.policy):
                self._warn_duplicate_start(pid, payload)
                return _REFUSE
            log.warning("Lock owner pid %d could not be identified; replacing", pid)
            return _REPLACE
        log.warning("Lock file %s held by unrelated pid %d; replacing", self.path, pid)
        return _REPLACE

    def _warn_duplicate_start(self, owner_pid: int, payload: dict[str, Any]) -> None:
        state_path = self.lock_dir / DUPLICATE_WARN_STATE_NAME
        try:
            state = json.loads(state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            state = {}
        if not isinstance(state, dict):
            state = {}

        now_ms = time.time() * 1000
        same_owner = state.get("pid") == owner_pid
        last = state.get("last_logged_at")
        suppressed = state.get("suppressed", 0) if same_owner else 0
        if not isinstance(suppressed, int) or isinstance(suppressed, bool):
            suppressed = 0

        if (
            same_owner
            and isinstance(last, int | float)
            and now_ms - last < duplicate_start_warn_throttle_ms()
        ):
            state = {"pid": owner_pid, "last_logged_at": last, "suppressed": suppressed + 1}
        else:
            extra = f" ({suppressed} repeats suppressed)" if suppressed else ""
            log.warning(
                "Daemon already running as pid %d (started %s); refusing duplicate start%s",
                owner_pid,
                payload.get("started_at", "unknown"),
                extra,
            )
            state = {"pid": owner_pid, "last_logged_at": now_ms, "suppressed": 0}

        try:
            write_json_atomic(state_path, state)
        except OSError:
            log.debug("Could not persist duplicate-start state", exc_info=True)


def acquire_daemon_lock(
    lock_dir: Path = DEFAULT_LOCK_DIR, *, policy: LockPolicy | None = None
) -> DaemonLock | None:
    """Take the daemon lock, returning the held lock or None when refused."""
    lock = DaemonLock(lock_dir, policy=policy)
    return lock if lock.acquire() else None


def lock_status(lock_dir: Path = DEFAULT_LOCK_DIR, *, policy: LockPolicy | None = None) -> dict:
    """Describe the current lock holder without touching the lock."""
    lock = DaemonLock(lock_dir, policy=policy)
    payload = lock.read_payload()
    if payload is None:
        return {"path": str(lock.path), "held": False}
    pid = payload_pid(payload)
    alive = is_process_alive(pid)
    kind = (
        classify_command_line(read_process_command_line(pid), lock.policy)
        if alive and pid is not None
        else None
    )
    return {
        "path": str(lock.path),
        "held": alive,
        "pid": pid,
        "started_at": payload.get("started_at"),
        "owner_kind": kind,
    }
