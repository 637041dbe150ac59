"""Persisted throttle for repetitive operator warnings.

Workspace sync can fail the same way every few minutes for hours (an
expired token, a deleted remote).  :class:`WarnStateCache` remembers when
each warning key last fired so a given key logs at most once per throttle
window, across daemon restarts.  The file is a flat JSON object of
``key -> ISO timestamp``.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path

from fleet.atomic import file_timestamp, write_json_atomic
from fleet.paths import DEFAULT_CACHE_DIR
from fleet.settings import DEFAULT_WARN_MAX_KEYS, DEFAULT_WARN_THROTTLE_MS

log = logging.getLogger(__name__)

DEFAULT_WARN_STATE_NAME = "workspace-sync-warn-state"
STALE_ENTRY_S = 24 * 60 * 60
MAX_CORRUPT_ARCHIVES = 5
CORRUPT_ARCHIVE_MAX_AGE_S = 14 * 24 * 60 * 60


def _to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat()


def _from_iso(value: object) -> float | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


class WarnStateCache:
    def __init__(
        self,
        cache_dir: Path = DEFAULT_CACHE_DIR,
        *,
        name: str = DEFAULT_WARN_STATE_NAME,
        throttle_ms: int = DEFAULT_WARN_THROTTLE_MS,
        max_keys: int = DEFAULT_WARN_MAX_KEYS,
        clock=time.time,
    ) -> None:
        self.path = Path(cache_dir) / f"{name}.json"
        self.throttle_s = max(0, throttle_ms) / 1000
        self.max_keys = max(1, max_keys)
        self._clock = clock
        self._entries: dict[str, float] = {}

    @property
    def entries(self) -> dict[str, str]:
        return {key: _to_iso(ts) for key, ts in self._entries.items()}

    def load(self, *, read_only: bool = False) -> None:
        """Read persisted state, archiving a corrupt file and dropping stale keys.

        With *read_only* the file on disk is left exactly as found.
        """
        if not read_only:
            self.cleanup_archives()
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._entries = {}
            return
        except OSError as exc:
            log.warning("Cannot read warn state %s: %s", self.path, exc)
            self._entries = {}
            return

        try:
            document = json.loads(raw)
            if not isinstance(document, dict):
                raise ValueError("top-level value is not an object")
        except ValueError as exc:
            if read_only:
                log.warning("Warn state %s is corrupt: %s", self.path, exc)
            else:
                self._archive_corrupt(str(exc))
            self._entries = {}
            return

        now = self._clock()
        entries: dict[str, float] = {}
        for key, value in document.items():
            ts = _from_iso(value)
            if ts is not None and now - ts <= STALE_ENTRY_S:
                entries[str(key)] = ts
        self._entries = entries
        if read_only:
            return
        if self._evict() or len(entries) != len(document):
            self.save()

    def _archive_corrupt(self, reason: str) -> None:
        archive = self.path.with_name(f"{self.path.name}.corrupt-{file_timestamp()}")
        try:
            self.path.replace(archive)
            log.warning("Warn state %s corrupt (%s); archived to %s", self.path, reason, archive)
        except OSError:
            log.exception("Could not archive corrupt warn state %s", self.path)
        self.cleanup_archives()

    def cleanup_archives(self) -> int:
        """Drop corrupt archives older than 14 days and keep at most five.  Returns removals."""
        try:
            archives = [
                (p.stat().st_mtime, p) for p in self.path.parent.glob(f"{self.path.name}.corrupt-*")
            ]
        except OSError:
            return 0
        archives.sort(reverse=True)
        now = self._clock()
        removed = 0
        for index, (mtime, archive) in enumerate(archives):
            if index < MAX_CORRUPT_ARCHIVES and now - mtime <= CORRUPT_ARCHIVE_MAX_AGE_S:
                continue
            try:
                archive.unlink()
                removed += 1
            except OSError as exc:
                log.debug("Could not remove %s: %s", archive, exc)
        return removed

    def _evict(self) -> bool:
        excess = len(self._entries) - self.max_keys
        if excess <= 0:
            return False
        for key, _ts in sorted(self._entries.items(), key=lambda kv: kv[1])[:excess]:
            del self._entries[key]
        return True

    def save(self) -> None:
        payload = {key: _to_iso(ts) for key, ts in self._entries.items()}
        try:
            write_json_atomic(self.path, payload, fallback_direct=False)
        except OSError as exc:
            log.warning("Could not persist warn state %s: %s", self.path, exc)

    def should_warn(self, key: str) -> bool:
        last = self._entries.get(key)
        return last is None or self._clock() - last >= self.throttle_s

    def record(self, key: str) -> None:
        self._entries[key] = self._clock()
        self._evict()
        self.save()

    def warn(self, key: str, msg: str, *args: object) -> bool:
        """Log *msg* at warning level unless *key* fired within the window."""
        if not self.should_warn(key):
            log.debug("Throttled warning %s: " + msg, key, *args)
            return False
        log.warning(msg, *args)
        self.record(key)
        return True

    def clear(self) -> None:
        self._entries.clear()
        self.save()
