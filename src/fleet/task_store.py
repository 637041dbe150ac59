"""Persistent task store.

Tasks live in a single JSON document::

    {"tasks": {"<id>": {...}}, "_meta": {"version": 1, "task_count": 3, "updated_at": "..."}}

All mutations go through :class:`TaskStore`.  Each mutation schedules a
durable write; writes are coalesced by a single writer task per store so
that the newest in-memory state always wins on disk and two writes never
interleave.  Before each write the store adopts records another process
wrote to the same file, so a write never drops ids it has not seen.  A
corrupt file is backed up next to the original and the store starts over
empty.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict

from fleet.atomic import file_timestamp, write_json_atomic
from fleet.errors import CorruptStateError
from fleet.paths import DEFAULT_TASK_STORE_PATH

log = logging.getLogger(__name__)

STORE_VERSION = 1

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_RUNNING = "running"
STATUS_FAILED = "failed"
STATUS_DONE = "done"
STATUS_ARCHIVED = "archived"

VALID_TASK_STATUSES = frozenset(
    {
        STATUS_PENDING,
        STATUS_ACTIVE,
        STATUS_RUNNING,
        STATUS_FAILED,
        STATUS_DONE,
        STATUS_ARCHIVED,
    }
)
TERMINAL_TASK_STATUSES = frozenset({STATUS_DONE, STATUS_ARCHIVED})


class TaskRecord(TypedDict, total=False):
    id: str
    title: str
    status: str
    turn_count: int
    last_error: str | None
    metadata: dict[str, Any]
    created_at: str
    updated_at: str
    archived_at: str | None


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _backup_name(path: Path) -> Path:
    return path.with_name(f"{path.name}.corrupt-{file_timestamp()}.json")


class TaskStore:
    """Owns the task map and its on-disk JSON document."""

    def __init__(self, path: Path = DEFAULT_TASK_STORE_PATH) -> None:
        self.path = Path(path)
        self._tasks: dict[str, TaskRecord] = {}
        self._loaded = False
        self._dirty = False
        self._replace_on_disk = False
        self._writer: asyncio.Task[None] | None = None

    # -- Loading ------------------------------------------------------------

    def load(self) -> dict[str, TaskRecord]:
        """Read the store from disk, recovering from corruption.

        Returns a copy of the loaded task map.
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            self._tasks = {}
            self._loaded = True
            return {}

        try:
            self._tasks = self._parse(raw)
        except CorruptStateError as exc:
            backup = _backup_name(self.path)
            try:
                backup.write_bytes(raw)
                log.warning("Task store corrupt (%s); backed up to %s", exc.reason, backup)
            except OSError:
                log.exception("Task store corrupt and backup to %s failed", backup)
            self._tasks = {}
            self._write_now(merge=False)
        self._loaded = True
        return self.snapshot()

    def _parse(self, raw: bytes) -> dict[str, TaskRecord]:
        try:
            document = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CorruptStateError(self.path, f"invalid JSON: {exc}") from None
        if not isinstance(document, dict):
            raise CorruptStateError(self.path, "top-level value is not an object")
        tasks = document.get("tasks", {})
        if not isinstance(tasks, dict):
            raise CorruptStateError(self.path, "'tasks' is not an object")

        parsed: dict[str, TaskRecord] = {}
        for task_id, record in tasks.items():
            if not isinstance(record, dict):
                log.warning("Dropping malformed task entry %r", task_id)
                continue
            parsed[task_id] = self._normalize({**record, "id": task_id})
        return parsed

    def refresh_from_disk(self) -> int:
        """Adopt records another process wrote since our last write.

        A disk record replaces the in-memory one only when it is new or has a
        later ``updated_at``.  Returns the number of records adopted.
        """
        self._ensure_loaded()
        return self._adopt(self._read_disk())

    def _read_disk(self) -> dict[str, TaskRecord] | None:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("Cannot re-read task store %s: %s", self.path, exc)
            return None
        try:
            return self._parse(raw)
        except CorruptStateError as exc:
            log.warning("Skipping task store refresh: %s", exc.reason)
            return None

    def _adopt(self, on_disk: dict[str, TaskRecord] | None) -> int:
        adopted = 0
        for task_id, record in (on_disk or {}).items():
            mine = self._tasks.get(task_id)
            if mine is None or record.get("updated_at", "") > mine.get("updated_at", ""):
                self._tasks[task_id] = record
                adopted += 1
        return adopted

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    # -- Mutations ----------------------------------------------------------

    @staticmethod
    def _normalize(record: Mapping[str, Any]) -> TaskRecord:
        now = _now_iso()
        status = record.get("status") or STATUS_PENDING
        if status not in VALID_TASK_STATUSES:
            log.warning("Unknown status %r on task %s; treating as pending", status, record["id"])
            status = STATUS_PENDING
        turn_count = record.get("turn_count", 0)
        if isinstance(turn_count, bool) or not isinstance(turn_count, int) or turn_count < 0:
            turn_count = 0
        metadata = record.get("metadata")
        normalized: TaskRecord = {
            **record,  # type: ignore[typeddict-item]
            "id": str(record["id"]),
            "title": str(record.get("title") or ""),
            "status": status,
            "turn_count": turn_count,
            "last_error": record.get("last_error"),
            "metadata": dict(metadata) if isinstance(metadata, Mapping) else {},
            "created_at": record.get("created_at") or now,
            "updated_at": record.get("updated_at") or now,
            "archived_at": record.get("archived_at"),
        }
        return normalized

    def add_task(self, record: Mapping[str, Any]) -> TaskRecord:
        """Insert a new task.  Raises ValueError on a missing or duplicate id."""
        self._ensure_loaded()
        task_id = record.get("id")
        if not task_id:
            raise ValueError("task record requires an 'id'")
        task_id = str(task_id)
        if task_id in self._tasks:
            raise ValueError(f"task {task_id} already exists")
        task = self._normalize({**record, "id": task_id})
        self._tasks[task_id] = task
        self._schedule_write()
        return copy.deepcopy(task)

    def update_task(self, task_id: str, changes: Mapping[str, Any]) -> TaskRecord | None:
        """Merge *changes* into an existing task.  Returns None for unknown ids.

        ``id`` and ``created_at`` are immutable.  A ``turn_count`` lower than
        the stored one is ignored.
        """
        self._ensure_loaded()
        current = self._tasks.get(task_id)
        if current is None:
            return None
        changes = dict(changes)
        changes.pop("id", None)
        changes.pop("created_at", None)

        if "status" in changes and changes["status"] not in VALID_TASK_STATUSES:
            raise ValueError(f"invalid task status {changes['status']!r}")
        if "turn_count" in changes:
            turn_count = changes["turn_count"]
            if (
                isinstance(turn_count, bool)
                or not isinstance(turn_count, int)
                or turn_count < current.get("turn_count", 0)
            ):
                log.warning(
                    "Ignoring non-monotonic turn_count %r for task %s", turn_count, task_id
                )
                changes.pop("turn_count")
        if "metadata" in changes:
            changes["metadata"] = {**current.get("metadata", {}), **(changes["metadata"] or {})}

        updated: TaskRecord = {**current, **changes}  # type: ignore[typeddict-item]
        updated["updated_at"] = _now_iso()
        self._tasks[task_id] = updated
        self._schedule_write()
        return copy.deepcopy(updated)

    def archive_task(self, task_id: str) -> TaskRecord | None:
        now = _now_iso()
        return self.update_task(task_id, {"status": STATUS_ARCHIVED, "archived_at": now})

    def clear(self) -> None:
        """Forget every task and persist the empty store."""
        self._tasks = {}
        self._loaded = True
        self._replace_on_disk = True
        self._schedule_write()

    # -- Queries ------------------------------------------------------------

    def get_task(self, task_id: str) -> TaskRecord | None:
        self._ensure_loaded()
        task = self._tasks.get(task_id)
        return copy.deepcopy(task) if task is not None else None

    def get_all_tasks(self, *, include_archived: bool = True) -> list[TaskRecord]:
        self._ensure_loaded()
        return [
            copy.deepcopy(task)
            for task in self._tasks.values()
            if include_archived or task["status"] != STATUS_ARCHIVED
        ]

    def snapshot(self) -> dict[str, TaskRecord]:
        return copy.deepcopy(self._tasks)

    # -- Persistence --------------------------------------------------------

    def _render(self) -> dict[str, Any]:
        return {
            "tasks": copy.deepcopy(self._tasks),
            "_meta": {
                "version": STORE_VERSION,
                "task_count": len(self._tasks),
                "updated_at": _now_iso(),
            },
        }

    def _write_now(self, *, merge: bool = True) -> None:
        if merge and not self._replace_on_disk:
            self._adopt(self._read_disk())
        self._replace_on_disk = False
        try:
            write_json_atomic(self.path, self._render())
        except OSError:
            log.exception("Failed to persist task store %s", self.path)

    def _schedule_write(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dirty = False
            self._write_now()
            return
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._drain_writes())

    async def _drain_writes(self) -> None:
        while self._dirty:
            self._dirty = False
            if self._replace_on_disk:
                self._replace_on_disk = False
            else:
                # Other processes write the same file; never drop their records.
                self._adopt(await asyncio.to_thread(self._read_disk))
            payload = self._render()
            try:
                await asyncio.to_thread(write_json_atomic, self.path, payload)
            except OSError:
                log.exception("Failed to persist task store %s", self.path)

    async def wait_for_writes(self) -> None:
        """Resolve once every scheduled write has reached disk."""
        while self._writer is not None and not self._writer.done():
            await asyncio.shield(self._writer)
