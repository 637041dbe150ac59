"""Shared test fixtures: isolated settings and a scriptable agent provider."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from pathlib import Path
from typing import Any

import pytest

from fleet.settings import FleetSettings


class FakeProvider:
    """Agent provider that replays scripted event lists.

    Each call to :meth:`stream_turn` consumes the next script.  A script entry
    may be an event dict, an exception instance (raised at that point), or
    ``("sleep", seconds)`` to stall the stream.
    """

    def __init__(
        self,
        name: str = "codex",
        scripts: list[list[Any]] | None = None,
        *,
        supports_resume: bool = True,
        enabled: bool = True,
        available: bool = True,
    ) -> None:
        self.name = name
        self.supports_resume = supports_resume
        self._enabled = enabled
        self._available = available
        self.scripts = list(scripts or [])
        self.calls: list[dict[str, Any]] = []
        self.closed = 0

    def is_enabled(self, env: Mapping[str, str]) -> bool:
        return self._enabled

    def is_available(self) -> bool:
        return self._available

    async def stream_turn(
        self,
        prompt: str,
        *,
        work_dir: str,
        thread_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        self.calls.append({"prompt": prompt, "work_dir": work_dir, "thread_id": thread_id})
        script = self.scripts.pop(0) if self.scripts else []
        try:
            for entry in script:
                if isinstance(entry, BaseException):
                    raise entry
                if isinstance(entry, tuple) and entry[0] == "sleep":
                    await asyncio.sleep(entry[1])
                    continue
                yield entry
        finally:
            self.closed += 1


def ok_turn(text: str = "done", thread_id: str = "thr-1") -> list[dict[str, Any]]:
    return [
        {"type": "thread.started", "thread_id": thread_id},
        {"type": "turn.started"},
        {"type": "item.completed", "item": {"type": "agent_message", "text": text}},
        {"type": "turn.completed", "usage": {}},
    ]


@pytest.fixture()
def settings(tmp_path: Path) -> FleetSettings:
    """Settings with every state path under a per-test directory."""
    return FleetSettings.for_directory(tmp_path / "fleet")


@pytest.fixture()
def no_sleep():
    """Sleep replacement that records requested delays and returns at once."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
