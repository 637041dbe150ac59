"""Agent backends.

Every provider turns one prompt into an async stream of normalised events:

- ``{"type": "thread.started", "thread_id": ...}``
- ``{"type": "turn.started"}``
- ``{"type": "item.completed", "item": {"type": "agent_message", "text": ...}}``
- ``{"type": "turn.completed", "usage": {...}}``
- ``{"type": "turn.failed", "error": {"message": ...}}``

The pool enforces timeouts and limits on top of these streams; providers
only translate each CLI's own output.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import shutil
from collections.abc import AsyncIterator, Mapping
from typing import Any, Protocol, runtime_checkable

from fleet.client import STDOUT_LIMIT, AppServerClient
from fleet.errors import TransientStreamError

log = logging.getLogger(__name__)

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")
STDERR_TAIL_CHARS = 2_000


@runtime_checkable
class AgentProvider(Protocol):
    name: str
    supports_resume: bool

    def is_enabled(self, env: Mapping[str, str]) -> bool: ...

    def is_available(self) -> bool: ...

    def stream_turn(
        self,
        prompt: str,
        *,
        work_dir: str,
        thread_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]: ...


def node_child_env(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Environment for Node-based CLIs with runtime warnings silenced.

    ``FLEET_SUPPRESS_NODE_WARNINGS=0`` keeps warnings visible.
    """
    env = dict(os.environ if base is None else base)
    if env.get("FLEET_SUPPRESS_NODE_WARNINGS", "1").strip() != "0":
        env["NODE_NO_WARNINGS"] = "1"
    return env


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {_CAMEL.sub("_", str(k)).lower(): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def _normalize_item(item: dict[str, Any]) -> dict[str, Any]:
    """app-server items use camelCase for keys and for the ``type`` value."""
    out = _snake_keys(item)
    if isinstance(out.get("type"), str):
        out["type"] = _CAMEL.sub("_", out["type"]).lower()
    return out


def _tail(text: str) -> str:
    text = text.strip()
    return text[-STDERR_TAIL_CHARS:]


class CliProvider:
    """Shared enable/availability checks for CLI-backed providers."""

    name = ""
    binary = ""
    disable_env = ""
    supports_resume = False
    node_based = False

    def is_enabled(self, env: Mapping[str, str]) -> bool:
        return env.get(self.disable_env, "").strip().lower() not in _TRUTHY

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None

    def child_env(self) -> dict[str, str]:
        return node_child_env() if self.node_based else dict(os.environ)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=5)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


async def _collect(stream: asyncio.StreamReader | None) -> str:
    if stream is None:
        return ""
    chunks = []
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        chunks.append(chunk.decode(errors="replace"))
    return "".join(chunks)


# -- Codex -------------------------------------------------------------------


class CodexProvider(CliProvider):
    """``codex app-server``: threads are resumable by id."""

    name = "codex"
    binary = "codex"
    disable_env = "CODEX_SDK_DISABLED"
    supports_resume = True
    node_based = True

    async def stream_turn(
        self,
        prompt: str,
        *,
        work_dir: str,
        thread_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        queue: asyncio.Queue[tuple[str, dict[str, Any]]] = asyncio.Queue()
        client = AppServerClient(binary=self.binary, env=self.child_env(), cwd=work_dir)
        client.set_listener(lambda method, params: queue.put_nowait((method, params)))

        async def forward_close() -> None:
            await client.closed.wait()
            queue.put_nowait(("<closed>", {}))

        watcher = asyncio.create_task(forward_close())
        active_thread: str | None = None
        turn_done = False
        try:
            await client.start()
            if thread_id:
                resp = await client.request("thread/resume", {"threadId": thread_id}, timeout=300)
            else:
                resp = await client.request("thread/start", {"cwd": work_dir}, timeout=300)
            active_thread = resp["thread"]["id"]
            yield {"type": "thread.started", "thread_id": active_thread}

            await client.request(
                "turn/start",
                {
                    "threadId": active_thread,
                    "input": [{"type": "text", "text": prompt}],
                    "cwd": work_dir,
                },
            )
            yield {"type": "turn.started"}

            while True:
                method, params = await queue.get()
                if method == "item/completed":
                    item = params.get("item")
                    if isinstance(item, dict):
                        yield {"type": "item.completed", "item": _normalize_item(item)}
                elif method == "turn/completed":
                    turn_done = True
                    turn = params.get("turn") or {}
                    if turn.get("status") == "failed":
                        message = (turn.get("error") or {}).get("message") or "turn failed"
                        yield {"type": "turn.failed", "error": {"message": message}}
                    else:
                        yield {"type": "turn.completed", "usage": params.get("usage") or {}}
                    return
                elif method == "error":
                    if params.get("willRetry"):
                        continue
                    turn_done = True
                    message = (params.get("error") or {}).get("message") or "app-server error"
                    yield {"type": "turn.failed", "error": {"message": message}}
                    return
                elif method == "<closed>":
                    raise TransientStreamError("stream closed before turn completed")
        finally:
            watcher.cancel()
            if active_thread and not turn_done and cancel is not None and cancel.is_set():
                try:
                    await asyncio.wait_for(
                        client.request("turn/interrupt", {"threadId": active_thread}), timeout=5
                    )
                except Exception as exc:
                    log.debug("turn/interrupt for %s failed: %s", active_thread, exc)
            await client.stop()


# -- Claude ------------------------------------------------------------------


class ClaudeProvider(CliProvider):
    """``claude -p --output-format stream-json``: sessions resume by id."""

    name = "claude"
    binary = "claude"
    disable_env = "CLAUDE_SDK_DISABLED"
    supports_resume = True

    def build_args(self, prompt: str, thread_id: str | None) -> list[str]:
        args = [self.binary, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if thread_id:
            args += ["--resume", thread_id]
        return args

    @staticmethod
    def translate(event: dict[str, Any]) -> list[dict[str, Any]]:
        """Map one stream-json line onto normalised events."""
        kind = event.get("type")
        if kind == "system" and event.get("subtype") == "init":
            return [{"type": "thread.started", "thread_id": event.get("session_id")}]
        if kind == "assistant":
            out = []
            for block in (event.get("message") or {}).get("content") or []:
                if block.get("type") == "text":
                    item = {"type": "agent_message", "text": block.get("text", "")}
                elif block.get("type") == "tool_use":
                    item = {
                        "type": "tool_call",
                        "name": block.get("name"),
                        "input": block.get("input"),
                    }
                else:
                    continue
                out.append({"type": "item.completed", "item": item})
            return out
        if kind == "user":
            out = []
            for block in (event.get("message") or {}).get("content") or []:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    content = block.get("content")
                    if isinstance(content, str):
                        item = {"type": "tool_result", "output": content}
                    else:
                        item = {"type": "tool_result", "content": content or []}
                    out.append({"type": "item.completed", "item": item})
            return out
        if kind == "result":
            if event.get("is_error") or event.get("subtype") != "success":
                message = event.get("result") or event.get("subtype") or "claude turn failed"
                return [{"type": "turn.failed", "error": {"message": str(message)}}]
            return [{"type": "turn.completed", "usage": event.get("usage") or {}}]
        return []

    async def stream_turn(
        self,
        prompt: str,
        *,
        work_dir: str,
        thread_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        proc = await asyncio.create_subprocess_exec(
            *self.build_args(prompt, thread_id),
            cwd=work_dir,
            env=self.child_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STDOUT_LIMIT,
        )
        stderr_task = asyncio.create_task(_collect(proc.stderr))
        finished = False
        try:
            assert proc.stdout is not None
            async for raw in proc.stdout:
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    log.debug("claude: skipping non-JSON line %r", raw[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                for normalized in self.translate(event):
                    if normalized["type"] in ("turn.completed", "turn.failed"):
                        finished = True
                    yield normalized
                if finished:
                    return
            returncode = await proc.wait()
            stderr = await stderr_task
            raise TransientStreamError(
                f"stream ended before completion (exit {returncode}): {_tail(stderr)}"
            )
        finally:
            stderr_task.cancel()
            await _terminate(proc)


# -- Copilot -----------------------------------------------------------------


class CopilotProvider(CliProvider):
    """``copilot -p``: one-shot, no resumable threads and no incremental output."""

    name = "copilot"
    binary = "copilot"
    disable_env = "COPILOT_SDK_DISABLED"
    supports_resume = False
    node_based = True

    async def stream_turn(
        self,
        prompt: str,
        *,
        work_dir: str,
        thread_id: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        proc = await asyncio.create_subprocess_exec(
            self.binary,
            "-p",
            prompt,
            "--allow-all-tools",
            cwd=work_dir,
            env=self.child_env(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STDOUT_LIMIT,
        )
        try:
            yield {"type": "turn.started"}
            stdout, stderr = await proc.communicate()
            text = stdout.decode(errors="replace").strip()
            if proc.returncode == 0:
                if text:
                    item = {"type": "agent_message", "text": text}
                    yield {"type": "item.completed", "item": item}
                yield {"type": "turn.completed", "usage": {}}
            else:
                detail = _tail(stderr.decode(errors="replace")) or text[-STDERR_TAIL_CHARS:]
                message = f"copilot exited with {proc.returncode}: {detail}".rstrip(": ")
                yield {"type": "turn.failed", "error": {"message": message}}
        finally:
            await _terminate(proc)


def default_providers() -> list[AgentProvider]:
    return [CodexProvider(), CopilotProvider(), ClaudeProvider()]
