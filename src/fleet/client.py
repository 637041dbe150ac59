"""JSON-RPC client for ``codex app-server`` over stdio."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

log = logging.getLogger(__name__)

NotificationHandler = Callable[[str, dict[str, Any]], None]

STDOUT_LIMIT = 10 * 1024 * 1024


class RPCError(Exception):
    def __init__(self, error: dict[str, Any]) -> None:
        self.code = error.get("code", -1)
        self.data = error.get("data")
        super().__init__(error.get("message", "Unknown RPC error"))


class AppServerClient:
    """Drives one ``codex app-server`` subprocess.

    Responses resolve pending request futures by id.  Notifications go to a
    single listener callback (the provider turns them into stream events).
    Server-initiated requests, such as approval prompts, are declined since
    the daemon runs agents unattended with their own sandbox policy.
    """

    def __init__(
        self,
        *,
        binary: str = "codex",
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        self._binary = binary
        self._env = dict(env) if env is not None else None
        self._cwd = cwd
        self._process: asyncio.subprocess.Process | None = None
        self._next_id = 1
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._listener: NotificationHandler | None = None
        self.closed = asyncio.Event()

    async def start(self) -> None:
        self._process = await asyncio.create_subprocess_exec(
            self._binary,
            "app-server",
            env=self._env,
            cwd=self._cwd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STDOUT_LIMIT,
        )
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        from fleet import __version__

        await self.request(
            "initialize",
            {"clientInfo": {"name": "fleet", "version": __version__}},
            timeout=60,
        )

    async def stop(self) -> None:
        for task in (self._reader_task, self._stderr_task):
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        if self._process:
            if self._process.stdin:
                self._process.stdin.close()
            if self._process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self._process.terminate()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=5)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    self._process.kill()
                await self._process.wait()
        self._fail_pending(ConnectionError("app-server stopped"))

    def set_listener(self, listener: NotificationHandler | None) -> None:
        self._listener = listener

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = 120,
    ) -> dict[str, Any]:
        """Send a request and wait for its result.  Raises RPCError on error replies."""
        if not self._process or not self._process.stdin:
            raise RuntimeError("Client not started")
        if self.closed.is_set():
            raise ConnectionError("app-server connection closed")

        req_id = self._next_id
        self._next_id += 1
        msg: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
        if params is not None:
            msg["params"] = params

        # Registered before writing so a fast reply cannot miss its future.
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = future
        try:
            await self._send(msg)
        except Exception:
            self._pending.pop(req_id, None)
            raise

        try:
            if timeout is not None:
                return await asyncio.wait_for(future, timeout=timeout)
            return await future
        except (TimeoutError, asyncio.CancelledError):
            self._pending.pop(req_id, None)
            raise

    async def _send(self, msg: dict[str, Any]) -> None:
        assert self._process and self._process.stdin
        self._process.stdin.write((json.dumps(msg) + "\n").encode())
        await self._process.stdin.drain()

    def _fail_pending(self, err: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(err)
        self._pending.clear()

    async def _drain_stderr(self) -> None:
        assert self._process and self._process.stderr
        while True:
            line = await self._process.stderr.readline()
            if not line:
                break
            log.debug("app-server stderr: %s", line.decode(errors="replace").rstrip())

    async def _read_loop(self) -> None:
        assert self._process and self._process.stdout
        try:
            while True:
                line = await self._process.stdout.readline()
                if not line:
                    break
                try:
                    msg = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(msg, dict):
                    continue

                msg_id = msg.get("id")
                method = msg.get("method")
                if method is not None and msg_id is not None:
                    await self._decline_server_request(msg_id, method)
                elif method is not None:
                    if self._listener is not None:
                        self._listener(method, msg.get("params") or {})
                elif msg_id is not None:
                    self._resolve(msg_id, msg)
        finally:
            self._fail_pending(ConnectionError("app-server connection closed"))
            self.closed.set()

    async def _decline_server_request(self, msg_id: int | str, method: str) -> None:
        log.debug("Declining app-server request %s", method)
        await self._send(
            {
                "jsonrpc": "2.0",
                "id": msg_id,
                "error": {"code": -32601, "message": f"{method} is not supported"},
            }
        )

    def _resolve(self, msg_id: int | str, msg: dict[str, Any]) -> None:
        future = self._pending.pop(msg_id, None)  # type: ignore[arg-type]
        if future is None or future.done():
            return
        if "error" in msg:
            future.set_exception(RPCError(msg["error"]))
        else:
            future.set_result(msg.get("result") or {})

    async def __aenter__(self) -> AppServerClient:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()
