"""Fleet daemon: the single supervisory process.

Startup takes the singleton lock, loads the task store (recovering tasks a
crash left ``running``) and the warn-state cache, then runs three kinds of
loop on one event loop:

- the supervisor, which dispatches pending tasks to the agent pool,
- workspace sync, which fetches every configured repository,
- one PR cleanup daemon per repository.

Run with ``python -m fleet.daemon`` or ``fleet daemon run``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any

from fleet import git_ops
from fleet.context import FleetContext
from fleet.pr_cleanup import PRCleanupDaemon
from fleet.settings import FleetSettings, load_settings
from fleet.task_store import (
    STATUS_ACTIVE,
    STATUS_DONE,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    TaskRecord,
)

log = logging.getLogger(__name__)

OUTPUT_METADATA_CHARS = 4_000
INTERRUPTED_ERROR = "interrupted: daemon stopped while the task was running"


# -- Daemon ---------------------------------------------------------------


class FleetDaemon:
    def __init__(
        self,
        context: FleetContext,
        *,
        pr_cleaners: list[PRCleanupDaemon] | None = None,
    ) -> None:
        self.ctx = context
        self.settings = context.settings
        self.pr_cleaners = (
            pr_cleaners
            if pr_cleaners is not None
            else [context.pr_cleanup_for(repo) for repo in self.settings.repos]
        )
        self._task_runs: dict[str, asyncio.Task[None]] = {}
        self._loops: list[asyncio.Task[None]] = []
        self._started = False

    async def start(self) -> bool:
        """Acquire the lock and start every loop.  False if another daemon runs."""
        if not self.ctx.lock.acquire():
            self.ctx.events.publish("daemon:duplicate_start", str(os.getpid()), "refused")
            return False

        self.ctx.store.load()
        recovered = self.recover_interrupted_tasks()
        if recovered:
            log.warning("Re-queued %d task(s) interrupted by a previous shutdown", recovered)
        self.ctx.warn_state.load()

        self._loops = [
            asyncio.create_task(self._supervise_loop(), name="fleet-supervisor"),
            asyncio.create_task(self._workspace_sync_loop(), name="fleet-workspace-sync"),
        ]
        for cleaner in self.pr_cleaners:
            cleaner.start()
        self._started = True
        log.info(
            "Fleet daemon started (pid %d, providers: %s, repos: %d)",
            os.getpid(),
            ", ".join(self.ctx.pool.available_providers) or "none",
            len(self.settings.repos),
        )
        self.ctx.events.publish("daemon:started", str(os.getpid()), "running")
        return True

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        for cleaner in self.pr_cleaners:
            cleaner.stop()
        for task in self._loops:
            task.cancel()
        runs = list(self._task_runs.values())
        for run in runs:
            run.cancel()
        await asyncio.gather(*self._loops, *runs, return_exceptions=True)
        self._loops = []
        await self.ctx.store.wait_for_writes()
        self.ctx.lock.release()
        self.ctx.events.publish("daemon:stopped", str(os.getpid()), "stopped")
        log.info("Fleet daemon stopped")

    async def serve_forever(self) -> None:
        """Run until SIGTERM or SIGINT."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def on_signal() -> None:
            log.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)

        await stop_event.wait()
        await self.stop()

    # -- Tasks --------------------------------------------------------------

    def recover_interrupted_tasks(self) -> int:
        recovered = 0
        for task in self.ctx.store.get_all_tasks(include_archived=False):
            if task["status"] in (STATUS_ACTIVE, STATUS_RUNNING):
                self.ctx.store.update_task(
                    task["id"], {"status": STATUS_PENDING, "last_error": INTERRUPTED_ERROR}
                )
                recovered += 1
        return recovered

    async def dispatch_pending_tasks(self) -> int:
        """Start pending tasks up to the concurrency limit.  Returns how many started."""
        capacity = self.settings.max_concurrent_tasks - len(self._task_runs)
        if capacity <= 0:
            return 0
        pending = sorted(
            (
                t
                for t in self.ctx.store.get_all_tasks(include_archived=False)
                if t["status"] == STATUS_PENDING and t["id"] not in self._task_runs
            ),
            key=lambda t: t.get("created_at", ""),
        )
        started = 0
        for task in pending[:capacity]:
            self.ctx.store.update_task(task["id"], {"status": STATUS_ACTIVE})
            run = asyncio.create_task(self._run_task(task), name=f"fleet-task-{task['id']}")
            self._task_runs[task["id"]] = run
            run.add_done_callback(lambda _t, task_id=task["id"]: self._task_runs.pop(task_id, None))
            started += 1
        return started

    async def _run_task(self, task: TaskRecord) -> None:
        task_id = task["id"]
        metadata: dict[str, Any] = task.get("metadata") or {}
        prompt = metadata.get("prompt") or task["title"]
        default_dir = self.settings.repos[0] if self.settings.repos else os.getcwd()
        work_dir = metadata.get("repo") or default_dir
        self.ctx.store.update_task(task_id, {"status": STATUS_RUNNING})
        self.ctx.events.publish("task:status", task_id, STATUS_RUNNING)
        log.info("Running task %s: %s", task_id, task["title"])

        try:
            result = await self.ctx.pool.launch_or_resume_thread(
                prompt,
                work_dir,
                metadata.get("turn_limit_ms", self.settings.turn_timeout_ms),
                {"task_key": task_id, "provider": metadata.get("provider")},
            )
        except asyncio.CancelledError:
            self.ctx.store.update_task(
                task_id, {"status": STATUS_PENDING, "last_error": INTERRUPTED_ERROR}
            )
            raise

        current = self.ctx.store.get_task(task_id)
        turn_count = (current or task).get("turn_count", 0) + 1
        if result.success:
            self.ctx.store.update_task(
                task_id,
                {
                    "status": STATUS_DONE,
                    "turn_count": turn_count,
                    "last_error": None,
                    "metadata": {
                        "provider": result.provider,
                        "thread_id": result.thread_id,
                        "output": result.output[-OUTPUT_METADATA_CHARS:],
                    },
                },
            )
            self.ctx.store.archive_task(task_id)
            self.ctx.events.publish("task:status", task_id, STATUS_DONE)
            log.info("Task %s done via %s", task_id, result.provider)
        else:
            self.ctx.store.update_task(
                task_id,
                {"status": STATUS_FAILED, "turn_count": turn_count, "last_error": result.error},
            )
            self.ctx.events.publish(
                "task:status", task_id, STATUS_FAILED, extra={"error": result.error}
            )
            log.warning("Task %s failed: %s", task_id, result.error)

    # -- Loops ----------------------------------------------------------------

    async def _supervise_loop(self) -> None:
        interval = self.ctx.normalizer.seconds(
            self.settings.supervisor_interval_ms, label="supervisor_interval_ms"
        )
        while True:
            try:
                self.ctx.store.refresh_from_disk()
                await self.dispatch_pending_tasks()
            except Exception:
                log.exception("Supervisor pass failed")
            await asyncio.sleep(interval)

    async def sync_workspaces(self) -> int:
        """Fetch every configured repository.  Returns the number that failed."""
        failures = 0
        for repo in self.settings.repos:
            try:
                await asyncio.to_thread(git_ops.sync_workspace, repo)
            except RuntimeError as exc:
                failures += 1
                self.ctx.warn_state.warn(
                    f"sync:{repo}", "Workspace sync failed for %s: %s", repo, exc
                )
        return failures

    async def _workspace_sync_loop(self) -> None:
        if not self.settings.repos:
            return
        interval = self.ctx.normalizer.seconds(
            self.settings.workspace_sync_interval_ms, label="workspace_sync_interval_ms"
        )
        while True:
            try:
                await self.sync_workspaces()
            except Exception:
                log.exception("Workspace sync pass failed")
            await asyncio.sleep(interval)


# -- Entry point ----------------------------------------------------------


async def run_daemon(settings: FleetSettings | None = None) -> int:
    context = FleetContext.from_settings(settings or load_settings())
    daemon = FleetDaemon(context)
    if not await daemon.start():
        return 1
    try:
        await daemon.serve_forever()
    finally:
        await daemon.stop()
        context.events.close()
    return 0


def main() -> None:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s"
    )
    raise SystemExit(asyncio.run(run_daemon()))


if __name__ == "__main__":
    main()
