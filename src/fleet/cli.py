from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Any

import click

from fleet import __version__
from fleet.context import FleetContext
from fleet.daemon import run_daemon
from fleet.daemon_lock import lock_status
from fleet.settings import FleetSettings, load_settings
from fleet.task_store import (
    STATUS_ARCHIVED,
    STATUS_FAILED,
    STATUS_PENDING,
    VALID_TASK_STATUSES,
    TaskStore,
)
from fleet.warn_state import WarnStateCache


def _emit(payload: Any) -> None:
    click.echo(json.dumps(payload, default=str))


def _settings() -> FleetSettings:
    return load_settings()


class _JsonAwareGroup(click.Group):
    """Group that reports errors as JSON on stdout.

    Every command prints JSON, so usage errors do too.  Unknown commands get
    close-match suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                matches = difflib.get_close_matches(
                    args[0], self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{args[0]}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            _emit({"ok": False, "error": e.format_message()})
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Supervise autonomous coding agents across your repositories.

    \b
    Quick start:
      fleet daemon run                       Start the supervisor (foreground)
      fleet task add "Fix flaky test" -r .   Queue work for an agent
      fleet task list                        Show queued and running tasks
      fleet pr scan -r .                     One conflict/CI cleanup pass
      fleet providers                        Which agent CLIs are usable

    \b
    Config lives in ~/.config/fleet/config.toml ($FLEET_HOME overrides).
    """


# -- daemon --


@main.group()
def daemon():
    """Run and inspect the supervisor daemon."""


@daemon.command("run")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging.")
def daemon_run(verbose: bool) -> None:
    """Run the daemon in the foreground until SIGTERM/SIGINT."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    code = asyncio.run(run_daemon(_settings()))
    if code != 0:
        raise click.ClickException("another fleet daemon is already running")


@daemon.command("status")
def daemon_status() -> None:
    """Show who holds the daemon lock."""
    settings = _settings()
    _emit({"ok": True, **lock_status(settings.lock_dir)})


# -- task --


@main.group()
def task():
    """Queue and inspect agent tasks."""


def _store(settings: FleetSettings) -> TaskStore:
    store = TaskStore(settings.task_store_path)
    store.load()
    return store


@task.command("add")
@click.argument("title")
@click.option("--prompt", "-p", default=None, help="Prompt for the agent (default: title).")
@click.option(
    "--repo",
    "-r",
    default=None,
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Working directory for the agent.",
)
@click.option(
    "--provider",
    type=click.Choice(["codex", "copilot", "claude"]),
    default=None,
    help="Preferred agent backend.",
)
@click.option("--turn-limit-ms", type=int, default=None, help="Time budget for the turn.")
def task_add(
    title: str,
    prompt: str | None,
    repo: str | None,
    provider: str | None,
    turn_limit_ms: int | None,
) -> None:
    """Queue a task."""
    metadata: dict[str, Any] = {}
    if prompt:
        metadata["prompt"] = prompt
    if repo:
        metadata["repo"] = repo
    if provider:
        metadata["provider"] = provider
    if turn_limit_ms is not None:
        metadata["turn_limit_ms"] = turn_limit_ms
    store = _store(_settings())
    record = store.add_task(
        {
            "id": uuid.uuid4().hex[:12],
            "title": title,
            "status": STATUS_PENDING,
            "metadata": metadata,
        }
    )
    _emit({"ok": True, "task": record})


@task.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include archived tasks.")
@click.option("--status", type=click.Choice(sorted(VALID_TASK_STATUSES)), default=None)
def task_list(show_all: bool, status: str | None) -> None:
    """List tasks."""
    include_archived = show_all or status == STATUS_ARCHIVED
    tasks = _store(_settings()).get_all_tasks(include_archived=include_archived)
    if status:
        tasks = [t for t in tasks if t["status"] == status]
    _emit({"ok": True, "tasks": tasks, "count": len(tasks)})


@task.command("archive")
@click.argument("task_id")
def task_archive(task_id: str) -> None:
    """Archive a task (records are never deleted)."""
    record = _store(_settings()).archive_task(task_id)
    if record is None:
        raise click.ClickException(f"Task {task_id} not found")
    _emit({"ok": True, "task": record})


@task.command("retry")
@click.argument("task_id")
def task_retry(task_id: str) -> None:
    """Put a failed task back in the queue."""
    store = _store(_settings())
    current = store.get_task(task_id)
    if current is None:
        raise click.ClickException(f"Task {task_id} not found")
    if current["status"] != STATUS_FAILED:
        raise click.ClickException(f"Task {task_id} is {current['status']}, not failed")
    _emit({"ok": True, "task": store.update_task(task_id, {"status": STATUS_PENDING})})


# -- pr --


@main.group()
def pr():
    """Pull-request conflict and CI cleanup."""


@pr.command("scan")
@click.option(
    "--repo",
    "-r",
    "repo_dir",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
)
@click.option("--dry-run", is_flag=True, help="Report what would happen without pushing.")
@click.option("--auto-merge", is_flag=True, help="Also merge PRs that are green.")
def pr_scan(repo_dir: str, dry_run: bool, auto_merge: bool) -> None:
    """Run one cleanup cycle against a repository."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    context = FleetContext.from_settings(_settings())
    overrides: dict[str, Any] = {}
    if dry_run:
        overrides["dry_run"] = True
    if auto_merge:
        overrides["auto_merge"] = True
    cleaner = context.pr_cleanup_for(repo_dir, **overrides)
    try:
        asyncio.run(cleaner.run())
    finally:
        context.events.close()
    _emit({"ok": True, "repo": repo_dir, "stats": cleaner.stats.to_dict()})


# -- providers --


@main.command()
def providers() -> None:
    """Show which agent backends are enabled and installed."""
    context = FleetContext.from_settings(_settings())
    _emit(
        {
            "ok": True,
            "providers": context.pool.provider_status,
            "order": context.pool.available_providers,
        }
    )


# -- warn-state --


@main.group("warn-state")
def warn_state():
    """Inspect throttled operator warnings."""


@warn_state.command("show")
def warn_state_show() -> None:
    """Show when each warning key last fired."""
    settings = _settings()
    cache = WarnStateCache(
        settings.cache_dir, throttle_ms=settings.warn_throttle_ms, max_keys=settings.warn_max_keys
    )
    cache.load(read_only=True)
    _emit({"ok": True, "path": str(Path(cache.path)), "entries": cache.entries})
