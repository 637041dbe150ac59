"""Autonomous pull-request cleanup.

Each cycle lists open PRs and works on the problematic ones:

- **Conflicting PRs** go through a small state machine.  The conflict is
  measured first; anything above ``max_conflict_size`` lines is escalated
  untouched.  Otherwise an agent is asked to resolve it, and if that fails
  a local mechanical merge is tried once.  After either path succeeds the
  PR is re-polled until the host reports it mergeable; if it never does,
  it is escalated.
- **PRs with failing CI** get an empty commit to re-run checks, a bounded
  number of times, then are escalated.

Escalations are throttled per ``(pr number, reason)`` so a stuck PR produces
one operator warning per window rather than one per cycle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from fleet import git_ops
from fleet.errors import ConflictResolutionError
from fleet.events import EventPublisher
from fleet.paths import DEFAULT_WORKTREE_DIR
from fleet.thread_pool import AgentThreadPool, LaunchResult
from fleet.timeouts import TimeoutNormalizer
from fleet.vcs import CI_FAILURE, CI_SUCCESS, GitHubHost, PullRequestHost, ci_state

log = logging.getLogger(__name__)

CONFLICTING = "CONFLICTING"
MERGEABLE = "MERGEABLE"

REASON_LARGE_CONFLICT = "large_conflict"
REASON_RESOLUTION_FAILED = "conflict_resolution_failed"
REASON_STILL_CONFLICTING = "still_conflicting"
REASON_CI_FAILING = "ci_failing"


def build_ci_retrigger_commit_command() -> str:
    return git_ops.CI_RETRIGGER_COMMIT_COMMAND


@dataclass
class PRCleanupConfig:
    repo_dir: str = "."
    interval_ms: int = 30 * 60 * 1000
    max_conflict_size: int = 500
    post_conflict_recheck_attempts: int = 6
    post_conflict_recheck_delay_ms: int = 10_000
    escalation_throttle_ms: int = 30 * 60 * 1000
    agent_timeout_ms: int = 20 * 60 * 1000
    max_ci_retriggers: int = 2
    auto_merge: bool = False
    dry_run: bool = False
    preferred_provider: str | None = None
    auto_resolve_patterns: tuple[str, ...] = git_ops.DEFAULT_AUTO_RESOLVE_PATTERNS
    worktree_root: Path = DEFAULT_WORKTREE_DIR

    @classmethod
    def from_mapping(cls, data: dict[str, Any], **overrides: Any) -> PRCleanupConfig:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in {**data, **overrides}.items() if k in known}
        unknown = set(data) - known
        if unknown:
            log.warning("Ignoring unknown pr_cleanup keys: %s", ", ".join(sorted(unknown)))
        if "auto_resolve_patterns" in values:
            values["auto_resolve_patterns"] = tuple(values["auto_resolve_patterns"])
        if "worktree_root" in values:
            values["worktree_root"] = Path(values["worktree_root"]).expanduser()
        return cls(**values)


@dataclass
class CleanupStats:
    prs_processed: int = 0
    conflicts_resolved: int = 0
    ci_retriggered: int = 0
    auto_merged: int = 0
    escalations: int = 0
    escalations_suppressed: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class PRCleanupDaemon:
    def __init__(
        self,
        config: PRCleanupConfig | None = None,
        *,
        host: PullRequestHost | None = None,
        pool: AgentThreadPool | None = None,
        normalizer: TimeoutNormalizer | None = None,
        events: EventPublisher | None = None,
        clock=time.monotonic,
        sleep=asyncio.sleep,
    ) -> None:
        self.config = config or PRCleanupConfig()
        self.host = host or GitHubHost(self.config.repo_dir)
        self.pool = pool
        self.normalizer = normalizer or TimeoutNormalizer(self.config.interval_ms)
        self.events = events
        self.stats = CleanupStats()
        self._clock = clock
        self._sleep = sleep
        self._escalated_at: dict[tuple[int, str], float] = {}
        self._ci_retriggers: dict[int, int] = {}
        self._cycle_active = False
        self._stopped = True
        self._immediate_task: asyncio.Task[None] | None = None
        self._interval_task: asyncio.Task[None] | None = None
        self._cycles: set[asyncio.Task[None]] = set()

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Run one cycle now and then one per interval until :meth:`stop`."""
        if self._interval_task is not None and not self._interval_task.done():
            return
        self._stopped = False
        self._immediate_task = self._spawn_cycle("Immediate")
        self._interval_task = asyncio.create_task(self._interval_loop())

    def stop(self) -> None:
        """Stop scheduling cycles.  A cycle already running finishes on its own."""
        self._stopped = True
        if self._interval_task is not None:
            self._interval_task.cancel()
            self._interval_task = None

    @property
    def running(self) -> bool:
        return not self._stopped

    def _spawn_cycle(self, label: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._guarded_run(label))
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)
        return task

    async def _guarded_run(self, label: str) -> None:
        try:
            await self.run()
        except Exception as exc:
            log.error("%s run failed: %s", label, exc, exc_info=True)

    async def _interval_loop(self) -> None:
        delay = self.normalizer.seconds(self.config.interval_ms, label="pr_cleanup.interval_ms")
        while not self._stopped:
            await self._sleep(delay)
            if self._stopped:
                break
            await asyncio.shield(self._spawn_cycle("Interval"))

    # -- Cycle --------------------------------------------------------------

    async def run(self) -> None:
        if self._cycle_active:
            log.info("PR cleanup cycle already in progress; skipping")
            return
        self._cycle_active = True
        try:
            prs = await self.fetch_problematic_prs()
            merged_heads: dict[str, set[str] | None] = {}
            for pr in prs:
                try:
                    await self.process_pr(pr, merged_heads)
                except Exception:
                    self.stats.errors += 1
                    log.exception("Failed to process PR #%s", pr.get("number"))
            if self.config.auto_merge:
                await self.merge_green_prs()
        finally:
            self._cycle_active = False

    async def fetch_problematic_prs(self) -> list[dict[str, Any]]:
        prs = await self.host.list_open_prs()
        if prs is None:
            log.info("Open PR list unavailable; will retry next cycle")
            return []
        return [
            pr
            for pr in prs
            if not pr.get("isDraft")
            and (pr.get("mergeable") == CONFLICTING or ci_state(pr) == CI_FAILURE)
        ]

    async def process_pr(
        self, pr: dict[str, Any], merged_heads: dict[str, set[str] | None] | None = None
    ) -> None:
        self.stats.prs_processed += 1
        if await self._head_already_merged(pr, {} if merged_heads is None else merged_heads):
            log.info("PR #%s head %s already landed; skipping", pr["number"], pr.get("headRefName"))
            return
        if pr.get("mergeable") == CONFLICTING:
            await self.resolve_conflicts(pr)
        elif ci_state(pr) == CI_FAILURE:
            await self.retrigger_ci(pr)

    async def _head_already_merged(
        self, pr: dict[str, Any], cache: dict[str, set[str] | None]
    ) -> bool:
        base = self.get_base_branch(pr)
        if base not in cache:
            merged = await self.host.list_merged_prs(base)
            cache[base] = (
                None
                if merged is None
                else {m.get("headRefName") for m in merged if m.get("headRefName")}
            )
        heads = cache[base]
        return heads is not None and pr.get("headRefName") in heads

    @staticmethod
    def get_base_branch(pr: dict[str, Any]) -> str:
        base = str(pr.get("baseRefName") or "").strip()
        if base.startswith("origin/"):
            base = base[len("origin/") :]
        return base or "main"

    # -- Conflicts ----------------------------------------------------------

    async def resolve_conflicts(self, pr: dict[str, Any]) -> bool:
        """Drive one conflicting PR to resolved or escalated.  True when resolved."""
        number = pr["number"]
        size = await self.get_conflict_size(pr)
        if size > self.config.max_conflict_size:
            await self._escalate_counted(
                pr,
                REASON_LARGE_CONFLICT,
                {"conflict_lines": size, "max_conflict_size": self.config.max_conflict_size},
            )
            return False

        if self.config.dry_run:
            log.info("[dry-run] Would resolve %d-line conflict on PR #%s", size, number)
            return False

        try:
            await self.spawn_agent_fix(pr)
            log.info("Agent resolved conflicts on PR #%s", number)
        except Exception as agent_exc:
            log.warning(
                "Agent conflict resolution failed for PR #%s (%s); trying local merge",
                number,
                agent_exc,
            )
            try:
                await self.resolve_conflicts_locally(pr)
                log.info("Local merge resolved conflicts on PR #%s", number)
            except Exception as local_exc:
                await self._escalate_counted(
                    pr,
                    REASON_RESOLUTION_FAILED,
                    {"agent_error": str(agent_exc), "local_error": str(local_exc)},
                )
                return False

        state = await self.wait_for_mergeable_state(pr)
        if state is not None and state.get("mergeable") == MERGEABLE:
            self.stats.conflicts_resolved += 1
            self._publish("pr:conflict_resolved", number, "resolved")
            return True
        await self._escalate_counted(
            pr,
            REASON_STILL_CONFLICTING,
            {"mergeable": (state or {}).get("mergeable", "UNKNOWN")},
        )
        return False

    async def get_conflict_size(self, pr: dict[str, Any]) -> int:
        """Changed lines in the conflicting files.  0 when it cannot be measured."""
        base = self.get_base_branch(pr)
        head = pr["headRefName"]
        repo = self.config.repo_dir

        def measure() -> int:
            git_ops.fetch_branches(repo, base, head)
            return git_ops.conflict_size(repo, f"origin/{base}", f"origin/{head}")

        try:
            return await asyncio.to_thread(measure)
        except RuntimeError as exc:
            log.warning("Could not measure conflict on PR #%s: %s", pr["number"], exc)
            return 0

    def _conflict_prompt(self, pr: dict[str, Any]) -> str:
        base = self.get_base_branch(pr)
        head = pr["headRefName"]
        return (
            f"Pull request #{pr['number']} ({pr.get('title', '')}) has merge conflicts with "
            f"`{base}`. You are in a detached checkout of `origin/{head}`.\n\n"
            f"1. Run `git merge origin/{base}`.\n"
            "2. Resolve every conflict so both sides' intent is preserved; do not drop "
            "changes you do not understand.\n"
            "3. Run the project's tests if they are quick.\n"
            "4. Commit the merge and run "
            f"`git push origin HEAD:refs/heads/{head}`.\n\n"
            "Reply with a short summary of what you resolved."
        )

    async def spawn_agent_fix(self, pr: dict[str, Any]) -> LaunchResult:
        """Ask an agent to resolve the conflict.  Raises ConflictResolutionError."""
        if self.pool is None:
            raise ConflictResolutionError("no agent pool configured")
        number = pr["number"]
        repo = self.config.repo_dir
        head = pr["headRefName"]
        try:
            worktree = await asyncio.to_thread(
                git_ops.create_pr_worktree,
                repo,
                self.config.worktree_root,
                number,
                f"origin/{head}",
            )
        except RuntimeError as exc:
            raise ConflictResolutionError(str(exc)) from exc
        try:
            result = await self.pool.launch_or_resume_thread(
                self._conflict_prompt(pr),
                worktree,
                self.config.agent_timeout_ms,
                {"task_key": f"pr-{number}-conflicts", "provider": self.config.preferred_provider},
            )
        finally:
            await asyncio.to_thread(git_ops.remove_worktree, repo, worktree)
        if not result.success:
            raise ConflictResolutionError(result.error or "agent turn failed")
        return result

    async def resolve_conflicts_locally(self, pr: dict[str, Any]) -> None:
        """Merge the base in mechanically.  Raises ConflictResolutionError."""
        number = pr["number"]
        base = self.get_base_branch(pr)
        head = pr["headRefName"]
        repo = self.config.repo_dir
        patterns = self.config.auto_resolve_patterns
        root = self.config.worktree_root

        def merge_and_push() -> None:
            git_ops.fetch_branches(repo, base, head)
            worktree = git_ops.create_pr_worktree(repo, root, number, f"origin/{head}")
            try:
                git_ops.merge_base_into_worktree(worktree, f"origin/{base}", patterns)
                git_ops.push_head(worktree, head)
            finally:
                git_ops.remove_worktree(repo, worktree)

        try:
            await asyncio.to_thread(merge_and_push)
        except RuntimeError as exc:
            raise ConflictResolutionError(str(exc)) from exc

    async def wait_for_mergeable_state(self, pr: dict[str, Any]) -> dict[str, Any] | None:
        """Poll the host until the PR is mergeable or the rechecks run out.

        Returns the last state seen (None when the host never answered).
        """
        attempts = max(1, int(self.config.post_conflict_recheck_attempts))
        delay = self.normalizer.seconds(
            self.config.post_conflict_recheck_delay_ms,
            default_ms=10_000,
            label="pr_cleanup.post_conflict_recheck_delay_ms",
        )
        state: dict[str, Any] | None = None
        for attempt in range(attempts):
            state = await self.host.get_mergeable_state(pr["number"]) or state
            if state is not None and state.get("mergeable") == MERGEABLE:
                return state
            if attempt < attempts - 1:
                await self._sleep(delay)
        return state

    # -- CI -----------------------------------------------------------------

    async def retrigger_ci(self, pr: dict[str, Any]) -> bool:
        number = pr["number"]
        done = self._ci_retriggers.get(number, 0)
        if done >= self.config.max_ci_retriggers:
            await self._escalate_counted(pr, REASON_CI_FAILING, {"retriggers": done})
            return False
        if self.config.dry_run:
            log.info("[dry-run] Would re-trigger CI on PR #%s", number)
            return False

        repo = self.config.repo_dir
        head = pr["headRefName"]
        root = self.config.worktree_root

        def push_empty_commit() -> None:
            git_ops.fetch_branches(repo, head)
            worktree = git_ops.create_pr_worktree(repo, root, number, f"origin/{head}")
            try:
                git_ops.commit_ci_retrigger(worktree)
                git_ops.push_head(worktree, head)
            finally:
                git_ops.remove_worktree(repo, worktree)

        try:
            await asyncio.to_thread(push_empty_commit)
        except RuntimeError as exc:
            log.warning("Could not re-trigger CI on PR #%s: %s", number, exc)
            return False
        self._ci_retriggers[number] = done + 1
        self.stats.ci_retriggered += 1
        log.info(
            "Re-triggered CI on PR #%s (%d/%d)", number, done + 1, self.config.max_ci_retriggers
        )
        return True

    async def merge_green_prs(self) -> int:
        prs = await self.host.list_open_prs()
        if prs is None:
            return 0
        merged = 0
        for pr in prs:
            if pr.get("isDraft") or pr.get("mergeable") != MERGEABLE or ci_state(pr) != CI_SUCCESS:
                continue
            number = pr["number"]
            if self.config.dry_run:
                log.info("[dry-run] Would merge green PR #%s", number)
                continue
            if await self.host.merge_pr(number):
                merged += 1
                self.stats.auto_merged += 1
                log.info("Merged green PR #%s", number)
                self._publish("pr:merged", number, "merged")
        return merged

    # -- Escalation ---------------------------------------------------------

    async def _escalate_counted(
        self, pr: dict[str, Any], reason: str, context: dict[str, Any] | None = None
    ) -> bool:
        escalated = await self.escalate(pr, reason, context)
        if escalated:
            self.stats.escalations += 1
        return escalated

    async def escalate(
        self, pr: dict[str, Any], reason: str, context: dict[str, Any] | None = None
    ) -> bool:
        """Notify the operator.  False when the same PR and reason were escalated recently."""
        number = pr["number"]
        key = (number, reason)
        now = self._clock()
        window = self.config.escalation_throttle_ms / 1000
        last = self._escalated_at.get(key)
        if last is not None and now - last < window:
            self.stats.escalations_suppressed += 1
            log.info("Escalation suppressed for PR #%s (%s)", number, reason)
            return False

        self._escalated_at = {k: t for k, t in self._escalated_at.items() if now - t < window}
        self._escalated_at[key] = now
        details = ", ".join(f"{k}={v}" for k, v in (context or {}).items())
        log.warning(
            "Escalating PR #%s (%s): %s%s",
            number,
            reason,
            pr.get("title", ""),
            f" [{details}]" if details else "",
        )
        self._publish(
            "pr:escalated",
            number,
            reason,
            {"title": pr.get("title"), "url": pr.get("url"), "context": context or {}},
        )
        return True

    def _publish(
        self, event_type: str, number: int, status: str, extra: dict[str, Any] | None = None
    ) -> None:
        if self.events is not None:
            self.events.publish(
                event_type, f"pr-{number}", status, source="pr_cleanup", extra=extra
            )
