"""Pull-request host queries through the GitHub CLI.

Every query returns None when the answer is unavailable (``gh`` missing,
not authenticated, network down, unparsable output).  Callers treat None as
"not yet determined" and retry on a later cycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any, Protocol

log = logging.getLogger(__name__)

PR_FIELDS = "number,title,headRefName,baseRefName,mergeable,isDraft,statusCheckRollup,url"
MERGED_PR_FIELDS = "number,headRefName,baseRefName,mergedAt"

CI_SUCCESS = "success"
CI_FAILURE = "failure"
CI_PENDING = "pending"
CI_NONE = "none"

_FAILED_CONCLUSIONS = frozenset(
    {"FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE"}
)
_PASSED_CONCLUSIONS = frozenset({"SUCCESS", "NEUTRAL", "SKIPPED"})


class PullRequestHost(Protocol):
    async def list_open_prs(self) -> list[dict[str, Any]] | None: ...

    async def list_merged_prs(self, base_branch: str) -> list[dict[str, Any]] | None: ...

    async def get_mergeable_state(self, number: int) -> dict[str, Any] | None: ...

    async def merge_pr(self, number: int) -> bool: ...


def ci_state(pr: dict[str, Any]) -> str:
    """Summarise ``statusCheckRollup`` as success, failure, pending or none."""
    checks = pr.get("statusCheckRollup") or []
    if not checks:
        return CI_NONE
    pending = False
    for check in checks:
        # CheckRun entries carry status/conclusion; StatusContext entries carry state.
        result = (check.get("conclusion") or check.get("state") or "").upper()
        if result in _FAILED_CONCLUSIONS:
            return CI_FAILURE
        if result not in _PASSED_CONCLUSIONS:
            pending = True
    return CI_PENDING if pending else CI_SUCCESS


class GitHubHost:
    """:class:`PullRequestHost` backed by ``gh`` run inside a repository checkout."""

    def __init__(self, repo_dir: str, *, binary: str = "gh", timeout: float = 60) -> None:
        self.repo_dir = repo_dir
        self._binary = binary
        self._timeout = timeout

    async def _run(self, *args: str) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                cwd=self.repo_dir,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            log.warning("Cannot run %s: %s", self._binary, exc)
            return None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            log.warning("gh %s timed out after %ss", args[0], self._timeout)
            return None
        if proc.returncode != 0:
            log.warning(
                "gh %s failed (exit %s): %s",
                " ".join(args[:2]),
                proc.returncode,
                stderr.decode(errors="replace").strip(),
            )
            return None
        return stdout.decode(errors="replace")

    async def _run_json(self, *args: str) -> Any:
        out = await self._run(*args)
        if out is None:
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError:
            log.warning("gh %s returned invalid JSON", " ".join(args[:2]))
            return None

    async def list_open_prs(self) -> list[dict[str, Any]] | None:
        data = await self._run_json(
            "pr", "list", "--state", "open", "--limit", "100", "--json", PR_FIELDS
        )
        return data if isinstance(data, list) else None

    async def list_merged_prs(self, base_branch: str) -> list[dict[str, Any]] | None:
        data = await self._run_json(
            "pr",
            "list",
            "--state",
            "merged",
            "--base",
            base_branch,
            "--limit",
            "100",
            "--json",
            MERGED_PR_FIELDS,
        )
        return data if isinstance(data, list) else None

    async def get_mergeable_state(self, number: int) -> dict[str, Any] | None:
        data = await self._run_json(
            "pr", "view", str(number), "--json", "number,mergeable,mergeStateStatus"
        )
        return data if isinstance(data, dict) else None

    async def merge_pr(self, number: int) -> bool:
        out = await self._run("pr", "merge", str(number), "--squash", "--delete-branch")
        return out is not None
