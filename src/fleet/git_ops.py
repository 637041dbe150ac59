"""Git operations used by the conflict resolver and workspace sync.

Functions are synchronous and raise RuntimeError on failure; async callers
run them through ``asyncio.to_thread``.
"""

from __future__ import annotations

import contextlib
import fnmatch
import logging
import re
import shlex
import shutil
import subprocess
from collections.abc import Iterable
from pathlib import Path

log = logging.getLogger(__name__)

CI_RETRIGGER_COMMIT_COMMAND = (
    'git -c commit.gpgsign=false commit --allow-empty --no-verify -m "chore: re-trigger CI"'
)

# Generated files where taking the base branch's copy is a safe mechanical fix.
DEFAULT_AUTO_RESOLVE_PATTERNS = (
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    "poetry.lock",
    "uv.lock",
    "Cargo.lock",
)


def slugify(text: str, max_len: int = 40) -> str:
    """Turn a branch name into a directory-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def _git(args: list[str], cwd: str | Path, *, what: str) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd),
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"{what}: {e.stderr.strip() or e.stdout.strip()}") from None
    return result.stdout


def sync_workspace(repo_dir: str) -> None:
    """Fetch every remote of *repo_dir*, pruning deleted branches."""
    _git(["fetch", "--all", "--prune", "--quiet"], repo_dir, what=f"Failed to sync {repo_dir}")


def fetch_branches(repo_dir: str, *branches: str) -> None:
    _git(["fetch", "origin", *branches], repo_dir, what="Failed to fetch branches")


def conflicting_files(repo_dir: str, base_ref: str, head_ref: str) -> list[str]:
    """Files that would conflict when merging *base_ref* into *head_ref*.

    Uses ``git merge-tree --write-tree`` so nothing is checked out.
    """
    result = subprocess.run(
        ["git", "merge-tree", "--write-tree", "--name-only", "--no-messages", head_ref, base_ref],
        cwd=repo_dir,
        capture_output=True,
        text=True,
    )
    if result.returncode == 0:
        return []
    if result.returncode != 1:
        raise RuntimeError(f"merge-tree failed: {result.stderr.strip()}")
    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    # First line is the (partial) tree id.
    return sorted(set(lines[1:]))


def _numstat_total(repo_dir: str, range_spec: str, files: list[str]) -> int:
    out = _git(
        ["diff", "--numstat", range_spec, "--", *files],
        repo_dir,
        what="Failed to measure conflict",
    )
    total = 0
    for line in out.splitlines():
        parts = line.split("\t")
        if len(parts) < 3:
            continue
        for count in parts[:2]:
            # Binary files report "-"; count them as one changed line.
            total += int(count) if count.isdigit() else 1
    return total


def conflict_size(repo_dir: str, base_ref: str, head_ref: str) -> int:
    """Changed lines on both sides of the conflicting files (0 when clean)."""
    files = conflicting_files(repo_dir, base_ref, head_ref)
    if not files:
        return 0
    return _numstat_total(repo_dir, f"{base_ref}...{head_ref}", files) + _numstat_total(
        repo_dir, f"{head_ref}...{base_ref}", files
    )


def create_pr_worktree(repo_dir: str, worktree_root: Path, number: int, head_ref: str) -> str:
    """Check out *head_ref* detached in a scratch worktree for PR *number*."""
    worktree_dir = Path(worktree_root) / f"pr-{number}-{slugify(head_ref)}"
    if worktree_dir.exists():
        remove_worktree(repo_dir, str(worktree_dir))
    worktree_dir.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    _git(
        ["worktree", "add", "--detach", str(worktree_dir), head_ref],
        repo_dir,
        what="Failed to create worktree",
    )
    return str(worktree_dir)


def remove_worktree(repo_dir: str, worktree_path: str) -> None:
    """Remove a scratch worktree.  Best-effort."""
    try:
        _git(["worktree", "remove", "--force", worktree_path], repo_dir, what="worktree remove")
    except RuntimeError as exc:
        log.warning("Failed to remove worktree %s: %s", worktree_path, exc)
    shutil.rmtree(worktree_path, ignore_errors=True)
    with contextlib.suppress(RuntimeError):
        _git(["worktree", "prune"], repo_dir, what="worktree prune")


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    name = Path(path).name
    return any(
        fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(path, pattern) for pattern in patterns
    )


def merge_base_into_worktree(
    worktree: str,
    base_ref: str,
    auto_resolve_patterns: Iterable[str] = DEFAULT_AUTO_RESOLVE_PATTERNS,
) -> None:
    """Merge *base_ref* into the worktree's HEAD, auto-resolving generated files.

    Conflicts in files matching *auto_resolve_patterns* take the base
    branch's version.  Any other conflict aborts the merge and raises
    RuntimeError listing the files.
    """
    patterns = tuple(auto_resolve_patterns)
    merge = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", "merge", "--no-edit", base_ref],
        cwd=worktree,
        capture_output=True,
        text=True,
    )
    if merge.returncode == 0:
        return

    unmerged = [
        line.strip()
        for line in _git(
            ["diff", "--name-only", "--diff-filter=U"], worktree, what="Failed to list conflicts"
        ).splitlines()
        if line.strip()
    ]
    if not unmerged:
        with contextlib.suppress(RuntimeError):
            _git(["merge", "--abort"], worktree, what="merge abort")
        raise RuntimeError(f"Merge failed: {merge.stderr.strip() or merge.stdout.strip()}")

    manual = [path for path in unmerged if not _matches_any(path, patterns)]
    if manual:
        with contextlib.suppress(RuntimeError):
            _git(["merge", "--abort"], worktree, what="merge abort")
        raise RuntimeError(f"Unresolvable conflicts in: {', '.join(manual)}")

    for path in unmerged:
        _git(["checkout", "--theirs", "--", path], worktree, what=f"Failed to resolve {path}")
        _git(["add", "--", path], worktree, what=f"Failed to stage {path}")
    _git(
        ["-c", "commit.gpgsign=false", "commit", "--no-edit", "--no-verify"],
        worktree,
        what="Failed to commit merge",
    )


def push_head(worktree: str, head_branch: str) -> None:
    _git(
        ["push", "origin", f"HEAD:refs/heads/{head_branch}"],
        worktree,
        what=f"Failed to push {head_branch}",
    )


def commit_ci_retrigger(worktree: str) -> None:
    """Create an empty commit so CI runs again."""
    argv = shlex.split(CI_RETRIGGER_COMMIT_COMMAND)
    try:
        subprocess.run(argv, cwd=worktree, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to create re-trigger commit: {e.stderr.strip()}") from None
