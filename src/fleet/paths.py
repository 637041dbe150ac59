"""Canonical filesystem paths for fleet configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

_env_home = os.environ.get("FLEET_HOME")
FLEET_CONFIG_DIR = Path(_env_home).expanduser() if _env_home else Path.home() / ".config" / "fleet"

DEFAULT_CONFIG_PATH = FLEET_CONFIG_DIR / "config.toml"
DEFAULT_STATE_DIR = FLEET_CONFIG_DIR / "state"
DEFAULT_TASK_STORE_PATH = DEFAULT_STATE_DIR / "tasks.json"
DEFAULT_THREAD_REGISTRY_PATH = DEFAULT_STATE_DIR / "threads.json"
DEFAULT_LOCK_DIR = FLEET_CONFIG_DIR / "run"
DEFAULT_CACHE_DIR = FLEET_CONFIG_DIR / ".cache"
DEFAULT_WORKTREE_DIR = FLEET_CONFIG_DIR / "worktrees"
