"""Layered settings: environment, then ``config.toml``, then defaults.

The config file lives at ``~/.config/fleet/config.toml`` (or under
``$FLEET_HOME``)::

    [daemon]
    repos = ["~/src/api", "~/src/web"]
    turn_timeout_ms = 3600000
    max_concurrent_tasks = 2

    [providers]
    order = ["codex", "claude"]
    disabled = ["copilot"]

    [stream]
    first_event_timeout_ms = 120000
    max_items_per_turn = 600
    max_item_chars = 12000

    [warn_state]
    throttle_ms = 1800000
    max_keys = 200

    [pr_cleanup]
    max_conflict_size = 500
    auto_merge = false

A missing or unparseable file is treated as empty.
"""

from __future__ import annotations

import logging
import math
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fleet.paths import (
    DEFAULT_CACHE_DIR,
    DEFAULT_CONFIG_PATH,
    DEFAULT_LOCK_DIR,
    DEFAULT_TASK_STORE_PATH,
    DEFAULT_THREAD_REGISTRY_PATH,
    DEFAULT_WORKTREE_DIR,
    FLEET_CONFIG_DIR,
)

log = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("codex", "copilot", "claude")

DEFAULT_FIRST_EVENT_TIMEOUT_MS = 120_000
MIN_FIRST_EVENT_TIMEOUT_MS = 1_000
MAX_FIRST_EVENT_TIMEOUT_MS = 3_600_000
DEFAULT_MAX_ITEMS_PER_TURN = 600
MAX_ITEMS_PER_TURN_LIMIT = 5_000
DEFAULT_MAX_ITEM_CHARS = 12_000
MAX_ITEM_CHARS_LIMIT = 250_000

DEFAULT_TURN_TIMEOUT_MS = 60 * 60 * 1000
DEFAULT_WARN_THROTTLE_MS = 30 * 60 * 1000
DEFAULT_WARN_MAX_KEYS = 200
DEFAULT_LOCK_GRACE_MS = 3 * 60 * 1000


def parse_bounded_int(value: object, fallback: int, minimum: int, maximum: int) -> int:
    """Coerce *value* to an int inside ``[minimum, maximum]``.

    Empty, non-numeric and non-finite values yield *fallback*; numeric
    values are truncated and clamped.
    """
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return fallback
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(minimum, min(maximum, int(number)))


def _first_set(*values: object) -> object:
    for value in values:
        if value is not None and value != "":
            return value
    return None


@dataclass(frozen=True)
class StreamSettings:
    first_event_timeout_ms: int = DEFAULT_FIRST_EVENT_TIMEOUT_MS
    max_items_per_turn: int = DEFAULT_MAX_ITEMS_PER_TURN
    max_item_chars: int = DEFAULT_MAX_ITEM_CHARS


@dataclass(frozen=True)
class FleetSettings:
    config_dir: Path = FLEET_CONFIG_DIR
    task_store_path: Path = DEFAULT_TASK_STORE_PATH
    thread_registry_path: Path = DEFAULT_THREAD_REGISTRY_PATH
    lock_dir: Path = DEFAULT_LOCK_DIR
    cache_dir: Path = DEFAULT_CACHE_DIR
    worktree_dir: Path = DEFAULT_WORKTREE_DIR
    repos: tuple[str, ...] = ()
    turn_timeout_ms: int = DEFAULT_TURN_TIMEOUT_MS
    supervisor_interval_ms: int = 15_000
    workspace_sync_interval_ms: int = 5 * 60 * 1000
    max_concurrent_tasks: int = 2
    provider_order: tuple[str, ...] = KNOWN_PROVIDERS
    disabled_providers: frozenset[str] = frozenset()
    stream: StreamSettings = field(default_factory=StreamSettings)
    warn_throttle_ms: int = DEFAULT_WARN_THROTTLE_MS
    warn_max_keys: int = DEFAULT_WARN_MAX_KEYS
    lock_grace_ms: int = DEFAULT_LOCK_GRACE_MS
    redis_url: str = "redis://localhost:6379/0"
    pr_cleanup: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def for_directory(cls, root: Path, **overrides: Any) -> FleetSettings:
        """Settings with every state path rooted under *root*."""
        root = Path(root)
        paths: dict[str, Any] = {
            "config_dir": root,
            "task_store_path": root / "state" / "tasks.json",
            "thread_registry_path": root / "state" / "threads.json",
            "lock_dir": root / "run",
            "cache_dir": root / ".cache",
            "worktree_dir": root / "worktrees",
        }
        paths.update(overrides)
        return cls(**paths)


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse a TOML config file, returning ``{}`` when absent or invalid."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError) as exc:
        log.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, Mapping) else {}


def _parse_provider_list(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",")]
    elif isinstance(value, list | tuple):
        items = [str(part).strip() for part in value]
    else:
        return ()
    names = []
    for item in items:
        name = item.lower()
        if name in KNOWN_PROVIDERS:
            if name not in names:
                names.append(name)
        elif name:
            log.warning("Ignoring unknown provider %r", item)
    return tuple(names)


def load_settings(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
    *,
    base: FleetSettings | None = None,
) -> FleetSettings:
    """Build settings from *env* (default ``os.environ``) and the config file.

    *base* supplies path defaults, which lets tests root everything in a
    temporary directory.
    """
    env = os.environ if env is None else env
    base = base or FleetSettings()
    raw = read_config_file(path or base.config_dir / DEFAULT_CONFIG_PATH.name)

    daemon = _section(raw, "daemon")
    providers = _section(raw, "providers")
    stream = _section(raw, "stream")
    warn_state = _section(raw, "warn_state")

    stream_settings = StreamSettings(
        first_event_timeout_ms=parse_bounded_int(
            _first_set(
                env.get("FLEET_STREAM_FIRST_EVENT_TIMEOUT_MS"),
                stream.get("first_event_timeout_ms"),
            ),
            DEFAULT_FIRST_EVENT_TIMEOUT_MS,
            MIN_FIRST_EVENT_TIMEOUT_MS,
            MAX_FIRST_EVENT_TIMEOUT_MS,
        ),
        max_items_per_turn=parse_bounded_int(
            _first_set(
                env.get("FLEET_STREAM_MAX_ITEMS_PER_TURN"), stream.get("max_items_per_turn")
            ),
            DEFAULT_MAX_ITEMS_PER_TURN,
            1,
            MAX_ITEMS_PER_TURN_LIMIT,
        ),
        max_item_chars=parse_bounded_int(
            _first_set(env.get("FLEET_STREAM_MAX_ITEM_CHARS"), stream.get("max_item_chars")),
            DEFAULT_MAX_ITEM_CHARS,
            1,
            MAX_ITEM_CHARS_LIMIT,
        ),
    )

    order = _parse_provider_list(
        _first_set(env.get("FLEET_PROVIDER_ORDER"), providers.get("order"))
    ) or base.provider_order
    disabled = frozenset(_parse_provider_list(providers.get("disabled", [])))

    repos = tuple(
        str(Path(str(repo)).expanduser()) for repo in daemon.get("repos", base.repos) or ()
    )

    return FleetSettings(
        config_dir=base.config_dir,
        task_store_path=base.task_store_path,
        thread_registry_path=base.thread_registry_path,
        lock_dir=base.lock_dir,
        cache_dir=base.cache_dir,
        worktree_dir=base.worktree_dir,
        repos=repos,
        turn_timeout_ms=parse_bounded_int(
            _first_set(env.get("FLEET_TURN_TIMEOUT_MS"), daemon.get("turn_timeout_ms")),
            base.turn_timeout_ms,
            1,
            2**31 - 1,
        ),
        supervisor_interval_ms=parse_bounded_int(
            daemon.get("supervisor_interval_ms"), base.supervisor_interval_ms, 100, 2**31 - 1
        ),
        workspace_sync_interval_ms=parse_bounded_int(
            daemon.get("workspace_sync_interval_ms"),
            base.workspace_sync_interval_ms,
            1_000,
            2**31 - 1,
        ),
        max_concurrent_tasks=parse_bounded_int(
            daemon.get("max_concurrent_tasks"), base.max_concurrent_tasks, 1, 64
        ),
        provider_order=order,
        disabled_providers=disabled | base.disabled_providers,
        stream=stream_settings,
        warn_throttle_ms=parse_bounded_int(
            _first_set(
                env.get("FLEET_WORKSPACE_SYNC_WARN_THROTTLE_MS"), warn_state.get("throttle_ms")
            ),
            base.warn_throttle_ms,
            0,
            2**31 - 1,
        ),
        warn_max_keys=parse_bounded_int(
            _first_set(env.get("FLEET_WORKSPACE_SYNC_WARN_MAX_KEYS"), warn_state.get("max_keys")),
            base.warn_max_keys,
            1,
            100_000,
        ),
        lock_grace_ms=parse_bounded_int(
            daemon.get("lock_grace_ms"), base.lock_grace_ms, 0, 24 * 60 * 60 * 1000
        ),
        redis_url=env.get("FLEET_REDIS_URL") or base.redis_url,
        pr_cleanup=dict(_section(raw, "pr_cleanup")),
    )
