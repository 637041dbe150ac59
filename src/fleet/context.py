"""Explicit owner of the daemon's long-lived state."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from fleet.daemon_lock import DaemonLock, LockPolicy
from fleet.events import EventPublisher
from fleet.pr_cleanup import PRCleanupConfig, PRCleanupDaemon
from fleet.providers import AgentProvider
from fleet.settings import FleetSettings
from fleet.task_store import TaskStore
from fleet.thread_pool import AgentThreadPool
from fleet.timeouts import TimeoutNormalizer
from fleet.vcs import GitHubHost
from fleet.warn_state import WarnStateCache


@dataclass
class FleetContext:
    settings: FleetSettings
    store: TaskStore
    pool: AgentThreadPool
    lock: DaemonLock
    warn_state: WarnStateCache
    normalizer: TimeoutNormalizer
    events: EventPublisher

    @classmethod
    def from_settings(
        cls,
        settings: FleetSettings,
        *,
        providers: Iterable[AgentProvider] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> FleetContext:
        normalizer = TimeoutNormalizer(settings.turn_timeout_ms)
        return cls(
            settings=settings,
            store=TaskStore(settings.task_store_path),
            pool=AgentThreadPool(
                providers,
                settings=settings,
                normalizer=normalizer,
                registry_path=settings.thread_registry_path,
                env=env,
            ),
            lock=DaemonLock(settings.lock_dir, policy=LockPolicy(grace_ms=settings.lock_grace_ms)),
            warn_state=WarnStateCache(
                settings.cache_dir,
                throttle_ms=settings.warn_throttle_ms,
                max_keys=settings.warn_max_keys,
            ),
            normalizer=normalizer,
            events=EventPublisher(settings.redis_url),
        )

    def pr_cleanup_for(self, repo_dir: str, **overrides: Any) -> PRCleanupDaemon:
        config = PRCleanupConfig.from_mapping(
            dict(self.settings.pr_cleanup),
            repo_dir=repo_dir,
            worktree_root=self.settings.worktree_dir,
            **overrides,
        )
        return PRCleanupDaemon(
            config,
            host=GitHubHost(repo_dir),
            pool=self.pool,
            normalizer=self.normalizer,
            events=self.events,
        )

    def reset(self) -> None:
        """Drop all in-memory and persisted state (used between tests)."""
        self.store.clear()
        self.pool.clear_thread_registry()
        self.normalizer.reset()
        self.warn_state.clear()
