"""Agent thread pool: launch or resume agent conversations per task key.

Threads are keyed by the caller's ``task_key``.  A live thread is resumed
while its provider supports resume and it is neither exhausted nor too old;
otherwise a fresh thread is started on the first usable provider, falling
back through the remaining providers on failure.

Each turn is streamed under a total time budget with three guards:

- a first-event window (a stream that never speaks is aborted and retried),
- a cap on retained items (excess dropped, one ``stream_notice`` appended),
- a per-item character cap.

Transient disconnects are retried with exponential backoff until
``MAX_STREAM_RETRIES`` is spent or the budget runs out.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import time
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

from fleet.atomic import file_timestamp, write_json_atomic
from fleet.errors import StreamStalledError, TransientStreamError, TurnTimeoutError
from fleet.providers import AgentProvider, default_providers
from fleet.settings import FleetSettings, parse_bounded_int
from fleet.stream import (
    MAX_STREAM_RETRIES,
    StreamLimits,
    TurnCollector,
    is_transient_stream_error,
    stream_retry_delay,
)
from fleet.timeouts import TimeoutNormalizer

log = logging.getLogger(__name__)

SUPERVISOR_TASK_KEY = "supervisor"
MAX_THREAD_TURNS = 40
THREAD_EXHAUSTION_WARNING_THRESHOLD = 30
THREAD_MAX_ABSOLUTE_AGE_S = 12 * 60 * 60
PROVIDER_COOLDOWN_S = 60.0
DEFAULT_SUPERVISOR_REFRESH_TURNS_REMAINING = 5

NO_PROVIDER_ERROR = "no SDK available: every agent provider is disabled or missing"


async def _next_event(stream: AsyncIterator[dict[str, Any]]) -> dict[str, Any] | None:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return None


@dataclass
class ThreadRecord:
    task_key: str
    alive: bool = False
    turn_count: int = 0
    provider: str | None = None
    thread_id: str | None = None
    work_dir: str | None = None
    created_at: float = field(default_factory=time.time)
    last_used_at: float = field(default_factory=time.time)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ThreadRecord:
        known = {f.name for f in fields(cls)}
        record = cls(**{k: v for k, v in data.items() if k in known})
        if not isinstance(record.turn_count, int) or record.turn_count < 0:
            record.turn_count = 0
        record.alive = bool(record.alive)
        return record


@dataclass
class LaunchResult:
    success: bool
    resumed: bool = False
    thread_id: str | None = None
    provider: str | None = None
    output: str = ""
    items: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    timed_out: bool = False
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class AgentThreadPool:
    """Owns the thread registry and the provider roster for one daemon."""

    def __init__(
        self,
        providers: Iterable[AgentProvider] | None = None,
        *,
        settings: FleetSettings | None = None,
        normalizer: TimeoutNormalizer | None = None,
        registry_path: Path | None = None,
        env: Mapping[str, str] | None = None,
        sleep=asyncio.sleep,
        clock=time.time,
    ) -> None:
        self.settings = settings or FleetSettings()
        env = os.environ if env is None else env
        self.limits = StreamLimits.from_settings(self.settings.stream)
        self.normalizer = normalizer or TimeoutNormalizer(self.settings.turn_timeout_ms)
        self.registry_path = Path(registry_path) if registry_path else None
        self.supervisor_refresh_turns = parse_bounded_int(
            env.get("FLEET_SUPERVISOR_THREAD_REFRESH_TURNS_REMAINING"),
            DEFAULT_SUPERVISOR_REFRESH_TURNS_REMAINING,
            0,
            MAX_THREAD_TURNS,
        )
        self._sleep = sleep
        self._clock = clock

        roster = default_providers() if providers is None else list(providers)
        rank = {name: i for i, name in enumerate(self.settings.provider_order)}
        roster.sort(key=lambda p: rank.get(p.name, len(rank)))
        # Availability is decided once; a CLI installed later needs a restart.
        self.provider_status: dict[str, dict[str, bool]] = {}
        self._providers: dict[str, AgentProvider] = {}
        for provider in roster:
            enabled = (
                provider.name not in self.settings.disabled_providers
                and provider.is_enabled(env)
            )
            available = enabled and provider.is_available()
            self.provider_status[provider.name] = {"enabled": enabled, "available": available}
            if available:
                self._providers[provider.name] = provider

        self._registry: dict[str, ThreadRecord] = {}
        self._in_flight: set[str] = set()
        self._cooldown_until: dict[str, float] = {}
        if self.registry_path is not None:
            self.load_registry()

    @property
    def available_providers(self) -> list[str]:
        return list(self._providers)

    # -- Registry ---------------------------------------------------------------

    def get_thread_record(self, task_key: str) -> ThreadRecord | None:
        record = self._registry.get(task_key)
        return copy.deepcopy(record) if record is not None else None

    def invalidate_thread(self, task_key: str) -> None:
        record = self._registry.get(task_key)
        if record is not None and record.alive:
            record.alive = False
            self.save_registry()

    def clear_thread_registry(self) -> None:
        self._registry.clear()
        self._cooldown_until.clear()
        self.save_registry()

    def load_registry(self) -> None:
        if self.registry_path is None:
            return
        try:
            raw = self.registry_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return
        except OSError as exc:
            log.warning("Cannot read thread registry %s: %s", self.registry_path, exc)
            return
        try:
            document = json.loads(raw)
            threads = document["threads"]
            if not isinstance(threads, dict):
                raise TypeError("'threads' is not an object")
            self._registry = {
                key: ThreadRecord.from_dict({**value, "task_key": key})
                for key, value in threads.items()
                if isinstance(value, dict)
            }
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            backup = self.registry_path.with_name(
                f"{self.registry_path.name}.corrupt-{file_timestamp()}.json"
            )
            log.warning("Thread registry corrupt (%s); moving to %s", exc, backup)
            try:
                self.registry_path.replace(backup)
            except OSError:
                log.exception("Could not archive corrupt thread registry")
            self._registry = {}

    def save_registry(self) -> None:
        if self.registry_path is None:
            return
        payload = {"threads": {key: rec.to_dict() for key, rec in self._registry.items()}}
        try:
            write_json_atomic(self.registry_path, payload)
        except OSError:
            log.exception("Failed to persist thread registry %s", self.registry_path)

    def _record_failure(
        self, task_key: str, error: str, work_dir: str | None, provider: str | None = None
    ) -> None:
        record = self._registry.get(task_key)
        if record is None:
            record = ThreadRecord(task_key=task_key, work_dir=work_dir, provider=provider)
            self._registry[task_key] = record
        record.alive = False
        record.last_error = error
        record.last_used_at = self._clock()
        self.save_registry()

    # -- Launching -------------------------------------------------------------

    async def launch_or_resume_thread(
        self,
        prompt: str,
        work_dir: str,
        turn_limit_ms: object = None,
        extra: object = None,
    ) -> LaunchResult:
        """Run one agent turn, resuming the task's thread when possible.

        *turn_limit_ms* is the turn's time budget.  *extra* may be a mapping
        with ``task_key`` (enables thread reuse), ``provider`` (preferred
        backend) and ``ignore_provider_cooldown``; anything else is treated
        as no options.  Never raises for backend failures.
        """
        timeout_ms = self.normalizer.normalize(turn_limit_ms, label="turn_limit_ms")
        options: dict[str, Any] = dict(extra) if isinstance(extra, Mapping) else {}
        task_key = str(options["task_key"]) if options.get("task_key") else None
        ignore_cooldown = options.get("ignore_provider_cooldown")
        if ignore_cooldown is None:
            ignore_cooldown = task_key == SUPERVISOR_TASK_KEY
        options["ignore_provider_cooldown"] = bool(ignore_cooldown)

        if not self._providers:
            if task_key:
                self._record_failure(task_key, NO_PROVIDER_ERROR, work_dir)
            return LaunchResult(success=False, error=NO_PROVIDER_ERROR)

        if task_key is None:
            return await self._launch_fresh(prompt, work_dir, timeout_ms, options, None)

        if task_key in self._in_flight:
            return LaunchResult(success=False, error=f"thread busy: {task_key}")
        self._in_flight.add(task_key)
        try:
            return await self._launch_keyed(task_key, prompt, work_dir, timeout_ms, options)
        finally:
            self._in_flight.discard(task_key)

    async def _launch_keyed(
        self,
        task_key: str,
        prompt: str,
        work_dir: str,
        timeout_ms: int,
        options: dict[str, Any],
    ) -> LaunchResult:
        record = self._registry.get(task_key)
        if record is not None and self._can_resume(record, task_key):
            provider = self._providers[record.provider]  # type: ignore[index]
            result = await self._run_turn(
                provider, prompt, work_dir or record.work_dir or ".", timeout_ms, record.thread_id
            )
            result.resumed = True
            record.last_used_at = self._clock()
            if result.success:
                record.turn_count += 1
                record.last_error = None
                if result.thread_id:
                    record.thread_id = result.thread_id
                if record.turn_count == THREAD_EXHAUSTION_WARNING_THRESHOLD:
                    log.warning(
                        "Thread for %s has used %d of %d turns",
                        task_key,
                        record.turn_count,
                        MAX_THREAD_TURNS,
                    )
                self.save_registry()
                return result
            record.last_error = result.error
            if result.timed_out:
                self.save_registry()
                return result
            log.warning(
                "Resuming %s thread %s for %s failed (%s); starting a fresh thread",
                record.provider,
                record.thread_id,
                task_key,
                result.error,
            )
            record.alive = False
            self.save_registry()

        return await self._launch_fresh(prompt, work_dir, timeout_ms, options, task_key)

    def _can_resume(self, record: ThreadRecord, task_key: str) -> bool:
        if not record.alive or not record.thread_id:
            return False
        provider = self._providers.get(record.provider or "")
        if provider is None or not provider.supports_resume:
            return False
        if record.turn_count >= MAX_THREAD_TURNS:
            log.info("Thread for %s exhausted %d turns; starting fresh", task_key, MAX_THREAD_TURNS)
            return False
        if self._clock() - record.created_at > THREAD_MAX_ABSOLUTE_AGE_S:
            log.info(
                "Thread for %s is older than %ds; starting fresh",
                task_key,
                THREAD_MAX_ABSOLUTE_AGE_S,
            )
            return False
        remaining = MAX_THREAD_TURNS - record.turn_count
        if task_key == SUPERVISOR_TASK_KEY and remaining <= self.supervisor_refresh_turns:
            log.info("Refreshing supervisor thread with %d turns remaining", remaining)
            return False
        return True

    def _candidates(self, preferred: object, ignore_cooldown: bool) -> list[AgentProvider]:
        names = list(self._providers)
        if isinstance(preferred, str) and preferred in self._providers:
            names.remove(preferred)
            names.insert(0, preferred)
        now = self._clock()
        return [
            self._providers[name]
            for name in names
            if ignore_cooldown or self._cooldown_until.get(name, 0.0) <= now
        ]

    async def _launch_fresh(
        self,
        prompt: str,
        work_dir: str,
        timeout_ms: int,
        options: dict[str, Any],
        task_key: str | None,
    ) -> LaunchResult:
        candidates = self._candidates(options.get("provider"), options["ignore_provider_cooldown"])
        if not candidates:
            error = "every available provider is cooling down after recent failures"
            if task_key:
                self._record_failure(task_key, error, work_dir)
            return LaunchResult(success=False, error=error)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        errors: list[str] = []
        last: LaunchResult | None = None
        for provider in candidates:
            remaining_ms = int((deadline - loop.time()) * 1000)
            if remaining_ms <= 0:
                break
            result = await self._run_turn(provider, prompt, work_dir, remaining_ms, None)
            if result.success:
                if task_key:
                    now = self._clock()
                    self._registry[task_key] = ThreadRecord(
                        task_key=task_key,
                        alive=provider.supports_resume and bool(result.thread_id),
                        turn_count=1,
                        provider=provider.name,
                        thread_id=result.thread_id,
                        work_dir=work_dir,
                        created_at=now,
                        last_used_at=now,
                    )
                    self.save_registry()
                return result
            last = result
            errors.append(f"{provider.name}: {result.error}")
            self._cooldown_until[provider.name] = self._clock() + PROVIDER_COOLDOWN_S
            log.warning("Provider %s failed: %s", provider.name, result.error)
            if result.timed_out:
                break

        error = "; ".join(errors) or f"turn budget of {timeout_ms}ms exhausted"
        if task_key:
            self._record_failure(task_key, error, work_dir, last.provider if last else None)
        return LaunchResult(
            success=False,
            error=error,
            provider=last.provider if last else None,
            timed_out=last.timed_out if last else True,
            attempts=last.attempts if last else 0,
        )

    # -- Turn execution ----------------------------------------------------------

    async def _run_turn(
        self,
        provider: AgentProvider,
        prompt: str,
        work_dir: str,
        budget_ms: int,
        thread_id: str | None,
    ) -> LaunchResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget_ms / 1000
        last_error = ""
        for attempt in range(MAX_STREAM_RETRIES + 1):
            remaining_ms = int((deadline - loop.time()) * 1000)
            if remaining_ms <= 0:
                break
            try:
                result = await self._attempt_turn(
                    provider, prompt, work_dir, thread_id, remaining_ms
                )
            except TurnTimeoutError as exc:
                return LaunchResult(
                    success=False,
                    provider=provider.name,
                    thread_id=thread_id,
                    error=str(exc),
                    timed_out=True,
                    attempts=attempt + 1,
                )
            except Exception as exc:
                if not is_transient_stream_error(exc):
                    log.warning("Turn on %s failed: %s", provider.name, exc)
                    return LaunchResult(
                        success=False,
                        provider=provider.name,
                        thread_id=thread_id,
                        error=str(exc) or type(exc).__name__,
                        attempts=attempt + 1,
                    )
                last_error = str(exc)
                if attempt >= MAX_STREAM_RETRIES:
                    break
                delay = stream_retry_delay(attempt)
                if delay >= deadline - loop.time():
                    break
                log.warning(
                    "Transient stream error on %s (attempt %d/%d): %s; retrying in %.1fs",
                    provider.name,
                    attempt + 1,
                    MAX_STREAM_RETRIES,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                continue
            result.attempts = attempt + 1
            return result

        if not last_error:
            return LaunchResult(
                success=False,
                provider=provider.name,
                thread_id=thread_id,
                error=str(TurnTimeoutError(budget_ms)),
                timed_out=True,
            )
        return LaunchResult(
            success=False,
            provider=provider.name,
            thread_id=thread_id,
            error=f"stream disconnected after {MAX_STREAM_RETRIES} retries: {last_error}",
            attempts=MAX_STREAM_RETRIES + 1,
        )

    async def _attempt_turn(
        self,
        provider: AgentProvider,
        prompt: str,
        work_dir: str,
        thread_id: str | None,
        budget_ms: int,
    ) -> LaunchResult:
        """One streaming attempt with a fresh collector.

        Raises TurnTimeoutError, StreamStalledError or TransientStreamError.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget_ms / 1000
        first_window_ms = self.limits.first_event_window_ms(budget_ms)
        collector = TurnCollector(self.limits)
        cancel = asyncio.Event()
        stream = provider.stream_turn(prompt, work_dir=work_dir, thread_id=thread_id, cancel=cancel)

        current_thread = thread_id
        got_event = False
        completed = False
        failure: str | None = None
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    cancel.set()
                    raise TurnTimeoutError(budget_ms)
                stalling = not got_event and first_window_ms is not None
                wait = min(remaining, first_window_ms / 1000) if stalling else remaining
                try:
                    event = await asyncio.wait_for(_next_event(stream), timeout=wait)
                except TimeoutError:
                    cancel.set()
                    if stalling and wait < remaining:
                        raise StreamStalledError(first_window_ms) from None
                    raise TurnTimeoutError(budget_ms) from None

                if event is None:
                    break
                got_event = True
                kind = event.get("type")
                if kind == "thread.started" and event.get("thread_id"):
                    current_thread = str(event["thread_id"])
                elif kind == "item.completed" and isinstance(event.get("item"), Mapping):
                    collector.add(event["item"])
                elif kind == "turn.completed":
                    completed = True
                    break
                elif kind == "turn.failed":
                    failure = str((event.get("error") or {}).get("message") or "turn failed")
                    break
        finally:
            await stream.aclose()

        if failure is not None:
            if is_transient_stream_error(failure):
                raise TransientStreamError(f"stream disconnected before completion: {failure}")
            return LaunchResult(
                success=False,
                provider=provider.name,
                thread_id=current_thread,
                items=collector.finalize(),
                error=failure,
            )
        if not completed:
            raise TransientStreamError("stream ended before turn completed")
        return LaunchResult(
            success=True,
            provider=provider.name,
            thread_id=current_thread,
            output=collector.final_text(),
            items=collector.finalize(),
        )
