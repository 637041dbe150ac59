"""Tests for layered settings: environment over config file over defaults."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from fleet.settings import (
    DEFAULT_FIRST_EVENT_TIMEOUT_MS,
    DEFAULT_MAX_ITEM_CHARS,
    DEFAULT_MAX_ITEMS_PER_TURN,
    KNOWN_PROVIDERS,
    FleetSettings,
    load_settings,
    parse_bounded_int,
    read_config_file,
)


@pytest.fixture()
def base(tmp_path: Path) -> FleetSettings:
    return FleetSettings.for_directory(tmp_path)


def _write_config(base: FleetSettings, text: str) -> Path:
    path = base.config_dir / "config.toml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (None, 50),
        ("", 50),
        ("  ", 50),
        ("abc", 50),
        ("nan", 50),
        ("inf", 50),
        (True, 50),
        ("75", 75),
        (75.9, 75),
        ("0", 10),
        (-5, 10),
        (10**9, 100),
    ],
)
def test_parse_bounded_int(value, expected):
    assert parse_bounded_int(value, 50, 10, 100) == expected


def test_defaults_without_config(base):
    settings = load_settings(env={}, base=base)
    assert settings.stream.first_event_timeout_ms == DEFAULT_FIRST_EVENT_TIMEOUT_MS
    assert settings.stream.max_items_per_turn == DEFAULT_MAX_ITEMS_PER_TURN
    assert settings.stream.max_item_chars == DEFAULT_MAX_ITEM_CHARS
    assert settings.provider_order == KNOWN_PROVIDERS
    assert settings.repos == ()
    assert settings.task_store_path == base.task_store_path


def test_config_file_values(base):
    _write_config(
        base,
        """
[daemon]
repos = ["~/src/api"]
max_concurrent_tasks = 4
turn_timeout_ms = 90000

[providers]
order = ["claude", "codex"]
disabled = ["copilot"]

[stream]
max_items_per_turn = 50

[warn_state]
max_keys = 10

[pr_cleanup]
max_conflict_size = 250
auto_merge = true
""",
    )
    settings = load_settings(env={}, base=base)

    assert settings.repos == (str(Path("~/src/api").expanduser()),)
    assert settings.max_concurrent_tasks == 4
    assert settings.turn_timeout_ms == 90_000
    assert settings.provider_order == ("claude", "codex")
    assert settings.disabled_providers == frozenset({"copilot"})
    assert settings.stream.max_items_per_turn == 50
    assert settings.warn_max_keys == 10
    assert settings.pr_cleanup == {"max_conflict_size": 250, "auto_merge": True}


def test_env_overrides_config(base):
    _write_config(base, "[stream]\nfirst_event_timeout_ms = 5000\nmax_item_chars = 100\n")
    env = {
        "FLEET_STREAM_FIRST_EVENT_TIMEOUT_MS": "7000",
        "FLEET_PROVIDER_ORDER": "copilot, codex",
        "FLEET_TURN_TIMEOUT_MS": "120000",
        "FLEET_WORKSPACE_SYNC_WARN_THROTTLE_MS": "0",
        "FLEET_REDIS_URL": "redis://cache:6379/2",
    }
    settings = load_settings(env=env, base=base)

    assert settings.stream.first_event_timeout_ms == 7_000
    assert settings.stream.max_item_chars == 100
    assert settings.provider_order == ("copilot", "codex")
    assert settings.turn_timeout_ms == 120_000
    assert settings.warn_throttle_ms == 0
    assert settings.redis_url == "redis://cache:6379/2"


def test_stream_values_clamped(base):
    env = {
        "FLEET_STREAM_FIRST_EVENT_TIMEOUT_MS": "5",
        "FLEET_STREAM_MAX_ITEMS_PER_TURN": "999999",
        "FLEET_STREAM_MAX_ITEM_CHARS": "garbage",
    }
    stream = load_settings(env=env, base=base).stream
    assert stream.first_event_timeout_ms == 1_000
    assert stream.max_items_per_turn == 5_000
    assert stream.max_item_chars == DEFAULT_MAX_ITEM_CHARS


def test_empty_env_value_falls_through_to_config(base):
    _write_config(base, "[stream]\nmax_items_per_turn = 20\n")
    settings = load_settings(env={"FLEET_STREAM_MAX_ITEMS_PER_TURN": ""}, base=base)
    assert settings.stream.max_items_per_turn == 20


def test_unknown_providers_ignored(base, caplog):
    with caplog.at_level(logging.WARNING, logger="fleet.settings"):
        settings = load_settings(env={"FLEET_PROVIDER_ORDER": "gemini,CLAUDE,claude"}, base=base)
    assert settings.provider_order == ("claude",)
    assert "gemini" in caplog.text


def test_invalid_toml_treated_as_empty(base, caplog):
    path = _write_config(base, "[daemon\nrepos = ")
    with caplog.at_level(logging.WARNING, logger="fleet.settings"):
        assert read_config_file(path) == {}
    assert "Ignoring unreadable config" in caplog.text
    assert load_settings(env={}, base=base).repos == ()


def test_missing_config_is_silent(tmp_path, caplog):
    with caplog.at_level(logging.WARNING, logger="fleet.settings"):
        assert read_config_file(tmp_path / "absent.toml") == {}
    assert caplog.text == ""


def test_explicit_config_path(base, tmp_path):
    other = tmp_path / "elsewhere.toml"
    other.write_text("[daemon]\nmax_concurrent_tasks = 9\n")
    assert load_settings(other, env={}, base=base).max_concurrent_tasks == 9


def test_for_directory_roots_all_state(tmp_path):
    settings = FleetSettings.for_directory(tmp_path, max_concurrent_tasks=3)
    assert settings.task_store_path == tmp_path / "state" / "tasks.json"
    assert settings.thread_registry_path == tmp_path / "state" / "threads.json"
    assert settings.lock_dir == tmp_path / "run"
    assert settings.cache_dir == tmp_path / ".cache"
    assert settings.max_concurrent_tasks == 3
