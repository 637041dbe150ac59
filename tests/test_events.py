"""Tests for operator event publishing."""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from fleet.events import (
    EVENT_VERSION,
    EVENTS_STREAM,
    SOCKET_CONNECT_TIMEOUT,
    SOCKET_TIMEOUT,
    EventPublisher,
)


@pytest.fixture()
def publisher() -> EventPublisher:
    return EventPublisher("redis://localhost:6379/0", maxlen=500)


def test_publish_payload_shape(publisher):
    mock_redis = MagicMock()
    with patch.object(publisher, "get_redis", return_value=mock_redis):
        publisher.publish(
            "pr:escalated", "pr-83", "large_conflict", source="pr_cleanup", extra={"url": "u"}
        )

    mock_redis.xadd.assert_called_once()
    args, kwargs = mock_redis.xadd.call_args
    assert args[0] == EVENTS_STREAM
    payload = json.loads(args[1]["data"])
    assert payload["type"] == "pr:escalated"
    assert payload["id"] == "pr-83"
    assert payload["status"] == "large_conflict"
    assert payload["source"] == "pr_cleanup"
    assert payload["url"] == "u"
    assert payload["v"] == EVENT_VERSION
    assert "ts" in payload and "event_id" in payload
    assert kwargs == {"maxlen": 500, "approximate": True}


def test_publish_is_best_effort(publisher, caplog):
    failing = MagicMock()
    failing.xadd.side_effect = RedisConnectionError("Connection refused")
    with (
        patch.object(publisher, "get_redis", return_value=failing),
        caplog.at_level(logging.DEBUG, logger="fleet.events"),
    ):
        publisher.publish("task:status", "t1", "running")
        publisher.publish("task:status", "t1", "done")

    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "Redis unavailable" in warnings[0].getMessage()


def test_warning_rearmed_after_recovery(publisher, caplog):
    flaky = MagicMock()
    flaky.xadd.side_effect = [RedisError("down"), "1-0", RedisError("down again")]
    with (
        patch.object(publisher, "get_redis", return_value=flaky),
        caplog.at_level(logging.WARNING, logger="fleet.events"),
    ):
        for status in ("a", "b", "c"):
            publisher.publish("task:status", "t1", status)

    assert len(caplog.records) == 2


def test_non_redis_errors_propagate(publisher):
    broken = MagicMock()
    broken.xadd.side_effect = ValueError("boom")
    with (
        patch.object(publisher, "get_redis", return_value=broken),
        pytest.raises(ValueError, match="boom"),
    ):
        publisher.publish("task:status", "t1", "running")


def test_connections_fail_fast(publisher):
    kwargs = publisher._pool.connection_kwargs
    assert kwargs["socket_connect_timeout"] == SOCKET_CONNECT_TIMEOUT
    assert kwargs["socket_timeout"] == SOCKET_TIMEOUT
    assert SOCKET_CONNECT_TIMEOUT <= 1
    assert SOCKET_TIMEOUT <= 2


def test_unreachable_redis_returns_quickly(caplog):
    publisher = EventPublisher("redis://127.0.0.1:1/0")
    with caplog.at_level(logging.WARNING, logger="fleet.events"):
        publisher.publish("task:status", "t1", "running")
    publisher.close()
    assert "Redis unavailable" in caplog.text
