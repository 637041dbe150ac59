"""Tests for stream limits, truncation and transient-error classification."""

from __future__ import annotations

import pytest

from fleet.errors import StreamStalledError, TransientStreamError, TurnTimeoutError
from fleet.settings import StreamSettings
from fleet.stream import (
    RETRY_JITTER_MS,
    RETRY_MAX_DELAY_MS,
    StreamLimits,
    TurnCollector,
    is_transient_stream_error,
    stream_retry_delay,
    truncate_item,
    truncate_text,
)


class TestTransientClassification:
    @pytest.mark.parametrize(
        "error",
        [
            "stream disconnected before completion",
            "Error: read ECONNRESET",
            "socket hang up",
            "upstream returned 502 Bad Gateway",
            "HTTP 529: overloaded_error",
            "status 503",
            ConnectionResetError("reset by peer"),
            BrokenPipeError(),
            TransientStreamError("anything"),
            StreamStalledError(1_000),
        ],
    )
    def test_transient(self, error):
        assert is_transient_stream_error(error)

    @pytest.mark.parametrize(
        "error",
        [
            None,
            "",
            "invalid_request_error: 503 tokens is too many",
            "permission denied",
            ValueError("bad prompt"),
            TurnTimeoutError(5_000),
            "port 5020 is busy",
        ],
    )
    def test_not_transient(self, error):
        assert not is_transient_stream_error(error)


def test_retry_delay_is_capped_exponential():
    assert 2.0 <= stream_retry_delay(0) < 2.0 + RETRY_JITTER_MS / 1000
    assert 4.0 <= stream_retry_delay(1) < 4.0 + RETRY_JITTER_MS / 1000
    for attempt in (4, 5, 20):
        delay = stream_retry_delay(attempt)
        assert RETRY_MAX_DELAY_MS / 1000 <= delay < (RETRY_MAX_DELAY_MS + RETRY_JITTER_MS) / 1000


class TestTruncation:
    def test_short_text_untouched(self):
        assert truncate_text("hello", 10) == "hello"

    def test_long_text_gets_marker(self):
        assert truncate_text("a" * 15, 10) == "a" * 10 + "\n\n[…truncated 5 chars…]"

    def test_item_fields_truncated(self):
        item = {
            "type": "command_execution",
            "aggregated_output": "x" * 50,
            "content": [{"type": "text", "text": "y" * 50}, "raw"],
            "error": {"message": "z" * 50, "code": 1},
            "id": "keep-" * 20,
        }
        result = truncate_item(item, 10)
        assert result["aggregated_output"].startswith("x" * 10 + "\n\n[…truncated 40")
        assert result["content"][0]["text"].startswith("y" * 10 + "\n\n[…truncated")
        assert result["content"][1] == "raw"
        assert result["error"]["message"].startswith("z" * 10)
        assert result["error"]["code"] == 1
        assert result["id"] == item["id"]
        assert item["aggregated_output"] == "x" * 50


class TestStreamLimits:
    def test_from_settings(self):
        limits = StreamLimits.from_settings(
            StreamSettings(first_event_timeout_ms=5_000, max_items_per_turn=3, max_item_chars=9)
        )
        assert limits == StreamLimits(5_000, 3, 9)

    @pytest.mark.parametrize(
        ("budget", "expected"),
        [(1_000, None), (2_000, None), (2_001, 1_001), (60_000, 59_000), (3_600_000, 120_000)],
    )
    def test_first_event_window(self, budget, expected):
        assert StreamLimits().first_event_window_ms(budget) == expected


class TestTurnCollector:
    def test_drops_items_past_cap_and_appends_notice(self):
        collector = TurnCollector(StreamLimits(max_items_per_turn=2))
        results = [collector.add({"type": "agent_message", "text": str(i)}) for i in range(5)]
        assert results == [True, True, False, False, False]

        items = collector.finalize()
        assert len(items) == 3
        assert items[-1] == {
            "type": "stream_notice",
            "text": "Dropped 3 completed items to stay within max_items_per_turn=2.",
        }

    def test_no_notice_when_nothing_dropped(self):
        collector = TurnCollector(StreamLimits())
        collector.add({"type": "agent_message", "text": "hi"})
        assert [i["type"] for i in collector.finalize()] == ["agent_message"]

    def test_items_truncated_on_add(self):
        collector = TurnCollector(StreamLimits(max_item_chars=4))
        collector.add({"type": "agent_message", "text": "abcdefgh"})
        assert collector.items[0]["text"].startswith("abcd\n\n[…truncated 4 chars")

    def test_final_text_is_last_agent_message(self):
        collector = TurnCollector(StreamLimits())
        collector.add({"type": "agent_message", "text": "first"})
        collector.add({"type": "agent_message", "text": "second"})
        collector.add({"type": "tool_call", "name": "shell"})
        assert collector.final_text() == "second"
        assert TurnCollector(StreamLimits()).final_text() == ""
