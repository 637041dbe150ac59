"""Streaming-turn safety: item limits, truncation and transient-error retry."""

from __future__ import annotations

import random
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fleet.errors import TransientStreamError
from fleet.settings import (
    DEFAULT_FIRST_EVENT_TIMEOUT_MS,
    DEFAULT_MAX_ITEM_CHARS,
    DEFAULT_MAX_ITEMS_PER_TURN,
    StreamSettings,
)

MAX_STREAM_RETRIES = 5
RETRY_BASE_DELAY_MS = 2_000
RETRY_MAX_DELAY_MS = 32_000
RETRY_JITTER_MS = 1_000

# Below this total budget there is no room for a separate first-event window.
MIN_BUDGET_FOR_FIRST_EVENT_MS = 2_000
FIRST_EVENT_BUDGET_MARGIN_MS = 1_000

TRUNCATABLE_KEYS = (
    "text",
    "output",
    "aggregated_output",
    "stderr",
    "stdout",
    "result",
    "message",
)

_TRANSIENT_MARKERS = (
    "stream disconnected",
    "response.failed",
    "stream closed before",
    "stream ended before",
    "turn.failed",
    "connection reset",
    "econnreset",
    "socket hang up",
    "network socket disconnected",
    "etimedout",
    "epipe",
    "socket timeout",
    "bad gateway",
    "service temporarily unavailable",
    "service_unavailable",
    "rate_limit_exceeded",
    "overloaded_error",
)
_GATEWAY_STATUS = re.compile(r"\b(?:502|503|504|529)\b")


def is_transient_stream_error(error: BaseException | str | None) -> bool:
    """True for disconnects, gateway errors and overload responses."""
    if error is None:
        return False
    if isinstance(error, TransientStreamError):
        return True
    if isinstance(error, ConnectionError | BrokenPipeError):
        return True
    message = str(error).lower()
    if not message:
        return False
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return True
    return bool(_GATEWAY_STATUS.search(message)) and "invalid_request" not in message


def stream_retry_delay(attempt: int) -> float:
    """Seconds to wait before retry *attempt* (0-based): capped exponential plus jitter."""
    base = min(RETRY_BASE_DELAY_MS * (2 ** max(0, attempt)), RETRY_MAX_DELAY_MS)
    return (base + random.random() * RETRY_JITTER_MS) / 1000


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    removed = len(text) - max_chars
    return f"{text[:max_chars]}\n\n[…truncated {removed} chars…]"


def truncate_item(item: Mapping[str, Any], max_chars: int) -> dict[str, Any]:
    """Copy of *item* with oversized text payloads truncated."""
    result = dict(item)
    for key in TRUNCATABLE_KEYS:
        value = result.get(key)
        if isinstance(value, str):
            result[key] = truncate_text(value, max_chars)

    content = result.get("content")
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, Mapping) and isinstance(part.get("text"), str):
                part = {**part, "text": truncate_text(part["text"], max_chars)}
            parts.append(part)
        result["content"] = parts

    error = result.get("error")
    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        result["error"] = {**error, "message": truncate_text(error["message"], max_chars)}
    return result


@dataclass(frozen=True)
class StreamLimits:
    first_event_timeout_ms: int = DEFAULT_FIRST_EVENT_TIMEOUT_MS
    max_items_per_turn: int = DEFAULT_MAX_ITEMS_PER_TURN
    max_item_chars: int = DEFAULT_MAX_ITEM_CHARS

    @classmethod
    def from_settings(cls, stream: StreamSettings) -> StreamLimits:
        return cls(
            first_event_timeout_ms=stream.first_event_timeout_ms,
            max_items_per_turn=stream.max_items_per_turn,
            max_item_chars=stream.max_item_chars,
        )

    def first_event_window_ms(self, budget_ms: int) -> int | None:
        """First-event timeout that fits inside a *budget_ms* turn, or None."""
        if budget_ms <= MIN_BUDGET_FOR_FIRST_EVENT_MS:
            return None
        return min(self.first_event_timeout_ms, budget_ms - FIRST_EVENT_BUDGET_MARGIN_MS)


@dataclass
class TurnCollector:
    """Accumulates completed items for one streaming attempt."""

    limits: StreamLimits
    items: list[dict[str, Any]] = field(default_factory=list)
    dropped: int = 0

    def add(self, item: Mapping[str, Any]) -> bool:
        """Keep *item* if the per-turn cap allows.  Returns False when dropped."""
        if len(self.items) >= self.limits.max_items_per_turn:
            self.dropped += 1
            return False
        self.items.append(truncate_item(item, self.limits.max_item_chars))
        return True

    def finalize(self) -> list[dict[str, Any]]:
        items = list(self.items)
        if self.dropped:
            items.append(
                {
                    "type": "stream_notice",
                    "text": (
                        f"Dropped {self.dropped} completed items to stay within "
                        f"max_items_per_turn={self.limits.max_items_per_turn}."
                    ),
                }
            )
        return items

    def final_text(self) -> str:
        """Text of the last agent message, the conventional turn output."""
        for item in reversed(self.items):
            if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                return item["text"]
        return ""
