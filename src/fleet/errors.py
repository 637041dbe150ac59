"""Error kinds shared across the fleet core.

Each kind has exactly one handling policy:

- :class:`CorruptStateError` -- archive the bad file, reset to empty, continue.
- :class:`TransientStreamError` -- retry with backoff, then fail the turn.
- :class:`TurnTimeoutError` -- fail the turn without retrying.
- :class:`ConflictResolutionError` -- fall back to local resolution, then escalate.
"""

from __future__ import annotations


class FleetError(Exception):
    """Base class for fleet errors."""


class CorruptStateError(FleetError):
    def __init__(self, path: object, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class TransientStreamError(FleetError):
    """A stream ended or stalled in a way that is worth retrying."""


class StreamStalledError(TransientStreamError):
    """No stream event arrived within the first-event window."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(
            f"stream disconnected before completion: no stream events within {timeout_ms}ms"
        )


class TurnTimeoutError(FleetError):
    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"turn timed out after {timeout_ms}ms")


class ConflictResolutionError(FleetError):
    pass
