"""Timeout normalisation for every timer the daemon arms.

Timer delays above ``MAX_TIMER_DELAY_MS`` overflow a signed 32-bit
millisecond counter in the agent CLIs we drive, and nonsense values (NaN,
zero, negative, strings) would either spin or never fire.  Every timeout
therefore passes through :class:`TimeoutNormalizer` first.
"""

from __future__ import annotations

import logging
import math

log = logging.getLogger(__name__)

MAX_TIMER_DELAY_MS = 2**31 - 1


def parse_positive_timeout_ms(value: object) -> float | None:
    """Return *value* as a positive finite number of ms, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


class TimeoutNormalizer:
    """Clamp and default timeout values, warning once per offending value."""

    def __init__(self, default_ms: int, *, minimum_ms: int = 1) -> None:
        if parse_positive_timeout_ms(default_ms) is None:
            raise ValueError(f"default timeout must be positive, got {default_ms!r}")
        self.default_ms = min(int(default_ms), MAX_TIMER_DELAY_MS)
        self.minimum_ms = max(1, int(minimum_ms))
        self._warned: set[str] = set()

    def normalize(
        self,
        value: object,
        *,
        default_ms: int | None = None,
        label: str = "timeout",
    ) -> int:
        fallback = self.default_ms if default_ms is None else default_ms
        parsed = parse_positive_timeout_ms(value)
        if parsed is None:
            self._warn_once(
                label, value, "Invalid %s %r; using default %dms", label, value, fallback
            )
            return fallback
        if parsed > MAX_TIMER_DELAY_MS:
            self._warn_once(
                label,
                value,
                "%s %r exceeds timer limit; clamping to %dms",
                label,
                value,
                MAX_TIMER_DELAY_MS,
            )
            return MAX_TIMER_DELAY_MS
        return max(self.minimum_ms, int(parsed))

    def seconds(
        self, value: object, *, default_ms: int | None = None, label: str = "timer"
    ) -> float:
        """Normalised delay in seconds, for ``asyncio.sleep`` and friends."""
        return self.normalize(value, default_ms=default_ms, label=label) / 1000

    def _warn_once(self, label: str, value: object, msg: str, *args: object) -> None:
        key = f"{label}:{value!r}"
        if key in self._warned:
            return
        self._warned.add(key)
        log.warning(msg, *args)

    def reset(self) -> None:
        self._warned.clear()
