"""Rate-limit advisory header parsing and retry guidance.

The server reports two rolling quota windows through
``x-codex-{primary,secondary}-{used-percent,window-minutes,resets-in-seconds}``
response headers.  :class:`RateLimitManager` keeps the latest snapshot plus a
bounded history and answers "may I retry now" / "how long should I wait".
"""

from __future__ import annotations

import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Mapping

import httpx

from responses_engine.types import RateLimitSnapshot, RateLimitWindow

_logger = logging.getLogger(__name__)

_HEADER_PREFIX = "x-codex"


@dataclass
class RateLimitConfig:
    approaching_threshold: float = 80.0
    min_retry_delay_ms: float = 1000
    max_retry_delay_ms: float = 60_000
    max_history_entries: int = 100
    max_history_age: float = 3600  # seconds


@dataclass(frozen=True)
class RateLimitHistoryEntry:
    timestamp: float
    snapshot: RateLimitSnapshot


@dataclass(frozen=True)
class RateLimitSummary:
    has_limits: bool = False
    is_approaching: bool = False
    most_restrictive: RateLimitWindow | None = None
    next_reset_seconds: int | None = None


# ---------------------------------------------------------------------------
# Header parsing
# ---------------------------------------------------------------------------

def _parse_number(value: str | None) -> float | None:
    """Finite, non-negative float or ``None``."""
    if value is None:
        return None
    try:
        number = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def _parse_count(value: str | None) -> int | None:
    number = _parse_number(value)
    if number is None:
        return None
    return int(number)


def _parse_window(headers: httpx.Headers, name: str) -> RateLimitWindow | None:
    used = _parse_number(headers.get(f"{_HEADER_PREFIX}-{name}-used-percent"))
    if used is None:
        return None
    return RateLimitWindow(
        used_percent=used,
        window_minutes=_parse_count(headers.get(f"{_HEADER_PREFIX}-{name}-window-minutes")),
        resets_in_seconds=_parse_count(
            headers.get(f"{_HEADER_PREFIX}-{name}-resets-in-seconds"),
        ),
    )


def parse_rate_limit_snapshot(
    headers: httpx.Headers | Mapping[str, str],
) -> RateLimitSnapshot | None:
    """Parse the advisory headers; ``None`` when neither window is present.

    Header names are matched case-insensitively.  A window is only included
    when its ``used-percent`` is a finite, non-negative number; values above
    100 (over quota) are kept as reported.
    """
    if not isinstance(headers, httpx.Headers):
        headers = httpx.Headers(dict(headers))
    snapshot = RateLimitSnapshot(
        primary=_parse_window(headers, "primary"),
        secondary=_parse_window(headers, "secondary"),
    )
    return snapshot if snapshot.has_data else None


def format_window(window: RateLimitWindow) -> str:
    """Human-readable one-liner, e.g. ``75.5% used (60min window), resets in 1800s``."""
    text = f"{window.used_percent:g}% used"
    if window.window_minutes is not None:
        text += f" ({window.window_minutes}min window)"
    if window.resets_in_seconds is not None:
        text += f", resets in {window.resets_in_seconds}s"
    return text


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class RateLimitManager:
    """Tracks the latest rate-limit snapshot and a bounded history.

    Not safe for concurrent writers; callers sharing one instance across
    streams must serialize updates.
    """

    def __init__(self, config: RateLimitConfig | None = None) -> None:
        self.config = config or RateLimitConfig()
        self._current: RateLimitSnapshot | None = None
        self._history: list[RateLimitHistoryEntry] = []

    @property
    def current_snapshot(self) -> RateLimitSnapshot | None:
        return self._current

    def update_from_headers(
        self, headers: httpx.Headers | Mapping[str, str],
    ) -> RateLimitSnapshot:
        """Parse *headers* and record the result.

        Returns an empty snapshot, and records nothing, when no window
        could be parsed.
        """
        snapshot = parse_rate_limit_snapshot(headers)
        if snapshot is None:
            return RateLimitSnapshot()
        self.update_from_snapshot(snapshot)
        return snapshot

    def update_from_snapshot(self, snapshot: RateLimitSnapshot) -> None:
        self._current = snapshot
        self._history.append(RateLimitHistoryEntry(timestamp=time.time(), snapshot=snapshot))
        self._trim_history()

        worst = snapshot.most_restrictive()
        if worst is not None and worst.used_percent >= self.config.approaching_threshold:
            _logger.warning("Approaching rate limit: %s", format_window(worst))

    def should_retry(self, threshold: float | None = None) -> bool:
        """False only when the most restrictive known window is at or over *threshold*."""
        if threshold is None:
            threshold = self.config.approaching_threshold
        if self._current is None:
            return True
        worst = self._current.most_restrictive()
        if worst is None:
            return True
        return worst.used_percent < threshold

    def calculate_retry_delay(self, attempt: int) -> float:
        """Suggested wait in milliseconds before retry number *attempt* (zero-based)."""
        worst = self._current.most_restrictive() if self._current else None
        if worst is not None and worst.resets_in_seconds is not None:
            base = min(worst.resets_in_seconds * 1000, self.config.max_retry_delay_ms)
        else:
            base = min(
                self.config.min_retry_delay_ms * (2 ** attempt),
                self.config.max_retry_delay_ms,
            )
        return base + random.uniform(0, base * 0.1)

    def get_summary(self) -> RateLimitSummary:
        snapshot = self._current
        if snapshot is None or not snapshot.has_data:
            return RateLimitSummary()
        worst = snapshot.most_restrictive()
        resets = [
            w.resets_in_seconds
            for w in (snapshot.primary, snapshot.secondary)
            if w is not None and w.resets_in_seconds is not None
        ]
        return RateLimitSummary(
            has_limits=True,
            is_approaching=(
                worst is not None
                and worst.used_percent >= self.config.approaching_threshold
            ),
            most_restrictive=worst,
            next_reset_seconds=min(resets) if resets else None,
        )

    def get_history(self) -> list[RateLimitHistoryEntry]:
        return list(self._history)

    def clear(self) -> None:
        self._current = None
        self._history.clear()

    format_window = staticmethod(format_window)

    def _trim_history(self) -> None:
        cutoff = time.time() - self.config.max_history_age
        self._history = [e for e in self._history if e.timestamp >= cutoff]
        max_entries = self.config.max_history_entries
        if len(self._history) > max_entries:
            self._history = self._history[-max_entries:]
