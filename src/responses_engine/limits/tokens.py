"""Per-session token usage aggregation and compaction advice."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from responses_engine.types import TokenUsage, TokenUsageInfo, aggregate_token_usage

_logger = logging.getLogger(__name__)

# Context window sizes of well-known model families
KNOWN_CONTEXT_WINDOWS: dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-32k": 32_768,
    "gpt-4-turbo": 128_000,
    "gpt-4o": 128_000,
    "gpt-5": 200_000,
    "gpt-3.5-turbo": 4096,
    "gpt-3.5-turbo-16k": 16_384,
}

_AUTO_COMPACT_RATIO = 0.8


@dataclass
class TokenUsageConfig:
    model: str
    context_window: int | None = None
    auto_compact_limit: int | None = None
    max_history_entries: int = 1000
    max_history_age: float = 86_400  # seconds


def default_token_usage_config(model: str, **overrides: Any) -> TokenUsageConfig:
    """Config for *model*, with context window and compaction limit filled in.

    The auto-compaction limit defaults to 80% of the context window.
    Keyword *overrides* replace any field, e.g. ``context_window=0``.
    """
    context_window = overrides.pop("context_window", KNOWN_CONTEXT_WINDOWS.get(model))
    auto_compact_limit = overrides.pop("auto_compact_limit", None)
    if auto_compact_limit is None and context_window:
        auto_compact_limit = int(context_window * _AUTO_COMPACT_RATIO)
    return TokenUsageConfig(
        model=model,
        context_window=context_window,
        auto_compact_limit=auto_compact_limit,
        **overrides,
    )


@dataclass(frozen=True)
class TokenUsageHistoryEntry:
    timestamp: float
    usage: TokenUsage
    turn_id: str | None = None


@dataclass(frozen=True)
class UsageAggregate:
    usage: TokenUsage = field(default_factory=TokenUsage)
    entry_count: int = 0


@dataclass(frozen=True)
class EfficiencyMetrics:
    total_tokens: int = 0
    cache_hit_rate: float = 0.0
    input_output_ratio: float = 0.0
    tokens_per_turn: float = 0.0


@dataclass(frozen=True)
class TokenUsageSummary:
    total_tokens: int = 0
    last_turn_tokens: int = 0
    usage_percentage: float = 0.0
    should_compact: bool = False
    history_entries: int = 0


def _aggregate(entries: list[TokenUsageHistoryEntry]) -> UsageAggregate:
    return UsageAggregate(
        usage=aggregate_token_usage([e.usage for e in entries]),
        entry_count=len(entries),
    )


class TokenUsageTracker:
    """Running token totals for one session plus a bounded, time-indexed history.

    ``total_tokens`` is summed as reported and never reconciled with the
    other counters.  Not safe for concurrent writers.
    """

    def __init__(self, config: TokenUsageConfig) -> None:
        self.config = config
        self._total = TokenUsage()
        self._last = TokenUsage()
        self._history: list[TokenUsageHistoryEntry] = []
        self._turns_recorded = 0

    def update(
        self,
        usage: TokenUsage | Mapping[str, Any],
        turn_id: str | None = None,
    ) -> TokenUsageInfo:
        """Add one turn's usage to the session totals.

        *usage* may be a :class:`TokenUsage` or a plain mapping with the same
        field names; a mapping with negative or non-integer counts raises
        ``ValueError`` (``pydantic.ValidationError``).
        """
        if not isinstance(usage, TokenUsage):
            usage = TokenUsage.model_validate(dict(usage))

        self._total = self._total + usage
        self._last = usage
        self._turns_recorded += 1
        self._history.append(
            TokenUsageHistoryEntry(timestamp=time.time(), usage=usage, turn_id=turn_id),
        )
        self._trim_history()

        if self.should_compact():
            _logger.info(
                "Token usage %d exceeds auto-compact limit %d",
                self._total.total_tokens, self.config.auto_compact_limit,
            )
        return self.get_session_info()

    def should_compact(self) -> bool:
        limit = self.config.auto_compact_limit
        if limit is None:
            return False
        return self._total.total_tokens > limit

    def get_usage_percentage(self) -> float:
        window = self.config.context_window
        if not window:
            return 0.0
        return self._total.total_tokens / window * 100

    # ------------------------------------------------------------------
    # History queries
    # ------------------------------------------------------------------

    def get_usage_for_range(self, start: float, end: float) -> UsageAggregate:
        """Usage recorded between *start* and *end* (``time.time()`` seconds, inclusive)."""
        return _aggregate([e for e in self._history if start <= e.timestamp <= end])

    def get_usage_for_last_minutes(self, minutes: float) -> UsageAggregate:
        now = time.time()
        return self.get_usage_for_range(now - minutes * 60, now)

    def get_usage_for_last_turns(self, turns: int) -> UsageAggregate:
        if turns <= 0:
            return UsageAggregate()
        return _aggregate(self._history[-turns:])

    def get_session_usage(self) -> UsageAggregate:
        return UsageAggregate(usage=self._total, entry_count=len(self._history))

    def get_history(self) -> list[TokenUsageHistoryEntry]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_efficiency_metrics(self) -> EfficiencyMetrics:
        total = self._total
        input_total = total.input_tokens + total.cached_input_tokens
        return EfficiencyMetrics(
            total_tokens=total.total_tokens,
            cache_hit_rate=(
                total.cached_input_tokens / input_total * 100 if input_total else 0.0
            ),
            input_output_ratio=(
                total.input_tokens / total.output_tokens if total.output_tokens else 0.0
            ),
            tokens_per_turn=(
                total.total_tokens / self._turns_recorded if self._turns_recorded else 0.0
            ),
        )

    def get_session_info(self) -> TokenUsageInfo:
        return TokenUsageInfo(
            total_token_usage=self._total,
            last_token_usage=self._last,
            model_context_window=self.config.context_window,
            auto_compact_token_limit=self.config.auto_compact_limit,
        )

    def get_summary(self) -> TokenUsageSummary:
        return TokenUsageSummary(
            total_tokens=self._total.total_tokens,
            last_turn_tokens=self._last.total_tokens,
            usage_percentage=self.get_usage_percentage(),
            should_compact=self.should_compact(),
            history_entries=len(self._history),
        )

    def update_config(self, **changes: Any) -> None:
        """Replace config fields, e.g. ``update_config(context_window=16384)``."""
        self.config = replace(self.config, **changes)
        self._trim_history()

    def reset(self) -> None:
        self._total = TokenUsage()
        self._last = TokenUsage()
        self._history.clear()
        self._turns_recorded = 0

    def _trim_history(self) -> None:
        cutoff = time.time() - self.config.max_history_age
        self._history = [e for e in self._history if e.timestamp >= cutoff]
        max_entries = self.config.max_history_entries
        if len(self._history) > max_entries:
            self._history = self._history[-max_entries:]
