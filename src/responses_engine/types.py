"""Shared data types for responses-engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Union, get_args

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Token usage
# ---------------------------------------------------------------------------

TokenCount = Annotated[int, Field(strict=True, ge=0)]


class TokenUsage(BaseModel):
    """Token counts for one turn, or a running total of several.

    Forms an additive monoid: ``a + b`` sums pointwise and ``TokenUsage()``
    is the identity.  ``total_tokens`` is carried as reported and is never
    recomputed from the other fields.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    input_tokens: TokenCount = 0
    cached_input_tokens: TokenCount = 0
    output_tokens: TokenCount = 0
    reasoning_output_tokens: TokenCount = 0
    total_tokens: TokenCount = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            cached_input_tokens=self.cached_input_tokens + other.cached_input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            reasoning_output_tokens=(
                self.reasoning_output_tokens + other.reasoning_output_tokens
            ),
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def from_api(cls, usage: dict[str, Any]) -> TokenUsage:
        """Convert a Responses API ``usage`` block.

        Raises ``pydantic.ValidationError`` (a ``ValueError``) when a count
        is negative or not an integer.
        """
        input_details = usage.get("input_tokens_details") or {}
        output_details = usage.get("output_tokens_details") or {}
        return cls.model_validate({
            "input_tokens": usage.get("input_tokens", 0),
            "cached_input_tokens": input_details.get("cached_tokens", 0),
            "output_tokens": usage.get("output_tokens", 0),
            "reasoning_output_tokens": output_details.get("reasoning_tokens", 0),
            "total_tokens": usage.get("total_tokens", 0),
        })


def aggregate_token_usage(usages: list[TokenUsage]) -> TokenUsage:
    """Sum a list of usages (empty list gives the zero usage)."""
    total = TokenUsage()
    for usage in usages:
        total = total + usage
    return total


@dataclass
class TokenUsageInfo:
    """Session-level token usage aggregation."""

    total_token_usage: TokenUsage = field(default_factory=TokenUsage)
    last_token_usage: TokenUsage = field(default_factory=TokenUsage)
    model_context_window: int | None = None
    auto_compact_token_limit: int | None = None


# ---------------------------------------------------------------------------
# Rate limits
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RateLimitWindow:
    """One rolling quota window as reported by the server."""

    used_percent: float
    window_minutes: int | None = None
    resets_in_seconds: int | None = None


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Primary (short) and secondary (long) windows; either may be absent."""

    primary: RateLimitWindow | None = None
    secondary: RateLimitWindow | None = None

    @property
    def has_data(self) -> bool:
        return self.primary is not None or self.secondary is not None

    def most_restrictive(self) -> RateLimitWindow | None:
        """Window with the highest ``used_percent`` (primary wins ties)."""
        if self.primary is None:
            return self.secondary
        if self.secondary is None:
            return self.primary
        if self.primary.used_percent >= self.secondary.used_percent:
            return self.primary
        return self.secondary


# ---------------------------------------------------------------------------
# Response events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Created:
    """The server acknowledged the request."""


@dataclass(frozen=True)
class OutputItemDone:
    """A complete output item (message, function call, reasoning, ...)."""

    item: dict[str, Any]


@dataclass(frozen=True)
class OutputTextDelta:
    delta: str


@dataclass(frozen=True)
class ReasoningSummaryDelta:
    delta: str


@dataclass(frozen=True)
class ReasoningContentDelta:
    delta: str


@dataclass(frozen=True)
class ReasoningSummaryPartAdded:
    """Boundary between two reasoning summary parts."""


@dataclass(frozen=True)
class WebSearchCallBegin:
    call_id: str


@dataclass(frozen=True)
class RateLimits:
    """Synthetic event carrying the rate-limit headers of the response."""

    snapshot: RateLimitSnapshot


@dataclass(frozen=True)
class Completed:
    """Final event of a successful response."""

    response_id: str
    token_usage: TokenUsage | None = None


ResponseEvent = Union[
    Created,
    OutputItemDone,
    OutputTextDelta,
    ReasoningSummaryDelta,
    ReasoningContentDelta,
    ReasoningSummaryPartAdded,
    WebSearchCallBegin,
    RateLimits,
    Completed,
]

RESPONSE_EVENT_TYPES: tuple[type, ...] = get_args(ResponseEvent)


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

@dataclass
class Prompt:
    """Input for one model turn.

    ``input`` holds Responses API items (messages, function call outputs,
    ...) as plain dicts; ``tools`` holds tool specs in the
    ``{"type": "function", "function": {...}}`` / ``local_shell`` /
    ``web_search`` / ``custom`` shapes.
    """

    input: list[dict[str, Any]]
    tools: list[dict[str, Any]] = field(default_factory=list)
    base_instructions_override: str | None = None
    user_instructions: str | None = None
    output_schema: dict[str, Any] | None = None
