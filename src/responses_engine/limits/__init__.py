"""Rate-limit and token-budget tracking."""

from responses_engine.limits.rate_limits import (
    RateLimitConfig,
    RateLimitManager,
    parse_rate_limit_snapshot,
)
from responses_engine.limits.tokens import (
    TokenUsageConfig,
    TokenUsageTracker,
    default_token_usage_config,
)

__all__ = [
    "RateLimitConfig",
    "RateLimitManager",
    "TokenUsageConfig",
    "TokenUsageTracker",
    "default_token_usage_config",
    "parse_rate_limit_snapshot",
]
