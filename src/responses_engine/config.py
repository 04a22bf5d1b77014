"""Configuration for responses-engine.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./responses_engine.yaml``
  3. ``~/.config/responses-engine/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from responses_engine.limits.rate_limits import RateLimitConfig
from responses_engine.llm.retry import RetryPolicy
from responses_engine.stream import StreamConfig

_logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ModelProviderInfo:
    """Where and how to reach one Responses API deployment.

    ``env_http_headers`` maps header names to environment variable names;
    a header is sent only when its variable is set and non-empty.
    """

    name: str = "openai"
    base_url: str = DEFAULT_BASE_URL
    env_key: str | None = "OPENAI_API_KEY"
    api_key: str | None = None
    query_params: dict[str, str] = field(default_factory=dict)
    http_headers: dict[str, str] = field(default_factory=dict)
    env_http_headers: dict[str, str] = field(default_factory=dict)
    request_max_retries: int | None = None
    stream_idle_timeout_ms: int | None = None
    organization: str | None = None


@dataclass
class ModelFamily:
    """Static traits of a model family."""

    family: str = "gpt-5"
    base_instructions: str = "You are a helpful assistant."
    supports_reasoning_summaries: bool = True
    context_window: int | None = None


@dataclass
class EngineConfig:
    """Top-level config for responses-engine."""

    # Active provider name
    provider: str = "openai"

    # Named providers
    providers: dict[str, ModelProviderInfo] = field(
        default_factory=lambda: {"openai": ModelProviderInfo()}
    )

    model: str = "gpt-5"
    model_family: ModelFamily = field(default_factory=ModelFamily)

    reasoning_effort: str | None = "medium"
    reasoning_summary: str | None = "auto"
    verbosity: str | None = None

    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    retry: RetryPolicy = field(default_factory=RetryPolicy)
    stream: StreamConfig = field(default_factory=StreamConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)

    # Overrides passed to default_token_usage_config()
    tokens: dict[str, Any] = field(default_factory=dict)

    @property
    def active_provider(self) -> ModelProviderInfo:
        return self.providers.get(self.provider, ModelProviderInfo(name=self.provider))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./responses_engine.yaml"),
    Path.home() / ".config" / "responses-engine" / "config.yaml",
]


def _known_fields(cls: type, raw: dict[str, Any] | None) -> dict[str, Any]:
    """Keep only keys that are fields of dataclass *cls*."""
    if not raw:
        return {}
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - names)
    if unknown:
        _logger.warning("Ignoring unknown %s keys: %s", cls.__name__, ", ".join(unknown))
    return {k: v for k, v in raw.items() if k in names and v is not None}


def _parse_provider(name: str, raw: dict[str, Any] | None) -> ModelProviderInfo:
    values = _known_fields(ModelProviderInfo, raw)
    values.setdefault("name", name)
    return ModelProviderInfo(**values)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    EngineConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return EngineConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return EngineConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    providers: dict[str, ModelProviderInfo] = {}
    for name, praw in (raw.get("providers") or {}).items():
        providers[name] = _parse_provider(name, praw)
    if not providers:
        providers["openai"] = ModelProviderInfo()

    defaults = EngineConfig()
    return EngineConfig(
        provider=raw.get("provider", next(iter(providers))),
        providers=providers,
        model=raw.get("model", defaults.model),
        model_family=ModelFamily(**_known_fields(ModelFamily, raw.get("model_family"))),
        reasoning_effort=raw.get("reasoning_effort", defaults.reasoning_effort),
        reasoning_summary=raw.get("reasoning_summary", defaults.reasoning_summary),
        verbosity=raw.get("verbosity"),
        conversation_id=raw.get("conversation_id") or defaults.conversation_id,
        retry=RetryPolicy(**_known_fields(RetryPolicy, raw.get("retry"))),
        stream=StreamConfig(**_known_fields(StreamConfig, raw.get("stream"))),
        rate_limits=RateLimitConfig(**_known_fields(RateLimitConfig, raw.get("rate_limits"))),
        tokens=dict(raw.get("tokens") or {}),
    )
