"""Responses API request body construction."""

from __future__ import annotations

import copy
import logging
from typing import Any
from urllib.parse import urlparse

from responses_engine.config import ModelFamily, ModelProviderInfo
from responses_engine.types import Prompt

_logger = logging.getLogger(__name__)

OUTPUT_SCHEMA_NAME = "codex_output_schema"

_EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}}


def get_full_instructions(prompt: Prompt, family: ModelFamily) -> str:
    """Base (or overridden) instructions followed by the user instructions."""
    parts = [prompt.base_instructions_override or family.base_instructions]
    if prompt.user_instructions:
        parts.append(prompt.user_instructions)
    return "\n".join(parts)


def get_formatted_input(prompt: Prompt) -> list[dict[str, Any]]:
    """Deep copy of the prompt input, safe to serialize or mutate."""
    return copy.deepcopy(prompt.input)


def _convert_tool(tool: Any) -> dict[str, Any] | None:
    if not isinstance(tool, dict):
        _logger.warning("Skipping invalid tool spec: %r", tool)
        return None

    kind = tool.get("type")
    if kind == "function":
        fn = tool.get("function") or {}
        if not fn.get("name") or not fn.get("description"):
            _logger.warning("Function tool missing name or description: %r", tool)
            return None
        # Responses API wants the function fields flattened
        return {
            "type": "function",
            "name": fn["name"],
            "description": fn["description"],
            "strict": bool(fn.get("strict", False)),
            "parameters": fn.get("parameters") or dict(_EMPTY_PARAMETERS),
        }

    if kind in ("local_shell", "web_search"):
        return {"type": kind}

    if kind == "custom" and tool.get("custom"):
        custom = tool["custom"]
        return {
            "type": "function",
            "name": custom.get("name"),
            "description": custom.get("description"),
            "strict": False,
            "parameters": {
                "type": "object",
                "properties": {
                    "input": {"type": "string", "description": "Tool input"},
                },
                "required": ["input"],
            },
        }

    _logger.warning("Unknown tool type %r, skipping", kind)
    return None


def create_tools_json(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert tool specs into the Responses API ``tools`` array.

    Handles ``function``, ``local_shell``, ``web_search`` and ``custom``
    specs; anything else is dropped with a warning.
    """
    converted = []
    for tool in tools or []:
        result = _convert_tool(tool)
        if result is not None:
            converted.append(result)
    return converted


def create_reasoning_param(
    family: ModelFamily,
    effort: str | None,
    summary: str | None,
) -> dict[str, Any] | None:
    if not family.supports_reasoning_summaries:
        return None
    reasoning: dict[str, Any] = {}
    if effort:
        reasoning["effort"] = effort
    if summary:
        reasoning["summary"] = summary
    return reasoning


def create_text_param(
    verbosity: str | None,
    output_schema: dict[str, Any] | None,
) -> dict[str, Any] | None:
    if not verbosity and not output_schema:
        return None
    text: dict[str, Any] = {}
    if verbosity:
        text["verbosity"] = verbosity
    if output_schema:
        text["format"] = {
            "type": "json_schema",
            "strict": True,
            "schema": output_schema,
            "name": OUTPUT_SCHEMA_NAME,
        }
    return text


def requires_store(provider: ModelProviderInfo) -> bool:
    """Azure deployments reject ``store: false``; detect them by URL host."""
    if not provider.base_url:
        return False
    host = urlparse(provider.base_url).hostname or ""
    return "azure" in host.lower()


def build_payload(
    prompt: Prompt,
    *,
    model: str,
    family: ModelFamily,
    provider: ModelProviderInfo,
    conversation_id: str,
    reasoning_effort: str | None = None,
    reasoning_summary: str | None = None,
    verbosity: str | None = None,
) -> dict[str, Any]:
    """Assemble the JSON body for ``POST {base_url}/responses``."""
    reasoning = create_reasoning_param(family, reasoning_effort, reasoning_summary)
    payload: dict[str, Any] = {
        "model": model,
        "instructions": get_full_instructions(prompt, family),
        "input": get_formatted_input(prompt),
        "tools": create_tools_json(prompt.tools),
        "tool_choice": "auto",
        "parallel_tool_calls": False,
        "store": requires_store(provider),
        "stream": True,
        "include": ["reasoning.encrypted_content"] if reasoning is not None else [],
        "prompt_cache_key": conversation_id,
    }
    if reasoning is not None:
        payload["reasoning"] = reasoning
    text = create_text_param(verbosity, prompt.output_schema)
    if text is not None:
        payload["text"] = text
    return payload
