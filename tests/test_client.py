"""Tests for ResponsesClient against a mocked httpx transport."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from responses_engine.config import EngineConfig, ModelFamily, ModelProviderInfo
from responses_engine.errors import (
    FatalClientError,
    ProtocolDecodeError,
    ResponseFailedError,
    RetryableHttpError,
    RetryableTransportError,
    StreamAbortedError,
    StreamTimeoutError,
)
from responses_engine.limits.rate_limits import RateLimitManager
from responses_engine.llm.client import EnvCredentials, ResponsesClient, StaticCredentials
from responses_engine.llm.retry import RetryPolicy
from responses_engine.stream import AbortSignal, StreamConfig
from responses_engine.types import (
    Completed,
    Created,
    OutputItemDone,
    OutputTextDelta,
    Prompt,
    RateLimits,
)

_SLEEP = "responses_engine.llm.client.asyncio.sleep"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _sse(*payloads: dict, done: bool = True) -> bytes:
    body = b"".join(f"data: {json.dumps(p)}\n\n".encode() for p in payloads)
    if done:
        body += b"data: [DONE]\n\n"
    return body


def _message(text: str) -> dict:
    return {
        "type": "message",
        "role": "assistant",
        "content": [{"type": "output_text", "text": text}],
    }


_HAPPY_BODY = _sse(
    {"type": "response.created", "response": {"id": "resp_001"}},
    {"type": "response.output_item.done", "item": _message("Hello")},
    {"type": "response.output_item.done", "item": _message("World")},
    {"type": "response.completed", "response": {
        "id": "resp_001",
        "usage": {"input_tokens": 10, "output_tokens": 15, "total_tokens": 25},
    }},
)


def _ok(body: bytes = _HAPPY_BODY, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream", **(headers or {})},
        content=body,
    )


class _Recorder:
    """Transport handler that replays a list of responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        result = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(result, Exception):
            raise result
        # fresh copy so a replayed response can be read again
        return httpx.Response(result.status_code, headers=result.headers, content=result.content)


def _client(handler, **kwargs) -> ResponsesClient:
    kwargs.setdefault("credentials", StaticCredentials("test-key"))
    return ResponsesClient(
        kwargs.pop("provider", ModelProviderInfo(base_url="https://api.test/v1")),
        kwargs.pop("model_family", ModelFamily()),
        kwargs.pop("credentials"),
        "conv-1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.fixture
def prompt() -> Prompt:
    return Prompt(input=[{"type": "message", "role": "user",
                          "content": [{"type": "input_text", "text": "hi"}]}])


# ---------------------------------------------------------------------------
# Tests: happy path
# ---------------------------------------------------------------------------

class TestStreaming:
    async def test_created_items_completed(self, prompt: Prompt):
        client = _client(_Recorder(_ok()))
        stream = await client.stream(prompt)
        events = await stream.to_list()

        assert [type(e) for e in events] == [Created, OutputItemDone, OutputItemDone, Completed]
        assert events[-1].response_id == "resp_001"
        assert events[-1].token_usage.total_tokens == 25
        assert client.token_usage.get_session_info().total_token_usage.total_tokens == 25
        await client.close()

    async def test_rate_limits_event_first(self, prompt: Prompt):
        client = _client(_Recorder(_ok(headers={
            "x-codex-primary-used-percent": "42.5",
            "x-codex-primary-window-minutes": "60",
        })))
        stream = await client.stream(prompt)
        events = await stream.to_list()

        assert isinstance(events[0], RateLimits)
        assert events[0].snapshot.primary.used_percent == 42.5
        assert isinstance(events[1], Created)
        assert client.rate_limits.current_snapshot == events[0].snapshot
        await client.close()

    async def test_no_rate_limit_event_without_headers(self, prompt: Prompt):
        client = _client(_Recorder(_ok()))
        events = await (await client.stream(prompt)).to_list()
        assert not any(isinstance(e, RateLimits) for e in events)
        await client.close()

    async def test_completed_held_until_end(self, prompt: Prompt):
        body = _sse(
            {"type": "response.created", "response": {"id": "r"}},
            {"type": "response.completed", "response": {"id": "r"}},
            {"type": "response.output_text.delta", "delta": "late"},
        )
        client = _client(_Recorder(_ok(body)))
        events = await (await client.stream(prompt)).to_list()
        assert [type(e) for e in events] == [Created, OutputTextDelta, Completed]
        await client.close()

    async def test_body_without_done_sentinel(self, prompt: Prompt):
        body = _sse(
            {"type": "response.created", "response": {"id": "r"}},
            {"type": "response.completed", "response": {"id": "r"}},
            done=False,
        )
        client = _client(_Recorder(_ok(body)))
        events = await (await client.stream(prompt)).to_list()
        assert [type(e) for e in events] == [Created, Completed]
        await client.close()

    async def test_shared_rate_limit_manager(self, prompt: Prompt):
        shared = RateLimitManager()
        client = _client(
            _Recorder(_ok(headers={"x-codex-secondary-used-percent": "90"})),
            rate_limits=shared,
        )
        await (await client.stream(prompt)).to_list()
        assert not shared.should_retry(80)
        await client.close()


# ---------------------------------------------------------------------------
# Tests: request construction
# ---------------------------------------------------------------------------

class TestRequest:
    async def test_headers_and_payload(self, prompt: Prompt, monkeypatch):
        monkeypatch.setenv("TEST_PROJECT_ID", "proj-9")
        monkeypatch.delenv("UNSET_VAR_X", raising=False)
        recorder = _Recorder(_ok())
        provider = ModelProviderInfo(
            base_url="https://api.test/v1/",
            query_params={"api-version": "2025-01-01"},
            http_headers={"X-Custom": "yes"},
            env_http_headers={"OpenAI-Project": "TEST_PROJECT_ID", "X-Missing": "UNSET_VAR_X"},
        )
        client = _client(recorder, provider=provider, organization="org-1")
        await (await client.stream(prompt)).to_list()

        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.path == "/v1/responses"
        assert request.url.params["api-version"] == "2025-01-01"
        assert request.headers["authorization"] == "Bearer test-key"
        assert request.headers["accept"] == "text/event-stream"
        assert request.headers["openai-beta"] == "responses=experimental"
        assert request.headers["conversation_id"] == "conv-1"
        assert request.headers["session_id"] == "conv-1"
        assert request.headers["openai-organization"] == "org-1"
        assert request.headers["x-custom"] == "yes"
        assert request.headers["openai-project"] == "proj-9"
        assert "x-missing" not in request.headers

        payload = json.loads(request.content)
        assert payload["stream"] is True
        assert payload["prompt_cache_key"] == "conv-1"
        assert payload["input"] == prompt.input
        await client.close()

    async def test_missing_token(self, prompt: Prompt, monkeypatch):
        monkeypatch.delenv("NO_SUCH_KEY_FOR_TESTS", raising=False)
        recorder = _Recorder(_ok())
        client = _client(recorder, credentials=EnvCredentials("NO_SUCH_KEY_FOR_TESTS"))
        with pytest.raises(FatalClientError, match="No API key"):
            await client.stream(prompt)
        assert recorder.requests == []
        await client.close()

    async def test_empty_prompt_rejected(self):
        recorder = _Recorder(_ok())
        client = _client(recorder)
        with pytest.raises(FatalClientError):
            await client.stream(Prompt(input=[]))
        assert recorder.requests == []
        await client.close()


# ---------------------------------------------------------------------------
# Tests: retries
# ---------------------------------------------------------------------------

class TestRetries:
    async def test_server_error_then_success(self, prompt: Prompt):
        recorder = _Recorder(httpx.Response(503, text="overloaded"), _ok())
        client = _client(recorder)
        with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
            stream = await client.stream(prompt)
        events = await stream.to_list()

        assert len(recorder.requests) == 2
        assert mock_sleep.await_count == 1
        assert isinstance(events[-1], Completed)
        await client.close()

    async def test_rate_limit_exhausts_retries(self, prompt: Prompt):
        recorder = _Recorder(httpx.Response(429, headers={"retry-after": "2"}, text="slow down"))
        client = _client(recorder, retry_policy=RetryPolicy(max_retries=3))
        with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(RetryableHttpError) as exc_info:
                await client.stream(prompt)

        assert len(recorder.requests) == 4
        assert mock_sleep.await_count == 3
        for call in mock_sleep.call_args_list:
            assert 2.0 <= call.args[0] <= 2.2
        assert "Rate limit exceeded (retry after 2000ms)" in str(exc_info.value)
        assert exc_info.value.status_code == 429
        await client.close()

    async def test_provider_retry_override(self, prompt: Prompt):
        recorder = _Recorder(httpx.Response(500))
        client = _client(
            recorder,
            provider=ModelProviderInfo(base_url="https://api.test/v1", request_max_retries=1),
        )
        with patch(_SLEEP, new_callable=AsyncMock):
            with pytest.raises(RetryableHttpError, match=r"Server error \(HTTP 500\)"):
                await client.stream(prompt)
        assert len(recorder.requests) == 2
        await client.close()

    async def test_unauthorized_not_retried(self, prompt: Prompt):
        recorder = _Recorder(httpx.Response(401, json={"error": {"message": "bad key"}}))
        client = _client(recorder)
        with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(RetryableHttpError, match="Authentication failed"):
                await client.stream(prompt)
        assert len(recorder.requests) == 1
        mock_sleep.assert_not_awaited()
        await client.close()

    async def test_client_error_is_fatal(self, prompt: Prompt):
        recorder = _Recorder(httpx.Response(
            400, json={"error": {"message": "Invalid 'input': expected array"}},
        ))
        client = _client(recorder)
        with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
            with pytest.raises(FatalClientError, match="Invalid 'input'") as exc_info:
                await client.stream(prompt)
        assert exc_info.value.status_code == 400
        assert len(recorder.requests) == 1
        mock_sleep.assert_not_awaited()
        await client.close()

    async def test_transport_error_retried(self, prompt: Prompt):
        recorder = _Recorder(httpx.ConnectError("connection refused"))
        client = _client(recorder, retry_policy=RetryPolicy(max_retries=2))
        with patch(_SLEEP, new_callable=AsyncMock):
            with pytest.raises(RetryableTransportError, match="Network error"):
                await client.stream(prompt)
        assert len(recorder.requests) == 3
        await client.close()

    async def test_error_response_updates_rate_limits(self, prompt: Prompt):
        recorder = _Recorder(
            httpx.Response(429, headers={"x-codex-primary-used-percent": "100"}),
            _ok(),
        )
        client = _client(recorder)
        with patch(_SLEEP, new_callable=AsyncMock):
            await (await client.stream(prompt)).to_list()
        assert len(client.rate_limits.get_history()) == 1
        assert not client.rate_limits.should_retry()
        await client.close()


# ---------------------------------------------------------------------------
# Tests: failures after streaming started
# ---------------------------------------------------------------------------

class TestStreamFailures:
    async def test_response_failed_stops_stream(self, prompt: Prompt):
        body = _sse(
            {"type": "response.created", "response": {"id": "r"}},
            {"type": "response.failed", "response": {"error": {"message": "Internal error"}}},
            {"type": "response.output_text.delta", "delta": "after"},
        )
        recorder = _Recorder(_ok(body))
        client = _client(recorder)
        stream = await client.stream(prompt)

        received = []
        with pytest.raises(ResponseFailedError, match="Internal error"):
            async for event in stream:
                received.append(event)
        assert received == [Created()]
        assert len(recorder.requests) == 1
        await client.close()

    async def test_missing_completed(self, prompt: Prompt):
        body = _sse({"type": "response.created", "response": {"id": "r"}})
        client = _client(_Recorder(_ok(body)))
        stream = await client.stream(prompt)
        with pytest.raises(ProtocolDecodeError, match="before response.completed"):
            await stream.to_list()
        await client.close()

    async def test_malformed_frame(self, prompt: Prompt):
        body = (
            b'data: {"type":"response.created","response":{"id":"r"}}\n\n'
            b"data: {broken\n\n"
        )
        client = _client(_Recorder(_ok(body)))
        stream = await client.stream(prompt)
        assert await stream.next() == Created()
        with pytest.raises(ProtocolDecodeError) as exc_info:
            await stream.next()
        assert exc_info.value.frame_index == 1
        await client.close()


# ---------------------------------------------------------------------------
# Tests: cancellation
# ---------------------------------------------------------------------------

class TestAbort:
    async def test_abort_while_streaming(self, prompt: Prompt):
        stalled = asyncio.Event()

        async def body():
            yield b'data: {"type":"response.created","response":{"id":"r"}}\n\n'
            await stalled.wait()

        client = _client(lambda request: httpx.Response(200, content=body()))
        signal = AbortSignal()
        stream = await client.stream(prompt, abort_signal=signal)

        assert await stream.next() == Created()
        signal.abort()
        with pytest.raises(StreamAbortedError):
            await stream.next()

        await asyncio.sleep(0.01)
        assert not client._pumps
        await client.close()

    async def test_abort_during_backoff(self, prompt: Prompt):
        recorder = _Recorder(httpx.Response(503))
        client = _client(recorder, retry_policy=RetryPolicy(base_delay_ms=10_000))
        signal = AbortSignal()
        asyncio.get_running_loop().call_later(0.05, signal.abort)

        with pytest.raises(StreamAbortedError):
            await asyncio.wait_for(client.stream(prompt, abort_signal=signal), timeout=2)
        assert len(recorder.requests) == 1
        await client.close()

    async def test_pre_aborted_signal(self, prompt: Prompt):
        recorder = _Recorder(_ok())
        client = _client(recorder)
        signal = AbortSignal()
        signal.abort()
        with pytest.raises(StreamAbortedError):
            await client.stream(prompt, abort_signal=signal)
        assert recorder.requests == []
        await client.close()

    async def test_idle_timeout_from_provider(self, prompt: Prompt):
        stalled = asyncio.Event()

        async def body():
            yield b'data: {"type":"response.created","response":{"id":"r"}}\n\n'
            await stalled.wait()

        client = _client(
            lambda request: httpx.Response(200, content=body()),
            provider=ModelProviderInfo(base_url="https://api.test/v1", stream_idle_timeout_ms=100),
        )
        assert client.stream_config.event_timeout_ms == 100
        stream = await client.stream(prompt)
        assert await stream.next() == Created()
        with pytest.raises(StreamTimeoutError, match="100ms"):
            await stream.next()
        await client.close()


# ---------------------------------------------------------------------------
# Tests: construction
# ---------------------------------------------------------------------------

class TestConstruction:
    async def test_from_config(self):
        config = EngineConfig(
            model="gpt-4o",
            model_family=ModelFamily(family="gpt-4o", supports_reasoning_summaries=False),
            stream=StreamConfig(event_timeout_ms=5000),
        )
        client = ResponsesClient.from_config(config, credentials=StaticCredentials("k"))
        assert client.model == "gpt-4o"
        assert client.model_context_window == 128_000
        assert client.auto_compact_token_limit == 102_400
        assert client.stream_config.event_timeout_ms == 5000
        await client.close()

    async def test_set_model(self):
        client = _client(_Recorder(_ok()))
        client.set_model("gpt-5-codex")
        assert client.model == "gpt-5-codex"
        assert client.build_payload(Prompt(input=[{"type": "message"}]))["model"] == "gpt-5-codex"
        await client.close()

    async def test_context_manager_closes(self):
        async with _client(_Recorder(_ok())) as client:
            pass
        assert client._http.is_closed
