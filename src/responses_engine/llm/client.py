"""Async Responses API client.

Issues ``POST {base_url}/responses`` with ``stream: true``, retries failed
request attempts with backoff, and hands back a :class:`ResponseStream`
that a background task fills as SSE frames arrive.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Protocol, TypeVar, runtime_checkable

import httpx

from responses_engine.config import EngineConfig, ModelFamily, ModelProviderInfo
from responses_engine.errors import (
    FatalClientError,
    ModelClientError,
    ProtocolDecodeError,
    StreamAbortedError,
)
from responses_engine.limits.rate_limits import RateLimitManager
from responses_engine.limits.tokens import (
    KNOWN_CONTEXT_WINDOWS,
    TokenUsageTracker,
    default_token_usage_config,
)
from responses_engine.protocol import EventTranslator, SSEFrameDecoder, SseFrame
from responses_engine.protocol.translator import parse_retry_after_hint
from responses_engine.stream import AbortSignal, ResponseStream, StreamConfig
from responses_engine.types import Completed, Prompt, RateLimits, RateLimitSnapshot

from .payload import build_payload
from .retry import RetryPolicy, StreamAttemptError, parse_retry_after

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_CONNECT_TIMEOUT = 30  # seconds
_REQUEST_TIMEOUT = 120  # seconds


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies the bearer token for each request."""

    async def get_token(self) -> str | None: ...


@dataclass
class StaticCredentials:
    token: str | None

    async def get_token(self) -> str | None:
        return self.token


@dataclass
class EnvCredentials:
    """Reads the token from an environment variable at request time."""

    env_key: str = "OPENAI_API_KEY"

    async def get_token(self) -> str | None:
        return os.environ.get(self.env_key)


def credentials_for(provider: ModelProviderInfo) -> CredentialProvider:
    if provider.api_key:
        return StaticCredentials(provider.api_key)
    return EnvCredentials(provider.env_key or "OPENAI_API_KEY")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ResponsesClient:
    """Streaming client for one provider and model family.

    Parameters
    ----------
    provider:
        Endpoint description (base URL, extra headers, retry overrides).
    model_family:
        Instructions and capability flags of the target model.
    credentials:
        Bearer token source.
    conversation_id:
        Sent as ``conversation_id`` / ``session_id`` headers and as the
        prompt cache key.
    rate_limits, token_usage:
        Trackers to update; pass shared instances to aggregate across
        clients.  Fresh ones are created when omitted.
    transport:
        Optional ``httpx`` transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        provider: ModelProviderInfo,
        model_family: ModelFamily,
        credentials: CredentialProvider,
        conversation_id: str,
        *,
        model: str | None = None,
        organization: str | None = None,
        reasoning_effort: str | None = None,
        reasoning_summary: str | None = None,
        verbosity: str | None = None,
        retry_policy: RetryPolicy | None = None,
        stream_config: StreamConfig | None = None,
        rate_limits: RateLimitManager | None = None,
        token_usage: TokenUsageTracker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.model_family = model_family
        self.credentials = credentials
        self.conversation_id = conversation_id
        self.organization = organization or provider.organization
        self.reasoning_effort = reasoning_effort
        self.reasoning_summary = reasoning_summary
        self.verbosity = verbosity
        self.retry_policy = retry_policy or RetryPolicy()
        self._model = model or model_family.family

        stream_config = stream_config or StreamConfig()
        if provider.stream_idle_timeout_ms is not None:
            stream_config = replace(
                stream_config, event_timeout_ms=provider.stream_idle_timeout_ms,
            )
        self.stream_config = stream_config

        self._rate_limits = rate_limits or RateLimitManager()
        if token_usage is None:
            overrides: dict[str, Any] = {}
            if model_family.context_window is not None:
                overrides["context_window"] = model_family.context_window
            token_usage = TokenUsageTracker(
                default_token_usage_config(self._model, **overrides),
            )
        self._token_usage = token_usage

        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(
                _REQUEST_TIMEOUT,
                connect=_CONNECT_TIMEOUT,
                read=stream_config.event_timeout_ms / 1000,
            ),
        )
        self._pumps: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        credentials: CredentialProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ResponsesClient:
        """Build a client for ``config.active_provider``."""
        provider = config.active_provider
        tokens = dict(config.tokens)
        if config.model_family.context_window is not None:
            tokens.setdefault("context_window", config.model_family.context_window)
        return cls(
            provider,
            config.model_family,
            credentials or credentials_for(provider),
            config.conversation_id,
            model=config.model,
            reasoning_effort=config.reasoning_effort,
            reasoning_summary=config.reasoning_summary,
            verbosity=config.verbosity,
            retry_policy=config.retry,
            stream_config=config.stream,
            rate_limits=RateLimitManager(config.rate_limits),
            token_usage=TokenUsageTracker(default_token_usage_config(config.model, **tokens)),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Model / tracker accessors
    # ------------------------------------------------------------------

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str, model_family: ModelFamily | None = None) -> None:
        self._model = model
        if model_family is not None:
            self.model_family = model_family

    @property
    def model_context_window(self) -> int | None:
        return (
            self._token_usage.config.context_window
            or self.model_family.context_window
            or KNOWN_CONTEXT_WINDOWS.get(self._model)
        )

    @property
    def auto_compact_token_limit(self) -> int | None:
        return self._token_usage.config.auto_compact_limit

    @property
    def rate_limits(self) -> RateLimitManager:
        return self._rate_limits

    @property
    def token_usage(self) -> TokenUsageTracker:
        return self._token_usage

    # ------------------------------------------------------------------
    # Request construction
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return f"{self.provider.base_url.rstrip('/')}/responses"

    def build_payload(self, prompt: Prompt) -> dict[str, Any]:
        return build_payload(
            prompt,
            model=self._model,
            family=self.model_family,
            provider=self.provider,
            conversation_id=self.conversation_id,
            reasoning_effort=self.reasoning_effort,
            reasoning_summary=self.reasoning_summary,
            verbosity=self.verbosity,
        )

    def build_headers(self, token: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
            "Accept": "text/event-stream",
            "OpenAI-Beta": "responses=experimental",
            "conversation_id": self.conversation_id,
            "session_id": self.conversation_id,
        }
        if self.organization:
            headers["OpenAI-Organization"] = self.organization
        headers.update(self.provider.http_headers)
        for header, env_var in self.provider.env_http_headers.items():
            value = os.environ.get(env_var)
            if value:
                headers[header] = value
        return headers

    async def _bearer_token(self) -> str:
        token = await self.credentials.get_token()
        if not token or not token.strip():
            raise FatalClientError(
                f"No API key configured for provider: {self.provider.name}",
                provider=self.provider.name,
            )
        return token

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    @property
    def max_retries(self) -> int:
        if self.provider.request_max_retries is not None:
            return self.provider.request_max_retries
        return self.retry_policy.max_retries

    async def stream(
        self,
        prompt: Prompt,
        abort_signal: AbortSignal | None = None,
    ) -> ResponseStream:
        """Send *prompt* and return the event stream once a 2xx arrives.

        Raises the final classified error when every attempt failed, and
        :class:`StreamAbortedError` when *abort_signal* fires before the
        response starts streaming.
        """
        if not prompt.input:
            raise FatalClientError("Prompt input must not be empty", provider=self.provider.name)

        token = await self._bearer_token()
        payload = self.build_payload(prompt)
        headers = self.build_headers(token)
        max_retries = self.max_retries

        attempt = 0
        while True:
            if abort_signal is not None and abort_signal.aborted:
                raise StreamAbortedError("Request aborted")

            try:
                response = await self._abortable(
                    self._send(payload, headers), abort_signal, "request",
                )
            except StreamAbortedError:
                raise
            except Exception as e:
                failure = StreamAttemptError.from_exception(e)
            else:
                if response.is_success:
                    if abort_signal is not None and abort_signal.aborted:
                        await response.aclose()
                        raise StreamAbortedError("Request aborted")
                    return self._start_stream(response, abort_signal)
                failure = await self._classify_response(response)
                if response.status_code == 401:
                    # 401 is never retried
                    raise failure.into_error(self.provider.name)

            if not failure.is_retryable() or attempt >= max_retries:
                if failure.is_retryable():
                    _logger.error(
                        "Responses API request failed after %d attempts: %s",
                        attempt + 1, failure,
                    )
                raise failure.into_error(self.provider.name)

            delay_ms = failure.delay(attempt, self.retry_policy)
            _logger.warning(
                "%s (attempt %d/%d), retrying in %.0fms...",
                failure, attempt + 1, max_retries + 1, delay_ms,
            )
            await self._abortable(asyncio.sleep(delay_ms / 1000), abort_signal, "retry backoff")
            attempt += 1

    async def _send(self, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        request = self._http.build_request(
            "POST",
            self.url,
            json=payload,
            headers=headers,
            params=self.provider.query_params or None,
        )
        return await self._http.send(request, stream=True)

    async def _classify_response(self, response: httpx.Response) -> StreamAttemptError:
        """Read an error response body and classify the failed attempt."""
        try:
            body = await response.aread()
        finally:
            await response.aclose()

        self._rate_limits.update_from_headers(response.headers)

        detail = body.decode("utf-8", errors="replace").strip() or None
        retry_after_ms = parse_retry_after(response.headers.get("retry-after"))
        try:
            data = json.loads(body) if body else None
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            error = data["error"]
            detail = error.get("message") or detail
            if retry_after_ms is None:
                retry_after_ms = parse_retry_after_hint(error)

        if detail is None:
            detail = f"Responses API error: {response.status_code} {response.reason_phrase}"
        return StreamAttemptError.from_http_status(
            response.status_code, retry_after_ms=retry_after_ms, detail=detail,
        )

    async def _abortable(
        self,
        awaitable: Awaitable[_T],
        abort_signal: AbortSignal | None,
        phase: str,
    ) -> _T:
        if abort_signal is None:
            return await awaitable
        task = asyncio.ensure_future(awaitable)
        abort_signal.add_listener(task.cancel)
        try:
            return await task
        except asyncio.CancelledError:
            if abort_signal.aborted:
                raise StreamAbortedError(f"Request aborted during {phase}") from None
            raise
        finally:
            abort_signal.remove_listener(task.cancel)

    def _start_stream(
        self,
        response: httpx.Response,
        abort_signal: AbortSignal | None,
    ) -> ResponseStream:
        stream = ResponseStream(self.stream_config, abort_signal)
        snapshot = self._rate_limits.update_from_headers(response.headers)

        task = asyncio.create_task(self._pump(response, stream, snapshot))
        self._pumps.add(task)
        task.add_done_callback(self._pumps.discard)
        stream.signal.add_listener(task.cancel)
        return stream

    async def _pump(
        self,
        response: httpx.Response,
        stream: ResponseStream,
        snapshot: RateLimitSnapshot,
    ) -> None:
        """Read the body and push translated events into *stream*."""
        decoder = SSEFrameDecoder()
        translator = EventTranslator()
        completed: Completed | None = None
        try:
            if snapshot.has_data:
                await stream.add_event(RateLimits(snapshot=snapshot))

            async for chunk in response.aiter_bytes():
                for frame in decoder.feed(chunk):
                    completed = await self._forward(frame, translator, stream) or completed
                if decoder.done or stream.is_closed:
                    break
            for frame in decoder.flush():
                completed = await self._forward(frame, translator, stream) or completed

            if stream.is_closed:
                return
            if completed is None:
                raise ProtocolDecodeError("Stream closed before response.completed")

            if completed.token_usage is not None:
                self._token_usage.update(completed.token_usage, turn_id=completed.response_id)
            await stream.add_event(completed)
            stream.complete()
            _logger.debug(
                "Response %s completed after %d frames (avg %.2fms/frame)",
                completed.response_id, decoder.frame_count, translator.metrics.average_ms,
            )
        except asyncio.CancelledError:
            stream.abort()
            raise
        except ModelClientError as e:
            _logger.warning("Response stream failed: %s", e)
            stream.error(e)
        except httpx.HTTPError as e:
            _logger.warning("Response stream transport failure: %s", e)
            stream.error(StreamAttemptError.from_exception(e).into_error(self.provider.name))
        except Exception as e:
            _logger.exception("Unexpected error while reading response stream")
            stream.error(e)
        finally:
            await response.aclose()

    @staticmethod
    async def _forward(
        frame: SseFrame,
        translator: EventTranslator,
        stream: ResponseStream,
    ) -> Completed | None:
        """Push the events of one frame; ``Completed`` is returned, not pushed."""
        completed = None
        for event in translator.translate_frame(frame):
            if isinstance(event, Completed):
                completed = event
            else:
                await stream.add_event(event)
        return completed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        for task in list(self._pumps):
            task.cancel()
        if self._pumps:
            await asyncio.gather(*self._pumps, return_exceptions=True)
        await self._http.aclose()

    async def __aenter__(self) -> ResponsesClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
