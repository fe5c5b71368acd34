"""Async capability-aware client for OpenAI-style chat completion APIs.

Uses ``httpx.AsyncClient`` and exposes ``execute()`` (mode chosen by the
model's capabilities), ``complete()`` and ``stream()``.  Provider quirks come
from the profile's ``ProviderPolicy``; nothing here retries.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import aclosing
from dataclasses import replace
from typing import Any, AsyncIterator

import httpx

from modelgate.config import GatewayConfig, ProviderProfile, StreamPolicy, TimeoutSpec
from modelgate.errors import ApiError, to_exception
from modelgate.types import (
    CompletionDelta,
    CompletionRequest,
    CompletionResponse,
    ProviderRequest,
    StreamEvent,
)

from .capabilities import CapabilityRegistry
from .converter import convert
from .error_classifier import ErrorClassifier
from .mapper import EventMapper
from .providers import policy_for_profile, profile_headers
from .sse import decode_stream, response_to_events

_logger = logging.getLogger(__name__)


class AsyncProviderClient:
    """Client for one provider profile.

    Parameters
    ----------
    profile:
        Endpoint, provider id and credentials.
    registry:
        Capability registry; a built-in-only registry is used when omitted.
    stream_policy:
        Malformed-frame thresholds for streaming responses.
    timeouts:
        Transport timeouts, used only when *client* is not supplied.
    client:
        Pre-built ``httpx.AsyncClient`` (tests inject a ``MockTransport``).
    """

    def __init__(
        self,
        profile: ProviderProfile,
        registry: CapabilityRegistry | None = None,
        stream_policy: StreamPolicy | None = None,
        timeouts: TimeoutSpec | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.profile = profile
        self.policy = policy_for_profile(profile)
        self.registry = registry or CapabilityRegistry()
        self._stream_policy = stream_policy or StreamPolicy()
        self._classifier = ErrorClassifier(self.policy.display_name)
        self._headers = profile_headers(profile, self.policy)

        t = timeouts or TimeoutSpec()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(t.total, connect=t.connect, read=t.read),
        )

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        client: httpx.AsyncClient | None = None,
    ) -> AsyncProviderClient:
        return cls(
            config.active_profile,
            registry=CapabilityRegistry(config.models),
            stream_policy=config.stream,
            timeouts=config.timeouts,
            client=client,
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def prepare(self, request: CompletionRequest) -> ProviderRequest:
        """Resolve capabilities and build the provider request."""
        capabilities = self.registry.lookup(request.model)
        return convert(
            request,
            capabilities,
            include_model=self.policy.model_in_body,
            default_system_prompt=self.profile.default_system_prompt,
        )

    def url_for(self, model: str) -> str:
        return self.policy.build_url(
            self.profile.base_url, model, self.profile.api_version,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self, request: CompletionRequest,
    ) -> CompletionResponse | AsyncIterator[CompletionDelta]:
        """Run *request* in the mode its model allows.

        Returns a ``CompletionResponse`` for complete mode, otherwise an
        async iterator of deltas.  Close the iterator (``aclose()`` or
        ``contextlib.aclosing``) to abandon the stream; the HTTP response is
        closed with it.
        """
        prepared = self.prepare(request)
        if prepared.is_streaming:
            return self._stream_prepared(prepared)
        return await self._complete_prepared(prepared)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Non-streaming chat completion."""
        prepared = self.prepare(replace(request, stream=False))
        return await self._complete_prepared(prepared)

    async def stream(
        self, request: CompletionRequest,
    ) -> AsyncIterator[CompletionDelta]:
        """Streaming chat completion.

        Models that cannot stream are run in complete mode and their
        response is replayed as deltas.
        """
        prepared = self.prepare(request)
        if prepared.is_streaming:
            async with aclosing(self._stream_prepared(prepared)) as deltas:
                async for delta in deltas:
                    yield delta
            return

        _logger.debug(
            "Using non-streaming completion for %s", prepared.model,
        )
        _, events = await self._post(prepared)
        mapper = EventMapper(self._stream_policy, self._classifier)
        for event in events:
            for delta in mapper.feed(event):
                yield delta

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> AsyncProviderClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _log_request(self, url: str, prepared: ProviderRequest) -> None:
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug(
                "%s request (%s) URL: %s body: %s",
                self.policy.display_name, prepared.mode.value, url,
                json.dumps(prepared.to_json()),
            )

    async def _post(
        self, prepared: ProviderRequest,
    ) -> tuple[dict[str, Any], list[StreamEvent]]:
        url = self.url_for(prepared.model)
        self._log_request(url, prepared)
        try:
            resp = await self._client.post(
                url, json=prepared.to_json(), headers=self._headers,
            )
        except httpx.TransportError as e:
            raise self._classifier.exception_for(e) from e

        _logger.debug(
            "%s response status: %d", self.policy.display_name, resp.status_code,
        )
        self._classifier.raise_for_response(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise ApiError.from_message(
                f"{self.policy.display_name} returned invalid JSON",
                body=resp.text,
                status=resp.status_code,
            ) from e
        if not isinstance(data, dict) or not data.get("choices"):
            raise ApiError.from_message(
                f"{self.policy.display_name} response contained no choices",
                body=resp.text,
                status=resp.status_code,
            )
        try:
            events = response_to_events(data)
        except ValueError as e:
            raise ApiError.from_message(
                f"{self.policy.display_name} returned an unexpected response: {e}",
                body=resp.text,
                status=resp.status_code,
            ) from e
        return data, events

    async def _complete_prepared(self, prepared: ProviderRequest) -> CompletionResponse:
        start = time.monotonic()
        body, events = await self._post(prepared)
        response = EventMapper(self._stream_policy, self._classifier).fold(events)
        response.model = body.get("model") or prepared.model
        response.latency_ms = (time.monotonic() - start) * 1000
        return response

    async def _stream_prepared(
        self, prepared: ProviderRequest,
    ) -> AsyncIterator[CompletionDelta]:
        url = self.url_for(prepared.model)
        self._log_request(url, prepared)
        mapper = EventMapper(self._stream_policy, self._classifier)

        try:
            async with self._client.stream(
                "POST", url, json=prepared.to_json(), headers=self._headers,
            ) as resp:
                if not resp.is_success:
                    body = await resp.aread()
                    raise to_exception(
                        self._classifier.classify_response(resp.status_code, body)
                    )
                async with aclosing(
                    decode_stream(resp.aiter_lines())
                ) as events, aclosing(mapper.map(events)) as deltas:
                    async for delta in deltas:
                        yield delta
        except httpx.TransportError as e:
            # Only reachable before the body is read; read errors are
            # turned into StreamConnectionError by the decoder.
            raise self._classifier.exception_for(e) from e
        finally:
            if mapper.malformed_count:
                _logger.info(
                    "Stream finished with %d malformed frame(s) of %d (last: %s)",
                    mapper.malformed_count,
                    mapper.malformed_count + mapper.valid_count,
                    mapper.last_malformed_reason,
                )
